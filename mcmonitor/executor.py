"""
Design (executor.py)
- Purpose: Run one timed probe against one server and always return a ProbeResult.
- Inputs: TrackedServer snapshot; timeout and protocol version from Settings.
- Outputs: ProbeResult (online with counts, or offline with a failure kind).
- Side effects: The network call only.
- Thread-safety: No shared mutable state; one instance is shared by all pool workers.
"""

import logging
from typing import Callable, Optional

from . import protocol
from .config import PING_TIMEOUT_SEC, PROTOCOL_VERSION
from .errors import ConnectFailed, MalformedResponse, ProbeTimeout, ProtocolError, ProtocolMismatch
from .models import FailureKind, ProbeResult, StatusPayload, TrackedServer
from .utils import utc_now

_LOGGER = logging.getLogger(__name__)


def classify(error: ProtocolError) -> FailureKind:
    if isinstance(error, ProbeTimeout):
        return FailureKind.TIMEOUT
    if isinstance(error, ConnectFailed):
        return FailureKind(error.kind)
    return FailureKind.PROTOCOL_ERROR


class ProbeExecutor:
    """
    Design (ProbeExecutor)
    - probe: callable(address, port, timeout, protocol_version) -> StatusPayload; tests swap it.
    - legacy_probe: used only when legacy_fallback is on and the modern exchange produced
      bytes the modern framing rejects (old servers answer with a 0xFF kick packet).
    """

    def __init__(self,
                 timeout: float = PING_TIMEOUT_SEC,
                 protocol_version: int = PROTOCOL_VERSION,
                 legacy_fallback: bool = False,
                 probe: Optional[Callable[..., StatusPayload]] = None,
                 legacy_probe: Optional[Callable[..., StatusPayload]] = None,
                 clock: Callable = utc_now):
        self.timeout = timeout
        self.protocol_version = protocol_version
        self.legacy_fallback = legacy_fallback
        self._probe = probe or protocol.probe_once
        self._legacy_probe = legacy_probe or protocol.probe_legacy
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "ProbeExecutor":
        return cls(
            timeout=settings.timeout_sec,
            protocol_version=settings.protocol_version,
            legacy_fallback=settings.legacy_fallback,
        )

    def _status(self, server: TrackedServer) -> StatusPayload:
        try:
            return self._probe(server.address, server.port, self.timeout, self.protocol_version)
        except (MalformedResponse, ProtocolMismatch) as exc:
            if not self.legacy_fallback:
                raise
            _LOGGER.debug("SLP to %s failed (%s); trying legacy ping", server.target, exc)
            return self._legacy_probe(server.address, server.port, self.timeout)

    def execute(self, server: TrackedServer) -> ProbeResult:
        observed_at = self._clock()
        try:
            status = self._status(server)
        except ProtocolError as exc:
            kind = classify(exc)
            _LOGGER.debug("Server %s (%s) offline: %s (%s)", server.id, server.target, kind.value, exc)
            return ProbeResult.offline(server.id, observed_at, kind)
        except ValueError as exc:
            _LOGGER.warning("Server %s has an unusable address %s: %s", server.id, server.target, exc)
            return ProbeResult.offline(server.id, observed_at, FailureKind.DNS_ERROR)
        except Exception:
            _LOGGER.exception("Unexpected error probing server %s (%s)", server.id, server.target)
            return ProbeResult.offline(server.id, observed_at, FailureKind.PROTOCOL_ERROR)
        return ProbeResult.from_status(server.id, observed_at, status)
