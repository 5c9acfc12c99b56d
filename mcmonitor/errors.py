"""
Design (errors.py)
- Purpose: Exception hierarchy shared by protocol client, store, registry and scheduler.
- Side effects: None.
"""


class MonitorError(Exception):
    """Base class for every error raised by this package."""


# -------- Protocol (absorbed by the probe executor) --------

class ProtocolError(MonitorError):
    """One probe failed. Never fatal; always maps to an offline result."""


class ConnectFailed(ProtocolError):
    """TCP connect refused/unreachable, or the host name did not resolve."""

    def __init__(self, message: str, kind: str = "connection_refused"):
        super().__init__(message)
        self.kind = kind


class ProbeTimeout(ProtocolError):
    """No complete response within the probe budget."""


class MalformedResponse(ProtocolError):
    """Bytes arrived but packet framing, UTF-8 or JSON was invalid."""


class ProtocolMismatch(ProtocolError):
    """The response packet id was not the expected Status Response id."""


# -------- Collaborators (surface to the scheduler) --------

class RegistryUnavailable(MonitorError):
    pass


class ServerNotFound(MonitorError):
    pass


class StoreWriteFailed(MonitorError):
    pass


class ConfigError(MonitorError):
    """Invalid settings at startup. The only fatal error."""
