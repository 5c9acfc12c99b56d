"""
Design (models.py)
- Purpose: Define simple, typed data structures for domain entities
           (tracked servers, status payloads, probe results, stored ping records).
- Inputs: Field values.
- Outputs: Dataclass instances.
- Side effects: None.
- Thread-safety: All records are frozen; safe to hand between threads.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from .config import DEFAULT_PORT
from .utils import format_timestamp


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION_REFUSED = "connection_refused"
    DNS_ERROR = "dns_error"
    PROTOCOL_ERROR = "protocol_error"


class TimeRange(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    @property
    def window(self) -> timedelta:
        return _WINDOWS[self]

    @classmethod
    def parse(cls, value: "str | TimeRange | None") -> "TimeRange":
        """Unknown or missing ranges fall back to a day."""
        if isinstance(value, TimeRange):
            return value
        try:
            return cls((value or "day").strip().lower())
        except ValueError:
            return cls.DAY


_WINDOWS = {
    TimeRange.DAY: timedelta(hours=24),
    TimeRange.WEEK: timedelta(days=7),
    TimeRange.MONTH: timedelta(days=30),
}


@dataclass(frozen=True)
class TrackedServer:
    """
    Design (TrackedServer)
    - Purpose: One server the registry tracks. Read-only to the probing core.
    - Fields:
        id: registry-assigned identity (also the foreign key in ping history).
        name: display name.
        address: host name or IP literal, sent verbatim in the handshake.
        port: TCP port (16-bit).
        created_at: ISO-8601 UTC timestamp string.
    """
    id: int
    name: str
    address: str
    port: int = DEFAULT_PORT
    created_at: str = ""

    @property
    def target(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class StatusPayload:
    players_online: int
    players_max: int
    version_name: str = ""
    version_protocol: Optional[int] = None
    description: str = ""
    latency_ms: Optional[int] = None


@dataclass(frozen=True)
class ProbeResult:
    """
    Design (ProbeResult)
    - Purpose: Normalized outcome of one probe; lives only between executor and store.
    - Invariant: failure_kind is set iff online is False; player counts only when online.
    """
    server_id: int
    observed_at: datetime
    online: bool
    player_count: Optional[int] = None
    player_max: Optional[int] = None
    latency_ms: Optional[int] = None
    version: Optional[str] = None
    motd: Optional[str] = None
    failure_kind: Optional[FailureKind] = None

    @classmethod
    def from_status(cls, server_id: int, observed_at: datetime, status: StatusPayload) -> "ProbeResult":
        return cls(
            server_id=server_id,
            observed_at=observed_at,
            online=True,
            player_count=status.players_online,
            player_max=status.players_max,
            latency_ms=status.latency_ms,
            version=status.version_name or None,
            motd=status.description or None,
        )

    @classmethod
    def offline(cls, server_id: int, observed_at: datetime, kind: FailureKind) -> "ProbeResult":
        return cls(server_id=server_id, observed_at=observed_at, online=False, failure_kind=kind)


@dataclass(frozen=True)
class PingRecord:
    id: int
    server_id: int
    observed_at: datetime
    online: bool
    player_count: Optional[int] = None
    player_max: Optional[int] = None
    latency_ms: Optional[int] = None
    version: Optional[str] = None
    motd: Optional[str] = None
    failure_kind: Optional[FailureKind] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """External shape handed to the HTTP layer; failure detail stays internal."""
        return {
            "id": self.id,
            "server_id": self.server_id,
            "observed_at": format_timestamp(self.observed_at),
            "online": self.online,
            "player_count": self.player_count,
            "player_max": self.player_max,
            "latency_ms": self.latency_ms,
            "version": self.version,
            "motd": self.motd,
        }
