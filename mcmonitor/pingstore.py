"""
Design (pingstore.py)
- Purpose: Durable, append-only history of probe results (SQLite).
- Inputs: ProbeResult on append; server id + window / since-id on read.
- Outputs: PingRecord objects, ordered ascending by id.
- Side effects: Creates the database file and schema on first use.
- Thread-safety: One connection guarded by one lock. The lock is the id-assignment
                 serialization point: ids are handed out in append-completion order.

Ordering: ids come from AUTOINCREMENT, so they strictly increase and are never reused,
even after pruning or cascade deletes. Per server, observed_at never goes backwards
as id grows: an append whose timestamp is older than the server's newest stored
record (a manual probe overlapping a sweep) is stored with that newest timestamp.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

from .errors import StoreWriteFailed
from .models import FailureKind, PingRecord, ProbeResult, TimeRange
from .utils import format_timestamp, parse_timestamp, utc_now

_LOGGER = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS ping_results (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        server_id       INTEGER NOT NULL,
        observed_at     TEXT NOT NULL,
        online          INTEGER NOT NULL,
        latency_ms      INTEGER,
        players_online  INTEGER,
        players_max     INTEGER,
        version         TEXT,
        motd            TEXT,
        failure_kind    TEXT
    )
    """,
    # Range scans: (server_id, observed_at); incremental scans: (server_id, id)
    "CREATE INDEX IF NOT EXISTS idx_ping_results_server_date ON ping_results(server_id, observed_at)",
    "CREATE INDEX IF NOT EXISTS idx_ping_results_server_id ON ping_results(server_id, id)",
)

_COLUMNS = ("id, server_id, observed_at, online, players_online, players_max, "
            "latency_ms, version, motd, failure_kind")


def _to_record(row) -> PingRecord:
    return PingRecord(
        id=row[0],
        server_id=row[1],
        observed_at=parse_timestamp(row[2]),
        online=bool(row[3]),
        player_count=row[4],
        player_max=row[5],
        latency_ms=row[6],
        version=row[7],
        motd=row[8],
        failure_kind=FailureKind(row[9]) if row[9] else None,
    )


class PingStore:
    """
    Design (PingStore)
    - State:
        _conn: sqlite3 connection shared across threads (check_same_thread=False)
        _lock: threading.RLock protecting every statement on _conn
    """

    def __init__(self, path: "str | Path" = ":memory:") -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        with self._lock:
            if self.path != ":memory:":
                # WAL lets readers run while the sweep is appending
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
            with self._conn:
                for statement in _SCHEMA:
                    self._conn.execute(statement)
        _LOGGER.debug("Ping store ready at %s", self.path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "PingStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -------- Writes --------

    def append(self, result: ProbeResult) -> PingRecord:
        """
        Purpose: Store one probe result and assign it the next global id.
        Outputs: The stored PingRecord (observed_at possibly clamped, see module notes).
        Raises: StoreWriteFailed on any SQLite error; nothing is stored in that case.
        """
        stamp = format_timestamp(result.observed_at)
        kind = result.failure_kind.value if result.failure_kind else None
        with self._lock:
            try:
                newest = self._conn.execute(
                    "SELECT MAX(observed_at) FROM ping_results WHERE server_id = ?",
                    (result.server_id,),
                ).fetchone()[0]
                if newest is not None and newest > stamp:
                    stamp = newest
                with self._conn:
                    cursor = self._conn.execute(
                        """
                        INSERT INTO ping_results
                            (server_id, observed_at, online, latency_ms, players_online,
                             players_max, version, motd, failure_kind)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (result.server_id, stamp, 1 if result.online else 0, result.latency_ms,
                         result.player_count, result.player_max, result.version, result.motd, kind),
                    )
                record_id = cursor.lastrowid
            except sqlite3.Error as exc:
                raise StoreWriteFailed(f"append for server {result.server_id} failed: {exc}") from exc

        return PingRecord(
            id=record_id,
            server_id=result.server_id,
            observed_at=parse_timestamp(stamp),
            online=result.online,
            player_count=result.player_count,
            player_max=result.player_max,
            latency_ms=result.latency_ms,
            version=result.version,
            motd=result.motd,
            failure_kind=result.failure_kind,
        )

    def delete_for_server(self, server_id: int) -> int:
        """Cascade delete used when a server leaves the registry. Returns rows removed."""
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM ping_results WHERE server_id = ?", (server_id,))
        _LOGGER.info("Deleted %d ping records for server %s", cursor.rowcount, server_id)
        return cursor.rowcount

    def prune_older_than(self, horizon: timedelta, now: Optional[datetime] = None) -> int:
        """Retention: drop records observed before now - horizon. Surviving ids are untouched."""
        cutoff = format_timestamp((now or utc_now()) - horizon)
        with self._lock, self._conn:
            cursor = self._conn.execute("DELETE FROM ping_results WHERE observed_at < ?", (cutoff,))
        if cursor.rowcount:
            _LOGGER.info("Pruned %d ping records older than %s", cursor.rowcount, cutoff)
        return cursor.rowcount

    # -------- Reads --------

    def _select(self, where: str, params: tuple) -> List[PingRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM ping_results WHERE {where} ORDER BY id ASC", params
            ).fetchall()
        return [_to_record(row) for row in rows]

    def query_range(self, server_id: int, window: "TimeRange | str",
                    now: Optional[datetime] = None) -> List[PingRecord]:
        """Records with observed_at >= now - window, ascending by id."""
        since = (now or utc_now()) - TimeRange.parse(window).window
        return self._select("server_id = ? AND observed_at >= ?", (server_id, format_timestamp(since)))

    def query_incremental(self, server_id: int, since_id: int) -> List[PingRecord]:
        """Records with id > since_id, ascending by id."""
        return self._select("server_id = ? AND id > ?", (server_id, since_id))

    def latest(self, server_id: int) -> Optional[PingRecord]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_COLUMNS} FROM ping_results WHERE server_id = ? ORDER BY id DESC LIMIT 1",
                (server_id,),
            ).fetchone()
        return _to_record(row) if row else None

    def count(self, server_id: Optional[int] = None) -> int:
        with self._lock:
            if server_id is None:
                return self._conn.execute("SELECT COUNT(*) FROM ping_results").fetchone()[0]
            return self._conn.execute(
                "SELECT COUNT(*) FROM ping_results WHERE server_id = ?", (server_id,)
            ).fetchone()[0]
