"""
Design (registry.py)
- Purpose: Keep the tracked-server list behind a tiny API (and a lock) so the scheduler and
           the CLI never touch shared dicts directly. Backed by servers.json.
- Inputs: name/address/port for new servers; ids for lookups and removals.
- Outputs: TrackedServer objects and snapshots (copies) of the current list.
- Side effects: Saves servers.json on every mutation; removal cascades into the ping store.
- Thread-safety: All methods take the internal lock; snapshot returns a copy.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .config import DEFAULT_PORT
from .errors import RegistryUnavailable, ServerNotFound
from .models import TrackedServer
from .storage import load_server_file, save_servers
from .utils import format_timestamp, utc_now

_LOGGER = logging.getLogger(__name__)


class ServerRegistry:
    """
    Design (ServerRegistry)
    - State:
        _servers: {server_id -> TrackedServer}
        _next_id: next id to hand out; never decreases, so a removed id is never reused
        _path: servers.json location, or None for a purely in-memory registry (tests)
        _mtime: file mtime at last load; snapshot() reloads when another process edited it
        _store: optional PingStore; remove() deletes that server's history
        _lock: threading.Lock to protect all mutating/reading operations
    """

    def __init__(self, path: Optional[Path] = None, store=None) -> None:
        self._lock = threading.Lock()
        self._servers: Dict[int, TrackedServer] = {}
        self._next_id = 1
        self._path = path
        self._mtime: Optional[float] = None
        self._store = store
        if path is not None:
            self._load(strict=False)

    def _load(self, strict: bool) -> None:
        servers, next_id = load_server_file(self._path, strict=strict)
        self._servers = {s.id: s for s in servers}
        self._next_id = max(self._next_id, next_id)
        self._mtime = self._path.stat().st_mtime if self._path.exists() else None

    def _save(self) -> None:
        if self._path is None:
            return
        try:
            save_servers(sorted(self._servers.values(), key=lambda s: s.id), self._path, self._next_id)
        except OSError as exc:
            raise RegistryUnavailable(f"cannot save server list {self._path}: {exc}") from exc
        self._mtime = self._path.stat().st_mtime

    def _refresh(self) -> None:
        if self._path is None:
            return
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            return
        except OSError as exc:
            raise RegistryUnavailable(f"cannot stat server list {self._path}: {exc}") from exc
        if mtime != self._mtime:
            _LOGGER.info("Server list %s changed on disk; reloading", self._path)
            self._load(strict=True)

    # -------- CRUD for servers --------

    def add(self, name: str, address: str, port: int = DEFAULT_PORT) -> TrackedServer:
        """
        Purpose: Track a new server.
        Inputs: name (non-empty), address (host), port (1..65535).
        Outputs: The created TrackedServer with a fresh id.
        """
        if not name or not address:
            raise ValueError("name and address are required")
        if not 0 < port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        with self._lock:
            self._refresh()
            server = TrackedServer(
                id=self._next_id,
                name=name,
                address=address,
                port=port,
                created_at=format_timestamp(utc_now()),
            )
            self._servers[server.id] = server
            self._next_id = server.id + 1
            self._save()
        _LOGGER.info("Tracking server %s (%s) as id %d", name, server.target, server.id)
        return server

    def get(self, server_id: int) -> TrackedServer:
        """Raises ServerNotFound for unknown ids."""
        with self._lock:
            self._refresh()
            server = self._servers.get(server_id)
        if server is None:
            raise ServerNotFound(f"no tracked server with id {server_id}")
        return server

    def remove(self, server_id: int) -> None:
        """
        Purpose: Stop tracking a server and delete its ping history.
        Side effects: Saves the list; cascades into the ping store when one is attached.
        """
        with self._lock:
            self._refresh()
            if self._servers.pop(server_id, None) is None:
                raise ServerNotFound(f"no tracked server with id {server_id}")
            self._save()
        if self._store is not None:
            self._store.delete_for_server(server_id)

    # -------- Snapshots for safe reading --------

    def snapshot(self) -> List[TrackedServer]:
        """
        Purpose: Copy of the tracked servers, ordered by id, for one sweep.
        Raises: RegistryUnavailable when the backing file cannot be re-read.
        """
        with self._lock:
            self._refresh()
            return sorted(self._servers.values(), key=lambda s: s.id)
