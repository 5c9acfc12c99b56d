"""
Design (query.py)
- Purpose: The read/trigger surface an HTTP layer calls: history for charts, incremental polling,
           manual probes, and a per-server "last known status" overview.
- Inputs: server ids, range names ('day' | 'week' | 'month'), since-ids.
- Outputs: Lists of plain dicts (JSON-ready) and ProbeResults.
- Side effects: trigger_manual_probe() performs one network probe and one append.
- Thread-safety: Stateless beyond its collaborators, which lock for themselves.

Composition of the two read modes: a client first asks for a range, remembers the largest id
it received, then polls with since_id=<that id>. since_id > 0 ignores the range window;
since_id of 0/None is a plain range query (day when no range is given).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import DOWNSAMPLE_BLIP_SEC, DOWNSAMPLE_CHUNK_SEC
from .downsample import downsample as compress
from .models import ProbeResult, TimeRange

_LOGGER = logging.getLogger(__name__)


class QueryService:
    def __init__(self, store, registry=None, scheduler=None):
        self.store = store
        self.registry = registry
        self.scheduler = scheduler

    def list_records(self, server_id: int, time_range: Optional[str] = None,
                     since_id: Optional[int] = None, downsample: bool = False,
                     now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Purpose: History for one server, ascending by id.
        Inputs: time_range (default day), since_id (> 0 switches to incremental),
                downsample (week/month range queries only).
        Outputs: [{id, server_id, observed_at, online, player_count, player_max, ...}]
        """
        if since_id:
            records = self.store.query_incremental(server_id, since_id)
        else:
            window = TimeRange.parse(time_range)
            records = self.store.query_range(server_id, window, now=now)
            chunk = DOWNSAMPLE_CHUNK_SEC.get(window.value)
            if downsample and chunk and records:
                before = len(records)
                records = compress(records, chunk, DOWNSAMPLE_BLIP_SEC)
                _LOGGER.debug("Downsampled %s history of server %s: %d -> %d points",
                              window.value, server_id, before, len(records))
        return [record.to_dict() for record in records]

    def trigger_manual_probe(self, server_id: int) -> ProbeResult:
        """Synchronous; the caller waits up to one probe timeout."""
        if self.scheduler is None:
            raise RuntimeError("manual probes need a scheduler")
        return self.scheduler.trigger(server_id)

    def server_overview(self) -> List[Dict[str, Any]]:
        if self.registry is None:
            raise RuntimeError("server overview needs a registry")
        overview = []
        for server in self.registry.snapshot():
            last = self.store.latest(server.id)
            overview.append({
                "id": server.id,
                "name": server.name,
                "address": server.address,
                "port": server.port,
                "created_at": server.created_at,
                "last_online": last.online if last else None,
                "player_count": last.player_count if last else None,
            })
        return overview
