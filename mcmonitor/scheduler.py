"""
Background probing worker.

Design:
- Runs its own daemon thread so callers (CLI, an HTTP layer) stay responsive.
- Ticks are pinned to wall-clock boundaries (multiples of interval_sec since the epoch),
  plus one sweep right at start so a fresh dashboard is not empty for ten minutes.
- Every sweep:
    1) Snapshot the tracked servers from the registry (skip the tick if that fails).
    2) Fan one probe per server into a bounded thread pool.
    3) Append each result to the ping store as soon as it completes.
    4) Fire status-change notifications and the per-result callback.
- Missed boundaries are skipped, never caught up. A failed probe is retried by the next tick only.
- Methods:
    start(): begin the daemon thread
    stop(): no new sweep after this; in-flight probes finish or time out
    run_sweep(): one sweep on the calling thread (used by the loop and `main.py sweep`)
    trigger(server_id): manual single-server probe, outside the cadence
    forget(server_id): drop cached state of a removed server (removed ids also drop out at the next sweep)
- Thread-safety: Registry and store do their own locking; the scheduler's own mutable
  state (last known online flags) sits behind _state_lock.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .config import Settings
from .errors import RegistryUnavailable, StoreWriteFailed
from .executor import ProbeExecutor
from .models import ProbeResult, TrackedServer
from .utils import next_aligned_time, utc_now

_LOGGER = logging.getLogger(__name__)


@dataclass
class SweepReport:
    trigger: str
    started_at: datetime
    launched: int = 0
    online: int = 0
    offline: int = 0
    dropped: int = 0
    finished_at: Optional[datetime] = None

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class ProbeScheduler:
    def __init__(self, registry, store, executor: Optional[ProbeExecutor] = None,
                 settings: Optional[Settings] = None, notifier=None,
                 on_result: Optional[Callable[[TrackedServer, ProbeResult], None]] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = (settings or Settings()).validate()
        self.registry = registry
        self.store = store
        self.executor = executor or ProbeExecutor.from_settings(self.settings)
        self.notifier = notifier
        self.on_result = on_result
        self.last_report: Optional[SweepReport] = None
        self._clock = clock
        self._stop = threading.Event()
        self._state_lock = threading.Lock()
        self._last_online: Dict[int, bool] = {}
        self._pool = ThreadPoolExecutor(max_workers=self.settings.max_workers,
                                        thread_name_prefix="probe")
        self._thread = threading.Thread(target=self._loop, name="probe-scheduler", daemon=True)

    # -------- Lifecycle --------

    def start(self) -> None:
        _LOGGER.info("Scheduler starting: every %ds, %d workers, %.1fs probe timeout",
                     self.settings.interval_sec, self.settings.max_workers, self.settings.timeout_sec)
        self._thread.start()

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if wait and self._thread.is_alive():
            self._thread.join(timeout)
        self._pool.shutdown(wait=wait)
        _LOGGER.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def seconds_until_next_tick(self) -> float:
        now = self._clock()
        return next_aligned_time(now, self.settings.interval_sec) - now

    def _wait_until(self, fire_at: float) -> bool:
        """Sleep until the absolute time fire_at. Returns True if stop was requested."""
        while not self._stop.is_set():
            remaining = fire_at - self._clock()
            if remaining <= 0:
                return False
            self._stop.wait(remaining)
        return True

    def _loop(self) -> None:
        interval = self.settings.interval_sec
        if self.settings.sweep_on_start:
            self._tick("startup")
        fire_at = next_aligned_time(self._clock(), interval)
        while not self._wait_until(fire_at):
            self._tick("scheduled")
            # skip boundaries that passed while the sweep ran; never catch up
            fire_at = next_aligned_time(max(self._clock(), fire_at), interval)

    def _tick(self, trigger: str) -> None:
        try:
            self.run_sweep(trigger)
        except Exception:
            _LOGGER.exception("Sweep (%s) failed", trigger)
        self._prune()

    def _prune(self) -> None:
        if self.settings.retention_days <= 0:
            return
        try:
            self.store.prune_older_than(timedelta(days=self.settings.retention_days))
        except Exception:
            _LOGGER.exception("Retention pruning failed")

    # -------- Sweeps --------

    def run_sweep(self, trigger: str = "scheduled") -> Optional[SweepReport]:
        """
        Probe every tracked server once. Returns None when the sweep was skipped
        (shutdown requested or registry unavailable).
        """
        if self._stop.is_set():
            return None
        try:
            servers = self.registry.snapshot()
        except RegistryUnavailable as exc:
            _LOGGER.warning("Skipping %s sweep, registry unavailable: %s", trigger, exc)
            return None
        self._forget_missing(server.id for server in servers)

        report = SweepReport(trigger=trigger, started_at=utc_now(), launched=len(servers))
        futures = {self._pool.submit(self.executor.execute, server): server for server in servers}
        for future in as_completed(futures):
            server = futures[future]
            try:
                self._record(server, future.result(), report)
            except Exception:
                report.dropped += 1
                _LOGGER.exception("Dropping result for server %s (%s)", server.id, server.target)
        report.finished_at = utc_now()
        self.last_report = report
        _LOGGER.info("Sweep (%s) done in %.2fs: %d servers, %d online, %d offline, %d dropped",
                     trigger, report.duration, report.launched, report.online,
                     report.offline, report.dropped)
        return report

    def trigger(self, server_id: int) -> ProbeResult:
        """
        Purpose: Manual probe of one server on the calling thread, outside the aligned cadence.
        Outputs: The ProbeResult (also appended to the store).
        Raises: ServerNotFound for unknown ids; StoreWriteFailed if the sample could not be kept.
        """
        server = self.registry.get(server_id)
        result = self.executor.execute(server)
        self._record(server, result, None)
        return result

    def forget(self, server_id: int) -> None:
        """Drop the cached online flag of a server that is no longer tracked."""
        with self._state_lock:
            self._last_online.pop(server_id, None)

    def _forget_missing(self, tracked_ids) -> None:
        tracked = set(tracked_ids)
        with self._state_lock:
            for server_id in set(self._last_online) - tracked:
                del self._last_online[server_id]

    def _previous_online(self, server_id: int) -> Optional[bool]:
        with self._state_lock:
            if server_id in self._last_online:
                return self._last_online[server_id]
        latest = self.store.latest(server_id)
        return latest.online if latest else None

    def _record(self, server: TrackedServer, result: ProbeResult, report: Optional[SweepReport]) -> None:
        previous = self._previous_online(server.id)
        try:
            record = self.store.append(result)
        except StoreWriteFailed as exc:
            if report is None:
                raise
            report.dropped += 1
            _LOGGER.warning("Dropping result for server %s: %s", server.id, exc)
            return
        if report is not None:
            if result.online:
                report.online += 1
            else:
                report.offline += 1
        _LOGGER.debug("Server %s stored as record %d (online=%s, players=%s)",
                      server.id, record.id, record.online, record.player_count)

        with self._state_lock:
            self._last_online[server.id] = result.online
        if previous is not None and previous != result.online and self.notifier is not None:
            self.notifier.status_changed(server, result.online)

        # per-result event for callers that mirror progress (does not affect storage)
        if self.on_result is not None:
            try:
                self.on_result(server, result)
            except Exception:
                _LOGGER.exception("on_result callback failed for server %s", server.id)
