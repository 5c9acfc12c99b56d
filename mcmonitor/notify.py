"""
Design (notify.py)
- Purpose: Tell the operator when a tracked server flips between ONLINE and OFFLINE.
- Inputs: TrackedServer and its new online flag (from the scheduler).
- Outputs: None.
- Side effects: Desktop notification through plyer; failures are logged, never raised.
- Thread-safety: Safe to call from pool workers.
"""

import logging

from plyer import notification

from .config import NOTIFY_TIMEOUT_SEC, NOTIFY_TITLE
from .models import TrackedServer

_LOGGER = logging.getLogger(__name__)


class Notifier:
    def __init__(self, enabled: bool = True, title: str = NOTIFY_TITLE) -> None:
        self.enabled = enabled
        self.title = title

    def status_changed(self, server: TrackedServer, online: bool) -> None:
        status = "ONLINE" if online else "OFFLINE"
        _LOGGER.info("Server %s (%s) is now %s", server.name, server.target, status)
        if not self.enabled:
            return
        try:
            notification.notify(
                title=self.title,
                message=f"Server {server.name} status is now: {status}",
                timeout=NOTIFY_TIMEOUT_SEC,
            )
        except Exception as exc:
            # no notification backend (headless box, missing dbus, ...)
            _LOGGER.warning("Desktop notification failed: %s", exc)
