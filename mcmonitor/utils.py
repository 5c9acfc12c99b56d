"""
Design (utils.py)
- Purpose: Reusable helpers: UTC timestamps (format/parse), wall-clock alignment math,
           "host:port" parsing and chat-component flattening for MOTDs.
- Inputs: Various helper parameters.
- Outputs: Helper results (datetimes, strings, floats).
- Side effects: None.
- Thread-safety: Stateless; safe to call from any thread.
"""

import re
from datetime import datetime, timezone
from typing import Any, Tuple

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Section-sign formatting codes (colours, bold, ...) in legacy MOTD text
_FORMATTING_CODES = re.compile(r"§[0-9a-fk-orA-FK-OR]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """
    Purpose: Render a datetime as fixed-width UTC ISO-8601 (sorts lexicographically).
    Inputs: moment (naive values are treated as UTC).
    Outputs: e.g. '2024-05-01T10:20:00.000000Z'.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(text: str) -> datetime:
    return datetime.strptime(text, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def next_aligned_time(now: float, interval: int) -> float:
    """
    Purpose: Next absolute boundary strictly after `now` that is a multiple of `interval`.
    Inputs: now (epoch seconds), interval (seconds, > 0).
    Outputs: Epoch seconds of the next boundary.

    Boundaries are computed from the epoch, never from the previous tick, so a late
    wake-up does not shift later ticks.
    """
    return (int(now // interval) + 1) * interval


def parse_address(text: str, default_port: int) -> Tuple[str, int]:
    """
    Purpose: Split 'host', 'host:port' or '[v6]:port' into (host, port).
    Outputs: (host, port). Raises ValueError on an empty host or invalid port.
    """
    text = text.strip()
    host, port = text, default_port
    if text.startswith("["):
        end = text.find("]")
        if end == -1:
            raise ValueError(f"unterminated IPv6 literal: {text!r}")
        host = text[1:end]
        rest = text[end + 1:]
        if rest.startswith(":"):
            port = int(rest[1:])
    elif text.count(":") == 1:
        host, raw_port = text.split(":")
        port = int(raw_port)
    if not host:
        raise ValueError(f"missing host in {text!r}")
    if not 0 < port <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    return host, port


def flatten_description(description: Any) -> str:
    """
    Purpose: Turn a status 'description' (plain string or chat component) into plain text.
    Outputs: Text with formatting codes removed.
    """
    return _FORMATTING_CODES.sub("", _component_text(description)).strip()


def _component_text(component: Any) -> str:
    if component is None:
        return ""
    if isinstance(component, str):
        return component
    if isinstance(component, list):
        return "".join(_component_text(part) for part in component)
    if isinstance(component, dict):
        text = str(component.get("text", "") or "")
        text += "".join(_component_text(part) for part in component.get("extra", []) or [])
        if not text and "translate" in component:
            text = str(component["translate"])
        return text
    return str(component)
