"""
Design (storage.py)
- Purpose: Load and save the tracked-server list to/from disk (JSON), and resolve data file paths.
- Inputs: Path (from resolve_data_path()), list of TrackedServer for save.
- Outputs: list[TrackedServer] (plus the next free id) on load; None on save.
- File format: {"next_id": N, "servers": [...]}. next_id only grows, so ids are never reused.
- Side effects: Reads/writes file. A missing/corrupt file loads as an empty list, unless strict=True
                (RegistryUnavailable). Save failures raise OSError so the registry can report them.
- Thread-safety: Callers serialize (the registry saves under its own lock).
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import RegistryUnavailable
from .models import TrackedServer

_LOGGER = logging.getLogger(__name__)


def resolve_data_path(filename: str) -> Path:
    """
    Resolve a data file path. Absolute paths (and ':memory:') are used as given; relative ones
    land under MCMONITOR_DATA_DIR when set, else the working directory.
    """
    if filename == ":memory:":
        return Path(filename)
    path = Path(filename).expanduser()
    if path.is_absolute():
        return path
    base = os.environ.get("MCMONITOR_DATA_DIR")
    return (Path(base) if base else Path.cwd()) / path


def load_server_file(path: Path, strict: bool = False) -> Tuple[List[TrackedServer], int]:
    """
    Load servers and the id high-water mark from the JSON file.
    Returns ([], 1) on a missing file or parse error (strict=True raises RegistryUnavailable
    instead); malformed entries are skipped. A bare JSON array is accepted as well.
    """
    if not path.exists():
        return [], 1
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        if strict:
            raise RegistryUnavailable(f"cannot read server list {path}: {exc}") from exc
        _LOGGER.warning("Could not read server list %s: %s", path, exc)
        return [], 1
    next_id = 1
    if isinstance(data, dict):
        try:
            next_id = int(data.get("next_id", 1))
        except (TypeError, ValueError):
            _LOGGER.warning("Ignoring malformed next_id in %s: %r", path, data.get("next_id"))
        data = data.get("servers")
    if not isinstance(data, list):
        if strict:
            raise RegistryUnavailable(f"server list {path} has no 'servers' array")
        return [], 1
    servers: List[TrackedServer] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            servers.append(
                TrackedServer(
                    id=int(item["id"]),
                    name=str(item.get("name", "")),
                    address=str(item["address"]),
                    port=int(item.get("port", 25565)),
                    created_at=str(item.get("created_at", "")),
                )
            )
        except (KeyError, TypeError, ValueError):
            _LOGGER.warning("Skipping malformed server entry in %s: %r", path, item)
            continue
    next_id = max([next_id] + [s.id + 1 for s in servers])
    return servers, next_id


def load_servers(path: Path, strict: bool = False) -> List[TrackedServer]:
    return load_server_file(path, strict=strict)[0]


def save_servers(servers: List[TrackedServer], path: Path, next_id: Optional[int] = None) -> None:
    """Write the server list atomically (temp file + replace). next_id defaults to max(id) + 1."""
    if next_id is None:
        next_id = max((s.id for s in servers), default=0) + 1
    data = {
        "next_id": next_id,
        "servers": [
            {
                "id": s.id,
                "name": s.name,
                "address": s.address,
                "port": s.port,
                "created_at": s.created_at,
            }
            for s in servers
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    os.replace(tmp, path)
