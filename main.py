"""
Command line entry point.

Usage examples:
    python main.py run                         # headless monitor, aligned sweeps until Ctrl+C
    python main.py run --interval 60 --workers 16
    python main.py add "Survival" mc.example.com:25565
    python main.py list
    python main.py ping 1                      # manual probe of server 1
    python main.py sweep                       # one sweep over all servers, then exit
    python main.py history 1 --range week
    python main.py history 1 --since-id 120    # only records newer than id 120
    python main.py remove 1                    # also deletes its history
"""

import argparse
import json
import logging
import os
import signal
import sqlite3
import sys
import threading

from mcmonitor.config import DEFAULT_PORT, Settings
from mcmonitor.errors import ConfigError, MonitorError
from mcmonitor.notify import Notifier
from mcmonitor.pingstore import PingStore
from mcmonitor.query import QueryService
from mcmonitor.registry import ServerRegistry
from mcmonitor.scheduler import ProbeScheduler
from mcmonitor.storage import resolve_data_path
from mcmonitor.utils import parse_address

_LOGGER = logging.getLogger("mcmonitor")


def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Minecraft server uptime monitor")
    ap.add_argument("--db", help="Ping history database (default: pings.db)")
    ap.add_argument("--servers", help="Tracked server list (default: servers.json)")
    ap.add_argument("--log-level", default=os.environ.get("MCMONITOR_LOG_LEVEL", "INFO"),
                    choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Probe all servers on aligned ticks until interrupted")
    run.add_argument("--interval", type=int, help="Seconds between aligned sweeps (default 600)")
    run.add_argument("--workers", type=int, help="Concurrent probes per sweep")
    run.add_argument("--timeout", type=float, help="Per-probe timeout in seconds")
    run.add_argument("--retention-days", type=int, help="Prune history older than this (0 = keep)")
    run.add_argument("--no-initial-sweep", dest="sweep_on_start", action="store_false", default=None)
    run.add_argument("--legacy", dest="legacy_fallback", action="store_true", default=None,
                     help="Fall back to the pre-1.7 legacy ping when SLP framing fails")
    run.add_argument("--notify", dest="notifications", action="store_true", default=None,
                     help="Desktop notification when a server goes online/offline")

    sub.add_parser("sweep", help="Probe every tracked server once and store the results")

    sub.add_parser("list", help="Tracked servers with their last known status")

    add = sub.add_parser("add", help="Track a server")
    add.add_argument("name")
    add.add_argument("address", help="host or host:port")

    remove = sub.add_parser("remove", help="Stop tracking a server and delete its history")
    remove.add_argument("server_id", type=int)

    ping = sub.add_parser("ping", help="Probe one server now and store the result")
    ping.add_argument("server_id", type=int)

    history = sub.add_parser("history", help="Print stored history as JSON")
    history.add_argument("server_id", type=int)
    history.add_argument("--range", dest="time_range", choices=["day", "week", "month"], default="day")
    history.add_argument("--since-id", type=int)
    history.add_argument("--downsample", action="store_true")
    return ap


def load_settings(args) -> Settings:
    return Settings.from_env().with_overrides(
        database_path=args.db,
        servers_path=args.servers,
        interval_sec=getattr(args, "interval", None),
        max_workers=getattr(args, "workers", None),
        timeout_sec=getattr(args, "timeout", None),
        retention_days=getattr(args, "retention_days", None),
        sweep_on_start=getattr(args, "sweep_on_start", None),
        legacy_fallback=getattr(args, "legacy_fallback", None),
        notifications=getattr(args, "notifications", None),
    ).validate()


def run_forever(scheduler: ProbeScheduler) -> None:
    stop = threading.Event()

    def _request_stop(signum, _frame):
        _LOGGER.info("Signal %d received, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)
    scheduler.start()
    while not stop.wait(1.0):
        pass
    scheduler.stop(wait=True)


def main(argv=None) -> int:
    args = build_argparser().parse_args(argv)
    logging.basicConfig(level=args.log_level,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        settings = load_settings(args)
    except ConfigError as exc:
        _LOGGER.error("Invalid configuration: %s", exc)
        return 2

    store = scheduler = None
    try:
        store = PingStore(resolve_data_path(settings.database_path))
        registry = ServerRegistry(resolve_data_path(settings.servers_path), store=store)
        scheduler = ProbeScheduler(registry, store, settings=settings,
                                   notifier=Notifier(enabled=settings.notifications))
        queries = QueryService(store, registry=registry, scheduler=scheduler)

        if args.command == "run":
            run_forever(scheduler)
        elif args.command == "sweep":
            report = scheduler.run_sweep(trigger="manual")
            if report is None:
                _LOGGER.error("Sweep skipped, server list unavailable")
                return 1
            print(f"Probed {report.launched} servers in {report.duration:.2f}s: "
                  f"{report.online} online, {report.offline} offline, {report.dropped} dropped")
        elif args.command == "list":
            print(json.dumps(queries.server_overview(), indent=2))
        elif args.command == "add":
            host, port = parse_address(args.address, DEFAULT_PORT)
            server = registry.add(args.name, host, port)
            print(f"Added server {server.id}: {server.name} ({server.target})")
        elif args.command == "remove":
            registry.remove(args.server_id)
            scheduler.forget(args.server_id)
            print(f"Removed server {args.server_id}")
        elif args.command == "ping":
            result = queries.trigger_manual_probe(args.server_id)
            state = "ONLINE" if result.online else "OFFLINE"
            players = f" {result.player_count}/{result.player_max} players" if result.online else ""
            print(f"Server {args.server_id}: {state}{players}")
        elif args.command == "history":
            records = queries.list_records(args.server_id, time_range=args.time_range,
                                           since_id=args.since_id, downsample=args.downsample)
            print(json.dumps(records, indent=2))
    except (MonitorError, ValueError) as exc:
        _LOGGER.error("%s", exc)
        return 1
    except (sqlite3.Error, OSError) as exc:
        _LOGGER.error("Cannot open data files: %s", exc)
        return 1
    finally:
        if scheduler is not None and args.command != "run":
            scheduler.stop(wait=False)
        if store is not None:
            store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
