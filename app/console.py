# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: main launcher for ProcWarden: builds the scan pipeline (process source, enrichment, JSON
repository, event bus), runs scan cycles on a schedule and serves the read-only dashboard API.
uses an event bus to fan-out scan events to all subscribers (like the dashboard).
the terminal shows a short banner and one summary line per cycle while the work runs in threads.

    procwarden                 scan every scan_interval_sec seconds and serve the dashboard
    procwarden --once          run a single cycle, print its summary as JSON and exit
    procwarden --no-dashboard  scan on the schedule without the web API
"""

from __future__ import annotations  # lets us use string annotations before classes are defined

import argparse  # for parsing command line arguments
import json  # for printing the --once summary
import logging  # for configuring log output
import queue  # for event bus message queues
import threading  # for running the dashboard and the scheduler in background threads
import webbrowser  # for opening the dashboard in the browser
from dataclasses import replace
from typing import Any  # type hint for flexible dictionary values

from colorama import Fore, Style
from colorama import init as _colorama_init

from agent.enrichment import PsutilEnrichment
from agent.monitor import ProcessMonitor, PsutilProcessSource
from agent.repository import JsonRepository
from agent.scanner import ScanOrchestrator, ScanResult, ScanStatus
from dashboard.config import Config, load_config

log = logging.getLogger("procwarden")


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    # silence waitress web server log messages so the console stays clean
    logging.getLogger("waitress.queue").setLevel(logging.CRITICAL)
    logging.getLogger("waitress").setLevel(logging.CRITICAL)
    logging.getLogger("waitress.access").setLevel(logging.CRITICAL)


# --- banner ---
def print_banner(cfg: Config | None = None) -> None:
    _colorama_init()  # enable ANSI color codes on Windows terminals
    cyan, mag, dim, bold, reset = Fore.CYAN, Fore.MAGENTA, Style.DIM, Style.BRIGHT, Style.RESET_ALL
    where = f"http://{cfg.host}:{cfg.port}" if cfg is not None else "disabled"
    print(
        f"""
{dim}┌────────────────────────────────────────────────────────────┐{reset}
{dim}│{reset}{cyan}{bold}                 P r o c W a r d e n{reset}{dim}                        │{reset}
{dim}├────────────────────────────────────────────────────────────┤{reset}
{mag}   scan  ->  reconcile  ->  classify  ->  history{reset}
{dim}   dashboard:{reset} {cyan}{where}{reset}
{dim}│{reset}  Tip: if running in a terminal, press {cyan}Ctrl+C{reset} to quit.      {dim}│{reset}
{dim}└────────────────────────────────────────────────────────────┘{reset}
"""
    )


# --- end banner ---


class EventBus:
    """pub/sub fan-out: each subscriber gets every event."""

    def __init__(self, maxsize: int = 1000) -> None:
        self.maxsize = maxsize  # per-subscriber queue bound
        self._subs: list[queue.Queue] = []  # list of subscriber queues
        self._lock = threading.Lock()  # lock to protect the subscribers list from race conditions

    def publish(self, event: dict[str, Any]) -> None:
        # send an event to all subscribers (fan-out pattern)
        with self._lock:
            subs = list(self._subs)  # copy so we can iterate without holding the lock
        for q in subs:
            try:
                q.put_nowait(event)
            except queue.Full:  # a slow subscriber loses events instead of blocking the scan
                pass

    def subscribe(self):
        # create a new subscription and return an iterator that yields events
        q: queue.Queue = queue.Queue(maxsize=self.maxsize)
        with self._lock:
            self._subs.append(q)

        def _iter():
            while True:
                try:
                    yield q.get(timeout=0.5)  # wait up to 0.5 seconds for an event
                except queue.Empty:
                    yield None  # yield None to keep the iterator alive

        return _iter()


def build_pipeline(
    cfg: Config, bus: EventBus, stop_event: threading.Event | None = None
) -> tuple[JsonRepository, ScanOrchestrator]:
    repo = JsonRepository(
        rules_path=cfg.rules_path,
        state_path=cfg.state_path,
        history_path=cfg.history_path,
        history_per_process=cfg.history_per_process,
    )
    scanner = ScanOrchestrator(
        source=PsutilProcessSource(),
        gateway=PsutilEnrichment(),
        repository=repo,
        broadcaster=bus,
        max_workers=cfg.max_workers,
        lookup_timeout=cfg.lookup_timeout_sec,
        stop_event=stop_event,
    )
    return repo, scanner


def format_summary(result: ScanResult) -> str:
    s = result.summary()
    color = {
        ScanStatus.COMPLETED: Fore.GREEN,
        ScanStatus.ABORTED: Fore.RED,
        ScanStatus.CANCELLED: Fore.YELLOW,
    }[result.status]
    return (
        f"{color}{s['status']:<9}{Style.RESET_ALL} "
        f"+{s['added']} ~{s['updated']} -{s['removed']} "
        f"suspicious={s['suspicious']} alerts={s['alerts']} errors={s['errors']}"
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="procwarden", description="ProcWarden")
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single scan cycle, print its summary and exit",
    )
    parser.add_argument(
        "--no-dashboard",
        action="store_true",
        help="do not start the web dashboard",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="seconds between scan cycles (overrides scan_interval_sec)",
    )
    parser.add_argument(
        "--open",
        action="store_true",
        help="open the dashboard in the browser once it is up",
    )
    args = parser.parse_args(argv)

    cfg = load_config()
    if args.interval is not None:
        cfg = replace(cfg, scan_interval_sec=args.interval)
    setup_logging(cfg.log_level)

    bus = EventBus()  # create the event bus that will distribute events to all subscribers
    stop_event = threading.Event()  # shared by the scheduler and the scanner for clean shutdown
    try:
        repo, scanner = build_pipeline(cfg, bus, stop_event)
    except (OSError, ValueError) as exc:  # unreadable rules file and friends
        log.error("could not start: %s", exc)
        return 2

    if args.once:
        try:
            result = scanner.run_scan_cycle()
        finally:
            scanner.close()
        print(json.dumps(result.summary(), indent=2))
        return 0 if result.status is ScanStatus.COMPLETED else 1

    if not args.no_dashboard:
        from dashboard.app import run_dashboard  # imported here so --no-dashboard skips Flask

        threading.Thread(
            target=run_dashboard,
            kwargs={"repository": repo, "event_bus": bus, "cfg": cfg},
            name="dashboard",
            daemon=True,
        ).start()
        if args.open:
            threading.Timer(0.8, webbrowser.open, args=(f"http://{cfg.host}:{cfg.port}",)).start()

    def _cycle() -> None:
        print(format_summary(scanner.run_scan_cycle()), flush=True)

    monitor = ProcessMonitor(_cycle, interval_sec=cfg.scan_interval_sec, stop_event=stop_event)
    print_banner(None if args.no_dashboard else cfg)
    try:
        monitor.run()  # blocks; the scheduler owns the main thread
    except KeyboardInterrupt:
        print(f"\n{Fore.CYAN}➢{Style.RESET_ALL} Shutting down ProcWarden...\n")
    finally:
        monitor.stop()
        scanner.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
