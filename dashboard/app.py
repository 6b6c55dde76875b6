"""
goal: flask web dashboard for ProcWarden. read-only JSON API over the process table, thread lists,
      history and rule verdicts kept by the repository, plus a live feed of scan events. runs
      entirely locally without cloud dependencies.

what this app is responsible for:
- event ingestion: subscribes to the event bus and drains scan events (changesets, verdicts,
  alerts) into a bounded ring buffer that the frontend polls through /api/events
- process views: the stored process table, one process with its threads, its newest-first history
- verdicts on demand: /api/suspicious runs the enabled rules over the stored processes
- process tree: parent/child tree built from parent_process_id

how data flows through the app:
1. the scanner publishes events to the event bus after every cycle
2. any API call drains pending events from the bus into the buffer (bounded in time and count)
3. process, thread and history endpoints read straight from the repository

nothing here writes to the repository; rules are edited in the rules file, not through the API.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, make_response, request

from agent.monitor import uptime
from agent.repository import Repository
from agent.rules_engine import evaluate, partition_rules
from dashboard.config import Config, load_config

log = logging.getLogger("procwarden.dashboard")

# single waitress optional block, flask's own server is the fallback
try:
    from waitress import serve as _serve  # type: ignore[import-untyped]

    HAVE_WAITRESS = True
except ImportError:
    HAVE_WAITRESS = False
    _serve = None  # type: ignore

DRAIN_LIMIT_PER_CALL = 300  # max events to drain per API call
DRAIN_DEADLINE_SEC = 0.25  # max seconds to spend draining per call
HISTORY_LIMIT_MAX = 1000


# subscribe to the event bus and return an iterator that yields events
def _bus_iterator(bus: Any) -> Iterator[dict[str, Any] | None]:
    return bus.subscribe()


def _read_version(base_dir: Path) -> tuple[str, str]:
    version = "-"
    build = "-"
    vpath = base_dir / "VERSION.txt"
    if vpath.exists():
        try:
            raw = vpath.read_text(encoding="utf-8").splitlines()
            lines = [line.strip() for line in raw if line.strip()]
        except OSError:
            lines = []
        if len(lines) >= 1:
            version = lines[0]
        if len(lines) >= 2:
            build = lines[1]
    return version, build


def _int_arg(name: str, default: int, low: int, high: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    value = int(raw)  # ValueError is turned into a 400 by the error handler
    return max(low, min(high, value))


def build_app(repository: Repository, event_bus: Any = None, cfg: Config | None = None) -> Flask:
    cfg = cfg or load_config()
    app = Flask(__name__)
    app.json.sort_keys = False  # keep the field order of to_dict()

    buffer: deque[dict[str, Any]] = deque(maxlen=cfg.buffer_max)  # ring buffer of recent events
    drain_lock = threading.Lock()  # to prevent concurrent drains
    events_iter = _bus_iterator(event_bus) if event_bus is not None else None
    app.extensions["procwarden"] = {"buffer": buffer, "repository": repository, "cfg": cfg}

    def drain_into_buffer() -> int:
        if events_iter is None:
            return 0
        with drain_lock:
            drained = 0
            deadline = time.time() + DRAIN_DEADLINE_SEC
            while time.time() < deadline and drained < DRAIN_LIMIT_PER_CALL:
                try:
                    ev = next(events_iter)
                except StopIteration:
                    break
                if ev is None:
                    break  # bus is idle, nothing more to take right now
                buffer.append(ev)
                drained += 1
            return drained

    @app.errorhandler(ValueError)
    def bad_request(exc: ValueError):
        return jsonify({"error": f"bad request: {exc}"}), 400

    # ping endpoint: lightweight drain trigger to keep event ingestion going
    @app.get("/api/ping")
    def ping():
        n = drain_into_buffer()
        return jsonify({"ok": True, "drained": n, "buffer": len(buffer)})

    @app.get("/api/about")
    def about():
        version, build = _read_version(cfg.base_dir)
        return jsonify(
            {
                "version": version,
                "build": build,
                "buffer_max": cfg.buffer_max,
                "scan_interval_sec": cfg.scan_interval_sec,
                "processes": len(repository.list_processes()),
                "host_uptime_sec": int(uptime().total_seconds()),
            }
        )

    # event stream API: return events from the buffer, optionally only one type
    @app.get("/api/events")
    def events():
        drain_into_buffer()
        kind = (request.args.get("type") or "").lower()
        limit = _int_arg("limit", cfg.buffer_max, 1, cfg.buffer_max)
        rows = [ev for ev in buffer if not kind or ev.get("type") == kind]
        return jsonify(rows[-limit:])

    @app.get("/api/processes")
    def processes():
        name = (request.args.get("name") or "").lower()
        rows = [
            p.to_dict(include_threads=False)
            for p in repository.list_processes()
            if not name or name in (p.name or "").lower()
        ]
        rows.sort(key=lambda r: r["process_id"])
        return jsonify(rows)

    @app.get("/api/processes/<int:pid>")
    def process_detail(pid: int):
        proc = repository.get_process(pid)
        if proc is None:
            return jsonify({"error": f"no process {pid}"}), 404
        return jsonify(proc.to_dict())

    @app.get("/api/processes/<int:pid>/threads")
    def process_threads(pid: int):
        if repository.get_process(pid) is None:
            return jsonify({"error": f"no process {pid}"}), 404
        return jsonify([t.to_dict() for t in repository.get_threads(pid)])

    @app.get("/api/processes/<int:pid>/history")
    def process_history(pid: int):
        limit = _int_arg("limit", 100, 0, HISTORY_LIMIT_MAX)
        return jsonify([r.to_dict() for r in repository.get_history(pid, limit=limit)])

    @app.get("/api/suspicious")
    def suspicious():
        rules, _ = partition_rules(repository.list_rules(enabled_only=True))
        rows = []
        for proc in repository.list_processes():
            verdict = evaluate(proc, rules)
            if verdict.is_suspicious:
                rows.append({**proc.to_dict(include_threads=False), "reason": verdict.reason})
        rows.sort(key=lambda r: r["process_id"])
        return jsonify(rows)

    # process tree API: parent/child tree from the stored process table
    @app.get("/api/proctree")
    def proctree():
        """
        return the compact process tree.

        query params:
          as=json  -> download pretty JSON (procwarden_proctree.json)
          (none)   -> return JSON to the browser (not as attachment)
        """
        index = {p.process_id: p for p in repository.list_processes()}
        children: dict[int, list[int]] = {}
        roots: list[int] = []
        for pid, proc in index.items():
            ppid = proc.parent_process_id
            if isinstance(ppid, int) and ppid in index and ppid != pid:
                children.setdefault(ppid, []).append(pid)
            else:
                roots.append(pid)

        def build(pid: int, seen: frozenset[int]) -> dict[str, Any]:
            proc = index[pid]
            kids = [c for c in sorted(children.get(pid, [])) if c not in seen]
            return {
                "pid": pid,
                "ppid": proc.parent_process_id,
                "name": proc.name,
                "owner": proc.owner,
                "children": [build(c, seen | {c}) for c in kids[: cfg.max_tree_children]],
            }

        tree = [build(p, frozenset({p})) for p in sorted(roots)[: cfg.max_tree_roots]]

        fmt = (request.args.get("as") or "").lower()
        if fmt == "json":
            resp = make_response(json.dumps(tree, indent=2, ensure_ascii=False))
            resp.headers["Content-Type"] = "application/json"
            resp.headers["Content-Disposition"] = 'attachment; filename="procwarden_proctree.json"'
            return resp
        return jsonify(tree)

    return app


def run_dashboard(repository: Repository, event_bus: Any = None, cfg: Config | None = None) -> None:
    cfg = cfg or load_config()
    app = build_app(repository, event_bus, cfg)
    log.info("dashboard listening on http://%s:%s", cfg.host, cfg.port)
    try:
        if HAVE_WAITRESS:
            _serve(app, host=cfg.host, port=cfg.port)
        else:
            app.run(host=cfg.host, port=cfg.port, debug=False)
    except (SystemExit, KeyboardInterrupt):
        pass  # expected when shutting down
