"""
命令行入口。

Usage:
    formpilot init-db
    formpilot worker [--worker-id ID] [--job-type TYPE ...]
    formpilot reaper [--once]
    formpilot api [--host 127.0.0.1] [--port 8000]
"""

from __future__ import annotations

import argparse
import sys

from .config import load_settings
from .db.database import database_from_settings


def _cmd_init_db(args, settings) -> int:
    database = database_from_settings(settings)
    database.create_all()
    print(f"✓ 数据库已初始化: {settings.database_url}")
    return 0


def _cmd_worker(args, settings) -> int:
    from .core.worker import build_worker

    database = database_from_settings(settings)
    if args.job_types:
        settings.worker.job_types = list(args.job_types)
    database.create_all()
    runtime = build_worker(database, settings, worker_id=args.worker_id)
    runtime.install_signal_handlers()
    runtime.run_forever()
    database.dispose()
    return 0


def _cmd_reaper(args, settings) -> int:
    import signal

    from .core.lease_queue import JobLeaseQueue
    from .core.reaper import StaleJobReaper

    database = database_from_settings(settings)
    database.create_all()
    reaper = StaleJobReaper(
        JobLeaseQueue(database),
        max_heartbeat_age=settings.queue.stale_after_seconds,
        interval=settings.queue.reap_interval_seconds,
    )
    if args.once:
        report = reaper.run_once()
        print(f"✓ requeued={report.requeued} failed={report.failed}")
        return 0

    signal.signal(signal.SIGTERM, lambda *_: reaper.stop())
    signal.signal(signal.SIGINT, lambda *_: reaper.stop())
    reaper.run_forever()
    database.dispose()
    return 0


def _cmd_api(args, settings) -> int:
    import uvicorn

    from .app import create_app

    app = create_app(database_from_settings(settings))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="formpilot", description="FormPilot form-filling engine")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create database tables")

    worker = sub.add_parser("worker", help="Run a worker that claims and executes jobs")
    worker.add_argument("--worker-id", default=None, help="Worker id (default: hostname-pid)")
    worker.add_argument(
        "--job-type",
        action="append",
        dest="job_types",
        help="Only claim jobs of this type (repeatable; default: all types)",
    )

    reaper = sub.add_parser("reaper", help="Requeue or fail jobs with stale heartbeats")
    reaper.add_argument("--once", action="store_true", help="Run a single reap pass and exit")

    api = sub.add_parser("api", help="Serve the job submission API")
    api.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    api.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")

    args = parser.parse_args(argv)
    settings = load_settings()
    handlers = {
        "init-db": _cmd_init_db,
        "worker": _cmd_worker,
        "reaper": _cmd_reaper,
        "api": _cmd_api,
    }
    return handlers[args.command](args, settings)


if __name__ == "__main__":
    sys.exit(main())
