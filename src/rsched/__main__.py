"""Entry point: python -m rsched [run|create|list|delete|runs]"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from rsched.infrastructure.config import DB_PATH, DEFAULT_TIMEZONE
from rsched.infrastructure.logger import logger
from rsched.scheduling.errors import SchedulerError
from rsched.scheduling.timezone import format_for_user
from rsched.scheduling.types import SCHEDULE_TYPES, Schedule


async def main(db_path: Path) -> None:
    from rsched.app import Orchestrator

    orchestrator = Orchestrator()

    # Handle graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await orchestrator.start(db_path)
        await shutdown_event.wait()
    except KeyboardInterrupt:
        pass
    finally:
        await orchestrator.shutdown()


def _schedule_row(schedule: Schedule, tz: str) -> dict:
    return {
        "id": schedule.id,
        "name": schedule.name,
        "schedule_type": schedule.schedule_type,
        "schedule_data": schedule.schedule_data.model_dump(mode="json", exclude={"schedule_type"}),
        "next_run_at": format_for_user(schedule.next_run_at, tz) if schedule.next_run_at else None,
        "last_run_at": format_for_user(schedule.last_run_at, tz) if schedule.last_run_at else None,
        "collection_id": schedule.collection_id,
        "search_id": schedule.search_id,
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rsched", description="Recurring search scheduler")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="SQLite database path")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("run", help="Run the dispatcher until interrupted")

    create = sub.add_parser("create", help="Create a schedule")
    create.add_argument("--user", required=True)
    create.add_argument("--name", required=True)
    create.add_argument("--type", dest="schedule_type", required=True, choices=SCHEDULE_TYPES)
    create.add_argument("--data", required=True, help='JSON schedule data, e.g. \'{"time": "17:00"}\'')
    create.add_argument("--collection-id", type=int)
    create.add_argument("--search-id", type=int)
    create.add_argument("--timezone", default=DEFAULT_TIMEZONE)

    list_cmd = sub.add_parser("list", help="List a user's active schedules")
    list_cmd.add_argument("--user", required=True)
    list_cmd.add_argument("--timezone", default="UTC", help="Display zone")

    delete = sub.add_parser("delete", help="Deactivate a schedule")
    delete.add_argument("schedule_id", type=int)
    delete.add_argument("--user", required=True)

    runs = sub.add_parser("runs", help="Show the run history of a schedule")
    runs.add_argument("schedule_id", type=int)
    return parser


def run_command(args: argparse.Namespace) -> int:
    from rsched.app import Orchestrator

    orchestrator = Orchestrator()
    orchestrator.open(args.db)
    manager = orchestrator.manager
    try:
        if args.command == "create":
            try:
                data = json.loads(args.data)
            except json.JSONDecodeError as err:
                print(f"Invalid --data JSON: {err}", file=sys.stderr)
                return 2
            schedule = manager.create(
                args.user, args.name, args.schedule_type, data,
                collection_id=args.collection_id, search_id=args.search_id, user_timezone=args.timezone,
            )
            print(json.dumps(_schedule_row(schedule, schedule.schedule_data.timezone), indent=2))
        elif args.command == "list":
            rows = [_schedule_row(s, args.timezone) for s in manager.list_active(args.user)]
            print(json.dumps(rows, indent=2))
        elif args.command == "delete":
            manager.deactivate(args.schedule_id, args.user)
            print(json.dumps({"success": True}))
        elif args.command == "runs":
            runs = [r.model_dump(mode="json") for r in manager.list_runs(args.schedule_id)]
            print(json.dumps(runs, indent=2))
    except SchedulerError as err:
        print(f"Error: {err}", file=sys.stderr)
        return 1
    finally:
        orchestrator.close()
    return 0


def run(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    if args.command in (None, "run"):
        try:
            asyncio.run(main(args.db))
        except KeyboardInterrupt:
            pass
        return
    sys.exit(run_command(args))


if __name__ == "__main__":
    run()
