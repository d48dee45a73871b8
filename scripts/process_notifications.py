from __future__ import annotations

import argparse
import asyncio
import json

from apptnotify.core.logging import configure_logging
from apptnotify.services.producers import schedule_appointment_reminders, schedule_daily_staff_notifications
from apptnotify.services.queue import process_batch
from apptnotify.services.webhooks.reconciler import reconcile_batch


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one notification job outside the arq scheduler")
    parser.add_argument(
        "job",
        choices=["process", "reminders", "daily-schedule", "reconcile"],
        help="Job to run once",
    )
    parser.add_argument("--limit", type=int, default=None, help="Batch size for process/reconcile")
    return parser


async def _main(args: argparse.Namespace) -> None:
    configure_logging()
    if args.job == "process":
        result = (await process_batch(limit=args.limit)).as_dict()
    elif args.job == "reminders":
        result = (await schedule_appointment_reminders()).as_dict()
    elif args.job == "daily-schedule":
        result = (await schedule_daily_staff_notifications()).as_dict()
    else:
        result = await reconcile_batch(limit=args.limit)
    print(json.dumps(result, indent=2, sort_keys=True))


if __name__ == "__main__":
    asyncio.run(_main(_build_parser().parse_args()))
