from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta

from apptnotify.apps.api.rate_limit import prune_rate_limit_windows
from apptnotify.core.logging import configure_logging
from apptnotify.persistence.db import SessionLocal


async def prune(older_than_hours: int) -> None:
    # Closed windows are never read again once a new window starts.
    configure_logging()
    async with SessionLocal() as session:
        deleted = await prune_rate_limit_windows(session=session, older_than=timedelta(hours=older_than_hours))
    print(f"pruned_rate_limit_windows={deleted}")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Delete expired rate-limit windows")
    parser.add_argument("--older-than-hours", type=int, default=24)
    asyncio.run(prune(parser.parse_args().older_than_hours))
