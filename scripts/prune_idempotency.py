from __future__ import annotations

import asyncio

from apptnotify.core.logging import configure_logging
from apptnotify.persistence.db import SessionLocal
from apptnotify.services.idempotency import prune_expired_idempotency_records


async def prune() -> None:
    # Remove expired idempotency records to keep storage bounded.
    configure_logging()
    async with SessionLocal() as session:
        deleted = await prune_expired_idempotency_records(session=session)
    print(f"pruned_idempotency_records={deleted}")


if __name__ == "__main__":
    asyncio.run(prune())
