from __future__ import annotations

import asyncio

from apptnotify.core.logging import configure_logging
from apptnotify.persistence.db import create_schema


async def _main() -> None:
    # Idempotent: create_all skips tables that already exist.
    configure_logging()
    await create_schema()
    print("schema_ready=true")


if __name__ == "__main__":
    asyncio.run(_main())
