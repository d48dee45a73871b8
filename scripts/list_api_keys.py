from __future__ import annotations

import argparse
import asyncio
from datetime import timedelta
import sys

from sqlalchemy import select

from apptnotify.domain.models import ApiKey, User
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="List API keys and their lifecycle state")
    parser.add_argument("--role", default=None, help="Only show keys for this role")
    parser.add_argument(
        "--inactive-days",
        type=int,
        default=90,
        help="Flag keys unused for at least this number of days",
    )
    parser.add_argument("--inactive-only", action="store_true", help="Show only stale or expired keys")
    return parser


async def _list_keys(args: argparse.Namespace) -> int:
    # Never prints secrets; only the stored prefix identifies a key.
    query = select(ApiKey, User).join(User, ApiKey.user_id == User.id).order_by(ApiKey.created_at.desc())
    if args.role:
        query = query.where(User.role == args.role.strip().lower())
    async with SessionLocal() as session:
        rows = (await session.execute(query)).all()

    now = utc_now()
    threshold = timedelta(days=max(1, int(args.inactive_days)))
    print("key_id\tprefix\tname\trole\tlast_used_at\texpires_at\trevoked_at\tusable\tinactive_days")
    for api_key, user in rows:
        expired = api_key.expires_at is not None and api_key.expires_at <= now
        usable = bool(user.is_active) and api_key.revoked_at is None and not expired
        idle = now - (api_key.last_used_at or api_key.created_at)
        if args.inactive_only and idle < threshold and not expired:
            continue
        print(
            f"{api_key.id}\t{api_key.key_prefix}\t{api_key.name or ''}\t{user.role}\t"
            f"{api_key.last_used_at.isoformat() if api_key.last_used_at else ''}\t"
            f"{api_key.expires_at.isoformat() if api_key.expires_at else ''}\t"
            f"{api_key.revoked_at.isoformat() if api_key.revoked_at else ''}\t"
            f"{usable}\t{idle.days}"
        )
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_list_keys(args))
    except Exception as exc:  # noqa: BLE001 - show full operator-facing error context.
        print(f"list_api_keys failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
