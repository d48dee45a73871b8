from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import sys

from apptnotify.persistence.db import SessionLocal
from apptnotify.services.audit import record_event
from apptnotify.services.auth.api_keys import normalize_role, provision_api_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental key misuse.
    parser = argparse.ArgumentParser(description="Create an API key for a staff member or admin")
    parser.add_argument("--role", required=True, help="Role: customer|staff|admin")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--expires-at", default=None, help="Optional ISO-8601 expiry with UTC offset")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    expires_at = datetime.fromisoformat(args.expires_at) if args.expires_at else None
    if expires_at is not None and expires_at.tzinfo is None:
        raise ValueError("--expires-at must include a UTC offset")

    async with SessionLocal() as session:
        raw_key, api_key, user = await provision_api_key(
            session=session,
            role=role,
            email=args.email,
            name=args.name,
            user_id=args.user_id,
            expires_at=expires_at,
        )
        # Record API key creation for security investigations.
        await record_event(
            session=session,
            actor_type="system",
            actor_id="create_api_key",
            actor_role=user.role,
            action="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=api_key.id,
            metadata={"user_id": user.id, "key_prefix": api_key.key_prefix, "key_name": args.name},
            commit=True,
            best_effort=False,
        )

    print("API key created:")
    print(f"  key_id: {api_key.id}")
    print(f"  user_id: {user.id} ({user.role})")
    print(f"  key_prefix: {api_key.key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
