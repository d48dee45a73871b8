from __future__ import annotations

import argparse
import asyncio
import sys

from apptnotify.domain.models import ApiKey
from apptnotify.persistence.db import SessionLocal
from apptnotify.services.audit import record_event
from apptnotify.services.auth.api_keys import revoke_api_key


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    return parser


async def _revoke_key(key_id: str) -> int:
    # Mark the key revoked without deleting history for audits.
    async with SessionLocal() as session:
        api_key = await session.get(ApiKey, key_id)
        if api_key is None:
            raise ValueError("API key not found")
        if not await revoke_api_key(session=session, key_id=key_id):
            print(f"API key {key_id} was already revoked")
            return 0
        await record_event(
            session=session,
            actor_type="system",
            actor_id="revoke_api_key",
            action="auth.api_key.revoked",
            outcome="success",
            resource_type="api_key",
            resource_id=api_key.id,
            metadata={"user_id": api_key.user_id, "key_prefix": api_key.key_prefix, "key_name": api_key.name},
            commit=True,
            best_effort=False,
        )
    print(f"Revoked API key {key_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args.key_id))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
