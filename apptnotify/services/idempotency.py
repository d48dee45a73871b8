from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timedelta
import hashlib
import logging
import time
from typing import Callable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from apptnotify.core.config import get_settings
from apptnotify.core.errors import IdempotencyConflict, ValidationError
from apptnotify.domain.models import IdempotencyRecord
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import SessionLocal
from apptnotify.persistence.upsert import dialect_insert


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
REPLAY_HEADER = "Idempotency-Replayed"
_MAX_KEY_LENGTH = 128

STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"

SessionFactory = Callable[[], AsyncSession]


@dataclass(frozen=True)
class IdempotencyReservation:
    # Held by the one request allowed to execute for a given key.
    record_id: int
    actor_id: str
    key: str
    request_hash: str


@dataclass(frozen=True)
class IdempotencyReplay:
    # Stored response returned verbatim to duplicate requests.
    status_code: int
    body: str | None
    media_type: str | None


def normalize_idempotency_key(value: str) -> str:
    # Enforce idempotency key size constraints for storage safety.
    cleaned = value.strip()
    if not cleaned:
        raise ValidationError("Idempotency-Key is empty", code="IDEMPOTENCY_KEY_INVALID")
    if len(cleaned) > _MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency-Key exceeds {_MAX_KEY_LENGTH} characters",
            code="IDEMPOTENCY_KEY_INVALID",
        )
    return cleaned


def compute_request_hash(*, method: str, path: str, body: bytes) -> str:
    # Fingerprint the request without persisting its payload.
    digest = hashlib.sha256()
    digest.update(method.upper().encode("utf-8"))
    digest.update(b"\n")
    digest.update(path.encode("utf-8"))
    digest.update(b"\n")
    digest.update(body or b"")
    return digest.hexdigest()


async def _try_reserve(
    *,
    session: AsyncSession,
    actor_id: str,
    key: str,
    method: str,
    path: str,
    request_hash: str,
    ttl_hours: int,
) -> IdempotencyRecord | IdempotencyReservation | None:
    now = utc_now()
    # Expired rows and reservations abandoned by a crashed request never block a new one.
    abandoned_before = now - timedelta(seconds=max(1, get_settings().idempotency_in_progress_ttl_s))
    await session.execute(
        delete(IdempotencyRecord).where(
            IdempotencyRecord.actor_id == actor_id,
            IdempotencyRecord.idem_key == key,
            or_(
                IdempotencyRecord.expires_at <= now,
                and_(
                    IdempotencyRecord.state == STATE_IN_PROGRESS,
                    IdempotencyRecord.created_at <= abandoned_before,
                ),
            ),
        )
    )
    stmt = (
        dialect_insert(session, IdempotencyRecord)
        .values(
            actor_id=actor_id,
            idem_key=key,
            method=method,
            path=path,
            request_hash=request_hash,
            state=STATE_IN_PROGRESS,
            created_at=now,
            expires_at=now + timedelta(hours=max(1, ttl_hours)),
        )
        .on_conflict_do_nothing(index_elements=["actor_id", "idem_key"])
        .returning(IdempotencyRecord.id)
    )
    inserted_id = (await session.execute(stmt)).scalar_one_or_none()
    await session.commit()
    if inserted_id is not None:
        return IdempotencyReservation(
            record_id=int(inserted_id),
            actor_id=actor_id,
            key=key,
            request_hash=request_hash,
        )
    existing = (
        await session.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.actor_id == actor_id, IdempotencyRecord.idem_key == key)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    return existing


async def reserve_idempotency_key(
    *,
    actor_id: str,
    key: str,
    method: str,
    path: str,
    request_hash: str,
    session_factory: SessionFactory | None = None,
) -> tuple[IdempotencyReservation | None, IdempotencyReplay | None]:
    """Claim ``key`` for this request or find the response to replay.

    Exactly one of the returned pair is set. The unique (actor, key)
    constraint guarantees two simultaneous requests never both execute: the
    loser waits for the winner to finish (bounded by
    ``idempotency_wait_timeout_ms``) and then replays its response. A key
    reused with a different fingerprint raises ``IdempotencyConflict``.
    """

    settings = get_settings()
    factory = session_factory or SessionLocal
    deadline = time.monotonic() + max(0, settings.idempotency_wait_timeout_ms) / 1000.0
    poll_s = max(10, settings.idempotency_poll_interval_ms) / 1000.0
    while True:
        async with factory() as session:
            outcome = await _try_reserve(
                session=session,
                actor_id=actor_id,
                key=key,
                method=method.upper(),
                path=path,
                request_hash=request_hash,
                ttl_hours=settings.idempotency_ttl_hours,
            )
        if isinstance(outcome, IdempotencyReservation):
            return outcome, None
        if outcome is not None:
            if outcome.request_hash != request_hash:
                raise IdempotencyConflict("Idempotency-Key already used with a different request")
            if outcome.state == STATE_COMPLETED and outcome.response_status is not None:
                return None, IdempotencyReplay(
                    status_code=outcome.response_status,
                    body=outcome.response_body,
                    media_type=outcome.response_media_type,
                )
        # Either the original is still running or its reservation was just released.
        if time.monotonic() >= deadline:
            raise IdempotencyConflict("A request with this Idempotency-Key is still in progress")
        await asyncio.sleep(poll_s)


async def complete_idempotency_key(
    *,
    reservation: IdempotencyReservation,
    status_code: int,
    body: str | None,
    media_type: str | None,
    session_factory: SessionFactory | None = None,
) -> None:
    # Persist the exact response text so replays are byte-identical.
    factory = session_factory or SessionLocal
    async with factory() as session:
        await session.execute(
            update(IdempotencyRecord)
            .where(
                IdempotencyRecord.id == reservation.record_id,
                IdempotencyRecord.state == STATE_IN_PROGRESS,
            )
            .values(
                state=STATE_COMPLETED,
                response_status=status_code,
                response_body=body,
                response_media_type=media_type,
            )
        )
        await session.commit()


async def release_idempotency_key(
    *,
    reservation: IdempotencyReservation,
    session_factory: SessionFactory | None = None,
) -> None:
    # Drop an unfinished reservation so the client can retry after a server-side failure.
    factory = session_factory or SessionLocal
    async with factory() as session:
        await session.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.id == reservation.record_id,
                IdempotencyRecord.state == STATE_IN_PROGRESS,
            )
        )
        await session.commit()


async def prune_expired_idempotency_records(*, session: AsyncSession) -> int:
    result = await session.execute(delete(IdempotencyRecord).where(IdempotencyRecord.expires_at < utc_now()))
    await session.commit()
    deleted = result.rowcount or 0
    logger.info("idempotency_records_pruned count=%s", deleted)
    return deleted
