from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field
from starlette.responses import Response

from apptnotify.apps.api.security import (
    ADMIN_ONLY,
    CRITICAL_OPERATION,
    OperationResult,
    SecurityContext,
    run_secured,
)
from apptnotify.domain.models import DeadLetterItem
from apptnotify.persistence.db import get_session
from apptnotify.services.dead_letters import (
    dead_letter_statistics,
    get_dead_letter,
    list_dead_letters,
    resolve_dead_letter,
    retry_dead_letter,
)


router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])

ADMIN_CRITICAL = replace(CRITICAL_OPERATION, allowed_roles=frozenset({"admin"}))


class DeadLetterResponse(BaseModel):
    id: str
    notification_id: str
    type: str
    channel: str
    recipient: str
    subject: str | None
    failure_type: str
    failure_reason: str | None
    total_attempts: int
    is_permanent: bool
    retry_eligible: bool
    metadata: dict[str, Any]
    resolved_at: datetime | None
    resolved_by: str | None
    resolution_action: str | None
    resolution_notes: str | None
    retry_notification_id: str | None
    created_at: datetime


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterResponse]
    limit: int
    offset: int


class RetryRequest(BaseModel):
    # Replacement address; required for invalid-recipient and hard-bounce items.
    recipient: str | None = Field(default=None, max_length=320)
    notes: str | None = Field(default=None, max_length=1000)


class ResolveRequest(BaseModel):
    action: str = Field(min_length=1, max_length=32)
    notes: str | None = Field(default=None, max_length=1000)


def dead_letter_payload(item: DeadLetterItem) -> DeadLetterResponse:
    return DeadLetterResponse(
        id=item.id,
        notification_id=item.notification_id,
        type=item.type,
        channel=item.channel,
        recipient=item.recipient,
        subject=item.subject,
        failure_type=item.failure_type,
        failure_reason=item.failure_reason,
        total_attempts=item.total_attempts,
        is_permanent=item.is_permanent,
        retry_eligible=item.retry_eligible,
        metadata=dict(item.metadata_json or {}),
        resolved_at=item.resolved_at,
        resolved_by=item.resolved_by,
        resolution_action=item.resolution_action,
        resolution_notes=item.resolution_notes,
        retry_notification_id=item.retry_notification_id,
        created_at=item.created_at,
    )


@router.api_route("", methods=["GET", "OPTIONS"])
async def read_dead_letters(
    request: Request,
    failure_type: str | None = Query(default=None),
    channel: str | None = Query(default=None),
    resolved: bool | None = Query(default=None),
    retry_eligible: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            items = await list_dead_letters(
                session=session,
                failure_type=failure_type,
                channel=channel,
                resolved=resolved,
                retry_eligible=retry_eligible,
                limit=limit,
                offset=offset,
            )
            data = DeadLetterListResponse(
                items=[dead_letter_payload(item) for item in items],
                limit=limit,
                offset=offset,
            )
        return OperationResult(data=data)

    return await run_secured(
        request,
        options=ADMIN_ONLY.for_action("dead_letter.list", "dead_letter"),
        operation=_operation,
    )


@router.api_route("/stats", methods=["GET", "OPTIONS"])
async def read_dead_letter_stats(request: Request) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            stats = await dead_letter_statistics(session=session)
        return OperationResult(data=stats)

    return await run_secured(
        request,
        options=ADMIN_ONLY.for_action("dead_letter.stats", "dead_letter"),
        operation=_operation,
    )


@router.api_route("/{item_id}", methods=["GET", "OPTIONS"])
async def read_dead_letter(request: Request, item_id: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            item = await get_dead_letter(session=session, item_id=item_id)
            data = dead_letter_payload(item)
        return OperationResult(data=data, resource_id=item_id)

    return await run_secured(
        request,
        options=ADMIN_ONLY.for_action("dead_letter.read", "dead_letter"),
        operation=_operation,
    )


@router.api_route("/{item_id}/retry", methods=["POST", "OPTIONS"])
async def retry_item(request: Request, item_id: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        payload = ctx.parse(RetryRequest)
        async with get_session() as session:
            item, record_id = await retry_dead_letter(
                session=session,
                item_id=item_id,
                actor_id=ctx.principal.user_id if ctx.principal else None,
                recipient=payload.recipient,
                notes=payload.notes,
            )
            data = {"item": dead_letter_payload(item), "notification_id": record_id}
        return OperationResult(data=data, status_code=201, resource_id=item_id)

    return await run_secured(
        request,
        options=ADMIN_CRITICAL.for_action("dead_letter.retry", "dead_letter"),
        operation=_operation,
    )


@router.api_route("/{item_id}/resolve", methods=["POST", "OPTIONS"])
async def resolve_item(request: Request, item_id: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        payload = ctx.parse(ResolveRequest)
        async with get_session() as session:
            item = await resolve_dead_letter(
                session=session,
                item_id=item_id,
                action=payload.action,
                actor_id=ctx.principal.user_id if ctx.principal else None,
                notes=payload.notes,
            )
            data = dead_letter_payload(item)
        return OperationResult(data=data, resource_id=item_id)

    return await run_secured(
        request,
        options=ADMIN_CRITICAL.for_action("dead_letter.resolve", "dead_letter"),
        operation=_operation,
    )
