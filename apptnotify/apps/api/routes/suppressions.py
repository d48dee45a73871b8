from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel
from starlette.responses import Response

from apptnotify.apps.api.security import ADMIN_ONLY, OperationResult, SecurityContext, run_secured
from apptnotify.persistence.db import get_session
from apptnotify.services.suppression import list_suppressions, normalize_recipient, remove_suppression


router = APIRouter(prefix="/suppressions", tags=["suppressions"])


class SuppressionResponse(BaseModel):
    recipient: str
    kind: str
    reason: str | None
    source: str
    created_at: datetime


class SuppressionListResponse(BaseModel):
    items: list[SuppressionResponse]
    limit: int
    offset: int


@router.api_route("", methods=["GET", "OPTIONS"])
async def read_suppressions(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            entries = await list_suppressions(session=session, limit=limit, offset=offset)
            items = [
                SuppressionResponse(
                    recipient=entry.recipient,
                    kind=entry.kind,
                    reason=entry.reason,
                    source=entry.source,
                    created_at=entry.created_at,
                )
                for entry in entries
            ]
        return OperationResult(data=SuppressionListResponse(items=items, limit=limit, offset=offset))

    return await run_secured(
        request,
        options=ADMIN_ONLY.for_action("suppression.list", "suppression"),
        operation=_operation,
    )


@router.api_route("/{recipient}", methods=["DELETE", "OPTIONS"])
async def delete_suppression(request: Request, recipient: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            await remove_suppression(session=session, recipient=recipient)
        normalized = normalize_recipient(recipient)
        return OperationResult(data={"recipient": normalized, "removed": True}, resource_id=normalized)

    return await run_secured(
        request,
        options=ADMIN_ONLY.for_action("suppression.remove", "suppression"),
        operation=_operation,
    )
