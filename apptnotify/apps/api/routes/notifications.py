from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Literal

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field, field_validator, model_validator
from starlette.responses import Response

from apptnotify.apps.api.security import (
    ADMIN_ONLY,
    CRITICAL_OPERATION,
    STAFF_READ,
    OperationResult,
    SecurityContext,
    run_secured,
)
from apptnotify.core.errors import NotFoundError
from apptnotify.domain.models import NotificationRecord
from apptnotify.domain.types import utc_now
from apptnotify.persistence.db import get_session
from apptnotify.services.directory import Appointment
from apptnotify.services.policies import budget_status
from apptnotify.services.producers import reschedule_appointment_notifications
from apptnotify.services.queue import (
    cancel_appointment_notifications,
    cancel_notification,
    enqueue_notification,
    get_notification,
    process_batch,
    queue_statistics,
)
from apptnotify.services.settings_cache import get_settings_cache
from apptnotify.services.templates import get_template, render_template


router = APIRouter(tags=["notifications"])

_STAFF_ROLES = frozenset({"staff", "admin"})
# Mutations are staff-only on top of the critical preset.
STAFF_CRITICAL = replace(CRITICAL_OPERATION, allowed_roles=_STAFF_ROLES)


class EnqueueRequest(BaseModel):
    type: Literal["email", "sms"]
    channel: str = Field(min_length=1, max_length=64)
    recipient: str = Field(min_length=1, max_length=320)
    content: str | None = Field(default=None, max_length=20000)
    subject: str | None = Field(default=None, max_length=998)
    scheduled_for: datetime | None = None
    correlation_id: str | None = Field(default=None, max_length=200)
    template_id: str | None = None
    # Template variables, only used when content is rendered from template_id.
    variables: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = Field(default=None, ge=0, le=10)

    @field_validator("scheduled_for")
    @classmethod
    def _require_offset(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("scheduled_for must include a UTC offset")
        return value

    @model_validator(mode="after")
    def _require_body(self) -> EnqueueRequest:
        if not (self.content and self.content.strip()) and not self.template_id:
            raise ValueError("content or template_id is required")
        return self


class EnqueueResponse(BaseModel):
    id: str
    created: bool
    status: str


class NotificationResponse(BaseModel):
    id: str
    type: str
    channel: str
    recipient: str
    subject: str | None
    status: str
    scheduled_for: datetime
    retry_count: int
    max_retries: int
    error_message: str | None
    correlation_id: str | None
    template_id: str | None
    appointment_id: str | None
    provider_message_id: str | None
    metadata: dict[str, Any]
    sent_at: datetime | None
    delivered_at: datetime | None
    created_at: datetime
    updated_at: datetime


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CancelResponse(BaseModel):
    id: str
    cancelled: bool
    status: str


class AppointmentCancelResponse(BaseModel):
    appointment_id: str
    cancelled: int


class ProcessRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=500)


class RescheduleRequest(BaseModel):
    starts_at: datetime
    service_name: str = Field(min_length=1, max_length=200)
    customer_name: str | None = Field(default=None, max_length=200)
    customer_email: str | None = Field(default=None, max_length=320)
    customer_phone: str | None = Field(default=None, max_length=32)
    staff_id: str | None = Field(default=None, max_length=64)
    staff_name: str | None = Field(default=None, max_length=200)

    @field_validator("starts_at")
    @classmethod
    def _require_offset(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("starts_at must include a UTC offset")
        return value


def notification_payload(record: NotificationRecord) -> NotificationResponse:
    return NotificationResponse(
        id=record.id,
        type=record.type,
        channel=record.channel,
        recipient=record.recipient,
        subject=record.subject,
        status=record.status,
        scheduled_for=record.scheduled_for,
        retry_count=record.retry_count,
        max_retries=record.max_retries,
        error_message=record.error_message,
        correlation_id=record.correlation_id,
        template_id=record.template_id,
        appointment_id=record.appointment_id,
        provider_message_id=record.provider_message_id,
        metadata=dict(record.metadata_json or {}),
        sent_at=record.sent_at,
        delivered_at=record.delivered_at,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@router.api_route("/notifications", methods=["POST", "OPTIONS"])
async def create_notification(request: Request) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        payload = ctx.parse(EnqueueRequest)
        subject, content = payload.subject, payload.content
        if not (content and content.strip()):
            try:
                template = get_template(payload.template_id or "")
            except KeyError as exc:
                raise NotFoundError(f"Unknown template: {payload.template_id}") from exc
            rendered_subject, content = render_template(template, payload.variables)
            subject = subject or rendered_subject
        async with get_session() as session:
            result = await enqueue_notification(
                session=session,
                type=payload.type,
                channel=payload.channel,
                recipient=payload.recipient,
                content=content,
                subject=subject,
                scheduled_for=payload.scheduled_for,
                correlation_id=payload.correlation_id or ctx.correlation_id,
                template_id=payload.template_id,
                metadata=payload.metadata,
                max_retries=payload.max_retries,
            )
        return OperationResult(
            data=EnqueueResponse(id=result.record_id, created=result.created, status=result.status),
            status_code=201 if result.created else 200,
            resource_id=result.record_id,
        )

    return await run_secured(
        request,
        options=STAFF_CRITICAL.for_action("notification.enqueue", "notification"),
        operation=_operation,
    )


@router.api_route("/notifications/stats", methods=["GET", "OPTIONS"])
async def notification_stats(request: Request, days: int = Query(default=7, ge=1, le=365)) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            stats = await queue_statistics(session=session, days=days)
        return OperationResult(data=stats)

    return await run_secured(
        request,
        options=STAFF_READ.for_action("notification.stats", "notification"),
        operation=_operation,
    )


@router.api_route("/notifications/budget", methods=["GET", "OPTIONS"])
async def notification_budget(request: Request) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            data = await budget_status(session=session, cache=get_settings_cache(), now=utc_now())
        return OperationResult(data=data)

    return await run_secured(
        request,
        options=STAFF_READ.for_action("notification.budget", "notification"),
        operation=_operation,
    )


@router.api_route("/notifications/process", methods=["POST", "OPTIONS"])
async def trigger_processing(request: Request) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        payload = ctx.parse(ProcessRequest)
        summary = await process_batch(limit=payload.limit)
        return OperationResult(data=summary.as_dict())

    return await run_secured(
        request,
        options=ADMIN_ONLY.for_action("notification.process_batch", "notification"),
        operation=_operation,
    )


@router.api_route("/notifications/{record_id}", methods=["GET", "OPTIONS"])
async def read_notification(request: Request, record_id: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        async with get_session() as session:
            record = await get_notification(session=session, record_id=record_id)
            data = notification_payload(record)
        return OperationResult(data=data, resource_id=record_id)

    return await run_secured(
        request,
        options=STAFF_READ.for_action("notification.read", "notification"),
        operation=_operation,
    )


@router.api_route("/notifications/{record_id}/cancel", methods=["POST", "OPTIONS"])
async def cancel_single_notification(request: Request, record_id: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        payload = ctx.parse(CancelRequest)
        async with get_session() as session:
            record, cancelled = await cancel_notification(
                session=session,
                record_id=record_id,
                reason=payload.reason,
            )
            data = CancelResponse(id=record.id, cancelled=cancelled, status=record.status)
        return OperationResult(data=data, resource_id=record_id)

    return await run_secured(
        request,
        options=STAFF_CRITICAL.for_action("notification.cancel", "notification"),
        operation=_operation,
    )


@router.api_route("/appointments/{appointment_id}/notifications/cancel", methods=["POST", "OPTIONS"])
async def cancel_for_appointment(request: Request, appointment_id: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        payload = ctx.parse(CancelRequest)
        async with get_session() as session:
            count = await cancel_appointment_notifications(
                session=session,
                appointment_id=appointment_id,
                reason=payload.reason,
            )
        return OperationResult(
            data=AppointmentCancelResponse(appointment_id=appointment_id, cancelled=count),
            resource_id=appointment_id,
        )

    return await run_secured(
        request,
        options=STAFF_CRITICAL.for_action("appointment.notifications_cancel", "appointment"),
        operation=_operation,
    )


@router.api_route("/appointments/{appointment_id}/reschedule", methods=["POST", "OPTIONS"])
async def reschedule_appointment(request: Request, appointment_id: str) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        payload = ctx.parse(RescheduleRequest)
        appointment = Appointment(
            id=appointment_id,
            starts_at=payload.starts_at.astimezone(timezone.utc),
            status="confirmed",
            service_name=payload.service_name,
            customer_name=payload.customer_name,
            customer_email=payload.customer_email,
            customer_phone=payload.customer_phone,
            staff_id=payload.staff_id,
            staff_name=payload.staff_name,
        )
        summary = await reschedule_appointment_notifications(appointment=appointment)
        return OperationResult(data=summary.as_dict(), resource_id=appointment_id)

    return await run_secured(
        request,
        options=STAFF_CRITICAL.for_action("appointment.reschedule", "appointment"),
        operation=_operation,
    )
