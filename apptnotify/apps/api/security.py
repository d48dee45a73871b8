"""Security pipeline wrapped around every externally invoked operation.

Order of stages:

1. CORS preflight short-circuit (``OPTIONS`` answers 200 with CORS headers).
2. Authentication: bearer API key resolved into a ``Principal``.
3. Authorization: principal role checked against the allowed set.
4. Idempotency: an ``Idempotency-Key`` either reserves the key or replays the
   stored response verbatim; a fingerprint mismatch is a conflict.
5. Rate limiting: fixed window per caller and route; exempt roles skip it.
6. Execution, with every error rendered into the uniform envelope.
7. Audit: written after the outcome is known, success or failure; a failed
   audit write is logged and never fails the request. Webhook routes audit
   only rejected calls, since every accepted callback is audited by the
   reconciler.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
import logging
from typing import Any, Awaitable, Callable, Type, TypeVar

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from apptnotify.apps.api.deps import Principal, authenticate_request
from apptnotify.apps.api.errors import render_app_error, render_internal_error
from apptnotify.apps.api.rate_limit import RateLimitDecision, enforce_rate_limit, rate_limit_identity
from apptnotify.apps.api.response import CORRELATION_HEADER, get_correlation_id, success_response
from apptnotify.core.config import get_settings
from apptnotify.core.errors import AppointmentNotifyError, PermissionDeniedError, ValidationError
from apptnotify.persistence.db import SessionLocal
from apptnotify.services.audit import get_request_context, record_event
from apptnotify.services.idempotency import (
    IDEMPOTENCY_HEADER,
    REPLAY_HEADER,
    IdempotencyReplay,
    IdempotencyReservation,
    complete_idempotency_key,
    compute_request_hash,
    normalize_idempotency_key,
    release_idempotency_key,
    reserve_idempotency_key,
)


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Client errors worth replaying; throttling and conflicts are transient and are not stored.
_NON_STORABLE_STATUSES = {408, 409, 429}


@dataclass(frozen=True)
class RateLimitOptions:
    # None falls back to the per-role defaults from settings.
    max_requests: int | None = None
    window_seconds: int | None = None
    skip_for_roles: frozenset[str] = frozenset()


@dataclass(frozen=True)
class SecurityOptions:
    auth_required: bool = True
    allowed_roles: frozenset[str] | None = None
    idempotency: bool = False
    rate_limit: RateLimitOptions | None = field(default_factory=RateLimitOptions)
    audit: bool = True
    # Audit only rejected calls (status >= 400) when full auditing is off.
    audit_failures: bool = False
    audit_action: str | None = None
    resource_type: str | None = None

    def for_action(self, action: str, resource_type: str | None = None) -> SecurityOptions:
        return replace(self, audit_action=action, resource_type=resource_type or self.resource_type)


# Mutations with real-world side effects: strict per-caller budget, admins exempt.
CRITICAL_OPERATION = SecurityOptions(
    auth_required=True,
    idempotency=True,
    rate_limit=RateLimitOptions(max_requests=10, window_seconds=60, skip_for_roles=frozenset({"admin"})),
    audit=True,
)
ADMIN_ONLY = SecurityOptions(
    auth_required=True,
    allowed_roles=frozenset({"admin"}),
    rate_limit=RateLimitOptions(max_requests=100, window_seconds=60),
    audit=True,
)
STAFF_READ = SecurityOptions(
    auth_required=True,
    allowed_roles=frozenset({"staff", "admin"}),
    audit=True,
)
# Provider callbacks authenticate by signature inside the operation, not by bearer key.
PUBLIC_WEBHOOK = SecurityOptions(
    auth_required=False,
    rate_limit=RateLimitOptions(max_requests=300, window_seconds=60),
    audit=False,
    audit_failures=True,
)


@dataclass(frozen=True)
class SecurityContext:
    request: Request
    principal: Principal | None
    body: bytes
    correlation_id: str

    def parse(self, model: Type[ModelT]) -> ModelT:
        # Validate the raw JSON body at the boundary; failures become 400 envelopes.
        try:
            return model.model_validate_json(self.body or b"{}")
        except PydanticValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            detail = first.get("msg", "invalid request body")
            raise ValidationError(f"{location}: {detail}" if location else detail) from exc


@dataclass
class OperationResult:
    data: Any
    status_code: int = 200
    resource_id: str | None = None
    # Raw responses (webhooks) skip the success envelope.
    raw_response: Response | None = None


Operation = Callable[[SecurityContext], Awaitable[OperationResult]]


def cors_headers(request: Request) -> dict[str, str]:
    settings = get_settings()
    allowed = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
    origin = request.headers.get("origin")
    if "*" in allowed:
        allow_origin = "*"
    elif origin and origin in allowed:
        allow_origin = origin
    else:
        return {}
    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": (
            f"Content-Type, Authorization, {IDEMPOTENCY_HEADER}, {CORRELATION_HEADER}"
        ),
        "Access-Control-Expose-Headers": (
            f"X-RateLimit-Remaining, X-RateLimit-Reset, Retry-After, {REPLAY_HEADER}, {CORRELATION_HEADER}"
        ),
    }


def authorize(principal: Principal | None, allowed_roles: frozenset[str] | None) -> None:
    if not allowed_roles:
        return
    if principal is None or principal.role not in allowed_roles:
        raise PermissionDeniedError("Insufficient role for this operation")


def build_replay_response(replay: IdempotencyReplay) -> Response:
    # Return stored bytes untouched with a replay marker header.
    return Response(
        content=replay.body.encode("utf-8") if replay.body is not None else b"",
        status_code=replay.status_code,
        media_type=replay.media_type,
        headers={REPLAY_HEADER: "true"},
    )


def _render_success(request: Request, result: OperationResult) -> Response:
    if result.raw_response is not None:
        return result.raw_response
    payload = success_response(request=request, data=jsonable_encoder(result.data))
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return Response(content=body, status_code=result.status_code, media_type="application/json")


def _response_text(response: Response) -> str | None:
    body = getattr(response, "body", None)
    if body is None:
        return None
    return bytes(body).decode("utf-8")


async def _audit(
    *,
    request: Request,
    options: SecurityOptions,
    principal: Principal | None,
    status_code: int,
    error_code: str | None,
    resource_id: str | None,
    replayed: bool,
) -> None:
    action = options.audit_action or f"{request.method.lower()} {request.url.path}"
    request_ctx = get_request_context(request)
    try:
        await record_event(
            actor_type="user" if principal else "anonymous",
            actor_id=principal.user_id if principal else None,
            actor_role=principal.role if principal else None,
            action=action,
            outcome="success" if status_code < 400 else "failure",
            resource_type=options.resource_type,
            resource_id=resource_id,
            correlation_id=request_ctx["correlation_id"],
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            metadata={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "idempotent_replay": replayed,
            },
            error_code=error_code,
        )
    except Exception as exc:  # noqa: BLE001 - audit outages never fail the guarded request
        logger.warning("audit_write_failed action=%s", action, exc_info=exc)


@dataclass
class _PipelineState:
    principal: Principal | None = None
    reservation: IdempotencyReservation | None = None
    decision: RateLimitDecision | None = None
    result: OperationResult | None = None
    replayed: bool = False
    error_code: str | None = None


async def _run_stages(
    request: Request,
    *,
    options: SecurityOptions,
    operation: Operation,
    state: _PipelineState,
    body: bytes,
    correlation_id: str,
) -> Response:
    settings = get_settings()
    async with SessionLocal() as session:
        state.principal = await authenticate_request(request, session=session, required=options.auth_required)
    principal = state.principal
    authorize(principal, options.allowed_roles)

    raw_key = request.headers.get(IDEMPOTENCY_HEADER)
    if options.idempotency and settings.idempotency_enabled and raw_key is not None:
        key = normalize_idempotency_key(raw_key)
        client_ip = request.client.host if request.client else "unknown"
        state.reservation, replay = await reserve_idempotency_key(
            actor_id=principal.user_id if principal else f"ip:{client_ip}",
            key=key,
            method=request.method,
            path=request.url.path,
            request_hash=compute_request_hash(method=request.method, path=request.url.path, body=body),
        )
        if replay is not None:
            state.replayed = True
            logger.info("idempotent_replay path=%s correlation_id=%s", request.url.path, correlation_id)
            return build_replay_response(replay)

    limits = options.rate_limit
    if limits is not None and not (principal and principal.role in limits.skip_for_roles):
        state.decision = await enforce_rate_limit(
            identity_key=rate_limit_identity(
                user_id=principal.user_id if principal else None,
                client_ip=request.client.host if request.client else None,
                path=request.url.path,
            ),
            role=principal.role if principal else None,
            max_requests=limits.max_requests,
            window_seconds=limits.window_seconds,
        )

    state.result = await operation(SecurityContext(request, principal, body, correlation_id))
    return _render_success(request, state.result)


async def _finish_idempotency(reservation: IdempotencyReservation, response: Response) -> None:
    # Persist before returning so a retry arriving right after sees the stored response.
    try:
        if response.status_code < 500 and response.status_code not in _NON_STORABLE_STATUSES:
            await complete_idempotency_key(
                reservation=reservation,
                status_code=response.status_code,
                body=_response_text(response),
                media_type=response.media_type,
            )
        else:
            await release_idempotency_key(reservation=reservation)
    except SQLAlchemyError as exc:
        logger.error("idempotency_persist_failed key=%s", reservation.key, exc_info=exc)


async def run_secured(request: Request, *, options: SecurityOptions, operation: Operation) -> Response:
    """Run ``operation`` behind the full security pipeline and return its response."""

    correlation_id = get_correlation_id(request)
    if request.method.upper() == "OPTIONS":
        return Response(status_code=200, headers=cors_headers(request))

    state = _PipelineState()
    body = await request.body()
    try:
        response = await _run_stages(
            request,
            options=options,
            operation=operation,
            state=state,
            body=body,
            correlation_id=correlation_id,
        )
    except AppointmentNotifyError as exc:
        state.error_code = exc.code
        if exc.status_code >= 500:
            logger.error("operation_failed code=%s path=%s", exc.code, request.url.path, exc_info=exc)
        response = render_app_error(request, exc)
    except Exception as exc:  # noqa: BLE001 - every failure leaves through the envelope
        state.error_code = "INTERNAL_ERROR"
        logger.error("operation_unhandled_error path=%s", request.url.path, exc_info=exc)
        response = render_internal_error(request)

    if state.reservation is not None:
        await _finish_idempotency(state.reservation, response)
    if options.audit or (options.audit_failures and response.status_code >= 400):
        await _audit(
            request=request,
            options=options,
            principal=state.principal,
            status_code=response.status_code,
            error_code=state.error_code,
            resource_id=state.result.resource_id if state.result else None,
            replayed=state.replayed,
        )

    response.headers[CORRELATION_HEADER] = correlation_id
    if state.decision is not None:
        response.headers["X-RateLimit-Remaining"] = str(state.decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(state.decision.reset_at.timestamp()))
    for key, value in cors_headers(request).items():
        response.headers.setdefault(key, value)
    return response
