from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from starlette.responses import Response

from apptnotify.apps.api.security import PUBLIC_WEBHOOK, OperationResult, SecurityContext, run_secured
from apptnotify.core.config import get_settings
from apptnotify.core.errors import ValidationError
from apptnotify.services.webhooks.reconciler import (
    PROVIDER_EMAIL,
    PROVIDER_TWILIO,
    ingest_callback,
    parse_email_payload,
    parse_twilio_payload,
)
from apptnotify.services.webhooks.verifier import (
    HmacSha256Verifier,
    SignatureVerifier,
    TwilioSignatureVerifier,
    canonical_callback_url,
)


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _verify(ctx: SecurityContext, verifier: SignatureVerifier) -> bool:
    request = ctx.request
    url = canonical_callback_url(
        public_base_url=get_settings().webhook_public_base_url,
        path=request.url.path,
        request_url=str(request.url),
    )
    result = verifier.verify(url=url, body=ctx.body, signature=request.headers.get(verifier.header_name))
    return result.verified


async def _ingest(ctx: SecurityContext, *, provider: str, payload: dict[str, Any], verified: bool) -> OperationResult:
    result = await ingest_callback(provider=provider, payload=payload, signature_verified=verified)
    return OperationResult(data=result.as_dict(), resource_id=str(result.event_id))


@router.api_route("/twilio", methods=["POST", "OPTIONS"])
async def twilio_status_callback(request: Request) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        verified = _verify(ctx, TwilioSignatureVerifier(get_settings().twilio_auth_token))
        return await _ingest(ctx, provider=PROVIDER_TWILIO, payload=parse_twilio_payload(ctx.body), verified=verified)

    return await run_secured(request, options=PUBLIC_WEBHOOK.for_action("webhook.twilio"), operation=_operation)


@router.api_route("/email", methods=["POST", "OPTIONS"])
async def email_status_callback(request: Request) -> Response:
    async def _operation(ctx: SecurityContext) -> OperationResult:
        verified = _verify(ctx, HmacSha256Verifier(get_settings().email_webhook_secret))
        try:
            payload = parse_email_payload(ctx.body)
        except ValidationError:
            # Keep the unparseable body so the rejected callback stays inspectable.
            payload = {"raw": ctx.body.decode("utf-8", errors="replace")}
        return await _ingest(ctx, provider=PROVIDER_EMAIL, payload=payload, verified=verified)

    return await run_secured(request, options=PUBLIC_WEBHOOK.for_action("webhook.email"), operation=_operation)
