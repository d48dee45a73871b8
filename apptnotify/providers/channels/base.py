from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable, Protocol

from apptnotify.core.config import get_settings
from apptnotify.core.errors import ProviderError
from apptnotify.persistence.db import SessionLocal
from apptnotify.services.suppression import is_suppressed


logger = logging.getLogger(__name__)

SEND_SENT = "sent"
SEND_FAILED = "failed"
SEND_SUPPRESSED = "suppressed"

SuppressionCheck = Callable[[str], Awaitable[bool]]


@dataclass(frozen=True)
class OutboundMessage:
    recipient: str
    content: str
    subject: str | None = None
    correlation_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendOutcome:
    # Uniform sender result consumed by the queue processor.
    status: str
    provider_message_id: str | None = None
    error: str | None = None
    retryable: bool = False
    # Set when the failure proves the recipient unreachable (invalid, unsubscribed).
    suppress_kind: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == SEND_SENT


class ChannelSender(Protocol):
    channel_type: str

    async def send(self, message: OutboundMessage) -> SendOutcome:
        ...


async def _default_suppression_check(recipient: str) -> bool:
    async with SessionLocal() as session:
        return await is_suppressed(session=session, recipient=recipient)


class BaseChannelSender:
    """Shared send pipeline for channel adapters.

    ``send`` consults the suppression list, then runs the adapter's
    ``_deliver`` under a bounded timeout. Adapters return the provider message
    id or raise ``TransientProviderError`` / ``PermanentProviderError``; the
    base class converts those and timeouts into a ``SendOutcome``.
    """

    channel_type = "unknown"

    def __init__(
        self,
        *,
        timeout_s: float | None = None,
        suppression_check: SuppressionCheck | None = None,
    ) -> None:
        self._timeout_s = timeout_s if timeout_s is not None else get_settings().sender_timeout_s
        self._suppression_check = suppression_check or _default_suppression_check

    async def _deliver(self, message: OutboundMessage) -> str:
        raise NotImplementedError

    async def send(self, message: OutboundMessage) -> SendOutcome:
        if await self._suppression_check(message.recipient):
            return SendOutcome(status=SEND_SUPPRESSED, error="Recipient is suppressed")
        try:
            provider_message_id = await asyncio.wait_for(self._deliver(message), timeout=self._timeout_s)
        except asyncio.TimeoutError:
            logger.warning(
                "channel_send_timeout channel=%s correlation_id=%s timeout_s=%s",
                self.channel_type,
                message.correlation_id,
                self._timeout_s,
            )
            return SendOutcome(
                status=SEND_FAILED,
                error=f"Send timed out after {self._timeout_s}s",
                retryable=True,
                timed_out=True,
            )
        except ProviderError as exc:
            logger.info(
                "channel_send_failed channel=%s correlation_id=%s retryable=%s",
                self.channel_type,
                message.correlation_id,
                exc.retryable,
            )
            return SendOutcome(
                status=SEND_FAILED,
                error=exc.message,
                retryable=exc.retryable,
                suppress_kind=exc.suppress_kind,
            )
        return SendOutcome(status=SEND_SENT, provider_message_id=provider_message_id)
