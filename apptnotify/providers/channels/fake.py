from __future__ import annotations

from collections import deque
from uuid import uuid4

from apptnotify.core.errors import ProviderError
from apptnotify.providers.channels.base import BaseChannelSender, OutboundMessage, SuppressionCheck


class FakeChannelSender(BaseChannelSender):
    """In-memory sender for local development and tests.

    Every delivered message is appended to ``sent``. Queue a failure with
    ``fail_next`` to make the next delivery raise it.
    """

    def __init__(
        self,
        channel_type: str,
        *,
        timeout_s: float | None = None,
        suppression_check: SuppressionCheck | None = None,
    ) -> None:
        super().__init__(timeout_s=timeout_s, suppression_check=suppression_check)
        self.channel_type = channel_type
        self.sent: list[OutboundMessage] = []
        self._failures: deque[ProviderError] = deque()

    def fail_next(self, error: ProviderError) -> None:
        self._failures.append(error)

    async def _deliver(self, message: OutboundMessage) -> str:
        if self._failures:
            raise self._failures.popleft()
        self.sent.append(message)
        return f"fake-{self.channel_type}-{uuid4().hex}"
