"""
In-memory Dispatch Gateway for development and tests.

Every send is recorded. Failures and latency can be scripted:

    gateway = InMemoryDispatchGateway()
    gateway.fail_next("PROVIDER_DOWN", times=2)
    gateway.delay_seconds = 30          # simulate a stalled provider
"""
from __future__ import annotations

import asyncio
import structlog
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from channels.base import DispatchGateway, DispatchOutcome
from models.schemas import ChannelType

logger = structlog.get_logger()


@dataclass
class SentMessage:
    channel: ChannelType
    template_name: str
    recipient: str
    payload: dict[str, Any]
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InMemoryDispatchGateway(DispatchGateway):

    def __init__(self, delay_seconds: float = 0.0):
        self.sent: list[SentMessage] = []
        self.attempts = 0
        self.delay_seconds = delay_seconds
        self._scripted: deque[DispatchOutcome] = deque()

    def fail_next(self, error_code: str, times: int = 1, retryable: bool = True,
                  detail: str = "") -> None:
        for _ in range(times):
            self._scripted.append(DispatchOutcome.failed(error_code, detail, retryable))

    async def send(self, channel: ChannelType, template_name: str, recipient: str,
                   payload: dict[str, Any]) -> DispatchOutcome:
        self.attempts += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self._scripted:
            outcome = self._scripted.popleft()
            logger.info("dispatch_failed", channel=channel.value, template=template_name,
                        error_code=outcome.error_code)
            return outcome
        self.sent.append(SentMessage(channel, template_name, recipient, dict(payload)))
        logger.info("dispatch_delivered", channel=channel.value, template=template_name,
                    recipient=recipient)
        return DispatchOutcome.ok()
