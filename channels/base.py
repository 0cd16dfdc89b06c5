"""
Dispatch Gateway — the boundary between the workflow core and transports.

Provides:
- DispatchOutcome: delivered | failed(error_code), with a retryable hint
- DispatchGateway: abstract send(channel, template, recipient, payload)
- CircuitBreaker: failure-counting breaker with half-open probe

The core never inspects provider-specific responses; every gateway maps its
transport's result onto DispatchOutcome.
"""
from __future__ import annotations

import abc
import time
import structlog
from dataclasses import dataclass
from typing import Any

from models.schemas import ChannelType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  OUTCOME
# ══════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DispatchOutcome:
    delivered: bool
    error_code: str = ""
    detail: str = ""
    retryable: bool = True

    @classmethod
    def ok(cls) -> DispatchOutcome:
        return cls(delivered=True)

    @classmethod
    def failed(cls, error_code: str, detail: str = "", retryable: bool = True) -> DispatchOutcome:
        return cls(delivered=False, error_code=error_code, detail=detail, retryable=retryable)

    @property
    def error(self) -> str:
        if self.delivered:
            return ""
        return f"{self.error_code}: {self.detail}" if self.detail else self.error_code


# ══════════════════════════════════════════════════════════════
#  GATEWAY INTERFACE
# ══════════════════════════════════════════════════════════════

class DispatchGateway(abc.ABC):

    @abc.abstractmethod
    async def send(self, channel: ChannelType, template_name: str, recipient: str,
                   payload: dict[str, Any]) -> DispatchOutcome:
        ...

    async def close(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        if self.state == "half_open":
            self._state = "closed"
        self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)
