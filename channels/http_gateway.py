"""
HTTP Dispatch Gateway — hands messages to an external notification service.

    POST {base_url}/messages
    {"channel": "WHATSAPP", "template": "...", "recipient": "...", "payload": {...}}

    200 {"delivered": true}
    200 {"delivered": false, "error_code": "INVALID_RECIPIENT", "detail": "..."}

Transport errors are retried briefly with tenacity; anything beyond that is
a failed outcome and becomes a scheduler retry. 4xx responses (except 429)
are non-retryable. A circuit breaker short-circuits sends while the service
keeps failing.
"""
from __future__ import annotations

import structlog
from typing import Any, Iterable, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import CircuitBreaker, DispatchGateway, DispatchOutcome
from models.schemas import ChannelType

logger = structlog.get_logger()


class HttpDispatchGateway(DispatchGateway):

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        non_retryable_codes: Iterable[str] = (),
        breaker: Optional[CircuitBreaker] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout_seconds,
        )
        self.non_retryable_codes = frozenset(non_retryable_codes)
        self.breaker = breaker or CircuitBreaker()

    async def send(self, channel: ChannelType, template_name: str, recipient: str,
                   payload: dict[str, Any]) -> DispatchOutcome:
        if self.breaker.is_open:
            return DispatchOutcome.failed("CIRCUIT_OPEN", "notification service unavailable")

        body = {
            "channel": channel.value,
            "template": template_name,
            "recipient": recipient,
            "payload": payload,
        }
        try:
            resp = await self._post(body)
        except httpx.HTTPError as e:
            self.breaker.record_failure()
            logger.error("dispatch_transport_error", channel=channel.value, error=str(e))
            return DispatchOutcome.failed("TRANSPORT_ERROR", str(e))

        if resp.status_code == 429 or resp.status_code >= 500:
            self.breaker.record_failure()
            return DispatchOutcome.failed(f"HTTP_{resp.status_code}", resp.text[:200])

        self.breaker.record_success()
        data = self._json(resp)

        if resp.status_code >= 400:
            code = data.get("error_code") or f"HTTP_{resp.status_code}"
            return DispatchOutcome.failed(code, data.get("detail", ""), retryable=False)

        if data.get("delivered", True):
            return DispatchOutcome.ok()

        code = data.get("error_code") or "UNKNOWN"
        return DispatchOutcome.failed(code, data.get("detail", ""),
                                      retryable=code not in self.non_retryable_codes)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        return await self.client.post("/messages", json=body)

    @staticmethod
    def _json(resp: httpx.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        await self.client.aclose()
