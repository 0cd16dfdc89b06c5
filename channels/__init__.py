"""Dispatch gateways: the outbound boundary of the workflow core."""
from channels.base import CircuitBreaker, DispatchGateway, DispatchOutcome
from channels.http_gateway import HttpDispatchGateway
from channels.memory import InMemoryDispatchGateway, SentMessage

from config.settings import GatewayConfig


def create_gateway(config: GatewayConfig = None) -> DispatchGateway:
    """Build the configured gateway backend ("memory" | "http")."""
    config = config or GatewayConfig()
    if config.backend == "http":
        if not config.base_url:
            raise ValueError("gateway.base_url is required for the http backend")
        return HttpDispatchGateway(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
            non_retryable_codes=config.non_retryable_codes,
            breaker=CircuitBreaker(config.failure_threshold, config.recovery_timeout),
        )
    if config.backend != "memory":
        raise ValueError(f"Unknown gateway backend '{config.backend}'")
    return InMemoryDispatchGateway()


__all__ = [
    "DispatchGateway", "DispatchOutcome", "CircuitBreaker",
    "HttpDispatchGateway", "InMemoryDispatchGateway", "SentMessage",
    "create_gateway",
]
