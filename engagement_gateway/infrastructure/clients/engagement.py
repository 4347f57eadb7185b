"""Hands fully signed contracts to the class-creation service"""

import asyncio
import logging
from typing import Any, Dict, Iterator

import httpx

from engagement_gateway.config import settings
from engagement_gateway.infrastructure.observability.metrics import webhook_failure_counter, webhook_latency_histogram

logger = logging.getLogger(__name__)

# Rejections the receiver may accept on a later attempt
RETRYABLE_STATUS_CODES = {408, 425, 429}


def is_retryable(error: httpx.HTTPError) -> bool:
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status >= 500 or status in RETRYABLE_STATUS_CODES
    return isinstance(error, httpx.RequestError)


class EngagementClient:
    """
    Activation webhook for the class-creation service.

    The contract id travels as the Idempotency-Key header, so a delivery
    retried after a lost response creates the classes only once.
    """

    def __init__(
        self,
        webhook_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.webhook_url = webhook_url or settings.engagement_webhook_url
        self.max_retries = settings.webhook_max_retries
        self.backoff_base = settings.webhook_backoff_base
        self.timeout = settings.http_timeout_seconds
        self.transport = transport

    def _delays(self) -> Iterator[float]:
        """Pause before each retry: base, 2*base, 4*base, ..."""
        for retry in range(self.max_retries - 1):
            yield self.backoff_base * (2**retry)

    async def _deliver(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> None:
        with webhook_latency_histogram.time():
            response = await client.post(
                self.webhook_url,
                json=payload,
                headers={"Idempotency-Key": str(payload.get("contract_id", ""))},
                timeout=self.timeout,
            )
        response.raise_for_status()

    async def activate(self, payload: Dict[str, Any]) -> None:
        """
        Deliver the activation event, retrying 5xx, throttling and network failures.

        Args:
            payload: {contract_id, student_id, tutor_id, schedule_terms}

        Raises:
            httpx.HTTPError: A non-retryable rejection, or the last failure once retries run out
        """
        delays = self._delays()
        async with httpx.AsyncClient(transport=self.transport) as client:
            while True:
                try:
                    await self._deliver(client, payload)
                    return
                except httpx.HTTPError as e:
                    webhook_failure_counter.inc()
                    delay = next(delays, None) if is_retryable(e) else None
                    logger.warning(
                        "Engagement activation attempt failed",
                        extra={
                            "contract_id": payload.get("contract_id"),
                            "error": e.__class__.__name__,
                            "retry_in": delay,
                        },
                    )
                    if delay is None:
                        raise
                    await asyncio.sleep(delay)
