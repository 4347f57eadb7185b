"""Fire-and-forget notification client"""

from typing import Any, Dict

import httpx

from engagement_gateway.config import settings


class NotificationClient:
    """Single POST per notification; delivery retries belong to the notification service"""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.notification_api_base
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    async def notify(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        """
        Raises:
            httpx.HTTPError: On any transport or HTTP failure; callers log and move on
        """
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                "/notifications",
                json={"user_id": user_id, "event_type": event_type, "payload": payload},
            )
            response.raise_for_status()
