"""Outbound replies to the messaging channel service."""

from typing import Optional

import httpx

from gateway.logging_config import get_logger
from gateway.models import InboundEvent
from gateway.services.circuit_breaker import CircuitBreaker, ResilientHttpClient
from gateway.services.result import Fallback

logger = get_logger("channel_client")


class ChannelDeliveryError(Exception):
    pass


class ChannelClient:
    def __init__(
        self,
        base_url: str,
        breaker: CircuitBreaker,
        *,
        api_key: str = "",
        timeout_seconds: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        headers = {"X-API-Key": api_key} if api_key else {}
        self.http = ResilientHttpClient(breaker, client=client, timeout=timeout_seconds, headers=headers)

    async def send_message(self, event: InboundEvent, text: str) -> None:
        """Deliver ``text`` to the user behind ``event``. Raises ``ChannelDeliveryError`` on failure."""
        outcome = await self.http.post(
            f"{self.base_url}/internal/send",
            json={
                "wa_user_id": event.user_id,
                "message": text,
                "channel": event.channel,
                "reply_to": event.message_id,
            },
        )
        if isinstance(outcome, Fallback):
            logger.error(
                "Failed to deliver reply",
                extra={"context": {"message_id": event.message_id, "reason": outcome.reason, "detail": outcome.detail}},
            )
            raise ChannelDeliveryError(f"Channel service unavailable ({outcome.reason})")

        response = outcome.value
        if response.status_code >= 400:
            raise ChannelDeliveryError(f"Channel service rejected reply: HTTP {response.status_code}")
        logger.info("Reply delivered", extra={"context": {"message_id": event.message_id, "user_id": event.user_id}})

    async def aclose(self) -> None:
        await self.http.aclose()
