#!/usr/bin/env python3
"""
Webhook delivery of rendered notifications.

WebhookSender posts a payload to the webhook a subscriber configured for a
channel. Any failure is raised as DeliveryError; the notifier decides what to
do with it.
"""

from typing import Any, Dict, Optional
from asyncio import TimeoutError
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import DeliveryError
from subscribers import Subscriber
from telemetry import trace_span

logger = get_logger("delivery")


class WebhookSender:
    """Sends payloads to subscriber webhooks over a shared aiohttp session."""

    def __init__(self, session: Optional[ClientSession] = None):
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "WebhookSender":
        if self.session is None:
            self.session = ClientSession(headers={"User-Agent": config.USER_AGENT})
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    @trace_span(
        "delivery.send",
        tracer_name="delivery",
        attr_from_args=lambda self, subscriber, payload, channel: {
            "subscriber.id": subscriber.id,
            "delivery.channel": channel,
        },
    )
    async def send(self, subscriber: Subscriber, payload: Dict[str, Any], channel: str) -> None:
        """Post `payload` to the subscriber's webhook for `channel`.

        Raises:
            DeliveryError: if no webhook is configured or the request fails
        """
        url = subscriber.webhook_for(channel)
        if not url:
            raise DeliveryError(f"No webhook configured for channel '{channel}'", subscriber_id=subscriber.id)
        if self.session is None:
            raise DeliveryError("WebhookSender used outside of its context", subscriber_id=subscriber.id)

        try:
            async with self.session.post(url, json=payload, timeout=ClientTimeout(total=config.DELIVERY_TIMEOUT)) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise DeliveryError(
                        f"Webhook returned HTTP {resp.status}: {body[:200]}",
                        subscriber_id=subscriber.id,
                        status=resp.status,
                    )
        except TimeoutError as e:
            raise DeliveryError("Webhook request timed out", subscriber_id=subscriber.id) from e
        except ClientError as e:
            raise DeliveryError(f"{e.__class__.__name__}: {e}", subscriber_id=subscriber.id) from e
