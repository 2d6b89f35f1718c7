"""
Lifecycle event fan-out.

The stream lifecycle emits stream_* and session_* events into a queue. A
single worker task hands each event to the registered in-process handlers
and then to every webhook subscribed to its type.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from config import settings, VERSION
from models import EventType, StreamEvent, WebhookConfig

logger = logging.getLogger(__name__)

_STOP = object()


def webhook_payload(event: StreamEvent) -> Dict[str, Any]:
    return {
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "stream_id": event.stream_id,
        "timestamp": event.timestamp.isoformat(),
        "service": settings.SERVICE_NAME,
        "data": event.data,
    }


class EventManager:
    def __init__(self):
        self.webhooks: List[WebhookConfig] = []
        self.event_queue: asyncio.Queue = asyncio.Queue()
        self.event_handlers: List[Callable] = []
        self._worker_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    async def start(self):
        if self.running:
            return
        self._worker_task = asyncio.create_task(self._process_events())
        logger.info("Event manager started")

    async def stop(self):
        """Deliver what is already queued, then stop the worker."""
        if not self.running:
            return
        await self.event_queue.put(_STOP)
        try:
            await asyncio.wait_for(self._worker_task, timeout=settings.STOP_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Event queue not drained in time, dropping remaining events")
            self._worker_task.cancel()
        self._worker_task = None
        logger.info("Event manager stopped")

    def add_webhook(self, webhook: WebhookConfig):
        self.webhooks.append(webhook)
        logger.info(f"Added webhook for {webhook.url} ({', '.join(e.value for e in webhook.events)})")

    def remove_webhook(self, webhook_url: str) -> bool:
        remaining = [wh for wh in self.webhooks if str(wh.url) != webhook_url]
        removed = len(remaining) != len(self.webhooks)
        self.webhooks = remaining
        if removed:
            logger.info(f"Removed webhook {webhook_url}")
        return removed

    def add_handler(self, handler: Callable):
        """Register a plain function or coroutine function called with every event."""
        self.event_handlers.append(handler)
        logger.info(f"Added event handler: {handler.__name__}")

    async def emit_event(self, event: StreamEvent):
        await self.event_queue.put(event)
        logger.debug(f"Queued {event.event_type.value} for stream {event.stream_id}")

    async def emit(self, event_type: EventType, stream_id: Optional[str] = None, **data):
        await self.emit_event(StreamEvent(event_type=event_type, stream_id=stream_id, data=data))

    async def _process_events(self):
        while True:
            event = await self.event_queue.get()
            if event is _STOP:
                return
            try:
                await self._handle_event(event)
            except Exception as e:
                logger.error(f"Error processing {event.event_type.value} event: {e}")

    async def _handle_event(self, event: StreamEvent):
        for handler in self.event_handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in event handler {handler.__name__}: {e}")

        await self._send_webhooks(event)

    async def _send_webhooks(self, event: StreamEvent):
        subscribed = [wh for wh in self.webhooks if event.event_type in wh.events]
        if subscribed:
            await asyncio.gather(
                *(self._send_webhook(wh, event) for wh in subscribed), return_exceptions=True)

    async def _send_webhook(self, webhook: WebhookConfig, event: StreamEvent) -> bool:
        """POST one event, retrying with 1s, 2s, 4s... backoff. Returns delivery success."""
        payload = webhook_payload(event)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": f"IPTV-Stream-Gateway-Webhook/{VERSION}",
            **webhook.headers,
        }
        timeout = aiohttp.ClientTimeout(total=webhook.timeout)

        for attempt in range(webhook.retry_attempts + 1):
            try:
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.post(str(webhook.url), json=payload, headers=headers) as response:
                        if response.status < 400:
                            logger.debug(f"Delivered {event.event_type.value} to {webhook.url}")
                            return True
                        logger.warning(f"Webhook {webhook.url} answered {response.status}")
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                logger.warning(f"Webhook attempt {attempt + 1} failed for {webhook.url}: {e}")

            if attempt < webhook.retry_attempts:
                await asyncio.sleep(2 ** attempt)

        logger.error(f"Giving up on {event.event_type.value} for {webhook.url} "
                     f"after {webhook.retry_attempts + 1} attempts")
        return False
