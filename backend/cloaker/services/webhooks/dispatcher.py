"""
Webhook Dispatcher

Fire-and-forget delivery of click events to link owners.

The click path only calls enqueue(), which never blocks: when the queue is
full the event is dropped with a warning. A small pool of worker tasks POSTs
JSON with httpx; failed attempts are re-enqueued after an exponential backoff
(10 s, 40 s, 160 s by default) and dropped with an error log once retries are
exhausted.
"""
import asyncio
import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

import httpx

from ...models.db_models import Decision, WebhookEvent
from ...models.policy import LinkPolicy
from ..errors import WebhookDeliveryFailed

logger = logging.getLogger(__name__)


WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "5"))
WEBHOOK_MAX_RETRIES = int(os.getenv("WEBHOOK_MAX_RETRIES", "3"))
WEBHOOK_BACKOFF_SECONDS = float(os.getenv("WEBHOOK_BACKOFF_SECONDS", "10"))
WEBHOOK_BACKOFF_FACTOR = 4
WEBHOOK_WORKERS = int(os.getenv("WEBHOOK_WORKERS", "2"))
WEBHOOK_QUEUE_SIZE = int(os.getenv("WEBHOOK_QUEUE_SIZE", "1000"))


# =============================================================================
# EVENTS
# =============================================================================

@dataclass(frozen=True)
class WebhookDelivery:
    """One event bound for one URL. attempt counts failed tries so far."""
    url: str
    payload: Dict[str, Any]
    attempt: int = 0


def select_event_type(policy: LinkPolicy, decision: Decision) -> Optional[str]:
    """
    Which event, if any, this decision fires for the link.

    A subscription to the decision itself wins over the catch-all "click"
    subscription, so each click produces at most one delivery.
    """
    if not policy.webhook_enabled or not policy.webhook_url:
        return None
    subscribed = set(policy.webhook_events)
    if decision.value in subscribed:
        return decision.value
    if WebhookEvent.CLICK.value in subscribed:
        return WebhookEvent.CLICK.value
    return None


def build_payload(
    event: str,
    link_id: str,
    score: Optional[int],
    decision: Decision,
    country: Optional[str],
    device: Optional[str],
    ip: Optional[str],
    timestamp: Optional[datetime] = None,
) -> Dict[str, Any]:
    timestamp = timestamp or datetime.now(timezone.utc)
    return {
        "event": event,
        "link_id": link_id,
        "visitor": {
            "score": score,
            "decision": decision.value,
            "country": country,
            "device": device,
            "ip": ip,
        },
        "timestamp": timestamp.isoformat(),
    }


def backoff_delay(attempt: int, base: float = WEBHOOK_BACKOFF_SECONDS, factor: int = WEBHOOK_BACKOFF_FACTOR) -> float:
    """Delay before retry number `attempt` (1-based): base, base*factor, base*factor^2..."""
    return base * (factor ** (attempt - 1))


# =============================================================================
# DISPATCHER
# =============================================================================

class WebhookDispatcher:
    """Asynchronous webhook sender with bounded queue and retry/backoff."""

    def __init__(
        self,
        *,
        timeout: float = WEBHOOK_TIMEOUT_SECONDS,
        max_retries: int = WEBHOOK_MAX_RETRIES,
        backoff_seconds: float = WEBHOOK_BACKOFF_SECONDS,
        backoff_factor: int = WEBHOOK_BACKOFF_FACTOR,
        workers: int = WEBHOOK_WORKERS,
        queue_size: int = WEBHOOK_QUEUE_SIZE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_factor = backoff_factor
        self.worker_count = max(1, workers)
        self.queue_size = queue_size
        self._transport = transport
        self._queue: Optional[asyncio.Queue] = None
        self._client: Optional[httpx.AsyncClient] = None
        self._workers: List[asyncio.Task] = []
        self._retries: Set[asyncio.Task] = set()
        self.delivered = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"webhook-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(f"Webhook dispatcher started with {self.worker_count} workers")

    async def stop(self) -> None:
        tasks = self._workers + list(self._retries)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retries.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        pending = self._queue.qsize() if self._queue is not None else 0
        if pending:
            logger.warning(f"Webhook dispatcher stopped with {pending} undelivered events")
        self._queue = None
        logger.info("Webhook dispatcher stopped")

    def enqueue(self, delivery: WebhookDelivery) -> bool:
        """Queue a delivery. Never blocks; returns False if it was dropped."""
        if self._queue is None:
            logger.warning(f"Webhook dispatcher not running, dropping event for {delivery.url}")
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(delivery)
        except asyncio.QueueFull:
            logger.warning(f"Webhook queue full, dropping event for {delivery.url}")
            self.dropped += 1
            return False
        return True

    async def join(self) -> None:
        """Wait until the queue is empty and no retry is pending."""
        while self._queue is not None:
            await self._queue.join()
            if not self._retries:
                return
            await asyncio.gather(*list(self._retries), return_exceptions=True)

    async def deliver(self, delivery: WebhookDelivery) -> None:
        """Single POST attempt. Raises WebhookDeliveryFailed on transport error or non-2xx."""
        if self._client is None:
            raise WebhookDeliveryFailed("dispatcher not started")
        try:
            response = await self._client.post(delivery.url, json=delivery.payload)
        except httpx.HTTPError as e:
            raise WebhookDeliveryFailed(f"transport error: {e}") from e
        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryFailed(
                f"HTTP {response.status_code}",
                detail={"status_code": response.status_code},
            )

    # -------------------------------------------------------------------------

    async def _worker(self, n: int) -> None:
        while True:
            delivery = await self._queue.get()
            try:
                await self.deliver(delivery)
                self.delivered += 1
                logger.debug(f"Webhook delivered to {delivery.url} ({delivery.payload.get('event')})")
            except WebhookDeliveryFailed as e:
                self._handle_failure(delivery, e)
            except Exception:
                logger.exception(f"Unexpected error in webhook worker {n}")
            finally:
                self._queue.task_done()

    def _handle_failure(self, delivery: WebhookDelivery, error: WebhookDeliveryFailed) -> None:
        attempt = delivery.attempt + 1
        if attempt > self.max_retries:
            self.dropped += 1
            logger.error(
                f"Webhook to {delivery.url} dropped after {attempt} attempts: {error.message}"
            )
            return
        delay = backoff_delay(attempt, self.backoff_seconds, self.backoff_factor)
        logger.warning(
            f"Webhook to {delivery.url} failed ({error.message}), retry {attempt}/{self.max_retries} in {delay:.0f}s"
        )
        task = asyncio.create_task(self._retry_later(replace(delivery, attempt=attempt), delay))
        self._retries.add(task)
        task.add_done_callback(self._retries.discard)

    async def _retry_later(self, delivery: WebhookDelivery, delay: float) -> None:
        await asyncio.sleep(delay)
        self.enqueue(delivery)


_dispatcher: Optional[WebhookDispatcher] = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Process-wide dispatcher, started and stopped by the application lifespan."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher()
    return _dispatcher
