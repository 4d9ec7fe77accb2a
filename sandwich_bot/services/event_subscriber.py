"""
Ledger Event Subscriber
Streams resolved transactions from a logsSubscribe("all") feed
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from sandwich_bot.clients.ledger_client import LedgerClient
from sandwich_bot.core.config import SubscriberConfig
from sandwich_bot.core.errors import (
    MalformedInputError,
    SandwichBotError,
    SubscriptionError
)
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics
from sandwich_bot.core.rpc_manager import RPCSubscription


logger = get_logger(__name__)
metrics = get_metrics()


@dataclass
class LedgerEvent:
    """
    A resolved transaction observed on the feed

    Attributes:
        signature: Transaction signature
        slot: Slot the notification was reported for
        received_at: Unix time the notification arrived
        body: jsonParsed getTransaction result
    """
    signature: str
    slot: Optional[int]
    received_at: float
    body: Dict[str, Any]
    _account_keys: Optional[Tuple[str, ...]] = field(default=None, init=False, repr=False)

    @property
    def account_keys(self) -> Tuple[str, ...]:
        """
        Every account referenced by the transaction, in message order

        Includes addresses loaded from lookup tables for v0 transactions.

        Raises:
            MalformedInputError: If the body has no readable account list
        """
        if self._account_keys is None:
            self._account_keys = _extract_account_keys(self.body, self.signature)
        return self._account_keys

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "received_at": self.received_at
        }


def _extract_account_keys(body: Any, signature: str) -> Tuple[str, ...]:
    try:
        raw_keys = body["transaction"]["message"]["accountKeys"]
    except (KeyError, TypeError) as e:
        raise MalformedInputError(
            "Transaction body has no account keys",
            signature=signature
        ) from e

    if not isinstance(raw_keys, list):
        raise MalformedInputError("accountKeys is not a list", signature=signature)

    keys: List[str] = []
    for key in raw_keys:
        # jsonParsed gives {"pubkey": ..., "signer": ..., "writable": ...}
        if isinstance(key, dict):
            key = key.get("pubkey")
        if not isinstance(key, str) or not key:
            raise MalformedInputError("Unreadable account key", signature=signature, key=key)
        keys.append(key)

    meta = body.get("meta") if isinstance(body, dict) else None
    loaded = meta.get("loadedAddresses") if isinstance(meta, dict) else None
    if isinstance(loaded, dict):
        for group in ("writable", "readonly"):
            keys.extend(k for k in loaded.get(group) or [] if isinstance(k, str))

    return tuple(keys)


class RecentSignatureCache:
    """
    Bounded set of recently seen signatures

    Entries expire after window_s; the oldest entry is evicted once
    max_entries is reached. A signature seen again after expiry counts as new.
    """

    def __init__(self, window_s: float = 30.0, max_entries: int = 10_000):
        self.window_s = window_s
        self.max_entries = max_entries
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def seen(self, signature: str, now: Optional[float] = None) -> bool:
        """
        Record a signature and report whether it was already in the window

        Args:
            signature: Transaction signature
            now: Monotonic timestamp (defaults to time.monotonic())

        Returns:
            True if this is a duplicate within the window
        """
        now = time.monotonic() if now is None else now
        self._expire(now)

        if signature in self._seen:
            return True

        self._seen[signature] = now
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return False

    def _expire(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._seen:
            oldest_sig, oldest_ts = next(iter(self._seen.items()))
            if oldest_ts > cutoff:
                break
            del self._seen[oldest_sig]

    def __len__(self) -> int:
        return len(self._seen)


# Marks the end of the resolved-event queue
_END = object()


class LedgerEventSubscriber:
    """
    Long-lived logs subscription producing resolved LedgerEvents

    Features:
    - Exact-duplicate suppression within a short window
    - Bounded-concurrency body resolution with a small retry for
      transactions that are not yet visible
    - Bounded hand-off queue; events are dropped (and logged) when full
    - Automatic reconnection with exponential backoff

    Usage:
        subscriber = LedgerEventSubscriber(ledger, bot_config.subscriber_config)
        await subscriber.open()
        async for event in subscriber.events():
            ...
    """

    def __init__(self, ledger: LedgerClient, config: Optional[SubscriberConfig] = None):
        """
        Initialize event subscriber

        Args:
            ledger: Ledger client used for logsSubscribe and getTransaction
            config: Subscriber configuration (optional)
        """
        self.ledger = ledger
        self.config = config or SubscriberConfig()
        self._dedup = RecentSignatureCache(self.config.dedup_window_s, self.config.dedup_max_entries)
        self._subscription: Optional[RPCSubscription] = None
        self._running = False
        self._queue: Optional[asyncio.Queue] = None
        self._resolvers: Set[asyncio.Task] = set()

        # Stats
        self._notifications = 0
        self._duplicates = 0
        self._failed_skipped = 0
        self._resolved = 0
        self._dropped = 0
        self._reconnections = 0

        logger.info(
            "event_subscriber_initialized",
            mentions=self.config.mentions,
            commitment=self.config.commitment,
            dedup_window_s=self.config.dedup_window_s
        )

    async def open(self) -> None:
        """
        Establish the subscription

        Raises:
            SubscriptionError: If no endpoint accepted the subscription
        """
        try:
            self._subscription = await self.ledger.open_logs_subscription(
                self.config.mentions,
                self.config.commitment
            )
        except SandwichBotError as e:
            logger.error("event_subscription_failed", **e.to_dict())
            raise SubscriptionError(f"Could not open ledger subscription: {e}", kind=e.kind) from e

        self._running = True
        logger.info(
            "event_subscription_opened",
            subscription_id=self._subscription.subscription_id,
            endpoint=self._subscription.endpoint_label
        )

    async def stop(self) -> None:
        """End the stream and close the subscription"""
        self._running = False
        if self._subscription is not None:
            await self._subscription.close()
        for task in list(self._resolvers):
            task.cancel()
        logger.info("event_subscriber_stopped", **self.get_stats())

    async def events(self) -> AsyncIterator[LedgerEvent]:
        """
        Yield resolved events until stop() or reconnects are exhausted

        Raises:
            RuntimeError: If open() was not called first
        """
        if self._subscription is None:
            raise RuntimeError("Subscription not open. Call open() first.")

        self._queue = asyncio.Queue(maxsize=self.config.event_queue_size)
        pump = asyncio.create_task(self._pump())
        try:
            while True:
                item = await self._queue.get()
                if item is _END:
                    return
                yield item
        finally:
            pump.cancel()
            for task in list(self._resolvers):
                task.cancel()
            await asyncio.gather(pump, return_exceptions=True)

    async def _pump(self) -> None:
        """Read notifications, reconnecting on disconnect, and fan out resolution"""
        semaphore = asyncio.Semaphore(self.config.max_concurrent_resolutions)
        attempt = 0

        try:
            while self._running:
                subscription = self._subscription
                async for notification in subscription:
                    attempt = 0
                    self._handle_notification(notification, semaphore)

                if not self._running:
                    break

                if (self.config.max_reconnect_attempts is not None and
                        attempt >= self.config.max_reconnect_attempts):
                    logger.error(
                        "event_subscription_reconnects_exhausted",
                        attempts=attempt
                    )
                    break

                delay_ms = min(
                    self.config.reconnect_backoff_base_ms * (2 ** attempt),
                    self.config.reconnect_backoff_max_ms
                )
                attempt += 1
                logger.warning(
                    "event_subscription_reconnecting",
                    delay_ms=delay_ms,
                    attempt=attempt
                )
                await asyncio.sleep(delay_ms / 1000)

                try:
                    self._subscription = await self.ledger.open_logs_subscription(
                        self.config.mentions,
                        self.config.commitment
                    )
                    self._reconnections += 1
                    metrics.increment_counter("subscription_reconnections")
                except SandwichBotError as e:
                    logger.warning("event_subscription_reconnect_failed", attempt=attempt, **e.to_dict())
                    # Empty iteration next pass, then back off again
                    self._subscription = _ClosedSubscription(subscription)
        finally:
            if self._resolvers:
                await asyncio.gather(*self._resolvers, return_exceptions=True)
            self._offer_end()

    def _handle_notification(self, notification: Any, semaphore: asyncio.Semaphore) -> None:
        self._notifications += 1
        metrics.increment_counter("ledger_notifications")
        received_at = time.time()

        try:
            value = notification["value"]
            signature = value["signature"]
            slot = (notification.get("context") or {}).get("slot")
        except (KeyError, TypeError):
            metrics.increment_counter("ledger_notifications_malformed")
            logger.warning("notification_malformed", notification=str(notification)[:200])
            return

        if not isinstance(signature, str) or not signature:
            logger.warning("notification_missing_signature", slot=slot)
            return

        if self._dedup.seen(signature):
            self._duplicates += 1
            metrics.increment_counter("ledger_notifications_duplicate")
            logger.debug("notification_duplicate_dropped", signature=signature)
            return

        if self.config.skip_failed_transactions and value.get("err"):
            self._failed_skipped += 1
            logger.debug("notification_failed_tx_skipped", signature=signature)
            return

        task = asyncio.create_task(self._resolve(signature, slot, received_at, semaphore))
        self._resolvers.add(task)
        task.add_done_callback(self._resolvers.discard)

    async def _resolve(
        self,
        signature: str,
        slot: Optional[int],
        received_at: float,
        semaphore: asyncio.Semaphore
    ) -> None:
        """Look up the body by signature; drop the event on failure"""
        async with semaphore:
            body = None
            for attempt in range(self.config.resolve_retries + 1):
                if attempt:
                    await asyncio.sleep(self.config.resolve_retry_delay_ms / 1000)
                try:
                    body = await self.ledger.get_transaction(signature, self.config.commitment)
                except SandwichBotError as e:
                    logger.warning(
                        "event_resolution_error",
                        signature=signature,
                        attempt=attempt + 1,
                        **e.to_dict()
                    )
                    continue
                if body is not None:
                    break

        if body is None:
            self._dropped += 1
            metrics.increment_counter("ledger_events_dropped", labels={"reason": "unresolved"})
            logger.info("event_unresolved_dropped", signature=signature)
            return

        if not isinstance(body, dict):
            self._dropped += 1
            metrics.increment_counter("ledger_events_dropped", labels={"reason": "malformed"})
            logger.warning("event_body_malformed", signature=signature)
            return

        self._resolved += 1
        metrics.record_latency("event_resolution", (time.time() - received_at) * 1000)
        self._offer(LedgerEvent(signature=signature, slot=slot, received_at=received_at, body=body))

    def _offer(self, event: LedgerEvent) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._record_queue_drop(event)

    def _offer_end(self) -> None:
        if self._queue is None:
            return
        while True:
            try:
                self._queue.put_nowait(_END)
                return
            except asyncio.QueueFull:
                # End marker takes the oldest slot
                self._record_queue_drop(self._queue.get_nowait())

    def _record_queue_drop(self, event: LedgerEvent) -> None:
        self._dropped += 1
        metrics.increment_counter("ledger_events_dropped", labels={"reason": "queue_full"})
        logger.warning(
            "event_queue_full_dropped",
            signature=event.signature,
            queue_size=self._queue.maxsize
        )

    def get_stats(self) -> Dict[str, Any]:
        """Subscriber statistics"""
        return {
            "notifications": self._notifications,
            "duplicates": self._duplicates,
            "failed_skipped": self._failed_skipped,
            "resolved": self._resolved,
            "dropped": self._dropped,
            "reconnections": self._reconnections,
            "dedup_entries": len(self._dedup)
        }


class _ClosedSubscription:
    """Stand-in after a failed reconnect; yields nothing"""

    def __init__(self, previous: Any):
        self.subscription_id = getattr(previous, "subscription_id", None)
        self.endpoint_label = getattr(previous, "endpoint_label", "")

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration

    async def close(self) -> None:
        return None
