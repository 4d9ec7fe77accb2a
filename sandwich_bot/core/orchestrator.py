"""
Sandwich Orchestrator
Boot sequence and the event loop tying subscriber, detector and pipeline together
"""

import asyncio
import functools
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from sandwich_bot.core.config import QUEUE_POLICIES, SubmissionConfig, TrendConfig, WalletConfig
from sandwich_bot.core.errors import SandwichBotError, SubscriptionError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics
from sandwich_bot.core.opportunity_detector import Opportunity, OpportunityDetector
from sandwich_bot.core.submission_pipeline import SubmissionPipeline
from sandwich_bot.core.trend_cache import TrendCache
from sandwich_bot.core.wallet_guard import BalanceGuard
from sandwich_bot.services.event_subscriber import LedgerEvent, LedgerEventSubscriber


logger = get_logger(__name__)
metrics = get_metrics()

# Crashes of one background task tolerated before run() gives up
MAX_BACKGROUND_RESTARTS = 3


class SandwichOrchestrator:
    """
    Runs the bot: boot checks, event consumption, single-flight submission

    Boot order (each step fatal on failure):
    1. Balance guard verifies the wallet meets the minimum
    2. Initial trend refresh must produce a non-empty set
    3. Ledger subscription is opened

    Runtime:
    - Each event is evaluated against the current trend snapshot
    - Opportunities go to a depth-1 slot; one worker runs the pipeline
    - A full slot is handled by the queue policy (newest_wins or drop)
    - Trend refresh runs on its own timer task
    - A crashed background task is logged and restarted; past
      MAX_BACKGROUND_RESTARTS the run ends with its exception

    Usage:
        orchestrator = SandwichOrchestrator(...)
        await orchestrator.start()
        await orchestrator.run()   # until request_shutdown()
    """

    def __init__(
        self,
        trend_cache: TrendCache,
        subscriber: LedgerEventSubscriber,
        detector: OpportunityDetector,
        balance_guard: BalanceGuard,
        pipeline: Optional[SubmissionPipeline] = None,
        wallet_config: Optional[WalletConfig] = None,
        trend_config: Optional[TrendConfig] = None,
        submission_config: Optional[SubmissionConfig] = None,
        dry_run: bool = False
    ):
        """
        Initialize orchestrator

        Args:
            trend_cache: Trend cache (refreshed at boot and on a timer)
            subscriber: Ledger event subscriber
            detector: Opportunity detector
            balance_guard: Wallet balance guard
            pipeline: Submission pipeline (not needed in dry-run mode)
            wallet_config: Wallet configuration (minimum balance)
            trend_config: Trend configuration (refresh interval)
            submission_config: Submission configuration (queue policy, max age)
            dry_run: Detect and log opportunities without submitting
        """
        if pipeline is None and not dry_run:
            raise ValueError("A submission pipeline is required unless dry_run is set")

        self.trend_cache = trend_cache
        self.subscriber = subscriber
        self.detector = detector
        self.balance_guard = balance_guard
        self.pipeline = pipeline
        self.wallet_config = wallet_config or WalletConfig()
        self.trend_config = trend_config or TrendConfig()
        self.submission_config = submission_config or SubmissionConfig()
        self.dry_run = dry_run

        if self.submission_config.queue_policy not in QUEUE_POLICIES:
            raise ValueError(f"Unknown queue policy: {self.submission_config.queue_policy}")

        self._started = False
        self._shutdown_requested = False
        self._shutdown_event = asyncio.Event()
        self._pending: Optional[Opportunity] = None
        self._pending_ready = asyncio.Event()
        self._inflight: Optional[asyncio.Task] = None
        self._background: Dict[str, asyncio.Task] = {}
        self._background_restarts: Dict[str, int] = {}
        self._background_failure: Optional[BaseException] = None
        self._stopping = False

        # Stats
        self._events_seen = 0
        self._opportunities = 0
        self._replaced = 0
        self._dropped_full = 0
        self._dropped_stale = 0
        self._iteration_errors = 0
        self._started_at: Optional[float] = None

        logger.info(
            "orchestrator_initialized",
            dry_run=dry_run,
            queue_policy=self.submission_config.queue_policy,
            max_opportunity_age_ms=self.submission_config.max_opportunity_age_ms
        )

    async def start(self) -> None:
        """
        Run the boot checks and open the subscription

        Raises:
            InsufficientFundsError: Wallet below minimum balance
            TrendRefreshError: No trend data could be loaded
            SubscriptionError: Ledger subscription could not be opened
            SandwichBotError: Balance lookup failed
        """
        minimum = self.wallet_config.min_balance_lamports
        state = await self.balance_guard.ensure_funded(minimum)
        logger.info(
            "boot_wallet_funded",
            pubkey=str(state.pubkey),
            balance_lamports=state.balance_lamports,
            minimum_lamports=minimum,
            balance_sol=state.balance_sol
        )

        trends = await self.trend_cache.refresh()
        logger.info("boot_trends_loaded", size=len(trends), version=trends.version)

        await self.subscriber.open()

        self._started = True
        self._started_at = time.time()
        logger.info("orchestrator_started")

    async def run(self) -> None:
        """
        Consume events until shutdown

        Raises:
            RuntimeError: If start() was not called
            SubscriptionError: If the event stream ended without a shutdown request
            Exception: Whatever a background task kept failing with
        """
        if not self._started:
            raise RuntimeError("Orchestrator not started. Call start() first.")

        self._spawn_background("trend_refresh", self._refresh_trends)
        self._spawn_background("opportunity_worker", self._worker)
        consumer = asyncio.create_task(self._consume())
        shutdown = asyncio.create_task(self._shutdown_event.wait())

        try:
            await asyncio.wait({consumer, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self._teardown(consumer, shutdown)

        if self._background_failure is not None:
            raise self._background_failure

        if consumer.done() and not consumer.cancelled() and consumer.exception() is not None:
            raise consumer.exception()

        if not self._shutdown_requested:
            raise SubscriptionError("Ledger event stream ended unexpectedly")

    def request_shutdown(self) -> None:
        """Stop consuming; the in-flight leg finishes, the next one is cancelled"""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        if self.pipeline is not None:
            self.pipeline.request_stop()
        self._shutdown_event.set()
        logger.info("orchestrator_shutdown_requested")

    def _refresh_trends(self) -> Awaitable[None]:
        return self.trend_cache.run_refresh_loop(self.trend_config.refresh_interval_s)

    def _spawn_background(self, name: str, factory: Callable[[], Awaitable[None]]) -> asyncio.Task:
        task = asyncio.create_task(factory())
        task.add_done_callback(functools.partial(self._on_background_done, name, factory))
        self._background[name] = task
        return task

    def _on_background_done(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        task: asyncio.Task
    ) -> None:
        """
        Done-callback for background tasks

        Background tasks only end by cancellation. Any other exit is logged;
        the task is restarted until its restart budget is spent, after which
        the shutdown event is set and run() re-raises the error.
        """
        if task.cancelled() or self._stopping:
            return

        error = task.exception()
        if error is None:
            error = RuntimeError(f"Background task {name} exited")
        restarts = self._background_restarts.get(name, 0)

        metrics.increment_counter("background_task_failures", labels={"task": name})
        logger.error("background_task_failed", task=name, restarts=restarts, **_error_fields(error))

        if restarts >= MAX_BACKGROUND_RESTARTS:
            self._background_failure = error
            logger.error("background_task_restarts_exhausted", task=name, restarts=restarts)
            self._shutdown_event.set()
            return

        self._background_restarts[name] = restarts + 1
        self._spawn_background(name, factory)

    async def _consume(self) -> None:
        async for event in self.subscriber.events():
            if self._shutdown_requested:
                break
            self._handle_event(event)

    def _handle_event(self, event: LedgerEvent) -> None:
        """One loop iteration; errors never escape"""
        self._events_seen += 1
        try:
            opportunity = self.detector.evaluate(event, self.trend_cache.current())
            if opportunity is None:
                return

            self._opportunities += 1
            if self.dry_run:
                metrics.increment_counter("dry_run_opportunities")
                logger.info("dry_run_opportunity", **opportunity.to_dict())
                return

            self._offer(opportunity)

        except Exception as e:
            self._iteration_errors += 1
            metrics.increment_counter("event_loop_errors")
            logger.error(
                "event_iteration_error",
                signature=event.signature,
                error=str(e),
                error_type=type(e).__name__
            )

    def _offer(self, opportunity: Opportunity) -> None:
        """Place an opportunity in the depth-1 slot according to the queue policy"""
        queued = self._pending
        if queued is not None:
            if self.submission_config.queue_policy == "newest_wins":
                self._replaced += 1
                metrics.increment_counter("opportunities_replaced")
                logger.info(
                    "opportunity_replaced",
                    dropped_signature=queued.target_signature,
                    dropped_asset=queued.target_asset,
                    new_signature=opportunity.target_signature
                )
            else:
                self._dropped_full += 1
                metrics.increment_counter("opportunities_dropped", labels={"reason": "queue_full"})
                logger.info(
                    "opportunity_dropped_queue_full",
                    target_signature=opportunity.target_signature,
                    target_asset=opportunity.target_asset,
                    queued_signature=queued.target_signature
                )
                return

        self._pending = opportunity
        self._pending_ready.set()

    async def _worker(self) -> None:
        """Run the pipeline for one opportunity at a time"""
        max_age = self.submission_config.max_opportunity_age_ms
        if self._pending is not None:
            # Restarted worker picks up what the previous one left
            self._pending_ready.set()
        while True:
            await self._pending_ready.wait()
            self._pending_ready.clear()
            opportunity, self._pending = self._pending, None
            if opportunity is None:
                continue

            age = opportunity.age_ms()
            if age > max_age:
                self._dropped_stale += 1
                metrics.increment_counter("opportunities_dropped", labels={"reason": "stale"})
                logger.info(
                    "opportunity_dropped_stale",
                    target_signature=opportunity.target_signature,
                    age_ms=round(age, 1),
                    max_age_ms=max_age
                )
                continue

            self._inflight = asyncio.create_task(self.pipeline.execute(opportunity))
            try:
                # Shielded: shutdown must not interrupt a leg mid-flight
                await asyncio.shield(self._inflight)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._iteration_errors += 1
                metrics.increment_counter("event_loop_errors")
                logger.error(
                    "pipeline_iteration_error",
                    target_signature=opportunity.target_signature,
                    error=str(e),
                    error_type=type(e).__name__
                )

    async def _teardown(self, consumer: asyncio.Task, shutdown: asyncio.Task) -> None:
        self._stopping = True
        self._shutdown_requested = self._shutdown_requested or shutdown.done()
        if self.pipeline is not None and self._shutdown_requested:
            self.pipeline.request_stop()

        await self.subscriber.stop()

        for task in (shutdown, *self._background.values()):
            if not task.done():
                task.cancel()
        if not consumer.done():
            await asyncio.wait({consumer}, timeout=5.0)
            if not consumer.done():
                logger.warning("event_consumer_stop_timeout")
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)

        await asyncio.gather(shutdown, return_exceptions=True)
        results = await asyncio.gather(*self._background.values(), return_exceptions=True)
        for name, result in zip(self._background, results):
            # CancelledError is not an Exception subclass
            if isinstance(result, Exception) and result is not self._background_failure:
                metrics.increment_counter("background_task_failures", labels={"task": name})
                logger.error("background_task_failed", task=name, **_error_fields(result))

        await self.trend_cache.close()

        if self._inflight is not None and not self._inflight.done():
            logger.info("waiting_for_inflight_leg")
            await asyncio.gather(self._inflight, return_exceptions=True)

        if self._pending is not None:
            logger.info("pending_opportunity_discarded", target_signature=self._pending.target_signature)
            self._pending = None

        logger.info("orchestrator_stopped", **self.get_stats())

    def get_stats(self) -> Dict[str, Any]:
        """Aggregate statistics across components"""
        trends = self.trend_cache.current()
        stats: Dict[str, Any] = {
            "uptime_s": round(time.time() - self._started_at, 1) if self._started_at else 0.0,
            "events_seen": self._events_seen,
            "opportunities": self._opportunities,
            "opportunities_replaced": self._replaced,
            "opportunities_dropped_queue_full": self._dropped_full,
            "opportunities_dropped_stale": self._dropped_stale,
            "iteration_errors": self._iteration_errors,
            "trend_version": trends.version,
            "trend_size": len(trends),
            "trend_refreshes_failed": metrics.get_counter("trend_refreshes", labels={"outcome": "failed"}),
            "wallet_balance_lamports": self.balance_guard.state.balance_lamports,
            "wallet_balance_sol": self.balance_guard.state.balance_sol,
            "background_restarts": dict(self._background_restarts),
            "subscriber": self.subscriber.get_stats(),
            "detector": self.detector.get_stats()
        }
        if self.pipeline is not None:
            stats["pipeline"] = self.pipeline.get_stats()
        return stats


def _error_fields(error: BaseException) -> Dict[str, Any]:
    """Log context for an exception, with kind and context for bot errors"""
    if isinstance(error, SandwichBotError):
        return {"error_type": type(error).__name__, **error.to_dict()}
    return {"error": str(error), "error_type": type(error).__name__, "error_kind": None}
