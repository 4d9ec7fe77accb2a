"""
Asset Trend Cache
Holds the current ranked set of trending mints as an immutable snapshot
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from sandwich_bot.core.errors import ErrorKind, SandwichBotError, TrendRefreshError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()


@dataclass(frozen=True)
class TrendSet:
    """
    Ranked, immutable snapshot of trending assets

    Attributes:
        assets: Asset ids, rank 0 first
        version: Monotonic snapshot number (0 = never refreshed)
        refreshed_at: Unix time the snapshot was taken
    """
    assets: Tuple[str, ...] = ()
    version: int = 0
    refreshed_at: float = 0.0
    _ranks: Dict[str, int] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        ranks: Dict[str, int] = {}
        for index, asset in enumerate(self.assets):
            ranks.setdefault(asset, index)
        object.__setattr__(self, "_ranks", ranks)

    @classmethod
    def from_assets(cls, assets: Iterable[str], version: int) -> "TrendSet":
        return cls(assets=tuple(assets), version=version, refreshed_at=time.time())

    def rank(self, asset: str) -> Optional[int]:
        """Rank of an asset, or None if it is not trending"""
        return self._ranks.get(asset)

    def __contains__(self, asset: object) -> bool:
        return asset in self._ranks

    def __len__(self) -> int:
        return len(self.assets)

    def __iter__(self):
        return iter(self.assets)

    @property
    def is_empty(self) -> bool:
        return not self.assets


class TrendCache:
    """
    Caches the trend set and refreshes it from the discovery client

    Readers call current() and get the last good snapshot without waiting.
    refresh() replaces the snapshot wholesale; on failure the previous
    snapshot stays in place. Concurrent refresh() calls share one request.

    Usage:
        cache = TrendCache(trend_client)
        await cache.refresh()
        trends = cache.current()
    """

    def __init__(self, client, refresh_interval_s: float = 60.0):
        """
        Initialize trend cache

        Args:
            client: Object with `async fetch_trending() -> list[str]`
            refresh_interval_s: Timer period for run_refresh_loop()
        """
        self.client = client
        self.refresh_interval_s = refresh_interval_s
        self._snapshot = TrendSet()
        self._inflight: Optional[asyncio.Task] = None
        self._consecutive_failures = 0

    def current(self) -> TrendSet:
        """Last successfully refreshed snapshot"""
        return self._snapshot

    async def refresh(self) -> TrendSet:
        """
        Refresh the trend set (single-flight)

        Returns:
            The new snapshot

        Raises:
            TrendRefreshError: If the fetch failed or returned nothing; the
                cached snapshot is left unchanged
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._do_refresh())
        else:
            metrics.increment_counter("trend_refresh_coalesced")

        # Shield so one cancelled waiter does not cancel the shared request
        return await asyncio.shield(self._inflight)

    async def _do_refresh(self) -> TrendSet:
        try:
            assets = await self.client.fetch_trending()
        except SandwichBotError as e:
            self._record_failure(e.kind, str(e))
            raise TrendRefreshError(f"Trend refresh failed: {e}", kind=e.kind) from e

        if not assets:
            self._record_failure(ErrorKind.MALFORMED_INPUT, "empty trend list")
            raise TrendRefreshError("Trend refresh returned no assets", kind=ErrorKind.MALFORMED_INPUT)

        snapshot = TrendSet.from_assets(assets, version=self._snapshot.version + 1)
        self._snapshot = snapshot
        self._consecutive_failures = 0

        metrics.increment_counter("trend_refreshes", labels={"outcome": "success"})
        metrics.set_gauge("trend_set_size", len(snapshot))
        logger.info(
            "trend_set_refreshed",
            version=snapshot.version,
            size=len(snapshot),
            top=list(snapshot.assets[:5])
        )
        return snapshot

    def _record_failure(self, kind: ErrorKind, error: str) -> None:
        self._consecutive_failures += 1
        metrics.increment_counter("trend_refreshes", labels={"outcome": "failed"})
        logger.warning(
            "trend_refresh_failed",
            error=error,
            error_kind=kind.value,
            consecutive_failures=self._consecutive_failures,
            kept_version=self._snapshot.version,
            kept_size=len(self._snapshot)
        )

    async def run_refresh_loop(self, interval_s: Optional[float] = None) -> None:
        """
        Refresh on a fixed interval until cancelled

        Failures are logged and the stale snapshot keeps serving readers.

        Args:
            interval_s: Seconds between refreshes (defaults to refresh_interval_s)
        """
        interval = interval_s if interval_s is not None else self.refresh_interval_s
        logger.info("trend_refresh_loop_started", interval_s=interval)
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.refresh()
                except TrendRefreshError:
                    # Already logged by _record_failure
                    continue
                except Exception as e:
                    metrics.increment_counter("trend_refreshes", labels={"outcome": "error"})
                    logger.error(
                        "trend_refresh_loop_error",
                        error=str(e),
                        error_type=type(e).__name__,
                        kept_version=self._snapshot.version
                    )
                    continue
        finally:
            logger.info("trend_refresh_loop_stopped")

    async def close(self) -> None:
        """Cancel a refresh still in flight and wait for it to finish"""
        inflight = self._inflight
        if inflight is None:
            return
        if not inflight.done():
            inflight.cancel()
            logger.info("trend_refresh_cancelled", version=self._snapshot.version)
        # Retrieve the outcome so a failed refresh is not reported as never awaited
        await asyncio.gather(inflight, return_exceptions=True)
        self._inflight = None
