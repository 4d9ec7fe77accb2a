"""
Opportunity Detector
Decides participate/skip for each resolved ledger event
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from sandwich_bot.core.errors import MalformedInputError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics
from sandwich_bot.core.trend_cache import TrendSet
from sandwich_bot.services.event_subscriber import LedgerEvent


logger = get_logger(__name__)
metrics = get_metrics()


@dataclass(frozen=True)
class Opportunity:
    """
    A target transaction touching a trending asset

    Attributes:
        target_signature: Signature of the observed transaction
        target_asset: Trending asset it touched (best-ranked match)
        detected_at: Unix time of detection
        trend_rank: Rank of target_asset in the trend set
        trend_version: Version of the trend set used
    """
    target_signature: str
    target_asset: str
    detected_at: float
    trend_rank: int = 0
    trend_version: int = 0

    def age_ms(self, now: Optional[float] = None) -> float:
        """Milliseconds since detection"""
        now = time.time() if now is None else now
        return (now - self.detected_at) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_signature": self.target_signature,
            "target_asset": self.target_asset,
            "detected_at": self.detected_at,
            "trend_rank": self.trend_rank,
            "trend_version": self.trend_version
        }


class OpportunityDetector:
    """
    Matches an event's accounts against the trend set

    evaluate() does no I/O and never raises; a malformed event is logged and
    skipped. Events that involve one of the ignored accounts (the bot's own
    wallet) are skipped so the bot does not react to its own legs.

    Usage:
        detector = OpportunityDetector(ignore_accounts=[str(signer.pubkey)])
        opportunity = detector.evaluate(event, trend_cache.current())
    """

    def __init__(self, ignore_accounts: Optional[Iterable[str]] = None):
        self.ignore_accounts = frozenset(ignore_accounts or ())
        self._evaluated = 0
        self._matched = 0
        self._malformed = 0

    def evaluate(self, event: LedgerEvent, trends: TrendSet) -> Optional[Opportunity]:
        """
        Evaluate one event against the current trend snapshot

        Args:
            event: Resolved ledger event
            trends: Trend snapshot to match against

        Returns:
            Opportunity for the best-ranked trending account, or None
        """
        self._evaluated += 1
        start = time.perf_counter()

        try:
            accounts = event.account_keys
        except MalformedInputError as e:
            self._malformed += 1
            metrics.increment_counter("detector_malformed_events")
            logger.warning("detector_malformed_event", **{"signature": event.signature, **e.to_dict()})
            return None

        if self.ignore_accounts and not self.ignore_accounts.isdisjoint(accounts):
            logger.debug("detector_own_transaction_skipped", signature=event.signature)
            return None

        best_rank: Optional[int] = None
        best_asset: Optional[str] = None
        for account in accounts:
            rank = trends.rank(account)
            if rank is not None and (best_rank is None or rank < best_rank):
                best_rank = rank
                best_asset = account
                if rank == 0:
                    break

        metrics.record_latency("opportunity_detection", (time.perf_counter() - start) * 1000)

        if best_asset is None:
            return None

        self._matched += 1
        metrics.increment_counter("opportunities_detected")
        opportunity = Opportunity(
            target_signature=event.signature,
            target_asset=best_asset,
            detected_at=time.time(),
            trend_rank=best_rank,
            trend_version=trends.version
        )
        logger.info("opportunity_detected", **opportunity.to_dict())
        return opportunity

    def get_stats(self) -> Dict[str, int]:
        return {
            "evaluated": self._evaluated,
            "matched": self._matched,
            "malformed": self._malformed
        }
