"""
Wallet/Balance Guard
Owns the signing identity's balance snapshot and enforces the funding minimum
"""

import time
from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey

from sandwich_bot.clients.ledger_client import LedgerClient
from sandwich_bot.core.errors import InsufficientFundsError, SandwichBotError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()


@dataclass(frozen=True)
class WalletState:
    """Immutable snapshot of the signing identity's balance"""
    pubkey: Pubkey
    balance_lamports: Optional[int] = None  # None until first lookup
    refreshed_at: float = 0.0
    version: int = 0

    @property
    def balance_sol(self) -> Optional[float]:
        if self.balance_lamports is None:
            return None
        return self.balance_lamports / 1e9


class BalanceGuard:
    """
    Checks the wallet holds at least a minimum balance

    The guard is the only writer of WalletState; it swaps in a new snapshot
    after every successful lookup. Readers use .state.

    Usage:
        guard = BalanceGuard(ledger, signer.pubkey)
        await guard.ensure_funded(1_000_000)                   # boot: fatal
        await guard.ensure_funded(1_000_000, allow_cached=True)  # mid-run
    """

    def __init__(self, ledger: LedgerClient, pubkey: Pubkey, commitment: str = "confirmed"):
        self.ledger = ledger
        self.commitment = commitment
        self._state = WalletState(pubkey=pubkey)

    @property
    def state(self) -> WalletState:
        """Current wallet snapshot"""
        return self._state

    async def refresh(self) -> WalletState:
        """
        Fetch the balance and swap in a new snapshot

        Raises:
            SandwichBotError: If the lookup failed
        """
        balance = await self.ledger.get_balance(self._state.pubkey, self.commitment)
        self._state = WalletState(
            pubkey=self._state.pubkey,
            balance_lamports=balance,
            refreshed_at=time.time(),
            version=self._state.version + 1
        )
        metrics.set_gauge("wallet_balance_lamports", balance)
        return self._state

    async def ensure_funded(self, minimum_lamports: int, allow_cached: bool = False) -> WalletState:
        """
        Verify the wallet balance meets the minimum

        Args:
            minimum_lamports: Required balance
            allow_cached: Fall back to the last known balance if the lookup
                fails (mid-run); at boot the lookup error propagates

        Returns:
            WalletState used for the decision

        Raises:
            InsufficientFundsError: If the balance is below the minimum
            SandwichBotError: If the lookup failed and no fallback applies
        """
        try:
            state = await self.refresh()
        except SandwichBotError as e:
            if not allow_cached or self._state.balance_lamports is None:
                logger.error("balance_lookup_failed", pubkey=str(self._state.pubkey), **e.to_dict())
                raise
            state = self._state
            logger.warning(
                "balance_lookup_failed_using_cached",
                pubkey=str(state.pubkey),
                cached_balance_lamports=state.balance_lamports,
                cached_version=state.version,
                **e.to_dict()
            )

        if state.balance_lamports < minimum_lamports:
            metrics.increment_counter("balance_checks", labels={"outcome": "insufficient"})
            logger.warning(
                "insufficient_funds",
                pubkey=str(state.pubkey),
                balance_lamports=state.balance_lamports,
                minimum_lamports=minimum_lamports
            )
            raise InsufficientFundsError(state.balance_lamports, minimum_lamports, str(state.pubkey))

        metrics.increment_counter("balance_checks", labels={"outcome": "ok"})
        logger.debug(
            "balance_check_passed",
            balance_lamports=state.balance_lamports,
            minimum_lamports=minimum_lamports
        )
        return state
