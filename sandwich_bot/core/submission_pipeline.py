"""
Dual-Transaction Submission Pipeline
Runs the front leg, then the back leg, for one Opportunity at a time
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from solders.hash import Hash
from solders.pubkey import Pubkey

from sandwich_bot.clients.ledger_client import LedgerClient
from sandwich_bot.clients.swap_instructions import (
    SwapDirection,
    SwapInstruction,
    SwapInstructionBuilder
)
from sandwich_bot.core.config import SubmissionConfig
from sandwich_bot.core.errors import ErrorKind, InsufficientFundsError, SandwichBotError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import LatencyTimer, get_metrics
from sandwich_bot.core.opportunity_detector import Opportunity
from sandwich_bot.core.tx_builder import TransactionBuilder
from sandwich_bot.core.tx_signer import WalletSigner
from sandwich_bot.core.tx_submitter import ConfirmationStatus, TransactionSubmitter
from sandwich_bot.core.wallet_guard import BalanceGuard


logger = get_logger(__name__)
metrics = get_metrics()


class LegState(Enum):
    """Lifecycle of one leg"""
    BUILT = "built"
    SIMULATED = "simulated"
    SIGNED = "signed"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (LegState.CONFIRMED, LegState.FAILED, LegState.TIMED_OUT)


class OpportunityOutcome(Enum):
    """How a pipeline run ended"""
    COMPLETED = "completed"  # Both legs confirmed
    ABANDONED = "abandoned"  # Front leg not confirmed, back leg never built
    PARTIAL_EXPOSURE = "partial_exposure"  # Front confirmed, back did not
    SKIPPED = "skipped"  # Balance check failed before any leg


@dataclass
class SubmissionAttempt:
    """
    State of one leg, owned by the pipeline for the duration of a run

    Attributes:
        direction: FRONT or BACK
        instruction: Swap instruction the leg was built from
        blockhash: Blockhash used for the latest signature
        signature: Latest transaction signature (None until signed)
        state: Current LegState
        error_kind: Classification of the terminal error, if any
        error: Error message, if any
        submit_attempts: Number of broadcast attempts made
    """
    direction: SwapDirection
    instruction: Optional[SwapInstruction] = None
    blockhash: Optional[Hash] = None
    signature: Optional[str] = None
    state: LegState = LegState.BUILT
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    submit_attempts: int = 0
    started_at: float = field(default_factory=time.time)
    submitted_at: Optional[float] = None
    finished_at: Optional[float] = None

    def fail(self, state: LegState, error: str, kind: Optional[ErrorKind]) -> "SubmissionAttempt":
        self.state = state
        self.error = error
        self.error_kind = kind
        self.finished_at = time.time()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "state": self.state.value,
            "signature": self.signature,
            "blockhash": str(self.blockhash) if self.blockhash else None,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "submit_attempts": self.submit_attempts
        }


@dataclass
class PipelineResult:
    """Outcome of one Opportunity"""
    opportunity: Opportunity
    outcome: OpportunityOutcome
    front: Optional[SubmissionAttempt] = None
    back: Optional[SubmissionAttempt] = None
    reason: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.opportunity.to_dict(),
            "outcome": self.outcome.value,
            "front": self.front.to_dict() if self.front else None,
            "back": self.back.to_dict() if self.back else None,
            "reason": self.reason,
            "duration_ms": self.duration_ms
        }


class SubmissionPipeline:
    """
    Simulate, sign, submit and confirm the two legs of a sandwich

    Flow per leg:
    1. Build the swap instruction and a fee-payer envelope
    2. Simulate (a failure ends the leg without broadcasting)
    3. Fetch a fresh blockhash and sign
    4. Broadcast, retrying a bounded number of times with a new blockhash
    5. Wait for confirmation with a bounded timeout

    The back leg is only built once the front leg is CONFIRMED. Runs are
    serialised: a second execute() waits for the first to finish.

    Usage:
        pipeline = SubmissionPipeline(ledger, submitter, swap_builder,
                                      tx_builder, signer, guard, config)
        result = await pipeline.execute(opportunity)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        submitter: TransactionSubmitter,
        swap_builder: SwapInstructionBuilder,
        tx_builder: TransactionBuilder,
        signer: WalletSigner,
        balance_guard: Optional[BalanceGuard] = None,
        config: Optional[SubmissionConfig] = None,
        min_balance_lamports: int = 0
    ):
        """
        Initialize submission pipeline

        Args:
            ledger: Ledger client for blockhash lookups
            submitter: Transaction submitter
            swap_builder: Swap instruction builder
            tx_builder: Transaction envelope builder
            signer: Wallet signer (single identity)
            balance_guard: Balance guard for per-opportunity checks (optional)
            config: Submission configuration (optional)
            min_balance_lamports: Minimum balance for per-opportunity checks
        """
        self.ledger = ledger
        self.submitter = submitter
        self.swap_builder = swap_builder
        self.tx_builder = tx_builder
        self.signer = signer
        self.balance_guard = balance_guard
        self.config = config or SubmissionConfig()
        self.min_balance_lamports = min_balance_lamports

        self._lock = asyncio.Lock()
        self._stop_requested = False
        self._outcomes: Dict[str, int] = {outcome.value: 0 for outcome in OpportunityOutcome}

        logger.info(
            "submission_pipeline_initialized",
            signer=str(signer.pubkey),
            swap_amount=self.config.swap_amount,
            max_submit_attempts=self.config.max_submit_attempts
        )

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def request_stop(self) -> None:
        """Let the current leg finish, but do not start another"""
        self._stop_requested = True
        logger.info("submission_pipeline_stop_requested", busy=self.is_busy)

    async def execute(self, opportunity: Opportunity) -> PipelineResult:
        """
        Run both legs for an opportunity

        Args:
            opportunity: Detected opportunity

        Returns:
            PipelineResult; never raises for per-opportunity failures
        """
        async with self._lock:
            start = time.perf_counter()
            result = await self._execute(opportunity)
            result.duration_ms = (time.perf_counter() - start) * 1000

        self._outcomes[result.outcome.value] += 1
        metrics.increment_counter("pipeline_outcomes", labels={"outcome": result.outcome.value})
        metrics.record_latency("pipeline_run", result.duration_ms)

        if result.outcome == OpportunityOutcome.PARTIAL_EXPOSURE:
            logger.critical("partial_exposure", error_kind=ErrorKind.PARTIAL_EXPOSURE.value, **result.to_dict())
        elif result.outcome == OpportunityOutcome.COMPLETED:
            logger.info("opportunity_completed", **result.to_dict())
        else:
            logger.warning("opportunity_not_completed", **result.to_dict())

        return result

    async def _execute(self, opportunity: Opportunity) -> PipelineResult:
        if self._stop_requested:
            return PipelineResult(opportunity, OpportunityOutcome.SKIPPED, reason="shutdown")

        if self.balance_guard is not None and self.min_balance_lamports > 0:
            try:
                await self.balance_guard.ensure_funded(self.min_balance_lamports, allow_cached=True)
            except InsufficientFundsError as e:
                return PipelineResult(opportunity, OpportunityOutcome.SKIPPED, reason=str(e))
            except SandwichBotError as e:
                return PipelineResult(opportunity, OpportunityOutcome.SKIPPED, reason=f"balance check failed: {e}")

        front = await self._run_leg(SwapDirection.FRONT, opportunity)
        if front.state != LegState.CONFIRMED:
            return PipelineResult(
                opportunity,
                OpportunityOutcome.ABANDONED,
                front=front,
                reason=f"front leg {front.state.value}"
            )

        if self._stop_requested:
            back = SubmissionAttempt(direction=SwapDirection.BACK).fail(
                LegState.FAILED, "cancelled by shutdown", ErrorKind.PARTIAL_EXPOSURE
            )
        else:
            back = await self._run_leg(SwapDirection.BACK, opportunity)

        if back.state != LegState.CONFIRMED:
            return PipelineResult(
                opportunity,
                OpportunityOutcome.PARTIAL_EXPOSURE,
                front=front,
                back=back,
                reason=f"back leg {back.state.value}"
            )

        return PipelineResult(opportunity, OpportunityOutcome.COMPLETED, front=front, back=back)

    async def _run_leg(self, direction: SwapDirection, opportunity: Opportunity) -> SubmissionAttempt:
        """Drive one leg to a terminal state"""
        attempt = SubmissionAttempt(direction=direction)
        payer: Pubkey = self.signer.pubkey
        log = logger.bind(direction=direction.value, target_signature=opportunity.target_signature)

        # Build
        try:
            attempt.instruction = self.swap_builder.build(
                direction,
                opportunity.target_asset,
                self.config.swap_amount,
                payer
            )
            sim_tx = self._envelope(attempt.instruction, Hash.default())
        except SandwichBotError as e:
            log.warning("leg_build_failed", **e.to_dict())
            return attempt.fail(LegState.FAILED, str(e), e.kind)
        except ValueError as e:
            log.warning("leg_build_failed", error=str(e))
            return attempt.fail(LegState.FAILED, str(e), ErrorKind.MALFORMED_INPUT)

        # Simulate
        with LatencyTimer(metrics, "leg_simulation"):
            simulation = await self.submitter.simulate_transaction(sim_tx)
        if not simulation.success:
            log.warning("leg_simulation_failed", **simulation.to_dict())
            return attempt.fail(LegState.FAILED, simulation.error, simulation.error_kind)
        attempt.state = LegState.SIMULATED

        # Sign and submit, re-fetching the blockhash every attempt
        submitted = False
        for number in range(1, self.config.max_submit_attempts + 1):
            if number > 1:
                await asyncio.sleep(self.config.retry_delay_ms * (number - 1) / 1000)

            attempt.submit_attempts = number
            try:
                blockhash_info = await self.ledger.get_latest_blockhash(self.config.blockhash_commitment)
                signed = self.signer.sign(self._envelope(attempt.instruction, blockhash_info.blockhash))
            except SandwichBotError as e:
                attempt.error, attempt.error_kind = str(e), e.kind
                log.warning("leg_blockhash_failed", attempt=number, signature=attempt.signature, **e.to_dict())
                continue

            attempt.blockhash = blockhash_info.blockhash
            attempt.signature = str(signed.signatures[0])
            attempt.state = LegState.SIGNED

            result = await self.submitter.send_transaction(signed)
            if result.success:
                attempt.state = LegState.SUBMITTED
                attempt.submitted_at = time.time()
                attempt.error = attempt.error_kind = None
                submitted = True
                log.info("leg_submitted", attempt=number, signature=attempt.signature)
                break

            attempt.error, attempt.error_kind = result.error, result.error_kind
            log.warning(
                "leg_submit_failed",
                attempt=number,
                signature=attempt.signature,
                error=result.error,
                error_kind=result.error_kind.value if result.error_kind else None
            )
            if result.error_kind == ErrorKind.INSUFFICIENT_FUNDS:
                break

        if not submitted:
            return attempt.fail(LegState.FAILED, attempt.error or "submission failed", attempt.error_kind)

        # Confirm
        confirmation = await self.submitter.wait_for_confirmation(
            attempt.signature,
            timeout_seconds=self.config.confirmation_timeout_s,
            commitment=self.config.confirmation_commitment
        )
        if confirmation.confirmation_status == ConfirmationStatus.TIMED_OUT:
            # May still land; funds are not assumed unspent
            return attempt.fail(LegState.TIMED_OUT, confirmation.error, ErrorKind.TRANSIENT_NETWORK)
        if confirmation.confirmation_status == ConfirmationStatus.FAILED:
            return attempt.fail(LegState.FAILED, confirmation.error, ErrorKind.STALE_DATA)

        attempt.state = LegState.CONFIRMED
        attempt.finished_at = time.time()
        metrics.record_latency("leg_confirmation", (attempt.finished_at - attempt.submitted_at) * 1000)
        log.info("leg_confirmed", signature=attempt.signature, slot=confirmation.slot)
        return attempt

    def _envelope(self, swap: SwapInstruction, blockhash: Hash):
        return self.tx_builder.build_transaction(
            [swap.instruction],
            payer=self.signer.pubkey,
            recent_blockhash=blockhash,
            compute_unit_limit=self.config.compute_unit_limit,
            compute_unit_price=self.config.compute_unit_price
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "outcomes": dict(self._outcomes),
            "busy": self.is_busy,
            "signatures": self.signer.signature_count
        }
