"""
Transaction Submitter for Sandwich Bot
Simulates, broadcasts and tracks confirmation of signed transactions
"""

import asyncio
import base64
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from solders.transaction import Transaction

from sandwich_bot.core.errors import ErrorKind, SandwichBotError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics
from sandwich_bot.core.rpc_manager import RPCManager


logger = get_logger(__name__)
metrics = get_metrics()


class ConfirmationStatus(Enum):
    """Transaction confirmation status"""
    PENDING = "pending"
    PROCESSED = "processed"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


# Commitment level -> statuses that satisfy it
_SATISFIES = {
    "processed": {ConfirmationStatus.PROCESSED, ConfirmationStatus.CONFIRMED, ConfirmationStatus.FINALIZED},
    "confirmed": {ConfirmationStatus.CONFIRMED, ConfirmationStatus.FINALIZED},
    "finalized": {ConfirmationStatus.FINALIZED},
}


@dataclass
class SubmitterConfig:
    """Configuration for transaction submitter"""
    skip_preflight: bool = True  # Already simulated by the pipeline
    confirmation_timeout_s: float = 30.0
    confirmation_poll_interval_s: float = 0.5
    confirmation_commitment: str = "confirmed"


@dataclass
class SimulationResult:
    """Result of transaction simulation"""
    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    units_consumed: Optional[int] = None
    logs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "units_consumed": self.units_consumed,
            "log_count": len(self.logs)
        }


@dataclass
class TransactionResult:
    """Result of a single broadcast attempt"""
    signature: str
    submitted_at: datetime
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "submitted_at": self.submitted_at.isoformat(),
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None
        }


@dataclass
class ConfirmedTransaction:
    """Confirmation outcome for a signature"""
    signature: str
    confirmation_status: ConfirmationStatus
    slot: Optional[int] = None
    error: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature": self.signature,
            "slot": self.slot,
            "confirmation_status": self.confirmation_status.value,
            "error": self.error,
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None
        }


class TransactionSubmitter:
    """
    Submits transactions to the Solana network

    Features:
    - Simulation with replaced blockhash and no signature verification
    - Single-attempt broadcast with classified errors (retry policy is the caller's)
    - Confirmation polling with a bounded timeout

    Usage:
        submitter = TransactionSubmitter(rpc_manager)
        sim = await submitter.simulate_transaction(tx)
        result = await submitter.send_transaction(signed_tx)
        confirmed = await submitter.wait_for_confirmation(result.signature)
    """

    def __init__(self, rpc_manager: RPCManager, config: Optional[SubmitterConfig] = None):
        """
        Initialize transaction submitter

        Args:
            rpc_manager: RPC manager for network communication
            config: Submitter configuration (optional)
        """
        self.rpc_manager = rpc_manager
        self.config = config or SubmitterConfig()

        logger.info(
            "transaction_submitter_initialized",
            skip_preflight=self.config.skip_preflight,
            confirmation_timeout_s=self.config.confirmation_timeout_s
        )

    async def simulate_transaction(self, tx: Transaction) -> SimulationResult:
        """
        Dry-run a transaction against current ledger state

        The transaction may be unsigned; the node replaces its blockhash.

        Args:
            tx: Transaction to simulate

        Returns:
            SimulationResult; a program error is STALE_DATA, a failed RPC call
            is TRANSIENT_NETWORK
        """
        tx_base64 = base64.b64encode(bytes(tx)).decode('utf-8')
        params = [
            tx_base64,
            {
                "encoding": "base64",
                "replaceRecentBlockhash": True,
                "sigVerify": False,
                "commitment": "processed"
            }
        ]

        try:
            response = await self.rpc_manager.call_http_rpc("simulateTransaction", params)
        except SandwichBotError as e:
            logger.warning("simulation_rpc_error", error=str(e), error_kind=e.kind.value)
            return SimulationResult(success=False, error=str(e), error_kind=e.kind)

        value = (response.get("result") or {}).get("value") or {}
        logs = value.get("logs") or []

        if value.get("err"):
            metrics.increment_counter("simulations", labels={"outcome": "failed"})
            logger.info("simulation_failed", error=str(value["err"]), log_count=len(logs))
            return SimulationResult(
                success=False,
                error=str(value["err"]),
                error_kind=ErrorKind.STALE_DATA,
                logs=logs
            )

        metrics.increment_counter("simulations", labels={"outcome": "success"})
        logger.debug(
            "simulation_success",
            units_consumed=value.get("unitsConsumed"),
            log_count=len(logs)
        )
        return SimulationResult(
            success=True,
            units_consumed=value.get("unitsConsumed"),
            logs=logs
        )

    async def send_transaction(self, signed_tx: Transaction) -> TransactionResult:
        """
        Broadcast a signed transaction once

        Args:
            signed_tx: Signed transaction

        Returns:
            TransactionResult; the signature is always the transaction's own
            first signature, even when the broadcast failed
        """
        signature = str(signed_tx.signatures[0])
        tx_base64 = base64.b64encode(bytes(signed_tx)).decode('utf-8')
        params = [
            tx_base64,
            {
                "encoding": "base64",
                "skipPreflight": self.config.skip_preflight,
                "maxRetries": 0  # Retries are handled by the pipeline
            }
        ]

        try:
            await self.rpc_manager.call_http_rpc("sendTransaction", params)
        except SandwichBotError as e:
            metrics.increment_counter("transactions_submitted_failed")
            logger.warning(
                "transaction_submission_error",
                signature=signature,
                error=str(e),
                error_kind=e.kind.value
            )
            return TransactionResult(
                signature=signature,
                submitted_at=datetime.now(timezone.utc),
                error=str(e),
                error_kind=e.kind
            )

        metrics.increment_counter("transactions_submitted_success")
        logger.info("transaction_submitted", signature=signature)
        return TransactionResult(signature=signature, submitted_at=datetime.now(timezone.utc))

    async def get_signature_status(self, signature: str) -> Optional[ConfirmedTransaction]:
        """
        Get current transaction status via getSignatureStatuses

        Returns:
            ConfirmedTransaction if the node knows the signature, None otherwise
        """
        try:
            response = await self.rpc_manager.call_http_rpc(
                "getSignatureStatuses",
                [[signature], {"searchTransactionHistory": False}]
            )
        except SandwichBotError as e:
            logger.warning(
                "get_signature_status_error",
                signature=signature,
                error=str(e),
                error_kind=e.kind.value
            )
            return None

        values = (response.get("result") or {}).get("value") or []
        if not values or values[0] is None:
            return None

        status_data = values[0]
        level = status_data.get("confirmationStatus") or "processed"
        try:
            status = ConfirmationStatus(level)
        except ValueError:
            status = ConfirmationStatus.PENDING

        error = None
        if status_data.get("err"):
            status = ConfirmationStatus.FAILED
            error = str(status_data["err"])

        return ConfirmedTransaction(
            signature=signature,
            confirmation_status=status,
            slot=status_data.get("slot"),
            error=error,
            confirmed_at=datetime.now(timezone.utc)
        )

    async def wait_for_confirmation(
        self,
        signature: str,
        timeout_seconds: Optional[float] = None,
        commitment: Optional[str] = None
    ) -> ConfirmedTransaction:
        """
        Poll until the signature reaches the commitment, fails, or times out

        Args:
            signature: Transaction signature to track
            timeout_seconds: Maximum wait time (defaults to config)
            commitment: Target commitment (defaults to config)

        Returns:
            ConfirmedTransaction with status CONFIRMED/FINALIZED, FAILED or TIMED_OUT
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.config.confirmation_timeout_s
        target = _SATISFIES[commitment or self.config.confirmation_commitment]
        deadline = time.monotonic() + timeout

        while True:
            status = await self.get_signature_status(signature)

            if status is not None:
                if status.confirmation_status == ConfirmationStatus.FAILED or \
                        status.confirmation_status in target:
                    metrics.increment_counter(
                        "transaction_confirmations",
                        labels={"status": status.confirmation_status.value}
                    )
                    return status

            if time.monotonic() >= deadline:
                metrics.increment_counter("transaction_confirmations_timeout")
                logger.warning(
                    "transaction_confirmation_timeout",
                    signature=signature,
                    timeout_s=timeout
                )
                return ConfirmedTransaction(
                    signature=signature,
                    confirmation_status=ConfirmationStatus.TIMED_OUT,
                    error=f"Not confirmed within {timeout}s"
                )

            await asyncio.sleep(self.config.confirmation_poll_interval_s)
