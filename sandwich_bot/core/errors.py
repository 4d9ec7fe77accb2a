"""
Error taxonomy for Sandwich Bot

Every failure the bot handles maps to one ErrorKind. The kind drives the
caller's decision: retry with fresh data, drop the event, skip the
opportunity, or abort at boot.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Classification of handled failures"""
    TRANSIENT_NETWORK = "transient_network"  # RPC timeouts, feed disconnects
    STALE_DATA = "stale_data"  # Expired blockhash, simulation revert
    MALFORMED_INPUT = "malformed_input"  # Event body missing expected fields
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PARTIAL_EXPOSURE = "partial_exposure"  # Back leg lost after front confirmed


class SandwichBotError(Exception):
    """Base class for all bot errors"""

    kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK

    def __init__(self, message: str, kind: Optional[ErrorKind] = None, **context: Any):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to log-friendly dictionary"""
        return {
            "error": str(self),
            "error_kind": self.kind.value,
            **self.context
        }


class TransientNetworkError(SandwichBotError):
    """Retryable transport failure"""
    kind = ErrorKind.TRANSIENT_NETWORK


class StaleDataError(SandwichBotError):
    """Expected failure caused by data that aged out"""
    kind = ErrorKind.STALE_DATA


class MalformedInputError(SandwichBotError):
    """Input that cannot be interpreted; drop and continue"""
    kind = ErrorKind.MALFORMED_INPUT


class InsufficientFundsError(SandwichBotError):
    """Signing identity balance below the required minimum"""
    kind = ErrorKind.INSUFFICIENT_FUNDS

    def __init__(self, balance_lamports: int, minimum_lamports: int, pubkey: str = ""):
        super().__init__(
            f"Insufficient funds: balance {balance_lamports} < minimum {minimum_lamports} lamports",
            balance_lamports=balance_lamports,
            minimum_lamports=minimum_lamports,
            pubkey=pubkey
        )
        self.balance_lamports = balance_lamports
        self.minimum_lamports = minimum_lamports


class RPCError(SandwichBotError):
    """JSON-RPC error response returned by a node"""

    def __init__(self, message: str, code: Optional[int] = None, method: str = ""):
        super().__init__(message, kind=classify_rpc_error(message), code=code, method=method)
        self.code = code


class TrendRefreshError(SandwichBotError):
    """Trend set could not be refreshed"""


class SubscriptionError(SandwichBotError):
    """Ledger event subscription could not be established"""


class MalformedCredentialError(SandwichBotError):
    """Wallet credential could not be decoded into a keypair"""
    kind = ErrorKind.MALFORMED_INPUT


# Substrings of node error messages that indicate an aged-out blockhash
_STALE_MARKERS = (
    "blockhash not found",
    "blockhashnotfound",
    "block height exceeded",
    "transaction expired",
)

_FUNDS_MARKERS = (
    "insufficient funds",
    "insufficient lamports",
    "attempt to debit an account but found no record of a prior credit",
)


def classify_rpc_error(message: str) -> ErrorKind:
    """
    Map a node error message to an ErrorKind

    Args:
        message: Error message returned by the RPC node

    Returns:
        STALE_DATA for expired blockhashes, INSUFFICIENT_FUNDS for debit
        failures, TRANSIENT_NETWORK otherwise
    """
    lowered = message.lower()
    if any(marker in lowered for marker in _STALE_MARKERS):
        return ErrorKind.STALE_DATA
    if any(marker in lowered for marker in _FUNDS_MARKERS):
        return ErrorKind.INSUFFICIENT_FUNDS
    return ErrorKind.TRANSIENT_NETWORK
