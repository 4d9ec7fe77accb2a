"""
Ledger Client
Typed wrappers over the Solana JSON-RPC methods the bot reads from
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from solders.hash import Hash
from solders.pubkey import Pubkey

from sandwich_bot.core.errors import MalformedInputError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.rpc_manager import RPCManager, RPCSubscription


logger = get_logger(__name__)


@dataclass(frozen=True)
class BlockhashInfo:
    """Recent blockhash with the last block height it is valid for"""
    blockhash: Hash
    last_valid_block_height: int


class LedgerClient:
    """
    Read-side ledger access used by the subscriber, balance guard and pipeline

    Usage:
        ledger = LedgerClient(rpc_manager)
        subscription = await ledger.open_logs_subscription("all", "confirmed")
        body = await ledger.get_transaction(signature)
    """

    def __init__(self, rpc_manager: RPCManager):
        self.rpc_manager = rpc_manager

    async def open_logs_subscription(
        self,
        mentions: str = "all",
        commitment: str = "confirmed"
    ) -> RPCSubscription:
        """
        Subscribe to transaction log notifications

        Args:
            mentions: "all", "allWithVotes", or a base58 account to filter on
            commitment: Commitment level for notifications

        Returns:
            Open RPCSubscription yielding logsNotification results
        """
        if mentions in ("all", "allWithVotes"):
            log_filter: Any = mentions
        else:
            log_filter = {"mentions": [mentions]}

        return await self.rpc_manager.open_subscription(
            "logsSubscribe",
            [log_filter, {"commitment": commitment}]
        )

    async def get_transaction(
        self,
        signature: str,
        commitment: str = "confirmed",
        max_supported_transaction_version: int = 0
    ) -> Optional[Dict[str, Any]]:
        """
        Resolve a transaction body by signature

        Args:
            signature: Base58 transaction signature
            commitment: "confirmed" or "finalized"
            max_supported_transaction_version: Highest tx version to return

        Returns:
            jsonParsed transaction body, or None if not yet visible
        """
        # getTransaction does not accept "processed"
        if commitment == "processed":
            commitment = "confirmed"

        response = await self.rpc_manager.call_http_rpc(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": commitment,
                    "maxSupportedTransactionVersion": max_supported_transaction_version
                }
            ]
        )
        return response.get("result")

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> BlockhashInfo:
        """
        Fetch a fresh blockhash

        Raises:
            MalformedInputError: If the node response cannot be parsed
        """
        response = await self.rpc_manager.call_http_rpc(
            "getLatestBlockhash",
            [{"commitment": commitment}]
        )
        try:
            value = response["result"]["value"]
            return BlockhashInfo(
                blockhash=Hash.from_string(value["blockhash"]),
                last_valid_block_height=int(value["lastValidBlockHeight"])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInputError(
                f"Unexpected getLatestBlockhash response: {response}",
                method="getLatestBlockhash"
            ) from e

    async def get_balance(self, pubkey: Pubkey, commitment: str = "confirmed") -> int:
        """
        Get account balance in lamports

        Raises:
            MalformedInputError: If the node response cannot be parsed
        """
        response = await self.rpc_manager.call_http_rpc(
            "getBalance",
            [str(pubkey), {"commitment": commitment}]
        )
        try:
            return int(response["result"]["value"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedInputError(
                f"Unexpected getBalance response: {response}",
                method="getBalance"
            ) from e
