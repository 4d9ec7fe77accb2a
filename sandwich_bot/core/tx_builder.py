"""
Transaction Builder for Sandwich Bot
Assembles legacy Solana transactions with optional compute budget instructions
"""

from typing import List, Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()


# Solana transaction size limit in bytes
MAX_TRANSACTION_SIZE = 1232


class TransactionBuilder:
    """
    Builds unsigned Solana transaction envelopes

    The recent blockhash is always supplied by the caller. Blockhashes are
    never cached here; the pipeline fetches one right before signing.

    Usage:
        builder = TransactionBuilder()
        tx = builder.build_transaction(
            instructions=[swap_ix],
            payer=wallet_pubkey,
            recent_blockhash=blockhash,
            compute_unit_price=50_000
        )
    """

    def __init__(self, max_tx_size_bytes: int = MAX_TRANSACTION_SIZE):
        self.max_tx_size_bytes = max_tx_size_bytes

    def build_transaction(
        self,
        instructions: List[Instruction],
        payer: Pubkey,
        recent_blockhash: Hash,
        compute_unit_limit: Optional[int] = None,
        compute_unit_price: Optional[int] = None
    ) -> Transaction:
        """
        Build a Solana transaction with compute budget instructions

        Args:
            instructions: List of instructions to include
            payer: Fee payer public key
            recent_blockhash: Recent blockhash (Hash.default() for simulation)
            compute_unit_limit: Max compute units (optional)
            compute_unit_price: Priority fee in micro-lamports (optional)

        Returns:
            Unsigned Transaction ready for signing

        Raises:
            ValueError: If there are no instructions or the size exceeds the limit
        """
        if not instructions:
            raise ValueError("Transaction needs at least one instruction")

        all_instructions: List[Instruction] = []
        if compute_unit_limit is not None:
            all_instructions.append(set_compute_unit_limit(compute_unit_limit))
        if compute_unit_price is not None:
            all_instructions.append(set_compute_unit_price(compute_unit_price))
        all_instructions.extend(instructions)

        message = Message.new_with_blockhash(all_instructions, payer, recent_blockhash)
        tx = Transaction.new_unsigned(message)

        tx_size = len(bytes(tx))
        if tx_size > self.max_tx_size_bytes:
            raise ValueError(
                f"Transaction size {tx_size} exceeds limit {self.max_tx_size_bytes}"
            )

        metrics.increment_counter("transactions_built")
        logger.debug(
            "transaction_built",
            instruction_count=len(all_instructions),
            tx_size_bytes=tx_size,
            has_compute_budget=len(all_instructions) > len(instructions)
        )

        return tx
