"""
Wallet signer for Sandwich Bot
Holds the single signing identity; the secret key never leaves this module
"""

import json
from pathlib import Path
from typing import Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from sandwich_bot.core.errors import MalformedCredentialError
from sandwich_bot.core.logger import get_logger
from sandwich_bot.core.metrics import get_metrics


logger = get_logger(__name__)
metrics = get_metrics()


def load_keypair(private_key: Optional[str] = None, keypair_path: Optional[str] = None) -> Keypair:
    """
    Load the signing keypair from a base58 secret or a JSON keypair file

    Args:
        private_key: Base58-encoded 64-byte secret key
        keypair_path: Path to a JSON array of 64 bytes (solana-keygen format)

    Returns:
        Keypair

    Raises:
        MalformedCredentialError: If no credential is given or it cannot be decoded
    """
    if private_key:
        try:
            secret = base58.b58decode(private_key.strip())
            return Keypair.from_bytes(secret)
        except (ValueError, TypeError) as e:
            raise MalformedCredentialError(f"Invalid base58 private key: {e}") from e

    if keypair_path:
        path = Path(keypair_path)
        if not path.exists():
            raise MalformedCredentialError(f"Keypair file not found: {keypair_path}")
        try:
            with open(path, 'r') as f:
                key_data = json.load(f)
            return Keypair.from_bytes(bytes(key_data))
        except (ValueError, TypeError) as e:
            raise MalformedCredentialError(f"Invalid keypair file {keypair_path}: {e}") from e

    raise MalformedCredentialError("No wallet credential configured (private_key or keypair_path)")


class WalletSigner:
    """
    Signs transactions with the bot's only keypair

    Only the public identity and a sign() capability are exposed.

    Usage:
        signer = WalletSigner(load_keypair(private_key=secret))
        signed_tx = signer.sign(tx)
    """

    def __init__(self, keypair: Keypair):
        self._keypair = keypair
        self._signature_count = 0

        logger.info("wallet_signer_initialized", pubkey=str(keypair.pubkey()))

    @property
    def pubkey(self) -> Pubkey:
        """Public identity of the signer"""
        return self._keypair.pubkey()

    @property
    def signature_count(self) -> int:
        return self._signature_count

    def sign(self, transaction: Transaction) -> Transaction:
        """
        Sign a transaction with the wallet keypair

        The transaction's message must already carry the recent blockhash.

        Args:
            transaction: Unsigned transaction

        Returns:
            New, fully signed Transaction
        """
        message = transaction.message
        signed = Transaction([self._keypair], message, message.recent_blockhash)

        self._signature_count += 1
        metrics.increment_counter("transactions_signed")
        logger.debug(
            "transaction_signed",
            signature=str(signed.signatures[0]),
            signer=str(self.pubkey)
        )

        return signed

    def __repr__(self) -> str:
        return f"WalletSigner(pubkey={self.pubkey})"
