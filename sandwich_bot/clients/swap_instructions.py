"""
Swap Instruction Builder
Encodes the front and back swap legs for the AMM venue
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from sandwich_bot.core.errors import MalformedInputError
from sandwich_bot.core.logger import get_logger


logger = get_logger(__name__)


# Raydium CPMM (standard AMM) program
RAYDIUM_CPMM_PROGRAM_ID = Pubkey.from_string("CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C")
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")

# First 8 bytes of SHA256("global:swap_base_input")
SWAP_BASE_INPUT_DISCRIMINATOR = bytes([143, 190, 90, 218, 196, 30, 51, 222])

MAX_U64 = 2 ** 64 - 1


class SwapDirection(Enum):
    """Which side of the target transaction a leg lands on"""
    FRONT = "front"
    BACK = "back"


@dataclass(frozen=True)
class SwapInstruction:
    """Unsigned swap instruction plus the intent it was built for"""
    direction: SwapDirection
    asset: str
    amount: int
    signer: Pubkey
    token_account: Pubkey
    instruction: Instruction


class SwapInstructionBuilder:
    """
    Builds swap instructions for both legs through one code path

    Direction stays an explicit parameter: venues differ in which leg needs
    extra setup (e.g. creating the token account first).

    Usage:
        builder = SwapInstructionBuilder()
        front = builder.build(SwapDirection.FRONT, mint_str, 1000, wallet.pubkey)
    """

    def __init__(self, program_id: Pubkey = RAYDIUM_CPMM_PROGRAM_ID):
        self.program_id = program_id
        # (owner, mint) -> associated token account
        self._ata_cache: Dict[Tuple[Pubkey, Pubkey], Pubkey] = {}

        logger.info("swap_instruction_builder_initialized", program_id=str(program_id))

    def build(
        self,
        direction: SwapDirection,
        asset: str,
        amount: int,
        signer: Pubkey
    ) -> SwapInstruction:
        """
        Build the swap instruction for one leg

        Args:
            direction: FRONT or BACK
            asset: Base58 token mint address
            amount: Input amount in base units
            signer: Wallet public key (fee payer and token owner)

        Returns:
            SwapInstruction

        Raises:
            MalformedInputError: If the asset id is not a valid pubkey or the
                amount is out of range
        """
        if not 0 < amount <= MAX_U64:
            raise MalformedInputError(
                f"Swap amount out of range: {amount}",
                asset=asset,
                direction=direction.value
            )

        mint = self._parse_asset(asset, direction)
        token_account = self.derive_associated_token_account(signer, mint)

        data = SWAP_BASE_INPUT_DISCRIMINATOR + struct.pack("<QQ", amount, 0)
        accounts = [
            AccountMeta(pubkey=signer, is_signer=True, is_writable=True),
            AccountMeta(pubkey=token_account, is_signer=False, is_writable=True),
            AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
            AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        instruction = Instruction(self.program_id, data, accounts)

        logger.debug(
            "swap_instruction_built",
            direction=direction.value,
            asset=asset,
            amount=amount,
            token_account=str(token_account)
        )

        return SwapInstruction(
            direction=direction,
            asset=asset,
            amount=amount,
            signer=signer,
            token_account=token_account,
            instruction=instruction
        )

    def derive_associated_token_account(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        """
        Derive the owner's associated token account for a mint

        Args:
            owner: Token owner pubkey
            mint: Token mint pubkey

        Returns:
            Associated token account pubkey
        """
        key = (owner, mint)
        cached = self._ata_cache.get(key)
        if cached is not None:
            return cached

        pda, _bump = Pubkey.find_program_address(
            [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
            ASSOCIATED_TOKEN_PROGRAM_ID
        )
        self._ata_cache[key] = pda
        return pda

    @staticmethod
    def _parse_asset(asset: str, direction: SwapDirection) -> Pubkey:
        try:
            return Pubkey.from_string(asset)
        except (ValueError, TypeError) as e:
            raise MalformedInputError(
                f"Malformed asset identifier: {asset!r}",
                asset=asset,
                direction=direction.value
            ) from e
