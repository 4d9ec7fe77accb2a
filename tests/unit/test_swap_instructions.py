"""
Unit tests for the Swap Instruction Builder (clients/swap_instructions.py)
"""

import struct

import pytest
from solders.pubkey import Pubkey

from sandwich_bot.clients.swap_instructions import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    MAX_U64,
    RAYDIUM_CPMM_PROGRAM_ID,
    SWAP_BASE_INPUT_DISCRIMINATOR,
    TOKEN_PROGRAM_ID,
    SwapDirection,
    SwapInstructionBuilder
)
from sandwich_bot.core.errors import MalformedInputError


@pytest.fixture
def builder():
    return SwapInstructionBuilder()


@pytest.fixture
def wallet():
    return Pubkey.new_unique()


class TestSwapInstructionBuilder:

    def test_instruction_targets_venue(self, builder, wallet, asset_mint):
        swap = builder.build(SwapDirection.FRONT, asset_mint, 1000, wallet)

        assert swap.instruction.program_id == RAYDIUM_CPMM_PROGRAM_ID
        assert swap.direction == SwapDirection.FRONT
        assert swap.asset == asset_mint
        assert swap.amount == 1000
        assert swap.signer == wallet

    def test_instruction_data_layout(self, builder, wallet, asset_mint):
        swap = builder.build(SwapDirection.FRONT, asset_mint, 1000, wallet)
        data = bytes(swap.instruction.data)

        assert data[:8] == SWAP_BASE_INPUT_DISCRIMINATOR
        assert struct.unpack("<QQ", data[8:]) == (1000, 0)

    def test_accounts(self, builder, wallet, asset_mint):
        swap = builder.build(SwapDirection.BACK, asset_mint, 1000, wallet)
        accounts = swap.instruction.accounts

        assert accounts[0].pubkey == wallet
        assert accounts[0].is_signer is True
        assert accounts[1].pubkey == swap.token_account
        assert accounts[1].is_writable is True
        assert accounts[2].pubkey == Pubkey.from_string(asset_mint)
        assert accounts[3].pubkey == TOKEN_PROGRAM_ID

    def test_both_directions_share_layout(self, builder, wallet, asset_mint):
        front = builder.build(SwapDirection.FRONT, asset_mint, 1000, wallet)
        back = builder.build(SwapDirection.BACK, asset_mint, 1000, wallet)

        assert front.instruction == back.instruction
        assert front.direction != back.direction

    def test_associated_token_account_derivation(self, builder, wallet, asset_mint):
        mint = Pubkey.from_string(asset_mint)
        expected, _ = Pubkey.find_program_address(
            [bytes(wallet), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
            ASSOCIATED_TOKEN_PROGRAM_ID
        )

        assert builder.derive_associated_token_account(wallet, mint) == expected
        # Cached value is identical
        assert builder.derive_associated_token_account(wallet, mint) == expected

    def test_custom_program_id(self, wallet, asset_mint):
        program = Pubkey.new_unique()
        swap = SwapInstructionBuilder(program).build(SwapDirection.FRONT, asset_mint, 1, wallet)
        assert swap.instruction.program_id == program

    @pytest.mark.parametrize("asset", ["TOKENX", "", "not-base58-0OIl"])
    def test_malformed_asset(self, builder, wallet, asset):
        with pytest.raises(MalformedInputError) as exc_info:
            builder.build(SwapDirection.FRONT, asset, 1000, wallet)
        assert exc_info.value.context["asset"] == asset

    @pytest.mark.parametrize("amount", [0, -5, MAX_U64 + 1])
    def test_amount_out_of_range(self, builder, wallet, asset_mint, amount):
        with pytest.raises(MalformedInputError):
            builder.build(SwapDirection.FRONT, asset_mint, amount, wallet)
