"""
Sandwich Bot entry point

Usage:
    sandwich-bot --config config/config.yml
    sandwich-bot --config config/config.yml --dry-run --log-level DEBUG

Exit codes:
    0  graceful shutdown
    1  configuration error
    2  malformed wallet credential
    3  insufficient funds at boot
    4  no trend data at boot
    5  ledger subscription could not be established
"""

import argparse
import asyncio
import signal
import sys
from typing import List, Optional

from solders.pubkey import Pubkey

from sandwich_bot.clients.ledger_client import LedgerClient
from sandwich_bot.clients.swap_instructions import SwapInstructionBuilder
from sandwich_bot.clients.trend_client import BirdeyeTrendClient
from sandwich_bot.core.config import BotConfig, ConfigurationManager
from sandwich_bot.core.errors import (
    InsufficientFundsError,
    MalformedCredentialError,
    SandwichBotError,
    SubscriptionError,
    TrendRefreshError
)
from sandwich_bot.core.logger import bind_run_context, get_logger, setup_logging
from sandwich_bot.core.metrics import get_metrics
from sandwich_bot.core.opportunity_detector import OpportunityDetector
from sandwich_bot.core.orchestrator import SandwichOrchestrator
from sandwich_bot.core.rpc_manager import RPCManager
from sandwich_bot.core.submission_pipeline import SubmissionPipeline
from sandwich_bot.core.trend_cache import TrendCache
from sandwich_bot.core.tx_builder import TransactionBuilder
from sandwich_bot.core.tx_signer import WalletSigner, load_keypair
from sandwich_bot.core.tx_submitter import SubmitterConfig, TransactionSubmitter
from sandwich_bot.core.wallet_guard import BalanceGuard
from sandwich_bot.services.event_subscriber import LedgerEventSubscriber


logger = get_logger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_MALFORMED_CREDENTIAL = 2
EXIT_INSUFFICIENT_FUNDS = 3
EXIT_NO_TREND_DATA = 4
EXIT_SUBSCRIPTION_FAILED = 5


def build_orchestrator(
    bot_config: BotConfig,
    rpc_manager: RPCManager,
    trend_client: BirdeyeTrendClient,
    signer: WalletSigner,
    dry_run: bool = False
) -> SandwichOrchestrator:
    """
    Wire every component from configuration

    Args:
        bot_config: Loaded configuration
        rpc_manager: Started RPC manager
        trend_client: Trend-discovery client
        signer: Wallet signer
        dry_run: Detect only, never submit

    Returns:
        SandwichOrchestrator ready for start()
    """
    wallet_config = bot_config.wallet_config
    submission_config = bot_config.submission_config

    ledger = LedgerClient(rpc_manager)
    balance_guard = BalanceGuard(ledger, signer.pubkey)
    trend_cache = TrendCache(trend_client, bot_config.trend_config.refresh_interval_s)
    subscriber = LedgerEventSubscriber(ledger, bot_config.subscriber_config)
    detector = OpportunityDetector(ignore_accounts=[str(signer.pubkey)])

    pipeline = None
    if not dry_run:
        submitter = TransactionSubmitter(
            rpc_manager,
            SubmitterConfig(
                skip_preflight=submission_config.skip_preflight,
                confirmation_timeout_s=submission_config.confirmation_timeout_s,
                confirmation_poll_interval_s=submission_config.confirmation_poll_interval_s,
                confirmation_commitment=submission_config.confirmation_commitment
            )
        )
        pipeline = SubmissionPipeline(
            ledger=ledger,
            submitter=submitter,
            swap_builder=SwapInstructionBuilder(Pubkey.from_string(submission_config.venue_program_id)),
            tx_builder=TransactionBuilder(),
            signer=signer,
            balance_guard=balance_guard,
            config=submission_config,
            min_balance_lamports=(
                wallet_config.min_balance_lamports if wallet_config.check_before_each_opportunity else 0
            )
        )

    return SandwichOrchestrator(
        trend_cache=trend_cache,
        subscriber=subscriber,
        detector=detector,
        balance_guard=balance_guard,
        pipeline=pipeline,
        wallet_config=wallet_config,
        trend_config=bot_config.trend_config,
        submission_config=submission_config,
        dry_run=dry_run
    )


def _install_signal_handlers(orchestrator: SandwichOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
        except NotImplementedError:
            # Windows event loops do not support signal handlers
            logger.warning("signal_handler_unsupported", signal=sig.name)


async def run_bot(bot_config: BotConfig, dry_run: bool = False) -> int:
    """
    Boot and run the bot until shutdown

    Args:
        bot_config: Loaded configuration
        dry_run: Detect only, never submit

    Returns:
        Process exit code
    """
    try:
        signer = WalletSigner(load_keypair(
            private_key=bot_config.wallet_config.private_key,
            keypair_path=bot_config.wallet_config.keypair_path
        ))
    except MalformedCredentialError as e:
        logger.error("malformed_credential", **e.to_dict())
        return EXIT_MALFORMED_CREDENTIAL

    bind_run_context(wallet=str(signer.pubkey), dry_run=dry_run)
    get_metrics().enable_histogram = bot_config.metrics_config.enable_histogram

    rpc_manager = RPCManager(bot_config.rpc_config)
    trend_client = BirdeyeTrendClient(bot_config.trend_config)
    await rpc_manager.start()

    try:
        orchestrator = build_orchestrator(bot_config, rpc_manager, trend_client, signer, dry_run)

        try:
            await orchestrator.start()
        except InsufficientFundsError as e:
            logger.error("boot_insufficient_funds", **e.to_dict())
            return EXIT_INSUFFICIENT_FUNDS
        except TrendRefreshError as e:
            logger.error("boot_no_trend_data", **e.to_dict())
            return EXIT_NO_TREND_DATA
        except SubscriptionError as e:
            logger.error("boot_subscription_failed", **e.to_dict())
            return EXIT_SUBSCRIPTION_FAILED
        except SandwichBotError as e:
            # Balance lookup failed before funding could be verified
            logger.error("boot_balance_check_failed", **e.to_dict())
            return EXIT_INSUFFICIENT_FUNDS

        _install_signal_handlers(orchestrator)

        try:
            await orchestrator.run()
        except SubscriptionError as e:
            logger.error("event_stream_lost", **e.to_dict())
            return EXIT_SUBSCRIPTION_FAILED

        logger.info("sandwich_bot_shutdown_complete")
        return EXIT_OK

    finally:
        await trend_client.close()
        logger.info("rpc_health", endpoints=rpc_manager.get_health_stats())
        await rpc_manager.stop()
        logger.info("final_metrics", **get_metrics().export_metrics())


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Solana trend sandwich bot")
    parser.add_argument(
        "--config",
        default="config/config.yml",
        help="Path to config.yml"
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the configured log level"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Detect and log opportunities without submitting transactions"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Load configuration, set up logging and run the bot"""
    args = parse_args(argv)

    try:
        bot_config = ConfigurationManager(args.config).load_config()
    except (FileNotFoundError, ValueError) as e:
        setup_logging(level=args.log_level or "INFO", format="console")
        logger.error("config_load_failed", config=args.config, error=str(e))
        return EXIT_CONFIG_ERROR

    log_config = bot_config.log_config
    setup_logging(
        level=args.log_level or log_config.level,
        format=log_config.format,
        output_file=log_config.output_file
    )

    logger.info("sandwich_bot_starting", config=args.config, dry_run=args.dry_run)

    try:
        return asyncio.run(run_bot(bot_config, dry_run=args.dry_run))
    except KeyboardInterrupt:
        logger.info("interrupted_by_user")
        return EXIT_OK


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
