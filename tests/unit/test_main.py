"""
Unit tests for the entry point (main.py)

Tests:
- Argument parsing
- Exit codes for configuration, credential and boot failures
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml

from sandwich_bot import main as entry
from sandwich_bot.core.config import ConfigurationManager
from sandwich_bot.core.errors import (
    InsufficientFundsError,
    SubscriptionError,
    TransientNetworkError,
    TrendRefreshError
)


@pytest.fixture
def funded_config_file(test_config_dict, keypair, tmp_path):
    test_config_dict["wallet"]["private_key"] = str(keypair)
    config_file = tmp_path / "config.yml"
    with open(config_file, 'w') as f:
        yaml.dump(test_config_dict, f)
    return str(config_file)


@pytest.fixture
def patched_services():
    """Replace network-facing services and the orchestrator"""
    orchestrator = MagicMock()
    orchestrator.start = AsyncMock()
    orchestrator.run = AsyncMock()

    rpc_manager = MagicMock()
    rpc_manager.start = AsyncMock()
    rpc_manager.stop = AsyncMock()
    rpc_manager.get_health_stats.return_value = {
        "primary": {"url": "https://rpc.example", "is_healthy": True, "consecutive_failures": 0}
    }

    trend_client = MagicMock()
    trend_client.close = AsyncMock()

    with patch.object(entry, "RPCManager", return_value=rpc_manager), \
            patch.object(entry, "BirdeyeTrendClient", return_value=trend_client), \
            patch.object(entry, "build_orchestrator", return_value=orchestrator), \
            patch.object(entry, "_install_signal_handlers"):
        yield orchestrator, rpc_manager, trend_client


class TestParseArgs:

    def test_defaults(self):
        args = entry.parse_args([])
        assert args.config == "config/config.yml"
        assert args.log_level is None
        assert args.dry_run is False

    def test_overrides(self):
        args = entry.parse_args(["--config", "x.yml", "--log-level", "DEBUG", "--dry-run"])
        assert args.config == "x.yml"
        assert args.log_level == "DEBUG"
        assert args.dry_run is True

    def test_invalid_log_level(self):
        with pytest.raises(SystemExit):
            entry.parse_args(["--log-level", "LOUD"])


class TestMain:

    def test_missing_config_exits_1(self, tmp_path):
        assert entry.main(["--config", str(tmp_path / "missing.yml")]) == entry.EXIT_CONFIG_ERROR

    def test_invalid_config_exits_1(self, test_config_dict, tmp_path):
        test_config_dict["submission"]["swap_amount"] = 0
        config_file = tmp_path / "config.yml"
        with open(config_file, 'w') as f:
            yaml.dump(test_config_dict, f)

        assert entry.main(["--config", str(config_file)]) == entry.EXIT_CONFIG_ERROR

    def test_missing_credential_exits_2(self, test_config_file):
        assert entry.main(["--config", str(test_config_file)]) == entry.EXIT_MALFORMED_CREDENTIAL


class TestRunBot:

    @pytest.mark.asyncio
    async def test_malformed_credential(self, test_config_dict, tmp_path):
        test_config_dict["wallet"]["private_key"] = "not-base58-0OIl"
        config_file = tmp_path / "config.yml"
        with open(config_file, 'w') as f:
            yaml.dump(test_config_dict, f)
        bot_config = ConfigurationManager(str(config_file)).load_config()

        assert await entry.run_bot(bot_config) == entry.EXIT_MALFORMED_CREDENTIAL

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error,code", [
        (InsufficientFundsError(10, 1_000_000), entry.EXIT_INSUFFICIENT_FUNDS),
        (TransientNetworkError("rpc down"), entry.EXIT_INSUFFICIENT_FUNDS),
        (TrendRefreshError("no trending assets"), entry.EXIT_NO_TREND_DATA),
        (SubscriptionError("refused"), entry.EXIT_SUBSCRIPTION_FAILED),
    ])
    async def test_boot_failures(self, funded_config_file, patched_services, error, code):
        orchestrator, rpc_manager, trend_client = patched_services
        orchestrator.start.side_effect = error
        bot_config = ConfigurationManager(funded_config_file).load_config()

        assert await entry.run_bot(bot_config) == code
        orchestrator.run.assert_not_awaited()
        rpc_manager.stop.assert_awaited_once()
        trend_client.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stream_lost_exits_5(self, funded_config_file, patched_services):
        orchestrator, _, _ = patched_services
        orchestrator.run.side_effect = SubscriptionError("stream ended")
        bot_config = ConfigurationManager(funded_config_file).load_config()

        assert await entry.run_bot(bot_config) == entry.EXIT_SUBSCRIPTION_FAILED

    @pytest.mark.asyncio
    async def test_graceful_shutdown_exits_0(self, funded_config_file, patched_services):
        orchestrator, rpc_manager, _ = patched_services
        bot_config = ConfigurationManager(funded_config_file).load_config()

        assert await entry.run_bot(bot_config, dry_run=True) == entry.EXIT_OK
        orchestrator.start.assert_awaited_once()
        orchestrator.run.assert_awaited_once()
        rpc_manager.start.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_endpoint_health_logged_on_exit(self, funded_config_file, patched_services):
        bot_config = ConfigurationManager(funded_config_file).load_config()

        with patch.object(entry, "logger") as mock_logger:
            await entry.run_bot(bot_config, dry_run=True)

        health = [c for c in mock_logger.info.call_args_list if c.args[0] == "rpc_health"]
        assert len(health) == 1
        assert health[0].kwargs["endpoints"]["primary"]["is_healthy"] is True


class TestBuildOrchestrator:

    def test_dry_run_has_no_pipeline(self, funded_config_file, signer):
        bot_config = ConfigurationManager(funded_config_file).load_config()

        orchestrator = entry.build_orchestrator(bot_config, MagicMock(), MagicMock(), signer, dry_run=True)

        assert orchestrator.pipeline is None
        assert orchestrator.dry_run is True

    def test_live_wiring(self, funded_config_file, signer):
        bot_config = ConfigurationManager(funded_config_file).load_config()

        orchestrator = entry.build_orchestrator(bot_config, MagicMock(), MagicMock(), signer)

        assert orchestrator.pipeline is not None
        assert orchestrator.pipeline.min_balance_lamports == 1_000_000
        assert str(signer.pubkey) in orchestrator.detector.ignore_accounts
