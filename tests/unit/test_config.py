"""
Unit tests for Configuration Manager (core/config.py)

Tests:
- YAML parsing
- Environment variable substitution
- Configuration validation
- Section defaults
"""

import pytest
import yaml

from sandwich_bot.core.config import (
    BotConfig,
    ConfigurationManager,
    SubmissionConfig,
    SubscriberConfig,
    TrendConfig,
    WalletConfig
)


def _write(tmp_path, data) -> str:
    config_file = tmp_path / "config.yml"
    with open(config_file, 'w') as f:
        yaml.dump(data, f)
    return str(config_file)


class TestConfigurationManager:
    """Test configuration loading and validation"""

    def test_load_valid_config(self, test_config_file):
        """Test loading a valid configuration file"""
        bot_config = ConfigurationManager(test_config_file).load_config()

        assert isinstance(bot_config, BotConfig)
        assert len(bot_config.rpc_config.endpoints) == 2
        assert bot_config.rpc_config.failover_threshold_errors == 3
        assert bot_config.log_config.level == "DEBUG"
        assert bot_config.metrics_config.enable_histogram is True
        assert bot_config.wallet_config.min_balance_lamports == 1_000_000
        assert bot_config.trend_config.api_key == "test-key"
        assert bot_config.submission_config.queue_policy == "newest_wins"

    def test_rpc_endpoint_priority_sorting(self, test_config_dict, tmp_path):
        """Endpoints are sorted by priority regardless of file order"""
        test_config_dict["rpc"]["endpoints"].reverse()
        bot_config = ConfigurationManager(_write(tmp_path, test_config_dict)).load_config()

        endpoints = bot_config.rpc_config.endpoints
        assert [ep.priority for ep in endpoints] == [0, 1]
        assert endpoints[0].label == "solana_labs_devnet"

    def test_missing_sections_use_defaults(self, test_config_dict, tmp_path):
        """Only rpc is mandatory; other sections fall back to defaults"""
        data = {"rpc": test_config_dict["rpc"]}
        bot_config = ConfigurationManager(_write(tmp_path, data)).load_config()

        assert bot_config.trend_config == TrendConfig()
        assert bot_config.subscriber_config == SubscriberConfig()
        assert bot_config.submission_config == SubmissionConfig()
        assert bot_config.wallet_config == WalletConfig()
        assert bot_config.trend_config.sort_by == "v24hUSD"
        assert bot_config.submission_config.venue_program_id == "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"

    def test_missing_config_file(self):
        """Test error when config file doesn't exist"""
        with pytest.raises(FileNotFoundError):
            ConfigurationManager("nonexistent_config.yml").load_config()

    def test_no_endpoints(self, test_config_dict, tmp_path):
        test_config_dict["rpc"]["endpoints"] = []
        with pytest.raises(ValueError, match="No RPC endpoints"):
            ConfigurationManager(_write(tmp_path, test_config_dict)).load_config()

    def test_endpoint_missing_url(self, test_config_dict, tmp_path):
        del test_config_dict["rpc"]["endpoints"][0]["websocket_url"]
        with pytest.raises(ValueError, match="websocket_url"):
            ConfigurationManager(_write(tmp_path, test_config_dict)).load_config()

    def test_env_var_substitution(self, test_config_dict, tmp_path, monkeypatch):
        """Full and embedded ${VAR} values are substituted"""
        monkeypatch.setenv("TEST_BIRDEYE_KEY", "secret123")
        monkeypatch.setenv("TEST_RPC_KEY", "abc")
        test_config_dict["trends"]["api_key"] = "${TEST_BIRDEYE_KEY}"
        test_config_dict["rpc"]["endpoints"][0]["url"] = "https://rpc.example.com/?api-key=${TEST_RPC_KEY}"

        manager = ConfigurationManager(_write(tmp_path, test_config_dict))
        bot_config = manager.load_config()

        assert bot_config.trend_config.api_key == "secret123"
        assert bot_config.rpc_config.endpoints[0].url == "https://rpc.example.com/?api-key=abc"

    def test_missing_env_var(self, test_config_dict, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_UNSET_VAR", raising=False)
        test_config_dict["wallet"]["private_key"] = "${TEST_UNSET_VAR}"
        with pytest.raises(ValueError, match="TEST_UNSET_VAR"):
            ConfigurationManager(_write(tmp_path, test_config_dict)).load_config()

    @pytest.mark.parametrize("section,key,value,message", [
        ("submission", "queue_policy", "fifo", "queue_policy"),
        ("submission", "max_submit_attempts", 0, "max_submit_attempts"),
        ("submission", "swap_amount", 0, "swap_amount"),
        ("submission", "confirmation_commitment", "instant", "confirmation_commitment"),
        ("subscriber", "commitment", "recent", "commitment"),
        ("trends", "limit", 0, "limit"),
        ("trends", "refresh_interval_s", 0, "refresh_interval_s"),
        ("wallet", "min_balance_lamports", -1, "min_balance_lamports"),
    ])
    def test_invalid_values(self, test_config_dict, tmp_path, section, key, value, message):
        test_config_dict[section][key] = value
        with pytest.raises(ValueError, match=message):
            ConfigurationManager(_write(tmp_path, test_config_dict)).load_config()

    def test_unknown_key_rejected(self, test_config_dict, tmp_path):
        """Typos in a section are reported instead of silently ignored"""
        test_config_dict["submission"]["swap_amout"] = 5
        with pytest.raises(ValueError, match="swap_amout"):
            ConfigurationManager(_write(tmp_path, test_config_dict)).load_config()
