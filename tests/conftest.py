"""
Pytest configuration and shared fixtures
These fixtures are available to all test files
"""

from typing import Any, Dict

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from sandwich_bot.core.config import SubmissionConfig, SubscriberConfig
from sandwich_bot.core.metrics import MetricsCollector, get_metrics
from sandwich_bot.core.tx_signer import WalletSigner


@pytest.fixture(autouse=True)
def reset_global_metrics():
    """Give every test a clean process-wide metrics collector"""
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def test_config_dict() -> Dict[str, Any]:
    """
    Sample configuration dictionary for testing

    Returns valid config that can be modified per test
    """
    return {
        "rpc": {
            "endpoints": [
                {
                    "url": "https://api.devnet.solana.com",
                    "websocket_url": "wss://api.devnet.solana.com",
                    "priority": 0,
                    "label": "solana_labs_devnet",
                    "timeout_ms": 5000
                },
                {
                    "url": "https://api.testnet.solana.com",
                    "websocket_url": "wss://api.testnet.solana.com",
                    "priority": 1,
                    "label": "solana_labs_testnet",
                    "timeout_ms": 5000
                }
            ],
            "failover_threshold_errors": 3
        },
        "logging": {
            "level": "DEBUG",
            "format": "json",
            "output_file": None
        },
        "metrics": {
            "enable_histogram": True
        },
        "wallet": {
            "private_key": None,
            "min_balance_lamports": 1_000_000
        },
        "trends": {
            "api_key": "test-key",
            "limit": 50,
            "refresh_interval_s": 60
        },
        "subscriber": {
            "commitment": "confirmed",
            "dedup_window_s": 30
        },
        "submission": {
            "swap_amount": 1000,
            "max_submit_attempts": 3,
            "queue_policy": "newest_wins"
        }
    }


@pytest.fixture
def test_config_file(test_config_dict, tmp_path):
    """
    Create a temporary config file for testing

    Returns path to temporary YAML config file
    """
    import yaml

    config_file = tmp_path / "test_config.yml"
    with open(config_file, 'w') as f:
        yaml.dump(test_config_dict, f)

    return str(config_file)


@pytest.fixture
def metrics_collector() -> MetricsCollector:
    """
    Create fresh metrics collector for each test

    Returns clean MetricsCollector instance
    """
    collector = MetricsCollector(enable_histogram=True)
    yield collector
    collector.reset()


@pytest.fixture
def keypair() -> Keypair:
    return Keypair()


@pytest.fixture
def signer(keypair) -> WalletSigner:
    return WalletSigner(keypair)


@pytest.fixture
def asset_mint() -> str:
    """A valid base58 mint address"""
    return str(Pubkey.new_unique())


@pytest.fixture
def fast_submission_config() -> SubmissionConfig:
    """Submission config with no retry delays"""
    return SubmissionConfig(
        swap_amount=1000,
        max_submit_attempts=3,
        retry_delay_ms=0,
        confirmation_timeout_s=1.0,
        confirmation_poll_interval_s=0.01
    )


@pytest.fixture
def fast_subscriber_config() -> SubscriberConfig:
    return SubscriberConfig(
        resolve_retries=1,
        resolve_retry_delay_ms=0,
        reconnect_backoff_base_ms=1,
        reconnect_backoff_max_ms=2,
        max_reconnect_attempts=0
    )


def pytest_configure(config):
    """Register custom pytest markers"""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (>5 seconds)"
    )
