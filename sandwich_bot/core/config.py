"""
Configuration Manager for Sandwich Bot
Loads configuration from YAML files with environment variable support
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


QUEUE_POLICIES = ("newest_wins", "drop")
COMMITMENT_LEVELS = ("processed", "confirmed", "finalized")


@dataclass
class RPCEndpoint:
    """RPC endpoint configuration"""
    url: str
    websocket_url: str
    priority: int
    label: str
    timeout_ms: int = 5000


@dataclass
class RPCConfig:
    """RPC manager configuration"""
    endpoints: List[RPCEndpoint]
    failover_threshold_errors: int = 3
    reconnect_backoff_base_ms: int = 100
    reconnect_backoff_max_ms: int = 5000


@dataclass
class LogConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "json"
    output_file: Optional[str] = None


@dataclass
class MetricsConfig:
    """Metrics configuration"""
    enable_histogram: bool = True


@dataclass
class WalletConfig:
    """Signing identity and balance guard configuration"""
    private_key: Optional[str] = None  # base58 secret key
    keypair_path: Optional[str] = None  # JSON byte-array keypair file
    min_balance_lamports: int = 1_000_000  # 0.001 SOL
    check_before_each_opportunity: bool = True


@dataclass
class TrendConfig:
    """Trend-discovery collaborator configuration"""
    api_url: str = "https://public-api.birdeye.so/defi/tokenlist"
    api_key: str = ""
    sort_by: str = "v24hUSD"
    sort_type: str = "desc"
    limit: int = 50
    refresh_interval_s: float = 60.0
    request_timeout_s: float = 10.0


@dataclass
class SubscriberConfig:
    """Ledger event subscriber configuration"""
    mentions: str = "all"
    commitment: str = "confirmed"
    dedup_window_s: float = 30.0
    dedup_max_entries: int = 10_000
    max_concurrent_resolutions: int = 8
    event_queue_size: int = 256
    resolve_retries: int = 1
    resolve_retry_delay_ms: int = 100
    skip_failed_transactions: bool = True
    reconnect_backoff_base_ms: int = 100
    reconnect_backoff_max_ms: int = 5000
    max_reconnect_attempts: Optional[int] = None  # None = reconnect forever


@dataclass
class SubmissionConfig:
    """Dual-transaction submission pipeline configuration"""
    venue_program_id: str = "CPMMoo8L3F4NbTegBCKVNunggL7H1ZpdTHKxQB5qKP1C"
    swap_amount: int = 1000
    compute_unit_limit: Optional[int] = None
    compute_unit_price: Optional[int] = None
    skip_preflight: bool = True
    max_submit_attempts: int = 3
    retry_delay_ms: int = 200
    blockhash_commitment: str = "confirmed"
    confirmation_commitment: str = "confirmed"
    confirmation_timeout_s: float = 30.0
    confirmation_poll_interval_s: float = 0.5
    max_opportunity_age_ms: int = 2000
    queue_policy: str = "newest_wins"


@dataclass
class BotConfig:
    """Complete bot configuration"""
    rpc_config: RPCConfig
    log_config: LogConfig
    metrics_config: MetricsConfig
    wallet_config: WalletConfig
    trend_config: TrendConfig
    subscriber_config: SubscriberConfig
    submission_config: SubmissionConfig


class ConfigurationManager:
    """Manages bot configuration from YAML files and environment variables"""

    def __init__(self, config_path: str):
        """
        Initialize configuration manager

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = Path(config_path)
        self._config_data: Optional[Dict[str, Any]] = None
        self._bot_config: Optional[BotConfig] = None

    def load_config(self) -> BotConfig:
        """
        Load and validate configuration from file

        Returns:
            BotConfig: Validated configuration object

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}"
            )

        with open(self.config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration root must be a mapping")

        self._config_data = self._substitute_env_vars(raw_config)
        self._bot_config = self._parse_config(self._config_data)

        return self._bot_config

    def _substitute_env_vars(self, config: Any) -> Any:
        """
        Recursively substitute ${VAR_NAME} environment variables in config

        Supports both full-value substitution and embedded vars:
        - Full: "${API_KEY}" -> "abc123"
        - Embedded: "https://rpc.com/?key=${API_KEY}" -> "https://rpc.com/?key=abc123"

        Raises:
            ValueError: If a referenced variable is not set
        """
        if isinstance(config, dict):
            return {k: self._substitute_env_vars(v) for k, v in config.items()}
        elif isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        elif isinstance(config, str):
            def replace_var(match):
                var_name = match.group(1)
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(
                        f"Environment variable {var_name} not found"
                    )
                return value

            return re.sub(r'\$\{([^}]+)\}', replace_var, config)
        else:
            return config

    def _parse_config(self, config: Dict[str, Any]) -> BotConfig:
        """
        Parse raw configuration into typed objects

        Raises:
            ValueError: If configuration is invalid
        """
        rpc_data = config.get('rpc') or {}
        endpoints_data = rpc_data.get('endpoints') or []

        if not endpoints_data:
            raise ValueError("No RPC endpoints configured")

        endpoints = []
        for ep in endpoints_data:
            try:
                endpoints.append(RPCEndpoint(
                    url=ep['url'],
                    websocket_url=ep['websocket_url'],
                    priority=ep.get('priority', len(endpoints)),
                    label=ep.get('label', ep['url']),
                    timeout_ms=ep.get('timeout_ms', 5000)
                ))
            except KeyError as e:
                raise ValueError(f"RPC endpoint missing field {e}") from e

        # 0 = highest priority
        endpoints.sort(key=lambda x: x.priority)

        rpc_config = RPCConfig(
            endpoints=endpoints,
            failover_threshold_errors=rpc_data.get('failover_threshold_errors', 3),
            reconnect_backoff_base_ms=rpc_data.get('reconnect_backoff_base_ms', 100),
            reconnect_backoff_max_ms=rpc_data.get('reconnect_backoff_max_ms', 5000)
        )

        log_data = config.get('logging') or {}
        log_config = LogConfig(
            level=log_data.get('level', 'INFO'),
            format=log_data.get('format', 'json'),
            output_file=log_data.get('output_file')
        )

        metrics_data = config.get('metrics') or {}
        metrics_config = MetricsConfig(
            enable_histogram=metrics_data.get('enable_histogram', True)
        )

        wallet_config = WalletConfig(**self._section(config, 'wallet', WalletConfig))
        if wallet_config.min_balance_lamports < 0:
            raise ValueError("wallet.min_balance_lamports must be >= 0")

        trend_config = TrendConfig(**self._section(config, 'trends', TrendConfig))
        if trend_config.limit <= 0:
            raise ValueError("trends.limit must be positive")
        if trend_config.refresh_interval_s <= 0:
            raise ValueError("trends.refresh_interval_s must be positive")

        subscriber_config = SubscriberConfig(**self._section(config, 'subscriber', SubscriberConfig))
        if subscriber_config.commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"subscriber.commitment must be one of {COMMITMENT_LEVELS}")

        submission_config = SubmissionConfig(**self._section(config, 'submission', SubmissionConfig))
        if submission_config.queue_policy not in QUEUE_POLICIES:
            raise ValueError(f"submission.queue_policy must be one of {QUEUE_POLICIES}")
        if submission_config.max_submit_attempts < 1:
            raise ValueError("submission.max_submit_attempts must be >= 1")
        if submission_config.swap_amount <= 0:
            raise ValueError("submission.swap_amount must be positive")
        for key in ('blockhash_commitment', 'confirmation_commitment'):
            if getattr(submission_config, key) not in COMMITMENT_LEVELS:
                raise ValueError(f"submission.{key} must be one of {COMMITMENT_LEVELS}")

        return BotConfig(
            rpc_config=rpc_config,
            log_config=log_config,
            metrics_config=metrics_config,
            wallet_config=wallet_config,
            trend_config=trend_config,
            subscriber_config=subscriber_config,
            submission_config=submission_config
        )

    @staticmethod
    def _section(config: Dict[str, Any], name: str, section_cls: type) -> Dict[str, Any]:
        """Return the known keys of a config section, rejecting unknown ones"""
        data = config.get(name) or {}
        known = set(section_cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown keys in '{name}' section: {sorted(unknown)}")
        return data
