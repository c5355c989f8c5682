"""
Configuration management with environment variable resolution.
"""
import yaml
import os
import re
from typing import Any, Dict, List, Optional, Tuple
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, field_validator


# Alpaca bar timeframes and the short aliases the dashboard settings use
TIMEFRAME_ALIASES = {
    '1m': '1Min',
    '5m': '5Min',
    '15m': '15Min',
    '30m': '30Min',
    '1h': '1Hour',
    '1d': '1Day',
}
VALID_TIMEFRAMES = ('1Min', '5Min', '15Min', '30Min', '1Hour', '1Day')

DEFAULT_USER = "default"


def normalize_timeframe(timeframe: str) -> str:
    """
    Map a short timeframe alias ("5m") onto the Alpaca form ("5Min").

    Args:
        timeframe: Timeframe string in either form

    Returns:
        Alpaca timeframe string

    Raises:
        ValueError: If the timeframe is not supported
    """
    value = TIMEFRAME_ALIASES.get(str(timeframe).strip(), str(timeframe).strip())
    if value not in VALID_TIMEFRAMES:
        raise ValueError(f"Unsupported timeframe '{timeframe}'")
    return value


class TradingSettings(BaseModel):
    """
    Per-user trading parameters. Percentages are whole percents (2.0 = 2%).
    """
    timeframe: str = "5Min"
    profit_percentage: float = 2.0
    loss_percentage: float = 1.0
    confirmation_bars: int = 3
    trade_amount: float = 1000.0
    bars_limit: int = 50
    symbols: List[str] = Field(default_factory=lambda: ["AAPL"])

    @field_validator('timeframe')
    @classmethod
    def _check_timeframe(cls, value: str) -> str:
        return normalize_timeframe(value)

    @field_validator('profit_percentage', 'loss_percentage')
    @classmethod
    def _check_percentage(cls, value: float) -> float:
        if not 0 < value <= 100:
            raise ValueError("percentage must be > 0 and <= 100")
        return value

    @field_validator('confirmation_bars')
    @classmethod
    def _check_confirmation_bars(cls, value: int) -> int:
        if not 0 <= value <= 10:
            raise ValueError("confirmation_bars must be between 0 and 10")
        return value

    @field_validator('trade_amount')
    @classmethod
    def _check_trade_amount(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("trade_amount must be > 0")
        return value

    @field_validator('symbols')
    @classmethod
    def _normalize_symbols(cls, value: List[str]) -> List[str]:
        return [s.strip().upper() for s in value if s and s.strip()]


def resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in strings like ${VAR_NAME}.

    Args:
        value: Value to process (can be str, dict, list, or other)

    Returns:
        Processed value with environment variables resolved
    """
    if isinstance(value, str):
        # Pattern to match ${VAR_NAME} or ${VAR_NAME:default_value}
        pattern = r'\$\{([^}:]+)(?::([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replacer, value)

    elif isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    return value


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML file and resolve environment variables.

    Args:
        config_path: Path to the configuration YAML file

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML parsing fails
    """
    config_file = Path(config_path)

    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, 'r') as f:
        config = yaml.safe_load(f) or {}

    return resolve_env_vars(config)


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate that required configuration fields are present and valid.

    Args:
        config: Configuration dictionary

    Raises:
        ValueError: If configuration is invalid
    """
    required_fields = [
        'alpaca.key_id',
        'alpaca.secret_key',
        'alpaca.base_url',
    ]

    for field in required_fields:
        keys = field.split('.')
        value = config
        try:
            for key in keys:
                value = value[key]

            if not value or value == "":
                raise ValueError(f"Required configuration field '{field}' is empty")

        except (KeyError, TypeError):
            raise ValueError(f"Required configuration field '{field}' is missing")

    # Trading settings (defaults and every user override) must parse
    try:
        SettingsRegistry(config)
    except ValueError as e:
        raise ValueError(f"Invalid trading settings: {e}")

    retry_config = config.get('retry', {}) or {}
    if int(retry_config.get('max_retries', 3)) < 0:
        raise ValueError("retry.max_retries must be >= 0")


def get_config_value(config: Dict[str, Any], path: str, default: Any = None) -> Any:
    """
    Get a configuration value using dot notation path.

    Args:
        config: Configuration dictionary
        path: Dot-separated path (e.g., 'trading.profit_percentage')
        default: Default value if path not found

    Returns:
        Configuration value or default
    """
    keys = path.split('.')
    value = config

    try:
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


class SettingsRegistry:
    """
    Resolves TradingSettings per user: the `trading` section supplies the
    defaults and `users.<user_id>` entries override individual fields.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self._defaults: Dict[str, Any] = dict(config.get('trading', {}) or {})
        self._overrides: Dict[str, Dict[str, Any]] = {
            str(user_id): dict(values or {})
            for user_id, values in (config.get('users', {}) or {}).items()
        }

        # Fail early on bad values rather than on the first tick
        self.default_settings = TradingSettings(**self._defaults)
        self._cache: Dict[str, TradingSettings] = {
            user_id: TradingSettings(**{**self._defaults, **values})
            for user_id, values in self._overrides.items()
        }

        logger.debug(
            f"SettingsRegistry loaded | users={len(self._overrides)}, "
            f"default timeframe={self.default_settings.timeframe}"
        )

    def settings_for(self, user_id: str) -> TradingSettings:
        """
        Get effective settings for a user.

        Args:
            user_id: User identifier

        Returns:
            TradingSettings for the user (defaults when no override exists)
        """
        return self._cache.get(str(user_id), self.default_settings)

    def users(self) -> List[str]:
        # Without a users section the defaults run under a single user
        return list(self._overrides.keys()) or [DEFAULT_USER]

    def tracked_pairs(self) -> List[Tuple[str, str]]:
        """
        List every (user_id, symbol) pair the scheduler should drive.

        Returns:
            List of (user_id, symbol) tuples
        """
        pairs = []
        for user_id in self.users():
            for symbol in self.settings_for(user_id).symbols:
                pairs.append((user_id, symbol))
        return pairs
