"""
Budget configuration management and loading.

Handles the budget policy read from YAML: spending mode, caps, reserves,
billing mode and per-provider token overrides.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml


DEFAULT_MAX_PERCENT = 75
DEFAULT_RESERVE_PERCENT = 5
DEFAULT_WEEKLY_TOKENS = 700_000
DEFAULT_SNAPSHOT_RETENTION_DAYS = 90
DEFAULT_TREND_LOOKBACK_DAYS = 14
DEFAULT_SCRAPED_PROVIDERS = frozenset({"codex"})


class BudgetMode(Enum):
    """How the allowance for a run is derived from the weekly budget."""
    DAILY = "daily"    # Spend up to max_percent of weekly/7
    WEEKLY = "weekly"  # Spend up to max_percent of the remaining week, per day left


class BillingMode(Enum):
    """How the provider bills usage."""
    SUBSCRIPTION = "subscription"  # Budget must be inferred
    API = "api"                    # Metered, the configured budget is authoritative


class WeekStartDay(Enum):
    """Day on which a billing week begins."""
    SUNDAY = "sunday"
    MONDAY = "monday"

    @property
    def weekday(self) -> int:
        """Day index as returned by ``datetime.weekday()``."""
        return 6 if self is WeekStartDay.SUNDAY else 0


@dataclass(frozen=True)
class BudgetSettings:
    """Budget policy for token allowance, calibration and projection."""
    mode: BudgetMode = BudgetMode.DAILY
    max_percent: int = DEFAULT_MAX_PERCENT
    reserve_percent: int = DEFAULT_RESERVE_PERCENT
    aggressive_end_of_week: bool = False
    billing_mode: BillingMode = BillingMode.SUBSCRIPTION
    calibrate_enabled: bool = True
    week_start_day: WeekStartDay = WeekStartDay.MONDAY
    weekly_tokens: int = DEFAULT_WEEKLY_TOKENS
    per_provider: Dict[str, int] = field(default_factory=dict)
    snapshot_retention_days: int = DEFAULT_SNAPSHOT_RETENTION_DAYS
    trend_lookback_days: int = DEFAULT_TREND_LOOKBACK_DAYS
    scraped_providers: FrozenSet[str] = DEFAULT_SCRAPED_PROVIDERS

    def __post_init__(self):
        """Validate percentages and token counts are in range."""
        if not 0 < self.max_percent <= 100:
            raise ValueError("max_percent must be between 1 and 100")
        if not 0 <= self.reserve_percent <= 100:
            raise ValueError("reserve_percent must be between 0 and 100")
        if self.weekly_tokens <= 0:
            raise ValueError("weekly_tokens must be > 0")
        for provider, tokens in self.per_provider.items():
            if tokens <= 0:
                raise ValueError(f"per_provider budget for '{provider}' must be > 0")
        if self.snapshot_retention_days < 0:
            raise ValueError("snapshot_retention_days cannot be negative")
        if self.trend_lookback_days < 0:
            raise ValueError("trend_lookback_days cannot be negative")

    def get_provider_budget(self, provider: str) -> int:
        """Get the configured weekly tokens for a provider, using the global default if not overridden."""
        return self.per_provider.get(provider.lower(), self.weekly_tokens)

    def is_scraped(self, provider: str) -> bool:
        """Whether the provider's usage percentage comes from a page scrape."""
        return provider.lower() in self.scraped_providers


_ALLOWED_BUDGET_KEYS = {
    'mode', 'max_percent', 'reserve_percent', 'aggressive_end_of_week',
    'billing_mode', 'calibrate_enabled', 'week_start_day', 'weekly_tokens',
    'per_provider', 'snapshot_retention_days', 'trend_lookback_days',
    'scraped_providers',
}


def load_budget_config(path: str) -> BudgetSettings:
    """Load and validate budget configuration from YAML file.

    Only the ``budget`` section is read. Every key is optional and falls
    back to the documented default, but unknown keys and wrong types are
    rejected so that a typo never silently widens the spend ceiling.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BudgetSettings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(f"Budget config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - {'budget'}
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")

    return parse_budget_section(raw_config['budget'])


def parse_budget_section(data: Any) -> BudgetSettings:
    """Parse and validate the ``budget`` mapping into BudgetSettings.

    Args:
        data: Raw ``budget`` section

    Returns:
        Validated BudgetSettings

    Raises:
        ValueError: If the section is invalid
    """
    if not isinstance(data, dict):
        raise ValueError("'budget' must be a dictionary")

    unknown_keys = set(data.keys()) - _ALLOWED_BUDGET_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown budget keys: {unknown_keys}")

    kwargs: Dict[str, Any] = {}

    if 'mode' in data:
        kwargs['mode'] = _parse_enum(BudgetMode, data['mode'], 'mode')
    if 'billing_mode' in data:
        kwargs['billing_mode'] = _parse_enum(BillingMode, data['billing_mode'], 'billing_mode')
    if 'week_start_day' in data:
        kwargs['week_start_day'] = _parse_enum(WeekStartDay, data['week_start_day'], 'week_start_day')

    for key in ('max_percent', 'reserve_percent', 'weekly_tokens',
                'snapshot_retention_days', 'trend_lookback_days'):
        if key in data:
            kwargs[key] = _parse_int(data[key], key)

    for key in ('aggressive_end_of_week', 'calibrate_enabled'):
        if key in data:
            if not isinstance(data[key], bool):
                raise ValueError(f"'{key}' must be a boolean")
            kwargs[key] = data[key]

    if 'per_provider' in data:
        kwargs['per_provider'] = _parse_per_provider(data['per_provider'])

    if 'scraped_providers' in data:
        providers = data['scraped_providers'] or []
        if not isinstance(providers, list) or not all(isinstance(p, str) for p in providers):
            raise ValueError("'scraped_providers' must be a list of provider names")
        kwargs['scraped_providers'] = frozenset(p.lower() for p in providers)

    return BudgetSettings(**kwargs)


def _parse_enum(enum_cls, value: Any, key: str):
    """Parse a case-insensitive enum value, listing valid options on failure."""
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    try:
        return enum_cls(value.strip().lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{key}' must be one of: {valid}")


def _parse_int(value: Any, key: str) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' must be an integer")
    return value


def _parse_per_provider(data: Optional[Dict]) -> Dict[str, int]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("'per_provider' must be a dictionary")

    overrides = {}
    for provider, tokens in data.items():
        overrides[str(provider).lower()] = _parse_int(tokens, f"per_provider.{provider}")
    return overrides
