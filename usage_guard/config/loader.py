"""
Configuration management and loading.

Handles usage preferences, GitHub client settings and environment variables.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_REFRESH_INTERVAL_MINUTES = 15
DEFAULT_WARN_AT_PERCENT = 75.0
DEFAULT_DANGER_AT_PERCENT = 90.0
DEFAULT_BUDGET_USD = 10.0

DEFAULT_GITHUB_BASE_URL = "https://api.github.com"
DEFAULT_PRODUCT = "copilot"


class PrimaryMetric(Enum):
    """Which percentage the threshold notifications watch."""
    BUDGET_PERCENT = "budget_percent"
    INCLUDED_PERCENT = "included_percent"


class BudgetSource(Enum):
    """Where the monthly budget dollars come from."""
    MANUAL = "manual"
    # Placeholder until an official budgets API exists; behaves like MANUAL.
    GITHUB = "github"


@dataclass(frozen=True)
class UsagePreferences:
    """Snapshot of user preferences passed by value into each computation.

    A threshold of 0 disables that level.
    """
    refresh_interval_minutes: int = DEFAULT_REFRESH_INTERVAL_MINUTES
    warn_at_percent: float = DEFAULT_WARN_AT_PERCENT
    danger_at_percent: float = DEFAULT_DANGER_AT_PERCENT
    notifications_enabled: bool = False
    primary_metric: PrimaryMetric = PrimaryMetric.BUDGET_PERCENT
    budget_source: BudgetSource = BudgetSource.MANUAL
    budget_usd: float = DEFAULT_BUDGET_USD
    included_override: float = 0.0
    selected_plan_id: Optional[str] = None

    def __post_init__(self):
        """Validate preference values are in range."""
        if self.refresh_interval_minutes < 1:
            raise ValueError("refresh_interval_minutes must be >= 1")
        for name in ("warn_at_percent", "danger_at_percent"):
            value = getattr(self, name)
            if value < 0 or value > 100:
                raise ValueError(f"{name} must be between 0 and 100")
        if self.budget_usd < 0:
            raise ValueError("budget_usd cannot be negative")
        if self.included_override < 0:
            raise ValueError("included_override cannot be negative")

    @property
    def refresh_interval_seconds(self) -> float:
        return float(self.refresh_interval_minutes * 60)


@dataclass(frozen=True)
class GitHubConfig:
    """Connection settings for the GitHub billing API."""
    base_url: str = DEFAULT_GITHUB_BASE_URL
    timeout_seconds: float = 30.0
    product: str = DEFAULT_PRODUCT

    def __post_init__(self):
        """Validate connection settings."""
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("github.base_url must be an http(s) URL")
        if self.timeout_seconds <= 0:
            raise ValueError("github.timeout_seconds must be > 0")
        if not self.product.strip():
            raise ValueError("github.product cannot be empty")


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    preferences: UsagePreferences = field(default_factory=UsagePreferences)
    github: GitHubConfig = field(default_factory=GitHubConfig)


_PREFERENCE_KEYS = {
    'refresh_interval_minutes',
    'warn_at_percent',
    'danger_at_percent',
    'notifications_enabled',
    'primary_metric',
    'budget_source',
    'budget_usd',
    'included_override',
    'selected_plan_id',
}

_GITHUB_KEYS = {'base_url', 'timeout_seconds', 'product'}


def load_config(path: str) -> AppConfig:
    """Load and validate usage configuration from a YAML file.

    Strict validation ensures a typo in the config file is reported
    instead of silently falling back to a default threshold or budget.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = _PREFERENCE_KEYS | {'github'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    preferences_data = {k: v for k, v in raw_config.items() if k in _PREFERENCE_KEYS}
    preferences = parse_preferences(preferences_data)

    github_data = raw_config.get('github', {}) or {}
    if not isinstance(github_data, dict):
        raise ValueError("'github' must be a dictionary")
    github = _parse_github_config(github_data)

    return AppConfig(preferences=preferences, github=github)


def parse_preferences(data: Dict[str, Any]) -> UsagePreferences:
    """Parse and validate a preferences mapping.

    Args:
        data: Raw preference values keyed by field name

    Returns:
        Validated UsagePreferences

    Raises:
        ValueError: If a key is unknown or a value has the wrong type
    """
    unknown_keys = set(data.keys()) - _PREFERENCE_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown preference keys: {unknown_keys}")

    values: Dict[str, Any] = {}

    if 'refresh_interval_minutes' in data:
        interval = data['refresh_interval_minutes']
        if isinstance(interval, bool) or not isinstance(interval, int):
            raise ValueError("'refresh_interval_minutes' must be an integer")
        values['refresh_interval_minutes'] = interval

    for key in ('warn_at_percent', 'danger_at_percent', 'budget_usd', 'included_override'):
        if key in data:
            values[key] = _require_number(data[key], key)

    if 'notifications_enabled' in data:
        enabled = data['notifications_enabled']
        if not isinstance(enabled, bool):
            raise ValueError("'notifications_enabled' must be true or false")
        values['notifications_enabled'] = enabled

    if 'primary_metric' in data:
        values['primary_metric'] = _parse_enum(PrimaryMetric, data['primary_metric'], 'primary_metric')

    if 'budget_source' in data:
        values['budget_source'] = _parse_enum(BudgetSource, data['budget_source'], 'budget_source')

    if 'selected_plan_id' in data:
        plan_id = data['selected_plan_id']
        if plan_id is not None and not isinstance(plan_id, str):
            raise ValueError("'selected_plan_id' must be a string")
        plan_id = (plan_id or "").strip()
        values['selected_plan_id'] = plan_id or None

    return UsagePreferences(**values)


def _parse_github_config(data: Dict[str, Any]) -> GitHubConfig:
    """Parse and validate the optional ``github`` section."""
    unknown_keys = set(data.keys()) - _GITHUB_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in github: {unknown_keys}")

    values: Dict[str, Any] = {}
    if 'base_url' in data:
        if not isinstance(data['base_url'], str):
            raise ValueError("'base_url' in github must be a string")
        values['base_url'] = data['base_url'].rstrip('/')
    if 'timeout_seconds' in data:
        values['timeout_seconds'] = _require_number(data['timeout_seconds'], 'github.timeout_seconds')
    if 'product' in data:
        if not isinstance(data['product'], str):
            raise ValueError("'product' in github must be a string")
        values['product'] = data['product']

    return GitHubConfig(**values)


def _require_number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{name}' must be a number")
    return float(value)


def _parse_enum(enum_cls, value: Any, name: str):
    if not isinstance(value, str):
        raise ValueError(f"'{name}' must be a string")
    try:
        return enum_cls(value.lower())
    except ValueError:
        valid = [member.value for member in enum_cls]
        raise ValueError(f"'{name}' must be one of: {valid}")
