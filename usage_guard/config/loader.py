"""
Configuration management and loading.

Handles guard settings from YAML files and environment variables.
"""

import os
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

from usage_guard.core.guard import (
    DEFAULT_DAILY_BUDGET_CAP,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_UNIT_PRICE,
    UsageGuard,
)
from usage_guard.core.pricing import to_decimal
from usage_guard.storage.db import DEFAULT_DB_PATH
from usage_guard.storage.repository import SQLiteUsageStore

# Unit estimates charged before each metered operation of the blog generator
DEFAULT_ESTIMATES: Dict[str, int] = {
    "ideas": 1000,
    "article": 2000,
    "thumbnail": 1000,
    "publish": 500,
}

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class GuardConfig:
    """Complete usage guard configuration."""
    daily_budget_cap: Decimal = DEFAULT_DAILY_BUDGET_CAP
    unit_price: Decimal = DEFAULT_UNIT_PRICE
    fail_open: bool = True
    db_path: str = DEFAULT_DB_PATH
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    estimates: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_ESTIMATES))

    def __post_init__(self):
        """Validate limits and estimates."""
        if self.daily_budget_cap <= 0:
            raise ValueError("daily_cap must be > 0")
        if self.unit_price <= 0:
            raise ValueError("unit_price must be > 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        for operation, units in self.estimates.items():
            if isinstance(units, bool) or not isinstance(units, int) or units < 0:
                raise ValueError(f"Estimate for '{operation}' must be a non-negative integer")

    def estimate_for(self, operation: str) -> int:
        """Get the unit estimate charged for an operation.

        Raises:
            ValueError: If the operation has no configured estimate
        """
        if operation not in self.estimates:
            raise ValueError(
                f"Unknown operation '{operation}'. Known: {sorted(self.estimates)}"
            )
        return self.estimates[operation]


def load_guard_config(path: str) -> GuardConfig:
    """Load and validate guard configuration from YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to an unenforced or mispriced budget.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GuardConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Guard config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'budget', 'storage', 'policy', 'estimates'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")

    budget_data = _section(raw_config, 'budget', {'daily_cap', 'unit_price'})
    storage_data = _section(raw_config, 'storage', {'db_path', 'max_attempts'})
    policy_data = _section(raw_config, 'policy', {'fail_open'})

    kwargs = {}

    if 'daily_cap' not in budget_data:
        raise ValueError("Missing required 'daily_cap' budget")
    kwargs['daily_budget_cap'] = _parse_amount(budget_data['daily_cap'], 'budget.daily_cap')
    if 'unit_price' in budget_data:
        kwargs['unit_price'] = _parse_amount(budget_data['unit_price'], 'budget.unit_price')

    if 'db_path' in storage_data:
        if not isinstance(storage_data['db_path'], str):
            raise ValueError("'storage.db_path' must be a string")
        kwargs['db_path'] = storage_data['db_path']
    if 'max_attempts' in storage_data:
        max_attempts = storage_data['max_attempts']
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int):
            raise ValueError("'storage.max_attempts' must be an integer")
        kwargs['max_attempts'] = max_attempts

    if 'fail_open' in policy_data:
        if not isinstance(policy_data['fail_open'], bool):
            raise ValueError("'policy.fail_open' must be true or false")
        kwargs['fail_open'] = policy_data['fail_open']

    estimates_data = raw_config.get('estimates') or {}
    if not isinstance(estimates_data, dict):
        raise ValueError("'estimates' must be a dictionary")
    estimates = dict(DEFAULT_ESTIMATES)
    estimates.update(estimates_data)
    kwargs['estimates'] = estimates

    return GuardConfig(**kwargs)


def config_from_env(
    environ: Optional[Mapping[str, str]] = None,
    base: Optional[GuardConfig] = None,
) -> GuardConfig:
    """Apply environment variable overrides to a configuration.

    DAILY_BUDGET_CAP falls back to the base cap when unset, empty or zero.

    Args:
        environ: Environment mapping (defaults to os.environ)
        base: Configuration to override (defaults to GuardConfig())

    Returns:
        GuardConfig with overrides applied

    Raises:
        ValueError: If an override is malformed
    """
    environ = os.environ if environ is None else environ
    config = base or GuardConfig()
    overrides = {}

    cap = environ.get('DAILY_BUDGET_CAP', '').strip()
    if cap:
        parsed_cap = _parse_amount(cap, 'DAILY_BUDGET_CAP', allow_zero=True)
        if parsed_cap != 0:
            overrides['daily_budget_cap'] = parsed_cap

    unit_price = environ.get('USAGE_GUARD_UNIT_PRICE', '').strip()
    if unit_price:
        overrides['unit_price'] = _parse_amount(unit_price, 'USAGE_GUARD_UNIT_PRICE')

    fail_open = environ.get('USAGE_GUARD_FAIL_OPEN', '').strip().lower()
    if fail_open:
        if fail_open in _TRUTHY:
            overrides['fail_open'] = True
        elif fail_open in _FALSY:
            overrides['fail_open'] = False
        else:
            raise ValueError(f"USAGE_GUARD_FAIL_OPEN must be a boolean, got '{fail_open}'")

    db_path = environ.get('USAGE_GUARD_DB_PATH', '').strip()
    if db_path:
        overrides['db_path'] = db_path

    return replace(config, **overrides) if overrides else config


def build_guard(config: GuardConfig) -> UsageGuard:
    """Create a SQLite-backed guard with its schema initialized."""
    store = SQLiteUsageStore(config.db_path)
    store.initialize_schema()
    return UsageGuard(
        store=store,
        daily_budget_cap=config.daily_budget_cap,
        unit_price=config.unit_price,
        fail_open=config.fail_open,
        max_attempts=config.max_attempts,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    """Return a validated optional section of the configuration."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _parse_amount(value, path: str, allow_zero: bool = False) -> Decimal:
    """Parse a monetary amount, rejecting negatives (and zero unless allowed)."""
    try:
        amount = to_decimal(value)
    except ValueError:
        raise ValueError(f"'{path}' must be a number")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ValueError(f"'{path}' must be > 0")
    return amount
