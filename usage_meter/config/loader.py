"""
Configuration management and loading.

Handles billing settings from YAML and provider credentials from the
environment.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from usage_meter.core.payloads import SMS_MAX_LENGTH
from usage_meter.core.pricing import DEFAULT_PRICE_TABLE, PriceTable, ResourcePricing
from usage_meter.storage.db import DEFAULT_DB_PATH
from usage_meter.storage.models import ResourceKind

API_KEY_ENV_VAR = "TELEPHONY_API_KEY"


@dataclass(frozen=True)
class SmsConfig:
    """Limits applied to SMS send requests."""
    max_length: int = SMS_MAX_LENGTH

    def __post_init__(self):
        if self.max_length <= 0:
            raise ValueError("sms.max_length must be > 0")


@dataclass(frozen=True)
class CampaignGuardConfig:
    """Time boxes for stopping spend when funds run out."""
    timeout_seconds: float = 5.0
    campaign_window_hours: int = 24
    session_window_minutes: int = 30

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("campaign_guard.timeout_seconds must be > 0")
        if self.campaign_window_hours <= 0:
            raise ValueError("campaign_guard.campaign_window_hours must be > 0")
        if self.session_window_minutes <= 0:
            raise ValueError("campaign_guard.session_window_minutes must be > 0")

    @property
    def campaign_window(self) -> timedelta:
        return timedelta(hours=self.campaign_window_hours)

    @property
    def session_window(self) -> timedelta:
        return timedelta(minutes=self.session_window_minutes)


@dataclass(frozen=True)
class ProviderConfig:
    """Telephony provider endpoint and credentials."""
    base_url: str
    account_id: str
    api_key: str = field(default="", repr=False)


@dataclass(frozen=True)
class BillingConfig:
    """Complete billing configuration."""
    pricing: PriceTable = field(default_factory=lambda: DEFAULT_PRICE_TABLE)
    sms: SmsConfig = field(default_factory=SmsConfig)
    campaign_guard: CampaignGuardConfig = field(default_factory=CampaignGuardConfig)
    provider: Optional[ProviderConfig] = None
    database_path: str = DEFAULT_DB_PATH


def default_config() -> BillingConfig:
    """Configuration used when no file is given."""
    return BillingConfig(provider=_provider_from_env())


def _check_keys(data: Dict, allowed: set, path: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")


def _section(raw: Dict, name: str) -> Dict:
    data = raw.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _positive_int(value: Any, path: str, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{path}' must be {'>= 0' if allow_zero else '> 0'}")
    return value


def load_billing_config(path: str) -> BillingConfig:
    """Load and validate billing configuration from a YAML file.

    Strict validation ensures no silent misconfiguration of prices or
    limits: unknown keys are rejected and every value is type-checked.
    Sections that are absent keep their defaults.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated BillingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Billing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _check_keys(
        raw_config,
        {'pricing', 'sms', 'campaign_guard', 'provider', 'database'},
        "configuration",
    )

    pricing = _parse_pricing(_section(raw_config, 'pricing'))

    sms_data = _section(raw_config, 'sms')
    _check_keys(sms_data, {'max_length'}, "sms")
    sms = SmsConfig(
        max_length=_positive_int(sms_data.get('max_length', SMS_MAX_LENGTH), "sms.max_length")
    )

    guard_data = _section(raw_config, 'campaign_guard')
    _check_keys(
        guard_data,
        {'timeout_seconds', 'campaign_window_hours', 'session_window_minutes'},
        "campaign_guard",
    )
    timeout = guard_data.get('timeout_seconds', 5.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
        raise ValueError("'campaign_guard.timeout_seconds' must be a number")
    guard = CampaignGuardConfig(
        timeout_seconds=float(timeout),
        campaign_window_hours=_positive_int(
            guard_data.get('campaign_window_hours', 24), "campaign_guard.campaign_window_hours"
        ),
        session_window_minutes=_positive_int(
            guard_data.get('session_window_minutes', 30), "campaign_guard.session_window_minutes"
        ),
    )

    provider = _parse_provider(_section(raw_config, 'provider'))

    database_data = _section(raw_config, 'database')
    _check_keys(database_data, {'path'}, "database")
    database_path = database_data.get('path', DEFAULT_DB_PATH)
    if not isinstance(database_path, str) or not database_path.strip():
        raise ValueError("'database.path' must be a non-empty string")

    return BillingConfig(
        pricing=pricing,
        sms=sms,
        campaign_guard=guard,
        provider=provider,
        database_path=database_path,
    )


def _parse_pricing(data: Dict) -> PriceTable:
    """Parse per-resource prices, falling back to defaults for missing ones.

    Raises:
        ValueError: If a resource or price is invalid
    """
    prices = dict(DEFAULT_PRICE_TABLE.prices)
    for name, entry in data.items():
        try:
            kind = ResourceKind(name)
        except ValueError:
            valid = [k.value for k in ResourceKind]
            raise ValueError(f"Unknown resource in pricing: {name}. Must be one of: {valid}")
        if not isinstance(entry, dict):
            raise ValueError(f"pricing.{name} must be a dictionary")
        _check_keys(entry, {'unit_granularity', 'price_per_unit'}, f"pricing.{name}")
        for key in ('unit_granularity', 'price_per_unit'):
            if key not in entry:
                raise ValueError(f"Missing required '{key}' in pricing.{name}")
        prices[kind] = ResourcePricing(
            unit_granularity=_positive_int(entry['unit_granularity'], f"pricing.{name}.unit_granularity"),
            price_per_unit=_positive_int(
                entry['price_per_unit'], f"pricing.{name}.price_per_unit", allow_zero=True
            ),
        )
    return PriceTable(prices)


def _parse_provider(data: Dict) -> Optional[ProviderConfig]:
    if not data:
        return _provider_from_env()
    _check_keys(data, {'base_url', 'account_id'}, "provider")
    for key in ('base_url', 'account_id'):
        if not data.get(key):
            raise ValueError(f"Missing required '{key}' in provider")
    return ProviderConfig(
        base_url=str(data['base_url']),
        account_id=str(data['account_id']),
        api_key=os.getenv(API_KEY_ENV_VAR, ""),
    )


def _provider_from_env() -> Optional[ProviderConfig]:
    base_url = os.getenv("TELEPHONY_API_URL")
    account_id = os.getenv("TELEPHONY_ACCOUNT_ID")
    if not base_url or not account_id:
        return None
    return ProviderConfig(
        base_url=base_url,
        account_id=account_id,
        api_key=os.getenv(API_KEY_ENV_VAR, ""),
    )
