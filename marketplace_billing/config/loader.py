"""
Configuration management and loading.

Handles billing settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..core.pricing import (
    DEFAULT_PRICING_TABLE,
    BulkDiscount,
    EventPricingConfig,
    PricingTable,
    PricingTier,
)
from ..observability import LOG_LEVELS
from ..storage.db import DEFAULT_DB_PATH

NUMBER_PREFIX_ENV = "INVOICE_NUMBER_PREFIX"


@dataclass(frozen=True)
class InvoicingConfig:
    """Invoice numbering and terms."""
    number_prefix: str = "INV"
    due_days: int = 30
    currency: str = "USD"

    def __post_init__(self):
        """Validate invoicing values."""
        if not self.number_prefix:
            raise ValueError("number_prefix must not be empty")
        if self.due_days <= 0:
            raise ValueError("due_days must be > 0")
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValueError("currency must be a 3-letter code")


@dataclass(frozen=True)
class CreditConfig:
    """Default lifetimes of issued credits, in days."""
    refund_expiration_days: int = 365
    promotional_expiration_days: int = 90

    def __post_init__(self):
        if self.refund_expiration_days <= 0:
            raise ValueError("refund_expiration_days must be > 0")
        if self.promotional_expiration_days <= 0:
            raise ValueError("promotional_expiration_days must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False

    def __post_init__(self):
        if self.level not in LOG_LEVELS:
            raise ValueError(f"logging level must be one of: {list(LOG_LEVELS)}")


@dataclass(frozen=True)
class BillingConfig:
    """Complete billing configuration."""
    database_path: str = DEFAULT_DB_PATH
    invoicing: InvoicingConfig = field(default_factory=InvoicingConfig)
    max_discounted_cycles: int = 3
    credits: CreditConfig = field(default_factory=CreditConfig)
    pricing: PricingTable = DEFAULT_PRICING_TABLE
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def __post_init__(self):
        if self.max_discounted_cycles < 0:
            raise ValueError("max_discounted_cycles must be >= 0")


def default_config() -> BillingConfig:
    """Defaults, with the invoice prefix taken from the environment if set."""
    return _apply_environment(BillingConfig())


def load_billing_config(path: str) -> BillingConfig:
    """Load and validate billing configuration from a YAML file.

    Every section is optional; omitted values keep their defaults. Unknown
    keys are rejected so a typo never silently changes billing.

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

    allowed_top_keys = {'database', 'invoicing', 'discounts', 'credits', 'pricing', 'logging'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    database = _section(raw_config, 'database', {'path'})
    invoicing = _section(raw_config, 'invoicing', {'number_prefix', 'due_days', 'currency'})
    discounts = _section(raw_config, 'discounts', {'max_discounted_cycles'})
    credits = _section(raw_config, 'credits', {'refund_expiration_days', 'promotional_expiration_days'})
    logging_data = _section(raw_config, 'logging', {'level', 'json'})
    pricing_data = _section(raw_config, 'pricing', {'event_types'})

    db_path = database.get('path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path:
        raise ValueError("'database.path' must be a non-empty string")

    level = logging_data.get('level', 'INFO')
    if not isinstance(level, str):
        raise ValueError("'logging.level' must be a string")
    json_output = logging_data.get('json', False)
    if not isinstance(json_output, bool):
        raise ValueError("'logging.json' must be a boolean")

    config = BillingConfig(
        database_path=db_path,
        invoicing=InvoicingConfig(
            number_prefix=_string(invoicing, 'number_prefix', 'INV', 'invoicing'),
            due_days=_integer(invoicing, 'due_days', 30, 'invoicing'),
            currency=_string(invoicing, 'currency', 'USD', 'invoicing').upper(),
        ),
        max_discounted_cycles=_integer(discounts, 'max_discounted_cycles', 3, 'discounts'),
        credits=CreditConfig(
            refund_expiration_days=_integer(credits, 'refund_expiration_days', 365, 'credits'),
            promotional_expiration_days=_integer(credits, 'promotional_expiration_days', 90, 'credits'),
        ),
        pricing=_parse_pricing(pricing_data),
        logging=LoggingConfig(level=level.upper(), json=json_output),
    )
    return _apply_environment(config)


def _apply_environment(config: BillingConfig) -> BillingConfig:
    prefix = os.environ.get(NUMBER_PREFIX_ENV)
    if not prefix:
        return config
    return BillingConfig(
        database_path=config.database_path,
        invoicing=InvoicingConfig(
            number_prefix=prefix,
            due_days=config.invoicing.due_days,
            currency=config.invoicing.currency,
        ),
        max_discounted_cycles=config.max_discounted_cycles,
        credits=config.credits,
        pricing=config.pricing,
        logging=config.logging,
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")
    return data


def _string(data: Dict, key: str, default: str, path: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    return value


def _integer(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _amount(value: Any, path: str) -> Decimal:
    """Parse a money value; YAML floats go through their text form."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"{path} must be a number")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{path} must be a number")
    if amount < 0:
        raise ValueError(f"{path} must be >= 0")
    return amount


def _parse_pricing(data: Dict) -> PricingTable:
    """Parse pricing.event_types; absent means the default table."""
    if 'event_types' not in data:
        return DEFAULT_PRICING_TABLE

    event_types = data['event_types']
    if not isinstance(event_types, dict) or not event_types:
        raise ValueError("'pricing.event_types' must be a non-empty dictionary")

    prices = {}
    for name, entry in event_types.items():
        path = f"pricing.event_types.{name}"
        if not isinstance(entry, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        unknown_keys = set(entry.keys()) - {'base_price', 'bulk_discounts', 'tiers'}
        if unknown_keys:
            raise ValueError(f"Unknown keys in {path}: {unknown_keys}")
        if 'base_price' not in entry:
            raise ValueError(f"Missing required 'base_price' in {path}")

        prices[name] = EventPricingConfig(
            event_type=name,
            base_price=_amount(entry['base_price'], f"{path}.base_price"),
            tiers=tuple(_parse_tiers(entry.get('tiers') or [], path)),
            bulk_discounts=tuple(_parse_bulk_discounts(entry.get('bulk_discounts') or [], path)),
        )
    return PricingTable(prices)


def _parse_tiers(items: List, path: str) -> List[PricingTier]:
    if not isinstance(items, list):
        raise ValueError(f"'{path}.tiers' must be a list")
    tiers = []
    previous: Optional[int] = 0
    for index, item in enumerate(items):
        item_path = f"{path}.tiers[{index}]"
        if not isinstance(item, dict) or set(item.keys()) != {'limit', 'price'}:
            raise ValueError(f"{item_path} must have exactly 'limit' and 'price'")
        limit = item['limit']
        if limit is not None:
            if isinstance(limit, bool) or not isinstance(limit, int):
                raise ValueError(f"{item_path}.limit must be an integer or null")
            if previous is None or limit <= previous:
                raise ValueError(f"{item_path}.limit must be greater than the previous tier")
        elif index != len(items) - 1:
            raise ValueError(f"{item_path}: only the last tier may be unbounded")
        tiers.append(PricingTier(limit=limit, price=_amount(item['price'], f"{item_path}.price")))
        previous = limit
    return tiers


def _parse_bulk_discounts(items: List, path: str) -> List[BulkDiscount]:
    if not isinstance(items, list):
        raise ValueError(f"'{path}.bulk_discounts' must be a list")
    rules: List[Tuple[int, Decimal]] = []
    for index, item in enumerate(items):
        item_path = f"{path}.bulk_discounts[{index}]"
        if not isinstance(item, dict) or set(item.keys()) != {'min_quantity', 'discount_percentage'}:
            raise ValueError(f"{item_path} must have exactly 'min_quantity' and 'discount_percentage'")
        min_quantity = item['min_quantity']
        if isinstance(min_quantity, bool) or not isinstance(min_quantity, int) or min_quantity <= 0:
            raise ValueError(f"{item_path}.min_quantity must be a positive integer")
        percentage = _amount(item['discount_percentage'], f"{item_path}.discount_percentage")
        if percentage > 100:
            raise ValueError(f"{item_path}.discount_percentage must be <= 100")
        rules.append((min_quantity, percentage))
    return [BulkDiscount(min_quantity, percentage) for min_quantity, percentage in sorted(rules)]
