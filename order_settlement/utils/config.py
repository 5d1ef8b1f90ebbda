"""
Configuration for the order settlement core

Settings are a pydantic-settings model. Values come, lowest precedence first,
from the defaults, an optional YAML file, ``ORDER_SETTLEMENT_*`` environment
variables and keyword arguments. List and tier values given through the
environment are JSON.
"""

from decimal import Decimal
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple, Type

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict, SettingsError

from ..core.exceptions import ConfigurationError
from ..models.earnings import EarningsTier, DEFAULT_TIER_SCHEDULE

ENV_PREFIX = "ORDER_SETTLEMENT_"

DEFAULT_TECHNICAL_CATEGORIES = [
    "data-analysis",
    "programming",
    "web-development",
    "software-design",
    "technical-writing",
    "system-design",
]


def read_config_file(path: str) -> Dict[str, Any]:
    """Read a YAML settings file. A top-level ``settlement:`` section is unwrapped."""
    config_path = Path(path)
    try:
        with config_path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
    except OSError as e:
        raise ConfigurationError(str(config_path), f"cannot read config file: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(str(config_path), f"invalid YAML: {e}")
    if not isinstance(loaded, dict):
        raise ConfigurationError(str(config_path), "top level must be a mapping")
    section = loaded.get("settlement", loaded)
    if not isinstance(section, dict):
        raise ConfigurationError(str(config_path), "settlement section must be a mapping")
    return section


class YamlFileSettingsSource(PydanticBaseSettingsSource):
    """Settings source reading the file named by the ``config_file`` argument."""

    def __init__(self, settings_cls: Type[BaseSettings], path: Optional[str]):
        super().__init__(settings_cls)
        self.path = path

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        # The whole file is returned at once from __call__
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        if not self.path:
            return {}
        return read_config_file(self.path)


class TierConfig(BaseModel):
    """One level of the tier schedule as written in the config file."""

    level: int = Field(ge=1)
    min_completed_orders: int = Field(ge=0)
    standard_rate: Decimal = Field(ge=0)
    technical_rate: Decimal = Field(ge=0)
    label: str
    description: str = ""

    def to_tier(self) -> EarningsTier:
        return EarningsTier.from_dict(self.model_dump())


class SettlementConfig(BaseSettings):
    """Runtime settings for the settlement services."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    config_file: Optional[str] = Field(default=None, exclude=True)

    # Persistence
    database_url: Optional[str] = None
    pool_size: int = Field(default=10, ge=1)
    max_overflow: int = Field(default=20, ge=0)

    # Earnings
    slide_rate: Decimal = Field(default=Decimal("100"), ge=0)
    technical_categories: List[str] = Field(default_factory=lambda: list(DEFAULT_TECHNICAL_CATEGORIES))
    tiers: List[TierConfig] = Field(
        default_factory=lambda: [TierConfig(**tier.to_dict()) for tier in DEFAULT_TIER_SCHEDULE]
    )

    # Notifications
    keepalive_interval: float = Field(default=15.0, gt=0)
    connection_queue_size: int = Field(default=100, ge=1)

    # Payouts
    processor_timeout: float = Field(default=30.0, gt=0)
    processor_url: Optional[str] = None
    processor_api_key: Optional[str] = None
    minimum_payout: Decimal = Field(default=Decimal("0"), ge=0)

    # Logging
    log_level: str = "INFO"
    structured_logging: bool = True
    log_file: Optional[str] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        config_file = init_settings.init_kwargs.get("config_file")
        return (init_settings, env_settings, YamlFileSettingsSource(settings_cls, config_file))

    @field_validator("technical_categories")
    @classmethod
    def normalize_categories(cls, value: List[str]) -> List[str]:
        categories = (category.strip().lower().replace(" ", "-").replace("_", "-") for category in value)
        return [category for category in categories if category]

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value}")
        return level

    @model_validator(mode="after")
    def validate_tiers(self) -> "SettlementConfig":
        if not self.tiers:
            raise ValueError("at least one tier is required")
        ordered = sorted(self.tiers, key=lambda tier: tier.level)
        if [tier.level for tier in ordered] != list(range(1, len(ordered) + 1)):
            raise ValueError("tier levels must be consecutive starting at 1")
        if ordered[0].min_completed_orders != 0:
            raise ValueError("level 1 must require 0 completed orders")
        for lower, higher in zip(ordered, ordered[1:]):
            if higher.min_completed_orders <= lower.min_completed_orders:
                raise ValueError("tier thresholds must strictly increase with level")
        self.tiers = ordered
        return self

    def tier_schedule(self) -> List[EarningsTier]:
        return [tier.to_tier() for tier in self.tiers]


def load_config(path: Optional[str] = None, **overrides: Any) -> SettlementConfig:
    """
    Build the settlement configuration.

    Keyword overrides that are ``None`` are ignored so CLI options left unset
    do not mask the file or the environment.

    Raises:
        ConfigurationError: If the file cannot be read or a value is invalid
    """
    values = {key: value for key, value in overrides.items() if value is not None}
    try:
        return SettlementConfig(config_file=path, **values)
    except SettingsError as e:
        raise ConfigurationError("environment", str(e))
    except PydanticValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ())) or "settlement"
        raise ConfigurationError(key, first.get("msg", str(e)))
