"""Configuration loader for Mercator.

Loads config from a YAML cascade: config/default.yaml is always loaded,
then an optional environment-specific overlay, then environment variables.
"""

from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from mercator.core.exceptions import ConfigError

# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///./mercator.db"


class EconomyConfig(BaseModel):
    platform_fee_bps: int = Field(1000, ge=0, le=10000)
    default_investor_share_bps: int = Field(7500, ge=0, le=10000)
    living_cost_per_round: Decimal = Decimal("0.005")
    brain_wakeup_rate: Decimal = Decimal("0.3")
    reputation_floor: float = 3.2
    reputation_ceiling: float = 4.8
    reputation_jitter: float = 0.05
    platform_wallet: str = "platform"
    escrow_wallet: str = "escrow"


class RoundConfig(BaseModel):
    max_advisor_calls_per_round: int = 3
    advisor_cooldown_rounds: int = 3
    low_runway_rounds: int = 5
    generate_tasks: bool = False
    tasks_per_round: int = 3
    price_multiplier_min: float = 1.2
    price_multiplier_max: float = 2.0
    interval_seconds: float = 15.0


class AdvisorConfig(BaseModel):
    enabled: bool = False
    base_url: str = "http://localhost:8100"
    timeout_seconds: float = 20.0
    cost_per_call: Decimal = Decimal("0.001")


class PaymentConfig(BaseModel):
    enabled: bool = False
    base_url: str = "http://localhost:8200"
    timeout_seconds: float = 10.0
    retries: int = 2
    backoff_seconds: float = 0.5


class NatsConfig(BaseModel):
    url: str | None = None


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    economy: EconomyConfig = Field(default_factory=EconomyConfig)
    rounds: RoundConfig = Field(default_factory=RoundConfig)
    advisor: AdvisorConfig = Field(default_factory=AdvisorConfig)
    payments: PaymentConfig = Field(default_factory=PaymentConfig)
    nats: NatsConfig = Field(default_factory=NatsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"

# env var -> (section, key)
ENV_OVERRIDES = {
    "DATABASE_URL": ("database", "url"),
    "NATS_URL": ("nats", "url"),
    "MERCATOR_ADVISOR_URL": ("advisor", "base_url"),
    "MERCATOR_PAYMENTS_URL": ("payments", "base_url"),
    "MERCATOR_LOG_LEVEL": ("logging", "level"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def load_config(config_dir: Path | None = None, env: str | None = None) -> AppConfig:
    """Load application config.

    Order: default.yaml -> {env}.yaml -> environment variables. Setting an advisor or
    payments URL through the environment also enables that client.
    """
    config_dir = config_dir or DEFAULT_CONFIG_DIR
    env = env or os.getenv("MERCATOR_ENV")

    merged = _load_yaml(config_dir / "default.yaml")
    if env:
        merged = _deep_merge(merged, _load_yaml(config_dir / f"{env}.yaml"))

    for var, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(var)
        if value:
            merged.setdefault(section, {})[key] = value
            if section in ("advisor", "payments"):
                merged[section]["enabled"] = True

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
