"""Configuration management for the execution core.

Rules:
- YAML provides defaults for every threshold (risk, protection, partial exits).
- Environment variables / .env override YAML (nested with "__", e.g. EXECUTION__DRY_RUN=0).
- Config is loaded once and passed down explicitly; there is no global instance.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional, Tuple, Type

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class ExecutionConfig(BaseModel):
    """Order execution settings."""

    dry_run: bool = Field(default=True, description="Simulate fills at the quoted price")
    order_timeout_seconds: float = Field(default=10, ge=0, le=300)
    poll_interval_seconds: float = Field(default=0.5, gt=0, le=10)
    stop_loss_delay_seconds: float = Field(default=3.0, ge=0, le=60)
    account_type: str = Field(default="INVEST")

    @field_validator("account_type")
    @classmethod
    def validate_account_type(cls, v: str) -> str:
        if str(v).upper() not in ("INVEST", "ISA"):
            raise ValueError("account_type must be 'INVEST' or 'ISA'")
        return str(v).upper()


class RiskConfig(BaseModel):
    """Pre-trade risk limits."""

    max_positions: int = Field(default=5, ge=1, le=100)
    max_position_size_pct: float = Field(default=0.15, ge=0.001, le=1.0)
    max_risk_per_trade_pct: float = Field(default=0.02, ge=0.001, le=1.0)
    max_sector_concentration: int = Field(default=3, ge=1, le=50)
    max_sector_value_pct: float = Field(default=0.35, ge=0.01, le=1.0)
    daily_loss_limit_pct: float = Field(default=0.05, ge=0.001, le=1.0)
    max_drawdown_alert_pct: float = Field(default=0.10, ge=0.001, le=1.0)

    # Losing-streak size reduction; both must be set for it to apply
    streak_reduction_threshold: Optional[int] = Field(default=None, ge=1, le=50)
    streak_reduction_factor: Optional[float] = Field(default=None, ge=0, le=1)
    streak_lookback_trades: int = Field(default=100, ge=1, le=10_000)


class StoplossGuardConfig(BaseModel):
    enabled: bool = Field(default=False)
    trade_limit: int = Field(default=3, ge=1, le=100)
    lookback_minutes: int = Field(default=120, ge=1, le=10_080)
    lock_minutes: int = Field(default=60, ge=1, le=10_080)
    only_per_pair: bool = Field(default=False)


class MaxDrawdownLockConfig(BaseModel):
    enabled: bool = Field(default=False)
    max_drawdown_pct: float = Field(default=0.10, ge=0.001, le=1.0)
    lookback_minutes: int = Field(default=1440, ge=1, le=100_000)
    lock_minutes: int = Field(default=120, ge=1, le=100_000)


class LowProfitPairConfig(BaseModel):
    enabled: bool = Field(default=False)
    min_profit: float = Field(default=-0.05, ge=-1.0, le=1.0)
    trade_limit: int = Field(default=3, ge=1, le=100)
    lookback_minutes: int = Field(default=10_080, ge=1, le=100_000)
    lock_minutes: int = Field(default=1440, ge=1, le=100_000)


class ProtectionConfig(BaseModel):
    """Guards evaluated after every close. Each one is toggled independently."""

    cooldown_minutes: int = Field(default=0, ge=0, le=10_080)
    stoploss_guard: StoplossGuardConfig = Field(default_factory=StoplossGuardConfig)
    max_drawdown_lock: MaxDrawdownLockConfig = Field(default_factory=MaxDrawdownLockConfig)
    low_profit_pair: LowProfitPairConfig = Field(default_factory=LowProfitPairConfig)


class ExitTierConfig(BaseModel):
    gain_threshold_pct: float = Field(..., ge=0, le=10)
    sell_fraction: float = Field(..., ge=0.01, le=1.0)


class PartialExitConfig(BaseModel):
    enabled: bool = Field(default=False)
    tiers: List[ExitTierConfig] = Field(
        default_factory=lambda: [
            ExitTierConfig(gain_threshold_pct=0.05, sell_fraction=0.5),
            ExitTierConfig(gain_threshold_pct=0.10, sell_fraction=0.25),
        ],
        min_length=1,
        max_length=20,
    )
    move_stop_to_breakeven: bool = Field(default=True)

    @field_validator("tiers")
    @classmethod
    def validate_tiers_ascending(cls, v: List[ExitTierConfig]) -> List[ExitTierConfig]:
        thresholds = [t.gain_threshold_pct for t in v]
        if thresholds != sorted(thresholds):
            raise ValueError("partial exit tiers must be ascending by gain_threshold_pct")
        return v


class DatabaseConfig(BaseModel):
    class SQLiteConfig(BaseModel):
        path: str = Field(default="data/tradecore.db")

    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)


class TradeCoreConfig(BaseSettings):
    """Main configuration for the execution & risk core.

    YAML is the base layer; env vars and .env are applied on top of it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: str = Field(default="DEMO")
    log_level: str = Field(default="INFO")

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    protection: ProtectionConfig = Field(default_factory=ProtectionConfig)
    partial_exit: PartialExitConfig = Field(default_factory=PartialExitConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # env beats YAML (which arrives as init kwargs)
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if str(v).upper() not in {"DEMO", "REAL"}:
            raise ValueError("Environment must be 'DEMO' or 'REAL'")
        return str(v).upper()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if str(v).upper() not in valid:
            raise ValueError(f"Log level must be one of: {sorted(valid)}")
        return str(v).upper()

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "TradeCoreConfig":
        """Load configuration from YAML, then let env overrides win."""
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data: Any = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a mapping at the top level")

        try:
            return cls(**data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")


def load_config(config_path: Optional[Path] = None) -> TradeCoreConfig:
    """Load configuration from YAML + .env (env wins)."""

    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        possible_paths = [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            raise FileNotFoundError("No configuration file found. Create config/default.yaml or specify config path.")

    return TradeCoreConfig.from_yaml(config_path)
