"""
Settings management using Pydantic.

Loads configuration from config.yaml and environment variables.
Environment variables override YAML values.
"""

from __future__ import annotations

import logging
import os
from decimal import Decimal
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class ExitSettings(BaseModel):
    """Exit state machine tuning (all percentages are 0-100 scale)."""

    breakeven_margin_pct: Decimal = Decimal("0.1")
    min_sl_distance_pct: Decimal = Decimal("0.1")
    trailing_distance_pct: Decimal = Decimal("1.5")
    # Adaptive TP3: stretch the final target with trend strength (profit % from entry)
    adaptive_tp3: bool = False
    adaptive_tp3_min_profit_pct: Decimal = Decimal("2.0")
    adaptive_tp3_max_profit_pct: Decimal = Decimal("5.0")
    adaptive_tp3_high_volume_bonus_pct: Decimal = Decimal("0.5")

    # Smart trailing: ATR% is clamped into [min, max], tightened on high volume
    smart_trailing_min_atr_pct: Decimal = Decimal("1.5")
    smart_trailing_max_atr_pct: Decimal = Decimal("3.0")
    high_volume_ratio: Decimal = Decimal("1.2")
    high_volume_tighten_factor: Decimal = Decimal("0.8")

    tp1_close_pct: Decimal = Decimal("50")
    tp2_close_pct: Decimal = Decimal("30")
    tp3_close_pct: Decimal = Decimal("20")

    # Taker fee charged on entry and exit notional when computing realized PnL
    taker_fee_rate: Decimal = Decimal("0.0006")


class EntrySettings(BaseModel):
    """Entry gating thresholds."""

    min_confidence: Decimal = Decimal("60")
    signal_conflict_threshold: Decimal = Field(default=Decimal("0.4"), ge=0, le=1)
    flat_market_confidence_threshold: Decimal = Decimal("70")


class AggregationSettings(BaseModel):
    """Weighted signal aggregation settings."""

    weights: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "EMA_ANALYZER": Decimal("0.20"),
            "RSI_ANALYZER": Decimal("0.15"),
            "LIQUIDITY_ZONE_ANALYZER": Decimal("0.15"),
            "ORDER_BLOCK_ANALYZER": Decimal("0.10"),
            "VOLUME_ANALYZER": Decimal("0.10"),
        }
    )
    # Sources without a weight are ignored
    default_weight: Decimal = Decimal("0")
    min_total_score: Decimal = Decimal("0.45")
    min_confidence: Decimal = Decimal("0.75")
    conflict_threshold: Decimal = Decimal("0.4")

    blind_zone_enabled: bool = True
    blind_zone_min_signals: int = 3
    blind_zone_long_penalty: Decimal = Decimal("0.85")
    blind_zone_short_penalty: Decimal = Decimal("0.90")


class DailyLimitSettings(BaseModel):
    """Daily realized PnL limits (percent of account balance)."""

    max_daily_loss_pct: Decimal = Decimal("5.0")
    max_daily_profit_pct: Decimal | None = None
    emergency_stop_on_limit: bool = True


class LossStreakSettings(BaseModel):
    """Position size reduction schedule after consecutive losses."""

    reduction_after_2: Decimal = Decimal("0.75")
    reduction_after_3: Decimal = Decimal("0.5")
    reduction_after_4: Decimal = Decimal("0.25")
    stop_after_losses: int | None = None


class ConcurrentRiskSettings(BaseModel):
    """Limits on simultaneously open positions."""

    enabled: bool = True
    max_positions: int = 3
    max_risk_per_position_pct: Decimal = Decimal("2.0")
    max_total_exposure_pct: Decimal = Decimal("5.0")


class PositionSizingSettings(BaseModel):
    """Position sizing bounds."""

    risk_per_trade_pct: Decimal = Decimal("1.0")
    min_position_size_usdt: Decimal = Decimal("5")
    max_position_size_usdt: Decimal = Decimal("100")
    max_leverage_multiplier: Decimal = Decimal("2.0")


class RiskSettings(BaseModel):
    """Risk management settings."""

    daily_limits: DailyLimitSettings = Field(default_factory=DailyLimitSettings)
    loss_streak: LossStreakSettings = Field(default_factory=LossStreakSettings)
    concurrent_risk: ConcurrentRiskSettings = Field(default_factory=ConcurrentRiskSettings)
    position_sizing: PositionSizingSettings = Field(default_factory=PositionSizingSettings)


class RetrySettings(BaseModel):
    """Exponential backoff settings for the RETRY recovery strategy."""

    max_attempts: int = Field(default=3, ge=1)
    initial_delay_ms: int = Field(default=100, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=10_000, ge=0)


class ErrorRegistrySettings(BaseModel):
    """Error telemetry settings."""

    max_tracked_errors: int = 1000
    health_threshold: float = 0.8
    recent_window_ms: int = 60_000


class LoggingSettings(BaseModel):
    """Logging settings."""

    level: str = "INFO"
    json_enabled: bool = False
    json_file: str = "logs/trading_bot_json.jsonl"
    # Set to 0 to disable rotation.
    json_max_bytes: int = 50_000_000
    json_backup_count: int = 3


class TelegramSettings(BaseModel):
    """Telegram notification settings."""

    enabled: bool = False
    bot_token: str = ""
    chat_id: str = ""


class Settings(BaseSettings):
    """
    Main settings container.

    Loads from config.yaml, then applies env var overrides.
    """

    env: str = Field(default="development", alias="BOT_ENV")

    live_trading: bool = False
    testing_mode: bool = False

    exits: ExitSettings = Field(default_factory=ExitSettings)
    entry: EntrySettings = Field(default_factory=EntrySettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    error_registry: ErrorRegistrySettings = Field(default_factory=ErrorRegistrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)

    model_config = {
        "env_prefix": "BOT_",
        "env_nested_delimiter": "__",
        "extra": "ignore",
        "populate_by_name": True,
    }

    def validate_for_live_trading(self) -> list[str]:
        """
        Validate settings that would make live trading unsafe.

        Returns:
            List of validation error messages. Empty list means all validations passed.
        """
        errors = []

        sizing = self.risk.position_sizing
        if sizing.min_position_size_usdt <= 0:
            errors.append("risk.position_sizing.min_position_size_usdt must be positive")
        if sizing.min_position_size_usdt > sizing.max_position_size_usdt:
            errors.append(
                "risk.position_sizing.min_position_size_usdt "
                f"({sizing.min_position_size_usdt}) exceeds max_position_size_usdt "
                f"({sizing.max_position_size_usdt})"
            )
        if sizing.risk_per_trade_pct <= 0:
            errors.append("risk.position_sizing.risk_per_trade_pct must be positive")
        if sizing.max_leverage_multiplier < 1:
            errors.append("risk.position_sizing.max_leverage_multiplier must be at least 1")

        if self.risk.daily_limits.max_daily_loss_pct <= 0:
            errors.append("risk.daily_limits.max_daily_loss_pct must be positive")

        streak = self.risk.loss_streak
        for name in ("reduction_after_2", "reduction_after_3", "reduction_after_4"):
            value = getattr(streak, name)
            if value <= 0 or value > 1:
                errors.append(f"risk.loss_streak.{name} must be in (0, 1], got {value}")

        if self.risk.concurrent_risk.max_positions < 1:
            errors.append("risk.concurrent_risk.max_positions must be at least 1")

        if self.retry.initial_delay_ms > self.retry.max_delay_ms:
            errors.append("retry.initial_delay_ms must not exceed retry.max_delay_ms")

        if self.telegram.enabled and (not self.telegram.bot_token or not self.telegram.chat_id):
            errors.append("telegram: bot_token and chat_id are required when enabled")

        return errors

    @classmethod
    def from_yaml(cls, env: str = "development") -> Settings:
        """
        Load settings from config.yaml.

        The 'env' parameter only sets `settings.env` (for banners/logging).
        """
        yaml_file = Path(__file__).parent / "config.yaml"

        data: dict = {}
        if yaml_file.exists():
            with open(yaml_file, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}

        # Telegram settings from env
        if "telegram" not in data:
            data["telegram"] = {}
        if os.getenv("TELEGRAM_BOT_TOKEN"):
            data["telegram"]["bot_token"] = os.getenv("TELEGRAM_BOT_TOKEN")
        if os.getenv("TELEGRAM_CHAT_ID"):
            data["telegram"]["chat_id"] = os.getenv("TELEGRAM_CHAT_ID")
        if os.getenv("TELEGRAM_ENABLED"):
            val = os.getenv("TELEGRAM_ENABLED").lower()
            data["telegram"]["enabled"] = val in ("true", "1", "yes")

        data["env"] = env

        _warn_unknown_keys(data, cls)

        return cls(**data)


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts, override wins on conflicts."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _collect_all_keys(data: dict, prefix: str = "") -> set[str]:
    """Recursively collect all keys from a nested dict in dot-notation."""
    keys = set()
    for key, value in data.items():
        full_key = f"{prefix}.{key}" if prefix else key
        keys.add(full_key)
        # Free-form maps (e.g. aggregation.weights) are not descended into
        if isinstance(value, dict) and key != "weights":
            keys.update(_collect_all_keys(value, full_key))
    return keys


def _collect_model_fields(model_class: type[BaseModel], prefix: str = "") -> set[str]:
    """Recursively collect all field names from a Pydantic model in dot-notation."""
    fields = set()
    for field_name, field_info in model_class.model_fields.items():
        full_key = f"{prefix}.{field_name}" if prefix else field_name
        fields.add(full_key)

        annotation = field_info.annotation
        if hasattr(annotation, "__origin__"):
            # Generic types like dict[str, Decimal] - skip
            continue
        if isinstance(annotation, type) and issubclass(annotation, BaseModel):
            fields.update(_collect_model_fields(annotation, full_key))

    return fields


def _warn_unknown_keys(data: dict, model_class: type[BaseModel]) -> None:
    """Warn about YAML keys that don't match any model field."""
    unknown_keys = _collect_all_keys(data) - _collect_model_fields(model_class)

    if unknown_keys:
        logger.warning(
            f"Unknown configuration keys found (will be ignored due to extra='ignore'): {sorted(unknown_keys)}. "
            f"This may indicate typos in config.yaml or outdated config keys."
        )


def load_settings(overrides: dict | None = None, env: str = "development") -> Settings:
    """
    Build settings from config.yaml with an explicit override dict.

    Used by tests and embedding callers that need isolated, uncached settings.
    """
    base = Settings.from_yaml(env=env).model_dump()
    return Settings(**_deep_merge(base, overrides or {}))


@lru_cache(maxsize=4)
def get_settings(env: str | None = None) -> Settings:
    """Get cached settings instance."""
    resolved_env = env or os.getenv("BOT_ENV", "development")
    return Settings.from_yaml(env=resolved_env)
