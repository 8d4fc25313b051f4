"""Configuration: pydantic settings loaded from config.yaml and BOT_* env vars."""

from trading_bot.config.settings import Settings, get_settings, load_settings

__all__ = ["Settings", "get_settings", "load_settings"]
