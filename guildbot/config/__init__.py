"""Configuration primitives for guildbot."""

from .settings import BotSettings, get_settings

__all__ = ["BotSettings", "get_settings"]
