"""
Source platform adapters

Each adapter handles platform-specific communication:
- Telegram: Long-poll getUpdates
- Discord: Gateway
"""

from .base import IMAdapter, MetadataProvider
from .telegram import TelegramAdapter
from .discord import DiscordAdapter

__all__ = ["IMAdapter", "MetadataProvider", "TelegramAdapter", "DiscordAdapter", "create_adapter"]


def create_adapter(adapter_id: str, platform: str, token: str) -> IMAdapter:
    p = str(platform or "").strip().lower()
    if p == "telegram":
        return TelegramAdapter(adapter_id, token=token)
    if p == "discord":
        return DiscordAdapter(adapter_id, token=token)
    raise ValueError(f"unsupported platform: {platform}")
