"""
Base classes for source chat-platform adapters.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from ....contracts.v1 import ChannelMetadata, InboundEvent, UserMetadata
from ....kernel.media import MediaBlob, fetch_url


class IMAdapter(ABC):
    """
    Abstract base class for source platform adapters.

    Each adapter handles:
    - Connecting to the platform
    - Receiving messages (inbound), normalized to InboundEvent
    - Sending messages (outbound)
    - Downloading media it referenced in inbound events
    """

    platform: str = "unknown"

    def __init__(self, adapter_id: str):
        self.adapter_id = adapter_id
        self.self_id = ""  # the platform's id for our own bot, set by connect()

    @abstractmethod
    def connect(self) -> bool:
        """
        Initialize connection to the platform.
        Returns True if successful.
        """

    @abstractmethod
    def disconnect(self) -> None:
        """Disconnect from the platform."""

    @abstractmethod
    def poll(self) -> List[InboundEvent]:
        """Return messages received since the last call (may block briefly)."""

    @abstractmethod
    def send_message(self, channel_id: str, content: str, guild_id: str = "") -> str:
        """
        Send a text message to a channel.
        Returns the platform message id, or "" on failure.
        """

    def download(self, ref: str) -> MediaBlob:
        """Fetch media referenced by an inbound event or metadata lookup.

        Default: `ref` is a plain URL.
        """
        return fetch_url(ref)

    def summarize(self, text: str, max_chars: int, max_lines: int) -> str:
        """
        Fit text for IM display.

        - Normalize newlines
        - Collapse multiple blank lines
        - Limit lines and characters
        """
        if not text:
            return ""

        t = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", "  ")
        lines = [ln.rstrip() for ln in t.split("\n")]

        while lines and not lines[0].strip():
            lines.pop(0)
        while lines and not lines[-1].strip():
            lines.pop()

        kept = []
        empty_count = 0
        for ln in lines:
            if not ln.strip():
                empty_count += 1
                if empty_count <= 1:
                    kept.append("")
            else:
                empty_count = 0
                kept.append(ln)

        out = "\n".join(kept[:max_lines]).strip()
        if len(out) > max_chars:
            out = out[: max(0, max_chars - 1)] + "…"
        return out


class MetadataProvider(ABC):
    """
    Optional capability: channel and user metadata lookups.

    Adapters that do not implement it are treated as having no names or
    avatars to offer; the bridge then falls back to raw ids.
    """

    @abstractmethod
    def get_channel_metadata(self, channel_id: str, guild_id: str = "") -> ChannelMetadata:
        """Name and avatar reference of a channel (fields may be None)."""

    @abstractmethod
    def get_user_metadata(self, user_id: str, guild_id: str = "") -> UserMetadata:
        """Nickname and avatar reference of a user (fields may be None)."""
