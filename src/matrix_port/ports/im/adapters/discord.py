"""
Discord adapter.

Uses discord.py with a Gateway connection for both inbound and outbound.
The client's event loop runs in a background thread; bridge threads reach it
through run_coroutine_threadsafe.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Awaitable, List, Optional, TypeVar

from ....contracts.v1 import ChannelMetadata, Element, InboundEvent, UserMetadata
from .base import IMAdapter, MetadataProvider

logger = logging.getLogger("matrix_port.discord")

DISCORD_MAX_MESSAGE_LENGTH = 2000
DEFAULT_MAX_LINES = 64
CALL_TIMEOUT = 15

T = TypeVar("T")


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DiscordAdapter(IMAdapter, MetadataProvider):
    """
    Discord adapter using the discord.py Gateway.

    Every non-bot message in a text channel the bot can read is an inbound
    event; there is no mention requirement because each channel maps to its
    own room.
    """

    platform = "discord"

    def __init__(
        self,
        adapter_id: str,
        token: str,
        max_chars: int = DISCORD_MAX_MESSAGE_LENGTH,
        max_lines: int = DEFAULT_MAX_LINES,
    ):
        super().__init__(adapter_id)
        self.token = token
        self.max_chars = max_chars
        self.max_lines = max_lines

        self._connected = False
        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._queue: List[InboundEvent] = []
        self._queue_lock = threading.Lock()
        self._ready_event = threading.Event()

    def connect(self) -> bool:
        """
        Initialize the Discord client and start its event loop in a background thread.
        """
        import discord

        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        self._client = discord.Client(intents=intents)

        @self._client.event
        async def on_ready():
            self.self_id = str(self._client.user.id)
            logger.info("connected as %s", self._client.user, extra={"adapter_id": self.adapter_id})
            self._ready_event.set()

        @self._client.event
        async def on_message(message):
            self._handle_message(message)

        def run_loop():
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            try:
                self._loop.run_until_complete(self._client.start(self.token))
            except Exception:
                logger.exception("discord client stopped", extra={"adapter_id": self.adapter_id})
            finally:
                self._loop.close()

        self._thread = threading.Thread(target=run_loop, name=f"discord-{self.adapter_id}", daemon=True)
        self._thread.start()

        if self._ready_event.wait(timeout=30):
            self._connected = True
            return True
        logger.error("discord connection timeout", extra={"adapter_id": self.adapter_id})
        return False

    def _handle_message(self, message: Any) -> None:
        author = message.author
        if getattr(author, "bot", False) or (self._client.user and author.id == self._client.user.id):
            return

        elements: List[Element] = []
        if message.content:
            elements.append(Element(type="text", text=message.content))
        for att in getattr(message, "attachments", None) or []:
            mime = str(getattr(att, "content_type", "") or "")
            elements.append(Element(
                type="image" if mime.startswith("image/") else "file",
                ref=str(att.url),
                name=str(att.filename),
                mime_type=mime,
            ))
        if not elements:
            return

        guild = getattr(message, "guild", None)
        avatar = getattr(author, "display_avatar", None)
        event = InboundEvent(
            origin_bot_id=self.self_id,
            adapter_id=self.adapter_id,
            channel_id=str(message.channel.id),
            guild_id=str(guild.id) if guild else "",
            user_id=str(author.id),
            author_nickname=str(getattr(author, "display_name", "") or author.name or ""),
            author_avatar_ref=str(avatar.url) if avatar else "",
            message_id=str(message.id),
            elements=elements,
        )
        with self._queue_lock:
            self._queue.append(event)

    def disconnect(self) -> None:
        if self._client and self._loop and not self._loop.is_closed():
            try:
                future = asyncio.run_coroutine_threadsafe(self._client.close(), self._loop)
                future.result(timeout=5)
            except Exception:
                logger.warning("discord close failed", exc_info=True, extra={"adapter_id": self.adapter_id})
        self._connected = False

    def poll(self) -> List[InboundEvent]:
        """Return events queued by the gateway handler."""
        if not self._connected:
            return []
        with self._queue_lock:
            events = list(self._queue)
            self._queue.clear()
        return events

    def _call(self, coro: Awaitable[T]) -> T:
        """Run a coroutine on the client loop and wait for it."""
        if not self._loop:
            raise RuntimeError("discord adapter is not connected")
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout=CALL_TIMEOUT)

    def send_message(self, channel_id: str, content: str, guild_id: str = "") -> str:
        _ = guild_id
        if not self._connected or not content:
            return ""
        safe_text = self.summarize(content, self.max_chars, self.max_lines)

        async def do_send() -> str:
            cid = _to_int(channel_id)
            channel = self._client.get_channel(cid) if cid is not None else None
            if channel is None and cid is not None:
                channel = await self._client.fetch_channel(cid)
            if channel is None:
                return ""
            sent = await channel.send(safe_text)
            return str(sent.id)

        try:
            return self._call(do_send())
        except Exception:
            logger.exception("send to %s failed", channel_id, extra={"adapter_id": self.adapter_id, "channel_id": channel_id})
            return ""

    def get_channel_metadata(self, channel_id: str, guild_id: str = "") -> ChannelMetadata:
        cid = _to_int(channel_id)
        channel = self._client.get_channel(cid) if self._client and cid is not None else None
        if channel is None:
            return ChannelMetadata()
        guild = getattr(channel, "guild", None)
        icon = getattr(guild, "icon", None) if guild else None
        return ChannelMetadata(
            name=getattr(channel, "name", None),
            avatar_ref=str(icon.url) if icon else None,
        )

    def get_user_metadata(self, user_id: str, guild_id: str = "") -> UserMetadata:
        uid = _to_int(user_id)
        if not self._client or uid is None:
            return UserMetadata()
        gid = _to_int(guild_id)
        guild = self._client.get_guild(gid) if gid is not None else None
        user = guild.get_member(uid) if guild else None
        if user is None:
            user = self._client.get_user(uid)
        if user is None:
            try:
                user = self._call(self._client.fetch_user(uid))
            except Exception:
                logger.warning("fetch_user %s failed", user_id, exc_info=True, extra={"adapter_id": self.adapter_id})
                return UserMetadata()
        avatar = getattr(user, "display_avatar", None)
        return UserMetadata(
            nickname=getattr(user, "display_name", None) or getattr(user, "name", None),
            avatar_ref=str(avatar.url) if avatar else None,
        )
