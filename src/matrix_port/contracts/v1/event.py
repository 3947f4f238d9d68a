from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ElementKind = Literal["text", "image", "file"]


class Element(BaseModel):
    """One fragment of a message: plain text or a media reference."""

    type: ElementKind = "text"
    text: str = ""
    ref: str = ""  # adapter-specific download reference (URL, file id, mxc://)
    name: str = ""
    mime_type: str = ""

    model_config = ConfigDict(extra="ignore")


class InboundEvent(BaseModel):
    """A message seen by one of the bridge's bots.

    `origin_bot_id` is the id of the bot that received the event: the bridge
    identity for Matrix traffic, a source adapter's own bot id otherwise.
    """

    origin_bot_id: str
    adapter_id: str
    channel_id: str
    guild_id: str = ""
    user_id: str
    author_nickname: str = ""
    author_avatar_ref: str = ""
    message_id: str = ""
    elements: List[Element] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @property
    def text(self) -> str:
        return "".join(el.text for el in self.elements if el.type == "text")


class ChannelMetadata(BaseModel):
    name: Optional[str] = None
    avatar_ref: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class UserMetadata(BaseModel):
    nickname: Optional[str] = None
    avatar_ref: Optional[str] = None

    model_config = ConfigDict(extra="ignore")
