from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


DEFAULT_UPDATE_TIME_MS = 86_400_000

SourcePlatform = Literal["telegram", "discord"]


class MatrixBotConfig(BaseModel):
    """A Matrix bot the bridge may act as (application-service token)."""

    id: str
    host: str = ""
    endpoint: str = ""  # default: https://<host>
    token: str = ""
    token_env: str = ""

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _require_location(self) -> "MatrixBotConfig":
        if not self.host and not self.endpoint:
            raise ValueError(f"matrix bot {self.id!r}: set host or endpoint")
        return self

    @property
    def base_url(self) -> str:
        return (self.endpoint or f"https://{self.host}").rstrip("/")


class SourceConfig(BaseModel):
    id: str
    platform: SourcePlatform
    token: str = ""
    token_env: str = ""

    model_config = ConfigDict(extra="forbid")


class PortConfig(BaseModel):
    space: str = Field(description="Rooms created by the bridge are attached to this space")
    user: str = Field(description="Matrix user invited to every room with power level 100")
    prefix: str = Field(description="Localpart prefix for puppet accounts")
    bot: str = Field(default="", description="Matrix bot id; the first entry of `matrix` when empty")
    update_time: int = Field(default=DEFAULT_UPDATE_TIME_MS, ge=0, description="Metadata refresh interval (ms)")
    matrix: List[MatrixBotConfig] = Field(default_factory=list)
    sources: List[SourceConfig] = Field(default_factory=list)
    log_level: str = "INFO"
    workers: int = Field(default=8, ge=1)

    model_config = ConfigDict(extra="forbid")

    @field_validator("space", "user", "prefix")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        s = str(v or "").strip()
        if not s:
            raise ValueError("must not be empty")
        return s

    @field_validator("space")
    @classmethod
    def _room_id(cls, v: str) -> str:
        if not v.startswith("!"):
            raise ValueError("space must be a room id (!room:server)")
        return v

    @field_validator("user")
    @classmethod
    def _user_id(cls, v: str) -> str:
        if not v.startswith("@") or ":" not in v:
            raise ValueError("user must be a Matrix user id (@name:server)")
        return v

    @field_validator("prefix")
    @classmethod
    def _localpart(cls, v: str) -> str:
        if v != v.lower():
            raise ValueError("prefix must be lowercase (Matrix localparts are lowercase)")
        return v

    @model_validator(mode="after")
    def _bots_and_sources(self) -> "PortConfig":
        if not self.matrix:
            raise ValueError("at least one matrix bot is required")
        if not self.sources:
            raise ValueError("at least one source is required")
        if self.bot and self.bot not in {b.id for b in self.matrix}:
            raise ValueError(f"bot {self.bot!r} is not one of the configured matrix bots")
        ids = [s.id for s in self.sources]
        if len(set(ids)) != len(ids):
            raise ValueError("source ids must be unique")
        return self

    def selected_bot(self) -> MatrixBotConfig:
        if self.bot:
            return next(b for b in self.matrix if b.id == self.bot)
        return self.matrix[0]

    def source(self, source_id: str) -> Optional[SourceConfig]:
        return next((s for s in self.sources if s.id == source_id), None)
