"""
Matrix inbound: /sync long-poll as the bridge identity.

The sync token is kept in a cursor file so a restart resumes where it left
off. On the very first run the current position is recorded and the
backlog is skipped (no history replay).
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from ...contracts.v1 import Element, InboundEvent
from ...util.fs import atomic_write_json, read_json
from .client import MatrixClient

logger = logging.getLogger("matrix_port.matrix.sync")

TEXT_MSGTYPES = ("m.text", "m.notice", "m.emote")
SYNC_TIMEOUT_MS = 25000


def event_elements(content: Dict[str, Any]) -> List[Element]:
    msgtype = str(content.get("msgtype") or "")
    body = str(content.get("body") or "")
    if msgtype in TEXT_MSGTYPES:
        return [Element(type="text", text=body)] if body else []
    url = str(content.get("url") or "")
    if not url:
        return []
    info = content.get("info") if isinstance(content.get("info"), dict) else {}
    return [Element(
        type="image" if msgtype == "m.image" else "file",
        ref=url,
        name=body,
        mime_type=str(info.get("mimetype") or ""),
    )]


class MatrixListener:
    def __init__(self, client: MatrixClient, adapter_id: str, cursor_path: Path):
        self.client = client
        self.adapter_id = adapter_id
        self.cursor_path = cursor_path
        self._since: Optional[str] = None
        self._load_cursor()

    def _load_cursor(self) -> None:
        try:
            self._since = str(read_json(self.cursor_path).get("since") or "") or None
        except ValueError:
            logger.warning("unreadable sync cursor %s, starting fresh", self.cursor_path)
            self._since = None

    def _save_cursor(self) -> None:
        atomic_write_json(self.cursor_path, {"since": self._since or ""})

    def poll(self, timeout_ms: int = SYNC_TIMEOUT_MS) -> List[InboundEvent]:
        if self._since is None:
            body = self.client.sync(timeout_ms=0)
            self._since = str(body.get("next_batch") or "") or None
            if self._since is None:
                logger.warning("initial sync returned no next_batch")
            self._save_cursor()
            return []

        body = self.client.sync(since=self._since, timeout_ms=timeout_ms)
        events = self.parse_sync(body)
        self._since = str(body.get("next_batch") or self._since)
        self._save_cursor()
        return events

    def parse_sync(self, body: Dict[str, Any]) -> List[InboundEvent]:
        joined = ((body.get("rooms") or {}).get("join") or {})
        events: List[InboundEvent] = []
        for room_id, room in joined.items():
            timeline = (room or {}).get("timeline") or {}
            for ev in timeline.get("events") or []:
                if not isinstance(ev, dict) or ev.get("type") != "m.room.message":
                    continue
                content = ev.get("content") if isinstance(ev.get("content"), dict) else {}
                if "m.new_content" in content:
                    continue  # edits are not bridged
                elements = event_elements(content)
                if not elements:
                    continue
                events.append(InboundEvent(
                    origin_bot_id=self.client.user_id,
                    adapter_id=self.adapter_id,
                    channel_id=str(room_id),
                    user_id=str(ev.get("sender") or ""),
                    message_id=str(ev.get("event_id") or ""),
                    elements=elements,
                ))
        return events
