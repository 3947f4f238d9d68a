"""
Telegram Bot API adapter.

- _api(): API call wrapper with JSON encoding, timeout, error handling
- poll(): Long-poll getUpdates
- Media references are "tg:<file_id>" and resolve through getFile
"""

from __future__ import annotations

import json
import logging
import mimetypes
import time
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional

from ....contracts.v1 import ChannelMetadata, Element, InboundEvent, UserMetadata
from ....kernel.media import MediaBlob
from .base import IMAdapter, MetadataProvider

logger = logging.getLogger("matrix_port.telegram")

TELEGRAM_MAX_MESSAGE_LENGTH = 4096
DEFAULT_MAX_LINES = 256
FILE_REF_PREFIX = "tg:"


class TelegramAdapter(IMAdapter, MetadataProvider):
    """
    Telegram Bot API adapter using long-poll getUpdates.
    """

    platform = "telegram"

    def __init__(
        self,
        adapter_id: str,
        token: str,
        max_chars: int = TELEGRAM_MAX_MESSAGE_LENGTH,
        max_lines: int = DEFAULT_MAX_LINES,
    ):
        super().__init__(adapter_id)
        self.token = token
        self.max_chars = max_chars
        self.max_lines = max_lines

        self._offset = 0
        self._connected = False

    def _api(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: int = 35,
    ) -> Dict[str, Any]:
        """
        Call Telegram Bot API.

        Uses JSON body for consistent encoding (handles non-ASCII text).
        Never raises; failures come back as {"ok": False, "error": ...}.
        """
        url = f"https://api.telegram.org/bot{self.token}/{method}"
        data = json.dumps(params or {}, ensure_ascii=False).encode("utf-8")

        req = urllib.request.Request(url, data=data, method="POST")
        req.add_header("Content-Type", "application/json; charset=utf-8")
        req.add_header("Accept", "application/json")

        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                body = resp.read().decode("utf-8", errors="replace")
                return json.loads(body)
        except urllib.error.HTTPError as e:
            err_text = ""
            try:
                err_text = e.read().decode("utf-8", "ignore")[:300]
            except Exception:
                pass
            logger.warning("api %s: HTTP %s - %s", method, e.code, err_text, extra={"adapter_id": self.adapter_id})
            return {"ok": False, "error": str(e), "http_status": e.code}
        except Exception as e:
            logger.warning("api %s: %s", method, e, extra={"adapter_id": self.adapter_id})
            return {"ok": False, "error": str(e)}

    def connect(self) -> bool:
        """Verify token and get bot info."""
        resp = self._api("getMe", timeout=10)
        if not resp.get("ok"):
            logger.error("connect failed: %s", resp.get("error", "unknown error"), extra={"adapter_id": self.adapter_id})
            return False
        info = resp.get("result") or {}
        self.self_id = str(info.get("id") or "")
        self._connected = True
        logger.info("connected as @%s", info.get("username", "unknown"), extra={"adapter_id": self.adapter_id})
        return True

    def disconnect(self) -> None:
        """Disconnect (no-op for Telegram, just mark as disconnected)."""
        self._connected = False

    def poll(self) -> List[InboundEvent]:
        """
        Long-poll for new messages using getUpdates.

        Edited messages are not requested; edits are not bridged.
        """
        if not self._connected:
            return []

        resp = self._api(
            "getUpdates",
            {"offset": self._offset, "timeout": 25, "allowed_updates": ["message"]},
            timeout=35,
        )

        events: List[InboundEvent] = []
        if not (resp.get("ok") and isinstance(resp.get("result"), list)):
            return events

        for update in resp["result"]:
            try:
                update_id = int(update.get("update_id", 0))
                self._offset = max(self._offset, update_id + 1)
                msg = update.get("message")
                if not isinstance(msg, dict):
                    continue
                event = self._to_event(msg)
                if event is not None:
                    events.append(event)
            except Exception as e:
                logger.warning("poll: bad update: %s", e, extra={"adapter_id": self.adapter_id})
        return events

    def _to_event(self, msg: Dict[str, Any]) -> Optional[InboundEvent]:
        sender = msg.get("from") or {}
        if not sender or str(sender.get("id") or "") == self.self_id:
            return None

        elements: List[Element] = []
        text = msg.get("text") or msg.get("caption") or ""
        if isinstance(msg.get("photo"), list) and msg.get("photo"):
            photo = msg["photo"][-1]  # largest size
            elements.append(Element(
                type="image",
                ref=FILE_REF_PREFIX + str(photo.get("file_id") or ""),
                name="photo.jpg",
                mime_type="image/jpeg",
            ))
        elif isinstance(msg.get("document"), dict):
            doc = msg["document"]
            elements.append(Element(
                type="file",
                ref=FILE_REF_PREFIX + str(doc.get("file_id") or ""),
                name=str(doc.get("file_name") or "file"),
                mime_type=str(doc.get("mime_type") or ""),
            ))
        if text:
            elements.append(Element(type="text", text=text))
        if not elements:
            return None

        nickname = " ".join(
            p for p in (str(sender.get("first_name") or ""), str(sender.get("last_name") or "")) if p
        ) or str(sender.get("username") or "")

        return InboundEvent(
            origin_bot_id=self.self_id,
            adapter_id=self.adapter_id,
            channel_id=str((msg.get("chat") or {}).get("id", "")),
            user_id=str(sender.get("id")),
            author_nickname=nickname,
            message_id=str(msg.get("message_id", "")),
            elements=elements,
        )

    def send_message(self, channel_id: str, content: str, guild_id: str = "") -> str:
        """
        Send a message to a chat.

        Handles message length limits and one retry on failure.
        """
        _ = guild_id
        if not content:
            return ""
        safe_text = self.summarize(content, self.max_chars, self.max_lines)
        params: Dict[str, Any] = {"chat_id": channel_id, "text": safe_text, "disable_web_page_preview": True}

        for attempt in range(2):
            resp = self._api("sendMessage", params, timeout=15)
            if resp.get("ok"):
                return str((resp.get("result") or {}).get("message_id", ""))
            if attempt == 0:
                time.sleep(1.0)
        logger.error("send to %s failed: %s", channel_id, resp.get("error", "unknown"), extra={"adapter_id": self.adapter_id})
        return ""

    def download(self, ref: str) -> MediaBlob:
        if not ref.startswith(FILE_REF_PREFIX):
            return super().download(ref)
        file_id = ref[len(FILE_REF_PREFIX):]
        meta = self._api("getFile", {"file_id": file_id}, timeout=15)
        if not meta.get("ok"):
            raise ValueError(f"getFile failed: {meta.get('error')}")
        file_path = str((meta.get("result") or {}).get("file_path") or "").strip()
        if not file_path:
            raise ValueError("missing telegram file_path")

        url = f"https://api.telegram.org/file/bot{self.token}/{file_path}"
        with urllib.request.urlopen(urllib.request.Request(url, method="GET"), timeout=30) as resp:
            data = resp.read()
        name = file_path.rsplit("/", 1)[-1]
        return MediaBlob(data=data, mime_type=mimetypes.guess_type(name)[0] or "application/octet-stream", filename=name)

    def get_channel_metadata(self, channel_id: str, guild_id: str = "") -> ChannelMetadata:
        resp = self._api("getChat", {"chat_id": channel_id}, timeout=10)
        if not resp.get("ok"):
            return ChannelMetadata()
        chat = resp.get("result") or {}
        name = chat.get("title") or " ".join(
            p for p in (chat.get("first_name"), chat.get("last_name")) if p
        )
        photo = chat.get("photo") or {}
        file_id = photo.get("big_file_id") or photo.get("small_file_id")
        return ChannelMetadata(
            name=name or None,
            avatar_ref=(FILE_REF_PREFIX + str(file_id)) if file_id else None,
        )

    def get_user_metadata(self, user_id: str, guild_id: str = "") -> UserMetadata:
        nickname = None
        resp = self._api("getChat", {"chat_id": user_id}, timeout=10)
        if resp.get("ok"):
            chat = resp.get("result") or {}
            nickname = " ".join(p for p in (chat.get("first_name"), chat.get("last_name")) if p) or None

        avatar_ref = None
        photos = self._api("getUserProfilePhotos", {"user_id": user_id, "limit": 1}, timeout=10)
        sets = (photos.get("result") or {}).get("photos") if photos.get("ok") else None
        if isinstance(sets, list) and sets and sets[0]:
            avatar_ref = FILE_REF_PREFIX + str(sets[0][-1].get("file_id") or "")
        return UserMetadata(nickname=nickname, avatar_ref=avatar_ref)
