"""
Matrix client-server API client.

A thin, synchronous wrapper over the endpoints the bridge needs. One instance
acts as one account: the bridge identity (application-service token) or a
puppet (its own access token, via `as_user`).
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger("matrix_port.matrix")

CLIENT_PREFIX = "/_matrix/client/v3"
MEDIA_PREFIX = "/_matrix/media/v3"
DEFAULT_TIMEOUT = 30


class MatrixError(RuntimeError):
    """A Matrix request failed (transport error or non-2xx response)."""

    def __init__(self, message: str, *, status: int = 0, errcode: str = ""):
        super().__init__(message)
        self.status = status
        self.errcode = errcode


def _q(value: str) -> str:
    return quote(str(value), safe="")


def parse_mxc(mxc: str) -> tuple[str, str]:
    """Split mxc://server/media_id into (server, media_id)."""
    s = str(mxc or "")
    if not s.startswith("mxc://"):
        raise ValueError(f"not an mxc uri: {mxc!r}")
    server, _, media_id = s[len("mxc://"):].partition("/")
    if not server or not media_id:
        raise ValueError(f"malformed mxc uri: {mxc!r}")
    return server, media_id


class MatrixClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        user_id: str = "",
        session: Optional[requests.Session] = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.user_id = user_id
        self.timeout = timeout
        self._session = session or requests.Session()

    def as_user(self, token: str, user_id: str = "") -> "MatrixClient":
        """A client for another account on the same homeserver (shares the HTTP session)."""
        return MatrixClient(self.base_url, token, user_id=user_id, session=self._session, timeout=self.timeout)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        raw: bool = False,
    ) -> Any:
        url = self.base_url + path
        hdrs = {"Authorization": f"Bearer {self.token}"}
        if headers:
            hdrs.update(headers)
        try:
            resp = self._session.request(
                method,
                url,
                json=json_body,
                params=params,
                data=data,
                headers=hdrs,
                timeout=timeout or self.timeout,
            )
        except requests.RequestException as e:
            raise MatrixError(f"{method} {path}: {e}") from e

        if resp.status_code >= 400:
            errcode = ""
            message = resp.text[:300]
            try:
                body = resp.json()
                errcode = str(body.get("errcode") or "")
                message = str(body.get("error") or message)
            except ValueError:
                pass
            logger.debug("%s %s -> %s %s", method, path, resp.status_code, errcode, extra={"user_id": self.user_id})
            raise MatrixError(
                f"{method} {path}: HTTP {resp.status_code} {errcode} {message}".strip(),
                status=resp.status_code,
                errcode=errcode,
            )
        if raw:
            return resp
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise MatrixError(f"{method} {path}: invalid JSON response") from e

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    def whoami(self) -> str:
        body = self._request("GET", f"{CLIENT_PREFIX}/account/whoami")
        user_id = str(body.get("user_id") or "")
        if not user_id:
            raise MatrixError("whoami: response without user_id")
        self.user_id = user_id
        return user_id

    def register_identity(self, localpart: str) -> Dict[str, str]:
        """Register `localpart` through the application-service flow.

        Must be called with the application-service token. Returns
        {"user_id", "access_token"}.
        """
        body = self._request(
            "POST",
            f"{CLIENT_PREFIX}/register",
            json_body={"type": "m.login.application_service", "username": localpart},
        )
        user_id = str(body.get("user_id") or "")
        token = str(body.get("access_token") or "")
        if not user_id or not token:
            raise MatrixError(f"register {localpart}: response without user_id/access_token")
        return {"user_id": user_id, "access_token": token}

    def set_display_name(self, name: str) -> None:
        self._request(
            "PUT",
            f"{CLIENT_PREFIX}/profile/{_q(self.user_id)}/displayname",
            json_body={"displayname": name},
        )

    def set_avatar_url(self, mxc: str) -> None:
        self._request(
            "PUT",
            f"{CLIENT_PREFIX}/profile/{_q(self.user_id)}/avatar_url",
            json_body={"avatar_url": mxc},
        )

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    def create_room(self, body: Dict[str, Any]) -> str:
        resp = self._request("POST", f"{CLIENT_PREFIX}/createRoom", json_body=body)
        room_id = str(resp.get("room_id") or "")
        if not room_id:
            raise MatrixError("createRoom: response without room_id")
        return room_id

    def get_room_state(self, room_id: str) -> List[Dict[str, Any]]:
        resp = self._request("GET", f"{CLIENT_PREFIX}/rooms/{_q(room_id)}/state")
        return resp if isinstance(resp, list) else []

    def set_room_state(self, room_id: str, event_type: str, content: Dict[str, Any], state_key: str = "") -> str:
        resp = self._request(
            "PUT",
            f"{CLIENT_PREFIX}/rooms/{_q(room_id)}/state/{_q(event_type)}/{_q(state_key)}",
            json_body=content,
        )
        return str(resp.get("event_id") or "")

    def invite(self, room_id: str, user_id: str) -> None:
        self._request("POST", f"{CLIENT_PREFIX}/rooms/{_q(room_id)}/invite", json_body={"user_id": user_id})

    def join_room(self, room_id: str) -> str:
        resp = self._request("POST", f"{CLIENT_PREFIX}/join/{_q(room_id)}", json_body={})
        return str(resp.get("room_id") or room_id)

    def joined_rooms(self) -> List[str]:
        resp = self._request("GET", f"{CLIENT_PREFIX}/joined_rooms")
        rooms = resp.get("joined_rooms")
        return [str(r) for r in rooms] if isinstance(rooms, list) else []

    def send_message(self, room_id: str, content: Dict[str, Any]) -> str:
        txn_id = uuid.uuid4().hex
        resp = self._request(
            "PUT",
            f"{CLIENT_PREFIX}/rooms/{_q(room_id)}/send/m.room.message/{txn_id}",
            json_body=content,
        )
        return str(resp.get("event_id") or "")

    def sync(self, since: str = "", timeout_ms: int = 25000) -> Dict[str, Any]:
        params: Dict[str, Any] = {"timeout": int(timeout_ms)}
        if since:
            params["since"] = since
        return self._request(
            "GET",
            f"{CLIENT_PREFIX}/sync",
            params=params,
            timeout=self.timeout + timeout_ms / 1000.0,
        )

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    def upload_media(self, data: bytes, mime_type: str, filename: str = "") -> str:
        params = {"filename": filename} if filename else None
        resp = self._request(
            "POST",
            f"{MEDIA_PREFIX}/upload",
            params=params,
            data=data,
            headers={"Content-Type": mime_type or "application/octet-stream"},
        )
        uri = str(resp.get("content_uri") or "")
        if not uri:
            raise MatrixError("upload: response without content_uri")
        return uri

    def media_http_url(self, mxc: str) -> str:
        server, media_id = parse_mxc(mxc)
        return f"{self.base_url}{MEDIA_PREFIX}/download/{_q(server)}/{_q(media_id)}"

    def download_media(self, mxc: str) -> bytes:
        server, media_id = parse_mxc(mxc)
        resp = self._request("GET", f"{MEDIA_PREFIX}/download/{_q(server)}/{_q(media_id)}", raw=True)
        return resp.content
