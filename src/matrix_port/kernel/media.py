from __future__ import annotations

import io
import mimetypes
from dataclasses import dataclass
from typing import Any, Dict

import requests
from PIL import Image, UnidentifiedImageError

FETCH_TIMEOUT = 30


@dataclass
class MediaBlob:
    data: bytes
    mime_type: str
    filename: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


def fetch_url(url: str, *, timeout: int = FETCH_TIMEOUT) -> MediaBlob:
    """Download `url`; raises requests.HTTPError on a non-2xx answer."""
    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    mime = str(resp.headers.get("Content-Type") or "").split(";", 1)[0].strip()
    name = url.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    if not mime:
        mime = mimetypes.guess_type(name)[0] or "application/octet-stream"
    return MediaBlob(data=resp.content, mime_type=mime, filename=name)


def image_info(blob: MediaBlob) -> Dict[str, Any]:
    """Matrix `info` block (w, h, size, mimetype) for an image.

    Falls back to size/mimetype only when Pillow cannot read the bytes or
    refuses them as a decompression bomb.
    """
    info: Dict[str, Any] = {"size": blob.size, "mimetype": blob.mime_type}
    try:
        with Image.open(io.BytesIO(blob.data)) as img:
            info["w"], info["h"] = int(img.width), int(img.height)
            fmt_mime = Image.MIME.get(img.format or "", "")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError):
        return info
    if fmt_mime:
        info["mimetype"] = fmt_mime
    return info
