from __future__ import annotations

import base64
import binascii
import hashlib
import re

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,", re.IGNORECASE)


class ImageDecodeError(ValueError):
    pass


def hash_image(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def decode_image_payload(value: str, default_mime_type: str = "image/jpeg") -> tuple[bytes, str]:
    """Decode a base64 image, optionally wrapped in a ``data:`` URI."""
    token = value.strip()
    mime_type = default_mime_type

    match = _DATA_URI_RE.match(token)
    if match is not None:
        mime_type = match.group("mime").lower()
        token = token[match.end() :]

    if not token:
        raise ImageDecodeError("image payload is empty")

    try:
        content = base64.b64decode(token, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError("image payload is not valid base64") from exc

    if not content:
        raise ImageDecodeError("image payload is empty")
    return content, mime_type
