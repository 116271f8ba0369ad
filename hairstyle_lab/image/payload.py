from __future__ import annotations

import base64
import binascii
import io

from PIL import Image, UnidentifiedImageError

from .gemini.interfaces import ImageBlob


def sniff_mime_type(data: bytes) -> str:
    """Return the MIME type Pillow detects for ``data``; raise ValueError otherwise."""

    if not data:
        raise ValueError("empty image payload")
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ValueError(f"payload is not a readable image: {exc}") from exc
    mime = Image.MIME.get(fmt or "")
    if not mime:
        raise ValueError(f"unsupported image format {fmt!r}")
    return mime


def decode_data_url(value: str, *, label: str | None = None) -> ImageBlob:
    """Decode a ``data:<mime>;base64,<payload>`` string into an image blob."""

    header, sep, payload = value.strip().partition(",")
    if not sep or not header.startswith("data:") or not header.endswith(";base64"):
        raise ValueError("expected a base64 data URL")
    try:
        data = base64.b64decode(payload, validate=False)
    except (ValueError, binascii.Error) as exc:
        raise ValueError(f"invalid base64 image payload: {exc}") from exc
    mime = sniff_mime_type(data)
    return ImageBlob(data=data, mime_type=mime, label=label)


def encode_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def is_data_url(value: str) -> bool:
    return value.strip().startswith("data:")


__all__ = ["decode_data_url", "encode_data_url", "is_data_url", "sniff_mime_type"]
