"""Conversions between data URIs, files and :class:`AssetBlob` values."""

from __future__ import annotations

import base64
import binascii
import mimetypes
from pathlib import Path

from imagine_loop.adapters.common import AssetBlob


def decode_data_uri(uri: str) -> AssetBlob:
    if not uri.startswith("data:") or "," not in uri:
        raise ValueError("expected a data: URI")
    header, payload = uri[5:].split(",", 1)
    parts = header.split(";")
    mime_type = parts[0] or "application/octet-stream"
    try:
        if "base64" in parts[1:]:
            data = base64.b64decode(payload, validate=True)
        else:
            data = payload.encode("utf-8")
    except binascii.Error as exc:
        raise ValueError(f"invalid base64 payload in data URI: {exc}") from exc
    return AssetBlob(data=data, mime_type=mime_type)


def encode_data_uri(blob: AssetBlob) -> str:
    return f"data:{blob.mime_type};base64,{base64.b64encode(blob.data).decode('ascii')}"


def load_image(source: str) -> AssetBlob:
    """Accept either a data URI or a filesystem path."""

    if source.startswith("data:"):
        return decode_data_uri(source)
    path = Path(source).expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"initial image not found: {path}")
    mime, _ = mimetypes.guess_type(str(path))
    return AssetBlob(data=path.read_bytes(), mime_type=mime or "application/octet-stream", source_ref=str(path))


__all__ = ["decode_data_uri", "encode_data_uri", "load_image"]
