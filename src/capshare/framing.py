"""Metadata framing for file payloads.

The original file name, MIME type and size travel with the bytes so they
survive encryption and storage:

    [4-byte little-endian header length][UTF-8 JSON header][raw file bytes]
"""

from __future__ import annotations

import json
import mimetypes
import struct
from dataclasses import dataclass
from typing import Any

from .errors import MalformedEnvelope

LENGTH_PREFIX = struct.Struct("<I")
MAX_HEADER_LENGTH = 0xFFFFFFFF
DEFAULT_MIME_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class FileHeader:
    """Metadata carried in front of the file bytes."""

    name: str
    type: str
    size: int

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "size": self.size}

    @classmethod
    def from_dict(cls, data: Any) -> FileHeader:
        """Validate a decoded header.

        Raises:
            MalformedEnvelope: If the value is not a header-shaped object
        """
        if not isinstance(data, dict):
            raise MalformedEnvelope("Header is not a JSON object")

        name = data.get("name")
        mime_type = data.get("type")
        size = data.get("size")

        if not isinstance(name, str):
            raise MalformedEnvelope("Header field 'name' must be a string")
        if not isinstance(mime_type, str):
            raise MalformedEnvelope("Header field 'type' must be a string")
        # bool is an int subclass
        if not isinstance(size, int) or isinstance(size, bool) or size < 0:
            raise MalformedEnvelope("Header field 'size' must be a non-negative integer")

        return cls(name=name, type=mime_type, size=size)

    @classmethod
    def for_file(cls, name: str, data: bytes, mime_type: str | None = None) -> FileHeader:
        """Build the header for a file, guessing the MIME type from its name."""
        if mime_type is None:
            mime_type = mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
        return cls(name=name, type=mime_type, size=len(data))


def frame(data: bytes, header: FileHeader) -> bytes:
    """Prefix file bytes with their length-delimited JSON header."""
    header_bytes = json.dumps(
        header.to_dict(), separators=(",", ":"), ensure_ascii=False
    ).encode("utf-8")
    if len(header_bytes) > MAX_HEADER_LENGTH:
        raise ValueError(f"Header too large to frame ({len(header_bytes)} bytes)")
    return LENGTH_PREFIX.pack(len(header_bytes)) + header_bytes + bytes(data)


def unframe(buffer: bytes) -> tuple[FileHeader, bytes]:
    """Split a framed payload back into header and file bytes.

    Raises:
        MalformedEnvelope: If the buffer is truncated or the header is invalid
    """
    if len(buffer) < LENGTH_PREFIX.size:
        raise MalformedEnvelope(f"Envelope too short ({len(buffer)} bytes)")

    (header_length,) = LENGTH_PREFIX.unpack_from(buffer, 0)
    start = LENGTH_PREFIX.size
    end = start + header_length
    if end > len(buffer):
        raise MalformedEnvelope(
            f"Declared header length {header_length} exceeds remaining "
            f"{len(buffer) - start} bytes"
        )

    try:
        decoded = json.loads(bytes(buffer[start:end]).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEnvelope(f"Header is not valid JSON: {e}") from e

    header = FileHeader.from_dict(decoded)
    return header, bytes(buffer[end:])
