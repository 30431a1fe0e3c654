"""Content transport codec and line accounting.

File content travels to and from the remote API base64-encoded.  The
overlay keeps content as ``str``; conversion goes through UTF-8 with
``surrogateescape`` so bytes that are not valid UTF-8 survive the trip
unchanged and land back in a blob byte-for-byte.

All functions are pure and do no I/O.
"""

from __future__ import annotations

import base64
import binascii
import re

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")
_WHITESPACE_RE = re.compile(rb"\s+")


def encode_content(data: bytes) -> str:
    """Base64-encode raw bytes for the wire."""
    return base64.b64encode(data).decode("ascii")


def decode_content(value: str) -> bytes:
    """Decode a base64 payload back into raw bytes.

    GitHub wraps base64 content at 60 columns, so embedded whitespace is
    dropped before decoding.  Raises ``ValueError`` on malformed input.
    """
    compact = _WHITESPACE_RE.sub(b"", value.encode("ascii"))
    try:
        return base64.b64decode(compact, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 content: {exc}") from exc


def bytes_to_text(data: bytes) -> str:
    return data.decode("utf-8", errors="surrogateescape")


def text_to_bytes(text: str) -> bytes:
    return text.encode("utf-8", errors="surrogateescape")


def count_lines(text: str | None) -> int:
    """Count lines regardless of newline convention.

    ``\\r\\n``, ``\\r`` and ``\\n`` are equivalent separators.  Empty text
    has zero lines; otherwise the count is the number of separated
    segments, so a trailing newline contributes a (blank) final line.
    """
    if not text:
        return 0
    return len(_NEWLINE_RE.split(text))


def line_delta(old: str | None, new: str | None) -> int:
    """Signed line delta: new line count minus old line count."""
    return count_lines(new) - count_lines(old)


def cap_text(text: str | None, limit: int) -> str:
    """Truncate *text* to at most *limit* characters (0 disables the cap)."""
    text = text or ""
    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit]
