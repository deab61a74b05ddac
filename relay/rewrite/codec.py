"""
Content-Encoding handling for buffered upstream bodies.

Bodies are decoded once so the rewriter can work on plain bytes and then
re-encoded with the very same algorithm, keeping the Content-Encoding header
that is sent to the client truthful.
"""

import gzip
import logging
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import brotli

logger = logging.getLogger("uvicorn.error")


class ContentEncoding(Enum):
    """Encodings the relay can reverse and re-apply."""

    IDENTITY = "identity"
    GZIP = "gzip"
    DEFLATE = "deflate"
    BROTLI = "br"


class DecodeFailure(Exception):
    """Raised when a compressed body cannot be decompressed."""

    def __init__(self, encoding: ContentEncoding, cause: Exception):
        super().__init__(f"Failed to decode {encoding.value} body: {cause}")
        self.encoding = encoding
        self.cause = cause


@dataclass(frozen=True)
class DecodedPayload:
    """Decoded body bytes plus the encoding they originally arrived in."""

    encoding: ContentEncoding
    data: bytes


def parse_content_encoding(header_value: Optional[str]) -> Optional[ContentEncoding]:
    """
    Map a Content-Encoding header to a ContentEncoding.

    Returns IDENTITY when the header is absent and None when the encoding is
    one the relay cannot reverse (zstd, stacked encodings, ...).
    """
    value = (header_value or "").strip().lower()
    if not value:
        return ContentEncoding.IDENTITY
    if value == "x-gzip":
        return ContentEncoding.GZIP
    for encoding in ContentEncoding:
        if encoding.value == value:
            return encoding
    return None


def _inflate(data: bytes) -> bytes:
    # "deflate" is meant to be zlib-wrapped, but plenty of servers send raw streams
    try:
        return zlib.decompress(data)
    except zlib.error:
        return zlib.decompress(data, -zlib.MAX_WBITS)


def decode_body(raw: bytes, encoding: ContentEncoding) -> DecodedPayload:
    """Decompress ``raw`` according to ``encoding``. Raises DecodeFailure."""
    if encoding is ContentEncoding.IDENTITY or not raw:
        return DecodedPayload(encoding=encoding, data=raw)
    try:
        if encoding is ContentEncoding.GZIP:
            data = gzip.decompress(raw)
        elif encoding is ContentEncoding.DEFLATE:
            data = _inflate(raw)
        else:
            data = brotli.decompress(raw)
    except (OSError, EOFError, zlib.error, brotli.error) as e:
        raise DecodeFailure(encoding, e) from e
    return DecodedPayload(encoding=encoding, data=data)


def encode_body(payload: DecodedPayload) -> bytes:
    """Re-apply the payload's original encoding."""
    if payload.encoding is ContentEncoding.IDENTITY:
        return payload.data
    if payload.encoding is ContentEncoding.GZIP:
        return gzip.compress(payload.data)
    if payload.encoding is ContentEncoding.DEFLATE:
        return zlib.compress(payload.data)
    return brotli.compress(payload.data)
