import logging
from typing import Callable, Iterable, List, Optional, Tuple

from fastapi.responses import Response

from relay.rewrite.codec import ContentEncoding

logger = logging.getLogger("uvicorn.error")

HeaderList = List[Tuple[str, str]]

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers that would stop the relayed page from being framed or patched
FRAMING_HEADERS = {
    "content-security-policy",
    "content-security-policy-report-only",
    "x-frame-options",
}


def body_allowed(status_code: int) -> bool:
    return status_code >= 200 and status_code not in (204, 304)


def filter_headers(
    headers: Iterable[Tuple[str, str]],
    drop: Iterable[str] = (),
    rewrite_location: Optional[Callable[[str], str]] = None,
) -> HeaderList:
    """
    Copy upstream headers, leaving out hop-by-hop headers, framing headers,
    Content-Length and anything listed in ``drop``. Repeated headers such as
    Set-Cookie are kept one by one.
    """
    excluded = HOP_BY_HOP_HEADERS | FRAMING_HEADERS | {"content-length"}
    excluded |= {name.lower() for name in drop}

    filtered: HeaderList = []
    for name, value in headers:
        name_lower = name.lower()
        if name_lower in excluded:
            continue
        if name_lower == "location" and rewrite_location is not None:
            value = rewrite_location(value)
        filtered.append((name_lower, value))
    return filtered


def with_content_encoding(
    headers: HeaderList, encoding: Optional[ContentEncoding]
) -> HeaderList:
    """Replace Content-Encoding so it matches the body actually sent."""
    result = [(k, v) for k, v in headers if k != "content-encoding"]
    if encoding is not None and encoding is not ContentEncoding.IDENTITY:
        result.append(("content-encoding", encoding.value))
    return result


def build_response(
    status_code: int,
    headers: HeaderList,
    body: bytes,
    content_length: Optional[int] = None,
) -> Response:
    """
    Assemble the client response. Content-Length is computed from the bytes
    being sent unless ``content_length`` is given, which is only the case for
    HEAD answers that carry no body.
    """
    response = Response(content=body, status_code=status_code)
    # Starlette may have pre-filled these from the body
    for name in ("content-length", "content-type"):
        if name in response.headers:
            del response.headers[name]
    for name, value in headers:
        if name.lower() == "content-length":
            continue
        response.headers.append(name, value)
    if body_allowed(status_code):
        if content_length is None:
            content_length = len(body)
        response.headers["content-length"] = str(content_length)
    return response
