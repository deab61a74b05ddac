import logging
from typing import Optional
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from opentelemetry import trace
from prometheus_client import Counter

from relay.fetch_gateway.cache import ResponseCacheBase, is_cacheable
from relay.models import CacheEntry
from relay.origin_proxy.interceptor import ClientDisconnected, run_until_disconnect
from relay.rewrite.assembler import build_response, filter_headers
from relay.utils import redact_url
from relay.utils.traced_requests import traced_request
from relay.vars import ALLOWED_HOSTS, DEFAULT_USER_AGENT, FETCH_PATH, PROXY_TIMEOUT

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

fetch_cache_lookups = Counter(
    "relay_fetch_cache_lookups_total",
    "Fetch gateway cache lookups",
    ["result"],
)

# Cookies from unrelated hosts must never reach the client through /fetch.
# The body arrives already decompressed by httpx, so its encoding goes too.
FETCH_DROPPED_HEADERS = {"set-cookie", "content-encoding"}

CACHE_STATUS_HEADER = "x-relay-cache"


def get_fetch_cache(request: Request) -> ResponseCacheBase:
    return request.app.state.fetch_cache


def build_fetch_client() -> httpx.AsyncClient:
    # Redirects are not followed: they could lead off the allow-list
    return httpx.AsyncClient(
        timeout=httpx.Timeout(PROXY_TIMEOUT), follow_redirects=False
    )


def is_allowed_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
        hostname = (parsed.hostname or "").lower()
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and hostname in ALLOWED_HOSTS


def _entry_response(entry: CacheEntry, cache_status: str) -> Response:
    return build_response(
        entry.status_code,
        list(entry.headers) + [(CACHE_STATUS_HEADER, cache_status)],
        entry.body,
    )


@router.get(FETCH_PATH)
async def fetch_resource(
    request: Request,
    url: Optional[str] = Query(
        None, description="URL-encoded absolute URL on an allow-listed host"
    ),
    cache: ResponseCacheBase = Depends(get_fetch_cache),
):
    """Fetch a single asset from an allow-listed host."""
    if not url:
        raise HTTPException(status_code=400, detail="Missing url parameter")

    if not is_allowed_url(url):
        logger.warning(f"[Fetch] Rejected non-allow-listed url {redact_url(url)}")
        raise HTTPException(status_code=403, detail="Host not allowed")

    with traced_request(
        tracer,
        operation="fetch_request",
        target_url=url,
        start_message=f"[Fetch] GET {redact_url(url)}",
    ) as span:
        entry = cache.get(url)
        if entry is not None:
            fetch_cache_lookups.labels(result="hit").inc()
            span.set_attribute("fetch.cache", "hit")
            return _entry_response(entry, "hit")
        fetch_cache_lookups.labels(result="miss").inc()
        span.set_attribute("fetch.cache", "miss")

        headers = {"user-agent": request.headers.get("user-agent") or DEFAULT_USER_AGENT}
        try:
            async with build_fetch_client() as client:
                upstream = await run_until_disconnect(
                    request, client.get(url, headers=headers)
                )

        except ClientDisconnected:
            logger.info(f"[Fetch] Client disconnected, cancelled {redact_url(url)}")
            span.set_attribute("fetch.error", "client_disconnected")
            return Response(status_code=499)

        except httpx.TimeoutException as e:
            logger.error(f"[Fetch] Timeout for {redact_url(url)}: {e}")
            span.set_attribute("fetch.error", "timeout")
            raise HTTPException(status_code=504, detail="Gateway timeout")

        except httpx.HTTPError as e:
            logger.error(f"[Fetch] Upstream error for {redact_url(url)}: {e}")
            span.set_attribute("fetch.error", "upstream_failed")
            raise HTTPException(status_code=502, detail="Bad gateway")

        span.set_attribute("fetch.status_code", upstream.status_code)
        response_headers = filter_headers(
            upstream.headers.multi_items(), drop=FETCH_DROPPED_HEADERS
        )
        if is_cacheable(upstream.status_code, response_headers):
            entry = cache.store(
                url, upstream.status_code, response_headers, upstream.content
            )
            return _entry_response(entry, "miss")

        return build_response(
            upstream.status_code,
            response_headers + [(CACHE_STATUS_HEADER, "miss")],
            upstream.content,
        )
