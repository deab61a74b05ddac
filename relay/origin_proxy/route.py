import logging
from typing import Dict, List, Optional
from urllib.parse import urlparse

import httpx
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from opentelemetry import trace

from relay.models import UpstreamResponse
from relay.origin_proxy.interceptor import (
    BodyTooLarge,
    ClientDisconnected,
    fetch_upstream,
    run_until_disconnect,
)
from relay.rewrite.assembler import HOP_BY_HOP_HEADERS, build_response
from relay.rewrite.pipeline import process_upstream_response
from relay.rewrite.rules import RewriteRule, build_rewrite_rules, rewrite_origin_url
from relay.utils.traced_requests import traced_request
from relay.vars import (
    ALLOWED_HOSTS,
    DEFAULT_USER_AGENT,
    FETCH_PATH,
    INJECT_SAFETY_SCRIPT,
    MAX_BODY_BYTES,
    ORIGIN_ALIASES,
    ORIGIN_URL,
    PROXY_PREFIX,
    PROXY_TIMEOUT,
)

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# Only encodings the rewriting pipeline can reverse
UPSTREAM_ACCEPT_ENCODING = "gzip, deflate, br"

# Inbound headers never sent to the origin; identity headers are set explicitly
EXCLUDED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {
    "host",
    "content-length",
    "accept-encoding",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-forwarded-prefix",
    "x-real-ip",
}

# Status code used when the client hung up before we could answer
CLIENT_CLOSED_REQUEST = 499


def build_origin_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(PROXY_TIMEOUT),
        follow_redirects=False,  # Redirects are relayed with a rewritten Location
    )


def origin_hosts() -> List[str]:
    host = (urlparse(ORIGIN_URL).hostname or "").lower()
    return [host] + [alias for alias in ORIGIN_ALIASES if alias != host]


def default_rewrite_rules() -> List[RewriteRule]:
    return build_rewrite_rules(
        origin_hosts(),
        PROXY_PREFIX,
        auxiliary_hosts=ALLOWED_HOSTS,
        fetch_path=FETCH_PATH,
        inject_script=INJECT_SAFETY_SCRIPT,
    )


def get_target_url(request: Request) -> str:
    """
    Construct the origin URL for a request. The prefix is kept: origin paths
    already live under it.
    """
    path = request.url.path
    if not path.startswith("/"):
        path = "/" + path

    query_string = str(request.url.query)
    if query_string:
        path = f"{path}?{query_string}"

    return f"{ORIGIN_URL}{path}"


def prepare_headers(request: Request) -> Dict[str, str]:
    """
    Prepare headers for the origin request. Inbound headers are copied
    (minus hop-by-hop and forwarding headers) and the identity headers are
    overwritten so the origin sees a browser talking to it directly.
    """
    headers = {}
    for name, value in request.headers.items():
        name_lower = name.lower()
        if name_lower not in EXCLUDED_REQUEST_HEADERS:
            headers[name_lower] = value

    headers["user-agent"] = request.headers.get("user-agent") or DEFAULT_USER_AGENT
    headers["referer"] = f"{ORIGIN_URL}/"
    # Host must name the origin, not the relay
    headers["host"] = urlparse(ORIGIN_URL).netloc
    headers["accept-encoding"] = UPSTREAM_ACCEPT_ENCODING
    if "origin" in headers:
        headers["origin"] = ORIGIN_URL

    return headers


def rewrite_location_header(location: str) -> str:
    """Point redirects to the origin back at the proxy prefix."""
    if not location:
        return location
    return rewrite_origin_url(location, origin_hosts(), PROXY_PREFIX)


def head_content_length(request: Request, upstream: UpstreamResponse) -> Optional[int]:
    """A HEAD answer has no body to measure, so the origin's length is kept."""
    if request.method != "HEAD":
        return None
    value = (upstream.header("content-length") or "").strip()
    return int(value) if value.isdigit() else None


async def forward_to_origin(request: Request) -> Response:
    """
    Forward an inbound request to the origin and relay the rewritten answer.

    The origin response is buffered completely before the client sees any of
    it, so upstream failures turn into a clean 502/504 rather than a
    truncated body.
    """
    if not ORIGIN_URL:
        raise HTTPException(
            status_code=503, detail="ORIGIN_URL is not configured. Proxy is unavailable."
        )

    target_url = get_target_url(request)
    with traced_request(
        tracer,
        operation="proxy_request",
        target_url=target_url,
        start_message=f"[Proxy] {request.method} {request.url.path}",
        extra_attrs={"proxy.method": request.method},
    ) as span:
        headers = prepare_headers(request)
        body = await request.body()

        try:
            async with build_origin_client() as client:
                upstream = await run_until_disconnect(
                    request,
                    fetch_upstream(
                        client,
                        request.method,
                        target_url,
                        headers=headers,
                        content=body,
                        max_bytes=MAX_BODY_BYTES,
                    ),
                )

        except ClientDisconnected:
            logger.info(f"Client disconnected, cancelled origin request {target_url}")
            span.set_attribute("proxy.error", "client_disconnected")
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        except httpx.TimeoutException as e:
            logger.error(f"Proxy timeout for {target_url}: {e}")
            span.set_attribute("proxy.error", "timeout")
            raise HTTPException(status_code=504, detail="Gateway timeout")

        except httpx.ConnectError as e:
            logger.error(f"Failed to connect to origin {target_url}: {e}")
            span.set_attribute("proxy.error", "connection_failed")
            raise HTTPException(
                status_code=502, detail="Bad gateway - cannot connect to origin"
            )

        except BodyTooLarge as e:
            logger.error(f"Origin response too large for {target_url}: {e}")
            span.set_attribute("proxy.error", "body_too_large")
            raise HTTPException(status_code=502, detail="Bad gateway - response too large")

        except Exception as e:
            logger.error(f"Proxy error for {target_url}: {e}", exc_info=True)
            span.set_attribute("proxy.error", str(e))
            raise HTTPException(status_code=502, detail=f"Bad gateway: {str(e)}")

        span.set_attribute("proxy.status_code", upstream.status_code)

        result = process_upstream_response(
            upstream, default_rewrite_rules(), rewrite_location_header
        )
        span.set_attribute("proxy.outcome", result.outcome.value)
        logger.debug(
            f"Relaying {target_url}: {result.outcome.value}, "
            f"{len(upstream.raw_body)} -> {len(result.body)} bytes"
        )
        return build_response(
            result.status_code,
            result.headers,
            result.body,
            content_length=head_content_length(request, upstream),
        )


@router.api_route(PROXY_PREFIX, methods=PROXY_METHODS)
async def proxy_prefix_root(request: Request):
    """The prefix itself, e.g. ``/cookieclicker``."""
    return await forward_to_origin(request)


@router.api_route(PROXY_PREFIX + "/{path:path}", methods=PROXY_METHODS)
async def proxy_all(request: Request, path: str):
    """Catch-all route that proxies everything below the prefix to the origin."""
    return await forward_to_origin(request)
