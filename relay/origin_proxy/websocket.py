"""
WebSocket relaying under the proxy prefix.

Upgrades below the prefix are opened against the origin with the same
identity headers the HTTP proxy uses, then frames are piped both ways
unchanged until either side closes.
"""

import asyncio
import logging
from typing import List, Optional, Tuple
from urllib.parse import urlparse

from fastapi import APIRouter, WebSocket
from opentelemetry import trace
from starlette.websockets import WebSocketState
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from relay.origin_proxy.route import EXCLUDED_REQUEST_HEADERS
from relay.utils.traced_requests import traced_request
from relay.vars import (
    DEFAULT_USER_AGENT,
    MAX_BODY_BYTES,
    ORIGIN_URL,
    PROXY_PREFIX,
    PROXY_TIMEOUT,
)

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

# Set by the websocket client library itself during the handshake
HANDSHAKE_HEADERS = {
    "origin",
    "user-agent",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
}

# 1011: the relay could not reach or keep the origin connection
INTERNAL_ERROR = 1011


def get_websocket_target_url(websocket: WebSocket) -> str:
    origin = urlparse(ORIGIN_URL)
    scheme = "wss" if origin.scheme == "https" else "ws"
    target = f"{scheme}://{origin.netloc}{websocket.url.path}"
    if websocket.url.query:
        target = f"{target}?{websocket.url.query}"
    return target


def prepare_websocket_headers(websocket: WebSocket) -> List[Tuple[str, str]]:
    headers = []
    for name, value in websocket.headers.items():
        name_lower = name.lower()
        if name_lower in EXCLUDED_REQUEST_HEADERS or name_lower in HANDSHAKE_HEADERS:
            continue
        headers.append((name_lower, value))
    headers.append(("referer", f"{ORIGIN_URL}/"))
    return headers


def requested_subprotocols(websocket: WebSocket) -> List[str]:
    value = websocket.headers.get("sec-websocket-protocol") or ""
    return [p.strip() for p in value.split(",") if p.strip()]


async def connect_origin(
    url: str,
    headers: List[Tuple[str, str]],
    user_agent: str,
    subprotocols: Optional[List[str]] = None,
):
    return await connect(
        url,
        additional_headers=headers,
        user_agent_header=user_agent,
        origin=ORIGIN_URL,
        subprotocols=subprotocols or None,
        open_timeout=PROXY_TIMEOUT,
        max_size=MAX_BODY_BYTES or None,
    )


async def _client_to_origin(websocket: WebSocket, upstream) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            await upstream.close()
            return
        if message.get("bytes") is not None:
            await upstream.send(message["bytes"])
        elif message.get("text") is not None:
            await upstream.send(message["text"])


async def _origin_to_client(websocket: WebSocket, upstream) -> None:
    try:
        async for message in upstream:
            if isinstance(message, bytes):
                await websocket.send_bytes(message)
            else:
                await websocket.send_text(message)
        code = upstream.close_code
        if code in (None, 1005, 1006):
            # Reserved codes that may not be sent on the wire
            code = 1000
    except ConnectionClosed as e:
        logger.warning(f"Origin websocket closed abnormally: {e}")
        code = INTERNAL_ERROR
    if websocket.client_state is WebSocketState.CONNECTED:
        await websocket.close(code=code)


@router.websocket(PROXY_PREFIX + "/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    """Relay a WebSocket session below the prefix to the origin."""
    target_url = get_websocket_target_url(websocket)
    with traced_request(
        tracer,
        operation="proxy_websocket",
        target_url=target_url,
        start_message=f"[Proxy] WebSocket {websocket.url.path}",
    ) as span:
        try:
            upstream = await connect_origin(
                target_url,
                prepare_websocket_headers(websocket),
                websocket.headers.get("user-agent") or DEFAULT_USER_AGENT,
                requested_subprotocols(websocket),
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error(f"Failed to open origin websocket {target_url}: {e}")
            span.set_attribute("proxy.error", "connection_failed")
            await websocket.close(code=INTERNAL_ERROR)
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            tasks = [
                asyncio.ensure_future(_client_to_origin(websocket, upstream)),
                asyncio.ensure_future(_origin_to_client(websocket, upstream)),
            ]
            try:
                await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
                results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning(f"WebSocket relay for {target_url} ended: {result}")
        finally:
            await upstream.close()
        logger.info(f"WebSocket relay for {target_url} closed")
