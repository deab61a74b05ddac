"""
Buffers upstream responses before anything reaches the client.

Rewriting needs the complete body and an exact length, so the raw bytes
(still compressed, as sent by the upstream) are collected in memory first.
The wait for the upstream is tied to the inbound connection: if the client
goes away, the outbound request is cancelled and its buffers dropped.
"""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, TypeVar

import httpx
from fastapi import Request

from relay.models import UpstreamResponse

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")

DISCONNECT_POLL_INTERVAL = 0.25


class BodyTooLarge(Exception):
    def __init__(self, limit: int):
        super().__init__(f"Upstream body exceeds {limit} bytes")
        self.limit = limit


class ClientDisconnected(Exception):
    """The inbound client went away before the upstream answered."""


async def buffer_upstream_response(
    response: httpx.Response, max_bytes: int = 0
) -> UpstreamResponse:
    """
    Read the raw (undecoded) body of a streamed httpx response into memory.
    ``max_bytes`` of 0 disables the size cap.
    """
    chunks = []
    total = 0
    try:
        async for chunk in response.aiter_raw():
            total += len(chunk)
            if max_bytes and total > max_bytes:
                raise BodyTooLarge(max_bytes)
            chunks.append(chunk)
    finally:
        await response.aclose()

    return UpstreamResponse(
        status_code=response.status_code,
        headers=list(response.headers.multi_items()),
        raw_body=b"".join(chunks),
    )


async def fetch_upstream(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    content: Optional[bytes] = None,
    max_bytes: int = 0,
) -> UpstreamResponse:
    request = client.build_request(method, url, headers=headers, content=content or None)
    response = await client.send(request, stream=True)
    return await buffer_upstream_response(response, max_bytes)


async def _wait_for_disconnect(
    request: Request, poll_interval: float, stop: asyncio.Event
) -> bool:
    # Starlette's is_disconnected() runs inside its own cancel scope and can
    # swallow a task cancellation, so the loop ends on ``stop`` instead.
    while not stop.is_set():
        if await request.is_disconnected():
            return True
        try:
            await asyncio.wait_for(stop.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass
    return False


async def run_until_disconnect(
    request: Request,
    awaitable: Awaitable[T],
    poll_interval: Optional[float] = None,
) -> T:
    """
    Await ``awaitable`` unless the inbound client disconnects first, in which
    case the work is cancelled and ClientDisconnected is raised.

    The request body must already have been read: polling for a disconnect
    consumes receive() messages.
    """
    if poll_interval is None:
        poll_interval = DISCONNECT_POLL_INTERVAL
    stop = asyncio.Event()
    work: "asyncio.Future[Any]" = asyncio.ensure_future(awaitable)
    watcher = asyncio.ensure_future(_wait_for_disconnect(request, poll_interval, stop))
    try:
        done, _ = await asyncio.wait(
            {work, watcher}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        stop.set()
        if not work.done():
            work.cancel()
        await asyncio.gather(work, watcher, return_exceptions=True)

    if work in done:
        return work.result()
    if watcher.exception() is not None:
        raise watcher.exception()
    raise ClientDisconnected()
