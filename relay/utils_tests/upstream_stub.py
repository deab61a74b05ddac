from typing import Callable, List, Optional

import httpx


def origin_response(
    status_code: int = 200,
    headers: Optional[dict] = None,
    body: bytes = b"",
) -> httpx.Response:
    """
    A response as a transport would hand it over: raw bytes in a stream,
    nothing decoded or read yet.
    """
    return httpx.Response(
        status_code, headers=headers or {}, stream=httpx.ByteStream(body)
    )


class UpstreamStub:
    """Stands in for the origin and the allow-listed hosts."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.responder: Callable = lambda request: origin_response(200, body=b"ok")

    async def _handle(self, request: httpx.Request):
        self.requests.append(request)
        result = self.responder(request)
        if hasattr(result, "__await__"):
            result = await result
        return result

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.MockTransport(self._handle), follow_redirects=False
        )
