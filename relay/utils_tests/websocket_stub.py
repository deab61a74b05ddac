import asyncio
from typing import List, Optional


class OriginSocket:
    """
    A connected origin websocket. Echoes every frame back with an ``echo:``
    prefix; the text frame ``close`` makes the origin hang up.
    """

    def __init__(self, subprotocol: Optional[str] = None):
        self.subprotocol = subprotocol
        self.close_code: Optional[int] = None
        self.sent: List = []
        self._inbox: Optional[asyncio.Queue] = None

    @property
    def inbox(self) -> asyncio.Queue:
        # Created lazily so it binds to the loop the app runs on
        if self._inbox is None:
            self._inbox = asyncio.Queue()
        return self._inbox

    async def send(self, message):
        self.sent.append(message)
        if message == "close":
            await self.close()
            return
        prefix = b"echo:" if isinstance(message, bytes) else "echo:"
        await self.inbox.put(prefix + message)

    async def close(self):
        if self.close_code is None:
            self.close_code = 1000
            await self.inbox.put(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.inbox.get()
        if message is None:
            raise StopAsyncIteration
        return message


class OriginSocketFactory:
    """Stands in for ``connect_origin`` and records every handshake."""

    def __init__(self):
        self.calls: List[dict] = []
        self.connections: List[OriginSocket] = []
        self.error: Optional[BaseException] = None

    async def connect(self, url, headers, user_agent, subprotocols=None):
        self.calls.append(
            {
                "url": url,
                "headers": list(headers),
                "user_agent": user_agent,
                "subprotocols": subprotocols,
            }
        )
        if self.error is not None:
            raise self.error
        connection = OriginSocket(subprotocol=subprotocols[0] if subprotocols else None)
        self.connections.append(connection)
        return connection
