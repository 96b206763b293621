"""
Framed transport over a websocket connection.
"""

import asyncio
from typing import Any

from websockets.exceptions import ConnectionClosed

from mirra.errors import ConnectionLost
from mirra.logging import get_logger
from mirra.sync.protocol import Frame

logger = get_logger("sync.transport")


class FramedConnection:
    """
    Sends and receives protocol frames over one websocket.

    Sends are serialized so frames from concurrent tasks never interleave.
    Closure of the underlying socket surfaces as :class:`ConnectionLost`.
    """

    def __init__(self, websocket: Any, peer: str = "peer"):
        self.websocket = websocket
        self.peer = peer
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: Frame) -> None:
        if self._closed:
            raise ConnectionLost(f"connection to {self.peer} is closed")
        data = frame.encode()
        async with self._send_lock:
            try:
                await self.websocket.send(data)
            except ConnectionClosed as e:
                self._closed = True
                raise ConnectionLost(f"connection to {self.peer} lost: {e}") from e

    async def recv(self, timeout: float | None = None) -> Frame:
        """
        Receive the next frame.

        Raises:
            ConnectionLost: if the socket closed
            asyncio.TimeoutError: if ``timeout`` elapsed first
            ProtocolError: if the frame is malformed
        """
        try:
            if timeout is None:
                data = await self.websocket.recv()
            else:
                data = await asyncio.wait_for(self.websocket.recv(), timeout=timeout)
        except ConnectionClosed as e:
            self._closed = True
            raise ConnectionLost(f"connection to {self.peer} lost: {e}") from e
        return Frame.decode(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close()
        except ConnectionClosed:
            pass
        logger.debug(f"Closed connection to {self.peer}")
