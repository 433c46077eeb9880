"""Local forwarding client.

Listens on a local TCP port. Every accepted connection gets its own
WebSocket to the gateway; the first message carries the tunnel header for
the configured target plus whatever the local peer sent first.
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import Enum

import aiohttp
import structlog

from vlessgate.core.config import ClientConfig
from vlessgate.protocol.header import encode_tunnel_request

logger = structlog.get_logger()

# Wait this long for the local peer to speak first before sending a bare header.
FIRST_READ_TIMEOUT = 0.2


class ConnectionState(Enum):
    """Client listener state."""

    STOPPED = "stopped"
    LISTENING = "listening"
    CLOSED = "closed"


class TunnelClient:
    """Forwards local TCP connections through a gateway."""

    def __init__(self, config: ClientConfig) -> None:
        self.config = config
        self.state = ConnectionState.STOPPED
        self._server: asyncio.Server | None = None
        self._session: aiohttp.ClientSession | None = None
        self._handlers: set[asyncio.Task] = set()
        self.connections_total = 0

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Client is not listening")
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        timeout = aiohttp.ClientTimeout(total=None, connect=self.config.connect_timeout)
        self._session = aiohttp.ClientSession(timeout=timeout)
        self._server = await asyncio.start_server(
            self._handle_local, self.config.local_host, self.config.local_port
        )
        self.state = ConnectionState.LISTENING
        logger.info(
            "Forwarder listening",
            local=f"{self.config.local_host}:{self.port}",
            target=f"{self.config.target_host}:{self.config.target_port}",
            server=self.config.server_url,
        )

    async def run(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        if self._session is not None:
            await self._session.close()
            self._session = None
        self.state = ConnectionState.CLOSED

    async def _handle_local(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        self.connections_total += 1
        peer = writer.get_extra_info("peername")
        try:
            await self._forward(reader, writer)
        except aiohttp.ClientError as e:
            logger.warning("Gateway connection failed", peer=str(peer), error=str(e))
        except (ConnectionError, OSError) as e:
            logger.debug("Local connection error", peer=str(peer), error=str(e))
        finally:
            if task is not None:
                self._handlers.discard(task)
            writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    async def _forward(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        assert self._session is not None
        first = b""
        with contextlib.suppress(TimeoutError):
            first = await asyncio.wait_for(
                reader.read(self.config.chunk_size), timeout=FIRST_READ_TIMEOUT
            )

        header = encode_tunnel_request(
            self.config.identity,
            self.config.target_host,
            self.config.target_port,
            first,
        )
        async with self._session.ws_connect(self.config.server_url, autoping=True) as ws:
            await ws.send_bytes(header)
            logger.debug("Tunnel opened", initial_bytes=len(first))

            async def local_to_gateway() -> None:
                while True:
                    data = await reader.read(self.config.chunk_size)
                    if not data:
                        break
                    await ws.send_bytes(data)

            async def gateway_to_local() -> None:
                skip = 2 if self.config.expect_response_header else 0
                async for msg in ws:
                    if msg.type != aiohttp.WSMsgType.BINARY:
                        if msg.type == aiohttp.WSMsgType.ERROR:
                            logger.warning("Tunnel WebSocket error", error=str(ws.exception()))
                        break
                    data = msg.data
                    if skip:
                        dropped = min(skip, len(data))
                        data = data[dropped:]
                        skip -= dropped
                    if data:
                        writer.write(data)
                        await writer.drain()

            # Either side finishing ends the whole tunnel.
            done, pending = await asyncio.wait(
                [
                    asyncio.create_task(local_to_gateway()),
                    asyncio.create_task(gateway_to_local()),
                ],
                return_when=asyncio.FIRST_COMPLETED,
            )
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for t in done:
                t.result()
