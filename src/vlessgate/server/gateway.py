"""Gateway server: accepts upgrades and runs one relay session per connection."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog

from vlessgate.core.config import GatewayConfig
from vlessgate.core.exceptions import AdmissionRejected, MalformedRequest, MissingKey
from vlessgate.observability.metrics import UPGRADE_REJECTIONS
from vlessgate.protocol.handshake import UpgradeRequest, build_switch_response, parse_request_head
from vlessgate.security.admission import AdmissionController
from vlessgate.server.pages import build_http_response, route_request
from vlessgate.server.relay import CloseReason, Connector, RelaySession, WebSocketChannel

logger = structlog.get_logger()

_HEAD_END = b"\r\n\r\n"


def _format_peer(peername: Any) -> str:
    if isinstance(peername, tuple) and len(peername) >= 2:
        return f"{peername[0]}:{peername[1]}"
    return str(peername or "unknown")


class GatewayServer:
    """WebSocket tunnel gateway."""

    def __init__(self, config: GatewayConfig, connector: Connector | None = None) -> None:
        self.config = config
        self._admission = AdmissionController(config.max_sessions)
        self._connector = connector
        self._server: asyncio.Server | None = None
        self._sessions: dict[str, RelaySession] = {}
        self._handlers: set[asyncio.Task] = set()

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    @property
    def active_sessions(self) -> int:
        return self._admission.active

    @property
    def port(self) -> int:
        """Bound port; differs from config.port when that is 0."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Gateway is not running")
        return self._server.sockets[0].getsockname()[1]

    def stats(self) -> dict[str, Any]:
        return {
            "active_sessions": self._admission.active,
            "max_sessions": self._admission.ceiling,
            "sessions": [
                {
                    "id": session.id,
                    "peer": session.peer,
                    "state": session.state.value,
                    "destination": session.request.destination if session.request else None,
                    "bytes_up": session.bytes_up,
                    "bytes_down": session.bytes_down,
                }
                for session in self._sessions.values()
            ],
        }

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_connection,
            self.config.host,
            self.config.port,
            limit=max(self.config.max_request_head, 2**16),
        )
        logger.info(
            "Gateway started",
            host=self.config.host,
            port=self.port,
            tunnel_path=self.config.tunnel_path,
            max_sessions=self.config.max_sessions,
        )

    async def stop(self) -> None:
        """Stop accepting, then cancel every open connection and session."""
        if self._server is None:
            return
        logger.info("Stopping gateway...", active_sessions=self.active_sessions)
        self._server.close()

        handlers = list(self._handlers)
        for task in handlers:
            task.cancel()
        await asyncio.gather(*handlers, return_exceptions=True)

        await self._server.wait_closed()
        self._server = None
        logger.info("Gateway stopped")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        peer = _format_peer(writer.get_extra_info("peername"))
        try:
            request = await self._read_request(reader, writer, peer)
            if request is None:
                return
            if request.is_websocket_upgrade:
                await self._handle_upgrade(request, reader, writer, peer)
            else:
                await self._respond(writer, route_request(request, self.config, self.stats()))
        except Exception as e:
            logger.error("Connection error", peer=peer, error=str(e))
        finally:
            if task is not None:
                self._handlers.discard(task)
            if not writer.is_closing():
                writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await writer.wait_closed()

    async def _read_request(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, peer: str
    ) -> UpgradeRequest | None:
        try:
            head = await asyncio.wait_for(
                reader.readuntil(_HEAD_END), timeout=self.config.handshake_timeout
            )
        except (asyncio.IncompleteReadError, ConnectionError, TimeoutError):
            logger.debug("Connection closed before request head", peer=peer)
            return None
        except asyncio.LimitOverrunError:
            await self._respond(writer, build_http_response(431, "Request Header Fields Too Large"))
            return None

        if len(head) > self.config.max_request_head:
            await self._respond(writer, build_http_response(431, "Request Header Fields Too Large"))
            return None

        try:
            return parse_request_head(head)
        except MalformedRequest as e:
            logger.warning("Malformed request", peer=peer, error=e.message)
            await self._respond(writer, build_http_response(400, "Bad Request"))
            return None

    async def _handle_upgrade(
        self,
        request: UpgradeRequest,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        peer: str,
    ) -> None:
        if request.path != self.config.tunnel_path:
            UPGRADE_REJECTIONS.labels(reason="not_found").inc()
            await self._respond(writer, build_http_response(404, "Not Found"))
            return

        try:
            response = build_switch_response(request.websocket_key)
        except MissingKey:
            UPGRADE_REJECTIONS.labels(reason="missing_key").inc()
            logger.warning("Upgrade without Sec-WebSocket-Key", peer=peer)
            await self._respond(writer, build_http_response(400, "Missing Sec-WebSocket-Key"))
            return

        try:
            self._admission.acquire()
        except AdmissionRejected as e:
            UPGRADE_REJECTIONS.labels(reason="admission").inc()
            logger.warning("Refusing upgrade", peer=peer, error=e.message)
            await self._respond(writer, build_http_response(503, "Service Unavailable"))
            return

        # The slot now belongs to the session, which releases it on close.
        channel = WebSocketChannel(reader, writer)
        session = RelaySession(
            channel,
            identity=self.config.identity,
            admission=self._admission,
            connect_timeout=self.config.connect_timeout,
            handshake_timeout=self.config.handshake_timeout,
            read_chunk_size=self.config.read_chunk_size,
            response_header=self.config.response_header,
            connector=self._connector,
            peer=peer,
        )
        self._sessions[session.id] = session
        try:
            try:
                await channel.write_raw(response)
            except (ConnectionError, OSError):
                await session.abort(CloseReason.CLIENT_CLOSED)
                return
            except asyncio.CancelledError:
                await session.abort(CloseReason.CANCELLED)
                raise
            logger.debug("Upgrade accepted", session=session.id, peer=peer)
            await session.run()
        finally:
            self._sessions.pop(session.id, None)

    async def _respond(self, writer: asyncio.StreamWriter, response: bytes) -> None:
        with contextlib.suppress(ConnectionError, OSError):
            writer.write(response)
            await writer.drain()
