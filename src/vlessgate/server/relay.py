"""Relay sessions: one client WebSocket paired with one destination TCP stream.

A session walks a fixed state machine:

    HANDSHAKING ──► RELAYING ──► CLOSING ──► CLOSED
         │                          ▲
         └──────────────────────────┘

Leaving HANDSHAKING or RELAYING releases the admission slot, so the
admission counter always equals the number of sessions in those two
states. Closing either side closes the other; half-close is not kept.
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Protocol
from uuid import uuid4

import structlog

from vlessgate.core.exceptions import (
    AuthRejected,
    DestinationUnreachable,
    ProtocolError,
)
from vlessgate.observability.metrics import ACTIVE_SESSIONS, BYTES_RELAYED, SESSIONS_TOTAL
from vlessgate.protocol.frames import (
    MAX_PAYLOAD,
    CloseCode,
    Opcode,
    encode_close,
    encode_frame,
    read_frame,
)
from vlessgate.protocol.header import TunnelRequest, decode_tunnel_request
from vlessgate.security.admission import AdmissionController

logger = structlog.get_logger()

Connector = Callable[[str, int], Awaitable[tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

_CLOSE_TIMEOUT = 5.0


class SessionState(Enum):
    """Relay session lifecycle."""

    HANDSHAKING = "handshaking"
    RELAYING = "relaying"
    CLOSING = "closing"
    CLOSED = "closed"


class CloseReason(Enum):
    """Why a session ended."""

    CLIENT_CLOSED = "client_closed"
    DESTINATION_CLOSED = "destination_closed"
    AUTH_REJECTED = "auth_rejected"
    DESTINATION_UNREACHABLE = "destination_unreachable"
    PROTOCOL_ERROR = "protocol_error"
    CANCELLED = "cancelled"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.HANDSHAKING: frozenset({SessionState.RELAYING, SessionState.CLOSING}),
    SessionState.RELAYING: frozenset({SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}

_CLOSE_CODES: dict[CloseReason, CloseCode] = {
    CloseReason.CLIENT_CLOSED: CloseCode.NORMAL,
    CloseReason.DESTINATION_CLOSED: CloseCode.NORMAL,
    CloseReason.CANCELLED: CloseCode.NORMAL,
    CloseReason.AUTH_REJECTED: CloseCode.POLICY_VIOLATION,
    CloseReason.DESTINATION_UNREACHABLE: CloseCode.INTERNAL_ERROR,
    CloseReason.PROTOCOL_ERROR: CloseCode.PROTOCOL_ERROR,
}


class ClientChannel(Protocol):
    """Message-oriented client side of a session.

    receive() yields one message payload at a time and returns None once the
    peer has closed.
    """

    async def receive(self) -> bytes | None: ...

    async def send(self, data: bytes) -> None: ...

    async def close(self, code: CloseCode = CloseCode.NORMAL) -> None: ...


class WebSocketChannel:
    """ClientChannel over an upgraded stream using the gateway frame codec."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def write_raw(self, data: bytes) -> None:
        """Write bytes that are not framed, i.e. the 101 response."""
        self._writer.write(data)
        await self._writer.drain()

    async def receive(self) -> bytes | None:
        while True:
            try:
                frame = await read_frame(self._reader)
            except (asyncio.IncompleteReadError, ConnectionError):
                return None

            if frame.opcode == Opcode.CLOSE:
                return None
            if frame.opcode == Opcode.PING:
                # No drain: the downstream pump may be draining concurrently.
                self._writer.write(encode_frame(frame.payload, Opcode.PONG))
                continue
            if frame.opcode == Opcode.PONG:
                continue
            return frame.payload

    async def send(self, data: bytes) -> None:
        for start in range(0, len(data), MAX_PAYLOAD):
            self._writer.write(encode_frame(data[start : start + MAX_PAYLOAD]))
        await self._writer.drain()

    async def close(self, code: CloseCode = CloseCode.NORMAL) -> None:
        if self._closed:
            return
        self._closed = True
        with contextlib.suppress(ConnectionError, OSError):
            if not self._writer.is_closing():
                self._writer.write(encode_close(code))
        self._writer.close()
        with contextlib.suppress(ConnectionError, OSError, TimeoutError):
            await asyncio.wait_for(self._writer.wait_closed(), timeout=_CLOSE_TIMEOUT)


class RelaySession:
    """Owns one client channel and, once connected, one destination stream."""

    def __init__(
        self,
        channel: ClientChannel,
        *,
        identity: bytes,
        admission: AdmissionController | None = None,
        connect_timeout: float = 10.0,
        handshake_timeout: float | None = None,
        read_chunk_size: int = 16384,
        response_header: bool = False,
        connector: Connector | None = None,
        peer: str = "",
    ) -> None:
        if not 1 <= read_chunk_size <= MAX_PAYLOAD:
            raise ValueError(f"read_chunk_size must be 1-{MAX_PAYLOAD}")
        self.id = uuid4().hex[:12]
        self.channel = channel
        self.peer = peer
        self.state = SessionState.HANDSHAKING
        self.history: list[SessionState] = [SessionState.HANDSHAKING]
        self.close_reason: CloseReason | None = None
        self.request: TunnelRequest | None = None
        self.bytes_up = 0
        self.bytes_down = 0
        self.started_at = time.monotonic()
        self._identity = identity
        self._admission = admission
        self._connect_timeout = connect_timeout
        self._handshake_timeout = handshake_timeout
        self._read_chunk_size = read_chunk_size
        self._response_header = response_header
        self._connector: Connector = connector or asyncio.open_connection
        self._dest_reader: asyncio.StreamReader | None = None
        self._dest_writer: asyncio.StreamWriter | None = None
        self._task: asyncio.Task | None = None
        self._closed = asyncio.Event()
        ACTIVE_SESSIONS.inc()

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.HANDSHAKING, SessionState.RELAYING)

    @property
    def destination_connected(self) -> bool:
        return self._dest_writer is not None

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid session transition {self.state.value} -> {new_state.value}")
        was_active = self.is_active
        self.state = new_state
        self.history.append(new_state)
        if was_active and not self.is_active:
            ACTIVE_SESSIONS.dec()
            if self._admission is not None:
                self._admission.release()

    def start(self, request: TunnelRequest | None = None) -> asyncio.Task:
        """Run the session in its own task."""
        if self._task is None:
            self._task = asyncio.create_task(self.run(request), name=f"relay-{self.id}")
        return self._task

    async def wait_closed(self) -> CloseReason | None:
        await self._closed.wait()
        return self.close_reason

    async def close(self) -> None:
        """Cancel a started session, or tear down one that never started."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        elif self.state != SessionState.CLOSED:
            await self._shutdown(CloseReason.CANCELLED)

    async def abort(self, reason: CloseReason) -> None:
        """Tear the session down without running it."""
        await self._shutdown(reason)

    async def run(self, request: TunnelRequest | None = None) -> CloseReason:
        """Drive the session to CLOSED and return why it ended.

        With request=None the tunnel header is read from the first client
        message; otherwise the already-decoded request is used.
        """
        reason = CloseReason.PROTOCOL_ERROR
        try:
            reason = await self._run(request)
        except AuthRejected:
            reason = CloseReason.AUTH_REJECTED
            logger.warning("Tunnel identity rejected", session=self.id, peer=self.peer)
        except DestinationUnreachable as e:
            reason = CloseReason.DESTINATION_UNREACHABLE
            logger.warning("Destination unreachable", session=self.id, error=e.message)
        except ProtocolError as e:
            reason = CloseReason.PROTOCOL_ERROR
            logger.warning("Protocol error", session=self.id, peer=self.peer, error=e.message)
        except asyncio.CancelledError:
            reason = CloseReason.CANCELLED
            raise
        except Exception as e:
            reason = CloseReason.PROTOCOL_ERROR
            logger.exception("Unexpected relay error", session=self.id, error=str(e))
        finally:
            await self._shutdown(reason)
        return reason

    async def _run(self, request: TunnelRequest | None) -> CloseReason:
        if request is None:
            first = await self._receive_first()
            if first is None:
                return CloseReason.CLIENT_CLOSED
            request = decode_tunnel_request(first)
        self.request = request

        if not hmac.compare_digest(request.identity, self._identity):
            raise AuthRejected()

        await self._open_destination(request)
        self._transition(SessionState.RELAYING)
        logger.info(
            "Relay established",
            session=self.id,
            peer=self.peer,
            destination=request.destination,
            initial_bytes=len(request.payload),
        )
        return await self._relay()

    async def _receive_first(self) -> bytes | None:
        try:
            return await asyncio.wait_for(self.channel.receive(), timeout=self._handshake_timeout)
        except TimeoutError:
            raise ProtocolError("Timed out waiting for tunnel header") from None

    async def _open_destination(self, request: TunnelRequest) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                self._connector(request.host, request.port),
                timeout=self._connect_timeout,
            )
        except TimeoutError as e:
            raise DestinationUnreachable(request.host, request.port, "connect timed out") from e
        except OSError as e:
            raise DestinationUnreachable(request.host, request.port, str(e)) from e
        self._dest_reader, self._dest_writer = reader, writer

        # Initial payload must reach the destination before any relayed bytes.
        if request.payload:
            try:
                writer.write(request.payload)
                await writer.drain()
            except (ConnectionError, OSError) as e:
                raise DestinationUnreachable(request.host, request.port, str(e)) from e
            self._count_up(len(request.payload))

        if self._response_header:
            await self.channel.send(bytes([request.version, 0]))

    async def _relay(self) -> CloseReason:
        upstream = asyncio.create_task(self._pump_upstream(), name=f"relay-{self.id}-up")
        downstream = asyncio.create_task(self._pump_downstream(), name=f"relay-{self.id}-down")
        try:
            done, _ = await asyncio.wait({upstream, downstream}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            upstream.cancel()
            downstream.cancel()
            await asyncio.gather(upstream, downstream, return_exceptions=True)
        first = upstream if upstream in done else downstream
        return first.result()

    async def _pump_upstream(self) -> CloseReason:
        """Client → destination."""
        assert self._dest_writer is not None and self.request is not None
        while True:
            data = await self.channel.receive()
            if data is None:
                return CloseReason.CLIENT_CLOSED
            if not data:
                continue
            try:
                self._dest_writer.write(data)
                await self._dest_writer.drain()
            except (ConnectionError, OSError) as e:
                raise DestinationUnreachable(self.request.host, self.request.port, str(e)) from e
            self._count_up(len(data))

    async def _pump_downstream(self) -> CloseReason:
        """Destination → client."""
        assert self._dest_reader is not None and self.request is not None
        while True:
            try:
                data = await self._dest_reader.read(self._read_chunk_size)
            except (ConnectionError, OSError) as e:
                raise DestinationUnreachable(self.request.host, self.request.port, str(e)) from e
            if not data:
                return CloseReason.DESTINATION_CLOSED
            try:
                await self.channel.send(data)
            except (ConnectionError, OSError):
                return CloseReason.CLIENT_CLOSED
            self.bytes_down += len(data)
            BYTES_RELAYED.labels(direction="downstream").inc(len(data))

    def _count_up(self, size: int) -> None:
        self.bytes_up += size
        BYTES_RELAYED.labels(direction="upstream").inc(size)

    async def _shutdown(self, reason: CloseReason) -> None:
        if self.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        self.close_reason = reason
        self._transition(SessionState.CLOSING)

        if self._dest_writer is not None:
            self._dest_writer.close()
            with contextlib.suppress(ConnectionError, OSError, TimeoutError):
                await asyncio.wait_for(self._dest_writer.wait_closed(), timeout=_CLOSE_TIMEOUT)
        with contextlib.suppress(ConnectionError, OSError):
            await self.channel.close(_CLOSE_CODES[reason])

        self._transition(SessionState.CLOSED)
        SESSIONS_TOTAL.labels(reason=reason.value).inc()
        logger.info(
            "Relay session closed",
            session=self.id,
            reason=reason.value,
            bytes_up=self.bytes_up,
            bytes_down=self.bytes_down,
            duration=round(time.monotonic() - self.started_at, 3),
        )
        self._closed.set()


def open_relay(
    request: TunnelRequest,
    channel: ClientChannel,
    *,
    identity: bytes,
    admission: AdmissionController | None = None,
    connect_timeout: float = 10.0,
    read_chunk_size: int = 16384,
    response_header: bool = False,
    connector: Connector | None = None,
    peer: str = "",
) -> RelaySession:
    """Start a relay for an already-decoded request and return its handle.

    The caller owns the admission slot up to this call; from here on the
    session releases it when it leaves the active states.
    """
    session = RelaySession(
        channel,
        identity=identity,
        admission=admission,
        connect_timeout=connect_timeout,
        read_chunk_size=read_chunk_size,
        response_header=response_header,
        connector=connector,
        peer=peer,
    )
    session.start(request)
    return session
