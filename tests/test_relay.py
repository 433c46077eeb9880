"""Tests for relay sessions."""

from __future__ import annotations

import asyncio
from uuid import UUID

import pytest
from prometheus_client import REGISTRY

from vlessgate.protocol.frames import CloseCode, Opcode, encode_frame
from vlessgate.protocol.header import decode_tunnel_request, encode_tunnel_request
from vlessgate.security.admission import AdmissionController
from vlessgate.server.relay import (
    CloseReason,
    RelaySession,
    SessionState,
    WebSocketChannel,
    open_relay,
)

IDENTITY = UUID("11111111-1111-4111-8111-111111111111").bytes
OTHER_IDENTITY = UUID("22222222-2222-4222-8222-222222222222").bytes
MASK = b"\x0a\x0b\x0c\x0d"

INITIAL = b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n"
RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nhello"


class FakeChannel:
    """Queue-backed client channel."""

    def __init__(self, messages=()):
        self.incoming: asyncio.Queue = asyncio.Queue()
        for message in messages:
            self.incoming.put_nowait(message)
        self.sent: list[bytes] = []
        self.close_code: CloseCode | None = None

    def push(self, data: bytes | None) -> None:
        self.incoming.put_nowait(data)

    async def receive(self):
        return await self.incoming.get()

    async def send(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self, code: CloseCode = CloseCode.NORMAL) -> None:
        self.close_code = code


class FakeWriter:
    """Minimal StreamWriter stand-in."""

    def __init__(self):
        self.buffer = bytearray()
        self.closed = False

    def write(self, data: bytes) -> None:
        self.buffer.extend(data)

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        pass


def _reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


def _connector(port: int, calls: list):
    async def connect(host: str, dest_port: int):
        calls.append((host, dest_port))
        return await asyncio.open_connection("127.0.0.1", port)

    return connect


async def _until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


def _sample(name: str, labels: dict | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


class TestRelaySession:
    """Tests for RelaySession against a local destination server."""

    @pytest.mark.asyncio
    async def test_relay_end_to_end(self):
        """Test payload ordering, response forwarding and client close."""
        received: list[bytes] = []
        done = asyncio.Event()

        async def handle(reader, writer):
            received.append(await reader.readexactly(len(INITIAL)))
            writer.write(RESPONSE)
            await writer.drain()
            received.append(await reader.read())
            writer.close()
            done.set()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        calls: list = []
        header = encode_tunnel_request(IDENTITY, "93.184.216.34", 80, INITIAL)
        channel = FakeChannel([header])

        try:
            session = RelaySession(channel, identity=IDENTITY, connector=_connector(port, calls))
            task = session.start()
            await _until(lambda: b"".join(channel.sent) == RESPONSE)

            channel.push(b"more")
            channel.push(None)
            reason = await asyncio.wait_for(task, timeout=5)
            await asyncio.wait_for(done.wait(), timeout=5)
        finally:
            server.close()
            await server.wait_closed()

        assert reason == CloseReason.CLIENT_CLOSED
        assert calls == [("93.184.216.34", 80)]
        assert received == [INITIAL, b"more"]
        assert b"".join(channel.sent) == RESPONSE
        assert channel.close_code == CloseCode.NORMAL
        assert session.history == [
            SessionState.HANDSHAKING,
            SessionState.RELAYING,
            SessionState.CLOSING,
            SessionState.CLOSED,
        ]
        assert session.bytes_up == len(INITIAL) + 4
        assert session.bytes_down == len(RESPONSE)

    @pytest.mark.asyncio
    async def test_destination_close_ends_session(self):
        """Test destination EOF closes the client side too."""

        async def handle(reader, writer):
            writer.write(b"bye")
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        channel = FakeChannel([encode_tunnel_request(IDENTITY, "example.com", 443)])

        try:
            session = RelaySession(channel, identity=IDENTITY, connector=_connector(port, []))
            reason = await asyncio.wait_for(session.run(), timeout=5)
        finally:
            server.close()
            await server.wait_closed()

        assert reason == CloseReason.DESTINATION_CLOSED
        assert b"".join(channel.sent) == b"bye"
        assert channel.close_code == CloseCode.NORMAL
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_auth_rejected_never_connects(self):
        """Test a wrong identity closes without a destination attempt."""
        calls: list = []
        admission = AdmissionController(ceiling=1)
        assert admission.try_acquire()
        before = _sample("vlessgate_sessions_total", {"reason": "auth_rejected"})

        channel = FakeChannel([encode_tunnel_request(OTHER_IDENTITY, "93.184.216.34", 80)])
        session = RelaySession(
            channel, identity=IDENTITY, admission=admission, connector=_connector(1, calls)
        )
        reason = await session.run()

        assert reason == CloseReason.AUTH_REJECTED
        assert calls == []
        assert session.history == [
            SessionState.HANDSHAKING,
            SessionState.CLOSING,
            SessionState.CLOSED,
        ]
        assert channel.close_code == CloseCode.POLICY_VIOLATION
        assert admission.active == 0
        assert _sample("vlessgate_sessions_total", {"reason": "auth_rejected"}) == before + 1

    @pytest.mark.asyncio
    async def test_destination_unreachable(self):
        """Test a refused connect closes the client with an error."""

        async def refuse(host, port):
            raise ConnectionRefusedError("refused")

        admission = AdmissionController(ceiling=1)
        admission.try_acquire()
        channel = FakeChannel([encode_tunnel_request(IDENTITY, "93.184.216.34", 80)])
        session = RelaySession(channel, identity=IDENTITY, admission=admission, connector=refuse)
        reason = await session.run()

        assert reason == CloseReason.DESTINATION_UNREACHABLE
        assert channel.close_code == CloseCode.INTERNAL_ERROR
        assert session.history[-2:] == [SessionState.CLOSING, SessionState.CLOSED]
        assert SessionState.RELAYING not in session.history
        assert admission.active == 0

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        """Test a slow connect counts as unreachable."""

        async def hang(host, port):
            await asyncio.sleep(10)

        channel = FakeChannel([encode_tunnel_request(IDENTITY, "10.255.255.1", 80)])
        session = RelaySession(channel, identity=IDENTITY, connect_timeout=0.05, connector=hang)
        reason = await asyncio.wait_for(session.run(), timeout=5)

        assert reason == CloseReason.DESTINATION_UNREACHABLE

    @pytest.mark.asyncio
    async def test_malformed_header(self):
        """Test a short first message is a protocol error."""
        calls: list = []
        channel = FakeChannel([b"\x00" * 10])
        session = RelaySession(channel, identity=IDENTITY, connector=_connector(1, calls))
        reason = await session.run()

        assert reason == CloseReason.PROTOCOL_ERROR
        assert channel.close_code == CloseCode.PROTOCOL_ERROR
        assert calls == []

    @pytest.mark.asyncio
    async def test_client_closes_before_header(self):
        """Test the client leaving before sending anything."""
        session = RelaySession(FakeChannel([None]), identity=IDENTITY)
        assert await session.run() == CloseReason.CLIENT_CLOSED

    @pytest.mark.asyncio
    async def test_handshake_timeout(self):
        """Test a client that never sends the header."""
        session = RelaySession(FakeChannel(), identity=IDENTITY, handshake_timeout=0.05)
        reason = await asyncio.wait_for(session.run(), timeout=5)
        assert reason == CloseReason.PROTOCOL_ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error(self):
        """Test unexpected failures still close the session."""

        async def broken(host, port):
            raise RuntimeError("boom")

        channel = FakeChannel([encode_tunnel_request(IDENTITY, "example.com", 80)])
        session = RelaySession(channel, identity=IDENTITY, connector=broken)
        assert await session.run() == CloseReason.PROTOCOL_ERROR
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_response_header(self):
        """Test the optional 2-byte response precedes destination data."""

        async def handle(reader, writer):
            writer.write(b"data")
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        channel = FakeChannel([encode_tunnel_request(IDENTITY, "example.com", 80)])

        try:
            session = RelaySession(
                channel,
                identity=IDENTITY,
                response_header=True,
                connector=_connector(port, []),
            )
            await asyncio.wait_for(session.run(), timeout=5)
        finally:
            server.close()
            await server.wait_closed()

        assert channel.sent[0] == b"\x00\x00"
        assert b"".join(channel.sent[1:]) == b"data"

    @pytest.mark.asyncio
    async def test_close_cancels_running_session(self):
        """Test close() tears down a relaying session."""
        dest_closed = asyncio.Event()

        async def handle(reader, writer):
            await reader.read()
            dest_closed.set()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        admission = AdmissionController(ceiling=1)
        admission.try_acquire()
        channel = FakeChannel([encode_tunnel_request(IDENTITY, "example.com", 80)])

        try:
            session = RelaySession(
                channel, identity=IDENTITY, admission=admission, connector=_connector(port, [])
            )
            session.start()
            await _until(lambda: session.state == SessionState.RELAYING)
            await session.close()
            await asyncio.wait_for(dest_closed.wait(), timeout=5)
        finally:
            server.close()
            await server.wait_closed()

        assert session.close_reason == CloseReason.CANCELLED
        assert session.state == SessionState.CLOSED
        assert admission.active == 0

    @pytest.mark.asyncio
    async def test_active_sessions_gauge(self):
        """Test the gauge tracks sessions until they close."""
        before = _sample("vlessgate_active_sessions")
        session = RelaySession(FakeChannel([None]), identity=IDENTITY)
        assert _sample("vlessgate_active_sessions") == before + 1
        await session.run()
        assert _sample("vlessgate_active_sessions") == before

    @pytest.mark.asyncio
    async def test_invalid_chunk_size(self):
        """Test read_chunk_size must fit a single frame."""
        with pytest.raises(ValueError):
            RelaySession(FakeChannel(), identity=IDENTITY, read_chunk_size=70000)


class TestOpenRelay:
    """Tests for open_relay with a pre-decoded request."""

    @pytest.mark.asyncio
    async def test_open_relay(self):
        """Test the returned handle runs the session in the background."""
        received: list[bytes] = []

        async def handle(reader, writer):
            received.append(await reader.readexactly(len(INITIAL)))
            writer.write(RESPONSE)
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        request = decode_tunnel_request(
            encode_tunnel_request(IDENTITY, "93.184.216.34", 80, INITIAL)
        )
        channel = FakeChannel()

        try:
            session = open_relay(
                request, channel, identity=IDENTITY, connector=_connector(port, [])
            )
            reason = await asyncio.wait_for(session.wait_closed(), timeout=5)
        finally:
            server.close()
            await server.wait_closed()

        assert reason == CloseReason.DESTINATION_CLOSED
        assert received == [INITIAL]
        assert b"".join(channel.sent) == RESPONSE
        assert session.request == request


class TestWebSocketChannel:
    """Tests for the frame-level client channel."""

    @pytest.mark.asyncio
    async def test_receive_data(self):
        """Test data frames are returned as payloads."""
        channel = WebSocketChannel(_reader(encode_frame(b"abc", mask_key=MASK)), FakeWriter())
        assert await channel.receive() == b"abc"
        assert await channel.receive() is None

    @pytest.mark.asyncio
    async def test_ping_answered(self):
        """Test pings get a pong and are not surfaced."""
        writer = FakeWriter()
        data = encode_frame(b"p1", Opcode.PING, mask_key=MASK) + encode_frame(b"x", mask_key=MASK)
        channel = WebSocketChannel(_reader(data), writer)

        assert await channel.receive() == b"x"
        assert bytes(writer.buffer) == encode_frame(b"p1", Opcode.PONG)

    @pytest.mark.asyncio
    async def test_pong_ignored(self):
        """Test unsolicited pongs are skipped."""
        data = encode_frame(b"", Opcode.PONG, mask_key=MASK) + encode_frame(b"y", mask_key=MASK)
        channel = WebSocketChannel(_reader(data), FakeWriter())
        assert await channel.receive() == b"y"

    @pytest.mark.asyncio
    async def test_close_frame_ends_stream(self):
        """Test a close frame reads as end of stream."""
        data = encode_frame(b"\x03\xe8", Opcode.CLOSE, mask_key=MASK)
        channel = WebSocketChannel(_reader(data), FakeWriter())
        assert await channel.receive() is None

    @pytest.mark.asyncio
    async def test_send_splits_large_payload(self):
        """Test sends over 65535 bytes span several frames."""
        writer = FakeWriter()
        channel = WebSocketChannel(_reader(b""), writer)
        await channel.send(b"z" * 70000)
        expected = encode_frame(b"z" * 65535) + encode_frame(b"z" * 4465)
        assert bytes(writer.buffer) == expected

    @pytest.mark.asyncio
    async def test_close_once(self):
        """Test close sends a single close frame."""
        writer = FakeWriter()
        channel = WebSocketChannel(_reader(b""), writer)
        await channel.close(CloseCode.PROTOCOL_ERROR)
        await channel.close()
        assert bytes(writer.buffer) == encode_frame(b"\x03\xea", Opcode.CLOSE)
        assert writer.closed and channel.closed

    @pytest.mark.asyncio
    async def test_unmasked_frame_is_protocol_error(self):
        """Test a session over an unmasked client stream."""
        writer = FakeWriter()
        channel = WebSocketChannel(_reader(encode_frame(b"x" * 30)), writer)
        session = RelaySession(channel, identity=IDENTITY)
        assert await session.run() == CloseReason.PROTOCOL_ERROR
        assert bytes(writer.buffer).startswith(b"\x88\x02\x03\xea")
