import asyncio
import ssl

import pytest

from libs.proxy import DefaultProxyRouter, ProxyRoute, ProxyRouter, ProxyTarget
from libs.tunnel import TunnelError, TunnelRelay, open_http_tunnel


class FakeHttpProxy:
    """Answers CONNECT with ``status`` and then echoes the tunnelled bytes."""

    def __init__(self, status="200 Connection established"):
        self.status = status
        self.requests = []
        self._server = None
        self.port = None

    async def start(self):
        self._server = await asyncio.start_server(self._handle, host="127.0.0.1", port=0)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def _handle(self, reader, writer):
        head = await reader.readuntil(b"\r\n\r\n")
        self.requests.append(head.decode("latin-1").split("\r\n", 1)[0])
        writer.write(f"HTTP/1.1 {self.status}\r\n\r\n".encode("ascii"))
        await writer.drain()
        if not self.status.startswith("2"):
            writer.close()
            return
        while True:
            data = await reader.read(1024)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        writer.close()

    async def close(self):
        self._server.close()
        await self._server.wait_closed()


class RecordingDefault(DefaultProxyRouter):
    def __init__(self):
        self.failures = []

    def select(self, uri):
        return [ProxyRoute.direct()]

    def connect_failed(self, uri, address, error):
        self.failures.append((uri, address, error))


@pytest.mark.asyncio
async def test_open_http_tunnel_sends_connect_and_pipes_bytes():
    proxy = await FakeHttpProxy().start()
    reader, writer = await open_http_tunnel(("127.0.0.1", proxy.port), ("broker.example", 5672), timeout=2)
    writer.write(b"AMQP\x00\x00\x09\x01")
    await writer.drain()
    echoed = await asyncio.wait_for(reader.readexactly(8), timeout=2)
    writer.close()
    await proxy.close()

    assert echoed == b"AMQP\x00\x00\x09\x01"
    assert proxy.requests == ["CONNECT broker.example:5672 HTTP/1.1"]


@pytest.mark.asyncio
async def test_open_http_tunnel_rejects_refusal():
    proxy = await FakeHttpProxy(status="403 Forbidden").start()
    with pytest.raises(TunnelError) as excinfo:
        await open_http_tunnel(("127.0.0.1", proxy.port), ("broker.example", 5672), timeout=2)
    await proxy.close()
    assert "403" in str(excinfo.value)


@pytest.mark.asyncio
async def test_relay_forwards_through_selected_proxy():
    proxy = await FakeHttpProxy().start()
    router = ProxyRouter(ProxyTarget("127.0.0.1", proxy.port), RecordingDefault())
    relay = TunnelRelay(router, ("broker.example", 5671), scheme="amqps")
    port = await relay.start()

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"hello")
    await writer.drain()
    echoed = await asyncio.wait_for(reader.readexactly(5), timeout=2)
    writer.close()
    await relay.close()
    await proxy.close()

    assert echoed == b"hello"
    assert relay.uri == "amqps://broker.example:5671"
    assert proxy.requests == ["CONNECT broker.example:5671 HTTP/1.1"]


@pytest.mark.asyncio
async def test_relay_reports_failed_tunnel_to_router():
    proxy = await FakeHttpProxy(status="502 Bad Gateway").start()
    default = RecordingDefault()
    router = ProxyRouter(ProxyTarget("127.0.0.1", proxy.port), default)
    relay = TunnelRelay(router, ("broker.example", 5672))
    port = await relay.start()

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    leftover = await asyncio.wait_for(reader.read(), timeout=2)
    writer.close()
    await relay.close()
    await proxy.close()

    assert leftover == b""
    assert len(default.failures) == 1
    uri, address, error = default.failures[0]
    assert uri == "amqp://broker.example:5672"
    assert address == ("127.0.0.1", proxy.port)
    assert isinstance(error, TunnelError)


@pytest.mark.asyncio
async def test_relay_close_is_idempotent():
    relay = TunnelRelay(ProxyRouter(), ("broker.example", 5672))
    await relay.start()
    await relay.close()
    await relay.close()


@pytest.mark.asyncio
async def test_relay_starts_tls_against_broker_hostname(monkeypatch):
    handshakes = []

    async def fake_start_tls(self, sslcontext, *, server_hostname=None, ssl_handshake_timeout=None):
        handshakes.append((sslcontext, server_hostname))

    monkeypatch.setattr(asyncio.StreamWriter, "start_tls", fake_start_tls)
    proxy = await FakeHttpProxy().start()
    context = ssl.create_default_context()
    router = ProxyRouter(ProxyTarget("127.0.0.1", proxy.port), RecordingDefault())
    relay = TunnelRelay(router, ("broker.example", 5671), scheme="amqps", ssl_context=context)
    port = await relay.start()

    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"AMQP")
    await writer.drain()
    echoed = await asyncio.wait_for(reader.readexactly(4), timeout=2)
    writer.close()
    await relay.close()
    await proxy.close()

    assert echoed == b"AMQP"
    assert handshakes == [(context, "broker.example")]
    assert proxy.requests == ["CONNECT broker.example:5671 HTTP/1.1"]
