import json
import os
import shutil
import socket
import ssl
import tempfile

import pytest
import tornado.web
from tornado import gen, httputil
from tornado.concurrent import Future
from tornado.iostream import IOStream, StreamClosedError
from tornado.tcpclient import TCPClient
from tornado.tcpserver import TCPServer
from tornado.testing import AsyncHTTPTestCase, bind_unused_port, gen_test

from ssltunnel.credentials import ensure_credentials
from ssltunnel.proxyserver import ProxyRoute, ProxyServer, server_ssl_context
from ssltunnel.session import (
    Exchange,
    Session,
    error_response,
    forwarded_request_headers,
    strip_hop_by_hop,
)


class HelloHandler(tornado.web.RequestHandler):
    def get(self):
        self.write("hello")

    def post(self):
        self.set_status(201)
        self.write(self.request.body)


class HostHandler(tornado.web.RequestHandler):
    def get(self):
        self.write(self.request.headers["Host"])


class HeadersHandler(tornado.web.RequestHandler):
    def get(self):
        self.set_header("Keep-Alive", "timeout=5")
        self.write(json.dumps({
            "x-forwarded-for": self.request.headers.get("X-Forwarded-For"),
            "proxy-authorization": self.request.headers.get("Proxy-Authorization"),
            "x-private": self.request.headers.get("X-Private"),
            "x-public": self.request.headers.get("X-Public"),
        }))


class ScriptedBackend(TCPServer):
    """
    Reads one request head, then either closes (reply=b""), sends reply and
    closes, or keeps the connection open without answering (reply=None).
    """
    def __init__(self, reply):
        super().__init__()
        self.reply = reply
        self.streams = []

    async def handle_stream(self, stream, address):
        self.streams.append(stream)
        try:
            await stream.read_until(b"\r\n\r\n")
            if self.reply is None:
                return
            if self.reply:
                await stream.write(self.reply)
        except StreamClosedError:
            return
        stream.close()


class StalledClient(object):
    def connect(self, host, port):
        return Future()


def unused_port():
    sock, port = bind_unused_port()
    sock.close()
    return port


def insecure_client_context():
    ctx = ssl.create_default_context()
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


async def read_to_end(stream):
    try:
        return await stream.read_until_close()
    except StreamClosedError:
        return b""


class ProxyServerTest(AsyncHTTPTestCase):
    def get_app(self):
        return tornado.web.Application([
            (r"/", HelloHandler),
            (r"/host", HostHandler),
            (r"/headers", HeadersHandler),
        ])

    def setUp(self):
        super().setUp()
        self.tmpdir = tempfile.mkdtemp()
        key_path = os.path.join(self.tmpdir, "key")
        cert_path = os.path.join(self.tmpdir, "cert")
        ensure_credentials(key_path, cert_path, ["localhost"])
        self.ssl_ctx = server_ssl_context(cert_path, key_path)
        self.proxies = []
        self.backends = []

    def tearDown(self):
        for proxy in self.proxies:
            proxy.stop()
        for backend in self.backends:
            backend.stop()
            for stream in backend.streams:
                stream.close()
        super().tearDown()
        shutil.rmtree(self.tmpdir)

    def backend_route(self):
        return ProxyRoute("127.0.0.1", self.get_http_port())

    def scripted_backend(self, reply):
        sock, port = bind_unused_port()
        backend = ScriptedBackend(reply)
        backend.add_sockets([sock])
        self.backends.append(backend)
        return ProxyRoute("127.0.0.1", port)

    def start_proxy(self, route, **kwargs):
        sock, port = bind_unused_port()
        proxy = ProxyServer(route, ssl_options=self.ssl_ctx, **kwargs)
        proxy.add_sockets([sock])
        self.proxies.append(proxy)
        return proxy, port

    def fetch_tls(self, port, path="/", **kwargs):
        return self.http_client.fetch("https://127.0.0.1:%d%s" % (port, path),
                                      validate_cert=False, raise_error=False, **kwargs)

    async def open_tls(self, port):
        return await TCPClient().connect("127.0.0.1", port, ssl_options=insecure_client_context())

    @gen_test
    async def test_relays_backend_response(self):
        _, port = self.start_proxy(self.backend_route())

        response = await self.fetch_tls(port)

        self.assertEqual(response.code, 200)
        self.assertEqual(response.body, b"hello")

    @gen_test
    async def test_relays_request_body(self):
        _, port = self.start_proxy(self.backend_route())

        response = await self.fetch_tls(port, method="POST", body=b"ping")

        self.assertEqual(response.code, 201)
        self.assertEqual(response.body, b"ping")

    @gen_test
    async def test_host_header_reaches_backend_unchanged(self):
        _, port = self.start_proxy(self.backend_route())

        response = await self.fetch_tls(port, path="/host")

        self.assertEqual(response.body, ("127.0.0.1:%d" % port).encode())

    @gen_test
    async def test_forwarding_headers(self):
        _, port = self.start_proxy(self.backend_route())

        response = await self.fetch_tls(port, path="/headers", headers={
            "X-Forwarded-For": "10.0.0.1",
            "Proxy-Authorization": "Basic YTpi",
            "Connection": "close, X-Private",
            "X-Private": "secret",
            "X-Public": "visible",
        })

        seen = json.loads(response.body)
        self.assertEqual(seen["x-forwarded-for"], "10.0.0.1, 127.0.0.1")
        self.assertIsNone(seen["proxy-authorization"])
        self.assertIsNone(seen["x-private"])
        self.assertEqual(seen["x-public"], "visible")
        self.assertNotIn("Keep-Alive", response.headers)

    @gen_test
    async def test_keep_alive_requests_share_the_client_connection(self):
        _, port = self.start_proxy(self.backend_route())
        stream = await self.open_tls(port)

        await stream.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        head = await stream.read_until(b"\r\n\r\n")
        headers = httputil.HTTPHeaders.parse(head.decode("latin1").split("\r\n", 1)[1])
        first = await stream.read_bytes(int(headers["Content-Length"]))
        await stream.write(b"GET / HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n")
        second = await read_to_end(stream)

        self.assertTrue(head.startswith(b"HTTP/1.1 200"))
        self.assertEqual(first, b"hello")
        self.assertTrue(second.startswith(b"HTTP/1.1 200"))
        self.assertTrue(second.endswith(b"hello"))

    @gen_test
    async def test_unreachable_backend_gets_bad_gateway(self):
        _, port = self.start_proxy(ProxyRoute("127.0.0.1", unused_port()))

        response = await self.fetch_tls(port)

        self.assertEqual(response.code, 502)
        self.assertEqual(response.body, b"502 Bad Gateway\n")

    @gen_test
    async def test_missing_route_gets_bad_gateway(self):
        _, port = self.start_proxy(None)

        response = await self.fetch_tls(port)

        self.assertEqual(response.code, 502)

    @gen_test
    async def test_backend_closing_without_response_gets_bad_gateway(self):
        _, port = self.start_proxy(self.scripted_backend(b""))

        response = await self.fetch_tls(port)

        self.assertEqual(response.code, 502)

    @gen_test
    async def test_backend_sending_garbage_gets_bad_gateway(self):
        _, port = self.start_proxy(self.scripted_backend(b"nonsense\r\n\r\n"))

        response = await self.fetch_tls(port)

        self.assertEqual(response.code, 502)

    @gen_test
    async def test_response_cut_short_closes_client(self):
        reply = b"HTTP/1.1 200 OK\r\nContent-Length: 100\r\n\r\npartial"
        _, port = self.start_proxy(self.scripted_backend(reply))
        stream = await self.open_tls(port)

        await stream.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
        data = await read_to_end(stream)

        self.assertTrue(data.startswith(b"HTTP/1.1 200 OK"))
        self.assertTrue(data.endswith(b"partial"))
        self.assertTrue(stream.closed())

    @gen_test
    async def test_connect_timeout_gets_bad_gateway(self):
        _, port = self.start_proxy(self.backend_route(), connect_timeout=0.1,
                                   tcp_client=StalledClient())

        response = await self.fetch_tls(port)

        self.assertEqual(response.code, 502)

    @gen_test
    async def test_response_timeout_gets_gateway_timeout(self):
        _, port = self.start_proxy(self.scripted_backend(None), response_timeout=0.1)

        response = await self.fetch_tls(port)

        self.assertEqual(response.code, 504)

    @gen_test
    async def test_bad_gateway_does_not_affect_other_proxies(self):
        _, broken = self.start_proxy(ProxyRoute("127.0.0.1", unused_port()))
        _, working = self.start_proxy(self.backend_route())

        failed = await self.fetch_tls(broken)
        response = await self.fetch_tls(working)

        self.assertEqual(failed.code, 502)
        self.assertEqual(response.body, b"hello")

    @gen_test
    async def test_handshake_timeout_drops_silent_client(self):
        _, port = self.start_proxy(self.backend_route(), handshake_timeout=0.1)

        stream = await TCPClient().connect("127.0.0.1", port)
        data = await stream.read_until_close()

        self.assertEqual(data, b"")

    @gen_test
    async def test_idle_client_is_closed(self):
        _, port = self.start_proxy(self.backend_route(), idle_timeout=0.2)
        stream = await self.open_tls(port)

        data = await read_to_end(stream)

        self.assertEqual(data, b"")
        self.assertTrue(stream.closed())

    @gen_test
    async def test_slow_active_upload_outlives_idle_timeout(self):
        _, port = self.start_proxy(self.backend_route(), idle_timeout=0.5)
        stream = await self.open_tls(port)

        await stream.write(b"POST / HTTP/1.1\r\nHost: localhost\r\n"
                           b"Content-Length: 6\r\nConnection: close\r\n\r\n")
        for piece in (b"ab", b"cd", b"ef"):
            await gen.sleep(0.2)
            await stream.write(piece)
        data = await read_to_end(stream)

        self.assertTrue(data.startswith(b"HTTP/1.1 201"))
        self.assertTrue(data.endswith(b"abcdef"))

    def test_connections_over_the_limit_are_closed(self):
        proxy = ProxyServer(self.backend_route(), max_connections=1)
        proxy.SessionsList.append(Session())
        stream = IOStream(socket.socket())

        self.assertIsNone(proxy.handle_stream(stream, ("127.0.0.1", 12345)))

        self.assertTrue(stream.closed())
        self.assertEqual(proxy.get_connections_count(), 1)

    def test_close_while_backend_connect_is_pending(self):
        session = Session()
        session.exchange = Exchange(session, None)
        session.exchange.p2s_state = Session.State.CONNECTING

        session.p2s_start_close()

        self.assertEqual(session.p2s_state, Session.State.CLOSED)


def test_route_from_origin():
    route = ProxyRoute.from_origin("http://127.0.0.1:8080")

    assert route == ("127.0.0.1", 8080)
    assert str(route) == "127.0.0.1:8080"


def test_route_default_port():
    assert ProxyRoute.from_origin("http://localhost").port == 80


@pytest.mark.parametrize("origin", [
    "http://127.0.0.1:70000",
    "https://127.0.0.1:8080",
    "127.0.0.1:8080",
    "http://:8080",
])
def test_route_rejects_bad_origin(origin):
    with pytest.raises(ValueError):
        ProxyRoute.from_origin(origin)


def test_strip_hop_by_hop():
    headers = httputil.HTTPHeaders()
    headers["Connection"] = "keep-alive, X-Session"
    headers["Keep-Alive"] = "timeout=5"
    headers["Transfer-Encoding"] = "chunked"
    headers["X-Session"] = "1"
    headers.add("Set-Cookie", "a=1")
    headers.add("Set-Cookie", "b=2")

    stripped = strip_hop_by_hop(headers)

    assert list(stripped.get_all()) == [("Set-Cookie", "a=1"), ("Set-Cookie", "b=2")]


def test_forwarded_request_headers():
    headers = httputil.HTTPHeaders()
    headers["Host"] = "example.org"
    headers["Expect"] = "100-continue"
    headers["Upgrade"] = "websocket"

    forwarded = forwarded_request_headers(headers, "192.0.2.7")

    assert forwarded["Host"] == "example.org"
    assert forwarded["X-Forwarded-For"] == "192.0.2.7"
    assert forwarded["Connection"] == "close"
    assert "Expect" not in forwarded
    assert "Upgrade" not in forwarded


def test_error_response():
    start_line, headers, body = error_response(502)

    assert start_line == ("HTTP/1.1", 502, "Bad Gateway")
    assert headers["Content-Length"] == "16"
    assert body == b"502 Bad Gateway\n"


def test_error_response_to_head_has_no_body():
    start_line, headers, body = error_response(504, "HEAD")

    assert start_line.code == 504
    assert headers["Content-Length"] == str(len(b"504 Gateway Timeout\n"))
    assert body == b""
