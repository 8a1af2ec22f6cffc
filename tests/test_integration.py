import unittest
import threading
import socket
import socketserver
import logging
import requests
import sys
import os

# Add the parent directory to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tunnelproxy.handler import RequestHandler
from tunnelproxy.server import ProxyServer
from tunnelproxy.tunnel import TunnelEngine

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"
BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\n\r\n"


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    data = bytearray()
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data.extend(chunk)
    return bytes(data)


def read_all(sock: socket.socket) -> bytes:
    data = bytearray()
    while True:
        chunk = sock.recv(4096)
        if not chunk:
            return bytes(data)
        data.extend(chunk)


def unused_port() -> int:
    """Return a loopback port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class UpstreamHandler(socketserver.BaseRequestHandler):
    """Upstream that reads until the client half-closes, then answers."""

    def handle(self):
        data = read_all(self.request)
        self.server.received.append(data)
        self.request.sendall(b"pong:" + data)


class HangingTunnel(TunnelEngine):
    """Tunnel whose dial blocks until released, then fails."""

    def __init__(self):
        super().__init__()
        self.dialing = threading.Event()
        self.release = threading.Event()

    def dial(self, target):
        self.dialing.set()
        self.release.wait(10)
        raise ConnectionRefusedError(f"dial to {target} released")


class FailFirstSpawnServer(ProxyServer):
    """Proxy whose first handler thread fails to start."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.spawn_failures = 0

    def _start_handler_thread(self, client_socket, client_address, accepted_at):
        if self.spawn_failures == 0:
            self.spawn_failures += 1
            raise RuntimeError("can't start new thread")
        super()._start_handler_thread(client_socket, client_address, accepted_at)


def start_proxy(server_class=ProxyServer, **kwargs):
    proxy = server_class(host="127.0.0.1", port=0, **kwargs)
    proxy.bind()
    thread = threading.Thread(target=proxy.serve_forever)
    thread.daemon = True
    thread.start()
    return proxy, thread


def stop_proxy(proxy, thread):
    proxy.shutdown()
    thread.join(timeout=5)


class TestTunnelProxyIntegration(unittest.TestCase):
    """Integration tests for ProxyServer over loopback sockets."""

    @classmethod
    def setUpClass(cls):
        """Set up test environment once before all tests."""
        logger.info("Starting test setup...")

        # Start upstream server
        cls.upstream = socketserver.ThreadingTCPServer(("127.0.0.1", 0), UpstreamHandler)
        cls.upstream.daemon_threads = True
        cls.upstream.received = []
        cls.upstream_port = cls.upstream.server_address[1]
        cls.upstream_thread = threading.Thread(target=cls.upstream.serve_forever)
        cls.upstream_thread.daemon = True
        cls.upstream_thread.start()
        logger.info("Upstream server started")

        # Start proxy server
        cls.proxy, cls.proxy_thread = start_proxy()
        cls.proxy_port = cls.proxy.port
        logger.info("Proxy server started")

    def setUp(self):
        self.client = socket.create_connection(("127.0.0.1", self.proxy_port), timeout=5)

    def tearDown(self):
        self.client.close()

    def test_connect_tunnel_relays_bytes(self):
        """Test CONNECT to a reachable target followed by a transparent relay."""
        # Arrange
        payload = b"\x16\x03\x01 opaque \x00\xff bytes"
        self.client.sendall(
            f"CONNECT 127.0.0.1:{self.upstream_port} HTTP/1.1\r\n"
            f"Host: 127.0.0.1:{self.upstream_port}\r\n\r\n".encode()
        )

        # Act
        status = recv_exactly(self.client, len(ESTABLISHED))
        self.client.sendall(payload)
        self.client.shutdown(socket.SHUT_WR)
        reply = read_all(self.client)

        # Assert
        self.assertEqual(status, ESTABLISHED)
        self.assertEqual(reply, b"pong:" + payload)
        self.assertIn(payload, self.upstream.received)
        logger.info("[PASSED] test_connect_tunnel_relays_bytes")

    def test_connect_forwards_bytes_sent_with_head(self):
        """Test that bytes arriving together with the CONNECT head are not lost."""
        # Act
        self.client.sendall(
            f"CONNECT 127.0.0.1:{self.upstream_port} HTTP/1.1\r\n\r\nearly-".encode()
        )
        status = recv_exactly(self.client, len(ESTABLISHED))
        self.client.sendall(b"late")
        self.client.shutdown(socket.SHUT_WR)
        reply = read_all(self.client)

        # Assert
        self.assertEqual(status, ESTABLISHED)
        self.assertEqual(reply, b"pong:early-late")
        logger.info("[PASSED] test_connect_forwards_bytes_sent_with_head")

    def test_connect_unreachable_target(self):
        """Test CONNECT to a port with no listener."""
        # Act
        self.client.sendall(f"CONNECT 127.0.0.1:{unused_port()} HTTP/1.1\r\n\r\n".encode())
        response = read_all(self.client)

        # Assert
        self.assertEqual(response, BAD_GATEWAY)
        logger.info("[PASSED] test_connect_unreachable_target")

    def test_connect_invalid_target(self):
        """Test CONNECT whose target has no port."""
        self.client.sendall(b"CONNECT example.com HTTP/1.1\r\n\r\n")
        self.assertEqual(read_all(self.client), BAD_GATEWAY)

    def test_redirect_for_plain_request(self):
        """Test a non-CONNECT request is answered with a redirect to its target."""
        # Arrange
        proxy_url = f"http://127.0.0.1:{self.proxy_port}/index.html"

        # Act
        response = requests.get(proxy_url, allow_redirects=False, timeout=5)

        # Assert
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["Location"], "/index.html")
        self.assertEqual(response.content, b"")
        logger.info("[PASSED] test_redirect_for_plain_request")

    def test_redirect_keeps_absolute_target_verbatim(self):
        """Test an absolute-form target sent by a proxy-aware client is echoed as is."""
        # Act
        response = requests.get(
            "http://example.com/search?q=a%20b",
            proxies={"http": f"http://127.0.0.1:{self.proxy_port}"},
            allow_redirects=False,
            timeout=5
        )

        # Assert
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["Location"], "http://example.com/search?q=a%20b")
        logger.info("[PASSED] test_redirect_keeps_absolute_target_verbatim")

    def test_empty_connection(self):
        """Test that a client sending nothing gets nothing back."""
        self.client.shutdown(socket.SHUT_WR)
        self.assertEqual(read_all(self.client), b"")

    def test_malformed_request(self):
        """Test an unparseable request line gets a 400."""
        self.client.sendall(b"HELLO\r\n\r\n")
        response = read_all(self.client)
        self.assertTrue(response.startswith(b"HTTP/1.1 400 Bad Request\r\n"))

    def test_multiple_concurrent_requests(self):
        """Test handling multiple concurrent requests."""
        # Arrange
        def make_request():
            try:
                response = requests.get(
                    f"http://127.0.0.1:{self.proxy_port}/concurrent",
                    allow_redirects=False,
                    timeout=30
                )
                return response.status_code
            except requests.RequestException as e:
                logger.error(f"Concurrent request failed: {e}")
                return None

        # Act
        num_requests = 5
        threads = []
        results = []
        for _ in range(num_requests):
            thread = threading.Thread(
                target=lambda: results.append(make_request())
            )
            threads.append(thread)
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        # Assert
        self.assertEqual(results, [302] * num_requests)
        logger.info("[PASSED] test_multiple_concurrent_requests")

    @classmethod
    def tearDownClass(cls):
        """Clean up after all tests."""
        logger.info("Starting test cleanup...")
        stop_proxy(cls.proxy, cls.proxy_thread)
        cls.upstream.shutdown()
        cls.upstream.server_close()
        cls.upstream_thread.join(timeout=5)
        logger.info("Cleanup complete")


class TestConnectionIsolation(unittest.TestCase):
    """Tests where one connection is stuck dialing its upstream."""

    def setUp(self):
        self.tunnel = HangingTunnel()
        self.clients = []

    def tearDown(self):
        self.tunnel.release.set()
        for client in self.clients:
            client.close()
        stop_proxy(self.proxy, self.proxy_thread)

    def _connect(self) -> socket.socket:
        client = socket.create_connection(("127.0.0.1", self.proxy.port), timeout=5)
        self.clients.append(client)
        return client

    def _hang_first_connection(self) -> socket.socket:
        stuck = self._connect()
        stuck.sendall(b"CONNECT hangs.example:443 HTTP/1.1\r\n\r\n")
        self.assertTrue(self.tunnel.dialing.wait(5))
        return stuck

    def test_hanging_dial_does_not_block_accept(self):
        # Arrange
        self.proxy, self.proxy_thread = start_proxy(handler=RequestHandler(tunnel=self.tunnel))
        stuck = self._hang_first_connection()

        # Act
        other = self._connect()
        other.sendall(b"GET /still-served HTTP/1.1\r\n\r\n")
        response = read_all(other)

        # Assert
        self.assertTrue(response.startswith(b"HTTP/1.1 302 Found\r\n"))
        self.assertIn(b"Location: /still-served\r\n", response)

        # Once released the stuck dial fails and that client gets its 502
        self.tunnel.release.set()
        self.assertEqual(read_all(stuck), BAD_GATEWAY)

    def test_connection_limit_rejects_excess(self):
        # Arrange
        self.proxy, self.proxy_thread = start_proxy(
            handler=RequestHandler(tunnel=self.tunnel),
            max_connections=1
        )
        self._hang_first_connection()

        # Act
        rejected = self._connect()
        response = read_all(rejected)

        # Assert
        self.assertEqual(response, b"")

    def test_bind_failure_raises(self):
        self.proxy, self.proxy_thread = start_proxy()
        duplicate = ProxyServer(host="127.0.0.1", port=self.proxy.port)
        self.addCleanup(duplicate.server_socket.close)
        with self.assertRaises(OSError):
            duplicate.bind()


class TestAcceptLoopResilience(unittest.TestCase):
    """Failures on one connection must leave the accept loop serving."""

    def setUp(self):
        # One slot, so a slot lost on the failed spawn would reject the next client
        self.proxy, self.proxy_thread = start_proxy(
            server_class=FailFirstSpawnServer,
            max_connections=1
        )

    def tearDown(self):
        stop_proxy(self.proxy, self.proxy_thread)

    def test_spawn_failure_drops_only_that_connection(self):
        # Arrange
        failed = socket.create_connection(("127.0.0.1", self.proxy.port), timeout=5)
        self.addCleanup(failed.close)

        # Act
        dropped_response = read_all(failed)
        response = requests.get(
            f"http://127.0.0.1:{self.proxy.port}/after-failure",
            allow_redirects=False,
            timeout=5
        )

        # Assert
        self.assertEqual(self.proxy.spawn_failures, 1)
        self.assertEqual(dropped_response, b"")
        self.assertTrue(self.proxy_thread.is_alive())
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["Location"], "/after-failure")
        logger.info("[PASSED] test_spawn_failure_drops_only_that_connection")


if __name__ == '__main__':
    unittest.main(verbosity=2)
