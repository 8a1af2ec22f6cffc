import socket
import threading
import logging
from typing import List, Optional, Tuple

from .exceptions import RelayError
from .models import ConnectTarget, HTTPResponse
from .observer import ProxyObserver

logger = logging.getLogger(__name__)

CLIENT_TO_UPSTREAM = "client->upstream"
UPSTREAM_TO_CLIENT = "upstream->client"


class TunnelEngine:
    """Dials CONNECT targets and relays bytes between client and upstream."""

    def __init__(self, buffer_size: int = 16384,
                 connect_timeout: Optional[float] = None,
                 observer: Optional[ProxyObserver] = None):
        """
        Initialize the tunnel engine.

        Args:
            buffer_size: Bytes requested per recv call while relaying
            connect_timeout: Seconds allowed for the upstream dial; None waits
                as long as the OS does
            observer: Receives tunnel lifecycle events
        """
        self._buffer_size = buffer_size
        self._connect_timeout = connect_timeout
        self._observer = observer or ProxyObserver()

    @property
    def observer(self) -> ProxyObserver:
        return self._observer

    @observer.setter
    def observer(self, observer: ProxyObserver) -> None:
        self._observer = observer

    def dial(self, target: ConnectTarget) -> socket.socket:
        """Open a plain TCP connection to the target."""
        upstream = socket.create_connection(target.address, timeout=self._connect_timeout)
        upstream.settimeout(None)
        return upstream

    def run(self, client_socket: socket.socket, target: ConnectTarget,
            client_address: Tuple[str, int], pending: bytes = b'') -> bool:
        """
        Serve a CONNECT request end to end.

        Either the client gets a 200 followed by a relay, or a 502 and
        nothing else.

        Args:
            client_socket: Socket object for client connection
            target: Host and port to dial
            client_address: Tuple of client's IP and port
            pending: Bytes the client sent after the request head

        Returns:
            True if a tunnel was established
        """
        self._observer.connect_request(target)
        try:
            upstream = self.dial(target)
        except OSError as e:
            self._observer.connection_failed(target, e)
            client_socket.sendall(HTTPResponse.bad_gateway().to_bytes())
            return False

        with upstream:
            self._observer.connection_established(target)
            client_socket.sendall(HTTPResponse.connection_established().to_bytes())
            if pending:
                upstream.sendall(pending)
            self.relay(client_socket, upstream)

        self._observer.tunnel_closed(target)
        logger.debug(f"Tunnel for {client_address} to {target} finished")
        return True

    def relay(self, client_socket: socket.socket, upstream_socket: socket.socket) -> None:
        """
        Copy bytes in both directions until both reach end-of-stream.

        End-of-stream in one direction half-closes the destination and the
        other direction keeps draining. An error in either direction tears
        down both sockets.

        Raises:
            RelayError: naming the direction that failed first
        """
        errors: List[RelayError] = []
        lock = threading.Lock()

        def abort(direction: str, error: OSError) -> None:
            with lock:
                errors.append(RelayError(direction, error))
            for sock in (client_socket, upstream_socket):
                try:
                    sock.shutdown(socket.SHUT_RDWR)
                except OSError:
                    # Already disconnected.
                    pass

        def pipe(source: socket.socket, destination: socket.socket, direction: str) -> None:
            try:
                while True:
                    data = source.recv(self._buffer_size)
                    if not data:
                        break
                    destination.sendall(data)
            except OSError as e:
                abort(direction, e)
                return

            try:
                destination.shutdown(socket.SHUT_WR)
            except OSError:
                # The peer is gone; the other direction will notice.
                pass

        threads = [
            threading.Thread(target=pipe, args=(client_socket, upstream_socket, CLIENT_TO_UPSTREAM)),
            threading.Thread(target=pipe, args=(upstream_socket, client_socket, UPSTREAM_TO_CLIENT)),
        ]
        for thread in threads:
            thread.daemon = True
            thread.start()
        for thread in threads:
            thread.join()

        if errors:
            raise errors[0]
