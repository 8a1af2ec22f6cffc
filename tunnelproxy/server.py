import socket
import threading
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from .handler import RequestHandler

logger = logging.getLogger(__name__)


class ProxyServer:
    """Accept loop: one handler thread per incoming connection."""

    def __init__(self, host: str = "0.0.0.0", port: int = 3000,
                 handler: Optional[RequestHandler] = None,
                 max_connections: Optional[int] = None,
                 backlog: int = 128):
        """
        Initialize the proxy server.

        Args:
            host: Host address to bind the proxy
            port: Port number to listen on; 0 picks a free port at bind time
            handler: Serves each accepted connection
            max_connections: Concurrent connection limit; None for no limit
            backlog: Listen queue length
        """
        self._host = host
        self._port = port
        self._backlog = backlog
        self._max_connections = max_connections

        # Initialize server socket
        self._server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        # Initialize request handler
        self._handler = handler or RequestHandler()

        self._slots = threading.BoundedSemaphore(max_connections) if max_connections else None
        self._bound = False
        self._running = False

    @property
    def host(self) -> str:
        """Get the host address."""
        return self._host

    @property
    def port(self) -> int:
        """Get the port number."""
        return self._port

    @property
    def max_connections(self) -> Optional[int]:
        return self._max_connections

    @property
    def server_socket(self) -> socket.socket:
        """Get the server socket."""
        return self._server_socket

    def bind(self) -> None:
        """
        Bind and start listening.

        Raises:
            OSError: if the address cannot be bound
        """
        self._server_socket.bind((self._host, self._port))
        self._server_socket.listen(self._backlog)
        self._port = self._server_socket.getsockname()[1]
        self._bound = True
        self._handler.observer.proxy_started(self._host, self._port)

    def start(self) -> None:
        """Bind, then serve until shutdown."""
        self.bind()
        self.serve_forever()

    def serve_forever(self) -> None:
        """Accept connections until shutdown is called."""
        if not self._bound:
            self.bind()
        self._running = True
        try:
            while self._running:
                try:
                    client_socket, client_address = self._server_socket.accept()
                    accepted_at = datetime.now(timezone.utc)
                except OSError as e:
                    if self._server_socket.fileno() == -1:
                        break
                    if self._running:  # Only log if we're still meant to be running
                        self._handler.observer.error("accepting connection", e)
                    continue

                if not self._running:
                    client_socket.close()
                    break

                self._handler.observer.connection_accepted(client_address)
                self._spawn(client_socket, client_address, accepted_at)
        finally:
            self._server_socket.close()

    def _spawn(self, client_socket: socket.socket, client_address: Tuple[str, int],
               accepted_at: datetime) -> None:
        if self._slots and not self._slots.acquire(blocking=False):
            logger.warning(f"Connection limit of {self._max_connections} reached; "
                           f"rejecting {client_address[0]}:{client_address[1]}")
            client_socket.close()
            return

        try:
            self._start_handler_thread(client_socket, client_address, accepted_at)
        except Exception as e:
            # The connection is dropped; the accept loop keeps running.
            if self._slots:
                self._slots.release()
            client_socket.close()
            self._handler.observer.error("spawning handler", e)

    def _start_handler_thread(self, client_socket: socket.socket,
                              client_address: Tuple[str, int],
                              accepted_at: datetime) -> None:
        # Handle each client in a separate thread
        thread = threading.Thread(
            target=self._serve_client,
            args=(client_socket, client_address, accepted_at)
        )
        thread.daemon = True
        thread.start()

    def _serve_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int],
                      accepted_at: datetime) -> None:
        try:
            self._handler.handle_client(client_socket, client_address, accepted_at)
        finally:
            if self._slots:
                self._slots.release()

    def shutdown(self) -> None:
        """Shutdown the proxy server gracefully."""
        self._running = False
        if self._bound:
            # Create a dummy connection to unblock accept()
            wake_host = "127.0.0.1" if self._host in ("", "0.0.0.0") else self._host
            try:
                with socket.create_connection((wake_host, self._port), timeout=1):
                    pass
            except OSError:
                # Accept loop already stopped.
                pass
        self._server_socket.close()
