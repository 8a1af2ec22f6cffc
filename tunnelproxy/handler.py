import socket
from datetime import datetime, timezone
from typing import Optional, Tuple

from .classifier import Classification, RequestClassifier, RequestKind
from .exceptions import RequestTooLarge
from .models import HTTPResponse
from .observer import ProxyObserver, format_address
from .responder import FallbackResponder
from .tunnel import TunnelEngine


class RequestHandler:
    """Handles processing of individual client connections."""

    def __init__(self, classifier: Optional[RequestClassifier] = None,
                 tunnel: Optional[TunnelEngine] = None,
                 responder: Optional[FallbackResponder] = None,
                 observer: Optional[ProxyObserver] = None):
        """
        Initialize the request handler.

        Args:
            classifier: Reads and classifies the request head
            tunnel: Serves CONNECT requests
            responder: Answers every other request
            observer: Receives request snapshots and lifecycle events
        """
        self._classifier = classifier or RequestClassifier()
        self._observer = observer or ProxyObserver()
        self._tunnel = tunnel or TunnelEngine()
        self._tunnel.observer = self._observer
        self._responder = responder or FallbackResponder()

    @property
    def observer(self) -> ProxyObserver:
        return self._observer

    def handle_client(self, client_socket: socket.socket,
                      client_address: Tuple[str, int],
                      accepted_at: Optional[datetime] = None) -> None:
        """
        Handle an individual client connection.

        Args:
            client_socket: Socket object for client connection
            client_address: Tuple of client's IP and port
            accepted_at: When the connection was accepted; defaults to now
        """
        accepted_at = accepted_at or datetime.now(timezone.utc)
        try:
            try:
                classification = self._classifier.read_and_classify(client_socket)
            except RequestTooLarge as e:
                self._observer.error(f"reading request from {format_address(client_address)}", e)
                self._send(client_socket, self._responder.too_large())
                return

            self._dispatch(client_socket, client_address, classification)

        except Exception as e:
            self._observer.error(f"client handling for {format_address(client_address)}", e)
        finally:
            client_socket.close()
            elapsed = (datetime.now(timezone.utc) - accepted_at).total_seconds()
            self._observer.connection_closed(client_address, elapsed)

    def _dispatch(self, client_socket: socket.socket, client_address: Tuple[str, int],
                  classification: Classification) -> None:
        kind = classification.kind

        if kind is RequestKind.EMPTY:
            # Empty probes are ignored without a response.
            return

        if kind is RequestKind.UNRECOGNIZED:
            self._observer.parse_and_log_http_request(classification.raw, client_address)
            self._send(client_socket, self._responder.bad_request())
            return

        if kind is RequestKind.INVALID_CONNECT:
            self._observer.parse_and_log_connect_request(classification.raw, client_address)
            self._send(client_socket, HTTPResponse.bad_gateway())
            return

        if kind is RequestKind.CONNECT:
            self._observer.parse_and_log_connect_request(classification.raw, client_address)
            self._tunnel.run(client_socket, classification.target, client_address,
                             pending=classification.remainder)
            return

        self._observer.parse_and_log_http_request(classification.raw, client_address)
        self._send(client_socket, self._responder.redirect(classification.request_line))

    def _send(self, client_socket: socket.socket, response: HTTPResponse) -> None:
        client_socket.sendall(response.to_bytes())
