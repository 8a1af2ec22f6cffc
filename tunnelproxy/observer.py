import logging
from typing import Optional, Tuple

from .models import (ConnectLog, ConnectTarget, HTTPRequest, RequestLog,
                     decode_buffer)


def format_address(address: Tuple) -> str:
    """Render a socket address as host:port."""
    try:
        return f"{address[0]}:{address[1]}"
    except (IndexError, TypeError):
        return str(address)


class ProxyObserver:
    """
    Writes human-readable lines describing proxy activity.

    Every method only formats and logs. Malformed input yields None and is
    never raised to the caller, so the observer can be called from any
    connection thread without affecting its control flow.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        """
        Initialize the observer.

        Args:
            logger: Logger to write to; defaults to "tunnelproxy.observer"
        """
        self._log = logger or logging.getLogger(__name__)

    def parse_and_log_http_request(self, buffer: bytes,
                                   client_address: Tuple[str, int]) -> Optional[RequestLog]:
        """
        Parse a request head and log its line and headers.

        Args:
            buffer: Raw bytes received from the client
            client_address: Tuple of client's IP and port

        Returns:
            RequestLog snapshot, or None if the buffer holds no request line
        """
        request = HTTPRequest.from_raw_data(decode_buffer(buffer))
        if not request:
            self._log.info(f"Unrecognized request from {format_address(client_address)}")
            return None

        entry = RequestLog(
            request_line=request.request_line,
            headers=dict(request.headers),
            client_address=client_address,
            raw=bytes(buffer)
        )
        self._log.info(
            f"[{entry.timestamp.isoformat()}] {request.method} {request.target} "
            f"{request.version} from {format_address(client_address)}"
        )
        self._log_headers(entry.headers)
        return entry

    def parse_and_log_connect_request(self, buffer: bytes,
                                      client_address: Tuple[str, int]) -> Optional[ConnectLog]:
        """
        Parse a CONNECT request head and log its target and headers.

        Returns:
            ConnectLog snapshot, or None if the buffer is not a valid CONNECT
        """
        request = HTTPRequest.from_raw_data(decode_buffer(buffer))
        if not request or request.method != "CONNECT":
            return None
        target = ConnectTarget.parse(request.target)
        if not target:
            self._log.info(
                f"Invalid CONNECT target {request.target!r} from {format_address(client_address)}"
            )
            return None

        entry = ConnectLog(
            target=target,
            version=request.version,
            headers=dict(request.headers),
            client_address=client_address,
            raw=bytes(buffer)
        )
        self._log.info(
            f"[{entry.timestamp.isoformat()}] CONNECT {target} {request.version} "
            f"from {format_address(client_address)}"
        )
        self._log_headers(entry.headers)
        return entry

    def _log_headers(self, headers) -> None:
        for name, value in headers.items():
            self._log.info(f"    {name}: {value}")

    def proxy_started(self, host: str, port: int) -> None:
        self._log.info(f"Proxy listening on {host}:{port}")

    def connection_accepted(self, client_address: Tuple[str, int]) -> None:
        self._log.info(f"Accepted connection from {format_address(client_address)}")

    def connect_request(self, target: ConnectTarget) -> None:
        self._log.info(f"Opening tunnel to {target.host} port {target.port}")

    def connection_established(self, target: ConnectTarget) -> None:
        self._log.info(f"Tunnel established to {target}")

    def connection_failed(self, target: ConnectTarget, error: Exception) -> None:
        self._log.warning(f"Failed to connect to {target}: {error}")

    def tunnel_closed(self, target: ConnectTarget) -> None:
        self._log.info(f"Tunnel to {target} closed")

    def connection_closed(self, client_address: Tuple[str, int], elapsed: float) -> None:
        self._log.info(f"Closed connection from {format_address(client_address)} after {elapsed:.3f}s")

    def error(self, context: str, error: Exception) -> None:
        self._log.error(f"Error in {context}: {error}")
