from typing import Dict, List, Optional, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone


def decode_buffer(buffer: bytes) -> str:
    """Decode raw request bytes, substituting invalid sequences."""
    return buffer.decode('utf-8', errors='replace')


def split_lines(text: str) -> List[str]:
    """Split on LF and drop a trailing CR from every line."""
    return [line[:-1] if line.endswith('\r') else line for line in text.split('\n')]


def parse_headers(lines: List[str]) -> Dict[str, str]:
    """
    Build a header mapping from the lines following the request line.

    Parsing stops at the first empty line. Each line is split on its first
    colon; lines without one are dropped and later duplicates replace
    earlier ones.
    """
    headers = {}
    for line in lines:
        if not line.strip():
            break
        if ':' not in line:
            continue
        key, value = line.split(':', 1)
        headers[key.strip()] = value.strip()
    return headers


@dataclass(frozen=True)
class RequestLine:
    """The method, target and version from the first line of a request."""
    method: str
    target: str
    version: str

    @classmethod
    def parse(cls, line: str) -> Optional['RequestLine']:
        parts = line.split()
        if len(parts) < 3:
            return None
        return cls(method=parts[0], target=parts[1], version=parts[2])


@dataclass(frozen=True)
class ConnectTarget:
    """Host and port named by a CONNECT request."""
    host: str
    port: int

    @classmethod
    def parse(cls, target: str) -> Optional['ConnectTarget']:
        """Split on the last colon; the port must fit in 16 bits."""
        host, sep, port = target.rpartition(':')
        if not sep or not host or not (port.isascii() and port.isdigit()):
            return None
        port_number = int(port)
        if port_number > 0xFFFF:
            return None
        return cls(host=host, port=port_number)

    @property
    def address(self) -> Tuple[str, int]:
        """Address tuple suitable for socket.create_connection."""
        host = self.host
        if host.startswith('[') and host.endswith(']'):
            host = host[1:-1]
        return host, self.port

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class HTTPRequest:
    """Model representing an HTTP request head."""
    method: str
    target: str
    version: str
    headers: Dict[str, str]

    @property
    def request_line(self) -> RequestLine:
        return RequestLine(self.method, self.target, self.version)

    @classmethod
    def from_raw_data(cls, request_data: str) -> Optional['HTTPRequest']:
        """Create HTTPRequest instance from raw request data."""
        lines = split_lines(request_data)
        request_line = RequestLine.parse(lines[0])
        if not request_line:
            return None

        return cls(
            method=request_line.method,
            target=request_line.target,
            version=request_line.version,
            headers=parse_headers(lines[1:])
        )


@dataclass
class HTTPResponse:
    """Model representing an HTTP response."""
    status_code: int
    status_message: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Union[str, bytes] = b''

    def to_bytes(self) -> bytes:
        """Render the response for the wire."""
        body = self.body.encode('utf-8') if isinstance(self.body, str) else self.body
        head = f"HTTP/1.1 {self.status_code} {self.status_message}\r\n"
        head += ''.join(f"{k}: {v}\r\n" for k, v in self.headers.items())
        head += "\r\n"
        return head.encode('utf-8') + body

    @classmethod
    def create_error(cls, status_code: int, message: str) -> 'HTTPResponse':
        """Create an error response."""
        return cls(
            status_code=status_code,
            status_message=message,
            headers={
                'Content-Type': 'text/plain',
                'Content-Length': str(len(message)),
                'Connection': 'close'
            },
            body=message
        )

    @classmethod
    def create_redirect(cls, location: str) -> 'HTTPResponse':
        """Create a 302 response pointing at the given location."""
        return cls(
            status_code=302,
            status_message="Found",
            headers={
                'Location': location,
                'Content-Length': '0',
                'Connection': 'close'
            }
        )

    @classmethod
    def connection_established(cls) -> 'HTTPResponse':
        return cls(status_code=200, status_message="Connection Established")

    @classmethod
    def bad_gateway(cls) -> 'HTTPResponse':
        return cls(status_code=502, status_message="Bad Gateway")


@dataclass(frozen=True)
class RequestLog:
    """Snapshot of a non-CONNECT request, handed to the observer."""
    request_line: RequestLine
    headers: Dict[str, str]
    client_address: Tuple[str, int]
    raw: bytes
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ConnectLog:
    """Snapshot of a CONNECT request, handed to the observer."""
    target: ConnectTarget
    version: str
    headers: Dict[str, str]
    client_address: Tuple[str, int]
    raw: bytes
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
