import enum
import socket
import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from .exceptions import RequestTooLarge
from .models import ConnectTarget, RequestLine, decode_buffer, split_lines

logger = logging.getLogger(__name__)

HEAD_TERMINATORS = (b'\r\n\r\n', b'\n\n')


class RequestKind(enum.Enum):
    EMPTY = "empty"
    UNRECOGNIZED = "unrecognized"
    CONNECT = "connect"
    INVALID_CONNECT = "invalid_connect"
    HTTP = "http"


@dataclass(frozen=True)
class Classification:
    """Result of inspecting the head of a new connection."""
    kind: RequestKind
    raw: bytes = b''
    request_line: Optional[RequestLine] = None
    target: Optional[ConnectTarget] = None
    remainder: bytes = b''


def find_head_end(data: bytes) -> int:
    """Return the offset just past the head terminator, or -1."""
    ends = []
    for terminator in HEAD_TERMINATORS:
        index = data.find(terminator)
        if index != -1:
            ends.append(index + len(terminator))
    return min(ends) if ends else -1


class RequestClassifier:
    """Reads the request head from a new connection and decides how to serve it."""

    def __init__(self, buffer_size: int = 1024, max_request_size: int = 65536):
        """
        Initialize the classifier.

        Args:
            buffer_size: Bytes requested per recv call
            max_request_size: Largest head accepted before giving up
        """
        self._buffer_size = buffer_size
        self._max_request_size = max_request_size

    def read_head(self, client_socket: socket.socket) -> Tuple[bytes, bytes]:
        """
        Read until the end of the request head or end-of-stream.

        Reading stops early once the first line is complete and is not a
        valid request line.

        Returns:
            The head (terminator included) and any bytes received after it

        Raises:
            RequestTooLarge: if no terminator arrives within max_request_size
        """
        request_data = bytearray()
        while True:
            chunk = client_socket.recv(self._buffer_size)
            if not chunk:
                break
            request_data.extend(chunk)

            end = find_head_end(request_data)
            if end != -1:
                return bytes(request_data[:end]), bytes(request_data[end:])

            # A first line that cannot be a request line is answered at once
            line_end = request_data.find(b'\n')
            if line_end != -1 and not RequestLine.parse(decode_buffer(request_data[:line_end])):
                return bytes(request_data), b''

            if len(request_data) > self._max_request_size:
                raise RequestTooLarge(len(request_data), self._max_request_size)

        return bytes(request_data), b''

    def classify(self, data: bytes, remainder: bytes = b'') -> Classification:
        """Classify a request head without touching the network."""
        if not data:
            return Classification(RequestKind.EMPTY)

        first_line = split_lines(decode_buffer(data))[0]
        request_line = RequestLine.parse(first_line)
        if not request_line:
            return Classification(RequestKind.UNRECOGNIZED, raw=data, remainder=remainder)

        if request_line.method != "CONNECT":
            return Classification(RequestKind.HTTP, raw=data,
                                  request_line=request_line, remainder=remainder)

        target = ConnectTarget.parse(request_line.target)
        if not target:
            return Classification(RequestKind.INVALID_CONNECT, raw=data,
                                  request_line=request_line, remainder=remainder)
        return Classification(RequestKind.CONNECT, raw=data, request_line=request_line,
                              target=target, remainder=remainder)

    def read_and_classify(self, client_socket: socket.socket) -> Classification:
        head, remainder = self.read_head(client_socket)
        classification = self.classify(head, remainder)
        logger.debug(f"Classified {len(head)} byte head as {classification.kind.value}")
        return classification
