class ProxyError(Exception):
    """Base class for errors raised while serving a connection."""


class RequestTooLarge(ProxyError):
    """The request head grew past the configured maximum without terminating."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Request head of {size} bytes exceeds limit of {limit}")
        self.size = size
        self.limit = limit


class RelayError(ProxyError):
    """One direction of a tunnel failed, ending the whole session."""

    def __init__(self, direction: str, error: OSError):
        super().__init__(f"Relay {direction} failed: {error}")
        self.direction = direction
        self.error = error
