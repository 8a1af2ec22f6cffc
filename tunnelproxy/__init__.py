"""
A forward proxy that tunnels CONNECT requests and logs every request it sees.
"""

from .server import ProxyServer
from .handler import RequestHandler
from .classifier import RequestClassifier, RequestKind, Classification
from .tunnel import TunnelEngine
from .responder import FallbackResponder
from .observer import ProxyObserver
from .models import (ConnectLog, ConnectTarget, HTTPRequest, HTTPResponse,
                     RequestLine, RequestLog)
from .config import ProxyConfig
from .exceptions import ProxyError, RelayError, RequestTooLarge

__all__ = [
    'ProxyServer', 'RequestHandler', 'RequestClassifier', 'RequestKind',
    'Classification', 'TunnelEngine', 'FallbackResponder', 'ProxyObserver',
    'ConnectLog', 'ConnectTarget', 'HTTPRequest', 'HTTPResponse', 'RequestLine',
    'RequestLog', 'ProxyConfig', 'ProxyError', 'RelayError', 'RequestTooLarge'
]
