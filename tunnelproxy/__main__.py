"""Entry point for the tunnelling proxy."""

import argparse
import logging
import sys
from typing import List, Optional

from .classifier import RequestClassifier
from .config import ProxyConfig
from .handler import RequestHandler
from .server import ProxyServer
from .tunnel import TunnelEngine

logger = logging.getLogger("tunnelproxy")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Forward proxy that tunnels CONNECT requests and logs every request"
    )
    parser.add_argument("--host", help="Address to listen on (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to listen on (default: 3000)")
    parser.add_argument("--config", help="Path to JSON configuration file")
    parser.add_argument(
        "--max-connections",
        type=int,
        help="Maximum concurrent connections (default: unlimited)",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        help="Seconds to wait when dialing a CONNECT target (default: no timeout)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    return parser.parse_args(argv)


def build_server(config: ProxyConfig) -> ProxyServer:
    """Wire the classifier, tunnel and handler described by the configuration."""
    handler = RequestHandler(
        classifier=RequestClassifier(
            buffer_size=config.get("buffer_size"),
            max_request_size=config.get("max_request_size"),
        ),
        tunnel=TunnelEngine(
            buffer_size=config.get("relay_buffer_size"),
            connect_timeout=config.get("connect_timeout"),
        ),
    )
    return ProxyServer(
        host=config.get("host"),
        port=config.get("port"),
        handler=handler,
        max_connections=config.get("max_connections"),
        backlog=config.get("backlog"),
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = ProxyConfig(args.config)
        config.update({
            "host": args.host,
            "port": args.port,
            "max_connections": args.max_connections,
            "connect_timeout": args.connect_timeout,
        })
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    server = build_server(config)
    try:
        server.bind()
    except OSError as e:
        logger.error(f"Could not bind {config.get('host')}:{config.get('port')}: {e}")
        server.server_socket.close()
        return 1

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
        server.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
