"""HTTP server that serves the device API."""

from __future__ import annotations

import logging
import socket
import threading

from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

from devreports.config import Config, ServerConfig
from devreports.handler import Handler
from devreports.router import create_app

logger = logging.getLogger(__name__)

_HOST = "0.0.0.0"


def _request_handler(config: ServerConfig) -> type[WSGIRequestHandler]:
    timeout = config.read_timeout.total_seconds() or config.idle_timeout.total_seconds()

    class _Handler(WSGIRequestHandler):
        pass

    _Handler.timeout = timeout if timeout > 0 else None
    return _Handler


class Server:
    """Serves the API on the configured port until shut down."""

    def __init__(self, config: Config, handler: Handler) -> None:
        self.config = config
        self.handler = handler
        self.app = create_app(handler)
        self._lock = threading.Lock()
        self._server: BaseWSGIServer | None = None
        self._closed = False

    def start(self) -> None:
        """Listen and serve; returns once ``shutdown`` has been called.

        Raises ``OSError`` when the port cannot be bound.
        """
        logger.info(
            "starting HTTP server", extra={"port": self.config.server.port_str()}
        )
        with self._lock:
            if self._closed:
                return
            listener = socket.create_server((_HOST, self.config.server.port))
            try:
                server = make_server(
                    _HOST,
                    self.config.server.port,
                    self.app,
                    threaded=True,
                    request_handler=_request_handler(self.config.server),
                    fd=listener.fileno(),
                )
            finally:
                listener.close()
            self._server = server
        try:
            server.serve_forever()
        finally:
            server.server_close()

    def shutdown(self) -> None:
        """Stop serving; must be called from a thread other than the serving one."""
        with self._lock:
            self._closed = True
            server = self._server
        if server is not None:
            server.shutdown()