"""Threaded request/response server shared by the dispatcher and the runner.

One thread per inbound connection (``socketserver.ThreadingTCPServer``).
Each connection carries exactly one request and one response. Errors raised
while handling a connection are logged and turned into a reply on that
connection; they never reach other handlers.

Usage::

    def route(request: Request) -> str:
        return Response.PONG

    server = ProtocolServer("localhost", 0, route, component="runner")
    server.start()           # binds; raises BindError
    host, port = server.address
    ...
    server.stop()
"""

from __future__ import annotations

import socketserver
import threading
from collections.abc import Callable, Iterable

from spine_ci.core.errors import BindError, MalformedRequestError, SpineCIError
from spine_ci.framework.logging import get_logger, set_context
from spine_ci.protocol.commands import Request, Response
from spine_ci.protocol.framing import encode_response, read_request

logger = get_logger(__name__)

RequestRouter = Callable[[Request], str]


class _ThreadingServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True

    # Set by ProtocolServer before serving
    router: RequestRouter
    component: str
    request_timeout: float


class _RequestHandler(socketserver.StreamRequestHandler):
    """Reads one request, routes it, writes one response line."""

    server: _ThreadingServer

    def setup(self) -> None:
        self.timeout = self.server.request_timeout
        super().setup()

    def handle(self) -> None:
        peer = "%s:%s" % self.client_address[:2]
        set_context(component=self.server.component)
        try:
            request = read_request(self.rfile)
            if request is None:
                return
            reply = self.server.router(request)
        except MalformedRequestError as e:
            logger.warning("request.malformed", peer=peer, error=e.message)
            reply = e.reply
        except SpineCIError as e:
            logger.error("request.failed", peer=peer, **e.to_dict())
            reply = Response.INTERNAL_ERROR
        except TimeoutError:
            logger.warning("request.read_timeout", peer=peer)
            return
        except Exception:
            logger.exception("request.unhandled_error", peer=peer)
            reply = Response.INTERNAL_ERROR

        try:
            self.wfile.write(encode_response(reply))
            self.wfile.flush()
        except OSError as e:
            logger.debug("response.write_failed", peer=peer, error=str(e))


class ProtocolServer:
    """Listening socket plus accept loop running in a background thread."""

    def __init__(
        self,
        host: str,
        port: int,
        router: RequestRouter,
        component: str = "server",
        request_timeout: float = 30.0,
    ) -> None:
        self._host = host
        self._port = port
        self._router = router
        self._component = component
        self._request_timeout = request_timeout
        self._server: _ThreadingServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port); the real port when constructed with port 0."""
        if self._server is None:
            return self._host, self._port
        host, port = self._server.server_address[:2]
        return self._host, port

    def bind(self) -> tuple[str, int]:
        """Bind the listening socket.

        Raises:
            BindError: the address is in use or not available
        """
        if self._server is not None:
            return self.address
        try:
            server = _ThreadingServer((self._host, self._port), _RequestHandler)
        except OSError as e:
            raise BindError(f"cannot listen on {self._host}:{self._port}: {e}", cause=e).with_context(
                host=self._host, port=self._port
            ) from e
        server.router = self._router
        server.component = self._component
        server.request_timeout = self._request_timeout
        self._server = server
        logger.info("server.listening", component=self._component, address="%s:%d" % self.address)
        return self.address

    def start(self) -> tuple[str, int]:
        """Bind (if needed) and serve in a daemon thread."""
        address = self.bind()
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                kwargs={"poll_interval": 0.2},
                daemon=True,
                name=f"spine-ci-{self._component}-accept",
            )
            self._thread.start()
        return address

    def stop(self) -> None:
        """Stop accepting connections and close the socket."""
        if self._server is None:
            return
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join(timeout=5.0)
            self._thread = None
        self._server.server_close()
        self._server = None
        logger.info("server.stopped", component=self._component)


def bind_first_free(
    host: str,
    ports: Iterable[int],
    router: RequestRouter,
    component: str = "server",
    request_timeout: float = 30.0,
) -> ProtocolServer:
    """Return a bound server on the first port in ``ports`` that is free.

    Raises:
        BindError: no port in the range could be bound
    """
    last_error: BindError | None = None
    for port in ports:
        server = ProtocolServer(host, port, router, component=component, request_timeout=request_timeout)
        try:
            server.bind()
            return server
        except BindError as e:
            last_error = e
    raise BindError(f"no free port on {host} in the requested range", cause=last_error)
