"""
Short-lived local HTTP listener for the OAuth redirect.

The socket is bound before the authorization URL is shown to the user so the
browser can never be redirected to a port that is not yet listening. The
listener resolves exactly one callback and is torn down on every exit path.
"""

import html
import logging
import secrets
import socket
from typing import Optional

import anyio
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse
from starlette.routing import Route

from tokenkeeper.auth.errors import (
    AuthorizationDenied,
    AuthorizationError,
    AuthorizationTimeout,
    MissingCodeError,
    PortUnavailableError,
    StateMismatchError,
)

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_HOST = "127.0.0.1"
DEFAULT_CALLBACK_PORT = 8089
DEFAULT_CALLBACK_PATH = "/callback"

_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 50px;">
<h1>{title}</h1>
<p>{message}</p>
</body>
</html>
"""


def _page(title: str, message: str, status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(
        _PAGE.format(title=html.escape(title), message=html.escape(message)),
        status_code=status_code,
    )


class CallbackListener:
    """Serve a single OAuth redirect on a loopback address."""

    def __init__(
        self,
        host: str = DEFAULT_CALLBACK_HOST,
        port: int = DEFAULT_CALLBACK_PORT,
        path: str = DEFAULT_CALLBACK_PATH,
    ):
        self.host = host
        self.port = port
        self.path = path if path.startswith("/") else f"/{path}"
        self._sock: Optional[socket.socket] = None
        self._expected_state: Optional[str] = None
        self._resolved: Optional[anyio.Event] = None
        self._code: Optional[str] = None
        self._error: Optional[AuthorizationError] = None

    def bind(self) -> None:
        """
        Bind and listen on the callback address.

        Port 0 selects an ephemeral port; ``redirect_url`` reports the actual one.

        Raises:
            PortUnavailableError: If the address cannot be bound
        """
        if self._sock is not None:
            return

        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(8)
        except OSError as e:
            sock.close()
            raise PortUnavailableError(self.host, self.port, str(e)) from e

        self._sock = sock
        self.port = sock.getsockname()[1]
        logger.debug(f"Callback listener bound to {self.host}:{self.port}")

    @property
    def bound(self) -> bool:
        return self._sock is not None

    @property
    def redirect_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}{self.path}"

    def expect(self, state: str) -> None:
        self._expected_state = state

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def _build_app(self) -> Starlette:
        return Starlette(routes=[Route(self.path, self._handle_callback, methods=["GET"])])

    def _fail(self, error: AuthorizationError) -> None:
        self._error = error
        assert self._resolved is not None
        self._resolved.set()

    async def _handle_callback(self, request: Request) -> HTMLResponse:
        if self._resolved is None or self._resolved.is_set():
            return _page(
                "Already handled",
                "This authorization request has already been handled.",
                status_code=409,
            )

        params = request.query_params

        error = params.get("error")
        if error:
            description = params.get("error_description", "")
            logger.warning(f"Authorization callback returned error: {error}")
            self._fail(AuthorizationDenied(error, description))
            return _page(
                "Authorization failed",
                f"{error}: {description}" if description else error,
                status_code=400,
            )

        state = params.get("state", "")
        expected = self._expected_state or ""
        if not expected or not secrets.compare_digest(
            state.encode("utf-8"), expected.encode("utf-8")
        ):
            logger.warning("Authorization callback state mismatch")
            self._fail(StateMismatchError())
            return _page(
                "Authorization failed",
                "Invalid state parameter. Please try again.",
                status_code=400,
            )

        code = params.get("code", "")
        if not code:
            self._fail(MissingCodeError())
            return _page(
                "Authorization failed",
                "No authorization code received.",
                status_code=400,
            )

        self._code = code
        self._resolved.set()
        logger.debug("Authorization code received on callback")
        return _page(
            "Authorization successful",
            "You can close this window and return to the application.",
        )

    @staticmethod
    async def _serve(server: uvicorn.Server, sock: socket.socket) -> None:
        # uvicorn must reach its own shutdown, or the event loop keeps
        # accepting on the socket's file descriptor after it is closed
        with anyio.CancelScope(shield=True):
            await server.serve([sock])

    async def wait_for_code(self, timeout: float) -> str:
        """
        Serve the callback endpoint until one request resolves it.

        Args:
            timeout: Seconds to wait for the callback

        Returns:
            The authorization code

        Raises:
            AuthorizationDenied: The provider redirected back with an error
            StateMismatchError: The callback state did not match
            MissingCodeError: The callback carried no code
            AuthorizationTimeout: No callback arrived in time
        """
        self.bind()
        assert self._sock is not None

        self._resolved = anyio.Event()
        self._code = None
        self._error = None

        config = uvicorn.Config(
            self._build_app(),
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        server = uvicorn.Server(config)
        sock = self._sock

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._serve, server, sock)
                try:
                    with anyio.move_on_after(timeout):
                        await self._resolved.wait()
                finally:
                    server.should_exit = True
        finally:
            self.close()
            logger.debug(f"Callback listener on {self.host}:{self.port} closed")

        if self._error is not None:
            raise self._error
        if self._code is None:
            raise AuthorizationTimeout(timeout)
        return self._code
