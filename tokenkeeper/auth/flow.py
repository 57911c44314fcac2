"""
OAuth2 authorization code + PKCE flows.

Three variants share one exchange path:

- server: a local callback listener receives the redirect
- manual: the user pastes the code shown by the provider
- web: an external HTTP layer owns the callback and hands code + state back

A failed attempt never persists anything, and its PKCE state is discarded
whatever the outcome.
"""

import enum
import logging
import webbrowser
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, Union

import anyio
from anyio.streams.memory import MemoryObjectSendStream

from tokenkeeper.auth.audit import AUTHORIZATION_CATEGORY, AuditSink
from tokenkeeper.auth.callback_server import (
    DEFAULT_CALLBACK_HOST,
    DEFAULT_CALLBACK_PATH,
    DEFAULT_CALLBACK_PORT,
    CallbackListener,
)
from tokenkeeper.auth.errors import (
    AuthorizationDenied,
    AuthorizationError,
    MissingCodeError,
    StateMismatchError,
)
from tokenkeeper.auth.pkce import DEFAULT_PENDING_TTL, PendingAuthorizations
from tokenkeeper.auth.storage import DecryptedCredential
from tokenkeeper.providers.base import AuthorizationRequest, Provider

if TYPE_CHECKING:
    from tokenkeeper.auth.storage import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_FLOW_TIMEOUT = 300


class FlowState(enum.Enum):
    IDLE = "idle"
    AWAITING_USER_AUTHORIZATION = "awaiting_user_authorization"
    EXCHANGING_CODE = "exchanging_code"
    COMPLETE = "complete"
    FAILED = "failed"


class FlowMode(enum.Enum):
    SERVER = "server"
    MANUAL = "manual"


@dataclass
class FlowResult:
    provider: str
    account_id: str
    access_token: str = field(repr=False)
    refresh_token: str = field(default="", repr=False)
    token_type: str = "bearer"
    expires_at: Optional[int] = None
    scope: str = ""


@dataclass
class ServerFlowConfig:
    host: str = DEFAULT_CALLBACK_HOST
    port: int = DEFAULT_CALLBACK_PORT
    timeout: float = DEFAULT_FLOW_TIMEOUT
    callback_path: str = DEFAULT_CALLBACK_PATH
    open_browser: bool = False


# Progress events, emitted in order:
# AuthorizationURLReady -> CodeReceived -> FlowCompleted | FlowFailed


@dataclass
class AuthorizationURLReady:
    url: str


@dataclass
class CodeReceived:
    pass


@dataclass
class FlowCompleted:
    result: FlowResult


@dataclass
class FlowFailed:
    error: Exception


FlowEvent = Union[AuthorizationURLReady, CodeReceived, FlowCompleted, FlowFailed]
CodeReader = Callable[[], Awaitable[str]]


def _prompt_for_code() -> str:
    return input("Enter the authorization code: ")


async def read_code_from_stdin() -> str:
    return await anyio.to_thread.run_sync(_prompt_for_code, abandon_on_cancel=True)


class FlowHandler:
    """
    Run authorization attempts for one provider.

    ``state`` reflects the most recent attempt.
    """

    def __init__(
        self,
        provider: Provider,
        store: Optional["CredentialStore"] = None,
        *,
        pending_ttl: float = DEFAULT_PENDING_TTL,
        audit: Optional[AuditSink] = None,
    ):
        self.provider = provider
        self.store = store
        self.audit = audit
        self.pending = PendingAuthorizations(pending_ttl)
        self.state = FlowState.IDLE

    def _transition(self, state: FlowState) -> None:
        logger.debug(f"{self.provider.name} flow: {self.state.value} -> {state.value}")
        self.state = state

    async def _emit(
        self,
        events: Optional[MemoryObjectSendStream[FlowEvent]],
        event: FlowEvent,
    ) -> None:
        if events is None:
            return
        try:
            await events.send(event)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug(f"Flow event receiver closed, dropped {type(event).__name__}")

    async def _fail(
        self,
        error: Exception,
        events: Optional[MemoryObjectSendStream[FlowEvent]] = None,
    ) -> None:
        self._transition(FlowState.FAILED)
        logger.warning(f"{self.provider.name} authorization failed: {error}")
        await self._emit(events, FlowFailed(error))
        if self.audit is not None:
            await self.audit.record(
                AUTHORIZATION_CATEGORY,
                f"Authorize {self.provider.name}",
                error,
            )

    async def run_server_flow(
        self,
        config: Optional[ServerFlowConfig] = None,
        events: Optional[MemoryObjectSendStream[FlowEvent]] = None,
    ) -> FlowResult:
        """
        Authorize through a local callback listener.

        The listener is bound before the URL is emitted. The call returns once
        the callback is handled and the code exchanged, or raises on error,
        state mismatch, timeout, or cancellation.

        Args:
            config: Listener address and timeout
            events: Optional stream receiving progress events

        Returns:
            FlowResult for the authorized account
        """
        config = config or ServerFlowConfig()
        listener = CallbackListener(config.host, config.port, config.callback_path)
        self._transition(FlowState.IDLE)

        try:
            listener.bind()
            request = self.provider.build_authorization_url(listener.redirect_url)
            listener.expect(request.state)

            self._transition(FlowState.AWAITING_USER_AUTHORIZATION)
            logger.info(
                f"Waiting for {self.provider.name} authorization on {listener.redirect_url}"
            )
            await self._emit(events, AuthorizationURLReady(request.url))
            if config.open_browser:
                await anyio.to_thread.run_sync(webbrowser.open, request.url)

            code = await listener.wait_for_code(config.timeout)
            await self._emit(events, CodeReceived())

            result = await self._exchange_and_save(
                code, request.code_verifier, request.redirect_url
            )
        except Exception as e:
            await self._fail(e, events)
            raise
        except BaseException:
            self._transition(FlowState.FAILED)
            raise
        finally:
            listener.close()

        await self._emit(events, FlowCompleted(result))
        return result

    async def run_manual_flow(
        self,
        read_code: Optional[CodeReader] = None,
        events: Optional[MemoryObjectSendStream[FlowEvent]] = None,
    ) -> FlowResult:
        """
        Authorize by having the user paste the code the provider displays.

        Args:
            read_code: Async callable returning the pasted code (defaults to stdin)
            events: Optional stream receiving progress events
        """
        read_code = read_code or read_code_from_stdin
        self._transition(FlowState.IDLE)

        try:
            request = self.provider.build_authorization_url()
            self._transition(FlowState.AWAITING_USER_AUTHORIZATION)
            await self._emit(events, AuthorizationURLReady(request.url))

            code = (await read_code() or "").strip()
            if not code:
                raise MissingCodeError()
            await self._emit(events, CodeReceived())

            result = await self._exchange_and_save(code, request.code_verifier)
        except Exception as e:
            await self._fail(e, events)
            raise
        except BaseException:
            self._transition(FlowState.FAILED)
            raise

        await self._emit(events, FlowCompleted(result))
        return result

    def start_web_flow(self, redirect_url: str) -> AuthorizationRequest:
        """
        Begin an attempt whose callback is served by an external HTTP layer.

        The verifier is kept in memory under the returned state until
        ``complete_web_flow`` consumes it or it expires.
        """
        request = self.provider.build_authorization_url(redirect_url)
        self.pending.add(request, self.provider.name)
        self._transition(FlowState.AWAITING_USER_AUTHORIZATION)
        return request

    async def complete_web_flow(
        self,
        code: str,
        state: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> FlowResult:
        """
        Finish an attempt started by ``start_web_flow``.

        The pending attempt is consumed on every outcome.

        Raises:
            AuthorizationDenied: ``error`` was given
            StateMismatchError: ``state`` is unknown or expired
            MissingCodeError: ``code`` is empty
        """
        pending = self.pending.pop(state) if state else None

        try:
            if error:
                raise AuthorizationDenied(error, error_description or "")
            if pending is None:
                raise StateMismatchError("unknown or expired authorization state")
            if not code:
                raise MissingCodeError()
            return await self._exchange_and_save(
                code, pending.code_verifier, pending.redirect_url
            )
        except Exception as e:
            await self._fail(e)
            raise

    async def _exchange_and_save(
        self, code: str, code_verifier: str, redirect_url: str = ""
    ) -> FlowResult:
        self._transition(FlowState.EXCHANGING_CODE)

        token = await self.provider.exchange_code(code, code_verifier, redirect_url)

        account_id = token.account_id
        if not account_id:
            account_id = await self.provider.get_account_info(token.access_token)
        if not account_id:
            raise AuthorizationError(
                f"{self.provider.name} did not return an account identifier"
            )

        result = FlowResult(
            provider=self.provider.name,
            account_id=account_id,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            expires_at=token.expires_at(),
            scope=token.scope,
        )

        if self.store is not None:
            await self.store.save_credential(
                DecryptedCredential(
                    provider=result.provider,
                    account_id=result.account_id,
                    access_token=result.access_token,
                    refresh_token=result.refresh_token,
                    token_type=result.token_type,
                    expires_at=result.expires_at,
                    scope=result.scope,
                )
            )

        self._transition(FlowState.COMPLETE)
        logger.info(f"Authorized {self.provider.name} account {account_id}")
        if self.audit is not None:
            await self.audit.record(
                AUTHORIZATION_CATEGORY,
                f"Authorize {self.provider.name}/{account_id}",
            )
        return result
