"""
Token Manager for the IoB client SDK.

This module owns the bearer token across acquisition, persistence,
expiry-driven renewal and cross-process visibility. Concurrent callers share
a single in-flight refresh, so a burst of requests never triggers redundant
network authentication.
"""

import asyncio
import logging
import math
from dataclasses import replace
from datetime import timedelta
from typing import Optional, Dict, Any, Callable, Awaitable, Union

from iob_client.auth.jwt_utils import calculate_expires_in
from iob_client.auth.token_storage import TokenStorage, create_token_storage
from iob_client.config import AuthConfig
from iob_shared.exceptions import (
    AuthenticationFailedError, AuthManagerDestroyedError, ErrorCode, RefreshFailedError
)
from iob_shared.logging_config import AuditEventType, AuditLogger, log_structured_error
from iob_shared.models import AuthPayload, AuthState, AuthStatus, StoredBundle, Token, utcnow

logger = logging.getLogger(__name__)

RawPayload = Union[AuthPayload, Dict[str, Any]]
LoginFunction = Callable[[], Awaitable[RawPayload]]
RefreshFunction = Callable[[Optional[str]], Awaitable[RawPayload]]
StateListener = Callable[[AuthState], None]

# Lifetimes beyond this are treated as unusable server responses
MAX_EXPIRES_IN = 365 * 24 * 3600


def _is_usable_lifetime(expires_in: Any) -> bool:
    if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
        return False
    return math.isfinite(expires_in) and 0 < expires_in <= MAX_EXPIRES_IN


class AuthManager:
    """
    Manages the authentication token with automatic renewal.

    The login function performs the network handshake (mTLS in production)
    and is only ever invoked by an explicit ``login()`` or, when no dedicated
    refresh function is supplied, to renew an existing session. Reading a
    token never logs in implicitly.
    """

    def __init__(
        self,
        login_function: LoginFunction,
        token_storage: TokenStorage,
        config: Optional[AuthConfig] = None,
        refresh_function: Optional[RefreshFunction] = None
    ):
        self.config = config or AuthConfig()
        self.login_function = login_function
        self.refresh_function = refresh_function
        self.token_storage = token_storage
        self.refresh_threshold = timedelta(minutes=self.config.refresh_threshold_minutes)
        self.audit = AuditLogger()

        self._state = AuthState()
        self._refresh_credential: Optional[str] = None
        self._invalidated = False
        self._destroyed = False
        # Loop time of the last fail-open refresh failure
        self._refresh_failed_at: Optional[float] = None
        # Bumped whenever the session is replaced; stale refresh results are dropped
        self._generation = 0

        self._listeners: Dict[int, StateListener] = {}
        self._next_listener_id = 0

        self._ready_task: Optional[asyncio.Task] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self._refresh_handle: Optional[asyncio.TimerHandle] = None
        self._scheduled_refresh_task: Optional[asyncio.Task] = None
        self._storage_unsubscribe: Optional[Callable[[], None]] = None

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, storage initialization deferred to first use")
        else:
            self._start_initialization()

        logger.info("Auth manager initialized")

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    def _start_initialization(self) -> None:
        if self._ready_task is not None:
            return
        self._transition(replace(self._state, status=AuthStatus.INITIALIZING))
        self._ready_task = asyncio.ensure_future(self._initialize_from_storage())

    async def _initialize_from_storage(self) -> None:
        """Populate auth state from the stored bundle, if any."""
        bundle = None
        try:
            self.token_storage.start()
            if self.config.cross_tab_sync:
                self._storage_unsubscribe = self.token_storage.on_change(self._handle_external_change)
            bundle = await self.token_storage.get()
        except Exception as e:
            logger.error(f"Failed to initialize from stored auth data: {e}")

        if self._destroyed:
            return

        if bundle and not bundle.token.is_expired():
            self._adopt_bundle(bundle)
            logger.info("Restored authentication from storage")
        else:
            self._transition(AuthState(status=AuthStatus.UNAUTHENTICATED))

    async def ready(self) -> None:
        """
        Wait until the initial storage read has been applied.

        Safe to call any number of times; all callers share one completion.

        Raises:
            AuthManagerDestroyedError: If the manager is or becomes destroyed
        """
        self._check_destroyed('ready')
        self._start_initialization()
        try:
            await asyncio.shield(self._ready_task)
        except asyncio.CancelledError:
            if self._destroyed:
                raise AuthManagerDestroyedError('ready')
            raise
        self._check_destroyed('ready')

    # ------------------------------------------------------------------
    # State and subscriptions
    # ------------------------------------------------------------------

    def _check_destroyed(self, operation: str) -> None:
        if self._destroyed:
            raise AuthManagerDestroyedError(operation)

    def _transition(self, new_state: AuthState) -> None:
        """Replace the state snapshot and notify subscribers."""
        if self._destroyed:
            return
        self._state = new_state
        for listener in list(self._listeners.values()):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"Error in auth state listener: {e}")

    def get_auth_state(self) -> AuthState:
        """Current state snapshot. Snapshots are immutable."""
        self._check_destroyed('get_auth_state')
        return self._state

    def is_authenticated(self) -> bool:
        """Check the in-memory state for a usable token. Never touches storage or network."""
        self._check_destroyed('is_authenticated')
        state = self._state
        return state.is_authenticated and state.token is not None and not state.token.is_expired()

    def on_auth_state_change(self, listener: StateListener) -> Callable[[], None]:
        """
        Subscribe to state transitions.

        Args:
            listener: Called synchronously with each new state snapshot

        Returns:
            Idempotent unsubscribe function
        """
        self._check_destroyed('on_auth_state_change')

        listener_id = self._next_listener_id
        self._next_listener_id += 1
        self._listeners[listener_id] = listener

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def needs_refresh(self, token: Optional[Token] = None) -> bool:
        """
        Check if a token is within the renewal threshold of its expiry.

        Args:
            token: Token to check, defaults to the current one

        Returns:
            True if the token should be refreshed before use
        """
        token = token or self._state.token
        if token is None:
            return False
        return token.expires_at - utcnow() <= self.refresh_threshold

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    def _coerce_payload(self, raw: Any) -> AuthPayload:
        if isinstance(raw, AuthPayload):
            return raw
        if isinstance(raw, dict):
            return AuthPayload.from_dict(raw)
        raise AuthenticationFailedError(
            "Invalid auth response: expected object with token and expires_in",
            error_code=ErrorCode.AUTH_INVALID_RESPONSE
        )

    def _create_token(self, payload: AuthPayload) -> Token:
        """Build a token from a handshake payload."""
        value = payload.token.strip() if isinstance(payload.token, str) else None
        if not value:
            raise AuthenticationFailedError(
                "Invalid auth response: missing or invalid token",
                error_code=ErrorCode.AUTH_INVALID_RESPONSE
            )

        expires_in = payload.expires_in
        if not _is_usable_lifetime(expires_in):
            expires_in = calculate_expires_in(value, self.config.default_expires_in)
            if not _is_usable_lifetime(expires_in):
                expires_in = self.config.default_expires_in
            logger.warning(f"Invalid expires_in value {payload.expires_in!r}, using {expires_in} seconds")

        now = utcnow()
        return Token(value=value, issued_at=now, expires_at=now + timedelta(seconds=expires_in))

    def _adopt_bundle(self, bundle: StoredBundle) -> None:
        """Replace in-memory state with a bundle read from storage."""
        self._refresh_credential = bundle.refresh_token
        self._invalidated = False
        self._refresh_failed_at = None
        self._transition(AuthState(
            status=AuthStatus.AUTHENTICATED,
            token=bundle.token,
            principal=bundle.principal,
            is_authenticated=True
        ))
        self._schedule_token_refresh(bundle.token)

    async def _store_token(self, token: Token, payload: AuthPayload) -> None:
        """Persist a new token, then publish it and arm the renewal timer."""
        principal = payload.principal if payload.principal is not None else self._state.principal
        credential = payload.refresh_token or self._refresh_credential
        bundle = StoredBundle(token=token, principal=principal, refresh_token=credential)

        if self._destroyed:
            return
        await self.token_storage.set(bundle)
        if self._destroyed:
            return

        self._refresh_credential = credential
        self._invalidated = False
        self._refresh_failed_at = None
        self._transition(AuthState(
            status=AuthStatus.AUTHENTICATED,
            token=token,
            principal=principal,
            is_authenticated=True
        ))
        self._schedule_token_refresh(token)

    async def login(self) -> Optional[Token]:
        """
        Authenticate through the login function.

        Single attempt; errors raised by the login function propagate unchanged.

        Returns:
            The new token

        Raises:
            AuthenticationFailedError: If the login response is unusable
        """
        await self.ready()
        self._generation += 1
        generation = self._generation

        logger.info("Performing authentication")
        try:
            payload = self._coerce_payload(await self.login_function())
            token = self._create_token(payload)
        except Exception as e:
            logger.error(f"Authentication failed, no retries will be attempted: {e}")
            self.audit.log_authentication(AuditEventType.LOGIN, success=False, failure_reason=str(e))
            if not self._destroyed and generation == self._generation:
                await self._clear_session(last_error=str(e) or type(e).__name__)
            raise

        if generation != self._generation:
            logger.info("Auth state changed during login, discarding login result")
            return token

        await self._store_token(token, payload)
        self.audit.log_authentication(AuditEventType.LOGIN, success=True, expires_at=token.expires_at)
        logger.info("Authentication successful")
        return token

    async def get_valid_token(self) -> Optional[str]:
        """
        Get a usable bearer token, renewing it first if it is close to expiry.

        Never logs in: returns None when there is no session.

        Raises:
            RefreshFailedError: If a needed renewal failed
        """
        await self.ready()

        token = self._state.token
        if token is None:
            bundle = await self.token_storage.get()
            self._check_destroyed('get_valid_token')
            if bundle and self._state.token is None:
                self._generation += 1
                self._adopt_bundle(bundle)
            token = self._state.token

        if token is None:
            logger.debug("No valid token available, login() required")
            return None

        if not self._invalidated and not self.needs_refresh(token):
            return token.value

        if self._in_refresh_backoff() and not token.is_expired():
            logger.debug("Last token refresh failed recently, serving current token")
            return token.value

        try:
            refreshed = await self.refresh_token()
        except RefreshFailedError:
            current = self._state.token
            if self.config.fail_open_on_refresh_error and current is not None and not current.is_expired():
                logger.warning("Token refresh failed, serving current token until it expires")
                return current.value
            raise

        return refreshed.value if refreshed else None

    async def get_auth_headers(self) -> Dict[str, str]:
        """Authorization header for an outgoing request, empty without a session."""
        token = await self.get_valid_token()
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def refresh_token(self) -> Optional[Token]:
        """
        Renew the current token. Single attempt, single flight.

        Concurrent callers share one in-flight renewal and its outcome.

        Returns:
            The new token, or None if there is no session to renew

        Raises:
            RefreshFailedError: If the renewal failed
        """
        await self.ready()

        if self._refresh_task is None:
            if self._state.token is None:
                logger.warning("Cannot refresh token: not authenticated")
                return None
            self._refresh_task = asyncio.ensure_future(self._perform_token_refresh())
            self._transition(replace(self._state, status=AuthStatus.REFRESHING, is_refreshing=True))

        return await asyncio.shield(self._refresh_task)

    async def _perform_token_refresh(self) -> Optional[Token]:
        """Run one renewal attempt and apply its result."""
        generation = self._generation
        try:
            logger.info("Attempting token refresh")
            try:
                if self.refresh_function is not None:
                    raw = await self.refresh_function(self._refresh_credential)
                else:
                    raw = await self.login_function()
                payload = self._coerce_payload(raw)
                token = self._create_token(payload)
            except Exception as e:
                error = RefreshFailedError(f"Token refresh failed: {e}", cause=e)
                log_structured_error(logger, error)
                self.audit.log_authentication(AuditEventType.REFRESH, success=False, failure_reason=str(e))
                if generation == self._generation:
                    await self._handle_refresh_failure(error)
                else:
                    current = self._current_valid_token()
                    if current is not None:
                        logger.info("Auth state changed during refresh, using the replacement session")
                        return current
                raise error from e

            if generation != self._generation:
                logger.info("Auth state changed during refresh, discarding refresh result")
                return self._current_valid_token()

            await self._store_token(token, payload)
            self.audit.log_authentication(AuditEventType.REFRESH, success=True, expires_at=token.expires_at)
            logger.info("Token refresh successful")
            return token
        finally:
            self._refresh_task = None

    def _in_refresh_backoff(self) -> bool:
        """True within ``retry_delay_ms`` of a refresh failure tolerated by fail-open mode."""
        if self._refresh_failed_at is None or not self.config.fail_open_on_refresh_error:
            return False
        elapsed = asyncio.get_running_loop().time() - self._refresh_failed_at
        return elapsed < self.config.retry_delay_ms / 1000

    def _current_valid_token(self) -> Optional[Token]:
        """The in-memory token if the destroyed guard allows it and it has not expired."""
        token = self._state.token
        if self._destroyed or token is None or token.is_expired():
            return None
        return token

    async def _handle_refresh_failure(self, error: RefreshFailedError) -> None:
        if self._destroyed:
            return

        current = self._state.token
        if self.config.fail_open_on_refresh_error and current is not None and not current.is_expired():
            # Timer stays unarmed until the next login or successful refresh
            self._cancel_scheduled_refresh()
            self._refresh_failed_at = asyncio.get_running_loop().time()
            self._transition(replace(
                self._state,
                status=AuthStatus.AUTHENTICATED,
                is_refreshing=False,
                last_error=error.message,
                last_error_at=error.timestamp
            ))
            return

        await self._clear_session(last_error=error.message, last_error_at=error.timestamp)

    def invalidate_token(self) -> None:
        """Make the next get_valid_token() renew the current token, which stays visible until then."""
        self._check_destroyed('invalidate_token')
        if self._state.token is not None:
            self._invalidated = True
            logger.info("Current token invalidated, will refresh on next use")

    async def _clear_session(self, last_error: Optional[str] = None, last_error_at=None) -> None:
        """Drop the session from memory and storage."""
        self._generation += 1
        self._cancel_scheduled_refresh()
        self._refresh_credential = None
        self._invalidated = False
        self._refresh_failed_at = None
        if last_error and last_error_at is None:
            last_error_at = utcnow()
        self._transition(AuthState(
            status=AuthStatus.UNAUTHENTICATED,
            last_error=last_error,
            last_error_at=last_error_at
        ))

        try:
            await self.token_storage.remove()
        except Exception as e:
            logger.warning(f"Failed to remove stored auth data: {e}")

    async def logout(self) -> None:
        """Log out: clear memory and storage, cancel renewal, notify subscribers."""
        await self.ready()
        logger.info("Logging out and clearing authentication state")
        await self._clear_session()
        self.audit.log_event(AuditEventType.LOGOUT, "Logged out", result="success")

    async def clear_token(self) -> None:
        """Forced de-authentication, e.g. after the server rejected the token."""
        await self.ready()
        logger.info("Clearing token")
        await self._clear_session()
        self.audit.log_event(AuditEventType.FORCED_CLEAR, "Token cleared", result="success")

    def _handle_external_change(self, bundle: Optional[StoredBundle]) -> None:
        """Adopt a bundle written by another process as a full state replacement."""
        if self._destroyed:
            return

        self._generation += 1
        if bundle is None or bundle.token.is_expired():
            self._cancel_scheduled_refresh()
            self._refresh_credential = None
            self._invalidated = False
            self._refresh_failed_at = None
            self._transition(AuthState(status=AuthStatus.UNAUTHENTICATED))
        else:
            self._adopt_bundle(bundle)

        self.audit.log_event(
            AuditEventType.EXTERNAL_CHANGE,
            "Auth state replaced by change from another process",
            result="authenticated" if self._state.is_authenticated else "unauthenticated"
        )

    # ------------------------------------------------------------------
    # Renewal scheduling
    # ------------------------------------------------------------------

    def _schedule_token_refresh(self, token: Token) -> None:
        """Arm a one-shot timer to renew the token when it enters the threshold."""
        self._cancel_scheduled_refresh()
        if self._destroyed:
            return

        if token.expires_at - token.issued_at <= self.refresh_threshold:
            logger.warning("Token lifetime is within the refresh threshold, automatic refresh disabled")
            return

        delay = max(0.0, token.seconds_until_expiry() - self.config.refresh_threshold_seconds)
        loop = asyncio.get_running_loop()
        self._refresh_handle = loop.call_later(delay, self._on_refresh_timer)
        logger.debug(f"Token refresh scheduled in {delay:.0f} seconds")

    def _cancel_scheduled_refresh(self) -> None:
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None

    def _on_refresh_timer(self) -> None:
        self._refresh_handle = None
        if self._destroyed:
            return
        logger.info("Automatic token refresh triggered")
        self._scheduled_refresh_task = asyncio.ensure_future(self._run_scheduled_refresh())

    async def _run_scheduled_refresh(self) -> None:
        try:
            await self.refresh_token()
        except RefreshFailedError as e:
            logger.error(f"Scheduled token refresh failed: {e}")
        except AuthManagerDestroyedError:
            logger.debug("Scheduled token refresh skipped, manager destroyed")

    def destroy(self) -> None:
        """
        Cancel timers and pending initialization and release storage resources.

        Stored data is left untouched. Every later call raises
        AuthManagerDestroyedError; in-flight calls complete without
        mutating state.
        """
        if self._destroyed:
            return

        logger.info("Shutting down auth manager")
        self._cancel_scheduled_refresh()

        if self._ready_task and not self._ready_task.done():
            self._ready_task.cancel()
        if self._scheduled_refresh_task and not self._scheduled_refresh_task.done():
            self._scheduled_refresh_task.cancel()

        if self._storage_unsubscribe:
            self._storage_unsubscribe()
            self._storage_unsubscribe = None
        self.token_storage.close()

        self._state = replace(self._state, status=AuthStatus.DESTROYED)
        self._destroyed = True
        self._listeners.clear()


def create_auth_manager(
    login_function: LoginFunction,
    config: Optional[AuthConfig] = None,
    token_storage: Optional[TokenStorage] = None,
    refresh_function: Optional[RefreshFunction] = None
) -> AuthManager:
    """
    Create an auth manager, building token storage from the config if none is given.
    """
    config = config or AuthConfig()
    return AuthManager(
        login_function=login_function,
        token_storage=token_storage or create_token_storage(config),
        config=config,
        refresh_function=refresh_function
    )
