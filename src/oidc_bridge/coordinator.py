# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/oidc_bridge

"""
SessionCoordinator component: drives the authorization-code flow for each session.
"""

import hmac
import secrets
import time
from typing import Any
from urllib.parse import urlencode

import httpx
from authlib.oauth2.rfc7636 import create_s256_code_challenge
from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from oidc_bridge.config import OIDCBridgeConfig
from oidc_bridge.exceptions import (
    AuthenticationError,
    DuplicateCallbackError,
    OIDCBridgeError,
    ProviderError,
    RefreshError,
    StateMismatchError,
    TokenExchangeError,
    TokenValidationError,
)
from oidc_bridge.models import Grant, Session, SessionState, TokenResponse
from oidc_bridge.oidc_provider import OIDCProvider
from oidc_bridge.reconciler import AddressReconciler
from oidc_bridge.sessions import SessionStore
from oidc_bridge.transport import ProviderTransport, fetch_json
from oidc_bridge.utils.logger import logger
from oidc_bridge.validator import TokenValidator

tracer = trace.get_tracer(__name__)


def _append_query(url: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


class SessionCoordinator:
    """
    Drives each session through Anonymous -> AuthPending -> Authenticated -> (Expired | LoggedOut).

    Owns the provider HTTP client, the OIDC provider cache, the token validator and the
    session store. Every redirect it builds passes through `filter_redirect`, and every
    server-to-server call goes to the provider's internal address.
    Handles resources via async context manager.
    """

    def __init__(
        self,
        config: OIDCBridgeConfig,
        client: httpx.AsyncClient | None = None,
        store: SessionStore | None = None,
    ) -> None:
        """
        Initialize the SessionCoordinator.

        Args:
            config: The configuration object.
            client: External async client (optional). If not provided, a client with
                `ProviderTransport` and the configured timeout is created.
            store: Session store (optional). Defaults to an in-memory store.
        """
        self.config = config
        self.endpoint = config.endpoint
        self.reconciler = AddressReconciler(self.endpoint)
        self._internal_client = client is None

        if client is not None:
            self._client = client
        else:
            transport = ProviderTransport(self.reconciler, forward_headers=config.forward_headers)
            self._client = httpx.AsyncClient(transport=transport, timeout=config.http_timeout)

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._client)

        self.store = store or SessionStore(config.session_timeout)
        self.oidc_provider = OIDCProvider(self.endpoint, self.reconciler, self._client)
        self.validator = TokenValidator(
            oidc_provider=self.oidc_provider,
            endpoint=self.endpoint,
            policy=config.validation_policy,
            pii_salt=config.pii_salt,
        )

    async def __aenter__(self) -> "SessionCoordinator":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

    def filter_redirect(self, url: str) -> str:
        """
        Outbound response filter: any URL at the provider's internal address is
        rewritten to the external address before it reaches the browser.
        """
        return self.reconciler.to_external(url)

    def _pending_expired(self, session: Session, now: float | None = None) -> bool:
        if session.pending_since is None:
            return True
        now = time.time() if now is None else now
        return now - session.pending_since > self.config.pending_timeout

    @staticmethod
    def _reset(session: Session, state: SessionState = SessionState.ANONYMOUS) -> None:
        session.clear_pending()
        session.grant = None
        session.state = state

    async def begin_login(self, session: Session, return_to: str = "/") -> str | None:
        """
        Moves the session to AuthPending and builds the authorization redirect.

        A fresh state, nonce and PKCE verifier are bound to the session. An expired grant is dropped.
        If the session holds a live grant once the lock is taken, for instance because a concurrent
        callback just completed, nothing changes and None is returned.

        Args:
            session: The session starting the login.
            return_to: Application path to return to after the callback.

        Returns:
            str | None: The provider's external authorization URL, or None if the session is authenticated.

        Raises:
            ProviderError: If the provider metadata cannot be loaded.
            StateMismatchError: If the session was invalidated, for instance by a concurrent logout.
        """
        authorization_endpoint = await self.oidc_provider.authorization_endpoint()

        async with self.store.lock(session.session_id):
            if session.session_id not in self.store:
                raise StateMismatchError("Session was invalidated before the login started")
            if session.is_authenticated and not session.grant.is_expired():  # type: ignore[union-attr]
                logger.debug("Session authenticated concurrently; no login needed")
                return None

            state = secrets.token_urlsafe(32)
            nonce = secrets.token_urlsafe(32)
            code_verifier = secrets.token_urlsafe(64)

            self._reset(session, SessionState.AUTH_PENDING)
            session.pending_state = state
            session.pending_nonce = nonce
            session.pending_code_verifier = code_verifier
            session.pending_since = time.time()
            session.pending_return_to = return_to

        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "scope": self.config.scope,
            "redirect_uri": self.config.callback_url,
            "state": state,
            "nonce": nonce,
            "code_challenge": create_s256_code_challenge(code_verifier),
            "code_challenge_method": "S256",
        }
        logger.info("Login started; redirecting to authorization endpoint")
        return self.filter_redirect(_append_query(authorization_endpoint, params))

    async def handle_callback(
        self,
        session_id: str | None,
        code: str | None,
        state: str | None,
        error: str | None = None,
    ) -> str:
        """
        Completes the login for the provider's redirect back to the application.

        Serialized per session, so a code is sent to the token endpoint at most once.

        Args:
            session_id: The session id from the cookie.
            code: The authorization code.
            state: The anti-forgery state echoed by the provider.
            error: The OAuth error code, when the provider reports one.

        Returns:
            str: The application path stored when the login started.

        Raises:
            StateMismatchError: No pending login, the pending login expired, or the state does not match.
            DuplicateCallbackError: The callback repeats one that was already consumed.
            TokenExchangeError: The provider reported an error or the code exchange failed.
            TokenValidationError: The returned token is invalid.
        """
        session = self.store.get(session_id)
        if session is None:
            raise StateMismatchError("Callback received without a live session")

        async with self.store.lock(session.session_id):
            if session.session_id not in self.store:
                raise StateMismatchError("Callback received for an invalidated session")
            with tracer.start_as_current_span("oidc.callback") as span:
                try:
                    return await self._complete_login(session, code, state, error)
                except OIDCBridgeError as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, type(e).__name__))
                    raise

    async def _complete_login(self, session: Session, code: str | None, state: str | None, error: str | None) -> str:
        # Must be called while holding the session lock
        if session.state is not SessionState.AUTH_PENDING or session.pending_state is None:
            if state and session.consumed_state and hmac.compare_digest(state, session.consumed_state):
                logger.warning("Duplicate callback for an already consumed authorization")
                raise DuplicateCallbackError("Authorization code was already exchanged for this session")
            raise StateMismatchError("No login is pending for this session")

        if self._pending_expired(session):
            self._reset(session)
            raise StateMismatchError("Pending login expired")

        if not state or not hmac.compare_digest(state, session.pending_state):
            self._reset(session)
            logger.warning("Anti-forgery state mismatch on callback")
            raise StateMismatchError("State does not match the pending login")

        # Consume the pending login before contacting the provider; the code is one-shot
        nonce = session.pending_nonce
        code_verifier = session.pending_code_verifier
        return_to = session.pending_return_to
        session.consumed_state = session.pending_state
        self._reset(session)

        if error:
            raise TokenExchangeError(f"Provider returned error '{error}'")
        if not code:
            raise TokenExchangeError("Callback did not carry an authorization code")

        response = await self._exchange_code(code, code_verifier)
        try:
            claims = await self._validate(response, nonce)
        except ProviderError as e:
            raise TokenExchangeError(f"Could not load provider keys: {e}") from e

        session.grant = Grant.from_token_response(response, claims)
        session.state = SessionState.AUTHENTICATED
        logger.info("Login completed; session authenticated")
        return return_to

    async def _token_request(
        self, data: dict[str, str], error_cls: type[AuthenticationError]
    ) -> TokenResponse:
        """
        Single POST to the internal token endpoint. Never retried.
        """
        try:
            url = await self.oidc_provider.token_endpoint()
            status, body = await fetch_json(self._client, url, method="POST", data=data)
        except (httpx.HTTPError, ProviderError) as e:
            logger.error(f"Token endpoint request failed: {e}")
            raise error_cls(f"Token endpoint request failed: {e}") from e

        if status >= 400 or not isinstance(body, dict):
            reason = body.get("error") if isinstance(body, dict) else None
            logger.error(f"Token endpoint returned status {status} ({reason or 'no error code'})")
            raise error_cls(f"Token endpoint returned status {status}")

        try:
            return TokenResponse(**body)
        except ValidationError as e:
            raise error_cls(f"Invalid token response: {e}") from e

    def _client_credentials(self) -> dict[str, str]:
        data = {"client_id": self.config.client_id}
        if self.config.client_secret is not None:
            data["client_secret"] = self.config.client_secret.get_secret_value()
        return data

    async def _exchange_code(self, code: str, code_verifier: str | None) -> TokenResponse:
        with tracer.start_as_current_span("oidc.exchange_code"):
            data = {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.config.callback_url,
                **self._client_credentials(),
            }
            if code_verifier:
                data["code_verifier"] = code_verifier
            return await self._token_request(data, TokenExchangeError)

    async def _validate(self, response: TokenResponse, nonce: str | None) -> dict[str, Any]:
        if response.id_token:
            return await self.validator.validate_token(response.id_token, nonce=nonce)
        return await self.validator.validate_token(response.access_token)

    async def refresh(self, session: Session) -> Grant:
        """
        Silently refreshes the session's grant through the internal token endpoint.

        Must be called while holding the session lock.

        Raises:
            RefreshError: If there is no usable refresh token or the refresh fails.
        """
        grant = session.grant
        if grant is None or not grant.can_refresh():
            raise RefreshError("No usable refresh token")

        with tracer.start_as_current_span("oidc.refresh"):
            data = {
                "grant_type": "refresh_token",
                "refresh_token": grant.refresh_token.get_secret_value(),  # type: ignore[union-attr]
                **self._client_credentials(),
            }
            response = await self._token_request(data, RefreshError)

            # Keep the previous refresh/ID token when the provider does not rotate them
            update: dict[str, Any] = {}
            if response.refresh_token is None:
                update["refresh_token"] = grant.refresh_token.get_secret_value()  # type: ignore[union-attr]
            response = response.model_copy(update=update)

            try:
                claims = await self._validate(response, nonce=None)
            except (TokenValidationError, ProviderError) as e:
                raise RefreshError(f"Refreshed token rejected: {e}") from e

            refreshed = Grant.from_token_response(response, claims)
            if refreshed.id_token is None and grant.id_token is not None:
                refreshed = refreshed.model_copy(update={"id_token": grant.id_token})
            if response.refresh_expires_in is None and grant.refresh_expires_at is not None:
                refreshed = refreshed.model_copy(update={"refresh_expires_at": grant.refresh_expires_at})
            return refreshed

    async def resolve_grant(self, session: Session) -> Grant | None:
        """
        Returns a usable grant for the session, or None when it must be treated as anonymous.

        An expired grant is refreshed silently when a refresh token is present; if that
        is not possible the session moves to Expired and its grant is cleared.
        """
        if session.state is SessionState.AUTH_PENDING and self._pending_expired(session):
            self._reset(session)
            return None

        if not session.is_authenticated:
            return None
        if not session.grant.is_expired():  # type: ignore[union-attr]
            return session.grant

        async with self.store.lock(session.session_id):
            # Another request may have refreshed, cleared or logged out the session meanwhile
            if session.session_id not in self.store or not session.is_authenticated:
                return None
            grant = session.grant
            if not grant.is_expired():  # type: ignore[union-attr]
                return grant

            try:
                session.grant = await self.refresh(session)
            except RefreshError as e:
                logger.info(f"Grant expired and could not be refreshed: {e}")
                self._reset(session, SessionState.EXPIRED)
                return None

            logger.info("Grant refreshed silently")
            return session.grant

    async def logout(self, session_id: str | None) -> tuple[Session, str]:
        """
        Logs the session out: clears the grant and invalidates the session id itself.

        Returns:
            tuple[Session, str]: A fresh anonymous session and the redirect target. The target is
            the provider's external end-session endpoint when the session held a grant and the
            provider advertises one, otherwise the application root.
        """
        app_root = f"{self.config.app_base_url}/"
        id_token_hint: str | None = None
        had_grant = False

        session = self.store.get(session_id)
        if session is not None:
            async with self.store.lock(session.session_id):
                # A concurrent logout may already have invalidated it
                if session.session_id in self.store:
                    if session.grant is not None:
                        had_grant = True
                        if session.grant.id_token is not None:
                            id_token_hint = session.grant.id_token.get_secret_value()
                    self._reset(session, SessionState.LOGGED_OUT)
                    self.store.invalidate(session.session_id)
                    logger.info("Session logged out and invalidated")

        fresh = self.store.create()

        if not had_grant:
            return fresh, app_root

        try:
            end_session = await self.oidc_provider.end_session_endpoint()
        except ProviderError as e:
            logger.warning(f"Could not resolve end-session endpoint, skipping provider logout: {e}")
            return fresh, app_root

        if end_session is None:
            return fresh, app_root

        params = {"client_id": self.config.client_id, "post_logout_redirect_uri": app_root}
        if id_token_hint:
            params["id_token_hint"] = id_token_hint
        return fresh, self.filter_redirect(_append_query(end_session, params))
