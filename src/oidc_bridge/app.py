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
FastAPI application exposing the login flow and a protected resource.
"""

from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from oidc_bridge.async_context import clear_current_claims, get_current_claims, set_current_claims
from oidc_bridge.config import OIDCBridgeConfig
from oidc_bridge.coordinator import SessionCoordinator
from oidc_bridge.exceptions import AuthenticationError, ProviderError
from oidc_bridge.models import Grant, Session
from oidc_bridge.utils.logger import logger

GENERIC_FAILURE = {"detail": "authentication failed"}


def safe_return_path(value: str | None) -> str:
    """
    Accepts only local absolute paths as post-login targets, so the login flow
    cannot be turned into an open redirect.
    """
    if not value or not value.startswith("/") or value.startswith("//") or "\\" in value:
        return "/"
    return value


def create_app(config: OIDCBridgeConfig, coordinator: SessionCoordinator | None = None) -> FastAPI:
    """
    Builds the application.

    Args:
        config: The configuration object.
        coordinator: A prepared coordinator (optional). Created from `config` when omitted.

    Returns:
        FastAPI: The application.
    """
    coordinator = coordinator or SessionCoordinator(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(f"External provider address: {coordinator.endpoint.external_realm_url}")
        logger.info(f"Internal provider address: {coordinator.endpoint.internal_realm_url}")
        yield
        await coordinator.aclose()

    app = FastAPI(title="oidc-bridge", docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.coordinator = coordinator
    app.state.config = config

    @app.middleware("http")
    async def session_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        cookie_value = request.cookies.get(config.cookie_name)
        session, created = coordinator.store.load(cookie_value)
        request.state.session = session
        clear_current_claims()

        response = await call_next(request)

        location = response.headers.get("location")
        if location:
            filtered = coordinator.filter_redirect(location)
            if filtered != location:
                logger.debug("Rewrote internal provider address in Location header")
                response.headers["location"] = filtered

        # The route may have replaced the session (logout)
        current: Session = request.state.session
        if current.session_id not in coordinator.store:
            # Invalidated by a concurrent logout; the next request starts a new session
            return response
        response.set_cookie(
            config.cookie_name,
            current.session_id,
            max_age=int(config.session_timeout),
            httponly=True,
            secure=config.secure_cookies,
            samesite="lax",
            path="/",
        )
        return response

    @app.exception_handler(AuthenticationError)
    async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        logger.warning(f"Authentication failed on {request.url.path}: {type(exc).__name__}: {exc}")
        return JSONResponse(GENERIC_FAILURE, status_code=401)

    @app.exception_handler(ProviderError)
    async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
        logger.error(f"Identity provider unavailable on {request.url.path}: {exc}")
        return JSONResponse(GENERIC_FAILURE, status_code=502)

    @app.get("/")
    async def index(request: Request) -> dict[str, Any]:
        session: Session = request.state.session
        grant = await coordinator.resolve_grant(session)
        return {
            "authenticated": grant is not None,
            "state": session.state.value,
            "user": grant.id_token_claims if grant is not None else None,
        }

    @app.get("/protected", response_model=None)
    async def protected(request: Request) -> dict[str, Any] | RedirectResponse:
        session: Session = request.state.session
        grant = await coordinator.resolve_grant(session)
        if grant is None:
            path = request.url.path
            if request.url.query:
                path = f"{path}?{request.url.query}"
            url = await coordinator.begin_login(session, return_to=safe_return_path(path))
            if url is not None:
                return RedirectResponse(url, status_code=302)
            # A concurrent callback completed the login
            grant = cast(Grant, session.grant)

        set_current_claims(grant.id_token_claims)
        return {"claims": get_current_claims()}

    @app.get("/login")
    async def login(request: Request, return_to: str | None = None) -> RedirectResponse:
        session: Session = request.state.session
        target = safe_return_path(return_to)
        if await coordinator.resolve_grant(session) is not None:
            return RedirectResponse(target, status_code=302)
        url = await coordinator.begin_login(session, return_to=target)
        return RedirectResponse(url or target, status_code=302)

    @app.get("/logout")
    async def logout(request: Request) -> RedirectResponse:
        session: Session = request.state.session
        fresh, url = await coordinator.logout(session.session_id)
        request.state.session = fresh
        return RedirectResponse(url, status_code=302)

    @app.get(config.callback_path)
    async def callback(
        request: Request,
        code: str | None = None,
        state: str | None = None,
        error: str | None = None,
    ) -> RedirectResponse:
        session: Session = request.state.session
        return_to = await coordinator.handle_callback(session.session_id, code, state, error=error)
        return RedirectResponse(safe_return_path(return_to), status_code=302)

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    return app
