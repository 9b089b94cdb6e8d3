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
OIDC Provider component for fetching and caching discovery metadata and JWKS.
"""

import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import anyio
import httpx
from pydantic import ValidationError

from oidc_bridge.exceptions import OversizedResponseError, ProviderError
from oidc_bridge.models import ProviderEndpoint, ProviderMetadata
from oidc_bridge.reconciler import AddressReconciler
from oidc_bridge.transport import safe_json_fetch
from oidc_bridge.utils.logger import logger

T = TypeVar("T")

# Keycloak layout, used when the discovery document omits an endpoint
DEFAULT_AUTHORIZATION_PATH = "/protocol/openid-connect/auth"
DEFAULT_TOKEN_PATH = "/protocol/openid-connect/token"


class OIDCProvider:
    """
    Fetches and caches the Identity Provider's configuration and JWKS.

    Discovery and key retrieval always go to the internal address. Endpoints handed
    to the browser are reconciled to the external address.

    Attributes:
        endpoint (ProviderEndpoint): The provider addresses.
        reconciler (AddressReconciler): Maps between the internal and external addresses.
        cache_ttl (int): The cache time-to-live in seconds.
    """

    def __init__(
        self,
        endpoint: ProviderEndpoint,
        reconciler: AddressReconciler,
        client: httpx.AsyncClient,
        cache_ttl: int = 3600,
        refresh_cooldown: float = 30.0,
        attempts: int = 3,
    ) -> None:
        """
        Initialize the OIDCProvider.

        Args:
            endpoint: The provider addresses.
            reconciler: The address reconciler built from the same endpoint.
            client: The async HTTP client to use for requests.
            cache_ttl: Time-to-live for the JWKS cache in seconds. Defaults to 3600 (1 hour).
            refresh_cooldown: Minimum time in seconds between forced refreshes. Defaults to 30.0.
            attempts: Attempts per discovery/JWKS fetch. These requests are idempotent.
        """
        self.endpoint = endpoint
        self.reconciler = reconciler
        self.client = client
        self.cache_ttl = cache_ttl
        self.refresh_cooldown = refresh_cooldown
        self.attempts = attempts
        self._jwks_cache: dict[str, Any] | None = None
        self._oidc_config_cache: ProviderMetadata | None = None
        self._last_update: float = 0.0
        self._lock: anyio.Lock | None = None

    async def _with_retries(self, what: str, fetch: Callable[[], Awaitable[T]]) -> T:
        """
        Runs an idempotent fetch with exponential backoff (initial=0.1s, max=1.0s).
        """
        wait_initial = 0.1
        wait_max = 1.0

        for attempt in range(self.attempts):
            try:
                return await fetch()
            except OversizedResponseError:
                raise
            except (ProviderError, httpx.HTTPError) as e:
                if attempt == self.attempts - 1:
                    raise ProviderError(f"Failed to fetch {what}: {e}") from e
                logger.warning(f"Fetching {what} failed (attempt {attempt + 1}/{self.attempts}): {e}")
                await anyio.sleep(min(wait_initial * (2**attempt), wait_max))

        raise ProviderError(f"Failed to fetch {what}")  # pragma: no cover

    async def _fetch_oidc_config(self) -> ProviderMetadata:
        """
        Fetches the discovery document from the internal realm URL.

        Raises:
            ProviderError: If the request fails after retries or returns invalid data.
        """
        url = self.endpoint.discovery_url
        data = await self._with_retries("OIDC configuration", lambda: safe_json_fetch(self.client, url))
        try:
            return ProviderMetadata(**data)
        except ValidationError as e:
            raise ProviderError(f"Invalid OIDC configuration from {url}: {e}") from e

    async def _fetch_jwks(self, jwks_uri: str) -> dict[str, Any]:
        """
        Fetches the JWKS, rewriting a self-reported external URI to the internal address.
        """
        url = self.reconciler.to_internal(jwks_uri)
        jwks = await self._with_retries("JWKS", lambda: safe_json_fetch(self.client, url))
        if not isinstance(jwks.get("keys"), list):
            raise ProviderError(f"Invalid JWKS from {url}: missing 'keys'")
        return jwks

    async def _refresh_critical_section(self, force_refresh: bool) -> dict[str, Any]:
        """
        Critical section for refreshing discovery metadata and JWKS.
        Must be called while holding the lock.
        """
        current_time = time.time()
        age = current_time - self._last_update

        if self._jwks_cache is not None:
            if not force_refresh and age < self.cache_ttl:
                return self._jwks_cache
            if force_refresh and age < self.refresh_cooldown:
                logger.warning("JWKS refresh cooldown active. Returning cached keys despite force_refresh request.")
                return self._jwks_cache

        oidc_config = await self._fetch_oidc_config()
        jwks = await self._fetch_jwks(oidc_config.jwks_uri)

        self._jwks_cache = jwks
        self._oidc_config_cache = oidc_config
        self._last_update = current_time
        logger.info(f"Loaded OIDC configuration for realm '{self.endpoint.realm}' ({len(jwks['keys'])} keys)")
        return jwks

    async def get_jwks(self, force_refresh: bool = False) -> dict[str, Any]:
        """
        Returns the JWKS, using the cache if valid.

        Args:
            force_refresh: If True, bypasses the cache (subject to the refresh cooldown).

        Raises:
            ProviderError: If fetching fails.
        """
        if self._lock is None:
            self._lock = anyio.Lock()

        if not force_refresh and self._jwks_cache is not None and (time.time() - self._last_update) < self.cache_ttl:
            return self._jwks_cache

        async with self._lock:
            return await self._refresh_critical_section(force_refresh)

    async def get_config(self) -> ProviderMetadata:
        """
        Returns the cached discovery document, refreshing it when expired.
        """
        if self._oidc_config_cache is None or (time.time() - self._last_update) >= self.cache_ttl:
            await self.get_jwks()

        if self._oidc_config_cache is None:
            raise ProviderError("Failed to load OIDC configuration")

        return self._oidc_config_cache

    async def authorization_endpoint(self) -> str:
        """The authorization endpoint at the external (browser-facing) address."""
        config = await self.get_config()
        url = config.authorization_endpoint or self.endpoint.internal_realm_url + DEFAULT_AUTHORIZATION_PATH
        return self.reconciler.to_external(url)

    async def token_endpoint(self) -> str:
        """The token endpoint at the internal (server-to-server) address."""
        config = await self.get_config()
        url = config.token_endpoint or self.endpoint.internal_realm_url + DEFAULT_TOKEN_PATH
        return self.reconciler.to_internal(url)

    async def end_session_endpoint(self) -> str | None:
        """The RP-initiated logout endpoint at the external address, if advertised."""
        config = await self.get_config()
        if not config.end_session_endpoint:
            return None
        return self.reconciler.to_external(config.end_session_endpoint)
