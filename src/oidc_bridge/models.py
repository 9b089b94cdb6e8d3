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
Data models for the oidc-bridge package.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class IssuerMatchMode(StrEnum):
    STRICT = "strict"
    RELAXED_INTERNAL_EXTERNAL = "relaxed-internal-external"
    DISABLED = "disabled"


class SessionState(StrEnum):
    ANONYMOUS = "anonymous"
    AUTH_PENDING = "auth_pending"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"
    LOGGED_OUT = "logged_out"


class ProviderEndpoint(BaseModel):
    """
    The Identity Provider realm as seen from inside and outside the deployment network.

    The internal base URL is used for every server-initiated call; the external base URL
    for every value placed in an HTTP response. Both name the same realm.

    This model is frozen (immutable) once built from the process configuration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    internal_base_url: str = Field(..., examples=["http://keycloak:8080/keycloak"])
    external_base_url: str = Field(..., examples=["https://example.com/keycloak"])
    realm: str = Field(..., examples=["demo"])
    realm_path_template: str = Field(
        default="/realms/{realm}",
        description="Path appended to a base URL to reach the realm. '{realm}' is substituted.",
    )

    @property
    def realm_path(self) -> str:
        return self.realm_path_template.format(realm=self.realm)

    @property
    def internal_realm_url(self) -> str:
        return self.internal_base_url.rstrip("/") + self.realm_path

    @property
    def external_realm_url(self) -> str:
        return self.external_base_url.rstrip("/") + self.realm_path

    @property
    def discovery_url(self) -> str:
        """The discovery document URL, always at the internal address."""
        return f"{self.internal_realm_url}/.well-known/openid-configuration"


class ValidationPolicy(BaseModel):
    """
    Token validation settings, read-only at request time.

    Attributes:
        expected_audience (str | None): Audience the token must carry. Not checked when None.
        issuer_match_mode (IssuerMatchMode): How the issuer claim is checked.
        leeway (int): Acceptable clock skew in seconds for exp/nbf.
        allowed_algorithms (list[str]): Accepted JWS signing algorithms.
    """

    model_config = ConfigDict(frozen=True)

    expected_audience: str | None = None
    issuer_match_mode: IssuerMatchMode = IssuerMatchMode.STRICT
    leeway: int = Field(default=0, ge=0)
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])


class ProviderMetadata(BaseModel):
    """
    The subset of the provider's discovery document the bridge relies on.

    Endpoint URLs are kept exactly as the provider self-reports them; they may name either
    the internal or the external address and are reconciled where they are used.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    issuer: str
    jwks_uri: str
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    end_session_endpoint: str | None = None


class TokenResponse(BaseModel):
    """
    Response from the provider's token endpoint.

    Attributes:
        access_token (str): The access token issued by the authorization server.
        token_type (str): The type of the token (e.g. "Bearer").
        expires_in (int): The lifetime in seconds of the access token.
        refresh_token (str | None): The refresh token, if issued.
        refresh_expires_in (int | None): Lifetime of the refresh token (Keycloak extension).
        id_token (str | None): The ID token, if issued.
        scope (str | None): The granted scopes.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 300
    refresh_token: str | None = None
    refresh_expires_in: int | None = None
    id_token: str | None = None
    scope: str | None = None


class Grant(BaseModel):
    """
    Tokens and validated claims obtained after a successful login.

    Token material is held as SecretStr so it never leaks through logging or repr.
    """

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr
    refresh_token: SecretStr | None = None
    id_token: SecretStr | None = None
    id_token_claims: dict[str, Any] = Field(default_factory=dict)
    issued_at: float
    expires_at: float
    refresh_expires_at: float | None = None

    @classmethod
    def from_token_response(
        cls, response: TokenResponse, claims: dict[str, Any], now: float | None = None
    ) -> "Grant":
        now = time.time() if now is None else now
        refresh_expires_at = None
        if response.refresh_token and response.refresh_expires_in:
            refresh_expires_at = now + response.refresh_expires_in
        return cls(
            access_token=SecretStr(response.access_token),
            refresh_token=SecretStr(response.refresh_token) if response.refresh_token else None,
            id_token=SecretStr(response.id_token) if response.id_token else None,
            id_token_claims=claims,
            issued_at=now,
            expires_at=now + response.expires_in,
            refresh_expires_at=refresh_expires_at,
        )

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at

    def can_refresh(self, now: float | None = None) -> bool:
        if self.refresh_token is None:
            return False
        if self.refresh_expires_at is None:
            return True
        now = time.time() if now is None else now
        return now < self.refresh_expires_at


class Session(BaseModel):
    """
    Server-side session entry, keyed by an opaque cookie value.

    Mutated only by the SessionCoordinator (and the store when touching it).
    """

    model_config = ConfigDict(validate_assignment=True)

    session_id: str
    state: SessionState = SessionState.ANONYMOUS
    grant: Grant | None = None
    created_at: float = Field(default_factory=time.time)
    last_accessed_at: float = Field(default_factory=time.time)

    # Authorization request in flight (AuthPending only)
    pending_state: str | None = None
    pending_nonce: str | None = None
    pending_code_verifier: str | None = None
    pending_since: float | None = None
    pending_return_to: str = "/"

    # State value of the last callback that was consumed, to recognise duplicates
    consumed_state: str | None = None

    def __repr__(self) -> str:
        return f"Session(session_id='<REDACTED>', state={self.state.value!r}, has_grant={self.grant is not None})"

    def __str__(self) -> str:
        return self.__repr__()

    @property
    def is_authenticated(self) -> bool:
        return self.state is SessionState.AUTHENTICATED and self.grant is not None

    def clear_pending(self) -> None:
        self.pending_state = None
        self.pending_nonce = None
        self.pending_code_verifier = None
        self.pending_since = None
        self.pending_return_to = "/"
