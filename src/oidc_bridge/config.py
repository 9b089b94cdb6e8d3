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
Configuration for the oidc-bridge package.
"""

from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import Field, SecretStr, ValidationError, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from oidc_bridge.exceptions import ConfigError
from oidc_bridge.models import IssuerMatchMode, ProviderEndpoint, ValidationPolicy


class OIDCBridgeConfig(BaseSettings):
    """
    Configuration settings for oidc-bridge.

    Attributes:
        unsafe_local_dev (bool): Allows plain HTTP for browser-facing URLs. Local testing only.
        realm (str): The Identity Provider realm name.
        internal_url (str): Provider base URL reachable from inside the deployment (e.g. http://keycloak:8080/keycloak).
        external_url (str): Provider base URL the browser sees (e.g. https://example.com/keycloak).
        realm_path_template (str): Path from a base URL to the realm. Defaults to the Keycloak layout.
        client_id (str): The OIDC Client ID.
        client_secret (SecretStr | None): The confidential client secret.
        app_base_url (str): External URL of this application; the callback URL is derived from it.
        issuer_match_mode (IssuerMatchMode): How the token issuer claim is checked.
        session_timeout (float): Session inactivity timeout in seconds.
        pending_timeout (float): Seconds a login may stay pending before the callback is refused.
        tls_cert_file (Path | None): Certificate when terminating TLS locally.
        tls_key_file (Path | None): Private key when terminating TLS locally.
    """

    model_config = SettingsConfigDict(
        env_prefix="OIDC_BRIDGE_",
        case_sensitive=False,
    )

    unsafe_local_dev: bool = False

    realm: str = "demo"
    internal_url: str = "http://keycloak:8080/keycloak"
    external_url: str
    realm_path_template: str = "/realms/{realm}"
    client_id: str = "demo-app"
    client_secret: SecretStr | None = None

    app_base_url: str
    callback_path: str = "/callback"
    scope: str = "openid profile email"

    issuer_match_mode: IssuerMatchMode = IssuerMatchMode.STRICT
    expected_audience: str | None = None
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])
    clock_skew_leeway: int = Field(default=0, ge=0)

    session_timeout: float = Field(default=1800.0, gt=0, description="Session inactivity timeout in seconds.")
    pending_timeout: float = Field(default=300.0, gt=0, description="Lifetime of a pending login in seconds.")
    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all IdP network operations.")
    forward_headers: bool = True

    cookie_name: str = "oidc_bridge_session"
    cookie_secure: bool | None = None
    pii_salt: SecretStr = SecretStr("oidc-bridge-unsafe-default-salt")

    host: str = "0.0.0.0"
    port: int = Field(default=3000, gt=0, lt=65536)
    tls_cert_file: Path | None = None
    tls_key_file: Path | None = None

    @field_validator("internal_url", "external_url", "app_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """
        Ensures a base URL is absolute http(s) with a host, and strips the trailing slash.
        """
        v = v.strip()
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"'{v}' must be an absolute http(s) URL")
        if parsed.query or parsed.fragment:
            raise ValueError(f"'{v}' must not carry a query or fragment")
        try:
            parsed.port
        except ValueError as e:
            raise ValueError(f"'{v}' has an invalid port") from e
        return v.rstrip("/")

    @field_validator("external_url", "app_base_url", mode="after")
    @classmethod
    def validate_https(cls, v: str, info: ValidationInfo) -> str:
        """
        Ensures browser-facing URLs use HTTPS, unless strictly opted out for local dev.
        The internal URL is exempt: it never leaves the deployment network.
        """
        if v.startswith("http://") and not info.data.get("unsafe_local_dev", False):
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return v

    @field_validator("callback_path")
    @classmethod
    def validate_callback_path(cls, v: str) -> str:
        if not v.startswith("/") or "?" in v or "#" in v:
            raise ValueError("callback_path must be an absolute path without query or fragment")
        return v

    @field_validator("realm_path_template")
    @classmethod
    def validate_realm_path_template(cls, v: str) -> str:
        if v and not v.startswith("/"):
            raise ValueError("realm_path_template must start with '/'")
        return v.rstrip("/")

    @field_validator("allowed_algorithms")
    @classmethod
    def validate_algorithms(cls, v: list[str]) -> list[str]:
        # Symmetric and unsigned tokens are never accepted from the provider
        rejected = [alg for alg in v if alg.lower() == "none" or alg.upper().startswith("HS")]
        if rejected:
            raise ValueError(f"Algorithms not allowed: {rejected}")
        if not v:
            raise ValueError("At least one signing algorithm must be allowed")
        return v

    @model_validator(mode="after")
    def validate_tls_pair(self) -> "OIDCBridgeConfig":
        """
        Ensures certificate and key are configured together.
        """
        if (self.tls_cert_file is None) != (self.tls_key_file is None):
            raise ValueError("tls_cert_file and tls_key_file must be set together")
        return self

    @property
    def tls_enabled(self) -> bool:
        return self.tls_cert_file is not None

    @property
    def callback_url(self) -> str:
        return f"{self.app_base_url}{self.callback_path}"

    @property
    def secure_cookies(self) -> bool:
        if self.cookie_secure is not None:
            return self.cookie_secure
        return self.app_base_url.startswith("https://")

    @property
    def endpoint(self) -> ProviderEndpoint:
        return ProviderEndpoint(
            internal_base_url=self.internal_url,
            external_base_url=self.external_url,
            realm=self.realm,
            realm_path_template=self.realm_path_template,
        )

    @property
    def validation_policy(self) -> ValidationPolicy:
        return ValidationPolicy(
            expected_audience=self.expected_audience,
            issuer_match_mode=self.issuer_match_mode,
            leeway=self.clock_skew_leeway,
            allowed_algorithms=self.allowed_algorithms,
        )


def load_config(**overrides: Any) -> OIDCBridgeConfig:
    """
    Loads the configuration from the environment, applying explicit overrides.

    Raises:
        ConfigError: If any setting is missing or malformed.
    """
    try:
        return OIDCBridgeConfig(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid oidc-bridge configuration: {e}") from e
