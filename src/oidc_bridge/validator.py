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
TokenValidator component for validating JWT signatures and claims.
"""

import hashlib
import hmac
import time
from typing import Any, cast

from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    ExpiredTokenError,
    InvalidClaimError,
    JoseError,
    MissingClaimError,
)
from authlib.jose.errors import InvalidTokenError as JoseInvalidTokenError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import SecretStr

from oidc_bridge.exceptions import (
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidNonceError,
    OIDCBridgeError,
    SignatureVerificationError,
    TokenExpiredError,
    TokenNotYetValidError,
    TokenValidationError,
)
from oidc_bridge.models import IssuerMatchMode, ProviderEndpoint, ValidationPolicy
from oidc_bridge.oidc_provider import OIDCProvider
from oidc_bridge.utils.logger import logger

tracer = trace.get_tracer(__name__)


class TokenValidator:
    """
    Validates JWT tokens against the IdP's JWKS and the configured ValidationPolicy.

    Signature, expiry and not-before are always checked. Only the issuer check is
    governed by `ValidationPolicy.issuer_match_mode`:

    * strict: the issuer must equal the external realm URL.
    * relaxed-internal-external: the issuer must equal the internal or the external realm URL.
    * disabled: the issuer is not checked.

    Attributes:
        oidc_provider (OIDCProvider): The OIDCProvider instance.
        endpoint (ProviderEndpoint): The provider addresses the issuer is derived from.
        policy (ValidationPolicy): The validation policy.
    """

    def __init__(
        self,
        oidc_provider: OIDCProvider,
        endpoint: ProviderEndpoint,
        policy: ValidationPolicy,
        pii_salt: SecretStr,
    ) -> None:
        """
        Initialize the TokenValidator.

        Args:
            oidc_provider: The OIDCProvider instance to fetch JWKS.
            endpoint: The provider addresses.
            policy: The validation policy.
            pii_salt: Salt for anonymizing subject ids in logs and spans.
        """
        self.oidc_provider = oidc_provider
        self.endpoint = endpoint
        self.policy = policy
        self.pii_salt = pii_salt
        # Restrict the accepted algorithms; anything else is rejected by authlib
        self.jwt = JsonWebToken(list(policy.allowed_algorithms))

    @property
    def allowed_issuers(self) -> list[str] | None:
        """
        The issuer values accepted under the current policy, or None when not checked.
        """
        mode = self.policy.issuer_match_mode
        if mode is IssuerMatchMode.DISABLED:
            return None
        external = self.endpoint.external_realm_url
        if mode is IssuerMatchMode.STRICT:
            return [external]
        internal = self.endpoint.internal_realm_url
        return [external] if internal == external else [external, internal]

    def _anonymize(self, value: str) -> str:
        return hmac.new(
            self.pii_salt.get_secret_value().encode("utf-8"),
            value.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _claims_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "exp": {"essential": True},
            "nbf": {"essential": False},
        }
        if self.policy.expected_audience:
            options["aud"] = {"essential": True, "value": self.policy.expected_audience}
        return options

    def _decode(self, token: str, jwks: dict[str, Any]) -> Any:
        # Cast to Any to bypass authlib's missing stubs
        jwt_any = cast("Any", self.jwt)
        return jwt_any.decode(token, jwks, claims_options=self._claims_options())

    def _premature_claim(self, claims: Any) -> str:
        # authlib reports a future iat and a future nbf with the same error class
        iat = claims.get("iat") if claims is not None else None
        if isinstance(iat, (int, float)) and iat > time.time() + self.policy.leeway:
            return "iat"
        return "nbf"

    def _check_issuer(self, payload: dict[str, Any]) -> None:
        allowed = self.allowed_issuers
        if allowed is None:
            return
        issuer = payload.get("iss")
        if not issuer:
            raise InvalidIssuerError("Missing claim: iss", claim="iss")
        if issuer not in allowed:
            raise InvalidIssuerError(
                f"Invalid issuer '{issuer}' under issuer match mode '{self.policy.issuer_match_mode.value}'",
                claim="iss",
            )

    async def validate_token(self, token: str, nonce: str | None = None) -> dict[str, Any]:
        """
        Validates the JWT signature and claims.

        Emits an OpenTelemetry span `validate_token`.

        Args:
            token: The raw JWT string.
            nonce: The nonce sent with the authorization request, for ID tokens.

        Returns:
            dict[str, Any]: The validated claims dictionary.

        Raises:
            TokenExpiredError: If the token has expired.
            TokenNotYetValidError: If the token is not valid yet.
            InvalidIssuerError: If the issuer is not accepted by the policy.
            InvalidAudienceError: If the audience is invalid.
            InvalidNonceError: If the nonce does not match.
            SignatureVerificationError: If the signature is invalid or the key is unknown.
            TokenValidationError: For malformed tokens and other claim failures.
        """
        with tracer.start_as_current_span("validate_token") as span:
            span.set_attribute("oidc.issuer_match_mode", self.policy.issuer_match_mode.value)
            token = token.strip()

            claims: Any = None
            try:
                jwks = await self.oidc_provider.get_jwks()

                try:
                    claims = self._decode(token, jwks)
                except (ValueError, BadSignatureError):
                    # Unknown kid or bad signature may mean the keys rotated
                    logger.info("Validation failed with cached keys, refreshing JWKS and retrying...")
                    span.add_event("refreshing_jwks")
                    jwks = await self.oidc_provider.get_jwks(force_refresh=True)
                    claims = self._decode(token, jwks)
                claims.validate(leeway=self.policy.leeway)
                if self._premature_claim(claims) == "iat":
                    raise TokenNotYetValidError("Token was issued in the future", claim="iat")

                payload = dict(claims)
                self._check_issuer(payload)

                if nonce is not None and payload.get("nonce") != nonce:
                    raise InvalidNonceError("Invalid nonce", claim="nonce")

            except ExpiredTokenError as e:
                raise self._fail(span, TokenExpiredError(f"Token has expired: {e}", claim="exp"), e) from e
            except JoseInvalidTokenError as e:
                claim = self._premature_claim(claims)
                raise self._fail(span, TokenNotYetValidError(f"Token is not valid yet: {e}", claim=claim), e) from e
            except InvalidClaimError as e:
                claim = getattr(e, "claim_name", None)
                if claim == "aud":
                    raise self._fail(span, InvalidAudienceError(f"Invalid audience: {e}", claim="aud"), e) from e
                raise self._fail(span, TokenValidationError(f"Invalid claim: {e}", claim=claim), e) from e
            except MissingClaimError as e:
                claim = getattr(e, "claim_name", None)
                raise self._fail(span, TokenValidationError(f"Missing claim: {e}", claim=claim), e) from e
            except BadSignatureError as e:
                raise self._fail(span, SignatureVerificationError(f"Invalid signature: {e}"), e) from e
            except JoseError as e:
                raise self._fail(span, TokenValidationError(f"Token validation failed: {e}"), e) from e
            except ValueError as e:
                # authlib signals an unknown kid or unusable key set with ValueError
                raise self._fail(
                    span, SignatureVerificationError(f"Invalid signature or key not found: {e}"), e
                ) from e
            except TokenValidationError as e:
                raise self._fail(span, e, e) from None
            except OIDCBridgeError:
                raise
            except Exception as e:
                logger.exception("Unexpected error during token validation")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise TokenValidationError(f"Unexpected error during token validation: {e}") from e

            user_hash = self._anonymize(str(payload.get("sub", "unknown")))
            logger.info(f"Token validated for user {user_hash} (issuer {payload.get('iss')})")
            span.set_attribute("enduser.id", user_hash)
            span.set_status(Status(StatusCode.OK))
            return payload

    @staticmethod
    def _fail(span: trace.Span, error: TokenValidationError, cause: Exception) -> TokenValidationError:
        logger.warning(f"Validation failed on claim '{error.claim or 'signature/format'}': {error}")
        span.record_exception(cause)
        span.set_status(Status(StatusCode.ERROR, str(error)))
        span.set_attribute("oidc.failed_claim", error.claim or "")
        return error
