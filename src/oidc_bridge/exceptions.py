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
Custom exceptions for the oidc-bridge package.
"""


class OIDCBridgeError(Exception):
    """Base exception for all oidc-bridge errors."""


class ConfigError(OIDCBridgeError):
    """Raised when the endpoint or process configuration is malformed. Fatal at startup."""


class ProviderError(OIDCBridgeError):
    """Raised when discovery or key retrieval from the Identity Provider fails."""


class OversizedResponseError(ProviderError):
    """Raised when an HTTP response is too large."""


class AuthenticationError(OIDCBridgeError):
    """Base class for failures that abort the login flow and return the session to anonymous."""


class StateMismatchError(AuthenticationError):
    """Raised when the anti-forgery state returned by the provider does not match the pending one."""


class TokenExchangeError(AuthenticationError):
    """Raised when exchanging the authorization code for tokens fails."""


class DuplicateCallbackError(TokenExchangeError):
    """Raised when a callback arrives for an authorization that was already consumed."""


class RefreshError(AuthenticationError):
    """Raised when a silent refresh of an expired grant fails."""


class TokenValidationError(AuthenticationError):
    """
    Raised when a token fails validation (signature, expiry, issuer, audience, etc.).

    Attributes:
        claim (str | None): The claim that failed, when one can be named.
    """

    def __init__(self, message: str, claim: str | None = None) -> None:
        super().__init__(message)
        self.claim = claim


class TokenExpiredError(TokenValidationError):
    """Raised when the provided token has expired."""


class TokenNotYetValidError(TokenValidationError):
    """Raised when the token's not-before time lies in the future."""


class InvalidIssuerError(TokenValidationError):
    """Raised when the token's issuer is not accepted by the validation policy."""


class InvalidAudienceError(TokenValidationError):
    """Raised when the token's audience does not match the expected value."""


class InvalidNonceError(TokenValidationError):
    """Raised when the ID token's nonce does not match the one sent with the authorization request."""


class SignatureVerificationError(TokenValidationError):
    """Raised when the token's signature cannot be verified."""
