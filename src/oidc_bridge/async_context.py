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
Async Context Management for the request-scoped claims of the authenticated user.
"""

from contextvars import ContextVar
from typing import Any

_current_claims: ContextVar[dict[str, Any] | None] = ContextVar("current_claims", default=None)


def get_current_claims() -> dict[str, Any] | None:
    """
    Retrieve the claims of the grant attached to the current request.

    Returns:
        dict[str, Any] | None: The claims, or None for anonymous requests.
    """
    return _current_claims.get()


def set_current_claims(claims: dict[str, Any]) -> None:
    """
    Attach the grant's claims to the current request context.

    Args:
        claims: The validated claims.
    """
    _current_claims.set(claims)


def clear_current_claims() -> None:
    """
    Clear the current claims (reset to None).
    """
    _current_claims.set(None)
