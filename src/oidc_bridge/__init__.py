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
OpenID-Connect relying party for identity providers reachable at different internal and external addresses.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .app import create_app
from .config import OIDCBridgeConfig, load_config
from .coordinator import SessionCoordinator
from .exceptions import (
    ConfigError,
    OIDCBridgeError,
    RefreshError,
    StateMismatchError,
    TokenExchangeError,
    TokenValidationError,
)
from .models import Grant, IssuerMatchMode, ProviderEndpoint, Session, SessionState, ValidationPolicy
from .reconciler import AddressReconciler
from .validator import TokenValidator

__all__ = [
    "AddressReconciler",
    "ConfigError",
    "Grant",
    "IssuerMatchMode",
    "OIDCBridgeConfig",
    "OIDCBridgeError",
    "ProviderEndpoint",
    "RefreshError",
    "Session",
    "SessionCoordinator",
    "SessionState",
    "StateMismatchError",
    "TokenExchangeError",
    "TokenValidationError",
    "TokenValidator",
    "ValidationPolicy",
    "create_app",
    "load_config",
]
