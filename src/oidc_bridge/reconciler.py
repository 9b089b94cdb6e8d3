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
Address Reconciler: maps URLs between the Identity Provider's internal and external addresses.
"""

from typing import NamedTuple
from urllib.parse import SplitResult, urlsplit, urlunsplit

from oidc_bridge.models import ProviderEndpoint
from oidc_bridge.utils.logger import logger

_DEFAULT_PORTS = {"http": 80, "https": 443}


class _Origin(NamedTuple):
    scheme: str
    host: str
    port: int
    netloc: str
    path: str


def _parse_origin(base_url: str) -> _Origin:
    parts = urlsplit(base_url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port or _DEFAULT_PORTS.get(scheme, 0)
    return _Origin(scheme, host, port, parts.netloc, parts.path.rstrip("/"))


class AddressReconciler:
    """
    Rewrites URLs between the internal and external provider addresses.

    Both directions are pure string rewrites. A URL matches a side when its scheme,
    host and effective port equal that side's, and its path starts with that side's
    base path on a segment boundary. The matched prefix is swapped; the remaining
    path, query and fragment are kept. Anything else passes through unchanged.

    Attributes:
        endpoint (ProviderEndpoint): The provider addresses to reconcile.
    """

    def __init__(self, endpoint: ProviderEndpoint) -> None:
        self.endpoint = endpoint
        self._internal = _parse_origin(endpoint.internal_base_url)
        self._external = _parse_origin(endpoint.external_base_url)

    @staticmethod
    def _matches(parts: SplitResult, origin: _Origin) -> bool:
        scheme = parts.scheme.lower()
        if scheme != origin.scheme or (parts.hostname or "").lower() != origin.host:
            return False
        if (parts.port or _DEFAULT_PORTS.get(scheme, 0)) != origin.port:
            return False
        path = parts.path
        return not origin.path or path == origin.path or path.startswith(origin.path + "/")

    def _rewrite(self, url: str, source: _Origin, target: _Origin, direction: str) -> str:
        if not isinstance(url, str):
            logger.warning(f"Address reconciler ({direction}): ignoring non-string URL of type {type(url).__name__}")
            return url
        try:
            parts = urlsplit(url)
            if not self._matches(parts, source):
                return url
        except ValueError as e:
            logger.warning(f"Address reconciler ({direction}): malformed URL passed through unchanged: {e}")
            return url

        remainder = parts.path[len(source.path):]
        rewritten = urlunsplit((target.scheme, target.netloc, target.path + remainder, parts.query, parts.fragment))
        logger.debug(f"Address reconciler ({direction}): {source.netloc}{source.path} -> {target.netloc}{target.path}")
        return rewritten

    def to_internal(self, url: str) -> str:
        """
        Rewrites an external-address URL to the internal address.

        Args:
            url: Any URL. Non-matching or malformed URLs are returned unchanged.

        Returns:
            str: The URL targeting the internal address.
        """
        return self._rewrite(url, self._external, self._internal, "to_internal")

    def to_external(self, url: str) -> str:
        """
        Rewrites an internal-address URL to the external address.

        Args:
            url: Any URL. Non-matching or malformed URLs are returned unchanged.

        Returns:
            str: The URL targeting the external address.
        """
        return self._rewrite(url, self._internal, self._external, "to_external")

    def is_internal(self, url: str) -> bool:
        try:
            return self._matches(urlsplit(url), self._internal)
        except (ValueError, TypeError, AttributeError):
            return False

    def forwarded_headers(self) -> dict[str, str]:
        """
        Headers describing the external address, sent with server-to-server calls
        so the provider can derive the URLs it self-reports.
        """
        return {
            "X-Forwarded-Proto": self._external.scheme,
            "X-Forwarded-Host": self._external.host,
            "X-Forwarded-Port": str(self._external.port),
        }
