"""Outbound connection routing.

``ProxyRouter`` decides how the transport reaches a destination URI. With a
configured ``ProxyTarget`` every URI that names a host is sent through one
HTTP proxy; everything else falls through to ``DefaultProxyRouter``, which
follows the usual ``<scheme>_proxy`` / ``no_proxy`` environment variables.

The router is an ordinary object handed to ``libs.rabbit.connect``; there is
no process-wide selector.

Example:
    >>> router = ProxyRouter(ProxyTarget("proxy.local", 8080))
    >>> router.select("https://broker.example:443")
    [ProxyRoute(type=<ProxyType.HTTP: 'http'>, address=('proxy.local', 8080))]
"""
from __future__ import annotations

import logging
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union
from urllib.parse import SplitResult, urlsplit

from libs.config import Settings
from libs.metrics import PROXY_CONNECT_FAILED_TOTAL


logger = logging.getLogger(__name__)

Uri = Union[str, SplitResult]
Address = Tuple[str, int]


class ProxyType(str, Enum):
    DIRECT = "direct"
    HTTP = "http"


@dataclass(frozen=True)
class ProxyRoute:
    type: ProxyType
    address: Optional[Address] = None

    @classmethod
    def direct(cls) -> "ProxyRoute":
        return cls(ProxyType.DIRECT, None)

    @classmethod
    def http(cls, hostname: str, port: int) -> "ProxyRoute":
        return cls(ProxyType.HTTP, (hostname, port))


@dataclass(frozen=True)
class ProxyTarget:
    """The single proxy every hosted destination is routed through."""
    hostname: str
    port: int


def _split(uri: Optional[Uri]) -> Optional[SplitResult]:
    if uri is None:
        return None
    if isinstance(uri, SplitResult):
        return uri
    return urlsplit(str(uri))


class DefaultProxyRouter:
    """Environment proxy policy (``http_proxy``, ``all_proxy``, ``no_proxy``...)."""

    def select(self, uri: Optional[Uri]) -> list[ProxyRoute]:
        parts = _split(uri)
        if parts is None or not parts.hostname:
            return [ProxyRoute.direct()]
        if urllib.request.proxy_bypass(parts.hostname):
            return [ProxyRoute.direct()]
        proxies = urllib.request.getproxies()
        proxy_url = proxies.get(parts.scheme.lower()) or proxies.get("all")
        if not proxy_url:
            return [ProxyRoute.direct()]
        proxy = urlsplit(proxy_url if "://" in proxy_url else f"http://{proxy_url}")
        if not proxy.hostname:
            return [ProxyRoute.direct()]
        return [ProxyRoute.http(proxy.hostname, proxy.port or 80)]

    def connect_failed(self, uri: Uri, address: Address, error: BaseException) -> None:
        PROXY_CONNECT_FAILED_TOTAL.inc()
        logger.warning("Connection to %s via %s failed: %s", _display(uri), address, error)


class ProxyRouter:
    """Forces one HTTP proxy for every hosted destination when a target is set.

    Properties:
    - `target`: configured proxy, or None for default routing
    - `default`: policy used for hostless URIs and when no target is set
    """

    def __init__(self, target: Optional[ProxyTarget] = None, default: Optional[DefaultProxyRouter] = None) -> None:
        self.target = target
        self.default = default or DefaultProxyRouter()

    def select(self, uri: Optional[Uri]) -> list[ProxyRoute]:
        if self.target is not None:
            parts = _split(uri)
            if parts is not None and parts.hostname:
                return [ProxyRoute.http(self.target.hostname, self.target.port)]
        return self.default.select(uri)

    def connect_failed(self, uri: Optional[Uri], address: Optional[Address], error: Optional[BaseException]) -> None:
        """Forward a failed connection on a selected route to the default policy.

        A ``None`` argument means the caller is broken, so it raises ``ValueError``.
        """
        if uri is None or address is None or error is None:
            raise ValueError("Arguments can't be null.")
        self.default.connect_failed(uri, address, error)


def _display(uri: Uri) -> str:
    return uri.geturl() if isinstance(uri, SplitResult) else str(uri)


def build_proxy_router(settings: Settings) -> ProxyRouter:
    """Resolve the proxy target once from settings and build the router."""
    port = settings.proxy_port_number
    if settings.proxy_hostname is None or port is None:
        logger.info("No proxy configured; using default routing")
        return ProxyRouter()
    logger.info("Setting up proxy router with proxy address %s:%d", settings.proxy_hostname, port)
    return ProxyRouter(ProxyTarget(settings.proxy_hostname, port))
