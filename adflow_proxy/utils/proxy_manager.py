"""
Egress proxy rotation with per-route health tracking.

Routes are loaded from a plain-text list (one proxy per line). Every outbound
fetch made through :class:`ProxyManager` reports its outcome back, so routes
that fail repeatedly are taken out of rotation for a cooldown period. An empty
or fully cooled-down pool is a degraded state, never an error: selection falls
back to any route, and fetches fall back to a direct connection when no route
is configured at all.
"""

import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import httpx

from adflow_proxy.configs import settings
from adflow_proxy.utils.http_utils import DownloadError, create_httpx_client

logger = logging.getLogger(__name__)

_PROXY_SCHEMES = ("http://", "https://", "socks4://", "socks5://", "socks5h://")


@dataclass
class ProxyRoute:
    """A single egress route and its health counters."""

    url: str
    host_port: str
    consecutive_failures: int = 0
    cooldown_until: Optional[float] = None
    successes: int = 0
    failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def route_id(self) -> str:
        return self.url

    @property
    def success_rate(self) -> float:
        total = self.successes + self.failures
        if total == 0:
            return 1.0
        return self.successes / total

    def in_cooldown(self, now: float) -> bool:
        with self._lock:
            if self.cooldown_until is None:
                return False
            if now >= self.cooldown_until:
                self.cooldown_until = None
                self.consecutive_failures = 0
                return False
            return True


def parse_proxy_line(line: str) -> Optional[str]:
    """
    Normalise one line of a proxy list into a proxy URL.

    Accepts full URLs and the ``host:port:username:password`` format. Blank lines
    and ``#`` comments yield None, as does anything unrecognised.
    """
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None

    if stripped.startswith(_PROXY_SCHEMES):
        return stripped

    parts = stripped.split(":")
    if len(parts) == 4:
        host, port, username, password = parts
        return f"http://{username}:{password}@{host}:{port}"

    return None


def extract_host_port(proxy_url: str) -> str:
    """Return ``host:port`` for logging, never the credentials."""
    match = re.search(r"@([^:/]+):(\d+)", proxy_url)
    if match:
        return f"{match.group(1)}:{match.group(2)}"
    return re.sub(r":[^:@/]+@", ":****@", proxy_url)


class ProxyManager:
    """
    Health-aware pool of egress proxies.

    All counters are mutated under a per-route lock so concurrent success and
    failure reports for the same route never lose updates.
    """

    def __init__(
        self,
        proxy_list_file: Optional[Path] = None,
        failure_threshold: int = 3,
        cooldown_seconds: float = 300,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
        client_factory: Callable[..., httpx.AsyncClient] = create_httpx_client,
    ):
        self.proxy_list_file = proxy_list_file
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._rng = rng or random.Random()
        self._clock = clock
        self._client_factory = client_factory
        self._routes: list[ProxyRoute] = []
        self._routes_by_id: dict[str, ProxyRoute] = {}
        self._list_lock = threading.Lock()
        self._file_mtime: Optional[float] = None

    @classmethod
    def from_settings(cls) -> "ProxyManager":
        transport = settings.transport_config
        manager = cls(
            proxy_list_file=transport.proxy_list_file,
            failure_threshold=transport.failure_threshold,
            cooldown_seconds=transport.cooldown_seconds,
        )
        manager.load_routes()
        return manager

    @property
    def routes(self) -> list[ProxyRoute]:
        return list(self._routes)

    def load_routes(self) -> list[ProxyRoute]:
        """
        Load the route list from the configured file.

        A missing or unreadable file leaves the pool empty; that is a valid degraded state.
        """
        if self.proxy_list_file is None:
            logger.info("No proxy list configured, outbound requests will connect directly")
            return self._set_routes([])

        try:
            path = Path(self.proxy_list_file)
            mtime = path.stat().st_mtime
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.warning(f"Proxy list {self.proxy_list_file} not found")
            return self._set_routes([])
        except OSError as e:
            logger.error(f"Failed to load proxy list {self.proxy_list_file}: {e}")
            return self._set_routes([])

        self._file_mtime = mtime
        routes = self.load_routes_from_text(content)
        logger.info(f"Loaded {len(routes)} proxies from {self.proxy_list_file}")
        return routes

    def load_routes_from_text(self, content: str) -> list[ProxyRoute]:
        urls = [url for url in (parse_proxy_line(line) for line in content.splitlines()) if url]
        return self._set_routes(urls)

    def reload_if_changed(self) -> bool:
        """Re-read the proxy list when the file's mtime differs from the last load."""
        if self.proxy_list_file is None:
            return False
        try:
            mtime = Path(self.proxy_list_file).stat().st_mtime
        except OSError:
            return False
        if mtime == self._file_mtime:
            return False
        logger.info("Detected proxy list change, reloading")
        self.load_routes()
        return True

    def _set_routes(self, urls: list[str]) -> list[ProxyRoute]:
        with self._list_lock:
            routes = []
            for url in dict.fromkeys(urls):
                # Keep the health of routes that survive a reload.
                route = self._routes_by_id.get(url) or ProxyRoute(url=url, host_port=extract_host_port(url))
                routes.append(route)
            self._routes = routes
            self._routes_by_id = {route.route_id: route for route in routes}
            return list(routes)

    def _available_routes(self) -> list[ProxyRoute]:
        now = self._clock()
        return [route for route in self._routes if not route.in_cooldown(now)]

    def select_route(self, context: str = "") -> Optional[ProxyRoute]:
        """
        Pick a uniformly random route that is not cooling down.

        When every route is cooling down a random route is still returned. Returns
        None only when no routes are configured.

        Args:
            context (str): Caller name, used for logging only.
        """
        routes = self._routes
        if not routes:
            return None

        available = self._available_routes()
        if not available:
            logger.warning(f"All proxies in cooldown, using random fallback for {context or 'request'}")
            available = routes

        route = self._rng.choice(available)
        logger.debug(f"Selected proxy {route.host_port} for {context or 'request'}")
        return route

    def select_routes(self, count: int) -> list[ProxyRoute]:
        """Pick up to ``count`` distinct routes, e.g. to race a request across them."""
        available = self._available_routes() or list(self._routes)
        if not available:
            return []
        return self._rng.sample(available, min(count, len(available)))

    def report_success(self, route_id: str) -> None:
        route = self._routes_by_id.get(route_id)
        if route is None:
            return
        with route._lock:
            route.successes += 1
            route.consecutive_failures = 0
            route.cooldown_until = None

    def report_failure(self, route_id: str) -> None:
        route = self._routes_by_id.get(route_id)
        if route is None:
            return
        with route._lock:
            route.failures += 1
            route.consecutive_failures += 1
            if route.consecutive_failures >= self.failure_threshold:
                route.cooldown_until = self._clock() + self.cooldown_seconds
                route.consecutive_failures = 0
                logger.info(
                    f"Proxy {route.host_port} entering {self.cooldown_seconds}s cooldown after "
                    f"{self.failure_threshold} consecutive failures"
                )

    def clear_health(self) -> None:
        for route in self._routes:
            with route._lock:
                route.successes = 0
                route.failures = 0
                route.consecutive_failures = 0
                route.cooldown_until = None
        logger.info("Proxy health data cleared")

    def get_health(self) -> list[dict]:
        """Per-route statistics, without side effects."""
        now = self._clock()
        health = []
        for route in self._routes:
            cooling = route.cooldown_until is not None and now < route.cooldown_until
            health.append(
                {
                    "host_port": route.host_port,
                    "successes": route.successes,
                    "failures": route.failures,
                    "consecutive_failures": route.consecutive_failures,
                    "success_rate": round(route.success_rate, 3),
                    "in_cooldown": cooling,
                    "cooldown_remaining": max(0, round(route.cooldown_until - now)) if cooling else None,
                }
            )
        return health

    def create_client(self, route: Optional[ProxyRoute], **kwargs) -> httpx.AsyncClient:
        """Return an httpx client whose connections go through ``route`` (direct when None)."""
        return self._client_factory(proxy_url=route.url if route else None, **kwargs)

    async def fetch(
        self,
        url: str,
        context: str = "",
        method: str = "GET",
        headers: Optional[dict] = None,
        timeout: Optional[float] = None,
        retries: int = 1,
    ) -> httpx.Response:
        """
        Perform a request through a selected route and report the outcome.

        Transport failures count against the route and are retried on a freshly
        selected route up to ``retries`` attempts. HTTP error statuses mean the route
        itself worked.

        Raises:
            DownloadError: If every attempt failed or the upstream answered with an error status.
        """
        last_error: Optional[Exception] = None
        for attempt in range(max(1, retries)):
            route = self.select_route(context)
            client_kwargs = {"timeout": timeout} if timeout is not None else {}
            try:
                async with self.create_client(route, **client_kwargs) as client:
                    response = await client.request(method, url, headers=headers)
            except httpx.TransportError as e:
                last_error = e
                if route is not None:
                    self.report_failure(route.route_id)
                logger.warning(
                    f"Fetch of {url} via {route.host_port if route else 'direct'} failed "
                    f"(attempt {attempt + 1}/{retries}): {e!r}"
                )
                continue

            if route is not None:
                self.report_success(route.route_id)
            if response.is_error:
                raise DownloadError(
                    response.status_code, f"HTTP error {response.status_code} while downloading {url}"
                )
            return response

        if isinstance(last_error, httpx.TimeoutException):
            raise DownloadError(409, f"Timeout while downloading {url}")
        raise DownloadError(502, f"Failed to download {url}: {last_error!r}")
