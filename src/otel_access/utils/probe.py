# ABOUTME: HTTP reachability checks for the URLs reported to the operator
# ABOUTME: Uses httpx with tenacity retries; also verifies ArgoCD admin login

"""
Endpoint probe.

Exposing a Service only says that a route exists. A probe answers the
operator's real question: does the URL answer yet? LoadBalancer addresses
in particular resolve some seconds before the cloud load balancer starts
forwarding traffic.

USAGE:
------
    async with EndpointProbe(timeout=5.0) as probe:
        result = await probe.check("http://localhost:8088/grafana")
        if result.reachable:
            ...
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one reachability check."""

    url: str
    status_code: int | None = None
    error: str | None = None

    @property
    def reachable(self) -> bool:
        # Any HTTP answer counts; 401/403 from Grafana or ArgoCD still means the route works
        return self.status_code is not None and self.status_code < 500


class EndpointProbe:
    """
    Async HTTP prober.

    Must be used as an async context manager. TLS verification is off:
    ArgoCD serves a self-signed certificate and probes never send
    anything secret except the login check.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> EndpointProbe:
        self._client = httpx.AsyncClient(
            timeout=self._timeout,
            verify=False,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _get(self, url: str) -> httpx.Response:
        if not self._client:
            raise RuntimeError("Probe not initialized. Use 'async with' context manager.")
        return await self._client.get(url)

    async def check(self, url: str) -> ProbeResult:
        """GET the URL; connection errors become an unreachable result, not an exception."""
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            logger.info("Endpoint unreachable", url=url, error=str(e))
            return ProbeResult(url=url, error=str(e) or type(e).__name__)
        logger.debug("Endpoint answered", url=url, status=response.status_code)
        return ProbeResult(url=url, status_code=response.status_code)

    async def check_all(self, urls: dict[str, str]) -> dict[str, ProbeResult]:
        """Check every URL in order; keys are the display names."""
        return {name: await self.check(url) for name, url in urls.items()}

    async def verify_argocd_login(self, base_url: str, username: str, password: str) -> bool:
        """
        Try the ArgoCD session API with the admin credentials.

        Returns:
            True when ArgoCD issued a session token.
        """
        if not self._client:
            raise RuntimeError("Probe not initialized. Use 'async with' context manager.")
        url = f"{base_url.rstrip('/')}/api/v1/session"
        try:
            response = await self._client.post(
                url, json={"username": username, "password": password}
            )
        except httpx.HTTPError as e:
            logger.warning("ArgoCD login check failed", url=url, error=str(e))
            return False
        if response.status_code != 200:
            logger.warning("ArgoCD rejected login", url=url, status=response.status_code)
            return False
        try:
            token = response.json().get("token")
        except ValueError:
            return False
        return bool(token)
