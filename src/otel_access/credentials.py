# ABOUTME: Admin credentials for Grafana and ArgoCD read from cluster secrets
# ABOUTME: Flags configured fallbacks so they are never shown as authoritative

"""
Admin credentials for the UIs the operator is about to open.

Both Grafana and ArgoCD generate or receive their admin password through a
Kubernetes Secret. The password printed next to a URL is read from there.
A configured fallback is used only when the Secret cannot be read, and the
result then says so (is_default=True) so the console can warn about it.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from otel_access.utils.kubectl import ClusterError
from otel_access.utils.secrets import SecretStore

if TYPE_CHECKING:
    from otel_access.config import AccessSettings
    from otel_access.utils.kubectl import KubectlClient

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Credentials:
    """Username/password pair and where the password came from."""

    username: str
    password: str | None
    source: str
    is_default: bool = False
    manual_command: str | None = None

    @property
    def available(self) -> bool:
        return self.password is not None


class CredentialResolver:
    """Resolves admin credentials through the Secret Store."""

    def __init__(self, client: KubectlClient, settings: AccessSettings) -> None:
        self._client = client
        self._settings = settings
        self._secrets = SecretStore(client)

    async def grafana(self) -> Credentials:
        """Grafana admin credentials from the chart's secret, else the configured fallback."""
        settings = self._settings
        source = f"secret {settings.namespace}/{settings.grafana_secret}"
        try:
            value = await self._secrets.get_field(
                settings.grafana_secret, settings.namespace, settings.grafana_secret_field
            )
        except ClusterError as e:
            logger.warning("Grafana secret unreadable, using fallback", error=str(e))
            return Credentials(
                username=settings.grafana_default_user,
                password=settings.grafana_default_password,
                source="configured default",
                is_default=True,
            )
        return Credentials(
            username=settings.grafana_default_user,
            password=value.decode(errors="replace"),
            source=source,
        )

    async def argocd(self) -> Credentials:
        """ArgoCD initial admin password; no password plus a manual command when absent."""
        argocd = self._settings.argocd
        try:
            value = await self._secrets.get_field(
                argocd.admin_secret, argocd.namespace, argocd.admin_secret_field
            )
        except ClusterError as e:
            logger.warning("ArgoCD admin secret unreadable", error=str(e))
            return Credentials(
                username="admin",
                password=None,
                source="unavailable",
                manual_command=self.argocd_manual_command(),
            )
        return Credentials(
            username="admin",
            password=value.decode(errors="replace"),
            source=f"secret {argocd.namespace}/{argocd.admin_secret}",
        )

    def argocd_manual_command(self) -> str:
        """Shell pipeline printing the ArgoCD admin password."""
        argocd = self._settings.argocd
        get = shlex.join(
            self._client.command(
                "-n",
                argocd.namespace,
                "get",
                "secret",
                argocd.admin_secret,
                "-o",
                f"jsonpath={{.data.{argocd.admin_secret_field}}}",
            )
        )
        return f"{get} | base64 -d"
