# ABOUTME: ArgoCD installation workflow
# ABOUTME: Creates the namespace, applies the install manifest, waits and reads the admin password

"""
ArgoCD setup.

STEPS:
------
1. Ensure the ArgoCD namespace exists (warn if it already does)
2. Apply the install manifest
3. Wait for deployment/argocd-server to become available
   (a timed-out or failed wait is reported, not fatal: the pods are
   shown either way)
4. Read the initial admin password, or print how to read it later
5. Print access instructions for port-forward, LoadBalancer and NodePort
6. Optionally apply an ArgoCD Application manifest

Port-forwarding to the UI afterwards is done by the caller through the
Exposure Orchestrator, so it gets the same ownership and shutdown as
every other forward.
"""

from __future__ import annotations

import asyncio
import json
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from otel_access.credentials import CredentialResolver
from otel_access.orchestrator import ExposureTarget
from otel_access.utils.kubectl import ClusterError, PatchRejected

if TYPE_CHECKING:
    from otel_access.config import AccessSettings
    from otel_access.console import Console
    from otel_access.credentials import Credentials
    from otel_access.utils.kubectl import KubectlClient
    from otel_access.utils.logging import AuditLogger
    from otel_access.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)


@dataclass
class ArgocdSetupReport:
    """What the setup did."""

    namespace_created: bool
    server_available: bool
    credentials: Credentials
    application_applied: bool | None = None


class ArgocdSetup:
    """Installs ArgoCD into the configured namespace."""

    def __init__(
        self,
        client: KubectlClient,
        settings: AccessSettings,
        console: Console,
        safety: SafetyGuard | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._argocd = settings.argocd
        self._console = console
        self._safety = safety
        self._audit = audit

    def server_target(self) -> ExposureTarget:
        """The argocd-server Service as an exposure target (8080 -> 443 by default)."""
        return ExposureTarget(
            service=self._argocd.server_service,
            namespace=self._argocd.namespace,
            remote_port=self._argocd.remote_port,
            local_port=self._argocd.local_port,
            label="ArgoCD UI",
        )

    async def run(self, application: str | None = None) -> ArgocdSetupReport:
        """
        Install ArgoCD.

        Args:
            application: Path or URL of an Application manifest to apply
                         once ArgoCD is installed.

        Raises:
            PatchRejected: Writes are disabled, or the install was refused.
            ClusterError: A step other than the availability wait failed.
        """
        argocd = self._argocd
        console = self._console

        if self._safety:
            blocked = self._safety.check_write_operation("install_argocd", argocd.namespace)
            if blocked:
                if self._audit:
                    self._audit.log_blocked("install_argocd", argocd.namespace, blocked.reason)
                raise PatchRejected(blocked.format_message())

        console.line("Step 1: Creating ArgoCD namespace...")
        namespace_created = await self._ensure_namespace()

        console.line()
        console.line("Step 2: Installing ArgoCD...")
        await self._apply(argocd.install_manifest, argocd.namespace)
        console.status("ArgoCD manifests applied")

        console.line()
        console.line("Step 3: Waiting for ArgoCD pods to be ready...")
        console.line("         This may take 1-3 minutes...")
        try:
            available = await self._client.wait_for_condition(
                "deployment",
                argocd.server_service,
                argocd.namespace,
                "available",
                timeout=argocd.wait_timeout,
            )
        except ClusterError as e:
            logger.warning("Waiting for ArgoCD server failed", error=str(e))
            available = False
        if not available:
            console.warning(f"Timeout waiting for {argocd.server_service}. Checking pod status...")
        console.line()
        console.line("ArgoCD Pod Status:")
        console.line(await self._client.describe_table("pods", argocd.namespace))
        console.line()

        console.line("Step 4: Extracting initial admin password...")
        console.line()
        await self._settle()
        credentials = await CredentialResolver(self._client, self._settings).argocd()
        if credentials.available:
            console.status("Initial admin password extracted")
            console.line()
            console.banner("ArgoCD Installation Complete!")
        console.credentials("ArgoCD Credentials:", credentials)

        self.print_access_instructions()

        applied = None
        if application:
            applied = await self._apply_application(application)

        return ArgocdSetupReport(
            namespace_created=namespace_created,
            server_available=available,
            credentials=credentials,
            application_applied=applied,
        )

    def access_commands(self) -> list[tuple[str, list[str]]]:
        """(title, commands) for each way of reaching the UI."""
        argocd = self._argocd
        cmd = self._client.command
        get_svc = shlex.join(cmd("get", "svc", argocd.server_service, "-n", argocd.namespace))
        options = [
            (
                "Option 1: Port Forwarding (Local Development)",
                [
                    shlex.join(
                        self._client.port_forward_command(
                            argocd.server_service,
                            argocd.namespace,
                            argocd.local_port,
                            argocd.remote_port,
                        )
                    ),
                    f"Then open: https://localhost:{argocd.local_port}",
                ],
            ),
        ]
        for title, service_type in (
            ("Option 2: LoadBalancer (Cloud/Production)", "LoadBalancer"),
            ("Option 3: NodePort", "NodePort"),
        ):
            patch = shlex.join(
                cmd(
                    "patch",
                    "svc",
                    argocd.server_service,
                    "-n",
                    argocd.namespace,
                    "-p",
                    json.dumps({"spec": {"type": service_type}}),
                )
            )
            options.append((title, [patch, get_svc]))
        return options

    def print_access_instructions(self) -> None:
        console = self._console
        console.line()
        console.line("To access ArgoCD UI:")
        console.line()
        for title, commands in self.access_commands():
            console.line(f"  {title}")
            console.line(f"  {'─' * 45}")
            for command in commands:
                console.line(f"  {command}")
            console.line()

    async def _ensure_namespace(self) -> bool:
        namespace = self._argocd.namespace
        if await self._client.exists("namespace", namespace):
            self._console.warning("ArgoCD namespace already exists")
            if self._audit:
                self._audit.log_skipped("create_namespace", namespace, "already exists")
            return False
        try:
            await self._client.create_namespace(namespace)
        except ClusterError as e:
            if self._audit:
                self._audit.log_error("create_namespace", namespace, str(e))
            raise
        if self._audit:
            self._audit.log_mutation("create_namespace", namespace)
        self._console.status("ArgoCD namespace created")
        return True

    async def _apply(self, manifest: str, namespace: str | None) -> None:
        try:
            output = await self._client.apply(manifest, namespace)
        except ClusterError as e:
            if self._audit:
                self._audit.log_error("apply_manifest", manifest, str(e))
            raise
        logger.info("Applied manifest", manifest=manifest, lines=len(output.splitlines()))
        if self._audit:
            self._audit.log_mutation("apply_manifest", manifest, {"namespace": namespace})

    async def _apply_application(self, application: str) -> bool:
        """Apply an Application manifest; failures are reported, not raised."""
        self._console.line()
        self._console.info(f"Applying ArgoCD Application from {application}...")
        try:
            await self._apply(application, self._argocd.namespace)
        except ClusterError as e:
            self._console.error(f"Application not applied: {e}")
            return False
        self._console.status("ArgoCD Application applied")
        return True

    async def _settle(self) -> None:
        """Give the controller a moment to create the admin secret."""
        await asyncio.sleep(self._argocd.secret_settle_delay)
