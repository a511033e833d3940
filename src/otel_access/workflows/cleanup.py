# ABOUTME: Cleanup workflow removing the demo resources from the cluster
# ABOUTME: Ordered steps that each report ok, skipped or failed and never stop later steps

"""
Cleanup.

=============================================================================
STEPS (in order)
=============================================================================

    1. ArgoCD Application     strip finalizers, delete (60s)
    2. Demo namespace         delete all / configmaps / secrets /
                              serviceaccounts / pvcs, then the namespace (120s)
    3. Ingress in default     opentelemetry-demo-ingress
    4. cert-manager           optional: manifest delete + namespace
    5. ingress-nginx          optional: manifest delete + namespace
    6. ArgoCD                 optional: manifest delete + namespace

A step whose target is absent is SKIPPED. A step where some kubectl call
failed is FAILED, but its remaining calls and all later steps still run:
a half-removed namespace should not keep the ingress around.

The whole workflow needs confirmation through the safety guard, and is
refused outright when destructive operations are disabled.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from otel_access.utils.kubectl import ClusterError, NotFound
from otel_access.utils.safety import ConfirmationRequired

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from otel_access.config import AccessSettings
    from otel_access.utils.kubectl import KubectlClient
    from otel_access.utils.logging import AuditLogger
    from otel_access.utils.safety import OperationBlocked, SafetyGuard

logger = structlog.get_logger(__name__)

CERT_MANAGER_MANIFEST = (
    "https://github.com/cert-manager/cert-manager/releases/download/v1.14.4/cert-manager.yaml"
)
INGRESS_NGINX_MANIFEST = (
    "https://raw.githubusercontent.com/kubernetes/ingress-nginx/"
    "controller-v1.8.2/deploy/static/provider/cloud/deploy.yaml"
)
DEMO_INGRESS = "opentelemetry-demo-ingress"
PURGE_KINDS = ("configmap", "secret", "serviceaccount", "pvc")

APPLICATION_TIMEOUT = 60.0
NAMESPACE_TIMEOUT = 120.0


class StepOutcome(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class StepResult:
    """Outcome of one cleanup step."""

    name: str
    outcome: StepOutcome
    message: str
    errors: list[str] = field(default_factory=list)


@dataclass
class CleanupPlan:
    """Which optional removals to perform."""

    cert_manager: bool = False
    ingress_nginx: bool = False
    argocd: bool = False


@dataclass(frozen=True)
class Component:
    """A controller removed by deleting its install manifest and namespace."""

    name: str
    action: str
    option: str
    manifest: str
    namespace: str
    manifest_namespace: str | None = None


@dataclass
class CleanupReport:
    steps: list[StepResult] = field(default_factory=list)
    remaining_namespaces: str = ""

    @property
    def ok(self) -> bool:
        return all(step.outcome is not StepOutcome.FAILED for step in self.steps)


class CleanupWorkflow:
    """Removes the demo stack and, on request, its supporting controllers."""

    def __init__(
        self,
        client: KubectlClient,
        settings: AccessSettings,
        safety: SafetyGuard,
        audit: AuditLogger | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._safety = safety
        self._audit = audit

    def optional_components(self, plan: CleanupPlan) -> list[tuple[Component, bool]]:
        """Every optional removal in execution order, with whether the plan selects it."""
        argocd = self._settings.argocd
        return [
            (
                Component(
                    "cert-manager",
                    "remove_cert_manager",
                    "cert_manager",
                    CERT_MANAGER_MANIFEST,
                    "cert-manager",
                ),
                plan.cert_manager,
            ),
            (
                Component(
                    "NGINX Ingress Controller",
                    "remove_ingress_nginx",
                    "ingress_nginx",
                    INGRESS_NGINX_MANIFEST,
                    "ingress-nginx",
                ),
                plan.ingress_nginx,
            ),
            (
                Component(
                    "ArgoCD",
                    "remove_argocd",
                    "argocd",
                    argocd.install_manifest,
                    argocd.namespace,
                    manifest_namespace=argocd.namespace,
                ),
                plan.argocd,
            ),
        ]

    def check(
        self, confirmed: bool, plan: CleanupPlan | None = None
    ) -> OperationBlocked | ConfirmationRequired | None:
        """Ask the safety guard whether cleanup may run; lists optional impacts when confirming."""
        blocked = self._safety.check_destructive_operation(
            "cleanup", self._settings.namespace, confirmed=confirmed
        )
        if isinstance(blocked, ConfirmationRequired) and plan is not None:
            for component, wanted in self.optional_components(plan):
                if wanted:
                    blocked.details[component.name] = self._safety.describe_impact(component.action)
        return blocked

    def summary(self) -> list[str]:
        """What a full cleanup removes, for the confirmation prompt."""
        argocd = self._settings.argocd
        return [
            f"ArgoCD Application ({argocd.application_name})",
            f"{self._settings.namespace} namespace and all resources",
            "Ingress in default namespace",
            "cert-manager (optional)",
            "ArgoCD (optional)",
            "NGINX Ingress Controller (optional)",
        ]

    async def run(
        self, plan: CleanupPlan, on_step: Callable[[StepResult], None] | None = None
    ) -> CleanupReport:
        """
        Run every step in order.

        Args:
            plan: Optional removals to include.
            on_step: Called with each StepResult as soon as it is known.

        Returns:
            CleanupReport with one StepResult per step that ran.
        """
        report = CleanupReport()
        for step in (self._remove_application, self._purge_namespace, self._remove_ingress):
            result = await step()
            report.steps.append(result)
            if on_step:
                on_step(result)

        for component, wanted in self.optional_components(plan):
            if wanted:
                result = await self._remove_component(component)
            else:
                result = StepResult(
                    component.name, StepOutcome.SKIPPED, f"Skipping {component.name} removal"
                )
            report.steps.append(result)
            if on_step:
                on_step(result)

        try:
            report.remaining_namespaces = await self._client.describe_table("namespaces")
        except ClusterError as e:
            report.remaining_namespaces = f"(could not list namespaces: {e})"
        return report

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _remove_application(self) -> StepResult:
        argocd = self._settings.argocd
        name = "ArgoCD Application"
        target = f"{argocd.namespace}/{argocd.application_name}"
        if not await self._present("application", argocd.application_name, argocd.namespace):
            return self._skipped(
                name, "delete_application", target, "ArgoCD Application not found (already removed)"
            )

        errors: list[str] = []
        try:
            await self._client.patch(
                "application",
                argocd.application_name,
                argocd.namespace,
                [{"op": "remove", "path": "/metadata/finalizers"}],
                patch_type="json",
            )
        except ClusterError as e:
            # No finalizers to remove is the common case
            logger.debug("Finalizer patch failed", error=str(e))
        await self._run(
            errors,
            "delete_application",
            target,
            self._client.delete(
                "application", argocd.application_name, argocd.namespace, APPLICATION_TIMEOUT
            ),
        )
        return self._finish(name, errors, "ArgoCD Application removed")

    async def _purge_namespace(self) -> StepResult:
        namespace = self._settings.namespace
        name = f"{namespace} namespace"
        if not await self._present("namespace", namespace):
            return self._skipped(
                name, "delete_namespace", namespace, f"{namespace} namespace not found (already removed)"
            )

        errors: list[str] = []
        await self._run(
            errors,
            "delete_all",
            f"{namespace}/all",
            self._client.delete_all("all", namespace, NAMESPACE_TIMEOUT),
        )
        for kind in PURGE_KINDS:
            await self._run(
                errors, "delete_all", f"{namespace}/{kind}", self._client.delete_all(kind, namespace)
            )
        await self._run(
            errors,
            "delete_namespace",
            namespace,
            self._client.delete("namespace", namespace, None, NAMESPACE_TIMEOUT),
        )
        return self._finish(name, errors, f"{namespace} namespace removed")

    async def _remove_ingress(self) -> StepResult:
        name = "Ingress"
        target = f"default/{DEMO_INGRESS}"
        if not await self._present("ingress", DEMO_INGRESS, "default"):
            return self._skipped(
                name, "delete_ingress", target, "Ingress not found in default namespace"
            )
        errors: list[str] = []
        await self._run(
            errors, "delete_ingress", target, self._client.delete("ingress", DEMO_INGRESS, "default")
        )
        return self._finish(name, errors, "Ingress removed from default namespace")

    async def _remove_component(self, component: Component) -> StepResult:
        errors: list[str] = []
        await self._run(
            errors,
            component.action,
            component.manifest,
            self._client.delete_manifest(component.manifest, component.manifest_namespace),
        )
        await self._run(
            errors,
            "delete_namespace",
            component.namespace,
            self._client.delete("namespace", component.namespace, None, NAMESPACE_TIMEOUT),
        )
        return self._finish(component.name, errors, f"{component.name} removed")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _present(self, kind: str, name: str, namespace: str | None = None) -> bool:
        try:
            return await self._client.exists(kind, name, namespace)
        except ClusterError as e:
            logger.warning("Existence check failed", kind=kind, name=name, error=str(e))
            return True

    async def _run(
        self, errors: list[str], action: str, target: str, call: Awaitable[object]
    ) -> None:
        """Await one mutation, recording its outcome instead of raising."""
        try:
            await call
        except NotFound:
            if self._audit:
                self._audit.log_skipped(action, target, "not found")
            return
        except ClusterError as e:
            logger.warning("Cleanup call failed", action=action, target=target, error=str(e))
            errors.append(str(e))
            if self._audit:
                self._audit.log_error(action, target, str(e))
            return
        if self._audit:
            self._audit.log_mutation(action, target)

    def _skipped(self, name: str, action: str, target: str, message: str) -> StepResult:
        if self._audit:
            self._audit.log_skipped(action, target, "not found")
        return StepResult(name, StepOutcome.SKIPPED, message)

    @staticmethod
    def _finish(name: str, errors: list[str], message: str) -> StepResult:
        if errors:
            return StepResult(name, StepOutcome.FAILED, f"{name} partially removed", errors)
        return StepResult(name, StepOutcome.OK, message)
