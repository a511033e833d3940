# ABOUTME: Safety utilities for otel-demo-access
# ABOUTME: Implements read-only mode and confirmation guards for cluster mutations

"""Safety guards for Service patches and destructive cleanup."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from otel_access.config import SecuritySettings

logger = structlog.get_logger(__name__)


@dataclass
class ConfirmationRequired:
    """Response indicating confirmation is required for destructive operation."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        """Format confirmation request for the operator."""
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", self.confirmation_instructions])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """Response indicating operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        """Format blocked message for the operator."""
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}\n"
            f"To enable: Set {self.setting}=false"
        )


class SafetyGuard:
    """Checks cluster mutations against the security settings."""

    def __init__(self, settings: SecuritySettings) -> None:
        """Initialize safety guard.

        Args:
            settings: Security settings
        """
        self._settings = settings

    @property
    def read_only(self) -> bool:
        return self._settings.read_only

    def check_write_operation(self, operation: str, target: str = "") -> OperationBlocked | None:
        """Check if a non-destructive cluster write (patch, apply) is allowed.

        Returns:
            OperationBlocked if blocked, None if allowed
        """
        if self._settings.read_only:
            logger.info("Write blocked by read-only mode", operation=operation, target=target)
            return OperationBlocked(
                operation=operation,
                reason="Cluster writes are disabled (read-only mode)",
                setting="OTEL_ACCESS_READ_ONLY",
            )
        return None

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """Check if destructive operation is allowed.

        Args:
            operation: Operation name
            target: Target resource name
            confirmed: Whether the operator has confirmed

        Returns:
            OperationBlocked if blocked, ConfirmationRequired if needs confirmation,
            None if allowed
        """
        write_check = self.check_write_operation(operation, target)
        if write_check:
            return write_check

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="OTEL_ACCESS_DISABLE_DESTRUCTIVE",
            )

        if not confirmed:
            return ConfirmationRequired(
                operation=operation,
                target=target,
                impact=self._get_impact_description(operation),
                confirmation_instructions="Re-run with --yes, or answer 'y' at the prompt",
            )

        return None

    def describe_impact(self, operation: str) -> str:
        """Human-readable impact of an operation, for confirmation prompts."""
        return self._get_impact_description(operation)

    @staticmethod
    def _get_impact_description(operation: str) -> str:
        """Get human-readable impact description for operation."""
        impacts = {
            "cleanup": "Demo namespace, ArgoCD Application and ingress will be PERMANENTLY DELETED",
            "remove_cert_manager": "cert-manager and all issued certificates will be removed",
            "remove_ingress_nginx": "The NGINX ingress controller will be removed",
            "remove_argocd": "ArgoCD and every Application it manages will be removed",
        }
        return impacts.get(operation, "This operation may have significant impact")
