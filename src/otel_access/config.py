# ABOUTME: Configuration management for otel-demo-access
# ABOUTME: Handles environment variables, the service catalog, timeouts and security modes

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Every knob the shell scripts used to hardcode lives here instead:

1. WHICH services exist (the service catalog) and which local ports they
   are forwarded to
2. HOW LONG to wait for a LoadBalancer address, and how often to look
3. WHERE credentials live (secret names and fields)
4. WHAT the tool is allowed to change (read-only / destructive guards)

All of it can be overridden with environment variables, validated at
startup rather than halfway through a cluster operation.

=============================================================================
ARCHITECTURE: FOUR CONFIGURATION CLASSES
=============================================================================

1. ServiceEntry: ONE exposable Service (name, ports, proxy route)
   - Plain BaseModel, built from the catalog list

2. SecuritySettings: what the tool may mutate (OTEL_ACCESS_ prefix)

3. ArgocdSettings: ArgoCD install / access parameters (ARGOCD_ prefix)

4. AccessSettings: top-level container
   - Namespace, catalog, polling parameters, credential sources
   - Contains SecuritySettings and ArgocdSettings as nested objects

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

    OTEL_ACCESS_NAMESPACE          -> Demo namespace (default: otel-demo)
    OTEL_ACCESS_LB_TIMEOUT         -> LoadBalancer wait ceiling in seconds (120)
    OTEL_ACCESS_LB_INTERVAL        -> LoadBalancer poll interval in seconds (5)
    OTEL_ACCESS_SHUTDOWN_GRACE     -> Seconds to wait for forwards to exit (5)
    OTEL_ACCESS_KUBECTL            -> kubectl binary (default: kubectl)
    OTEL_ACCESS_KUBE_CONTEXT       -> kubeconfig context (default: current)
    OTEL_ACCESS_READ_ONLY          -> Refuse Service patches
    OTEL_ACCESS_DISABLE_DESTRUCTIVE-> Refuse cleanup operations
    OTEL_ACCESS_AUDIT_LOG          -> Path to audit log file
    ARGOCD_NAMESPACE               -> ArgoCD namespace (default: argocd)
    ARGOCD_INSTALL_MANIFEST        -> ArgoCD install manifest URL
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# SERVICE CATALOG
# =============================================================================


class ServiceEntry(BaseModel):
    """
    One Service of the demo stack that can be exposed.

    The proxy_path is the route under which the frontend proxy serves the
    same backend. Services with a proxy path are reachable through the
    single frontend entry point; services without one (Prometheus) need
    their own port-forward.
    """

    model_config = {"extra": "ignore"}

    key: str = Field(description="Short identifier used on the command line")
    display_name: str = Field(description="Human-readable name")
    service: str = Field(description="Kubernetes Service name")
    remote_port: int = Field(ge=1, le=65535, description="Service port")
    local_port: int = Field(ge=1, le=65535, description="Local port for port-forwarding")
    proxy_path: str | None = Field(
        default=None, description="Route on the frontend proxy serving this backend"
    )

    @field_validator("proxy_path")
    @classmethod
    def validate_proxy_path(cls, v: str | None) -> str | None:
        """Ensure proxy paths start with a slash and carry no trailing slash."""
        if v is None:
            return None
        v = v.strip()
        if not v.startswith("/"):
            v = f"/{v}"
        return v.rstrip("/") or "/"


def default_catalog() -> list[ServiceEntry]:
    """Services deployed by the OpenTelemetry demo Helm chart."""
    return [
        ServiceEntry(
            key="frontendproxy",
            display_name="Frontend Proxy",
            service="opentelemetry-demo-frontendproxy",
            remote_port=8080,
            local_port=8088,
        ),
        ServiceEntry(
            key="grafana",
            display_name="Grafana",
            service="opentelemetry-demo-grafana",
            remote_port=80,
            local_port=3000,
            proxy_path="/grafana",
        ),
        ServiceEntry(
            key="prometheus",
            display_name="Prometheus",
            service="opentelemetry-demo-prometheus-server",
            remote_port=9090,
            local_port=9090,
        ),
        ServiceEntry(
            key="jaeger",
            display_name="Jaeger",
            service="opentelemetry-demo-jaeger-query",
            remote_port=16686,
            local_port=16686,
            proxy_path="/jaeger/ui",
        ),
        ServiceEntry(
            key="loadgenerator",
            display_name="Load Generator",
            service="opentelemetry-demo-loadgenerator",
            remote_port=8089,
            local_port=8089,
            proxy_path="/loadgen",
        ),
    ]


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    What the tool is allowed to change in the cluster.

    Patching a Service to LoadBalancer or NodePort outlives this process:
    nothing here reverts it. read_only refuses those patches (the
    port-forward and show-commands strategies keep working).
    disable_destructive refuses the cleanup workflow entirely.
    """

    model_config = SettingsConfigDict(env_prefix="OTEL_ACCESS_")

    read_only: bool = Field(
        default=False,
        description="Refuse Service type patches and other cluster writes",
    )
    disable_destructive: bool = Field(
        default=False,
        description="Refuse delete operations (cleanup workflow)",
    )
    audit_log: Path | None = Field(
        default=None,
        description="Path to audit log file (JSON lines)",
    )
    mask_secrets: bool = Field(
        default=True,
        description="Mask sensitive values in logged kubectl output",
    )


# =============================================================================
# ARGOCD SETTINGS
# =============================================================================


class ArgocdSettings(BaseSettings):
    """ArgoCD installation and access parameters."""

    model_config = SettingsConfigDict(env_prefix="ARGOCD_")

    namespace: str = Field(default="argocd", description="ArgoCD namespace")
    install_manifest: str = Field(
        default="https://raw.githubusercontent.com/argoproj/argo-cd/stable/manifests/install.yaml",
        description="Manifest applied to install ArgoCD",
    )
    server_service: str = Field(default="argocd-server", description="ArgoCD API/UI Service")
    local_port: int = Field(default=8080, ge=1, le=65535)
    remote_port: int = Field(default=443, ge=1, le=65535)
    admin_secret: str = Field(
        default="argocd-initial-admin-secret",
        description="Secret holding the generated admin password",
    )
    admin_secret_field: str = Field(default="password")
    wait_timeout: int = Field(
        default=300, ge=1, description="Seconds to wait for argocd-server to become available"
    )
    secret_settle_delay: float = Field(
        default=5.0, ge=0, description="Pause before reading the admin secret"
    )
    application_name: str = Field(
        default="opentelemetry-demo", description="ArgoCD Application managing the demo"
    )


# =============================================================================
# TOP-LEVEL SETTINGS
# =============================================================================


class AccessSettings(BaseSettings):
    """
    Main configuration container.

    USAGE:
    ------
        settings = load_settings()
        settings.namespace                      # "otel-demo"
        settings.service("grafana").local_port  # 3000
        settings.security.read_only             # False
    """

    model_config = SettingsConfigDict(
        env_prefix="OTEL_ACCESS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    namespace: str = Field(default="otel-demo", description="Namespace of the demo stack")
    primary_service: str = Field(
        default="frontendproxy",
        description="Catalog key of the single entry point exposed by the menu",
    )
    catalog: list[ServiceEntry] = Field(default_factory=default_catalog)
    auxiliary_services: list[str] = Field(
        default_factory=lambda: ["prometheus", "loadgenerator"],
        description="Catalog keys forwarded next to the primary service",
    )
    forward_all_services: list[str] = Field(
        default_factory=lambda: ["grafana", "prometheus", "jaeger", "frontendproxy"],
        description="Catalog keys forwarded by the individual-services strategy",
    )
    extra_routes: dict[str, str] = Field(
        default_factory=lambda: {"Feature Flags": "/feature"},
        description="Frontend proxy routes that have no Service of their own",
    )

    lb_timeout: float = Field(
        default=120.0, gt=0, description="Seconds to wait for a LoadBalancer address"
    )
    lb_interval: float = Field(
        default=5.0, gt=0, description="Seconds between LoadBalancer address samples"
    )
    shutdown_grace: float = Field(
        default=5.0, gt=0, description="Seconds to wait for forwards to exit after SIGTERM"
    )
    spawn_grace: float = Field(
        default=1.0, ge=0, description="Seconds a new forward must survive to count as started"
    )

    kubectl: str = Field(default="kubectl", description="kubectl binary name or path")
    kube_context: str | None = Field(default=None, description="kubeconfig context to use")
    command_timeout: float = Field(
        default=30.0, gt=0, description="Seconds before a single kubectl call is abandoned"
    )

    grafana_secret: str = Field(default="opentelemetry-demo-grafana")
    grafana_secret_field: str = Field(default="admin-password")
    grafana_default_user: str = Field(default="admin")
    grafana_default_password: str = Field(
        default="admin",
        description="Used only when the Grafana secret cannot be read; flagged as a default",
    )

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="WARNING",
        description="Logging level (logs go to stderr)",
    )
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    security: SecuritySettings = Field(default_factory=SecuritySettings)
    argocd: ArgocdSettings = Field(default_factory=ArgocdSettings)

    @model_validator(mode="after")
    def validate_catalog_keys(self) -> AccessSettings:
        """Every referenced catalog key must exist, and keys must be unique."""
        keys = [entry.key for entry in self.catalog]
        if len(keys) != len(set(keys)):
            raise ValueError("Service catalog keys must be unique")
        referenced = [self.primary_service, *self.auxiliary_services, *self.forward_all_services]
        unknown = sorted({key for key in referenced if key not in keys})
        if unknown:
            raise ValueError(f"Unknown service catalog keys: {unknown}")
        return self

    def service(self, key: str) -> ServiceEntry:
        """Look up a catalog entry by key.

        Raises:
            KeyError: If the key is not in the catalog.
        """
        for entry in self.catalog:
            if entry.key == key:
                return entry
        raise KeyError(f"Unknown service '{key}'. Available: {[e.key for e in self.catalog]}")

    @property
    def primary(self) -> ServiceEntry:
        """Catalog entry of the primary entry point."""
        return self.service(self.primary_service)


def load_settings() -> AccessSettings:
    """
    Load settings from environment with validation.

    If OTEL_ACCESS_ENV_FILE is set, variables are additionally read from
    that file (handy for pointing the tool at a scratch cluster).

    Returns:
        Fully validated AccessSettings instance.

    Raises:
        pydantic.ValidationError: If any setting is invalid.
    """
    return AccessSettings(
        _env_file=os.environ.get("OTEL_ACCESS_ENV_FILE"),  # type: ignore[call-arg]
    )
