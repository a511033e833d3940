# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Exposes service checks, exposure strategies, port-forwards and credentials as MCP tools

"""otel-demo-access MCP Server - the access operations for an assistant."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from otel_access.config import AccessSettings, load_settings
from otel_access.credentials import CredentialResolver
from otel_access.orchestrator import ExposureOrchestrator, ExposureStrategy
from otel_access.processes import CancellationToken, OwnedProcessSet
from otel_access.utils.kubectl import ClusterError, KubectlClient
from otel_access.utils.logging import MASK, AuditLogger, configure_logging, set_correlation_id
from otel_access.utils.safety import SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from otel_access.credentials import Credentials
    from otel_access.orchestrator import ExposureResult

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: AccessSettings | None = None
_client: KubectlClient | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None
_orchestrator: ExposureOrchestrator | None = None


def _new_orchestrator() -> ExposureOrchestrator:
    settings = get_settings()
    return ExposureOrchestrator(
        get_client(),
        settings,
        safety=get_safety_guard(),
        audit=get_audit_logger(),
        processes=OwnedProcessSet(grace=settings.shutdown_grace),
        token=CancellationToken(),
    )


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, build the orchestrator, stop forwards on shutdown."""
    global _settings, _client, _safety_guard, _audit_logger, _orchestrator

    logger.info("Starting otel-demo-access MCP Server")

    _settings = load_settings()
    configure_logging(
        level=_settings.log_level,
        json_output=_settings.log_json,
        mask_secrets=_settings.security.mask_secrets,
    )
    _client = KubectlClient.from_settings(_settings)
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)
    _orchestrator = _new_orchestrator()

    try:
        yield {"settings": _settings, "client": _client}
    finally:
        stopped = await _orchestrator.shutdown()
        logger.info("otel-demo-access MCP Server stopped", forwards_stopped=stopped)
        _orchestrator = None


mcp = FastMCP("otel-access", lifespan=lifespan)


def get_settings() -> AccessSettings:
    """Get server settings."""
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_client() -> KubectlClient:
    """Get the kubectl client."""
    if not _client:
        raise RuntimeError("Server not initialized")
    return _client


def get_safety_guard() -> SafetyGuard:
    """Get safety guard for permission checking."""
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    """Get audit logger for recording operations."""
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def get_orchestrator() -> ExposureOrchestrator:
    """Get the orchestrator owning this server's port-forwards."""
    if not _orchestrator:
        raise RuntimeError("Server not initialized")
    return _orchestrator


def _format_result(result: ExposureResult) -> str:
    lines: list[str] = []
    if result.pending:
        lines.append(f"External address for {result.target.ref} not assigned yet.")
        if result.manual_command:
            lines.append(f"Check status with: {result.manual_command}")
        return "\n".join(lines)

    if result.urls:
        lines.append("Access URLs:")
        lines.extend(f"- {name}: {url}" for name, url in result.urls.items())
    if result.commands:
        lines.append("")
        lines.append("Commands:")
        lines.extend(f"- {title}: {command}" for title, command in result.commands)
    if result.failures:
        lines.append("")
        lines.append("Failed:")
        lines.extend(f"- {name}: {error}" for name, error in result.failures.items())
    if result.notes:
        lines.append("")
        lines.extend(f"Note: {note}" for note in result.notes)
    return "\n".join(lines)


def _format_credentials(title: str, creds: Credentials, mask: bool) -> str:
    lines = [f"{title}:", f"  Username: {creds.username}"]
    if creds.password is not None:
        lines.append(f"  Password: {MASK if mask else creds.password}")
    lines.append(f"  Source: {creds.source}")
    if creds.is_default:
        lines.append("  Warning: configured default, the secret could not be read")
    if creds.manual_command:
        lines.append(f"  Read it later with: {creds.manual_command}")
    return "\n".join(lines)


# =============================================================================
# READ OPERATIONS
# =============================================================================


@mcp.tool()
async def check_services(ctx: MCPContext) -> str:
    """
    Check which services of the OpenTelemetry demo stack exist.

    Use this first to see whether the demo is deployed before exposing anything.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    settings = get_settings()
    try:
        status = await get_orchestrator().check_services()
    except ClusterError as e:
        return str(e)

    lines = [f"Services in namespace '{settings.namespace}':", ""]
    for entry in settings.catalog:
        marker = "[OK]" if status.get(entry.key) else "[MISSING]"
        lines.append(f"- {entry.display_name} ({entry.service}) {marker}")
    return "\n".join(lines)


class ShowCommandsParams(BaseModel):
    """Parameters for show_access_commands tool."""

    service: str | None = Field(
        default=None, description="Catalog key of the service (default: the frontend proxy)"
    )


@mcp.tool()
async def show_access_commands(params: ShowCommandsParams, ctx: MCPContext) -> str:
    """
    Show the kubectl commands that expose a service, without running them.

    Nothing in the cluster is changed.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    orchestrator = get_orchestrator()
    try:
        target = (
            orchestrator.target_for(params.service)
            if params.service
            else orchestrator.primary_target()
        )
        result = await orchestrator.expose(target, ExposureStrategy.SHOW_COMMANDS)
    except (KeyError, ClusterError) as e:
        return str(e)
    return _format_result(result)


# =============================================================================
# WRITE OPERATIONS
# =============================================================================


class ExposeServiceParams(BaseModel):
    """Parameters for expose_service tool."""

    strategy: Literal["load-balancer", "node-port"] = Field(
        description="Service type to switch to: load-balancer or node-port"
    )
    service: str | None = Field(
        default=None, description="Catalog key of the service (default: the frontend proxy)"
    )


@mcp.tool()
async def expose_service(params: ExposeServiceParams, ctx: MCPContext) -> str:
    """
    Expose a service outside the cluster as LoadBalancer or NodePort.

    Changes the Service's spec.type in the cluster. The change is NOT
    reverted afterwards. For LoadBalancer, waits for the cloud provider to
    assign an address (up to the configured timeout).
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    orchestrator = get_orchestrator()
    try:
        target = (
            orchestrator.target_for(params.service)
            if params.service
            else orchestrator.primary_target()
        )
    except KeyError as e:
        return str(e)

    blocked = get_safety_guard().check_write_operation("patch_service_type", target.ref)
    if blocked:
        get_audit_logger().log_blocked("patch_service_type", target.ref, blocked.reason)
        return blocked.format_message()

    await ctx.report_progress(0, 1, f"Exposing {target.ref} as {params.strategy}")
    try:
        result = await orchestrator.expose(target, ExposureStrategy(params.strategy))
    except ClusterError as e:
        return str(e)
    return _format_result(result)


class StartForwardsParams(BaseModel):
    """Parameters for start_port_forwards tool."""

    mode: Literal["primary", "all"] = Field(
        default="primary",
        description=(
            "primary: frontend proxy plus Prometheus and the load generator; "
            "all: one forward per observability service"
        ),
    )


@mcp.tool()
async def start_port_forwards(params: StartForwardsParams, ctx: MCPContext) -> str:
    """
    Start kubectl port-forwards on this machine.

    The forwards keep running until stop_port_forwards is called or the
    server stops. Nothing in the cluster is changed.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    orchestrator = get_orchestrator()
    strategy = (
        ExposureStrategy.PORT_FORWARD if params.mode == "primary" else ExposureStrategy.FORWARD_ALL
    )
    try:
        result = await orchestrator.expose(orchestrator.primary_target(), strategy)
    except ClusterError as e:
        return str(e)
    return (
        f"{_format_result(result)}\n\n"
        f"Running forwards: {orchestrator.processes.live_count}. "
        "Use stop_port_forwards to stop them."
    )


@mcp.tool()
async def stop_port_forwards(ctx: MCPContext) -> str:
    """Stop every port-forward started by this server."""
    global _orchestrator

    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    stopped = await get_orchestrator().shutdown()
    _orchestrator = _new_orchestrator()
    return f"Stopped {stopped} port-forward(s)."


class GetCredentialsParams(BaseModel):
    """Parameters for get_credentials tool."""

    component: Literal["grafana", "argocd"] = Field(description="grafana or argocd")


@mcp.tool()
async def get_credentials(params: GetCredentialsParams, ctx: MCPContext) -> str:
    """
    Get admin credentials for Grafana or ArgoCD from cluster secrets.

    Passwords are masked unless OTEL_ACCESS_MASK_SECRETS=false.
    """
    set_correlation_id(ctx.request_id if hasattr(ctx, "request_id") else "")

    settings = get_settings()
    resolver = CredentialResolver(get_client(), settings)
    if params.component == "grafana":
        creds = await resolver.grafana()
        title = "Grafana Credentials"
    else:
        creds = await resolver.argocd()
        title = "ArgoCD Credentials"
    return _format_credentials(title, creds, settings.security.mask_secrets)


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("otel-access://settings")
async def get_settings_resource() -> str:
    """Get the namespace, service catalog and timing settings."""
    settings = get_settings()
    lines = [
        "otel-demo-access Settings:",
        f"  Namespace: {settings.namespace}",
        f"  Kube context: {settings.kube_context or '(current)'}",
        f"  LoadBalancer wait: {settings.lb_timeout:g}s (every {settings.lb_interval:g}s)",
        f"  Shutdown grace: {settings.shutdown_grace:g}s",
        "",
        "Service catalog:",
    ]
    for entry in settings.catalog:
        route = f" route={entry.proxy_path}" if entry.proxy_path else ""
        lines.append(
            f"- {entry.key}: {entry.service} {entry.local_port}:{entry.remote_port}{route}"
        )
    return "\n".join(lines)


@mcp.resource("otel-access://security")
async def get_security_resource() -> str:
    """Get current security settings."""
    sec = get_settings().security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Audit log: {sec.audit_log or '(structlog)'}"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the otel-demo-access MCP server."""
    configure_logging(level="INFO")
    logger.info("otel-demo-access MCP Server starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
