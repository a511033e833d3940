# ABOUTME: Unit tests for otel-demo-access MCP Server main module
# ABOUTME: Tests MCP tools, resources, safety guard integration and forward ownership

"""Unit tests for server.py covering the MCP tools, resources and lifespan."""

from __future__ import annotations

import base64
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from otel_access import server
from otel_access.config import AccessSettings
from otel_access.orchestrator import ExposureOrchestrator
from otel_access.utils.kubectl import ClusterUnreachable
from otel_access.utils.logging import AuditLogger
from otel_access.utils.safety import SafetyGuard


def _install(
    client: AsyncMock,
    settings: AccessSettings,
    guard: SafetyGuard,
    orchestrator: ExposureOrchestrator,
) -> dict[str, Any]:
    original = {
        "settings": server._settings,
        "client": server._client,
        "guard": server._safety_guard,
        "logger": server._audit_logger,
        "orchestrator": server._orchestrator,
    }
    server._settings = settings
    server._client = client
    server._safety_guard = guard
    server._audit_logger = MagicMock(spec=AuditLogger)
    server._orchestrator = orchestrator
    return original


def _restore(original: dict[str, Any]) -> None:
    server._settings = original["settings"]
    server._client = original["client"]
    server._safety_guard = original["guard"]
    server._audit_logger = original["logger"]
    server._orchestrator = original["orchestrator"]


@pytest.fixture
def server_with_mocks(
    mock_kubectl: AsyncMock,
    mock_settings: AccessSettings,
    safety_guard: SafetyGuard,
    orchestrator: ExposureOrchestrator,
    mock_context: MagicMock,
    spawner,
):
    """Setup server module with mocks for testing tools."""
    original = _install(mock_kubectl, mock_settings, safety_guard, orchestrator)

    yield {
        "client": mock_kubectl,
        "settings": mock_settings,
        "logger": server._audit_logger,
        "orchestrator": orchestrator,
        "spawner": spawner,
        "ctx": mock_context,
    }

    _restore(original)


@pytest.fixture
def server_read_only(
    mock_kubectl: AsyncMock,
    read_only_settings: AccessSettings,
    read_only_safety_guard: SafetyGuard,
    orchestrator: ExposureOrchestrator,
    mock_context: MagicMock,
):
    """Setup server module with read-only safety guard."""
    original = _install(mock_kubectl, read_only_settings, read_only_safety_guard, orchestrator)

    yield {
        "client": mock_kubectl,
        "logger": server._audit_logger,
        "ctx": mock_context,
    }

    _restore(original)


@pytest.mark.unit
class TestGetters:
    """Tests for helper functions."""

    def test_getters_return_globals(self, server_with_mocks: dict[str, Any]):
        """Test that the getters return the installed objects."""
        assert server.get_client() is server_with_mocks["client"]
        assert server.get_settings() is server_with_mocks["settings"]
        assert server.get_orchestrator() is server_with_mocks["orchestrator"]
        assert server.get_audit_logger() is server_with_mocks["logger"]

    @pytest.mark.parametrize(
        ("attribute", "getter"),
        [
            ("_settings", "get_settings"),
            ("_client", "get_client"),
            ("_safety_guard", "get_safety_guard"),
            ("_audit_logger", "get_audit_logger"),
            ("_orchestrator", "get_orchestrator"),
        ],
    )
    def test_getter_raises_if_not_initialized(self, attribute: str, getter: str):
        """Test that every getter raises before the lifespan has run."""
        original = getattr(server, attribute)
        setattr(server, attribute, None)

        try:
            with pytest.raises(RuntimeError, match="Server not initialized"):
                getattr(server, getter)()
        finally:
            setattr(server, attribute, original)


@pytest.mark.unit
class TestCheckServicesTool:
    """Tests for check_services MCP tool."""

    async def test_marks_present_and_missing(self, server_with_mocks: dict[str, Any]):
        """Test that each catalog service is marked."""
        mocks = server_with_mocks

        async def exists(kind, name, namespace=None):
            return name != "opentelemetry-demo-jaeger-query"

        mocks["client"].exists.side_effect = exists

        result = await server.check_services(mocks["ctx"])

        assert "Services in namespace 'otel-demo':" in result
        assert "- Grafana (opentelemetry-demo-grafana) [OK]" in result
        assert "- Jaeger (opentelemetry-demo-jaeger-query) [MISSING]" in result

    async def test_cluster_error(self, server_with_mocks: dict[str, Any]):
        """Test that a cluster error is returned as text."""
        mocks = server_with_mocks
        mocks["client"].exists.side_effect = ClusterUnreachable("Cannot connect to Kubernetes cluster")

        result = await server.check_services(mocks["ctx"])

        assert result == "Cannot connect to Kubernetes cluster"


@pytest.mark.unit
class TestShowAccessCommandsTool:
    """Tests for show_access_commands MCP tool."""

    async def test_primary(self, server_with_mocks: dict[str, Any]):
        """Test the command reference for the frontend proxy."""
        mocks = server_with_mocks

        result = await server.show_access_commands(server.ShowCommandsParams(), mocks["ctx"])

        assert "Commands:" in result
        assert "- Port Forward (Frontend Proxy): kubectl port-forward" in result
        assert "- Grafana: http://localhost:8088/grafana" in result
        mocks["client"].patch.assert_not_awaited()
        assert mocks["spawner"].calls == []

    async def test_unknown_service(self, server_with_mocks: dict[str, Any]):
        """Test that an unknown catalog key is reported."""
        result = await server.show_access_commands(
            server.ShowCommandsParams(service="kibana"), server_with_mocks["ctx"]
        )

        assert "kibana" in result


@pytest.mark.unit
class TestExposeServiceTool:
    """Tests for expose_service MCP tool."""

    async def test_load_balancer(self, server_with_mocks: dict[str, Any]):
        """Test that the Service is patched and its URLs are returned."""
        mocks = server_with_mocks
        mocks["client"].get.side_effect = ["ClusterIP", "203.0.113.10"]

        result = await server.expose_service(
            server.ExposeServiceParams(strategy="load-balancer"), mocks["ctx"]
        )

        assert "- Frontend Demo: http://203.0.113.10:8080" in result
        assert "stays type LoadBalancer" in result
        mocks["client"].patch.assert_awaited_once()
        mocks["ctx"].report_progress.assert_awaited_once()

    async def test_pending(self, server_with_mocks: dict[str, Any]):
        """Test that an unassigned address is reported with the follow-up command."""
        mocks = server_with_mocks

        result = await server.expose_service(
            server.ExposeServiceParams(strategy="load-balancer"), mocks["ctx"]
        )

        assert "not assigned yet" in result
        assert "kubectl get svc opentelemetry-demo-frontendproxy -n otel-demo" in result

    async def test_missing_service(self, server_with_mocks: dict[str, Any]):
        """Test that a missing Service is reported without a patch."""
        mocks = server_with_mocks
        mocks["client"].exists.return_value = False

        result = await server.expose_service(
            server.ExposeServiceParams(strategy="node-port", service="grafana"), mocks["ctx"]
        )

        assert "not found in namespace 'otel-demo'" in result
        mocks["client"].patch.assert_not_awaited()

    async def test_blocked_in_read_only_mode(self, server_read_only: dict[str, Any]):
        """Test that read-only mode blocks the patch before kubectl is called."""
        mocks = server_read_only

        result = await server.expose_service(
            server.ExposeServiceParams(strategy="node-port"), mocks["ctx"]
        )

        assert "OPERATION BLOCKED" in result
        assert "OTEL_ACCESS_READ_ONLY" in result
        mocks["client"].patch.assert_not_awaited()
        mocks["logger"].log_blocked.assert_called_once()


@pytest.mark.unit
class TestPortForwardTools:
    """Tests for start_port_forwards and stop_port_forwards MCP tools."""

    async def test_start_primary(self, server_with_mocks: dict[str, Any]):
        """Test that the primary forwards are started and counted."""
        mocks = server_with_mocks

        result = await server.start_port_forwards(server.StartForwardsParams(), mocks["ctx"])

        assert mocks["spawner"].labels == ["Frontend Proxy", "Prometheus", "Load Generator"]
        assert "Running forwards: 3." in result
        assert "- Frontend Demo: http://localhost:8088" in result

    async def test_start_all(self, server_with_mocks: dict[str, Any]):
        """Test that mode=all forwards each service."""
        mocks = server_with_mocks

        result = await server.start_port_forwards(
            server.StartForwardsParams(mode="all"), mocks["ctx"]
        )

        assert "Running forwards: 4." in result

    async def test_stop(self, server_with_mocks: dict[str, Any]):
        """Test that stopping terminates the forwards and allows new ones."""
        mocks = server_with_mocks
        await server.start_port_forwards(server.StartForwardsParams(), mocks["ctx"])

        result = await server.stop_port_forwards(mocks["ctx"])

        assert result == "Stopped 3 port-forward(s)."
        assert mocks["orchestrator"].processes.live_count == 0
        assert server.get_orchestrator() is not mocks["orchestrator"]
        assert server.get_orchestrator().processes.shutting_down is False


@pytest.mark.unit
class TestGetCredentialsTool:
    """Tests for get_credentials MCP tool."""

    async def test_masked_by_default(self, server_with_mocks: dict[str, Any]):
        """Test that the password is masked."""
        mocks = server_with_mocks
        mocks["client"].get.return_value = base64.b64encode(b"argo-pw").decode()

        result = await server.get_credentials(
            server.GetCredentialsParams(component="argocd"), mocks["ctx"]
        )

        assert "ArgoCD Credentials:" in result
        assert "Password: ***MASKED***" in result
        assert "argo-pw" not in result

    async def test_unmasked(self, server_with_mocks: dict[str, Any]):
        """Test that the password is shown when masking is off."""
        mocks = server_with_mocks
        settings = mocks["settings"]
        security = settings.security.model_copy(update={"mask_secrets": False})
        server._settings = settings.model_copy(update={"security": security})
        mocks["client"].get.return_value = base64.b64encode(b"grafana-pw").decode()

        result = await server.get_credentials(
            server.GetCredentialsParams(component="grafana"), mocks["ctx"]
        )

        assert "Password: grafana-pw" in result

    async def test_manual_command(self, server_with_mocks: dict[str, Any]):
        """Test that a missing ArgoCD secret returns the follow-up command."""
        mocks = server_with_mocks

        result = await server.get_credentials(
            server.GetCredentialsParams(component="argocd"), mocks["ctx"]
        )

        assert "Password:" not in result
        assert "Read it later with: kubectl -n argocd get secret" in result


@pytest.mark.unit
class TestResources:
    """Tests for MCP resources."""

    async def test_settings_resource(self, server_with_mocks: dict[str, Any]):
        """Test that the settings resource lists the catalog."""
        result = await server.get_settings_resource()

        assert "Namespace: otel-demo" in result
        assert "- grafana: opentelemetry-demo-grafana 3000:80 route=/grafana" in result
        assert "- prometheus: opentelemetry-demo-prometheus-server 9090:9090" in result

    async def test_security_resource(self, server_read_only: dict[str, Any]):
        """Test that the security resource shows the read-only mode."""
        result = await server.get_security_resource()

        assert "Read-only mode: True" in result
        assert "Destructive operations disabled: True" in result


@pytest.mark.unit
class TestLifespan:
    """Tests for the server lifespan."""

    async def test_lifespan_initializes_and_stops(
        self, mock_settings: AccessSettings, mock_kubectl: AsyncMock
    ):
        """Test that the lifespan builds the globals and clears the orchestrator."""
        original = {
            "settings": server._settings,
            "client": server._client,
            "guard": server._safety_guard,
            "logger": server._audit_logger,
            "orchestrator": server._orchestrator,
        }
        try:
            with (
                patch("otel_access.server.load_settings", return_value=mock_settings),
                patch("otel_access.server.configure_logging"),
                patch(
                    "otel_access.server.KubectlClient.from_settings", return_value=mock_kubectl
                ),
            ):
                async with server.lifespan(server.mcp) as state:
                    assert state["settings"] is mock_settings
                    assert state["client"] is mock_kubectl
                    assert server.get_orchestrator().processes.live_count == 0

            assert server._orchestrator is None
        finally:
            _restore(original)
