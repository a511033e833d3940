# ABOUTME: Pytest fixtures and configuration for otel-demo-access tests
# ABOUTME: Provides settings, safety guards, a mocked kubectl client and a real-process spawner

import asyncio
import shutil
import subprocess
import sys
from typing import Any, AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest

from otel_access.config import AccessSettings, SecuritySettings
from otel_access.orchestrator import ExposureOrchestrator
from otel_access.processes import BackgroundProcess, CancellationToken, OwnedProcessSet
from otel_access.utils.kubectl import KubectlClient
from otel_access.utils.safety import SafetyGuard

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


@pytest.fixture
def mock_security_settings() -> SecuritySettings:
    """Create security settings for testing."""
    return SecuritySettings(
        read_only=False,
        disable_destructive=False,
        audit_log=None,
        mask_secrets=True,
    )


@pytest.fixture
def read_only_security_settings() -> SecuritySettings:
    """Create read-only security settings for testing."""
    return SecuritySettings(
        read_only=True,
        disable_destructive=True,
        audit_log=None,
        mask_secrets=True,
    )


@pytest.fixture
def mock_settings(mock_security_settings: SecuritySettings) -> AccessSettings:
    """Create settings with short timings for testing."""
    return AccessSettings(
        namespace="otel-demo",
        lb_timeout=0.3,
        lb_interval=0.1,
        shutdown_grace=1.0,
        spawn_grace=0.0,
        security=mock_security_settings,
    )


@pytest.fixture
def read_only_settings(
    mock_settings: AccessSettings,
    read_only_security_settings: SecuritySettings,
) -> AccessSettings:
    """Create settings in read-only mode."""
    return mock_settings.model_copy(update={"security": read_only_security_settings})


@pytest.fixture
def safety_guard(mock_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a safety guard for testing."""
    return SafetyGuard(mock_security_settings)


@pytest.fixture
def read_only_safety_guard(read_only_security_settings: SecuritySettings) -> SafetyGuard:
    """Create a read-only safety guard for testing."""
    return SafetyGuard(read_only_security_settings)


@pytest.fixture
def mock_kubectl() -> AsyncMock:
    """Create a mock kubectl client where every Service exists and nothing is set."""
    client = AsyncMock(spec=KubectlClient)

    # Argument vectors are built synchronously
    client.command = MagicMock(side_effect=lambda *args: ["kubectl", *args])
    client.port_forward_command = MagicMock(
        side_effect=lambda service, namespace, local, remote: [
            "kubectl",
            "port-forward",
            f"svc/{service}",
            "-n",
            namespace,
            f"{local}:{remote}",
        ]
    )

    client.exists.return_value = True
    client.get.return_value = ""
    client.get_json.return_value = {}
    client.describe_table.return_value = "NAME     STATUS   AGE\ndefault  Active   1d"
    client.wait_for_condition.return_value = True
    client.apply.return_value = "namespace/argocd configured"

    return client


class SleeperSpawner:
    """
    Stand-in for spawn_port_forward that starts a real, harmless child.

    The child sleeps in its own session exactly like a kubectl forward, so
    process-group termination is exercised for real. Labels listed in
    `failures` raise instead of spawning.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.failures: dict[str, Exception] = {}

    @property
    def labels(self) -> list[str]:
        return [call["label"] for call in self.calls]

    async def __call__(
        self,
        command: list[str],
        label: str,
        local_port: int,
        processes: OwnedProcessSet,
        startup_grace: float = 1.0,
    ) -> BackgroundProcess:
        self.calls.append({"command": command, "label": label, "local_port": local_port})
        if label in self.failures:
            raise self.failures[label]
        process = await asyncio.create_subprocess_exec(
            *SLEEPER,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        handle = BackgroundProcess(process=process, label=label, command=command)
        await processes.register(handle)
        return handle


@pytest.fixture
def spawner() -> SleeperSpawner:
    """Create a spawner that starts sleeping children instead of kubectl."""
    return SleeperSpawner()


@pytest.fixture
async def orchestrator(
    mock_kubectl: AsyncMock,
    mock_settings: AccessSettings,
    safety_guard: SafetyGuard,
    spawner: SleeperSpawner,
) -> AsyncIterator[ExposureOrchestrator]:
    """Create an orchestrator whose children are always stopped after the test."""
    orch = ExposureOrchestrator(
        mock_kubectl,
        mock_settings,
        safety=safety_guard,
        audit=MagicMock(),
        processes=OwnedProcessSet(grace=mock_settings.shutdown_grace),
        token=CancellationToken(),
        spawner=spawner,
    )
    try:
        yield orch
    finally:
        await orch.shutdown()


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx


# Integration test fixtures


@pytest.fixture
def live_cluster() -> KubectlClient:
    """Create a real kubectl client, skipping when no cluster answers."""
    if shutil.which("kubectl") is None:
        pytest.skip("kubectl not installed")
    try:
        probe = subprocess.run(
            ["kubectl", "cluster-info"],
            capture_output=True,
            timeout=20,
            check=False,
        )
    except subprocess.TimeoutExpired:
        pytest.skip("Kubernetes cluster did not answer")
    if probe.returncode != 0:
        pytest.skip("No reachable Kubernetes cluster")
    return KubectlClient()
