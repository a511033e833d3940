# ABOUTME: Unit tests for the async kubectl client
# ABOUTME: Tests argument vectors, error classification, retries and the read/write helpers

import asyncio
import json
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from tenacity import wait_none

from otel_access.config import AccessSettings
from otel_access.utils.kubectl import (
    ClusterError,
    ClusterUnreachable,
    CommandFailed,
    CommandResult,
    CommandTimeout,
    KubectlClient,
    LocalBindRejected,
    NotFound,
    PatchRejected,
    PrerequisiteMissing,
    classify_error,
)

NOT_FOUND = 'Error from server (NotFound): services "opentelemetry-demo-frontendproxy" not found'
FORBIDDEN = (
    'Error from server (Forbidden): services "opentelemetry-demo-frontendproxy" is forbidden: '
    'User "dev" cannot patch resource "services"'
)
UNREACHABLE = "The connection to the server localhost:8080 was refused - did you specify the right host or port?\nUnable to connect to the server"


def fake_process(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    """Create a finished subprocess stand-in."""
    process = MagicMock()
    process.communicate = AsyncMock(return_value=(stdout.encode(), stderr.encode()))
    process.returncode = returncode
    process.wait = AsyncMock(return_value=returncode)
    return process


@pytest.fixture
def exec_mock():
    """Patch subprocess creation for the duration of a test."""
    with patch("asyncio.create_subprocess_exec", new_callable=AsyncMock) as mock:
        mock.return_value = fake_process()
        yield mock


@pytest.fixture
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove the backoff between read retries."""
    monkeypatch.setattr(KubectlClient._read.retry, "wait", wait_none())


def argv(exec_mock: AsyncMock, call: int = -1) -> list[str]:
    return list(exec_mock.call_args_list[call].args)


@pytest.mark.unit
class TestClusterError:
    """Tests for the ClusterError hierarchy."""

    def test_str_without_details(self):
        """Test string form without details."""
        assert str(ClusterError("Resource not found")) == "Resource not found"

    def test_str_with_details(self):
        """Test string form with kubectl's message appended."""
        error = ClusterError("kubectl get failed", details="boom", returncode=1)
        assert str(error) == "kubectl get failed - boom"
        assert error.returncode == 1

    def test_local_bind_is_patch_rejection(self):
        """Test that local bind failures are a kind of rejection."""
        assert issubclass(LocalBindRejected, PatchRejected)
        assert issubclass(PatchRejected, ClusterError)


@pytest.mark.unit
class TestClassifyError:
    """Tests for classify_error function."""

    def test_not_found(self):
        """Test that NotFound responses map to NotFound."""
        error = classify_error(NOT_FOUND, ["kubectl", "get", "svc"], 1)
        assert isinstance(error, NotFound)
        assert "not found" in error.details

    def test_missing_resource_type_is_not_found(self):
        """Test that a missing CRD counts as not found."""
        stderr = 'error: the server doesn\'t have a resource type "application"'
        assert isinstance(classify_error(stderr, ["kubectl", "get"], 1), NotFound)

    def test_unreachable(self):
        """Test that connection failures map to ClusterUnreachable."""
        error = classify_error(UNREACHABLE, ["kubectl", "get"], 1)
        assert isinstance(error, ClusterUnreachable)

    def test_forbidden_for_reads(self):
        """Test that refusals of reads stay CommandFailed."""
        assert isinstance(classify_error(FORBIDDEN, ["kubectl", "get"], 1), CommandFailed)

    def test_forbidden_for_writes(self):
        """Test that refusals of writes use the rejected class."""
        error = classify_error(FORBIDDEN, ["kubectl", "patch"], 1, rejected=PatchRejected)
        assert isinstance(error, PatchRejected)
        assert error.message == "kubectl patch was rejected by the cluster"

    def test_other_failure(self):
        """Test that unknown failures carry the exit code."""
        error = classify_error("something odd", ["kubectl", "apply"], 2)
        assert isinstance(error, CommandFailed)
        assert error.message == "kubectl apply failed (exit 2)"

    def test_details_truncated(self):
        """Test that long stderr is truncated."""
        error = classify_error("x" * 1000, ["kubectl", "get"], 1)
        assert len(error.details) == 300


@pytest.mark.unit
class TestKubectlClientCommands:
    """Tests for argument vector construction."""

    def test_command_without_context(self):
        """Test that no context flag is added by default."""
        assert KubectlClient().command("get", "ns") == ["kubectl", "get", "ns"]

    def test_command_with_context(self):
        """Test that the kube context is passed first."""
        client = KubectlClient(kubectl="/usr/local/bin/kubectl", context="kind-demo")
        assert client.command("get", "ns") == [
            "/usr/local/bin/kubectl",
            "--context",
            "kind-demo",
            "get",
            "ns",
        ]

    def test_port_forward_command(self):
        """Test the port-forward argument vector."""
        client = KubectlClient()
        assert client.port_forward_command(
            "opentelemetry-demo-frontendproxy", "otel-demo", 8088, 8080
        ) == [
            "kubectl",
            "port-forward",
            "svc/opentelemetry-demo-frontendproxy",
            "-n",
            "otel-demo",
            "8088:8080",
        ]

    def test_from_settings(self):
        """Test building a client from settings."""
        settings = AccessSettings(kubectl="kubectl-1.29", kube_context="prod", command_timeout=5)
        client = KubectlClient.from_settings(settings)
        assert client.command("version") == ["kubectl-1.29", "--context", "prod", "version"]
        assert client._timeout == 5

    def test_command_result_ok(self):
        """Test CommandResult.ok."""
        assert CommandResult(["kubectl"], 0, "", "").ok is True
        assert CommandResult(["kubectl"], 1, "", "").ok is False


@pytest.mark.unit
class TestKubectlClientExecution:
    """Tests for subprocess execution and failures."""

    async def test_missing_binary(self, exec_mock: AsyncMock):
        """Test that a missing kubectl raises PrerequisiteMissing."""
        exec_mock.side_effect = FileNotFoundError("kubectl")

        with pytest.raises(PrerequisiteMissing, match="not installed"):
            await KubectlClient().get("service", "svc", "otel-demo", "{.spec.type}")

    async def test_timeout_kills_process(self, exec_mock: AsyncMock):
        """Test that a hung kubectl is killed and reported."""

        async def hang():
            await asyncio.sleep(10)

        process = fake_process()
        process.communicate = AsyncMock(side_effect=hang)
        exec_mock.return_value = process

        with pytest.raises(CommandTimeout, match="did not finish"):
            await KubectlClient(timeout=0.05)._execute(["get", "ns"])

        process.kill.assert_called_once()

    async def test_runs_in_own_session(self, exec_mock: AsyncMock):
        """Test that kubectl is started outside the terminal's process group."""
        await KubectlClient().get("service", "svc", "otel-demo", "{.spec.type}")

        assert exec_mock.call_args.kwargs["start_new_session"] is True

    async def test_child_process_group_differs(self):
        """Test that a real child does not share the caller's process group."""
        client = KubectlClient(kubectl=sys.executable)

        result = await client._execute(["-c", "import os; print(os.getpgrp())"])

        assert int(result.stdout) != os.getpgrp()

    async def test_cancel_kills_process(self, exec_mock: AsyncMock):
        """Test that cancelling a call kills its kubectl child."""
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        process = fake_process()
        process.communicate = AsyncMock(side_effect=hang)
        exec_mock.return_value = process

        task = asyncio.ensure_future(KubectlClient()._execute(["get", "ns"]))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        process.kill.assert_called_once()

    async def test_reads_retry_on_timeout(self, exec_mock: AsyncMock, no_retry_wait: None):
        """Test that read-only calls are retried three times on timeout."""

        async def hang():
            await asyncio.sleep(10)

        process = fake_process()
        process.communicate = AsyncMock(side_effect=hang)
        exec_mock.return_value = process

        with pytest.raises(CommandTimeout):
            await KubectlClient(timeout=0.05).exists("service", "svc", "otel-demo")

        assert exec_mock.await_count == 3

    async def test_writes_not_retried(self, exec_mock: AsyncMock, no_retry_wait: None):
        """Test that mutations are not retried on timeout."""

        async def hang():
            await asyncio.sleep(10)

        process = fake_process()
        process.communicate = AsyncMock(side_effect=hang)
        exec_mock.return_value = process

        with pytest.raises(CommandTimeout):
            await KubectlClient(timeout=0.05).patch("service", "svc", "otel-demo", {})

        assert exec_mock.await_count == 1

    def test_check_prerequisites_missing(self):
        """Test check_prerequisites when kubectl is not on PATH."""
        with patch("otel_access.utils.kubectl.shutil.which", return_value=None):
            with pytest.raises(PrerequisiteMissing):
                KubectlClient().check_prerequisites()

    def test_check_prerequisites_present(self):
        """Test check_prerequisites when kubectl is on PATH."""
        with patch("otel_access.utils.kubectl.shutil.which", return_value="/usr/bin/kubectl"):
            KubectlClient().check_prerequisites()

    async def test_check_connection_success(self, exec_mock: AsyncMock):
        """Test that a cluster-info success passes."""
        exec_mock.return_value = fake_process(stdout="Kubernetes control plane is running")

        await KubectlClient().check_connection()

        assert argv(exec_mock) == ["kubectl", "cluster-info"]

    async def test_check_connection_failure(self, exec_mock: AsyncMock):
        """Test that any cluster-info failure becomes ClusterUnreachable."""
        exec_mock.return_value = fake_process(stderr="error: exec plugin failed", returncode=1)

        with pytest.raises(ClusterUnreachable, match="check your kubeconfig"):
            await KubectlClient().check_connection()


@pytest.mark.unit
class TestKubectlClientReads:
    """Tests for read helpers."""

    async def test_exists_true(self, exec_mock: AsyncMock):
        """Test exists for a present resource."""
        exec_mock.return_value = fake_process(stdout="service/frontend\n")

        assert await KubectlClient().exists("service", "frontend", "otel-demo") is True
        assert argv(exec_mock) == [
            "kubectl",
            "get",
            "service",
            "frontend",
            "-n",
            "otel-demo",
            "-o",
            "name",
        ]

    async def test_exists_false(self, exec_mock: AsyncMock):
        """Test exists for an absent resource."""
        exec_mock.return_value = fake_process(stderr=NOT_FOUND, returncode=1)

        assert await KubectlClient().exists("service", "frontend", "otel-demo") is False

    async def test_exists_propagates_other_errors(self, exec_mock: AsyncMock):
        """Test that exists does not hide connectivity problems."""
        exec_mock.return_value = fake_process(stderr=UNREACHABLE, returncode=1)

        with pytest.raises(ClusterUnreachable):
            await KubectlClient().exists("namespace", "otel-demo")

    async def test_get_jsonpath(self, exec_mock: AsyncMock):
        """Test reading one field with jsonpath."""
        exec_mock.return_value = fake_process(stdout="LoadBalancer\n")

        value = await KubectlClient().get("service", "frontend", "otel-demo", "{.spec.type}")

        assert value == "LoadBalancer"
        assert argv(exec_mock)[-2:] == ["-o", "jsonpath={.spec.type}"]

    async def test_get_empty_field(self, exec_mock: AsyncMock):
        """Test that an unset field reads as empty string."""
        exec_mock.return_value = fake_process(stdout="")

        value = await KubectlClient().get(
            "service", "frontend", "otel-demo", "{.status.loadBalancer.ingress[0].ip}"
        )

        assert value == ""

    async def test_get_json(self, exec_mock: AsyncMock):
        """Test reading a resource as JSON."""
        body = {"spec": {"ports": [{"port": 8080, "nodePort": 31080}]}}
        exec_mock.return_value = fake_process(stdout=json.dumps(body))

        assert await KubectlClient().get_json("service", "frontend", "otel-demo") == body

    async def test_get_json_list_without_name(self, exec_mock: AsyncMock):
        """Test that get_json without a name lists the kind."""
        exec_mock.return_value = fake_process(stdout='{"items": []}')

        await KubectlClient().get_json("nodes")

        assert argv(exec_mock) == ["kubectl", "get", "nodes", "-o", "json"]

    async def test_get_json_invalid(self, exec_mock: AsyncMock):
        """Test that invalid JSON raises CommandFailed."""
        exec_mock.return_value = fake_process(stdout="not json")

        with pytest.raises(CommandFailed, match="invalid JSON"):
            await KubectlClient().get_json("nodes")

    async def test_describe_table(self, exec_mock: AsyncMock):
        """Test the plain table output."""
        exec_mock.return_value = fake_process(stdout="NAME   READY\nargocd-server   1/1\n\n")

        table = await KubectlClient().describe_table("pods", "argocd")

        assert table == "NAME   READY\nargocd-server   1/1"
        assert argv(exec_mock) == ["kubectl", "get", "pods", "-n", "argocd"]


@pytest.mark.unit
class TestKubectlClientWrites:
    """Tests for write helpers."""

    async def test_patch_merge(self, exec_mock: AsyncMock):
        """Test a merge patch argument vector."""
        await KubectlClient().patch(
            "service", "frontend", "otel-demo", {"spec": {"type": "LoadBalancer"}}
        )

        assert argv(exec_mock) == [
            "kubectl",
            "patch",
            "service",
            "frontend",
            "-n",
            "otel-demo",
            "--type",
            "merge",
            "-p",
            '{"spec": {"type": "LoadBalancer"}}',
        ]

    async def test_patch_json(self, exec_mock: AsyncMock):
        """Test a JSON patch argument vector."""
        ops = [{"op": "remove", "path": "/metadata/finalizers"}]

        await KubectlClient().patch("application", "demo", "argocd", ops, patch_type="json")

        args = argv(exec_mock)
        assert args[args.index("--type") + 1] == "json"
        assert json.loads(args[-1]) == ops

    async def test_patch_rejected(self, exec_mock: AsyncMock):
        """Test that a forbidden patch raises PatchRejected."""
        exec_mock.return_value = fake_process(stderr=FORBIDDEN, returncode=1)

        with pytest.raises(PatchRejected):
            await KubectlClient().patch("service", "frontend", "otel-demo", {})

    async def test_patch_not_found(self, exec_mock: AsyncMock):
        """Test that patching a missing resource raises NotFound."""
        exec_mock.return_value = fake_process(stderr=NOT_FOUND, returncode=1)

        with pytest.raises(NotFound):
            await KubectlClient().patch("service", "frontend", "otel-demo", {})

    async def test_apply(self, exec_mock: AsyncMock):
        """Test applying a manifest into a namespace."""
        exec_mock.return_value = fake_process(stdout="deployment.apps/argocd-server created\n")

        output = await KubectlClient().apply("https://example.com/install.yaml", "argocd")

        assert output == "deployment.apps/argocd-server created"
        assert argv(exec_mock) == [
            "kubectl",
            "apply",
            "-n",
            "argocd",
            "-f",
            "https://example.com/install.yaml",
        ]

    async def test_create_namespace(self, exec_mock: AsyncMock):
        """Test creating a namespace."""
        await KubectlClient().create_namespace("argocd")

        assert argv(exec_mock) == ["kubectl", "create", "namespace", "argocd"]

    async def test_wait_for_condition_met(self, exec_mock: AsyncMock):
        """Test wait returning True when the condition is met."""
        ok = await KubectlClient().wait_for_condition(
            "deployment", "argocd-server", "argocd", "available", timeout=300
        )

        assert ok is True
        assert argv(exec_mock) == [
            "kubectl",
            "wait",
            "--for=condition=available",
            "--timeout=300s",
            "deployment/argocd-server",
            "-n",
            "argocd",
        ]

    async def test_wait_for_condition_timed_out(self, exec_mock: AsyncMock):
        """Test wait returning False when kubectl gives up."""
        exec_mock.return_value = fake_process(
            stderr="error: timed out waiting for the condition on deployments/argocd-server",
            returncode=1,
        )

        ok = await KubectlClient().wait_for_condition(
            "deployment", "argocd-server", "argocd", "available", timeout=1
        )

        assert ok is False

    async def test_wait_for_condition_other_failure(self, exec_mock: AsyncMock):
        """Test that other wait failures raise."""
        exec_mock.return_value = fake_process(stderr=NOT_FOUND, returncode=1)

        with pytest.raises(NotFound):
            await KubectlClient().wait_for_condition(
                "deployment", "argocd-server", "argocd", "available", timeout=1
            )

    async def test_delete_with_timeout(self, exec_mock: AsyncMock):
        """Test deleting one resource with a kubectl timeout."""
        await KubectlClient().delete("application", "opentelemetry-demo", "argocd", timeout=60)

        assert argv(exec_mock) == [
            "kubectl",
            "delete",
            "application",
            "opentelemetry-demo",
            "-n",
            "argocd",
            "--timeout=60s",
        ]

    async def test_delete_not_found(self, exec_mock: AsyncMock):
        """Test that deleting a missing resource raises NotFound."""
        exec_mock.return_value = fake_process(stderr=NOT_FOUND, returncode=1)

        with pytest.raises(NotFound):
            await KubectlClient().delete("ingress", "opentelemetry-demo-ingress", "default")

    async def test_delete_all(self, exec_mock: AsyncMock):
        """Test deleting every resource of a kind in a namespace."""
        await KubectlClient().delete_all("configmap", "otel-demo")

        assert argv(exec_mock) == ["kubectl", "delete", "configmap", "--all", "-n", "otel-demo"]

    async def test_delete_manifest(self, exec_mock: AsyncMock):
        """Test deleting the resources of a manifest."""
        await KubectlClient().delete_manifest("https://example.com/cert-manager.yaml")

        assert argv(exec_mock) == [
            "kubectl",
            "delete",
            "-f",
            "https://example.com/cert-manager.yaml",
            "--ignore-not-found",
        ]
