# ABOUTME: Async kubectl wrapper with retry logic and structured error handling
# ABOUTME: The Cluster Client used by the orchestrator and the workflows

"""
Cluster Client: an async wrapper around the kubectl binary.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Everything this tool does to a cluster goes through kubectl, exactly as the
shell scripts it replaces did. This module:

1. RUNS kubectl as an asyncio subprocess (never blocks the event loop)
2. CLASSIFIES failures into a small exception taxonomy
3. RETRIES read-only calls that time out
4. BUILDS argument vectors for long-running commands (port-forward) that
   are spawned elsewhere

=============================================================================
ERROR TAXONOMY
=============================================================================

    ClusterError                 base; carries command, exit code, details
    ├── PrerequisiteMissing      kubectl not installed             (fatal)
    ├── ClusterUnreachable       kubeconfig / API server problem   (fatal)
    ├── NotFound                 resource absent                   (per step)
    ├── PatchRejected            cluster refused a change          (per step)
    │   └── LocalBindRejected    local port already in use         (per step)
    ├── CommandTimeout           kubectl did not finish in time
    └── CommandFailed            anything else

Callers decide what is fatal: the CLI aborts on the first two and keeps
going on the rest.

=============================================================================
WHY kubectl AND NOT THE KUBERNETES API CLIENT?
=============================================================================

kubectl resolves kubeconfig, contexts, exec credential plugins (EKS, GKE,
AKS) and port-forwarding over SPDY/WebSocket for us. The operator already
has it configured; the commands we print for manual follow-up are the
commands we actually run.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

if TYPE_CHECKING:
    from otel_access.config import AccessSettings

logger = structlog.get_logger(__name__)


# =============================================================================
# ERRORS
# =============================================================================


class ClusterError(Exception):
    """
    Structured kubectl failure.

    USAGE:
    ------
    try:
        await client.patch("service", "frontend", "otel-demo", {...})
    except PatchRejected as e:
        print(e)  # kubectl error: ... - services "frontend" is forbidden: ...
    """

    def __init__(
        self,
        message: str,
        details: str | None = None,
        command: list[str] | None = None,
        returncode: int | None = None,
    ) -> None:
        self.message = message
        self.details = details
        self.command = command
        self.returncode = returncode
        super().__init__(str(self))

    def __str__(self) -> str:
        base = self.message
        if self.details:
            base += f" - {self.details}"
        return base


class PrerequisiteMissing(ClusterError):
    """A required client tool is not installed."""


class ClusterUnreachable(ClusterError):
    """The cluster cannot be reached with the current kubeconfig."""


class NotFound(ClusterError):
    """The requested resource does not exist."""


class PatchRejected(ClusterError):
    """The cluster refused a change (RBAC, admission, validation)."""


class LocalBindRejected(PatchRejected):
    """A local port needed for port-forwarding is already bound."""


class CommandTimeout(ClusterError):
    """kubectl did not complete within the allotted time."""


class CommandFailed(ClusterError):
    """kubectl failed for a reason not covered by the other errors."""


_UNREACHABLE_MARKERS = (
    "unable to connect to the server",
    "connection refused",
    "no such host",
    "i/o timeout",
    "couldn't get current server api group list",
    "the server has asked for the client to provide credentials",
    "no configuration has been provided",
)
_NOT_FOUND_MARKERS = ("(notfound)", "not found", "the server doesn't have a resource type")
_REJECTED_MARKERS = ("forbidden", "is invalid", "admission webhook", "denied", "unprocessable")


def classify_error(
    stderr: str,
    command: list[str],
    returncode: int,
    rejected: type[ClusterError] = CommandFailed,
) -> ClusterError:
    """
    Map kubectl's stderr to an exception.

    Args:
        stderr: kubectl error output
        command: Full argument vector (for the exception)
        returncode: kubectl exit code
        rejected: Class used when the cluster refused the request. Mutating
                  calls pass PatchRejected; reads keep CommandFailed.
    """
    text = stderr.strip()
    lowered = text.lower()
    verb = command[1] if len(command) > 1 else "kubectl"

    if any(marker in lowered for marker in _UNREACHABLE_MARKERS):
        cls: type[ClusterError] = ClusterUnreachable
        message = "Cannot connect to Kubernetes cluster. Please check your kubeconfig."
    elif any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        cls = NotFound
        message = "Resource not found"
    elif any(marker in lowered for marker in _REJECTED_MARKERS):
        cls = rejected
        message = f"kubectl {verb} was rejected by the cluster"
    else:
        cls = CommandFailed
        message = f"kubectl {verb} failed (exit {returncode})"

    return cls(message, details=text[:300] or None, command=command, returncode=returncode)


# =============================================================================
# RESULT
# =============================================================================


@dataclass
class CommandResult:
    """Completed kubectl invocation."""

    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


# =============================================================================
# CLIENT
# =============================================================================


class KubectlClient:
    """
    Async kubectl client.

    Every call gets its own subprocess; there is no connection state, so
    unlike an HTTP client this needs no context manager.

    RETRY LOGIC:
    ------------
    Read-only calls (get, exists, cluster-info) are retried when kubectl
    exceeds the command timeout, which usually means a slow API server
    rather than a wrong request:
    - Attempt 1: Immediate
    - Attempt 2: Wait 1 second
    - Attempt 3: Wait 2 seconds
    - Give up: Raise CommandTimeout

    Mutations are never retried: a patch that timed out on our side may
    well have been applied.
    """

    def __init__(
        self,
        kubectl: str = "kubectl",
        context: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        """
        Initialize kubectl client.

        Args:
            kubectl: kubectl binary name or path
            context: kubeconfig context, or None for the current context
            timeout: Seconds before a single call is abandoned
        """
        self._kubectl = kubectl
        self._context = context
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: AccessSettings) -> KubectlClient:
        return cls(
            kubectl=settings.kubectl,
            context=settings.kube_context,
            timeout=settings.command_timeout,
        )

    def command(self, *args: str) -> list[str]:
        """Full argument vector for a kubectl call."""
        base = [self._kubectl]
        if self._context:
            base.extend(["--context", self._context])
        return [*base, *args]

    def port_forward_command(
        self,
        service: str,
        namespace: str,
        local_port: int,
        remote_port: int,
    ) -> list[str]:
        """Argument vector for `kubectl port-forward svc/<service>`."""
        return self.command(
            "port-forward",
            f"svc/{service}",
            "-n",
            namespace,
            f"{local_port}:{remote_port}",
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def _execute(
        self,
        args: list[str],
        timeout: float | None = None,
        check: bool = True,
        rejected: type[ClusterError] = CommandFailed,
    ) -> CommandResult:
        """
        Run kubectl and collect its output.

        Raises:
            PrerequisiteMissing: If the kubectl binary cannot be executed.
            CommandTimeout: If kubectl does not finish in time.
            ClusterError: Subclass from classify_error when check is set and
                          kubectl exits non-zero.
        """
        argv = self.command(*args)
        limit = timeout if timeout is not None else self._timeout
        log = logger.bind(args=args)
        log.debug("Running kubectl")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise PrerequisiteMissing(
                f"{self._kubectl} is not installed. Please install kubectl first.",
                command=argv,
            ) from e

        # Own session: the terminal's Ctrl+C cancels the token, not this call.
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            log.warning("kubectl timed out", timeout=limit)
            raise CommandTimeout(
                f"kubectl {args[0]} did not finish within {limit:g}s",
                command=argv,
            ) from e
        except asyncio.CancelledError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            log.debug("kubectl call cancelled")
            raise

        result = CommandResult(
            command=argv,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

        if not result.ok:
            log.info("kubectl failed", returncode=result.returncode, stderr=result.stderr[:300])
            if check:
                raise classify_error(result.stderr, argv, result.returncode, rejected)

        return result

    @retry(
        retry=retry_if_exception_type(CommandTimeout),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _read(self, args: list[str]) -> CommandResult:
        """Run a read-only kubectl call, retrying on timeout."""
        return await self._execute(args)

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    def check_prerequisites(self) -> None:
        """
        Ensure kubectl is on PATH.

        Raises:
            PrerequisiteMissing: If kubectl cannot be found.
        """
        if shutil.which(self._kubectl) is None:
            raise PrerequisiteMissing(
                f"{self._kubectl} is not installed. Please install kubectl first."
            )

    async def check_connection(self) -> None:
        """
        Ensure the cluster answers.

        Raises:
            ClusterUnreachable: If `kubectl cluster-info` fails for any reason.
        """
        try:
            await self._read(["cluster-info"])
        except (CommandFailed, CommandTimeout, ClusterUnreachable, NotFound) as e:
            raise ClusterUnreachable(
                "Cannot connect to Kubernetes cluster. Please check your kubeconfig.",
                details=e.details,
                command=e.command,
            ) from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @staticmethod
    def _scope(kind: str, name: str | None, namespace: str | None) -> list[str]:
        args = [kind]
        if name:
            args.append(name)
        if namespace:
            args.extend(["-n", namespace])
        return args

    async def exists(self, kind: str, name: str, namespace: str | None = None) -> bool:
        """Return True if the resource exists."""
        try:
            await self._read(["get", *self._scope(kind, name, namespace), "-o", "name"])
        except NotFound:
            return False
        return True

    async def get(
        self,
        kind: str,
        name: str,
        namespace: str | None,
        field_path: str,
    ) -> str:
        """
        Read one field with a jsonpath template.

        Args:
            field_path: jsonpath template, e.g. "{.spec.type}"

        Returns:
            Field value as text, empty string when the field is unset.
        """
        result = await self._read(
            ["get", *self._scope(kind, name, namespace), "-o", f"jsonpath={field_path}"]
        )
        return result.stdout.strip()

    async def get_json(
        self,
        kind: str,
        name: str | None = None,
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Read a resource (or a list, when name is None) as parsed JSON."""
        result = await self._read(["get", *self._scope(kind, name, namespace), "-o", "json"])
        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise CommandFailed(
                f"kubectl get {kind} returned invalid JSON",
                details=str(e),
                command=result.command,
            ) from e
        return data if isinstance(data, dict) else {}

    async def describe_table(self, kind: str, namespace: str | None = None) -> str:
        """Default `kubectl get` table output, for showing to the operator."""
        result = await self._read(["get", *self._scope(kind, None, namespace)])
        return result.stdout.rstrip()

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def apply(self, manifest_ref: str, namespace: str | None = None) -> str:
        """`kubectl apply -f <manifest_ref>`; returns kubectl's summary output."""
        args = ["apply"]
        if namespace:
            args.extend(["-n", namespace])
        args.extend(["-f", manifest_ref])
        result = await self._execute(args, timeout=max(self._timeout, 120.0), rejected=PatchRejected)
        return result.stdout.strip()

    async def create_namespace(self, name: str) -> None:
        await self._execute(["create", "namespace", name], rejected=PatchRejected)

    async def patch(
        self,
        kind: str,
        name: str,
        namespace: str | None,
        patch: dict[str, Any] | list[dict[str, Any]],
        patch_type: str = "merge",
    ) -> None:
        """
        Patch a resource.

        Args:
            patch: Merge patch (dict) or JSON patch operations (list)
            patch_type: "merge", "strategic" or "json"

        Raises:
            NotFound: If the resource does not exist.
            PatchRejected: If the cluster refuses the patch.
        """
        await self._execute(
            [
                "patch",
                *self._scope(kind, name, namespace),
                "--type",
                patch_type,
                "-p",
                json.dumps(patch),
            ],
            rejected=PatchRejected,
        )

    async def wait_for_condition(
        self,
        kind: str,
        name: str,
        namespace: str | None,
        condition: str,
        timeout: float,
    ) -> bool:
        """
        `kubectl wait --for=condition=<condition>`.

        Returns:
            True when the condition was met, False when kubectl gave up
            waiting. Other failures raise.
        """
        args = [
            "wait",
            f"--for=condition={condition}",
            f"--timeout={int(timeout)}s",
            f"{kind}/{name}",
        ]
        if namespace:
            args.extend(["-n", namespace])
        result = await self._execute(args, timeout=timeout + self._timeout, check=False)
        if result.ok:
            return True
        if "timed out" in result.stderr.lower():
            return False
        raise classify_error(result.stderr, result.command, result.returncode)

    async def delete(
        self,
        kind: str,
        name: str,
        namespace: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """
        Delete one resource.

        Raises:
            NotFound: If the resource does not exist.
        """
        args = ["delete", *self._scope(kind, name, namespace)]
        if timeout is not None:
            args.append(f"--timeout={int(timeout)}s")
        await self._execute(
            args,
            timeout=(timeout or 0) + self._timeout,
            rejected=PatchRejected,
        )

    async def delete_all(self, kinds: str, namespace: str, timeout: float | None = None) -> None:
        """`kubectl delete <kinds> --all -n <namespace>` (kinds may be "all" or "configmap")."""
        args = ["delete", kinds, "--all", "-n", namespace]
        if timeout is not None:
            args.append(f"--timeout={int(timeout)}s")
        await self._execute(
            args,
            timeout=(timeout or 0) + self._timeout,
            rejected=PatchRejected,
        )

    async def delete_manifest(
        self,
        manifest_ref: str,
        namespace: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """`kubectl delete -f <manifest_ref>`; resources already gone are ignored."""
        args = ["delete"]
        if namespace:
            args.extend(["-n", namespace])
        args.extend(["-f", manifest_ref, "--ignore-not-found"])
        if timeout is not None:
            args.append(f"--timeout={int(timeout)}s")
        await self._execute(
            args,
            timeout=(timeout or 0) + max(self._timeout, 120.0),
            rejected=PatchRejected,
        )
