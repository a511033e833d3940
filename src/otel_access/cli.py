# ABOUTME: Command line entry point for otel-demo-access
# ABOUTME: Subcommands access, loadgen, setup-argocd and cleanup with operator prompts

"""
`otel-access` command line interface.

=============================================================================
COMMANDS
=============================================================================

    otel-access access [--choice N] [--verify]
    otel-access loadgen
    otel-access setup-argocd [--port-forward | --no-port-forward]
                             [--application PATH] [--verify-login]
    otel-access cleanup [--yes] [--cert-manager] [--ingress-nginx] [--argocd]

=============================================================================
EXIT CODES
=============================================================================

    0   success, or cancelled by the operator (Ctrl+C, "n" at a prompt)
    1   kubectl missing, cluster unreachable, namespace or Service missing,
        local port already in use, a cleanup step failed, invalid settings

=============================================================================
PROMPTS AND THE EVENT LOOP
=============================================================================

Prompts are read synchronously between asyncio.run() calls, never inside
a running loop. While a loop runs forwards, SIGINT/SIGTERM are routed to a
CancellationToken; while a prompt waits, Ctrl+C raises KeyboardInterrupt
as usual. Either way the run ends with exit code 0 and no forward left
behind.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace
from typing import TYPE_CHECKING

import structlog
from pydantic import ValidationError

from otel_access import __version__
from otel_access.config import load_settings
from otel_access.console import RULE, Console
from otel_access.credentials import CredentialResolver
from otel_access.orchestrator import (
    ExposureOrchestrator,
    ExposureStrategy,
    InvalidChoice,
    select_strategy,
)
from otel_access.processes import (
    CancellationToken,
    install_signal_handlers,
    remove_signal_handlers,
)
from otel_access.utils.kubectl import (
    ClusterError,
    KubectlClient,
    LocalBindRejected,
    NotFound,
    PatchRejected,
)
from otel_access.utils.logging import AuditLogger, configure_logging, set_correlation_id
from otel_access.utils.probe import EndpointProbe
from otel_access.utils.safety import ConfirmationRequired, OperationBlocked, SafetyGuard
from otel_access.workflows.argocd_setup import ArgocdSetup
from otel_access.workflows.cleanup import CleanupPlan, CleanupWorkflow, StepOutcome, StepResult
from otel_access.workflows.loadgen import LoadgenWorkflow

if TYPE_CHECKING:
    from collections.abc import Sequence

    from otel_access.config import AccessSettings
    from otel_access.credentials import Credentials
    from otel_access.orchestrator import ExposureResult
    from otel_access.workflows.argocd_setup import ArgocdSetupReport

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


def ask(question: str) -> str | None:
    """Read one answer; None when stdin is closed."""
    try:
        return input(question)
    except EOFError:
        return None


def confirm(question: str) -> bool:
    answer = ask(question)
    return answer is not None and answer.strip().lower().startswith("y")


class Cli:
    """Shared state for one CLI invocation."""

    def __init__(self, settings: AccessSettings, console: Console) -> None:
        self.settings = settings
        self.console = console
        self.client = KubectlClient.from_settings(settings)
        self.safety = SafetyGuard(settings.security)
        self.audit = AuditLogger(settings.security.audit_log)

    def orchestrator(self, token: CancellationToken) -> ExposureOrchestrator:
        return ExposureOrchestrator(
            self.client,
            self.settings,
            safety=self.safety,
            audit=self.audit,
            token=token,
            on_poll=lambda _poll: self.console.write("."),
        )

    async def preflight(self) -> None:
        """
        Raises:
            PrerequisiteMissing: kubectl is not installed.
            ClusterUnreachable: The cluster does not answer.
        """
        self.client.check_prerequisites()
        await self.client.check_connection()
        self.console.status("Connected to Kubernetes cluster")
        self.console.line()

    async def require_namespace(self, namespace: str) -> None:
        if not await self.client.exists("namespace", namespace):
            raise NotFound(
                f"Namespace '{namespace}' not found. Please deploy the OpenTelemetry Demo first."
            )

    async def hold_forwards(self, orchestrator: ExposureOrchestrator, message: str) -> None:
        """Keep forwards alive until Ctrl+C, SIGTERM or all of them exiting."""
        if orchestrator.processes.live_count == 0:
            return
        self.console.info("Press Ctrl+C to stop")
        self.console.line()
        reason = await orchestrator.wait_until_cancelled()
        self.console.line()
        self.console.info(message)
        logger.info("Forwarding stopped", reason=reason)
        self.console.status("All port forwards stopped.")

    # -------------------------------------------------------------------------
    # access
    # -------------------------------------------------------------------------

    def access(self, args: argparse.Namespace) -> int:
        self.console.banner("OpenTelemetry Demo - Observability Stack")
        asyncio.run(self._access_status())

        interactive = args.choice is None
        choice = args.choice
        while True:
            if choice is None:
                self.console.menu()
                choice = ask(f"Enter your choice (1-{len(ExposureStrategy)}): ")
                self.console.line()
                if choice is None:
                    return EXIT_OK

            strategy = select_strategy(choice)
            if isinstance(strategy, InvalidChoice):
                self.console.error(strategy.format_message())
                if not interactive:
                    return EXIT_FAILURE
                choice = None
                continue

            try:
                return asyncio.run(self._expose(strategy, args.verify))
            except LocalBindRejected:
                raise
            except PatchRejected as e:
                self.console.error(str(e))
                if not interactive:
                    return EXIT_FAILURE
                self.console.line()
                choice = None

    async def _access_status(self) -> None:
        await self.preflight()
        await self.require_namespace(self.settings.namespace)

        self.console.line("Checking observability stack status...")
        self.console.line()
        token = CancellationToken()
        status = await self.orchestrator(token).check_services()
        names = {entry.key: entry.display_name for entry in self.settings.catalog}
        self.console.service_status(status, names)

    async def _expose(self, strategy: ExposureStrategy, verify: bool) -> int:
        token = CancellationToken()
        install_signal_handlers(token)
        orchestrator = self.orchestrator(token)
        target = orchestrator.primary_target()
        try:
            if strategy is ExposureStrategy.LOAD_BALANCER:
                self.console.info(f"Configuring {target.name} as LoadBalancer...")
                self.console.line("Waiting for external IP assignment...")
                self.console.line("(This may take 1-2 minutes depending on your cloud provider)")
            elif strategy is ExposureStrategy.NODE_PORT:
                self.console.info(f"Configuring {target.name} as NodePort...")
            elif strategy.spawns_processes:
                self.console.info("Starting port forwarding...")
            if strategy.mutates_cluster:
                self.console.warning(
                    f"This changes the type of Service {target.ref}; it is not reverted on exit."
                )

            result = await orchestrator.expose(target, strategy)
            if strategy is ExposureStrategy.LOAD_BALANCER:
                self.console.line()
                if not result.pending:
                    self.console.status("External IP/Hostname assigned!")
            self.console.result(result)
            if result.pending:
                return EXIT_OK

            credentials = await CredentialResolver(self.client, self.settings).grafana()
            self.console.credentials("Grafana Credentials:", credentials)

            if verify and result.urls:
                await self._verify(result)

            if strategy.spawns_processes:
                await self.hold_forwards(orchestrator, "Stopping port forwards...")
            return EXIT_OK
        finally:
            await orchestrator.shutdown()
            remove_signal_handlers()

    async def _verify(self, result: ExposureResult) -> None:
        self.console.line("Checking endpoints...")
        async with EndpointProbe() as probe:
            results = await probe.check_all(result.urls)
        self.console.probes(results)

    # -------------------------------------------------------------------------
    # loadgen
    # -------------------------------------------------------------------------

    def loadgen(self, args: argparse.Namespace) -> int:  # noqa: ARG002 - uniform handler signature
        return asyncio.run(self._loadgen())

    async def _loadgen(self) -> int:
        self.client.check_prerequisites()
        await self.require_namespace(self.settings.namespace)

        token = CancellationToken()
        install_signal_handlers(token)
        orchestrator = self.orchestrator(token)
        try:
            access = await LoadgenWorkflow(orchestrator, self.settings).start()
            self.console.line(RULE)
            self.console.line(f"Locust UI: {access.ui_url}")
            self.console.line(f"Set Locust Host to: {access.host_url}")
            self.console.line(RULE)
            if not access.host_assigned:
                self.console.warning("The frontend proxy has no external LoadBalancer address.")
            await self.hold_forwards(orchestrator, "Stopping port-forward...")
            return EXIT_OK
        finally:
            await orchestrator.shutdown()
            remove_signal_handlers()

    # -------------------------------------------------------------------------
    # setup-argocd
    # -------------------------------------------------------------------------

    def setup_argocd(self, args: argparse.Namespace) -> int:
        self.console.banner("ArgoCD Setup")
        report = asyncio.run(self._setup_argocd(args.application))

        forward = args.port_forward
        if forward is None:
            forward = confirm("Start port forwarding now? (y/N) ")
        if not forward:
            self.console.line()
            self.console.status(
                "Setup complete! Run the port-forward command when ready to access the UI."
            )
            return EXIT_OK
        return asyncio.run(self._argocd_forward(report.credentials, args.verify_login))

    async def _setup_argocd(self, application: str | None) -> ArgocdSetupReport:
        await self.preflight()
        setup = ArgocdSetup(self.client, self.settings, self.console, self.safety, self.audit)
        return await setup.run(application)

    async def _argocd_forward(self, credentials: Credentials, verify_login: bool) -> int:
        token = CancellationToken()
        install_signal_handlers(token)
        orchestrator = self.orchestrator(token)
        target = ArgocdSetup(self.client, self.settings, self.console).server_target()
        try:
            self.console.line()
            self.console.info(f"Starting port forwarding on localhost:{target.bind_port}...")
            result = await orchestrator.expose(target, ExposureStrategy.PORT_FORWARD)
            url = result.base_url or f"https://localhost:{target.bind_port}"
            self.console.line()
            self.console.line(f"  ArgoCD UI: {url}")
            self.console.line(f"  Username:  {credentials.username}")
            if credentials.password is not None:
                self.console.line(f"  Password:  {credentials.password}")
            self.console.line()

            if verify_login and credentials.password is not None:
                async with EndpointProbe() as probe:
                    ok = await probe.verify_argocd_login(
                        url, credentials.username, credentials.password
                    )
                if ok:
                    self.console.status("ArgoCD accepted the admin credentials")
                else:
                    self.console.warning("ArgoCD login check failed")

            await self.hold_forwards(orchestrator, "Stopping port forwarding...")
            return EXIT_OK
        finally:
            await orchestrator.shutdown()
            remove_signal_handlers()

    # -------------------------------------------------------------------------
    # cleanup
    # -------------------------------------------------------------------------

    def cleanup(self, args: argparse.Namespace) -> int:
        console = self.console
        console.banner("OpenTelemetry Demo - Kubernetes Cleanup")
        workflow = CleanupWorkflow(self.client, self.settings, self.safety, self.audit)
        plan = CleanupPlan(
            cert_manager=args.cert_manager,
            ingress_nginx=args.ingress_nginx,
            argocd=args.argocd,
        )

        check = workflow.check(confirmed=args.yes, plan=plan)
        if isinstance(check, OperationBlocked):
            self.audit.log_blocked("cleanup", self.settings.namespace, check.reason)
            console.error(check.format_message())
            return EXIT_FAILURE
        if isinstance(check, ConfirmationRequired):
            console.line("This will remove:")
            for item in workflow.summary():
                console.line(f"  - {item}")
            console.line()
            if not confirm("Are you sure you want to continue? (y/N) "):
                console.line("Cleanup cancelled.")
                return EXIT_OK
            for component, wanted in workflow.optional_components(plan):
                if not wanted and confirm(f"Remove {component.name}? (y/N) "):
                    plan = replace(plan, **{component.option: True})

        console.line()
        console.line("Starting cleanup...")
        console.line()
        return asyncio.run(self._cleanup(workflow, plan))

    async def _cleanup(self, workflow: CleanupWorkflow, plan: CleanupPlan) -> int:
        self.client.check_prerequisites()
        await self.client.check_connection()
        report = await workflow.run(plan, on_step=self._print_step)

        self.console.line()
        self.console.banner("Cleanup Complete!")
        self.console.line("Remaining namespaces:")
        self.console.line(report.remaining_namespaces)
        self.console.line()
        if report.ok:
            self.console.status("All specified resources have been removed.")
            return EXIT_OK
        self.console.error("Some resources could not be removed; see the errors above.")
        return EXIT_FAILURE

    def _print_step(self, step: StepResult) -> None:
        if step.outcome is StepOutcome.OK:
            self.console.status(step.message)
        elif step.outcome is StepOutcome.SKIPPED:
            self.console.warning(step.message)
        else:
            self.console.error(step.message)
            for error in step.errors:
                self.console.line(f"    {error}")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="otel-access",
        description="Reach, set up and clean up the OpenTelemetry demo on Kubernetes.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--namespace", help="Demo namespace (default: OTEL_ACCESS_NAMESPACE or otel-demo)"
    )
    parser.add_argument("--context", help="kubeconfig context to use")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Diagnostic log level (logs go to stderr)",
    )
    subparsers = parser.add_subparsers(title="commands", dest="command", required=True)

    access = subparsers.add_parser("access", help="Expose the observability stack")
    access.add_argument(
        "--choice",
        help="Menu choice (1-5) or strategy name; prompts when omitted",
    )
    access.add_argument(
        "--verify", action="store_true", help="Check that the reported URLs answer"
    )
    access.set_defaults(handler=Cli.access)

    loadgen = subparsers.add_parser("loadgen", help="Port-forward the load generator UI")
    loadgen.set_defaults(handler=Cli.loadgen)

    setup = subparsers.add_parser("setup-argocd", help="Install ArgoCD")
    setup.add_argument(
        "--port-forward",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Port-forward the ArgoCD UI afterwards (prompts when omitted)",
    )
    setup.add_argument("--application", help="ArgoCD Application manifest to apply")
    setup.add_argument(
        "--verify-login",
        action="store_true",
        help="Log in through the ArgoCD API after port-forwarding",
    )
    setup.set_defaults(handler=Cli.setup_argocd)

    cleanup = subparsers.add_parser("cleanup", help="Remove demo resources from the cluster")
    cleanup.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    cleanup.add_argument("--cert-manager", action="store_true", help="Also remove cert-manager")
    cleanup.add_argument(
        "--ingress-nginx", action="store_true", help="Also remove the NGINX ingress controller"
    )
    cleanup.add_argument("--argocd", action="store_true", help="Also remove ArgoCD")
    cleanup.set_defaults(handler=Cli.cleanup)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Run the CLI; returns the process exit code."""
    args = build_parser().parse_args(argv)
    console = Console()

    try:
        settings = load_settings()
    except ValidationError as e:
        console.error(f"Invalid configuration: {e}")
        return EXIT_FAILURE

    overrides = {}
    if args.namespace:
        overrides["namespace"] = args.namespace
    if args.context:
        overrides["kube_context"] = args.context
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        mask_secrets=settings.security.mask_secrets,
    )
    set_correlation_id("")

    cli = Cli(settings, console)
    try:
        return args.handler(cli, args)
    except KeyboardInterrupt:
        console.line()
        console.info("Operation cancelled by user")
        return EXIT_OK
    except ClusterError as e:
        logger.info("Command failed", command=args.command, error=str(e))
        console.error(str(e))
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
