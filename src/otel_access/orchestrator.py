# ABOUTME: Exposure Orchestrator exposing cluster Services to a local operator
# ABOUTME: Implements port-forward, LoadBalancer, NodePort, forward-all and show-commands strategies

"""
Exposure Orchestrator.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Given a Service in the cluster and one strategy, make the Service reachable
and report how:

    Strategy       Cluster change              Readiness
    ------------   -------------------------   ---------------------------
    port-forward   none                        forward process survived
    load-balancer  spec.type=LoadBalancer      ingress IP/hostname appears
    node-port      spec.type=NodePort          immediate
    forward-all    none                        none (one forward per service)
    show-commands  none                        n/a

The LoadBalancer and NodePort strategies change the live Service object.
That change outlives this tool and is never reverted by it.

=============================================================================
ORDERING
=============================================================================

Within one expose() call everything is sequential:

    exists? ──> safety check ──> patch ──> poll ──> report

A missing Service stops the call before anything is changed. Background
forwards are owned by the orchestrator's OwnedProcessSet and stopped by
shutdown(), which runs once however it is reached.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import shlex
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from otel_access.processes import (
    CancellationToken,
    OwnedProcessSet,
    spawn_port_forward,
)
from otel_access.utils.kubectl import ClusterError, NotFound, PatchRejected

if TYPE_CHECKING:
    from otel_access.config import AccessSettings, ServiceEntry
    from otel_access.processes import BackgroundProcess
    from otel_access.utils.kubectl import KubectlClient
    from otel_access.utils.logging import AuditLogger
    from otel_access.utils.safety import SafetyGuard

logger = structlog.get_logger(__name__)


# =============================================================================
# STRATEGY SELECTION
# =============================================================================


class ExposureStrategy(str, Enum):
    """How a Service is made reachable."""

    PORT_FORWARD = "port-forward"
    LOAD_BALANCER = "load-balancer"
    NODE_PORT = "node-port"
    FORWARD_ALL = "forward-all"
    SHOW_COMMANDS = "show-commands"

    @property
    def mutates_cluster(self) -> bool:
        return self in (ExposureStrategy.LOAD_BALANCER, ExposureStrategy.NODE_PORT)

    @property
    def spawns_processes(self) -> bool:
        return self in (ExposureStrategy.PORT_FORWARD, ExposureStrategy.FORWARD_ALL)


# Menu numbering shown to the operator
MENU_CHOICES: dict[str, ExposureStrategy] = {
    "1": ExposureStrategy.PORT_FORWARD,
    "2": ExposureStrategy.LOAD_BALANCER,
    "3": ExposureStrategy.NODE_PORT,
    "4": ExposureStrategy.FORWARD_ALL,
    "5": ExposureStrategy.SHOW_COMMANDS,
}


@dataclass(frozen=True)
class InvalidChoice:
    """Menu input that does not name a strategy."""

    value: str

    def format_message(self) -> str:
        return f"Invalid choice '{self.value}'. Enter a number between 1 and {len(MENU_CHOICES)}."


def select_strategy(choice: str) -> ExposureStrategy | InvalidChoice:
    """
    Parse menu input.

    Accepts the menu number or the strategy's name ("node-port").
    """
    value = choice.strip()
    if value in MENU_CHOICES:
        return MENU_CHOICES[value]
    try:
        return ExposureStrategy(value.lower())
    except ValueError:
        return InvalidChoice(value)


# =============================================================================
# DATA MODEL
# =============================================================================


@dataclass(frozen=True)
class ExposureTarget:
    """What is being exposed."""

    service: str
    namespace: str
    remote_port: int
    local_port: int | None = None
    label: str | None = None

    @classmethod
    def from_entry(cls, entry: ServiceEntry, namespace: str) -> ExposureTarget:
        return cls(
            service=entry.service,
            namespace=namespace,
            remote_port=entry.remote_port,
            local_port=entry.local_port,
            label=entry.display_name,
        )

    @property
    def bind_port(self) -> int:
        """Local port used for forwarding."""
        return self.local_port if self.local_port is not None else self.remote_port

    @property
    def scheme(self) -> str:
        return "https" if self.remote_port in (443, 8443) else "http"

    @property
    def name(self) -> str:
        return self.label or self.service

    @property
    def ref(self) -> str:
        return f"{self.namespace}/{self.service}"


@dataclass
class ExposureResult:
    """
    Outcome of one expose() call.

    FIELDS:
    -------
    - urls: display name -> URL, in the order they should be shown
    - pending: True when a LoadBalancer address did not appear in time
    - manual_command: what the operator can run to follow up
    - commands: (title, command) reference lines (show-commands strategy,
      and manual follow-ups for services the strategy cannot reach)
    - failures: display name -> error for services that could not be
      exposed while others could
    """

    strategy: ExposureStrategy
    target: ExposureTarget
    urls: dict[str, str] = field(default_factory=dict)
    pending: bool = False
    manual_command: str | None = None
    commands: list[tuple[str, str]] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    notes: list[str] = field(default_factory=list)
    base_url: str | None = None

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class ReadinessPoll:
    """
    Fixed-interval sampling until a value appears or the timeout elapses.

    Terminates within timeout + interval of starting: each sample may run
    at most until the deadline plus one interval (a sample that overruns
    counts as no value), the last sleep is clipped to the remaining budget,
    and one final sample is taken at the deadline.
    """

    timeout: float
    interval: float
    elapsed: float = 0.0
    samples: int = 0

    async def run(
        self,
        sample: Callable[[], Awaitable[str | None]],
        token: CancellationToken | None = None,
        on_tick: Callable[[ReadinessPoll], None] | None = None,
    ) -> str | None:
        """
        Sample until a non-empty value is returned.

        Returns:
            The first non-empty sample, or None on timeout or cancellation.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + self.timeout
        while True:
            budget = max(deadline - loop.time(), 0) + self.interval
            try:
                value = await asyncio.wait_for(sample(), timeout=budget)
            except TimeoutError:
                logger.debug("Readiness sample timed out", budget=round(budget, 2))
                value = None
            self.samples += 1
            self.elapsed = loop.time() - started
            if value:
                return value
            remaining = self.timeout - self.elapsed
            if remaining <= 0:
                return None
            if on_tick is not None:
                on_tick(self)
            delay = min(self.interval, remaining)
            if token is not None:
                if await token.sleep(delay):
                    self.elapsed = loop.time() - started
                    return None
            else:
                await asyncio.sleep(delay)


# =============================================================================
# ORCHESTRATOR
# =============================================================================


PortForwardSpawner = Callable[..., "Awaitable[BackgroundProcess]"]


class ExposureOrchestrator:
    """
    Exposes Services with one strategy per call and owns what it spawns.

    LIFECYCLE:
    ----------
    1. orchestrator = ExposureOrchestrator(client, settings, ...)
    2. result = await orchestrator.expose(target, strategy)
    3. forwarding strategies: await orchestrator.wait_until_cancelled()
    4. await orchestrator.shutdown()   (idempotent, also run by step 3)
    """

    def __init__(
        self,
        client: KubectlClient,
        settings: AccessSettings,
        safety: SafetyGuard | None = None,
        audit: AuditLogger | None = None,
        processes: OwnedProcessSet | None = None,
        token: CancellationToken | None = None,
        spawner: PortForwardSpawner = spawn_port_forward,
        on_poll: Callable[[ReadinessPoll], None] | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._safety = safety
        self._audit = audit
        self._processes = processes or OwnedProcessSet(grace=settings.shutdown_grace)
        self._token = token or CancellationToken()
        self._spawn = spawner
        self._on_poll = on_poll

    @property
    def processes(self) -> OwnedProcessSet:
        return self._processes

    @property
    def token(self) -> CancellationToken:
        return self._token

    def primary_target(self) -> ExposureTarget:
        return ExposureTarget.from_entry(self._settings.primary, self._settings.namespace)

    def target_for(self, key: str) -> ExposureTarget:
        return ExposureTarget.from_entry(self._settings.service(key), self._settings.namespace)

    async def check_services(self) -> dict[str, bool]:
        """Presence of every catalog Service, keyed by catalog key."""
        status: dict[str, bool] = {}
        for entry in self._settings.catalog:
            status[entry.key] = await self._client.exists(
                "service", entry.service, self._settings.namespace
            )
        logger.info("Checked observability stack", status=status)
        return status

    async def expose(self, target: ExposureTarget, strategy: ExposureStrategy) -> ExposureResult:
        """
        Expose a Service.

        Raises:
            NotFound: The Service does not exist (nothing was changed).
            PatchRejected: The patch was refused (cluster or read-only mode).
            LocalBindRejected: A local port for the primary forward is busy.
        """
        log = logger.bind(service=target.service, namespace=target.namespace, strategy=strategy.value)

        if not await self._client.exists("service", target.service, target.namespace):
            log.warning("Service not found")
            raise NotFound(
                f"Service '{target.service}' not found in namespace '{target.namespace}'",
            )

        log.info("Exposing service")
        if strategy is ExposureStrategy.PORT_FORWARD:
            return await self._port_forward(target)
        if strategy is ExposureStrategy.LOAD_BALANCER:
            return await self._load_balancer(target)
        if strategy is ExposureStrategy.NODE_PORT:
            return await self._node_port(target)
        if strategy is ExposureStrategy.FORWARD_ALL:
            return await self._forward_all(target)
        return self._show_commands(target)

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    async def _port_forward(self, target: ExposureTarget) -> ExposureResult:
        result = ExposureResult(strategy=ExposureStrategy.PORT_FORWARD, target=target)
        await self._spawn_target(target)

        base = f"{target.scheme}://localhost:{target.bind_port}"
        result.base_url = base
        result.urls.update(self._entry_point_urls(target, base))

        if self._is_primary(target):
            for key in self._settings.auxiliary_services:
                if self._token.cancelled:
                    break
                entry = self._settings.service(key)
                aux = ExposureTarget.from_entry(entry, self._settings.namespace)
                if not await self._client.exists("service", aux.service, aux.namespace):
                    result.notes.append(f"{entry.display_name} not found, not forwarded")
                    continue
                try:
                    await self._spawn_target(aux)
                except ClusterError as e:
                    logger.warning("Auxiliary forward failed", service=aux.service, error=str(e))
                    result.failures[entry.display_name] = str(e)
                    continue
                result.urls[entry.display_name] = f"{aux.scheme}://localhost:{aux.bind_port}"
                if entry.key == "loadgenerator":
                    result.notes.append(f"Load Generator: set Host to {base}")
        return result

    async def _load_balancer(self, target: ExposureTarget) -> ExposureResult:
        result = ExposureResult(strategy=ExposureStrategy.LOAD_BALANCER, target=target)
        await self._ensure_service_type(target, "LoadBalancer")

        poll = ReadinessPoll(timeout=self._settings.lb_timeout, interval=self._settings.lb_interval)
        address = await poll.run(
            lambda: self.load_balancer_address(target), self._token, self._on_poll
        )
        logger.info(
            "LoadBalancer poll finished",
            service=target.service,
            address=address,
            elapsed=round(poll.elapsed, 1),
            samples=poll.samples,
        )

        if not address:
            result.pending = True
            result.manual_command = shlex.join(
                self._client.command("get", "svc", target.service, "-n", target.namespace)
            )
            result.notes.append("External IP not yet assigned. Check status with the command below.")
            return result

        base = self._url(target.scheme, address, target.remote_port)
        result.base_url = base
        result.urls.update(self._entry_point_urls(target, base))
        result.commands.extend(self._unrouted_commands(target))
        result.notes.append(
            f"Service {target.ref} stays type LoadBalancer after this tool exits."
        )
        return result

    async def _node_port(self, target: ExposureTarget) -> ExposureResult:
        result = ExposureResult(strategy=ExposureStrategy.NODE_PORT, target=target)
        await self._ensure_service_type(target, "NodePort")

        service = await self._client.get_json("service", target.service, target.namespace)
        node_port = _node_port_for(service, target.remote_port)
        address = await self._node_address()

        if node_port is None or address is None:
            result.pending = True
            result.manual_command = shlex.join(
                self._client.command("get", "svc", target.service, "-n", target.namespace)
            )
            result.notes.append("Node port or node address not available yet.")
            return result

        base = f"{target.scheme}://{address}:{node_port}"
        result.base_url = base
        result.urls.update(self._entry_point_urls(target, base))
        result.commands.extend(self._unrouted_commands(target))
        result.notes.append("If the external IP is not accessible, use an internal IP or node hostname.")
        result.notes.append(f"Service {target.ref} stays type NodePort after this tool exits.")
        return result

    async def _forward_all(self, target: ExposureTarget) -> ExposureResult:
        result = ExposureResult(strategy=ExposureStrategy.FORWARD_ALL, target=target)
        for key in self._settings.forward_all_services:
            entry = self._settings.service(key)
            svc = ExposureTarget.from_entry(entry, self._settings.namespace)
            if not await self._client.exists("service", svc.service, svc.namespace):
                result.notes.append(f"{entry.display_name} not found, skipped")
                continue
            try:
                await self._spawn_target(svc)
            except ClusterError as e:
                logger.warning("Forward failed", service=svc.service, error=str(e))
                result.failures[entry.display_name] = str(e)
                continue
            result.urls[entry.display_name] = f"{svc.scheme}://localhost:{svc.bind_port}"
        return result

    def _show_commands(self, target: ExposureTarget) -> ExposureResult:
        result = ExposureResult(strategy=ExposureStrategy.SHOW_COMMANDS, target=target)
        cmd = self._client.command
        result.commands.append(
            (
                f"Port Forward ({target.name})",
                shlex.join(
                    self._client.port_forward_command(
                        target.service, target.namespace, target.bind_port, target.remote_port
                    )
                ),
            )
        )
        for service_type in ("LoadBalancer", "NodePort"):
            result.commands.append(
                (
                    service_type,
                    shlex.join(
                        cmd(
                            "patch",
                            "svc",
                            target.service,
                            "-n",
                            target.namespace,
                            "-p",
                            json.dumps({"spec": {"type": service_type}}),
                        )
                    ),
                )
            )
        for key in self._settings.forward_all_services:
            entry = self._settings.service(key)
            if entry.service == target.service:
                continue
            result.commands.append(
                (
                    f"{entry.display_name} (port {entry.local_port})",
                    shlex.join(
                        self._client.port_forward_command(
                            entry.service, self._settings.namespace, entry.local_port, entry.remote_port
                        )
                    ),
                )
            )
        base = f"{target.scheme}://localhost:{target.bind_port}"
        result.base_url = base
        result.urls.update(self._entry_point_urls(target, base))
        return result

    # -------------------------------------------------------------------------
    # Waiting and shutdown
    # -------------------------------------------------------------------------

    async def wait_until_cancelled(self) -> str:
        """
        Block until cancelled or until every owned forward has exited, then shut down.

        Returns:
            Why the wait ended.
        """
        reason = "all forwards exited"
        try:
            while not self._token.cancelled:
                if self._processes.live_count == 0:
                    break
                cancelled = asyncio.ensure_future(self._token.wait())
                exited = asyncio.ensure_future(self._processes.wait_any_exit())
                done, pending = await asyncio.wait(
                    {cancelled, exited}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in pending:
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
                if exited in done and exited.result() is not None:
                    handle = exited.result()
                    logger.warning(
                        "Port-forward exited",
                        label=handle.label,
                        returncode=handle.process.returncode,
                    )
            if self._token.cancelled:
                reason = self._token.reason or "cancelled"
        finally:
            await self.shutdown()
        return reason

    async def shutdown(self) -> int:
        """Terminate every owned process (once); returns how many were still running."""
        return await self._processes.terminate_all()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _spawn_target(self, target: ExposureTarget) -> BackgroundProcess:
        command = self._client.port_forward_command(
            target.service, target.namespace, target.bind_port, target.remote_port
        )
        return await self._spawn(
            command,
            target.name,
            target.bind_port,
            self._processes,
            startup_grace=self._settings.spawn_grace,
        )

    async def _ensure_service_type(self, target: ExposureTarget, service_type: str) -> None:
        """Patch spec.type unless it already has the wanted value."""
        action = "patch_service_type"
        current = await self._client.get("service", target.service, target.namespace, "{.spec.type}")
        if current == service_type:
            logger.info("Service already has requested type", service=target.service, type=current)
            if self._audit:
                self._audit.log_skipped(action, target.ref, f"already {service_type}")
            return

        if self._safety:
            blocked = self._safety.check_write_operation(action, target.ref)
            if blocked:
                if self._audit:
                    self._audit.log_blocked(action, target.ref, blocked.reason)
                raise PatchRejected(blocked.format_message())

        try:
            await self._client.patch(
                "service", target.service, target.namespace, {"spec": {"type": service_type}}
            )
        except ClusterError as e:
            if self._audit:
                self._audit.log_error(action, target.ref, str(e))
            raise
        if self._audit:
            self._audit.log_mutation(action, target.ref, {"from": current, "type": service_type})

    async def load_balancer_address(self, target: ExposureTarget) -> str | None:
        ip = await self._client.get(
            "service", target.service, target.namespace, "{.status.loadBalancer.ingress[0].ip}"
        )
        if ip:
            return ip
        hostname = await self._client.get(
            "service", target.service, target.namespace, "{.status.loadBalancer.ingress[0].hostname}"
        )
        return hostname or None

    async def _node_address(self) -> str | None:
        """First node's ExternalIP, falling back to its InternalIP."""
        nodes = await self._client.get_json("nodes")
        items = nodes.get("items", [])
        if not items:
            return None
        addresses = items[0].get("status", {}).get("addresses", [])
        for address_type in ("ExternalIP", "InternalIP"):
            for address in addresses:
                if address.get("type") == address_type and address.get("address"):
                    return address["address"]
        return None

    def _is_primary(self, target: ExposureTarget) -> bool:
        primary = self._settings.primary
        return target.service == primary.service and target.namespace == self._settings.namespace

    def _entry_point_urls(self, target: ExposureTarget, base: str) -> dict[str, str]:
        """URLs reachable through one base URL (all proxy routes for the frontend proxy)."""
        if not self._is_primary(target):
            return {target.name: base}
        urls = {"Frontend Demo": base}
        for entry in self._settings.catalog:
            if entry.proxy_path:
                urls[entry.display_name] = f"{base}{entry.proxy_path}"
        for name, path in self._settings.extra_routes.items():
            urls[name] = f"{base}{path}"
        return urls

    def _unrouted_commands(self, target: ExposureTarget) -> list[tuple[str, str]]:
        """Port-forward commands for catalog services the frontend proxy does not route."""
        if not self._is_primary(target):
            return []
        commands = []
        for entry in self._settings.catalog:
            if entry.proxy_path or entry.service == target.service:
                continue
            commands.append(
                (
                    f"{entry.display_name} (use port-forward)",
                    shlex.join(
                        self._client.port_forward_command(
                            entry.service, self._settings.namespace, entry.local_port, entry.remote_port
                        )
                    ),
                )
            )
        return commands

    @staticmethod
    def _url(scheme: str, host: str, port: int) -> str:
        default = 443 if scheme == "https" else 80
        if port == default:
            return f"{scheme}://{host}"
        return f"{scheme}://{host}:{port}"


def _node_port_for(service: dict, remote_port: int) -> int | None:
    """nodePort of the Service port matching remote_port, else of the first port."""
    ports = service.get("spec", {}).get("ports", [])
    if not ports:
        return None
    chosen = next((p for p in ports if p.get("port") == remote_port), ports[0])
    node_port = chosen.get("nodePort")
    return int(node_port) if node_port else None
