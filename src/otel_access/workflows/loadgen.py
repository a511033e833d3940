# ABOUTME: Load generator access workflow
# ABOUTME: Forwards the Locust UI and works out which host Locust should target

"""Load generator (Locust) access with the correct target host."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from otel_access.orchestrator import ExposureStrategy
from otel_access.utils.kubectl import ClusterError

if TYPE_CHECKING:
    from otel_access.config import AccessSettings
    from otel_access.orchestrator import ExposureOrchestrator, ExposureResult

logger = structlog.get_logger(__name__)

NOT_ASSIGNED = "<EXTERNAL_LB_NOT_ASSIGNED>"


@dataclass
class LoadgenAccess:
    """Where the Locust UI is and which host it should send load to."""

    ui_url: str
    host_url: str
    result: ExposureResult

    @property
    def host_assigned(self) -> bool:
        return self.host_url != NOT_ASSIGNED


class LoadgenWorkflow:
    """Port-forwards the load generator next to the frontend proxy's external address."""

    def __init__(self, orchestrator: ExposureOrchestrator, settings: AccessSettings) -> None:
        self._orchestrator = orchestrator
        self._settings = settings

    async def frontend_host(self) -> str:
        """
        External frontend proxy URL for Locust's Host field.

        Reads the LoadBalancer ingress once (IP, then hostname) without
        patching anything. Returns NOT_ASSIGNED when there is none.
        """
        target = self._orchestrator.primary_target()
        try:
            address = await self._orchestrator.load_balancer_address(target)
        except ClusterError as e:
            logger.warning("Could not read frontend proxy address", error=str(e))
            address = None
        if not address:
            return NOT_ASSIGNED
        return f"{target.scheme}://{address}:{target.remote_port}"

    async def start(self) -> LoadgenAccess:
        """
        Start the load generator forward.

        Raises:
            NotFound: The load generator Service does not exist.
            LocalBindRejected: The local port is busy.
        """
        host = await self.frontend_host()
        target = self._orchestrator.target_for("loadgenerator")
        result = await self._orchestrator.expose(target, ExposureStrategy.PORT_FORWARD)
        return LoadgenAccess(
            ui_url=result.base_url or f"http://localhost:{target.bind_port}",
            host_url=host,
            result=result,
        )
