# ABOUTME: Background port-forward processes, their ownership and cancellation
# ABOUTME: OwnedProcessSet guarantees every spawned process is terminated exactly once

"""
Background process ownership and cooperative cancellation.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Port-forwarding means running `kubectl port-forward` for as long as the
operator wants access. Several of them may run at once. This module makes
sure none of them outlives the tool:

1. BackgroundProcess: one spawned subprocess plus a label for messages
2. OwnedProcessSet: every spawn registers here; terminate_all() stops
   them all, exactly once, no matter how many times it is called
3. CancellationToken: set by SIGINT/SIGTERM, checked by the readiness
   poll and by the final wait
4. spawn_port_forward(): start one forward and check it survived startup

=============================================================================
SHUTDOWN SEQUENCE
=============================================================================

    signal ──> token.cancel() ──> wait loop wakes up
                                      │
                                      v
                            processes.terminate_all()
                                      │
              ┌───────────────────────┼───────────────────────┐
              v                       v                       v
        SIGTERM group 1         SIGTERM group 2         SIGTERM group N
              │    (wait up to the grace period, in parallel) │
              v                       v                       v
        exited? done            still alive? SIGKILL     exited? done

Forwards are started in their own session (process group). The terminal's
Ctrl+C therefore reaches only this process, which then stops its children
itself; a forward never receives a second, uncoordinated signal.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import os
import signal
import socket
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from otel_access.utils.kubectl import CommandFailed, LocalBindRejected, PrerequisiteMissing

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = structlog.get_logger(__name__)

_BIND_MARKERS = ("address already in use", "unable to listen on any of the requested ports")

# Bytes of forward stderr kept for error messages
_STDERR_TAIL = 2048


@dataclass
class BackgroundProcess:
    """A spawned forwarding subprocess."""

    process: asyncio.subprocess.Process
    label: str
    command: list[str] = field(default_factory=list)
    stderr_tail: bytearray = field(default_factory=bytearray, repr=False)
    drain: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def start_drain(self) -> None:
        """Keep reading stderr so a chatty forward never blocks on a full pipe."""
        if self.process.stderr is not None and self.drain is None:
            self.drain = asyncio.ensure_future(_drain_stderr(self.process.stderr, self.stderr_tail))

    async def finish_drain(self, timeout: float = 1.0) -> str:
        """Wait for stderr to close after exit; returns the kept tail."""
        if self.drain is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self.drain), timeout=timeout)
            except TimeoutError:
                self.drain.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self.drain
        return self.stderr_tail.decode(errors="replace").strip()


async def _drain_stderr(stream: asyncio.StreamReader, tail: bytearray) -> None:
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            return
        tail.extend(chunk)
        del tail[:-_STDERR_TAIL]


class OwnedProcessSet:
    """
    The background processes one orchestrator owns.

    INVARIANT:
    ----------
    After terminate_all() returns, no registered process is running, and
    anything registered later is terminated on the spot.
    """

    def __init__(self, grace: float = 5.0) -> None:
        """
        Args:
            grace: Seconds to wait after SIGTERM before escalating to SIGKILL.
        """
        self._grace = grace
        self._processes: list[BackgroundProcess] = []
        self._shutting_down = False
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._processes)

    def __iter__(self):
        return iter(list(self._processes))

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def live_count(self) -> int:
        """Number of registered processes that have not exited."""
        return sum(1 for p in self._processes if p.running)

    async def register(self, handle: BackgroundProcess) -> None:
        """Take ownership of a process; terminated immediately if shutdown already ran."""
        if self._shutting_down:
            logger.warning("Process registered after shutdown", label=handle.label, pid=handle.pid)
            await self._stop(handle)
            return
        self._processes.append(handle)
        logger.debug("Registered background process", label=handle.label, pid=handle.pid)

    async def wait_any_exit(self) -> BackgroundProcess | None:
        """Block until one owned process exits; None if none is running."""
        running = [p for p in self._processes if p.running]
        if not running:
            return None
        waiters = {asyncio.ensure_future(p.process.wait()): p for p in running}
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                if not waiter.done():
                    waiter.cancel()
        return waiters[next(iter(done))]

    async def terminate_all(self) -> int:
        """
        Stop every owned process, once.

        Subsequent calls are no-ops. Never waits longer than the grace
        period plus a short reap after SIGKILL.

        Returns:
            Number of processes that were still running.
        """
        async with self._lock:
            if self._shutting_down:
                return 0
            self._shutting_down = True

        running = [p for p in self._processes if p.running]
        if running:
            logger.info("Stopping background processes", count=len(running))
            await asyncio.gather(*(self._stop(p) for p in running))
        return len(running)

    async def _stop(self, handle: BackgroundProcess) -> None:
        if not handle.running:
            return
        _signal_group(handle.process, signal.SIGTERM)
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=self._grace)
        except TimeoutError:
            logger.warning("Process ignored SIGTERM, killing", label=handle.label, pid=handle.pid)
            _signal_group(handle.process, signal.SIGKILL)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(handle.process.wait(), timeout=1.0)
        await handle.finish_drain()
        logger.debug("Stopped background process", label=handle.label, pid=handle.pid)


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    """Signal the process group of a session leader, falling back to the process."""
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            process.send_signal(sig)


# =============================================================================
# CANCELLATION
# =============================================================================


class CancellationToken:
    """Cooperative cancellation flag shared by the poll loop and the final wait."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Set the token; only the first reason is kept."""
        if self._event.is_set():
            return
        self.reason = reason
        logger.info("Cancellation requested", reason=reason)
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep unless cancelled first.

        Returns:
            True if the token was cancelled (before or during the sleep).
        """
        if self.cancelled:
            return True
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=max(seconds, 0))
        return self.cancelled


def install_signal_handlers(
    token: CancellationToken,
    signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> None:
    """Route interrupt/terminate signals to the token on the running loop."""
    loop = asyncio.get_running_loop()
    for sig in signals:
        loop.add_signal_handler(sig, token.cancel, sig.name)


def remove_signal_handlers(
    signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> None:
    loop = asyncio.get_running_loop()
    for sig in signals:
        loop.remove_signal_handler(sig)


# =============================================================================
# PORT-FORWARD SPAWN
# =============================================================================


def ensure_local_port_free(port: int, host: str = "127.0.0.1") -> None:
    """
    Fail early if a local port is already bound.

    kubectl would otherwise start, fail to listen, and exit with a message
    that only shows up after the startup grace period.

    Raises:
        LocalBindRejected: If the port is in use.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError as e:
            if e.errno in (errno.EADDRINUSE, errno.EACCES):
                raise LocalBindRejected(
                    f"Local port {port} is already in use",
                    details=str(e),
                ) from e
            raise


async def spawn_port_forward(
    command: list[str],
    label: str,
    local_port: int,
    processes: OwnedProcessSet,
    startup_grace: float = 1.0,
) -> BackgroundProcess:
    """
    Start one `kubectl port-forward` and hand it to the process set.

    The process counts as started if it is still running after
    startup_grace seconds; there is no liveness check beyond that.

    Raises:
        LocalBindRejected: Local port busy, before or after spawning.
        PrerequisiteMissing: kubectl binary not found.
        CommandFailed: kubectl exited during startup for another reason.
    """
    ensure_local_port_free(local_port)

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except FileNotFoundError as e:
        raise PrerequisiteMissing(
            f"{command[0]} is not installed. Please install kubectl first.",
            command=command,
        ) from e

    handle = BackgroundProcess(process=process, label=label, command=command)
    handle.start_drain()
    await processes.register(handle)

    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(process.wait(), timeout=startup_grace)

    if process.returncode is not None:
        message = await handle.finish_drain()
        logger.warning("Port-forward exited during startup", label=label, stderr=message[:300])
        if any(marker in message.lower() for marker in _BIND_MARKERS):
            raise LocalBindRejected(
                f"Local port {local_port} is already in use", details=message[:300], command=command
            )
        raise CommandFailed(
            f"Port-forward for {label} exited (code {process.returncode})",
            details=message[:300] or None,
            command=command,
            returncode=process.returncode,
        )

    logger.info("Port-forward started", label=label, pid=process.pid, local_port=local_port)
    return handle
