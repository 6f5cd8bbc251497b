"""Host port allocation for sandbox containers.

A port is handed out only if it is free on both tiers: no running sandbox
container publishes it according to the engine, and nothing else on the host
is bound to it. Reservations are serialized so concurrent launches never
receive the same port.
"""

import asyncio
import errno
import socket
from collections.abc import Callable

import structlog

from config import settings
from sandbox.engine import DockerEngine
from sandbox.errors import ResourceExhaustionError, SandboxError

logger = structlog.get_logger(__name__)

_MAX_PORT = 65535

PortProbe = Callable[[int], bool]


def is_host_port_free(port: int, host: str | None = None) -> bool:
    """Return False only when the port is definitely held on the host.

    Binding a socket is the probe. ``EADDRINUSE`` and ``EACCES`` mean the port
    is taken; any other socket error is inconclusive and the port is assumed
    free, leaving the engine to reject it at launch.
    """
    bind_host = host if host is not None else settings.port_probe_host
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((bind_host, port))
    except OSError as e:
        if e.errno in (errno.EADDRINUSE, errno.EACCES):
            return False
        logger.debug("port_probe_inconclusive", port=port, error=str(e))
    return True


class PortAllocator:
    """Allocates host ports for sandboxes from a fixed scan window.

    Attributes:
        engine: Engine used to list ports bound by running sandboxes.
        base_port: First port of the default scan window.
        window: Number of ports scanned from the start port.
        project_label: Label value identifying sandbox containers.
    """

    def __init__(
        self,
        engine: DockerEngine,
        base_port: int | None = None,
        window: int | None = None,
        project_label: str | None = None,
        probe: PortProbe | None = None,
    ) -> None:
        self.engine = engine
        self.base_port = base_port or settings.sandbox_base_port
        self.window = window or settings.port_scan_window
        self.project_label = project_label or settings.project_label
        self._probe = probe or is_host_port_free
        self._reserved: set[int] = set()
        self._lock = asyncio.Lock()

    @property
    def reserved(self) -> frozenset[int]:
        """Ports currently reserved by this process."""
        return frozenset(self._reserved)

    def is_reserved(self, port: int) -> bool:
        return port in self._reserved

    async def reserve(self, preferred_start: int | None = None) -> int:
        """Reserve the lowest free port in the scan window.

        The listing, the scan, and the insertion into the reserved set all
        happen under one lock.

        Args:
            preferred_start: Optional start of the scan window; defaults to
                the configured base port.

        Returns:
            The reserved host port.

        Raises:
            ValueError: If ``preferred_start`` is not a valid port.
            ResourceExhaustionError: If every port in the window is taken.
        """
        start = preferred_start if preferred_start is not None else self.base_port
        if start < 1 or start > _MAX_PORT:
            raise ValueError(f"Invalid start port: {start}")
        end = min(start + self.window, _MAX_PORT + 1)

        async with self._lock:
            claimed = self._reserved | await self._engine_bound_ports()

            for port in range(start, end):
                if port in claimed:
                    continue
                if not await self._probe_port(port):
                    logger.debug("port_held_externally", port=port)
                    continue
                self._reserved.add(port)
                logger.info(
                    "port_reserved",
                    port=port,
                    reserved_count=len(self._reserved),
                )
                return port

        logger.error("port_window_exhausted", start=start, end=end - 1)
        raise ResourceExhaustionError(
            f"No available ports in range {start}-{end - 1}"
        )

    def release(self, port: int | None) -> None:
        """Release a reserved port. Unknown ports and None are ignored.

        A release never yields to the event loop, so it cannot interleave
        with the critical section of ``reserve``.
        """
        if port is None or port not in self._reserved:
            return
        self._reserved.discard(port)
        logger.info("port_released", port=port, reserved_count=len(self._reserved))

    async def _engine_bound_ports(self) -> set[int]:
        """Host ports published by running sandbox containers.

        A failed listing degrades to an empty set; the host probe still guards
        against handing out a port that is actually bound.
        """
        try:
            rows = await self.engine.list_containers(f"project={self.project_label}")
        except SandboxError as e:
            logger.warning("port_scan_listing_failed", error=str(e))
            return set()

        ports: set[int] = set()
        for row in rows:
            if row.state != "running":
                continue
            if row.bindings:
                ports.update(binding.host_port for binding in row.bindings)
            elif row.labeled_port is not None:
                ports.add(row.labeled_port)
        return ports

    async def _probe_port(self, port: int) -> bool:
        try:
            return await asyncio.get_running_loop().run_in_executor(
                None, self._probe, port
            )
        except Exception as e:
            logger.warning("port_probe_failed", port=port, error=str(e))
            return True
