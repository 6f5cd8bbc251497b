"""Sandbox container lifecycle: launch, lookup, listing and teardown.

The Docker engine is the only registry of sandboxes. Each container carries
labels recording its project, assigned port, sandbox id and host source
directory, so every query here is answered from the engine and survives a
restart of this process.
"""

import asyncio
import contextlib
import os
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

import structlog

from config import settings
from models.schemas import SandboxStatus
from sandbox.engine import ContainerRow, DockerEngine
from sandbox.errors import (
    EngineUnavailableError,
    LaunchFailureError,
    SandboxError,
    SandboxNotFoundError,
    TeardownFailureError,
)
from sandbox.ports import PortAllocator
from sandbox.sync import normalize_file_map, remove_tree, write_file_map

logger = structlog.get_logger(__name__)

# Label keys put on every sandbox container
LABEL_PROJECT = "project"
LABEL_ASSIGNED_PORT = "assignedPort"
LABEL_SANDBOX_ID = "sandboxId"
LABEL_SOURCE_DIR = "sourceDir"
LABEL_CREATED_AT = "createdAt"


class LifecycleState(StrEnum):
    """In-flight lifecycle stage of a sandbox in this process."""

    BUILDING = "building"
    STARTING = "starting"
    STOPPING = "stopping"


@dataclass
class LaunchResult:
    """A sandbox container that was started successfully."""

    instance_id: str
    port: int
    url: str


@dataclass
class SandboxSummary:
    """A sandbox as reported by the engine."""

    id: str
    name: str
    status: SandboxStatus
    status_text: str
    port: int | None = None
    url: str | None = None
    sandbox_id: str | None = None
    source_dir: str | None = None
    created_at: float | None = None


class SandboxRuntimeManager:
    """Starts, finds, lists and tears down sandbox containers.

    Attributes:
        engine: Engine the containers run on.
        allocator: Host port allocator shared by all launches.
    """

    def __init__(
        self,
        engine: DockerEngine,
        allocator: PortAllocator,
        project_label: str | None = None,
        image_prefix: str | None = None,
        source_root: str | None = None,
        app_port: int | None = None,
        staging_root: str | None = None,
        public_host: str | None = None,
    ) -> None:
        self.engine = engine
        self.allocator = allocator
        self.project_label = project_label or settings.project_label
        self.image_prefix = image_prefix or settings.image_prefix
        self.source_root = source_root or settings.source_root
        self.app_port = app_port or settings.app_internal_port
        self.staging_root = staging_root or settings.staging_root
        self.public_host = public_host or settings.public_host

        self._states: dict[str, LifecycleState] = {}
        # Containers that were stopped but could not be removed, keyed by id,
        # and orphans of failed launches, keyed by name. Values are their
        # host source directories.
        self._stale: dict[str, str | None] = {}

    @property
    def label_filter(self) -> str:
        return f"{LABEL_PROJECT}={self.project_label}"

    def container_name(self, sandbox_id: str) -> str:
        return f"{self.image_prefix}-{sandbox_id}"

    def preview_url(self, port: int) -> str:
        return f"http://{self.public_host}:{port}"

    def staging_dir(self, sandbox_id: str) -> str:
        return os.path.join(self.staging_root, f"container-files-{sandbox_id}")

    def state_of(self, sandbox_id: str) -> LifecycleState | None:
        """In-flight stage of a sandbox, or None when nothing is in progress."""
        return self._states.get(sandbox_id)

    def is_stale(self, container_id: str, name: str | None = None) -> bool:
        return container_id in self._stale or (name is not None and name in self._stale)

    @contextlib.contextmanager
    def launching(self, sandbox_id: str) -> Iterator[None]:
        """Mark a sandbox as building for the duration of a launch.

        Raises:
            LaunchFailureError: If a launch for this sandbox is already in flight.
        """
        if sandbox_id in self._states:
            raise LaunchFailureError(
                f"Sandbox '{sandbox_id}' is already {self._states[sandbox_id]}"
            )
        self._states[sandbox_id] = LifecycleState.BUILDING
        try:
            yield
        finally:
            self._states.pop(sandbox_id, None)

    # -- launch ---------------------------------------------------------------

    async def run(
        self, image_ref: str, sandbox_id: str, file_map: Mapping[str, str]
    ) -> LaunchResult:
        """Stage the initial files, reserve a port and start the container.

        On failure the reserved port is released and the staging directory
        removed before the error propagates. If the engine stopped answering
        mid-run, a container it may still have created is removed, or left
        for ``reap_stale`` when that fails too.

        Raises:
            ValueError: If a path in ``file_map`` is invalid.
            ResourceExhaustionError: If no host port is available.
            LaunchFailureError: If staging or the engine run fails, a
                container with this sandbox's name already exists, or a
                launch of this sandbox is already starting.
        """
        current = self._states.get(sandbox_id)
        if current in (LifecycleState.STARTING, LifecycleState.STOPPING):
            raise LaunchFailureError(f"Sandbox '{sandbox_id}' is already {current}")

        files = normalize_file_map(file_map)
        staging_dir = self.staging_dir(sandbox_id)
        name = self.container_name(sandbox_id)

        self._states[sandbox_id] = LifecycleState.STARTING
        try:
            # The staging directory of an existing container is its live mount
            if await self._exists(name):
                raise LaunchFailureError(f"Container {name} already exists")

            port = await self.allocator.reserve()
            try:
                await asyncio.get_running_loop().run_in_executor(
                    None, write_file_map, staging_dir, files
                )
                instance_id = await self.engine.run(
                    image_ref,
                    name=name,
                    ports={self.app_port: port},
                    volumes={staging_dir: self.source_root},
                    labels={
                        LABEL_PROJECT: self.project_label,
                        LABEL_ASSIGNED_PORT: str(port),
                        LABEL_SANDBOX_ID: sandbox_id,
                        LABEL_SOURCE_DIR: staging_dir,
                        LABEL_CREATED_AT: datetime.now(UTC).isoformat(),
                    },
                )
            except (SandboxError, OSError) as e:
                self._rollback_launch(port, staging_dir)
                logger.error(
                    "sandbox_launch_failed",
                    sandbox_id=sandbox_id,
                    port=port,
                    error=str(e),
                )
                if isinstance(e, EngineUnavailableError):
                    await self._discard_orphan(name, staging_dir)
                raise LaunchFailureError(f"Failed to run container {name}: {e}") from e
            except asyncio.CancelledError:
                self._rollback_launch(port, staging_dir)
                self._stale[name] = staging_dir
                raise
        finally:
            self._states.pop(sandbox_id, None)

        self._stale.pop(name, None)
        url = self.preview_url(port)
        logger.info(
            "sandbox_started",
            sandbox_id=sandbox_id,
            container_id=instance_id[:12],
            port=port,
            url=url,
        )
        return LaunchResult(instance_id=instance_id, port=port, url=url)

    def _rollback_launch(self, port: int, staging_dir: str) -> None:
        self.allocator.release(port)
        remove_tree(staging_dir)

    async def _exists(self, ref: str) -> bool:
        try:
            await self.engine.inspect(ref)
        except SandboxNotFoundError:
            return False
        return True

    async def _discard_orphan(self, name: str, staging_dir: str) -> None:
        """Remove a container an unanswered run call may still have created.

        The executor thread behind a timed-out engine call keeps running, so
        the container can appear after the failure was reported. When it
        cannot be removed now, its name is kept for ``reap_stale``.
        """
        try:
            await self.engine.remove(name)
        except SandboxNotFoundError:
            pass
        except SandboxError as e:
            logger.warning("orphan_sandbox_remove_failed", name=name, error=str(e))
        else:
            logger.warning("orphan_sandbox_removed", name=name)
            remove_tree(staging_dir)
            return
        self._stale[name] = staging_dir

    # -- lookup ---------------------------------------------------------------

    async def resolve(self, ref: str) -> ContainerRow:
        """Inspect a sandbox container by id, name or sandbox id.

        Containers that do not carry this project's label are treated as
        missing.

        Raises:
            SandboxNotFoundError: If no sandbox container matches.
        """
        candidates = [ref]
        name = self.container_name(ref)
        if name != ref:
            candidates.append(name)

        for candidate in candidates:
            try:
                row = await self.engine.inspect(candidate)
            except SandboxNotFoundError:
                continue
            if row.labels.get(LABEL_PROJECT) == self.project_label:
                return row
        raise SandboxNotFoundError(f"Sandbox '{ref}' not found")

    async def find(self, ref: str) -> SandboxSummary | None:
        """Find a listed sandbox by id, id prefix, name or sandbox id."""
        for summary in await self.list_sandboxes():
            if (
                summary.id == ref
                or summary.id.startswith(ref)
                or summary.sandbox_id == ref
                or ref in summary.name
            ):
                return summary
        return None

    async def list_sandboxes(self, include_stale: bool = False) -> list[SandboxSummary]:
        """List sandbox containers in every state, straight from the engine.

        Containers that were stopped but could not be removed are hidden
        unless ``include_stale`` is set.
        """
        rows = await self.engine.list_containers(self.label_filter)
        return [
            self.summarize(row)
            for row in rows
            if include_stale or not self.is_stale(row.id, row.name)
        ]

    def summarize(self, row: ContainerRow) -> SandboxSummary:
        running = row.state == "running"
        if running:
            status = SandboxStatus.RUNNING
        elif row.state in ("removing", "dead"):
            status = SandboxStatus.REMOVED
        else:
            status = SandboxStatus.STOPPED

        port = row.host_port
        if port is None and running:
            port = row.labeled_port

        return SandboxSummary(
            id=row.id,
            name=row.name,
            status=status,
            status_text=row.status_text,
            port=port,
            url=self.preview_url(port) if port is not None else None,
            sandbox_id=row.labels.get(LABEL_SANDBOX_ID),
            source_dir=row.labels.get(LABEL_SOURCE_DIR),
            created_at=row.created_at,
        )

    async def logs(self, ref: str) -> str:
        row = await self.resolve(ref)
        return await self.engine.logs(row.id)

    # -- teardown -------------------------------------------------------------

    async def stop(self, ref: str) -> None:
        """Release the port, then stop and remove the container.

        Both steps are attempted even if the first one fails. A container that
        stopped but could not be removed is hidden from listings and retried by
        ``reap_stale``.

        Raises:
            SandboxNotFoundError: If no sandbox container matches ``ref``.
            TeardownFailureError: If stopping or removing failed.
        """
        row = await self.resolve(ref)
        key = row.labels.get(LABEL_SANDBOX_ID) or row.id
        source_dir = row.labels.get(LABEL_SOURCE_DIR)

        self.allocator.release(row.labeled_port or row.host_port)

        failed_steps: list[str] = []
        errors: list[str] = []
        self._states[key] = LifecycleState.STOPPING
        try:
            try:
                await self.engine.stop(row.id)
            except SandboxNotFoundError:
                raise
            except SandboxError as e:
                failed_steps.append("stop")
                errors.append(f"stop: {e}")
                logger.warning("sandbox_stop_failed", container_id=row.id[:12], error=str(e))

            try:
                await self.engine.remove(row.id)
            except SandboxNotFoundError:
                pass
            except SandboxError as e:
                failed_steps.append("remove")
                errors.append(f"remove: {e}")
                logger.warning("sandbox_remove_failed", container_id=row.id[:12], error=str(e))
        finally:
            self._states.pop(key, None)

        if "remove" in failed_steps:
            if "stop" not in failed_steps:
                self._stale[row.id] = source_dir
        else:
            self._stale.pop(row.id, None)
            remove_tree(source_dir)

        if failed_steps:
            raise TeardownFailureError(
                f"Failed to tear down sandbox '{ref}': {'; '.join(errors)}",
                container_id=row.id,
                failed_steps=failed_steps,
            )

        logger.info("sandbox_removed", container_id=row.id[:12], sandbox_id=key)

    async def reap_stale(self) -> int:
        """Retry removal of containers left by a failed teardown or launch.

        Returns:
            Number of stale containers removed.
        """
        reaped = 0
        for ref, source_dir in list(self._stale.items()):
            try:
                await self.engine.remove(ref)
            except SandboxNotFoundError:
                pass
            except SandboxError as e:
                logger.warning(
                    "stale_sandbox_reap_failed",
                    ref=ref[:12],
                    error=str(e),
                )
                continue
            self._stale.pop(ref, None)
            remove_tree(source_dir)
            reaped += 1

        if reaped:
            logger.info("stale_sandboxes_reaped", count=reaped)
        return reaped
