"""Docker engine boundary for sandbox containers.

This module wraps the blocking Docker SDK behind an async API. Every call runs
in the default executor under a timeout; daemon timeouts and connection
failures become ``EngineUnavailableError`` and idempotent calls are retried
with exponential backoff. Engine listings are parsed into typed rows by
explicit parsing helpers rather than trusted as-is.
"""

from __future__ import annotations

import asyncio
import functools
import os
import re
import tarfile
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Any, TypeVar

import docker
import requests
import structlog
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from config import settings
from sandbox.errors import (
    BuildFailureError,
    EngineCommandError,
    EngineUnavailableError,
    PathNotFoundError,
    SandboxNotFoundError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Matches the CLI rendering of a published port, e.g. "0.0.0.0:8000->3000/tcp"
# or ":::8000->3000/tcp".
_PORT_BINDING_TEXT_RE = re.compile(
    r"(?P<host_ip>[0-9.]+|\[?[0-9a-fA-F:]*\]?):(?P<host_port>\d+)"
    r"->(?P<container_port>\d+)/(?P<protocol>tcp|udp)"
)

_MAX_BACKOFF_SECONDS = 4.0


@dataclass
class PortBinding:
    """A host port published to a container port."""

    host_ip: str
    host_port: int
    container_port: int
    protocol: str = "tcp"


@dataclass
class ContainerRow:
    """A normalized row from an engine listing or inspection."""

    id: str
    name: str
    state: str
    status_text: str
    labels: dict[str, str] = field(default_factory=dict)
    bindings: list[PortBinding] = field(default_factory=list)
    created_at: float | None = None

    @property
    def host_port(self) -> int | None:
        """First published host port, if any."""
        return self.bindings[0].host_port if self.bindings else None

    @property
    def labeled_port(self) -> int | None:
        """Port recorded in the ``assignedPort`` label, if valid."""
        return parse_port_label(self.labels.get("assignedPort"))


@dataclass
class CommandResult:
    """Result of executing a command in a container."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False


# -----------------------------------------------------------------------------
# Parsing helpers
# -----------------------------------------------------------------------------


def parse_port_label(value: object) -> int | None:
    """Parse a port number stored in a label, rejecting out-of-range values."""
    if value is None or value == "":
        return None
    try:
        port = int(str(value).strip())
    except ValueError:
        logger.warning("invalid_port_label", value=value)
        return None
    if port <= 0 or port > 65535:
        logger.warning("invalid_port_label", value=value)
        return None
    return port


def parse_port_binding_text(text: str) -> list[PortBinding]:
    """Parse the CLI text form of published ports.

    Examples:
        >>> parse_port_binding_text("0.0.0.0:8000->3000/tcp")
        [PortBinding(host_ip='0.0.0.0', host_port=8000, container_port=3000, protocol='tcp')]
        >>> parse_port_binding_text("3000/tcp")
        []
    """
    bindings: list[PortBinding] = []
    for match in _PORT_BINDING_TEXT_RE.finditer(text or ""):
        bindings.append(
            PortBinding(
                host_ip=match.group("host_ip").strip("[]"),
                host_port=int(match.group("host_port")),
                container_port=int(match.group("container_port")),
                protocol=match.group("protocol"),
            )
        )
    return bindings


def parse_port_bindings(raw: object) -> list[PortBinding]:
    """Parse published ports from any shape the engine returns them in.

    Handles the container listing shape (a list of ``{"IP", "PrivatePort",
    "PublicPort", "Type"}`` dicts), the inspect shape (``{"3000/tcp":
    [{"HostIp", "HostPort"}]}``) and the CLI text shape. Unpublished or
    malformed entries are skipped. Duplicate host ports (IPv4 and IPv6 entries
    for the same binding) are collapsed.
    """
    bindings: list[PortBinding] = []

    if isinstance(raw, str):
        bindings = parse_port_binding_text(raw)
    elif isinstance(raw, list):
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            public = parse_port_label(entry.get("PublicPort"))
            private = parse_port_label(entry.get("PrivatePort"))
            if public is None or private is None:
                continue
            bindings.append(
                PortBinding(
                    host_ip=str(entry.get("IP", "")),
                    host_port=public,
                    container_port=private,
                    protocol=str(entry.get("Type", "tcp")),
                )
            )
    elif isinstance(raw, dict):
        for key, host_entries in raw.items():
            container_port_str, _, protocol = str(key).partition("/")
            container_port = parse_port_label(container_port_str)
            if container_port is None or not isinstance(host_entries, list):
                continue
            for host_entry in host_entries:
                if not isinstance(host_entry, dict):
                    continue
                host_port = parse_port_label(host_entry.get("HostPort"))
                if host_port is None:
                    continue
                bindings.append(
                    PortBinding(
                        host_ip=str(host_entry.get("HostIp", "")),
                        host_port=host_port,
                        container_port=container_port,
                        protocol=protocol or "tcp",
                    )
                )

    unique: list[PortBinding] = []
    seen: set[tuple[int, int, str]] = set()
    for binding in bindings:
        key = (binding.host_port, binding.container_port, binding.protocol)
        if key not in seen:
            seen.add(key)
            unique.append(binding)
    return unique


def _parse_created(raw: object) -> float | None:
    """Parse a creation time given as epoch seconds or an RFC 3339 string."""
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str) and raw:
        # Docker emits nanosecond precision which fromisoformat cannot take.
        text = re.sub(r"(\.\d{6})\d+", r"\1", raw).replace("Z", "+00:00")
        try:
            return datetime.fromisoformat(text).timestamp()
        except ValueError:
            return None
    return None


def parse_container_row(attrs: dict[str, Any]) -> ContainerRow:
    """Build a ContainerRow from listing or inspect attributes.

    Raises:
        ValueError: If the attributes lack a container id or are not a mapping.
    """
    if not isinstance(attrs, dict):
        raise ValueError("Container attributes must be a mapping")

    container_id = attrs.get("Id")
    if not isinstance(container_id, str) or not container_id:
        raise ValueError("Container attributes missing 'Id'")

    # Listing rows carry "Names": ["/name"], inspect carries "Name": "/name"
    names = attrs.get("Names")
    if isinstance(names, list) and names:
        name = str(names[0])
    else:
        name = str(attrs.get("Name") or "")
    name = name.lstrip("/")

    raw_state = attrs.get("State")
    if isinstance(raw_state, dict):
        state = str(raw_state.get("Status", "unknown"))
        status_text = state
    else:
        state = str(raw_state or "unknown")
        status_text = str(attrs.get("Status") or state)

    labels = attrs.get("Labels")
    if labels is None:
        config = attrs.get("Config")
        labels = config.get("Labels") if isinstance(config, dict) else None
    if not isinstance(labels, dict):
        labels = {}

    if "Ports" in attrs:
        raw_ports = attrs.get("Ports")
    else:
        network = attrs.get("NetworkSettings")
        raw_ports = network.get("Ports") if isinstance(network, dict) else None

    return ContainerRow(
        id=container_id,
        name=name,
        state=state,
        status_text=status_text,
        labels={str(k): str(v) for k, v in labels.items()},
        bindings=parse_port_bindings(raw_ports),
        created_at=_parse_created(attrs.get("Created")),
    )


def _format_build_log(chunks: Iterable[Any]) -> str:
    """Flatten Docker build log chunks into text."""
    lines: list[str] = []
    for chunk in chunks or []:
        if not isinstance(chunk, dict):
            continue
        text = chunk.get("stream") or chunk.get("error") or chunk.get("status")
        if text:
            lines.append(str(text).rstrip("\n"))
    return "\n".join(lines)


# -----------------------------------------------------------------------------
# Engine
# -----------------------------------------------------------------------------


class DockerEngine:
    """Async facade over the Docker SDK.

    The engine is the only source of truth for which sandboxes exist; callers
    never keep a separate registry.

    Attributes:
        timeout_seconds: Timeout applied to each Docker call.
        build_timeout_seconds: Timeout applied to image builds.
        retry_attempts: Retries for idempotent calls on daemon unavailability.
        retry_delay: Base delay in seconds for exponential backoff.
    """

    def __init__(
        self,
        client: docker.DockerClient | None = None,
        timeout_seconds: float | None = None,
        build_timeout_seconds: float | None = None,
        retry_attempts: int | None = None,
        retry_delay: float | None = None,
    ) -> None:
        self._client = client
        self.timeout_seconds = timeout_seconds or settings.engine_timeout_seconds
        self.build_timeout_seconds = (
            build_timeout_seconds or settings.build_timeout_seconds
        )
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.engine_retry_attempts
        )
        self.retry_delay = (
            retry_delay if retry_delay is not None
            else settings.engine_retry_delay_seconds
        )

    @property
    def client(self) -> docker.DockerClient:
        """Lazy initialization of Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise EngineUnavailableError(f"Docker daemon unreachable: {e}") from e
        return self._client

    async def _call(
        self,
        operation: str,
        func: Callable[..., T],
        *args: Any,
        timeout: float | None = None,
        retry: bool = True,
    ) -> T:
        """Run a blocking engine call in the executor with timeout and retry.

        Only ``EngineUnavailableError`` conditions are retried, and only when
        ``retry`` is set. Everything else propagates on the first failure.
        """
        effective_timeout = timeout or self.timeout_seconds
        attempts = self.retry_attempts + 1 if retry else 1
        last_error: Exception | None = None
        reason = ""

        for attempt in range(attempts):
            try:
                return await asyncio.wait_for(
                    asyncio.get_running_loop().run_in_executor(
                        None, functools.partial(func, *args)
                    ),
                    timeout=effective_timeout,
                )
            except TimeoutError as e:
                last_error = e
                reason = f"timed out after {effective_timeout}s"
            except requests.exceptions.ConnectionError as e:
                last_error = e
                reason = f"connection failed: {e}"
            except EngineUnavailableError as e:
                last_error = e
                reason = str(e)

            if attempt + 1 < attempts:
                delay = min(self.retry_delay * (2 ** attempt), _MAX_BACKOFF_SECONDS)
                logger.warning(
                    "engine_call_retry",
                    operation=operation,
                    attempt=attempt + 1,
                    max_retries=attempts - 1,
                    reason=reason,
                    retry_delay=delay,
                )
                await asyncio.sleep(delay)
            else:
                logger.error(
                    "engine_unavailable",
                    operation=operation,
                    attempts=attempts,
                    reason=reason,
                )

        raise EngineUnavailableError(
            f"Docker engine unavailable during {operation}: {reason}"
        ) from last_error

    def _get_container(self, ref: str) -> Any:
        """Look up a container by id or name (blocking operation)."""
        try:
            return self.client.containers.get(ref)
        except NotFound as e:
            raise SandboxNotFoundError(f"Sandbox '{ref}' not found") from e
        except APIError as e:
            raise EngineCommandError(f"Failed to look up sandbox '{ref}': {e}") from e

    # -- availability ---------------------------------------------------------

    async def ping(self) -> bool:
        """Return True if the Docker daemon answers a ping."""
        try:
            return bool(await self._call("ping", self._ping_blocking, retry=False))
        except EngineUnavailableError:
            return False

    def _ping_blocking(self) -> bool:
        try:
            return bool(self.client.ping())
        except (APIError, requests.exceptions.RequestException):
            return False

    # -- images ---------------------------------------------------------------

    async def build(self, context_dir: str, tag: str) -> str:
        """Build an image from a context directory. Never retried.

        Returns:
            The built image id.

        Raises:
            BuildFailureError: If the build fails.
            EngineUnavailableError: If the daemon is unreachable or times out.
        """
        return await self._call(
            "build",
            self._build_blocking,
            context_dir,
            tag,
            timeout=self.build_timeout_seconds,
            retry=False,
        )

    def _build_blocking(self, context_dir: str, tag: str) -> str:
        try:
            image, build_logs = self.client.images.build(
                path=context_dir,
                tag=tag,
                rm=True,
                forcerm=True,
            )
        except BuildError as e:
            raise BuildFailureError(
                f"Docker build failed for {tag}: {e.msg}",
                image=tag,
                build_log=_format_build_log(e.build_log),
            ) from e
        except APIError as e:
            raise BuildFailureError(
                f"Docker build failed for {tag}: {e}",
                image=tag,
                build_log=str(e.explanation or ""),
            ) from e

        logger.debug(
            "image_build_output",
            tag=tag,
            output=_format_build_log(build_logs)[-2000:],
        )
        return str(image.id)

    async def remove_image(self, image_ref: str) -> None:
        """Remove an image; a missing image is not an error."""
        await self._call("remove_image", self._remove_image_blocking, image_ref)

    def _remove_image_blocking(self, image_ref: str) -> None:
        try:
            self.client.images.remove(image_ref, force=True)
        except ImageNotFound:
            pass
        except APIError as e:
            raise EngineCommandError(f"Failed to remove image {image_ref}: {e}") from e

    # -- containers -----------------------------------------------------------

    async def run(
        self,
        image: str,
        *,
        name: str,
        ports: dict[int, int],
        volumes: dict[str, str],
        labels: dict[str, str],
    ) -> str:
        """Start a detached container. Never retried.

        Args:
            image: Image reference to run.
            name: Container name.
            ports: Mapping of container port to host port.
            volumes: Mapping of host directory to container path (read-write).
            labels: Labels attached to the container.

        Returns:
            The new container id.
        """
        return await self._call(
            "run",
            self._run_blocking,
            image,
            name,
            ports,
            volumes,
            labels,
            retry=False,
        )

    def _run_blocking(
        self,
        image: str,
        name: str,
        ports: dict[int, int],
        volumes: dict[str, str],
        labels: dict[str, str],
    ) -> str:
        try:
            container = self.client.containers.run(
                image,
                name=name,
                detach=True,
                remove=False,
                ports={f"{container_port}/tcp": host_port
                       for container_port, host_port in ports.items()},
                volumes={host_dir: {"bind": container_path, "mode": "rw"}
                         for host_dir, container_path in volumes.items()},
                labels=labels,
            )
        except ImageNotFound as e:
            raise EngineCommandError(f"Image {image} not found: {e}") from e
        except APIError as e:
            raise EngineCommandError(f"Failed to run container {name}: {e}") from e
        return str(container.id)

    async def start(self, ref: str) -> None:
        """Start an existing, stopped container."""
        await self._call("start", self._start_blocking, ref)

    def _start_blocking(self, ref: str) -> None:
        container = self._get_container(ref)
        try:
            container.start()
        except NotFound as e:
            raise SandboxNotFoundError(f"Sandbox '{ref}' not found") from e
        except APIError as e:
            raise EngineCommandError(f"Failed to start sandbox '{ref}': {e}") from e

    async def stop(self, ref: str) -> None:
        """Stop a container."""
        await self._call("stop", self._stop_blocking, ref)

    def _stop_blocking(self, ref: str) -> None:
        container = self._get_container(ref)
        try:
            container.stop(timeout=5)
        except NotFound as e:
            raise SandboxNotFoundError(f"Sandbox '{ref}' not found") from e
        except APIError as e:
            raise EngineCommandError(f"Failed to stop sandbox '{ref}': {e}") from e

    async def remove(self, ref: str) -> None:
        """Remove a container."""
        await self._call("remove", self._remove_blocking, ref)

    def _remove_blocking(self, ref: str) -> None:
        container = self._get_container(ref)
        try:
            container.remove(force=True)
        except NotFound as e:
            raise SandboxNotFoundError(f"Sandbox '{ref}' not found") from e
        except APIError as e:
            raise EngineCommandError(f"Failed to remove sandbox '{ref}': {e}") from e

    async def list_containers(self, label: str) -> list[ContainerRow]:
        """List containers in any state carrying the given label filter.

        Rows that cannot be parsed are skipped with a warning.

        Args:
            label: Docker label filter, e.g. ``"project=december"``.
        """
        raw_rows = await self._call("list", self._list_blocking, label)

        rows: list[ContainerRow] = []
        for attrs in raw_rows:
            try:
                rows.append(parse_container_row(attrs))
            except ValueError as e:
                logger.warning("engine_row_malformed", error=str(e))
        return rows

    def _list_blocking(self, label: str) -> list[dict[str, Any]]:
        try:
            containers = self.client.containers.list(
                all=True,
                filters={"label": label},
                sparse=True,
            )
        except APIError as e:
            raise EngineCommandError(f"Failed to list sandboxes: {e}") from e
        return [dict(container.attrs) for container in containers]

    async def inspect(self, ref: str) -> ContainerRow:
        """Inspect a single container by id or name."""
        attrs = await self._call("inspect", self._inspect_blocking, ref)
        try:
            return parse_container_row(attrs)
        except ValueError as e:
            raise EngineCommandError(
                f"Malformed inspect output for sandbox '{ref}': {e}"
            ) from e

    def _inspect_blocking(self, ref: str) -> dict[str, Any]:
        return dict(self._get_container(ref).attrs)

    async def logs(self, ref: str) -> str:
        """Return combined stdout and stderr logs of a container."""
        return await self._call("logs", self._logs_blocking, ref)

    def _logs_blocking(self, ref: str) -> str:
        container = self._get_container(ref)
        try:
            output = container.logs(stdout=True, stderr=True)
        except APIError as e:
            raise EngineCommandError(f"Failed to get logs for '{ref}': {e}") from e
        return output.decode("utf-8", errors="replace") if output else ""

    # -- files ----------------------------------------------------------------

    async def copy_into(self, ref: str, host_path: str, container_path: str) -> None:
        """Copy a single host file to an absolute path inside a container.

        Parent directories inside the container are created as needed.
        """
        await self._call("copy", self._copy_blocking, ref, host_path, container_path)

    def _copy_blocking(self, ref: str, host_path: str, container_path: str) -> None:
        container = self._get_container(ref)
        parent_dir, file_name = os.path.split(container_path)

        with open(host_path, "rb") as f:
            data = f.read()

        tar_stream = BytesIO()
        with tarfile.open(fileobj=tar_stream, mode="w") as tar:
            tarinfo = tarfile.TarInfo(name=file_name)
            tarinfo.size = len(data)
            tarinfo.mode = 0o644
            # File watchers that poll compare mtimes
            tarinfo.mtime = int(time.time())
            tar.addfile(tarinfo, BytesIO(data))
        tar_stream.seek(0)

        if parent_dir:
            try:
                mkdir = container.exec_run(["mkdir", "-p", parent_dir])
            except NotFound as e:
                raise SandboxNotFoundError(f"Sandbox '{ref}' not found") from e
            except APIError as e:
                raise EngineCommandError(
                    f"Failed to create {parent_dir} in '{ref}': {e}"
                ) from e
            if mkdir.exit_code:
                output = (mkdir.output or b"").decode("utf-8", errors="replace").strip()
                raise EngineCommandError(
                    f"Failed to create {parent_dir} for {container_path}: "
                    f"{output or f'exit code {mkdir.exit_code}'}"
                )

        try:
            ok = container.put_archive(parent_dir or "/", tar_stream.getvalue())
        except NotFound as e:
            raise PathNotFoundError(
                f"Cannot copy {container_path}: {parent_dir or '/'} does not exist"
            ) from e
        except APIError as e:
            raise EngineCommandError(
                f"Failed to copy {container_path} into '{ref}': {e}"
            ) from e
        if not ok:
            raise EngineCommandError(f"Failed to copy {container_path} into '{ref}'")

    async def get_archive(self, ref: str, container_path: str) -> bytes:
        """Return a tar archive of a container path."""
        return await self._call("archive", self._archive_blocking, ref, container_path)

    def _archive_blocking(self, ref: str, container_path: str) -> bytes:
        container = self._get_container(ref)
        try:
            bits, _ = container.get_archive(container_path)
        except NotFound as e:
            raise PathNotFoundError(f"Path not found: {container_path}") from e
        except APIError as e:
            raise EngineCommandError(
                f"Failed to archive {container_path} from '{ref}': {e}"
            ) from e

        tar_stream = BytesIO()
        for chunk in bits:
            tar_stream.write(chunk)
        return tar_stream.getvalue()

    async def exec_command(
        self,
        ref: str,
        argv: list[str],
        *,
        workdir: str | None = None,
    ) -> CommandResult:
        """Execute a command (no shell) inside a container."""
        return await self._call("exec", self._exec_blocking, ref, argv, workdir)

    def _exec_blocking(
        self, ref: str, argv: list[str], workdir: str | None
    ) -> CommandResult:
        container = self._get_container(ref)
        try:
            result = container.exec_run(argv, workdir=workdir, demux=True)
        except NotFound as e:
            raise SandboxNotFoundError(f"Sandbox '{ref}' not found") from e
        except APIError as e:
            raise EngineCommandError(f"Failed to exec in '{ref}': {e}") from e

        stdout_bytes: bytes = b""
        stderr_bytes: bytes = b""
        if isinstance(result.output, tuple):
            stdout_bytes = result.output[0] or b""
            stderr_bytes = result.output[1] or b""
        elif result.output:
            # Fallback for older docker-py behavior when demux is unsupported.
            stdout_bytes = result.output

        return CommandResult(
            stdout=stdout_bytes.decode("utf-8", errors="replace"),
            stderr=stderr_bytes.decode("utf-8", errors="replace"),
            exit_code=result.exit_code if result.exit_code is not None else 0,
        )
