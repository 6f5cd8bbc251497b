"""Shared test fixtures for backend tests.

Provides an in-memory FakeEngine standing in for DockerEngine, plus wired
port allocator, image builder, runtime manager, sync bridge and service
fixtures, so tests never touch a real Docker daemon.
"""

import io
import os
import sys
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from sandbox.security import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(Path(__file__).resolve().parent.parent)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from sandbox.engine import CommandResult, ContainerRow, PortBinding  # noqa: E402
from sandbox.errors import PathNotFoundError, SandboxNotFoundError  # noqa: E402
from sandbox.images import ImageBuilder  # noqa: E402
from sandbox.ports import PortAllocator  # noqa: E402
from sandbox.runtime import SandboxRuntimeManager  # noqa: E402
from sandbox.sync import FileSyncBridge  # noqa: E402
from sandbox_service import SandboxService  # noqa: E402

PROJECT = "december"
SOURCE_ROOT = "/app/src"

# ---------------------------------------------------------------------------
# Fake engine
# ---------------------------------------------------------------------------


class FakeEngine:
    """In-memory stand-in for DockerEngine.

    Containers keep their files either in a host directory (the bind mount
    set up by ``run``) or, for containers added directly by a test, in an
    in-memory dict keyed by container path. Failure knobs let tests inject
    engine errors per operation.
    """

    def __init__(self) -> None:
        self.containers: dict[str, dict[str, Any]] = {}
        self.images: set[str] = set()
        self.built: list[tuple[str, str]] = []
        self.dockerfiles: dict[str, str] = {}
        self.removed_images: list[str] = []
        self.run_calls: list[dict[str, Any]] = []
        self.exec_calls: list[list[str]] = []
        self.available = True

        self.build_error: Exception | None = None
        self.run_error: Exception | None = None
        self.stop_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.list_error: Exception | None = None
        self.copy_errors: dict[str, Exception] = {}
        self.exec_handler: Callable[[list[str]], CommandResult] | None = None
        self._counter = 0

    # -- helpers --------------------------------------------------------------

    def _new_id(self) -> str:
        self._counter += 1
        return f"{self._counter:04d}" + "ab" * 30

    def add_container(
        self,
        *,
        name: str,
        state: str = "running",
        labels: dict[str, str] | None = None,
        host_port: int | None = None,
        files: dict[str, str] | None = None,
    ) -> str:
        """Register a container directly, bypassing ``run``."""
        container_id = self._new_id()
        self.containers[container_id] = {
            "name": name,
            "state": state,
            "labels": dict(labels or {}),
            "ports": {3000: host_port} if host_port is not None else {},
            "mount": None,
            "files": dict(files or {}),
            "logs": "",
        }
        return container_id

    def _lookup(self, ref: str) -> tuple[str, dict[str, Any]]:
        for container_id, container in self.containers.items():
            if ref == container_id or ref == container["name"]:
                return container_id, container
        raise SandboxNotFoundError(f"Sandbox '{ref}' not found")

    def _row(self, container_id: str) -> ContainerRow:
        container = self.containers[container_id]
        bindings = []
        if container["state"] == "running":
            bindings = [
                PortBinding("0.0.0.0", host_port, container_port)
                for container_port, host_port in container["ports"].items()
            ]
        return ContainerRow(
            id=container_id,
            name=container["name"],
            state=container["state"],
            status_text=container["state"],
            labels=dict(container["labels"]),
            bindings=bindings,
            created_at=1700000000.0,
        )

    def _host_path(self, container: dict[str, Any], container_path: str) -> str | None:
        if container["mount"] is None:
            return None
        host_dir, mount_point = container["mount"]
        if container_path == mount_point:
            return host_dir
        rel = container_path[len(mount_point) + 1:]
        return os.path.join(host_dir, *rel.split("/"))

    def read_container_file(self, ref: str, container_path: str) -> str | None:
        _, container = self._lookup(ref)
        host_path = self._host_path(container, container_path)
        if host_path is None:
            return container["files"].get(container_path)
        if not os.path.isfile(host_path):
            return None
        with open(host_path, encoding="utf-8", newline="") as f:
            return f.read()

    # -- engine API -----------------------------------------------------------

    async def ping(self) -> bool:
        return self.available

    async def build(self, context_dir: str, tag: str) -> str:
        with open(os.path.join(context_dir, "Dockerfile"), encoding="utf-8") as f:
            self.dockerfiles[tag] = f.read()
        self.built.append((context_dir, tag))
        if self.build_error is not None:
            raise self.build_error
        self.images.add(tag)
        return f"sha256:{tag}"

    async def remove_image(self, image_ref: str) -> None:
        self.removed_images.append(image_ref)
        self.images.discard(image_ref)

    async def run(
        self,
        image: str,
        *,
        name: str,
        ports: dict[int, int],
        volumes: dict[str, str],
        labels: dict[str, str],
    ) -> str:
        self.run_calls.append(
            {"image": image, "name": name, "ports": ports, "volumes": volumes, "labels": labels}
        )
        if self.run_error is not None:
            raise self.run_error
        container_id = self._new_id()
        mount = next(iter(volumes.items())) if volumes else None
        self.containers[container_id] = {
            "name": name,
            "state": "running",
            "labels": dict(labels),
            "ports": dict(ports),
            "mount": mount,
            "files": {},
            "logs": "ready - started server on 0.0.0.0:3000\n",
        }
        return container_id

    async def stop(self, ref: str) -> None:
        _, container = self._lookup(ref)
        if self.stop_error is not None:
            raise self.stop_error
        container["state"] = "exited"

    async def remove(self, ref: str) -> None:
        container_id, _ = self._lookup(ref)
        if self.remove_error is not None:
            raise self.remove_error
        del self.containers[container_id]

    async def list_containers(self, label: str) -> list[ContainerRow]:
        if self.list_error is not None:
            raise self.list_error
        key, _, value = label.partition("=")
        return [
            self._row(container_id)
            for container_id, container in self.containers.items()
            if container["labels"].get(key) == value
        ]

    async def inspect(self, ref: str) -> ContainerRow:
        container_id, _ = self._lookup(ref)
        return self._row(container_id)

    async def logs(self, ref: str) -> str:
        _, container = self._lookup(ref)
        return container["logs"]

    async def copy_into(self, ref: str, host_path: str, container_path: str) -> None:
        _, container = self._lookup(ref)
        if container_path in self.copy_errors:
            raise self.copy_errors[container_path]
        with open(host_path, encoding="utf-8", newline="") as f:
            content = f.read()
        target = self._host_path(container, container_path)
        if target is None:
            container["files"][container_path] = content
            return
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "w", encoding="utf-8", newline="") as f:
            f.write(content)

    async def get_archive(self, ref: str, container_path: str) -> bytes:
        _, container = self._lookup(ref)
        top = container_path.rstrip("/").rsplit("/", 1)[-1]

        files: dict[str, str] = {}
        host_dir = self._host_path(container, container_path)
        if host_dir is not None:
            for dirpath, _, filenames in os.walk(host_dir):
                for filename in filenames:
                    full = os.path.join(dirpath, filename)
                    rel = os.path.relpath(full, host_dir).replace(os.sep, "/")
                    with open(full, encoding="utf-8", newline="") as f:
                        files[rel] = f.read()
        else:
            prefix = container_path.rstrip("/") + "/"
            files = {
                path[len(prefix):]: content
                for path, content in container["files"].items()
                if path.startswith(prefix)
            }
        if not files and host_dir is None:
            raise PathNotFoundError(f"Path not found: {container_path}")

        stream = io.BytesIO()
        with tarfile.open(fileobj=stream, mode="w") as tar:
            root = tarfile.TarInfo(top)
            root.type = tarfile.DIRTYPE
            tar.addfile(root)
            for rel, content in files.items():
                data = content.encode("utf-8")
                info = tarfile.TarInfo(f"{top}/{rel}")
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
        return stream.getvalue()

    async def exec_command(
        self, ref: str, argv: list[str], *, workdir: str | None = None
    ) -> CommandResult:
        self._lookup(ref)
        self.exec_calls.append(list(argv))
        if self.exec_handler is not None:
            return self.exec_handler(argv)
        if argv[0] == "cat":
            path = argv[-1]
            content = self.read_container_file(ref, path)
            if content is None:
                return CommandResult(
                    stdout="",
                    stderr=f"cat: can't open '{path}': No such file or directory",
                    exit_code=1,
                )
            return CommandResult(stdout=content, stderr="", exit_code=0)
        return CommandResult(stdout="", stderr=f"{argv[0]}: not found", exit_code=127)


# ---------------------------------------------------------------------------
# Wired components
# ---------------------------------------------------------------------------


@pytest.fixture()
def fake_engine() -> FakeEngine:
    """Return a fresh FakeEngine for each test."""
    return FakeEngine()


@pytest.fixture()
def staging_root(tmp_path: Path) -> str:
    path = tmp_path / "staging"
    path.mkdir()
    return str(path)


@pytest.fixture()
def allocator(fake_engine: FakeEngine) -> PortAllocator:
    """Port allocator over a small window whose host probe always succeeds."""
    return PortAllocator(
        fake_engine,  # type: ignore[arg-type]
        base_port=8000,
        window=10,
        project_label=PROJECT,
        probe=lambda port: True,
    )


@pytest.fixture()
def runtime(
    fake_engine: FakeEngine, allocator: PortAllocator, staging_root: str
) -> SandboxRuntimeManager:
    return SandboxRuntimeManager(
        fake_engine,  # type: ignore[arg-type]
        allocator,
        project_label=PROJECT,
        image_prefix="dec-nextjs",
        source_root=SOURCE_ROOT,
        app_port=3000,
        staging_root=staging_root,
        public_host="localhost",
    )


@pytest.fixture()
def builder(fake_engine: FakeEngine, staging_root: str) -> ImageBuilder:
    return ImageBuilder(
        fake_engine,  # type: ignore[arg-type]
        image_prefix="dec-nextjs",
        staging_root=staging_root,
        dockerfile_path="",
        source_root=SOURCE_ROOT,
        app_port=3000,
    )


@pytest.fixture()
def sync_bridge(fake_engine: FakeEngine, staging_root: str) -> FileSyncBridge:
    return FileSyncBridge(
        fake_engine,  # type: ignore[arg-type]
        source_root=SOURCE_ROOT,
        staging_root=staging_root,
    )


@pytest.fixture()
def service(
    runtime: SandboxRuntimeManager,
    builder: ImageBuilder,
    sync_bridge: FileSyncBridge,
) -> SandboxService:
    return SandboxService(runtime, builder, sync_bridge)
