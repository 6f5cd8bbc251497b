"""Sandbox service orchestrating app sandboxes for the HTTP API.

This module provides the SandboxService class that composes the image
builder, the runtime manager and the file sync bridge into the operations
exposed by the API: create, look up, stop, list, file access, logs,
package manifest edits and source export.

The SandboxService coordinates between:
- ImageBuilder: Builds one image per sandbox
- SandboxRuntimeManager: Runs and tears down containers, owns port allocation
- FileSyncBridge: Reads and writes files inside running sandboxes

Usage:
    >>> from sandbox import (
    ...     DockerEngine, FileSyncBridge, ImageBuilder,
    ...     PortAllocator, SandboxRuntimeManager,
    ... )
    >>> from sandbox_service import SandboxService
    >>>
    >>> engine = DockerEngine()
    >>> runtime = SandboxRuntimeManager(engine, PortAllocator(engine))
    >>> service = SandboxService(runtime, ImageBuilder(engine), FileSyncBridge(engine))
    >>>
    >>> created = await service.create_sandbox()
    >>> print(created.url)
    >>> await service.stop_sandbox(created.instance_id)
"""

import asyncio
import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import structlog

from config import settings
from models.schemas import SandboxStatus
from sandbox.errors import (
    EngineCommandError,
    PathNotFoundError,
    SandboxError,
    SandboxNotFoundError,
)
from sandbox.images import ImageBuilder
from sandbox.runtime import LABEL_SOURCE_DIR, SandboxRuntimeManager, SandboxSummary
from sandbox.security import sanitize_output
from sandbox.sync import FileInfo, FileSyncBridge, SyncReport, normalize_file_map

logger = structlog.get_logger()

MANIFEST_PATH = "package.json"

# Extensions returned by the source file listing
LISTED_EXTENSIONS: tuple[str, ...] = (".tsx", ".ts", ".js", ".jsx", ".json")

# Extensions returned with content by the content tree
SOURCE_EXTENSIONS: tuple[str, ...] = (".tsx", ".ts", ".js", ".jsx")

DEFAULT_PACKAGE: dict[str, Any] = {
    "name": "my-nextjs-app",
    "version": "0.1.0",
    "private": True,
    "scripts": {
        "dev": "next dev",
        "build": "next build",
        "start": "next start",
        "lint": "next lint",
    },
    "dependencies": {
        "next": "13.4.19",
        "react": "^18.2.0",
        "react-dom": "^18.2.0",
    },
    "devDependencies": {
        "@types/node": "^20",
        "@types/react": "^18",
        "@types/react-dom": "^18",
        "typescript": "^5",
    },
}

DEFAULT_INDEX_PAGE = """export default function Home() {
  return (
    <div>
      <h1>Welcome to December!</h1>
      <p>Your Next.js app is running.</p>
    </div>
  );
}"""

DEFAULT_APP_FILES: dict[str, str] = {
    MANIFEST_PATH: json.dumps(DEFAULT_PACKAGE, indent=2),
    "pages/index.tsx": DEFAULT_INDEX_PAGE,
}


@dataclass
class CreatedSandbox:
    """A sandbox that was built and started.

    Attributes:
        sandbox_id: Generated sandbox identifier (UUID)
        instance_id: Engine container id
        port: Published host port
        url: Preview URL of the running app
        created_at: Unix timestamp of creation
    """

    sandbox_id: str
    instance_id: str
    port: int
    url: str
    created_at: float
    status: SandboxStatus = SandboxStatus.RUNNING


class SandboxService:
    """Entry point for every sandbox operation exposed over HTTP.

    The service keeps no registry of its own. Every lookup goes through the
    runtime manager, which answers from the engine.

    Attributes:
        runtime: Container lifecycle manager
        builder: Image builder
        sync: File synchronization bridge
    """

    def __init__(
        self,
        runtime: SandboxRuntimeManager,
        builder: ImageBuilder,
        sync: FileSyncBridge,
    ) -> None:
        self.runtime = runtime
        self.builder = builder
        self.sync = sync

    # -- lifecycle ------------------------------------------------------------

    async def create_sandbox(self, files: Mapping[str, str] | None = None) -> CreatedSandbox:
        """Build an image and start a new sandbox seeded with ``files``.

        Defaults to a minimal Next.js app. If the container fails to start
        after the image was built, the image is removed again.

        Raises:
            BuildFailureError: If the image build fails.
            ResourceExhaustionError: If no host port is available.
            LaunchFailureError: If the container fails to start.
        """
        sandbox_id = str(uuid.uuid4())
        file_map = normalize_file_map(files) if files is not None else DEFAULT_APP_FILES

        logger.info("sandbox_create_started", sandbox_id=sandbox_id, files=len(file_map))
        with self.runtime.launching(sandbox_id):
            image_name = await self.builder.build_image(sandbox_id)
            try:
                result = await self.runtime.run(image_name, sandbox_id, file_map)
            except (SandboxError, asyncio.CancelledError):
                await self.builder.remove_image(image_name)
                raise

        return CreatedSandbox(
            sandbox_id=sandbox_id,
            instance_id=result.instance_id,
            port=result.port,
            url=result.url,
            created_at=time.time(),
        )

    async def get_sandbox(self, ref: str) -> SandboxSummary:
        """Look up a sandbox by container id, id prefix, name or sandbox id.

        Raises:
            SandboxNotFoundError: If no sandbox matches.
        """
        summary = await self.runtime.find(ref)
        if summary is None:
            raise SandboxNotFoundError(f"Container not found: {ref}")
        return summary

    async def stop_sandbox(self, ref: str) -> None:
        """Stop and remove a sandbox, releasing its port."""
        await self.runtime.stop(ref)

    async def list_sandboxes(self) -> list[SandboxSummary]:
        return await self.runtime.list_sandboxes()

    # -- files ----------------------------------------------------------------

    async def _walk(self, ref: str, path: str = ".") -> tuple[str, list[FileInfo]]:
        row = await self.runtime.resolve(ref)
        entries = await self.sync.walk(
            row.id,
            self._relative_to_source_root(path),
            source_dir=row.labels.get(LABEL_SOURCE_DIR),
        )
        return row.id, entries

    def _relative_to_source_root(self, path: str) -> str:
        """Accept container paths under the source root as relative paths."""
        root = self.sync.source_root.rstrip("/")
        if path == root:
            return "."
        if path.startswith(root + "/"):
            return path[len(root) + 1:]
        return path

    async def list_files(self, ref: str, path: str = ".") -> list[FileInfo]:
        """List source files (by extension) under a path."""
        _, entries = await self._walk(ref, path)
        return [
            entry for entry in entries
            if not entry.is_directory and entry.name.endswith(LISTED_EXTENSIONS)
        ]

    async def file_tree(self, ref: str) -> dict[str, Any]:
        """Return the source tree as nested ``{name, path, type, children}`` nodes."""
        _, entries = await self._walk(ref)
        return build_file_tree(entries)

    async def file_content_tree(self, ref: str) -> list[dict[str, str]]:
        """Return a bounded set of source files together with their content.

        Files that cannot be read are skipped.
        """
        instance_id, entries = await self._walk(ref)
        sources = [
            entry for entry in entries
            if not entry.is_directory and entry.name.endswith(SOURCE_EXTENSIONS)
        ][: settings.content_tree_max_files]

        tree: list[dict[str, str]] = []
        for entry in sources:
            try:
                content = await self.sync.read(instance_id, entry.path)
            except (PathNotFoundError, EngineCommandError) as e:
                logger.warning(
                    "content_tree_read_failed",
                    container_id=instance_id[:12],
                    path=entry.path,
                    error=str(e),
                )
                continue
            tree.append(
                {"path": entry.path, "name": entry.name, "content": content, "type": "file"}
            )
        return tree

    async def read_file(self, ref: str, path: str) -> str:
        row = await self.runtime.resolve(ref)
        return await self.sync.read(row.id, path)

    async def write_files(self, ref: str, files: Mapping[str, str]) -> SyncReport:
        """Write a batch of files into a running sandbox.

        Raises:
            SyncFailureError: If any path failed to copy.
        """
        row = await self.runtime.resolve(ref)
        report = await self.sync.write(row.id, files)
        report.raise_for_failures()
        return report

    async def exec_read(self, ref: str, command: str) -> str:
        row = await self.runtime.resolve(ref)
        return await self.sync.exec_read(row.id, command)

    async def export_archive(self, ref: str) -> bytes:
        row = await self.runtime.resolve(ref)
        data = await self.sync.export_archive(row.id)
        logger.info("sandbox_exported", container_id=row.id[:12], size=len(data))
        return data

    # -- logs and manifest ----------------------------------------------------

    async def get_logs(self, ref: str) -> str:
        return sanitize_output(await self.runtime.logs(ref))

    async def get_package(self, ref: str) -> dict[str, Any]:
        """Return the sandbox's parsed package.json.

        Raises:
            SandboxError: If package.json is not a JSON object.
        """
        content = await self.read_file(ref, MANIFEST_PATH)
        try:
            package = json.loads(content)
        except json.JSONDecodeError as e:
            raise SandboxError(f"{MANIFEST_PATH} is not valid JSON: {e}") from e
        if not isinstance(package, dict):
            raise SandboxError(f"{MANIFEST_PATH} is not a JSON object")
        return package

    async def update_package(self, ref: str, package: Mapping[str, Any]) -> SyncReport:
        return await self.write_files(
            ref, {MANIFEST_PATH: json.dumps(dict(package), indent=2)}
        )

    # -- housekeeping ---------------------------------------------------------

    async def health(self) -> tuple[bool, int]:
        """Return (engine available, running sandbox count)."""
        available = await self.runtime.engine.ping()
        if not available:
            return False, 0
        try:
            sandboxes = await self.runtime.list_sandboxes()
        except SandboxError as e:
            logger.warning("health_list_failed", error=str(e))
            return True, 0
        return True, sum(1 for s in sandboxes if s.status == SandboxStatus.RUNNING)

    async def start_reaper_loop(
        self, interval_seconds: float | None = None
    ) -> asyncio.Task[None]:
        """Start a background task that removes stale half-torn-down sandboxes.

        The task runs until cancelled (typically at application shutdown).

        Args:
            interval_seconds: Seconds between reaper passes.

        Returns:
            The background asyncio.Task that can be cancelled on shutdown.
        """
        interval = interval_seconds or settings.sandbox_reap_interval_seconds

        async def _loop() -> None:
            logger.info("reaper_loop_started", interval_seconds=interval)
            while True:
                try:
                    await asyncio.sleep(interval)
                    await self.runtime.reap_stale()
                except asyncio.CancelledError:
                    logger.info("reaper_loop_stopped")
                    return
                except Exception as e:
                    logger.error("reaper_loop_error", error=str(e))

        return asyncio.create_task(_loop(), name="sandbox_reaper")


def build_file_tree(entries: list[FileInfo], root_name: str = "src") -> dict[str, Any]:
    """Nest flat walk entries into a tree rooted at the source directory.

    Directories are listed before files at each level.
    """
    root: dict[str, Any] = {"name": root_name, "path": "", "type": "directory", "children": []}
    nodes: dict[str, dict[str, Any]] = {"": root}

    for entry in sorted(entries, key=lambda e: (not e.is_directory, e.path)):
        parent_path, _, _ = entry.path.rpartition("/")
        parent = nodes.get(parent_path)
        if parent is None:
            # Parent was pruned or truncated away
            continue
        if entry.is_directory:
            node = {"name": entry.name, "path": entry.path, "type": "directory", "children": []}
            nodes[entry.path] = node
        else:
            node = {"name": entry.name, "path": entry.path, "type": "file"}
        parent["children"].append(node)

    return root
