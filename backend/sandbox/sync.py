"""File synchronization between the host and running sandboxes.

Writes are staged on the host and copied into the container one file at a
time. Reads go through ``cat`` inside the container. Directory walks read the
host-side source directory that is bind-mounted into the container, and fall
back to ``find`` inside the container when that directory is not reachable.
"""

import asyncio
import os
import posixpath
import shlex
import shutil
import tarfile
import tempfile
import zipfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from io import BytesIO

import structlog

from config import settings
from sandbox.engine import DockerEngine
from sandbox.errors import (
    EngineCommandError,
    PathNotFoundError,
    SandboxError,
    SandboxNotFoundError,
    SyncFailureError,
)
from sandbox.security import normalize_relative_path, validate_command, validate_path

logger = structlog.get_logger(__name__)

# Directory names skipped by walks and exports.
IGNORED_DIR_NAMES: frozenset[str] = frozenset(
    {"node_modules", ".next", ".git", ".cache", "dist", "build", "coverage"}
)


@dataclass
class SyncResult:
    """Outcome of copying one file into a sandbox."""

    path: str
    ok: bool
    error: str | None = None


@dataclass
class SyncReport:
    """Per-path outcome of a batch write."""

    instance_id: str
    results: list[SyncResult] = field(default_factory=list)

    @property
    def applied(self) -> list[str]:
        return [r.path for r in self.results if r.ok]

    @property
    def failed(self) -> list[SyncResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise SyncFailureError if any path in the batch failed."""
        failed = self.failed
        if not failed:
            return
        first = failed[0]
        raise SyncFailureError(
            f"Failed to sync {len(failed)} of {len(self.results)} file(s); "
            f"first failure {first.path}: {first.error}",
            path=first.path,
            report=self,
        )


@dataclass
class FileInfo:
    """Information about a file or directory in a sandbox source tree."""

    name: str
    path: str
    is_directory: bool
    size: int = 0


def write_file_map(root: str, file_map: Mapping[str, str]) -> list[str]:
    """Write a validated relative-path file map under a host directory.

    Intermediate directories are created. Content is written verbatim.

    Returns:
        Host paths of the written files, in map order.
    """
    os.makedirs(root, exist_ok=True)
    written: list[str] = []
    for rel_path, content in file_map.items():
        host_path = os.path.join(root, *rel_path.split("/"))
        os.makedirs(os.path.dirname(host_path), exist_ok=True)
        with open(host_path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        written.append(host_path)
    return written


def normalize_file_map(file_map: Mapping[str, str]) -> dict[str, str]:
    """Validate and normalize every path of a file map.

    Raises:
        ValueError: On the first invalid path, before anything is written.
    """
    normalized: dict[str, str] = {}
    for path, content in file_map.items():
        try:
            rel_path = normalize_relative_path(path)
        except ValueError as e:
            raise ValueError(f"Invalid path '{path}': {e}") from e
        if not rel_path:
            raise ValueError(f"Invalid path '{path}': refers to the source root")
        if not isinstance(content, str):
            raise ValueError(f"Content for '{path}' must be a string")
        normalized[rel_path] = content
    return normalized


class FileSyncBridge:
    """Moves files between the host and a sandbox container.

    Attributes:
        engine: Engine used for copies, execs and archives.
        source_root: Container path of the sandbox source tree.
        staging_root: Host directory for temporary staging directories.
        ignored_dir_names: Directory names skipped by walks and exports.
    """

    def __init__(
        self,
        engine: DockerEngine,
        source_root: str | None = None,
        staging_root: str | None = None,
        ignored_dir_names: Iterable[str] | None = None,
    ) -> None:
        self.engine = engine
        self.source_root = source_root or settings.source_root
        self.staging_root = staging_root or settings.staging_root
        self.ignored_dir_names = frozenset(
            ignored_dir_names if ignored_dir_names is not None else IGNORED_DIR_NAMES
        )

    # -- writes ---------------------------------------------------------------

    async def write(self, instance_id: str, file_map: Mapping[str, str]) -> SyncReport:
        """Copy a batch of files into a running sandbox.

        Every path is validated before anything is copied. A failed copy does
        not stop the batch; the returned report lists each path's outcome and
        files copied before a failure stay applied.

        Raises:
            ValueError: If any path is invalid.
            SandboxNotFoundError: If the container does not exist.
        """
        normalized = normalize_file_map(file_map)
        report = SyncReport(instance_id=instance_id)
        if not normalized:
            return report

        os.makedirs(self.staging_root, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix=f"update-{instance_id[:12]}-",
            dir=self.staging_root,
            ignore_cleanup_errors=True,
        ) as staging_dir:
            host_paths = await asyncio.get_running_loop().run_in_executor(
                None, write_file_map, staging_dir, normalized
            )

            for rel_path, host_path in zip(normalized, host_paths):
                container_path = posixpath.join(self.source_root, rel_path)
                try:
                    await self.engine.copy_into(instance_id, host_path, container_path)
                except SandboxNotFoundError:
                    raise
                except SandboxError as e:
                    logger.warning(
                        "file_sync_failed",
                        instance_id=instance_id,
                        path=rel_path,
                        error=str(e),
                    )
                    report.results.append(SyncResult(rel_path, False, str(e)))
                    continue
                report.results.append(SyncResult(rel_path, True))

        logger.info(
            "files_synced",
            instance_id=instance_id,
            applied=len(report.applied),
            failed=len(report.failed),
        )
        return report

    # -- reads ----------------------------------------------------------------

    async def read(self, instance_id: str, path: str) -> str:
        """Return a file's content verbatim.

        Raises:
            ValueError: If the path is invalid.
            PathNotFoundError: If the file does not exist.
            EngineCommandError: If the read fails for another reason.
        """
        is_valid, error_msg, container_path = validate_path(self.source_root, path)
        if not is_valid:
            raise ValueError(f"Invalid path '{path}': {error_msg}")

        result = await self.engine.exec_command(
            instance_id, ["cat", "--", container_path]
        )
        if result.exit_code != 0:
            if "No such file" in result.stderr or "Is a directory" in result.stderr:
                raise PathNotFoundError(f"File not found: {path}")
            raise EngineCommandError(
                f"Failed to read {path}: {result.stderr.strip() or f'exit code {result.exit_code}'}"
            )
        return result.stdout

    async def exec_read(self, instance_id: str, command: str) -> str:
        """Run a read-only listing or search command and return raw stdout.

        The command runs without a shell, in the source root. A non-zero exit
        with no output is an error, except that an empty result (for example
        ``grep`` finding nothing) is returned as an empty string.

        Raises:
            ValueError: If the command is not an allowed read-only command.
            EngineCommandError: If the command fails.
        """
        is_valid, error_msg = validate_command(command)
        if not is_valid:
            raise ValueError(f"Command rejected: {error_msg}")

        result = await self.engine.exec_command(
            instance_id, shlex.split(command), workdir=self.source_root
        )
        if result.exit_code != 0 and result.stderr.strip() and not result.stdout:
            raise EngineCommandError(
                f"Command failed with exit code {result.exit_code}: {result.stderr.strip()}"
            )
        return result.stdout

    async def walk(
        self,
        instance_id: str,
        path: str = ".",
        source_dir: str | None = None,
        max_entries: int | None = None,
    ) -> list[FileInfo]:
        """List files and directories under a path, recursively.

        Args:
            instance_id: Container to walk.
            path: Path relative to the source root.
            source_dir: Host directory bind-mounted at the source root. When
                present the walk runs on the host.
            max_entries: Stop after this many entries.

        Raises:
            ValueError: If the path is invalid.
            PathNotFoundError: If the path does not exist.
        """
        rel_path = "" if path in ("", ".") else _normalize_walk_path(path)
        limit = max_entries or settings.file_tree_max_entries

        if source_dir and os.path.isdir(source_dir):
            return await asyncio.get_running_loop().run_in_executor(
                None, self._walk_host_dir, source_dir, rel_path, limit
            )

        logger.warning(
            "file_walk_container_fallback",
            instance_id=instance_id,
            source_dir=source_dir,
        )
        return await self._walk_in_container(instance_id, rel_path, limit)

    def _walk_host_dir(self, source_dir: str, rel_path: str, limit: int) -> list[FileInfo]:
        """Walk the host source directory (blocking operation)."""
        start = os.path.join(source_dir, *rel_path.split("/")) if rel_path else source_dir
        if not os.path.isdir(start):
            raise PathNotFoundError(f"Directory not found: {rel_path or '.'}")

        entries: list[FileInfo] = []
        for dirpath, dirnames, filenames in os.walk(start):
            dirnames[:] = sorted(d for d in dirnames if d not in self.ignored_dir_names)
            rel_dir = os.path.relpath(dirpath, source_dir).replace(os.sep, "/")
            rel_dir = "" if rel_dir == "." else rel_dir

            for dirname in dirnames:
                entries.append(
                    FileInfo(
                        name=dirname,
                        path=posixpath.join(rel_dir, dirname),
                        is_directory=True,
                    )
                )
            for filename in sorted(filenames):
                try:
                    size = os.lstat(os.path.join(dirpath, filename)).st_size
                except OSError:
                    size = 0
                entries.append(
                    FileInfo(
                        name=filename,
                        path=posixpath.join(rel_dir, filename),
                        is_directory=False,
                        size=size,
                    )
                )

            if len(entries) >= limit:
                logger.warning("file_walk_truncated", source_dir=source_dir, limit=limit)
                return entries[:limit]
        return entries

    async def _walk_in_container(
        self, instance_id: str, rel_path: str, limit: int
    ) -> list[FileInfo]:
        """Walk a path inside the container with ``find``."""
        _, _, start = validate_path(self.source_root, rel_path or ".")

        directories = await self._find(instance_id, start, "d")
        files = await self._find(instance_id, start, "f")

        entries = [
            FileInfo(name=posixpath.basename(p), path=p, is_directory=True)
            for p in directories
        ] + [
            FileInfo(name=posixpath.basename(p), path=p, is_directory=False)
            for p in files
        ]
        entries.sort(key=lambda entry: entry.path)
        return entries[:limit]

    async def _find(self, instance_id: str, start: str, file_type: str) -> list[str]:
        """Return source-relative paths of one file type under ``start``."""
        prune: list[str] = []
        for name in sorted(self.ignored_dir_names):
            prune.extend(["-name", name, "-o"])
        argv = ["find", start, "-mindepth", "1"]
        if prune:
            argv += ["(", *prune[:-1], ")", "-prune", "-o"]
        argv += ["-type", file_type, "-print"]

        result = await self.engine.exec_command(instance_id, argv)
        if result.exit_code != 0 and not result.stdout:
            if "No such file" in result.stderr:
                raise PathNotFoundError(f"Directory not found: {start}")
            raise EngineCommandError(
                f"Failed to list {start}: {result.stderr.strip()}"
            )

        prefix = self.source_root.rstrip("/") + "/"
        paths: list[str] = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.startswith(prefix):
                paths.append(line[len(prefix):])
        return paths

    # -- export ---------------------------------------------------------------

    async def export_archive(self, instance_id: str) -> bytes:
        """Return the sandbox source tree as a zip archive.

        Ignored directories (dependencies, build output) are left out.
        """
        tar_bytes = await self.engine.get_archive(instance_id, self.source_root)
        return await asyncio.get_running_loop().run_in_executor(
            None, tar_to_zip, tar_bytes, self.ignored_dir_names
        )


def _normalize_walk_path(path: str) -> str:
    try:
        return normalize_relative_path(path)
    except ValueError as e:
        raise ValueError(f"Invalid path '{path}': {e}") from e


def tar_to_zip(tar_bytes: bytes, ignored_dir_names: Iterable[str] = ()) -> bytes:
    """Convert a container archive to a zip of the files beneath its root.

    The archive's top-level directory (the archived path itself) is stripped
    so entries are relative to the source root.
    """
    ignored = set(ignored_dir_names)
    zip_stream = BytesIO()

    with tarfile.open(fileobj=BytesIO(tar_bytes), mode="r:*") as tar, zipfile.ZipFile(
        zip_stream, "w", compression=zipfile.ZIP_DEFLATED
    ) as zf:
        for member in tar:
            if not member.isfile():
                continue
            parts = member.name.split("/")[1:]
            if not parts or any(part in ignored for part in parts[:-1]):
                continue
            extracted = tar.extractfile(member)
            if extracted is None:
                continue
            with extracted:
                zf.writestr("/".join(parts), extracted.read())

    return zip_stream.getvalue()


def remove_tree(path: str | None) -> None:
    """Remove a host directory tree, logging instead of raising."""
    if not path or not os.path.isdir(path):
        return
    try:
        shutil.rmtree(path)
        logger.debug("staging_dir_removed", path=path)
    except OSError as e:
        logger.warning("staging_dir_remove_failed", path=path, error=str(e))
