"""HTTP API routes for the sandbox runtime backend.

This module defines all HTTP endpoints for sandbox lifecycle, file access,
logs, package manifest edits, source export and health checks. Every
response uses the ``{"success": ...}`` envelope; see api/errors.py for the
error side.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Annotated

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status
from fastapi.responses import Response

from models.schemas import (
    CreateSandboxResponse,
    FileContentEntry,
    FileContentResponse,
    FileContentTreeResponse,
    FileEntry,
    FileListResponse,
    FileTreeNode,
    FileTreeResponse,
    HealthResponse,
    LogsResponse,
    MessageResponse,
    PackageResponse,
    SandboxActionResponse,
    SandboxDetail,
    SandboxInfoResponse,
    SandboxListResponse,
    SandboxStatus,
    SandboxSummaryResponse,
    UpdatePackageRequest,
    WriteFileRequest,
    WriteFileResponse,
    WriteFilesRequest,
    WriteFilesResponse,
)
from sandbox.errors import SandboxError

if TYPE_CHECKING:
    from sandbox_service import SandboxService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/containers", tags=["containers"])
health_router = APIRouter()

ContainerId = Annotated[str, Path(description="Container id, id prefix, name or sandbox id")]

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


def _server_error(event: str, e: SandboxError, **context: object) -> HTTPException:
    """Log a sandbox failure and turn it into a 500 envelope."""
    logger.error(event, error=str(e), error_type=type(e).__name__, **context)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(e),
    )


# Sandbox service dependency (set during application startup)
_sandbox_service: SandboxService | None = None


def set_sandbox_service(service: SandboxService) -> None:
    """Set the sandbox service instance for the routes.

    This should be called during application startup to inject the sandbox
    service dependency.

    Args:
        service: The SandboxService instance to use for all routes.
    """
    global _sandbox_service
    _sandbox_service = service
    logger.info("sandbox_service_configured")


def get_sandbox_service() -> SandboxService:
    """Get the sandbox service instance.

    Returns:
        The configured SandboxService instance.

    Raises:
        RuntimeError: If the sandbox service has not been configured.
    """
    if _sandbox_service is None:
        logger.error("sandbox_service_not_configured")
        raise RuntimeError(
            "SandboxService not configured. Call set_sandbox_service() during startup."
        )
    return _sandbox_service


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------


@router.get(
    "",
    response_model=SandboxListResponse,
    summary="List sandboxes",
    description="List every sandbox container known to the engine, in any state.",
)
async def list_containers() -> SandboxListResponse:
    service = get_sandbox_service()
    try:
        sandboxes = await service.list_sandboxes()
    except SandboxError as e:
        raise _server_error("list_sandboxes_failed", e) from e

    return SandboxListResponse(
        containers=[
            SandboxSummaryResponse(
                id=s.id,
                name=s.name,
                status=s.status,
                port=s.port,
                url=s.url,
            )
            for s in sandboxes
        ]
    )


@router.post(
    "/create",
    response_model=CreateSandboxResponse,
    summary="Create a sandbox",
    description="Build an image and start a new Next.js sandbox with default files.",
)
async def create_container() -> CreateSandboxResponse:
    """Create a new sandbox and start its dev server.

    Returns:
        CreateSandboxResponse with the container id, port and preview URL.

    Raises:
        HTTPException: If the build or launch fails, or no port is free.
    """
    service = get_sandbox_service()
    try:
        created = await service.create_sandbox()
    except SandboxError as e:
        raise _server_error("sandbox_creation_failed", e) from e

    logger.info(
        "sandbox_created",
        sandbox_id=created.sandbox_id,
        container_id=created.instance_id[:12],
        port=created.port,
    )

    return CreateSandboxResponse(
        container_id=created.instance_id,
        container=SandboxDetail(
            id=created.sandbox_id,
            container_id=created.instance_id,
            status=created.status,
            port=created.port,
            url=created.url,
            created_at=datetime.fromtimestamp(created.created_at, UTC).isoformat(),
        ),
    )


@router.post(
    "/{container_id}/start",
    response_model=SandboxInfoResponse,
    summary="Get sandbox run info",
    description="Return the port, URL and status of an existing sandbox.",
)
async def start_container(container_id: ContainerId) -> SandboxInfoResponse:
    service = get_sandbox_service()
    try:
        sandbox = await service.get_sandbox(container_id)
    except SandboxError as e:
        raise _server_error("sandbox_lookup_failed", e, container_id=container_id) from e

    return SandboxInfoResponse(
        container_id=container_id,
        port=sandbox.port,
        url=sandbox.url,
        status=sandbox.status,
    )


@router.post(
    "/{container_id}/stop",
    response_model=SandboxActionResponse,
    summary="Stop a sandbox",
    description="Stop and remove a sandbox container and release its port.",
)
async def stop_container(container_id: ContainerId) -> SandboxActionResponse:
    service = get_sandbox_service()
    try:
        await service.stop_sandbox(container_id)
    except SandboxError as e:
        raise _server_error("sandbox_stop_failed", e, container_id=container_id) from e

    return SandboxActionResponse(
        container_id=container_id,
        status=SandboxStatus.STOPPED,
        message="Container stopped successfully",
    )


@router.delete(
    "/{container_id}",
    response_model=SandboxActionResponse,
    summary="Delete a sandbox",
    description="Stop and remove a sandbox container and release its port.",
)
async def delete_container(container_id: ContainerId) -> SandboxActionResponse:
    service = get_sandbox_service()
    try:
        await service.stop_sandbox(container_id)
    except SandboxError as e:
        raise _server_error("sandbox_delete_failed", e, container_id=container_id) from e

    return SandboxActionResponse(
        container_id=container_id,
        message="Container deleted successfully",
    )


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------


@router.get(
    "/{container_id}/files",
    response_model=FileListResponse,
    summary="List source files",
    description="List source files (.tsx, .ts, .js, .jsx, .json) under a path.",
)
async def list_files(
    container_id: ContainerId,
    path: Annotated[str, Query(description="Path relative to the source root")] = ".",
) -> FileListResponse:
    service = get_sandbox_service()
    try:
        files = await service.list_files(container_id, path)
    except ValueError as e:
        raise _bad_request(e) from e
    except SandboxError as e:
        raise _server_error("list_files_failed", e, container_id=container_id, path=path) from e

    return FileListResponse(
        path=path,
        files=[
            FileEntry(name=f.name, path=f.path, type="file", size=f.size)
            for f in files
        ],
    )


@router.get(
    "/{container_id}/file-tree",
    response_model=FileTreeResponse,
    summary="Get the source tree",
    description="Return the nested source tree, excluding dependency and build directories.",
)
async def get_file_tree(container_id: ContainerId) -> FileTreeResponse:
    service = get_sandbox_service()
    try:
        tree = await service.file_tree(container_id)
    except SandboxError as e:
        raise _server_error("file_tree_failed", e, container_id=container_id) from e

    return FileTreeResponse(file_tree=FileTreeNode.model_validate(tree))


@router.get(
    "/{container_id}/file-content-tree",
    response_model=FileContentTreeResponse,
    summary="Get source files with content",
    description="Return a bounded set of source files together with their content.",
)
async def get_file_content_tree(container_id: ContainerId) -> FileContentTreeResponse:
    service = get_sandbox_service()
    try:
        entries = await service.file_content_tree(container_id)
    except SandboxError as e:
        raise _server_error("file_content_tree_failed", e, container_id=container_id) from e

    return FileContentTreeResponse(
        file_content_tree=[FileContentEntry.model_validate(entry) for entry in entries]
    )


@router.get(
    "/{container_id}/file",
    response_model=FileContentResponse,
    summary="Read a file",
    description="Read a file from the sandbox source tree, verbatim.",
)
async def read_file(
    container_id: ContainerId,
    path: Annotated[str | None, Query(description="Path relative to the source root")] = None,
) -> FileContentResponse:
    if not path:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File path is required",
        )

    service = get_sandbox_service()
    try:
        content = await service.read_file(container_id, path)
    except ValueError as e:
        raise _bad_request(e) from e
    except SandboxError as e:
        raise _server_error("read_file_failed", e, container_id=container_id, path=path) from e

    return FileContentResponse(path=path, content=content)


@router.put(
    "/{container_id}/file",
    response_model=WriteFileResponse,
    summary="Write a file",
    description="Write one file into the sandbox source tree.",
)
async def write_file(
    container_id: ContainerId,
    request: WriteFileRequest,
) -> WriteFileResponse:
    service = get_sandbox_service()
    try:
        await service.write_files(container_id, {request.path: request.content})
    except ValueError as e:
        raise _bad_request(e) from e
    except SandboxError as e:
        raise _server_error(
            "write_file_failed", e, container_id=container_id, path=request.path
        ) from e

    logger.info("file_written", container_id=container_id, path=request.path)
    return WriteFileResponse(path=request.path)


@router.put(
    "/{container_id}/files",
    response_model=WriteFilesResponse,
    summary="Write files",
    description="Write a batch of files into the sandbox source tree.",
)
async def write_files(
    container_id: ContainerId,
    request: WriteFilesRequest,
) -> WriteFilesResponse:
    service = get_sandbox_service()
    try:
        report = await service.write_files(container_id, request.files)
    except ValueError as e:
        raise _bad_request(e) from e
    except SandboxError as e:
        raise _server_error(
            "write_files_failed", e, container_id=container_id, files=len(request.files)
        ) from e

    return WriteFilesResponse(updated_files=report.applied)


# -----------------------------------------------------------------------------
# Logs, package manifest, export
# -----------------------------------------------------------------------------


@router.get(
    "/{container_id}/logs",
    response_model=LogsResponse,
    summary="Get sandbox logs",
    description="Return the combined stdout/stderr log of the sandbox container.",
)
async def get_logs(container_id: ContainerId) -> LogsResponse:
    service = get_sandbox_service()
    try:
        logs = await service.get_logs(container_id)
    except SandboxError as e:
        raise _server_error("get_logs_failed", e, container_id=container_id) from e

    return LogsResponse(logs=logs)


@router.get(
    "/{container_id}/package",
    response_model=PackageResponse,
    summary="Get package.json",
    description="Return the sandbox's parsed package.json.",
)
async def get_package(container_id: ContainerId) -> PackageResponse:
    service = get_sandbox_service()
    try:
        package = await service.get_package(container_id)
    except SandboxError as e:
        raise _server_error("get_package_failed", e, container_id=container_id) from e

    return PackageResponse(package=package)


@router.put(
    "/{container_id}/package",
    response_model=MessageResponse,
    summary="Replace package.json",
    description="Replace the sandbox's package.json.",
)
async def update_package(
    container_id: ContainerId,
    request: UpdatePackageRequest,
) -> MessageResponse:
    service = get_sandbox_service()
    try:
        await service.update_package(container_id, request.package)
    except SandboxError as e:
        raise _server_error("update_package_failed", e, container_id=container_id) from e

    return MessageResponse(message="Package.json updated successfully")


@router.post(
    "/{container_id}/export",
    summary="Export sources",
    description="Download the sandbox source tree as a zip archive.",
    response_class=Response,
    responses={200: {"content": {"application/zip": {}}}},
)
async def export_container(container_id: ContainerId) -> Response:
    service = get_sandbox_service()
    try:
        data = await service.export_archive(container_id)
    except SandboxError as e:
        raise _server_error("export_failed", e, container_id=container_id) from e

    return Response(
        content=data,
        media_type="application/zip",
        headers={
            "Content-Disposition": f"attachment; filename=container-{container_id}.zip"
        },
    )


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@health_router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with Docker and sandbox status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Returns Docker daemon connectivity and running sandbox count in addition
    to the basic health status and timestamp.

    Returns:
        HealthResponse with status, Docker availability, and sandbox count.
    """
    docker_available = False
    active_sandboxes = 0

    try:
        service = get_sandbox_service()
        docker_available, active_sandboxes = await service.health()
    except RuntimeError:
        # SandboxService not configured yet (e.g., during startup)
        pass
    except Exception as e:
        logger.warning("health_check_partial_failure", error=str(e))

    overall_status: str = "healthy" if docker_available else "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        docker_available=docker_available,
        active_sandboxes=active_sandboxes,
    )
