"""Pydantic schemas for API request/response models.

This module defines the data models used by the sandbox HTTP API. Every
response is an envelope with a ``success`` flag; response fields are
serialized in camelCase for the browser frontend.
All models use Pydantic v2 with strict type validation.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

APP_TYPE = "Next.js App"


class SandboxStatus(StrEnum):
    """Externally visible sandbox status."""

    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


class ApiModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(ApiModel):
    """Successful response envelope."""

    success: bool = Field(default=True, description="Always true on success")


class ErrorResponse(ApiModel):
    """Failed response envelope."""

    success: bool = Field(default=False, description="Always false on failure")
    error: str = Field(description="Human-readable error message")


# -----------------------------------------------------------------------------
# Sandboxes
# -----------------------------------------------------------------------------


class SandboxSummaryResponse(ApiModel):
    """Summary information for listing sandboxes."""

    id: str = Field(description="Engine container id")
    name: str = Field(
        description="Container name",
        examples=["dec-nextjs-3f0c6c1e-8d7a-4c5e-9f57-3b1e2a4d5c6f"],
    )
    status: SandboxStatus = Field(description="Current sandbox status")
    port: int | None = Field(default=None, description="Published host port")
    url: str | None = Field(
        default=None,
        description="Preview URL of the running app",
        examples=["http://localhost:8000"],
    )
    type: str = Field(default=APP_TYPE, description="Application type")


class SandboxListResponse(ApiResponse):
    """Response for listing sandboxes."""

    containers: list[SandboxSummaryResponse] = Field(default_factory=list)


class SandboxDetail(ApiModel):
    """A freshly created sandbox."""

    id: str = Field(description="Sandbox id (UUID)")
    container_id: str = Field(description="Engine container id")
    status: SandboxStatus = Field(description="Current sandbox status")
    port: int = Field(description="Published host port")
    url: str = Field(description="Preview URL of the running app")
    created_at: str = Field(description="ISO 8601 creation timestamp")
    type: str = Field(default=APP_TYPE, description="Application type")


class CreateSandboxResponse(ApiResponse):
    """Response for sandbox creation."""

    container_id: str = Field(description="Engine container id")
    container: SandboxDetail


class SandboxInfoResponse(ApiResponse):
    """Response for looking up a running sandbox."""

    container_id: str = Field(description="Reference the caller used")
    port: int | None = None
    url: str | None = None
    status: SandboxStatus
    message: str = "Container info retrieved successfully"


class SandboxActionResponse(ApiResponse):
    """Response for stop and delete."""

    container_id: str = Field(description="Reference the caller used")
    status: SandboxStatus | None = None
    message: str


# -----------------------------------------------------------------------------
# Files
# -----------------------------------------------------------------------------


class FileEntry(ApiModel):
    """Information about a file or directory in the sandbox."""

    name: str = Field(
        description="File or directory name",
        examples=["index.tsx", "pages"],
    )
    path: str = Field(
        description="Path relative to the source root",
        examples=["pages/index.tsx", "pages"],
    )
    type: Literal["file", "directory"]
    size: int = Field(default=0, description="File size in bytes (0 for directories)")


class FileListResponse(ApiResponse):
    """Response for listing source files."""

    path: str
    files: list[FileEntry] = Field(default_factory=list)


class FileTreeNode(ApiModel):
    """A node of the nested source tree."""

    name: str
    path: str
    type: Literal["file", "directory"]
    children: list["FileTreeNode"] | None = None


class FileTreeResponse(ApiResponse):
    """Response containing the nested source tree."""

    file_tree: FileTreeNode


class FileContentEntry(ApiModel):
    """A source file together with its content."""

    path: str
    name: str
    content: str
    type: Literal["file"] = "file"


class FileContentTreeResponse(ApiResponse):
    """Response containing a bounded set of source files with content."""

    file_content_tree: list[FileContentEntry] = Field(default_factory=list)


class FileContentResponse(ApiResponse):
    """Response containing file content."""

    path: str = Field(
        description="Relative file path",
        examples=["pages/index.tsx"],
    )
    content: str = Field(description="File content, verbatim")


class WriteFileRequest(BaseModel):
    """Request body for writing one file."""

    path: str = Field(
        min_length=1,
        description="Path relative to the source root",
        examples=["pages/about.tsx"],
    )
    content: str = Field(description="Full file content")


class WriteFileResponse(ApiResponse):
    """Response for writing one file."""

    path: str
    message: str = "File updated successfully"


class WriteFilesRequest(BaseModel):
    """Request body for writing a batch of files."""

    files: dict[str, str] = Field(
        description="Mapping of relative path to full file content",
    )


class WriteFilesResponse(ApiResponse):
    """Response for writing a batch of files."""

    message: str = "Files updated successfully"
    updated_files: list[str] = Field(default_factory=list)


# -----------------------------------------------------------------------------
# Logs, package manifest, health
# -----------------------------------------------------------------------------


class LogsResponse(ApiResponse):
    """Response containing container logs."""

    logs: str


class PackageResponse(ApiResponse):
    """Response containing the parsed package.json."""

    package: dict[str, Any]


class UpdatePackageRequest(BaseModel):
    """Request body for replacing package.json."""

    package: dict[str, Any] = Field(description="The full package.json object")


class MessageResponse(ApiResponse):
    """Response carrying only a message."""

    message: str


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    docker_available: bool = Field(
        default=False,
        description="Whether the Docker daemon is reachable",
    )
    active_sandboxes: int = Field(
        default=0,
        description="Number of currently running sandbox containers",
    )
