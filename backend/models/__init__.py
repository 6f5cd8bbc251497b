"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

from models.schemas import (
    APP_TYPE,
    CreateSandboxResponse,
    ErrorResponse,
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

__all__ = [
    "APP_TYPE",
    "CreateSandboxResponse",
    "ErrorResponse",
    "FileContentEntry",
    "FileContentResponse",
    "FileContentTreeResponse",
    "FileEntry",
    "FileListResponse",
    "FileTreeNode",
    "FileTreeResponse",
    "HealthResponse",
    "LogsResponse",
    "MessageResponse",
    "PackageResponse",
    "SandboxActionResponse",
    "SandboxDetail",
    "SandboxInfoResponse",
    "SandboxListResponse",
    "SandboxStatus",
    "SandboxSummaryResponse",
    "UpdatePackageRequest",
    "WriteFileRequest",
    "WriteFileResponse",
    "WriteFilesRequest",
    "WriteFilesResponse",
]
