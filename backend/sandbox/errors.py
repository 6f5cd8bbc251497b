"""Exception hierarchy for sandbox lifecycle operations.

Every failure coming out of the Docker engine boundary is wrapped in one of
these types with operation context, so the route layer can map them to the
response envelope without knowing about Docker internals.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sandbox.sync import SyncReport


class SandboxError(Exception):
    """Base class for all sandbox lifecycle failures."""


class ResourceExhaustionError(SandboxError):
    """No host port was available in the scan window."""


class BuildFailureError(SandboxError):
    """The engine image build exited with an error.

    Attributes:
        image: The image tag that was being built.
        build_log: Captured engine build output.
    """

    def __init__(self, message: str, *, image: str, build_log: str = "") -> None:
        super().__init__(message)
        self.image = image
        self.build_log = build_log


class LaunchFailureError(SandboxError):
    """The engine failed to run a container. The reserved port was rolled back."""


class TeardownFailureError(SandboxError):
    """Stopping or removing a container failed.

    The sandbox may be partially torn down (for example stopped but not
    removed); the stale entry is reaped by a later pass.

    Attributes:
        container_id: The container being torn down.
        failed_steps: Names of the steps that failed ("stop", "remove").
    """

    def __init__(
        self, message: str, *, container_id: str, failed_steps: list[str]
    ) -> None:
        super().__init__(message)
        self.container_id = container_id
        self.failed_steps = failed_steps


class SyncFailureError(SandboxError):
    """One or more file copies failed mid-batch.

    Files copied before the failure stay applied.

    Attributes:
        path: The first path that failed.
        report: The full per-path report for the batch.
    """

    def __init__(self, message: str, *, path: str, report: SyncReport) -> None:
        super().__init__(message)
        self.path = path
        self.report = report


class NotFoundError(SandboxError):
    """A referenced sandbox or file does not exist."""


class SandboxNotFoundError(NotFoundError):
    """No sandbox container matches the given reference."""


class PathNotFoundError(NotFoundError):
    """The requested path does not exist inside the sandbox."""


class EngineUnavailableError(SandboxError):
    """The Docker daemon did not answer in time or refused the connection.

    This is the only condition that is retried automatically.
    """


class EngineCommandError(SandboxError):
    """Any other Docker engine failure, wrapped with operation context."""
