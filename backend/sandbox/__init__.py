"""Sandbox runtime module for Docker-based app containers.

This module provides the engine facade, port allocation, image builds,
container lifecycle management and file synchronization for sandboxed
Next.js development servers.
"""

from sandbox.engine import DockerEngine
from sandbox.images import ImageBuilder
from sandbox.ports import PortAllocator
from sandbox.runtime import SandboxRuntimeManager
from sandbox.security import validate_command, validate_path
from sandbox.sync import FileSyncBridge

__all__ = [
    "DockerEngine",
    "FileSyncBridge",
    "ImageBuilder",
    "PortAllocator",
    "SandboxRuntimeManager",
    "validate_command",
    "validate_path",
]
