"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the sandbox
runtime backend. All settings can be overridden via environment variables or
a .env file.
"""

import json
import logging
import tempfile
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        project_label: Value of the ``project`` label put on every sandbox
            container. Listing queries filter on it.
        image_prefix: Prefix for sandbox image tags and container names.
        sandbox_base_port: First host port considered for sandbox allocation.
        port_scan_window: Number of candidate ports scanned from the start port.
        port_probe_host: Host address used for the live "is this port free" probe.
        app_internal_port: Port the web application listens on inside the container.
        source_root: Container path the sandbox source tree is mounted at.
        staging_root: Host directory for staging and build-context directories.
        sandbox_dockerfile_path: Optional Dockerfile overriding the built-in template.
        public_host: Hostname used when building sandbox preview URLs.
        engine_timeout_seconds: Timeout for a single Docker call.
        build_timeout_seconds: Timeout for an image build.
        engine_retry_attempts: Retries for idempotent Docker calls when the
            daemon is unavailable.
        engine_retry_delay_seconds: Base delay for exponential retry backoff.
        sandbox_reap_interval_seconds: Interval of the stale-sandbox reaper.
        file_tree_max_entries: Soft cap on entries returned by file walks.
        content_tree_max_files: Maximum files returned with content in one tree.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Sandbox identity
    project_label: str = "december"
    image_prefix: str = "dec-nextjs"

    # Port allocation
    sandbox_base_port: int = 8000
    port_scan_window: int = 1000
    port_probe_host: str = "0.0.0.0"

    # Sandbox runtime
    app_internal_port: int = 3000
    source_root: str = "/app/src"
    staging_root: str = tempfile.gettempdir()
    sandbox_dockerfile_path: str | None = None
    public_host: str = "localhost"

    # Docker engine calls
    engine_timeout_seconds: float = 30.0
    build_timeout_seconds: float = 600.0
    engine_retry_attempts: int = 2
    engine_retry_delay_seconds: float = 0.5

    # Housekeeping
    sandbox_reap_interval_seconds: float = 60.0
    file_tree_max_entries: int = 5000
    content_tree_max_files: int = 10

    # Server Configuration
    backend_port: int = 4000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list.

        Accepts:
        - JSON array: '["http://localhost:3000"]'
        - Comma-separated: 'http://localhost:3000,http://localhost:8080'
        - Single value: 'http://localhost:3000'
        - Already a list: ["http://localhost:3000"]
        """
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return json.loads(v)
                except json.JSONDecodeError:
                    pass
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return ["http://localhost:3000"]

    @field_validator("source_root")
    @classmethod
    def normalize_source_root(cls, v: str) -> str:
        """Require an absolute container path without a trailing slash."""
        if not v.startswith("/"):
            raise ValueError("source_root must be an absolute path")
        return v.rstrip("/") or "/"

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
