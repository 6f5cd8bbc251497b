"""Image builds for sandbox applications."""

import asyncio
import os
import tempfile

import structlog

from config import settings
from sandbox.engine import DockerEngine
from sandbox.errors import BuildFailureError, SandboxError

logger = structlog.get_logger(__name__)

# Dev-server image for a Next.js app. The source tree (package.json
# included) is bind-mounted at the source root when the container runs.
DOCKERFILE_TEMPLATE = """\
FROM node:20-alpine

WORKDIR {source_root}

ENV NEXT_TELEMETRY_DISABLED=1 \\
    HOSTNAME=0.0.0.0 \\
    PORT={app_port}

EXPOSE {app_port}

CMD ["sh", "-c", "npm install && npx next dev --hostname 0.0.0.0 --port {app_port}"]
"""


class ImageBuilder:
    """Builds one tagged image per sandbox from a generated build context.

    Attributes:
        engine: Engine that performs the build.
        image_prefix: Prefix for image tags.
        staging_root: Host directory under which build contexts are created.
        source_root: Container directory the app source is mounted at.
        app_port: Port the dev server listens on inside the container.
        dockerfile_path: Optional Dockerfile used instead of the template.
    """

    def __init__(
        self,
        engine: DockerEngine,
        image_prefix: str | None = None,
        staging_root: str | None = None,
        dockerfile_path: str | None = None,
        source_root: str | None = None,
        app_port: int | None = None,
    ) -> None:
        self.engine = engine
        self.image_prefix = image_prefix or settings.image_prefix
        self.staging_root = staging_root or settings.staging_root
        self.source_root = source_root or settings.source_root
        self.app_port = app_port or settings.app_internal_port
        self.dockerfile_path = (
            dockerfile_path if dockerfile_path is not None
            else settings.sandbox_dockerfile_path
        )

    def image_name(self, sandbox_id: str) -> str:
        return f"{self.image_prefix}-{sandbox_id}"

    def render_dockerfile(self) -> str:
        """Return the Dockerfile text for sandbox images.

        Raises:
            BuildFailureError: If a configured Dockerfile cannot be read.
        """
        if self.dockerfile_path:
            try:
                with open(self.dockerfile_path, encoding="utf-8") as f:
                    return f.read()
            except OSError as e:
                raise BuildFailureError(
                    f"Cannot read Dockerfile {self.dockerfile_path}: {e}",
                    image=self.image_prefix,
                ) from e
        return DOCKERFILE_TEMPLATE.format(
            source_root=self.source_root,
            app_port=self.app_port,
        )

    async def build_image(self, sandbox_id: str) -> str:
        """Build the image for a sandbox and return its tag.

        The build context lives in a temporary directory that is removed
        whether the build succeeds or fails.

        Raises:
            BuildFailureError: If the build fails.
            EngineUnavailableError: If the daemon cannot be reached.
        """
        image_name = self.image_name(sandbox_id)
        dockerfile = self.render_dockerfile()
        os.makedirs(self.staging_root, exist_ok=True)

        with tempfile.TemporaryDirectory(
            prefix=f"docker-app-{sandbox_id}-",
            dir=self.staging_root,
            ignore_cleanup_errors=True,
        ) as context_dir:
            await asyncio.get_running_loop().run_in_executor(
                None, _write_dockerfile, context_dir, dockerfile
            )

            logger.info("image_build_started", image=image_name, sandbox_id=sandbox_id)
            try:
                await self.engine.build(context_dir, image_name)
            except BuildFailureError as e:
                logger.error(
                    "image_build_failed",
                    image=image_name,
                    error=str(e),
                    build_log=e.build_log[-2000:],
                )
                raise

        logger.info("image_built", image=image_name)
        return image_name

    async def remove_image(self, image_name: str) -> None:
        """Remove a sandbox image. Failures are logged, not raised."""
        try:
            await self.engine.remove_image(image_name)
            logger.info("image_removed", image=image_name)
        except SandboxError as e:
            logger.warning("image_remove_failed", image=image_name, error=str(e))


def _write_dockerfile(context_dir: str, content: str) -> None:
    with open(os.path.join(context_dir, "Dockerfile"), "w", encoding="utf-8") as f:
        f.write(content)
