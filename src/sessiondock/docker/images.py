"""Session image presence check and build."""

from __future__ import annotations

import logging as py_logging

from sessiondock.constants import DOCKER_BUILD_TIMEOUT_SECONDS
from sessiondock.docker.cli import DockerCli
from sessiondock.errors import ExitCode, SessionDockError
from sessiondock.progress import ProgressLog
from sessiondock.runtime.transport import Transport

logger = py_logging.getLogger(__name__)


def image_exists(docker: DockerCli, image: str) -> bool:
    result = docker.check(
        ["images", "-q", image],
        message=f"Could not list docker images for {image}.",
        step="docker-images",
    )
    return bool(result.stdout.strip())


def ensure_image(
    docker: DockerCli,
    *,
    image: str,
    build_context: str,
    dockerfile: str,
    files: Transport,
    progress: ProgressLog | None = None,
) -> bool:
    """Build image when it is missing. Returns True when a build ran.

    ``files`` must see the build context from where the docker CLI runs.
    """
    panel = progress or ProgressLog()
    if image_exists(docker, image):
        logger.debug("Docker image present image=%s", image)
        return False

    if not build_context.strip():
        raise SessionDockError(
            f"Docker image {image} is missing and no build context is configured.",
            code=ExitCode.CONFIG_ERROR,
            hint="Set build_context in the config file or pull the image manually.",
        )
    dockerfile_path = files.path_join(build_context, dockerfile)
    if files.read_file(dockerfile_path) is None:
        raise SessionDockError(
            f"Build file not found: {dockerfile_path}",
            code=ExitCode.CONFIG_ERROR,
            hint="Check build_context and dockerfile in the config file.",
        )

    panel.record_started("docker-build", f"Building {image}; this can take several minutes")
    try:
        docker.check(
            ["build", "-t", image, "-f", dockerfile_path, build_context],
            message=f"Docker build failed for {image}.",
            timeout_seconds=DOCKER_BUILD_TIMEOUT_SECONDS,
            step="docker-build",
        )
    except SessionDockError as exc:
        panel.record_error("docker-build", exc.message)
        raise
    panel.record_success("docker-build", f"built {image}")
    logger.info("Built docker image image=%s", image)
    return True
