"""Deploy, undeploy, start, stop and remove the composed application."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .images import FRONTEND
from .providers.docker import DockerProvider
from .providers.process import ProcessResult
from .topology import MissingArtifactError, load_topology

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ApplicationLifecycle:
    """Lifecycle operations guarded by checks on the application artifacts."""

    docker: DockerProvider
    app_file: Path
    env_file: Path

    def require_artifacts(self, *, env_file: bool = True) -> None:
        """Raise :class:`MissingArtifactError` when a required file is absent."""
        if not self.app_file.exists():
            raise MissingArtifactError(f"{self.app_file.name} file doesn't exist", self.app_file)
        if env_file and not self.env_file.exists():
            raise MissingArtifactError(f"{self.env_file.name} file doesn't exist", self.env_file)

    def deploy(self) -> ProcessResult:
        """Create and start every service."""
        self.require_artifacts()
        return self.docker.compose_up()

    def undeploy(self) -> ProcessResult:
        """Remove the containers and network of the deployed project."""
        self.require_artifacts()
        return self.docker.compose_down(self.project_name())

    def start(self) -> ProcessResult:
        """Start previously created services."""
        self.require_artifacts()
        return self.docker.compose_start()

    def stop(self) -> ProcessResult:
        """Stop running services."""
        self.require_artifacts()
        return self.docker.compose_stop()

    def refresh_images(self) -> ProcessResult:
        """Pull every image referenced by the application file."""
        self.require_artifacts(env_file=False)
        return self.docker.compose_pull()

    def remove(self) -> ProcessResult:
        """Remove containers, images and volumes of the deployed project."""
        self.require_artifacts(env_file=False)
        return self.docker.compose_remove(self.project_name())

    def project_name(self) -> str | None:
        """Return the compose project the frontend container belongs to.

        ``None`` means the container carries no project label; compose then
        derives the project from the application file. Failures of
        ``docker inspect`` propagate as :class:`ExternalCommandError`.
        """
        container = load_topology(self.app_file).container_name(FRONTEND)
        project = self.docker.project_name(container)
        if not project:
            LOGGER.warning("Container %s carries no compose project label", container)
        return project or None


__all__ = ["ApplicationLifecycle"]
