"""Docker and Docker Compose provider built on the process boundary."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .process import ProcessResult, ProcessRunner, run_or_fail

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
LABELS_FORMAT = "'{{.Config.Labels}}'"


@dataclass(slots=True)
class DockerProvider:
    """Issue docker CLI commands for the deployed application."""

    runner: ProcessRunner
    docker_bin: str = "docker"
    compose_file: Path | None = None

    # Compose lifecycle -------------------------------------------------
    def compose_up(self) -> ProcessResult:
        """Create (or recreate) and start all services in the background."""
        return self._compose("up", "-d", "--force-recreate")

    def compose_down(self, project: str | None = None) -> ProcessResult:
        """Remove containers and the default network of *project*."""
        return self._compose("down", project=project)

    def compose_remove(self, project: str | None = None) -> ProcessResult:
        """Remove containers, images and volumes of *project*."""
        return self._compose("down", "--rmi", "all", "-v", project=project)

    def compose_start(self) -> ProcessResult:
        """Start previously created services."""
        return self._compose("start")

    def compose_stop(self) -> ProcessResult:
        """Stop running services without removing them."""
        return self._compose("stop")

    def compose_pull(self) -> ProcessResult:
        """Pull the images referenced by the application file."""
        return self._compose("pull")

    # Containers --------------------------------------------------------
    def project_name(self, container: str) -> str | None:
        """Return the compose project label of *container* (``None`` when absent)."""
        result = run_or_fail(
            self.runner,
            [self.docker_bin, "inspect", "--format", LABELS_FORMAT, container],
        )
        labels = parse_labels(result.stdout)
        return labels.get(COMPOSE_PROJECT_LABEL)

    def run_detached(
        self,
        options: Sequence[str],
        image: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Start a detached helper container and return its id.

        *env* values reach the container through the docker client's
        environment; only the variable names appear on the command line.
        """
        result = run_or_fail(
            self.runner,
            [self.docker_bin, "run", "-d", *options, *_env_flags(env), image, *command],
            env=env,
        )
        return result.stdout.strip()

    def run_once(
        self,
        options: Sequence[str],
        image: str,
        command: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Run a throwaway container in the foreground (``--rm``)."""
        return run_or_fail(
            self.runner,
            [self.docker_bin, "run", *options, *_env_flags(env), "--rm", image, *command],
            echo=True,
            env=env,
        )

    def is_listed(self, container_id: str) -> bool:
        """Return ``True`` while ``docker ps`` still lists *container_id*."""
        result = run_or_fail(
            self.runner,
            [self.docker_bin, "ps", "-f", f"id={container_id}", "-q"],
        )
        return bool(result.stdout.strip())

    def copy_from_container(self, container_id: str, source: str, destination: Path) -> ProcessResult:
        """Copy *source* out of *container_id* into *destination*."""
        return run_or_fail(
            self.runner,
            [self.docker_bin, "cp", f"{container_id}:{source}", str(destination)],
            echo=True,
        )

    def remove_container(self, container_id: str) -> ProcessResult:
        """Force-remove *container_id*."""
        return run_or_fail(
            self.runner,
            [self.docker_bin, "container", "rm", "-f", container_id],
        )

    # Registry ----------------------------------------------------------
    def manifest_inspect(self, reference: str) -> ProcessResult:
        """Query the registry for *reference* without raising on failure."""
        return self.runner.run([self.docker_bin, "manifest", "inspect", reference])

    # ------------------------------------------------------------------
    def _compose(self, *args: str, project: str | None = None) -> ProcessResult:
        command: list[str] = [self.docker_bin, "compose"]
        if self.compose_file is not None:
            command.extend(["-f", str(self.compose_file)])
        if project:
            command.extend(["-p", project])
        command.extend(args)
        return run_or_fail(self.runner, command, echo=True)


def _env_flags(env: Mapping[str, str] | None) -> list[str]:
    return [flag for name in env or {} for flag in ("-e", name)]


def parse_labels(output: str) -> dict[str, str]:
    """Parse ``map[key:value ...]`` output produced by ``docker inspect``."""
    text = output.strip().strip("'\"")
    if "map[" in text:
        text = text.split("map[", 1)[1]
    text = text.split("]", 1)[0]
    labels: dict[str, str] = {}
    for token in text.split(" "):
        if ":" not in token:
            continue
        key, _, value = token.partition(":")
        labels[key] = value
    return labels


__all__ = ["COMPOSE_PROJECT_LABEL", "DockerProvider", "parse_labels"]
