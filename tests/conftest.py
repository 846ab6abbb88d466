"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from fluentctl.images import build_reference
from fluentctl.providers.docker import DockerProvider
from fluentctl.providers.process import ProcessResult
from fluentctl.topology import render_topology


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class _Rule:
    fragment: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    times: int | None


@dataclass
class FakeRunner:
    """Process runner that records commands and replays scripted results.

    Rules match when their fragment appears as a contiguous run of arguments.
    The first live rule wins; unmatched commands succeed with empty output.
    """

    calls: list[tuple[str, ...]] = field(default_factory=list)
    echoed: list[bool] = field(default_factory=list)
    environments: list[dict[str, str]] = field(default_factory=list)
    on_run: Callable[[tuple[str, ...]], None] | None = None
    _rules: list[_Rule] = field(default_factory=list)

    def when(
        self,
        *fragment: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        times: int | None = None,
    ) -> FakeRunner:
        """Script the result of commands containing *fragment*."""
        self._rules.append(_Rule(tuple(fragment), returncode, stdout, stderr, times))
        return self

    def run(
        self,
        args: Sequence[str],
        *,
        echo: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Record *args* (and extra environment) and return the scripted result."""
        command = tuple(str(arg) for arg in args)
        self.calls.append(command)
        self.echoed.append(echo)
        self.environments.append(dict(env or {}))
        if self.on_run is not None:
            self.on_run(command)
        for rule in self._rules:
            if rule.times is not None and rule.times <= 0:
                continue
            if _contains(command, rule.fragment):
                if rule.times is not None:
                    rule.times -= 1
                return ProcessResult(command, rule.returncode, rule.stdout, rule.stderr)
        return ProcessResult(command, 0, "", "")

    def commands_with(self, *fragment: str) -> list[tuple[str, ...]]:
        """Return recorded commands containing *fragment*."""
        return [call for call in self.calls if _contains(call, tuple(fragment))]


def _contains(command: tuple[str, ...], fragment: tuple[str, ...]) -> bool:
    if not fragment:
        return True
    width = len(fragment)
    return any(command[index : index + width] == fragment for index in range(len(command)))


def image_map(tag: str = "25.0.0.1", registry: str | None = "public.ecr.aws") -> dict[str, str]:
    """Return service images for *tag* in *registry*."""
    names = {
        "frontend": "apryse/fluent-manager-frontend",
        "backend": "apryse/fluent-manager-backend",
        "db": "apryse/fluent-manager-db",
    }
    return {service: str(build_reference(registry, name, tag)) for service, name in names.items()}


def write_app_files(
    workdir: Path,
    *,
    tag: str = "25.0.0.1",
    alias: str | None = None,
    env_text: str | None = "POSTGRES_PASSWORD=s3cret\n",
) -> Path:
    """Write an application file (and optionally an env file) into *workdir*."""
    workdir.mkdir(parents=True, exist_ok=True)
    app_file = workdir / "docker-compose.yml"
    app_file.write_text(render_topology(image_map(tag), alias=alias), encoding="utf-8")
    if env_text is not None:
        (workdir / ".env").write_text(env_text, encoding="utf-8")
    return app_file


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return an empty :class:`FakeRunner`."""
    return FakeRunner()


@pytest.fixture
def docker(fake_runner: FakeRunner, tmp_path: Path) -> DockerProvider:
    """Return a docker provider bound to the fake runner."""
    return DockerProvider(
        runner=fake_runner,
        docker_bin="docker",
        compose_file=tmp_path / "docker-compose.yml",
    )
