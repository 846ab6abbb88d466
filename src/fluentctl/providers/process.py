"""Process boundary used for every container runtime interaction."""
from __future__ import annotations

import concurrent.futures
import os
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

OutputSink = Callable[[str, bool], None]
"""Receives ``(line, is_stderr)`` for commands executed with ``echo=True``."""

MISSING_EXECUTABLE_EXIT_CODE = 127


class ExternalCommandError(RuntimeError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self,
        command: Sequence[str],
        exit_code: int,
        *,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        """Record the failing command and its captured output."""
        self.command = tuple(command)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip() or "no output"
        super().__init__(
            f"Unexpected exit code: {exit_code} while executing: "
            f"{' '.join(self.command)} ({detail})"
        )


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Captured outcome of a finished command."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0


class ProcessRunner(Protocol):
    """Strategy interface for executing external commands."""

    def run(
        self,
        args: Sequence[str],
        *,
        echo: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Execute *args* and return the captured result without raising.

        *env* entries are added to the inherited environment of the child.
        """
        ...


@dataclass(slots=True)
class SubprocessRunner:
    """Run commands with :mod:`subprocess`, draining both pipes concurrently."""

    sink: OutputSink | None = None
    cwd: Path | None = None

    def run(
        self,
        args: Sequence[str],
        *,
        echo: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Execute *args*; when *echo* is set each output line is forwarded to the sink."""
        command = tuple(str(arg) for arg in args)
        child_env = {**os.environ, **env} if env else None
        try:
            process = subprocess.Popen(  # noqa: S603 - commands are assembled internally
                list(command),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=str(self.cwd) if self.cwd is not None else None,
                env=child_env,
            )
        except FileNotFoundError as exc:
            return ProcessResult(
                command,
                MISSING_EXECUTABLE_EXIT_CODE,
                stdout="",
                stderr=f"{command[0]} not found: {exc}",
            )

        assert process.stdout is not None
        assert process.stderr is not None
        forward = self.sink if echo else None
        with concurrent.futures.ThreadPoolExecutor(max_workers=2) as readers:
            stdout_future = readers.submit(_drain, process.stdout, forward, False)
            stderr_future = readers.submit(_drain, process.stderr, forward, True)
            process.wait()
            stdout = stdout_future.result()
            stderr = stderr_future.result()
        return ProcessResult(command, process.returncode, stdout=stdout, stderr=stderr)


def _drain(stream: IO[str], sink: OutputSink | None, is_stderr: bool) -> str:
    chunks: list[str] = []
    try:
        for line in stream:
            chunks.append(line)
            if sink is not None:
                sink(line.rstrip("\n"), is_stderr)
    finally:
        stream.close()
    return "".join(chunks)


def run_or_fail(
    runner: ProcessRunner,
    args: Sequence[str],
    *,
    echo: bool = False,
    env: Mapping[str, str] | None = None,
) -> ProcessResult:
    """Run *args* through *runner* and raise :class:`ExternalCommandError` on failure."""
    result = runner.run(args, echo=echo, env=env)
    if not result.ok:
        raise ExternalCommandError(
            result.args or tuple(args),
            result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )
    return result


__all__ = [
    "ExternalCommandError",
    "MISSING_EXECUTABLE_EXIT_CODE",
    "OutputSink",
    "ProcessResult",
    "ProcessRunner",
    "SubprocessRunner",
    "run_or_fail",
]
