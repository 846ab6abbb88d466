"""Provider interfaces for fluentctl."""
from __future__ import annotations

from .docker import COMPOSE_PROJECT_LABEL, DockerProvider, parse_labels
from .process import (
    ExternalCommandError,
    OutputSink,
    ProcessResult,
    ProcessRunner,
    SubprocessRunner,
    run_or_fail,
)

__all__ = [
    "COMPOSE_PROJECT_LABEL",
    "DockerProvider",
    "ExternalCommandError",
    "OutputSink",
    "ProcessResult",
    "ProcessRunner",
    "SubprocessRunner",
    "parse_labels",
    "run_or_fail",
]
