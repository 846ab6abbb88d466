"""Structured operation logging for fluentctl commands.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps and a final result, then appends one JSON object per line to
``operations.jsonl`` and a one-line summary to ``fluentctl.log`` in the
configured logs directory. Logging never fails a command: when the
directory cannot be created or a write fails the logger disables itself.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "fluentctl.log"
REDACTED = "***"
_SECRET_MARKERS = ("password", "token", "secret")


def _utcnow() -> str:
    return datetime.now(UTC).isoformat()


def sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitise(item) for item in value]
    return str(value)


def redact_secrets(value: object) -> object:
    """Replace values stored under secret-looking keys with a placeholder."""
    if isinstance(value, Mapping):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            name = str(key).lower()
            if item not in (None, "") and any(marker in name for marker in _SECRET_MARKERS):
                redacted[str(key)] = REDACTED
            else:
                redacted[str(key)] = redact_secrets(item)
        return redacted
    if isinstance(value, (list, tuple)):
        return [redact_secrets(item) for item in value]
    return value


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single command execution."""

    command: str
    args: dict[str, object]
    target: dict[str, object] | None
    started: float = field(default_factory=time.monotonic)
    started_at: str = field(default_factory=_utcnow)
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, object] = {"name": name, "status": status, "timestamp": _utcnow()}
        if detail is not None:
            step["detail"] = sanitise(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=errors if errors is not None else [message],
            backups=None,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        backups: Sequence[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
            "warnings": [str(item) for item in warnings or []],
            "errors": [str(item) for item in errors or []],
            "backups": [str(item) for item in backups or []],
            "context": sanitise(dict(context or {})),
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record written to the operations log."""
        return {
            "id": self.operation_id,
            "timestamp": self.started_at,
            "command": self.command,
            "args": sanitise(redact_secrets(self.args)),
            "target": sanitise(self.target) if self.target is not None else None,
            "steps": list(self.steps),
            "result": self.result,
            "duration_ms": int((time.monotonic() - self.started) * 1000),
            "context": {"fluentctl_version": __version__},
        }


class StructuredLogger:
    """Append operation records to the logs directory."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; the logger is disabled when it cannot be created."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the JSON Lines log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and persist it when the block exits."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target) if target is not None else None,
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                code = getattr(exc, "exit_code", None)
                if code == 0:
                    scope.success("Operation completed.")
                else:
                    message = str(exc) or type(exc).__name__
                    scope.error(message, rc=code if isinstance(code, int) else 1)
            raise
        else:
            if scope.result is None:
                scope.success("Operation completed.")
        finally:
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = record.get("result") or {}
        status = result.get("status", "unknown") if isinstance(result, Mapping) else "unknown"
        message = result.get("message", "") if isinstance(result, Mapping) else ""
        human_line = f"{record['timestamp']} {scope.command} [{status}] {message}\n"
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(human_line)
        except OSError as exc:
            LOGGER.debug("Disabling structured logging after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "redact_secrets", "sanitise"]
