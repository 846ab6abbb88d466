"""Configuration loader for fluentctl.

Values are merged from four sources, later ones winning:

1. Built-in defaults.
2. ``fluentctl.yml`` in the working directory (or ``FLUENTCTL_CONFIG_FILE``,
   or the ``--config-file`` option).
3. Environment variables prefixed with ``FLUENTCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export FLUENTCTL_REGISTRIES__PRIVATE=registry.example.com
    export FLUENTCTL_POLL_INTERVAL=0.5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. Relative paths are resolved against ``workdir``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

from . import APPLICATION_VERSION
from .images import PRIVATE_REGISTRY, PUBLIC_REGISTRY

ENV_PREFIX = "FLUENTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
DEFAULT_CONFIG_NAME = "fluentctl.yml"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RegistriesConfig:
    """Container registries used to compose image references."""

    public: str = PUBLIC_REGISTRY
    private: str = PRIVATE_REGISTRY

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"public": self.public, "private": self.private}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for fluentctl."""

    config_file: Path
    workdir: Path
    app_file: Path
    env_file: Path
    backup_dir: Path
    logs_dir: Path
    docker_bin: str
    poll_interval: float
    application_version: str
    registries: RegistriesConfig
    interactive: bool

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "workdir": str(self.workdir),
            "app_file": str(self.app_file),
            "env_file": str(self.env_file),
            "backup_dir": str(self.backup_dir),
            "logs_dir": str(self.logs_dir),
            "docker_bin": self.docker_bin,
            "poll_interval": self.poll_interval,
            "application_version": self.application_version,
            "registries": self.registries.to_dict(),
            "interactive": self.interactive,
        }


DEFAULTS: dict[str, object] = {
    "config_file": DEFAULT_CONFIG_NAME,
    "workdir": ".",
    "app_file": "docker-compose.yml",
    "env_file": ".env",
    "backup_dir": "backup_db",
    "logs_dir": ".fluentctl/logs",
    "docker_bin": "docker",
    "poll_interval": 1.0,
    "application_version": APPLICATION_VERSION,
    "registries": {
        "public": PUBLIC_REGISTRY,
        "private": PRIVATE_REGISTRY,
    },
    "interactive": True,
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_REGISTRY_KEYS = {"public", "private"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(DEFAULT_CONFIG_NAME, config_file, resolved_env)

    file_values = _load_yaml_file(config_path, required=bool(config_file))
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path, *, required: bool = False) -> dict[str, object]:
    if not path.exists():
        if required:
            raise ConfigError(f"Config file {path} does not exist.")
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    registries = raw.get("registries")
    if registries is not None:
        registries_map = _as_dict(registries, "registries")
        unknown = set(registries_map.keys()) - ALLOWED_REGISTRY_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown registries configuration keys: {joined}.")

    interactive = raw.get("interactive")
    if interactive is not None and not isinstance(interactive, bool):
        raise ConfigError(f"Expected interactive to be a boolean. Got {interactive!r}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    workdir = _to_path(raw.get("workdir"))

    def _within_workdir(key: str) -> Path:
        path = _to_path(raw.get(key))
        return path if path.is_absolute() else workdir / path

    registries_mapping = _as_dict(raw.get("registries"), "registries")
    registries = RegistriesConfig(
        public=_expect_non_empty_str(
            registries_mapping.get("public", PUBLIC_REGISTRY), "registries.public"
        ),
        private=_expect_non_empty_str(
            registries_mapping.get("private", PRIVATE_REGISTRY), "registries.private"
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        workdir=workdir,
        app_file=_within_workdir("app_file"),
        env_file=_within_workdir("env_file"),
        backup_dir=_within_workdir("backup_dir"),
        logs_dir=_within_workdir("logs_dir"),
        docker_bin=_expect_non_empty_str(raw.get("docker_bin"), "docker_bin"),
        poll_interval=_expect_positive_float(raw.get("poll_interval"), "poll_interval", default=1.0),
        application_version=_expect_non_empty_str(
            raw.get("application_version"), "application_version"
        ),
        registries=registries,
        interactive=bool(raw.get("interactive", True)),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _as_dict(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return {str(key): item for key, item in value.items()}


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_non_empty_str(value: object, key: str) -> str:
    # Environment coercion turns numeric-looking values into numbers.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    raise ConfigError(f"Expected {key} to resolve to a non-empty string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be a number. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return numeric


__all__ = ["AppConfig", "ConfigError", "RegistriesConfig", "load_config"]
