"""Generation and inspection of the Docker Compose application file."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .images import BACKEND, DB, FRONTEND, SERVICES

COMPOSE_VERSION = "3"
CONTAINER_PORT = 8080
DEFAULT_HOST_PORT = 80
DB_DATA_PATH = "/var/lib/postgresql/data"
LOG_MAX_SIZE = "50m"
LOG_MAX_FILE = "3"

_DEPENDENCIES: Mapping[str, str] = {FRONTEND: BACKEND, BACKEND: DB}


class TopologyError(RuntimeError):
    """Raised when the application file cannot be parsed or lacks required entries."""


class MissingArtifactError(RuntimeError):
    """Raised when a required application artifact does not exist."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        """Record the missing *path* alongside the user-facing message."""
        super().__init__(message)
        self.path = path


def alias_suffix(alias: str | None) -> str:
    """Return ``-<alias>`` for a non-blank alias, else an empty string."""
    if alias is None or not alias.strip():
        return ""
    return f"-{alias.strip()}"


def container_name(service: str, alias: str | None = None) -> str:
    """Return the container name used for *service*."""
    return f"fluent-manager-{service}{alias_suffix(alias)}"


def render_topology(
    images: Mapping[str, str],
    *,
    port: int = DEFAULT_HOST_PORT,
    alias: str | None = None,
    env_file: str = ".env",
) -> str:
    """Return the YAML application file for the given per-service images."""
    suffix = alias_suffix(alias)
    volume_name = f"fluent-manager-db{suffix}"
    services: dict[str, object] = {}
    for service in SERVICES:
        try:
            image = images[service]
        except KeyError as exc:
            raise TopologyError(f"No image reference supplied for service '{service}'.") from exc
        entry: dict[str, object] = {
            "container_name": container_name(service, alias),
            "restart": "always",
            "image": image,
            "env_file": env_file,
        }
        if service == FRONTEND:
            entry["ports"] = [f"{port}:{CONTAINER_PORT}"]
        if service in _DEPENDENCIES:
            entry["depends_on"] = [_DEPENDENCIES[service]]
        if service == DB:
            entry["volumes"] = [f"{volume_name}:{DB_DATA_PATH}"]
        entry["logging"] = {
            "driver": "json-file",
            "options": {"max-size": LOG_MAX_SIZE, "max-file": LOG_MAX_FILE},
        }
        services[service] = entry

    document = {
        "version": COMPOSE_VERSION,
        "services": services,
        "volumes": {volume_name: {"name": volume_name}},
        "networks": {"default": {"name": f"fluent-manager-network{suffix}"}},
    }
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


def write_topology(path: Path, text: str) -> None:
    """Atomically replace the application file at *path* with *text*."""
    path = path.expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


@dataclass(frozen=True, slots=True)
class TopologyDocument:
    """Parsed application file."""

    path: Path
    raw: str
    data: Mapping[str, object] = field(repr=False)

    def _service(self, service: str) -> Mapping[str, object]:
        services = self.data.get("services")
        if not isinstance(services, Mapping):
            raise TopologyError(f"{self.path} does not define any services.")
        entry = services.get(service)
        if not isinstance(entry, Mapping):
            raise TopologyError(f"{self.path} does not define the '{service}' service.")
        return entry

    def _service_value(self, service: str, key: str) -> str:
        value = self._service(service).get(key)
        if not isinstance(value, str) or not value.strip():
            raise TopologyError(f"Service '{service}' in {self.path} has no {key}.")
        return value

    def image(self, service: str) -> str:
        """Return the image reference configured for *service*."""
        return self._service_value(service, "image")

    def container_name(self, service: str) -> str:
        """Return the container name configured for *service*."""
        return self._service_value(service, "container_name")

    @property
    def db_volume(self) -> str:
        """Return the named volume that holds the database data directory."""
        volumes = self._service(DB).get("volumes")
        if not isinstance(volumes, list) or not volumes:
            raise TopologyError(f"Service '{DB}' in {self.path} has no volumes.")
        return str(volumes[0]).split(":", 1)[0]

    @property
    def network_name(self) -> str:
        """Return the name of the default network."""
        networks = self.data.get("networks")
        default = networks.get("default") if isinstance(networks, Mapping) else None
        name = default.get("name") if isinstance(default, Mapping) else None
        if not isinstance(name, str) or not name.strip():
            raise TopologyError(f"{self.path} does not name its default network.")
        return name


def load_topology(path: Path) -> TopologyDocument:
    """Read and parse the application file at *path*."""
    if not path.exists():
        raise MissingArtifactError(f"{path.name} file doesn't exist", path)
    raw = path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise TopologyError(f"Failed to parse {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise TopologyError(f"{path} must contain a mapping at the top level.")
    return TopologyDocument(path=path, raw=raw, data=data)


def replace_image_references(text: str, replacements: Mapping[str, str]) -> str:
    """Replace every literal occurrence of each old reference with its new value."""
    for old, new in replacements.items():
        if old and old != new:
            text = text.replace(old, new)
    return text


__all__ = [
    "MissingArtifactError",
    "TopologyDocument",
    "TopologyError",
    "alias_suffix",
    "container_name",
    "load_topology",
    "render_topology",
    "replace_image_references",
    "write_topology",
]
