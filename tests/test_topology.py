"""Tests for the Docker Compose application file."""
from __future__ import annotations

from pathlib import Path

import pytest
import yaml
from conftest import image_map

from fluentctl.topology import (
    MissingArtifactError,
    TopologyError,
    alias_suffix,
    load_topology,
    render_topology,
    replace_image_references,
    write_topology,
)


def test_render_topology_structure() -> None:
    """The document wires three services, a named volume and a network."""
    images = image_map("25.0.0.2")
    document = yaml.safe_load(render_topology(images, port=8081))
    assert document["version"] == "3"
    services = document["services"]
    assert list(services) == ["frontend", "backend", "db"]

    frontend = services["frontend"]
    assert frontend["container_name"] == "fluent-manager-frontend"
    assert frontend["image"] == images["frontend"]
    assert frontend["ports"] == ["8081:8080"]
    assert frontend["depends_on"] == ["backend"]
    assert frontend["restart"] == "always"
    assert frontend["env_file"] == ".env"
    assert frontend["logging"] == {
        "driver": "json-file",
        "options": {"max-size": "50m", "max-file": "3"},
    }
    assert services["backend"]["depends_on"] == ["db"]
    assert "ports" not in services["backend"]
    assert services["db"]["volumes"] == ["fluent-manager-db:/var/lib/postgresql/data"]
    assert document["volumes"] == {"fluent-manager-db": {"name": "fluent-manager-db"}}
    assert document["networks"] == {"default": {"name": "fluent-manager-network"}}


def test_render_topology_applies_alias_everywhere() -> None:
    """Container, volume and network names carry the alias suffix."""
    document = yaml.safe_load(render_topology(image_map(), alias="staging"))
    assert document["services"]["db"]["container_name"] == "fluent-manager-db-staging"
    assert document["volumes"] == {
        "fluent-manager-db-staging": {"name": "fluent-manager-db-staging"}
    }
    assert document["networks"]["default"]["name"] == "fluent-manager-network-staging"


def test_render_topology_requires_every_service() -> None:
    """Missing images are reported instead of producing an incomplete file."""
    images = image_map()
    images.pop("db")
    with pytest.raises(TopologyError):
        render_topology(images)


@pytest.mark.parametrize(("alias", "expected"), [(None, ""), ("", ""), ("  ", ""), ("a", "-a")])
def test_alias_suffix(alias: str | None, expected: str) -> None:
    """Blank aliases add no suffix."""
    assert alias_suffix(alias) == expected


def test_load_topology_accessors(tmp_path: Path) -> None:
    """Parsed documents expose images, container names, volume and network."""
    path = tmp_path / "docker-compose.yml"
    write_topology(path, render_topology(image_map(), alias="x"))
    document = load_topology(path)
    assert document.image("db") == image_map()["db"]
    assert document.container_name("frontend") == "fluent-manager-frontend-x"
    assert document.db_volume == "fluent-manager-db-x"
    assert document.network_name == "fluent-manager-network-x"
    assert document.raw == path.read_text(encoding="utf-8")


def test_load_topology_missing_file(tmp_path: Path) -> None:
    """An absent file raises with the user-facing message."""
    with pytest.raises(MissingArtifactError, match="docker-compose.yml file doesn't exist"):
        load_topology(tmp_path / "docker-compose.yml")


def test_load_topology_rejects_malformed_documents(tmp_path: Path) -> None:
    """Invalid YAML and missing services raise :class:`TopologyError`."""
    path = tmp_path / "docker-compose.yml"
    path.write_text("services: [unclosed\n", encoding="utf-8")
    with pytest.raises(TopologyError):
        load_topology(path)

    path.write_text("services:\n  frontend:\n    image: app:1\n", encoding="utf-8")
    document = load_topology(path)
    assert document.image("frontend") == "app:1"
    with pytest.raises(TopologyError):
        document.image("db")
    with pytest.raises(TopologyError):
        _ = document.network_name


def test_replace_image_references_replaces_every_occurrence() -> None:
    """Replacement is literal, so repeated references all change."""
    text = "image: a/b:1\n# was a/b:1\nimage: c/d:1\n"
    replaced = replace_image_references(text, {"a/b:1": "r/a/b:2", "c/d:1": "r/c/d:2"})
    assert replaced == "image: r/a/b:2\n# was r/a/b:2\nimage: r/c/d:2\n"
