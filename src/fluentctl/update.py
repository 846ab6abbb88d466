"""Rewrite deployed image references to the bundled application version."""
from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field

from .images import (
    PRIVATE_REGISTRY,
    PUBLIC_REGISTRY,
    SERVICES,
    build_reference,
    default_registry,
    parse_image_reference,
)
from .lifecycle import ApplicationLifecycle
from .topology import TopologyDocument, load_topology, replace_image_references, write_topology
from .versions import Version, compare_versions, parse_version

LOGGER = logging.getLogger(__name__)


class VersionChange(enum.Enum):
    """Direction of a per-service image change."""

    UPGRADE = "upgrade"
    SAME = "same"
    DOWNGRADE = "downgrade"


@dataclass(frozen=True, slots=True)
class ImageInfo:
    """Image currently configured for one service."""

    service: str
    reference_text: str
    image_name: str
    version: Version


@dataclass(frozen=True, slots=True)
class UpdatePlan:
    """Target of an update and the per-service changes it implies."""

    registry: str
    target_tag: str
    target_version: Version
    images: Mapping[str, ImageInfo]
    replacements: Mapping[str, str] = field(default_factory=dict)
    changes: Mapping[str, VersionChange] = field(default_factory=dict)


def read_image_info(topology: TopologyDocument) -> dict[str, ImageInfo]:
    """Return the configured image of every service.

    Raises :class:`~fluentctl.versions.MalformedVersionError` when a tag is
    not a dotted version.
    """
    infos: dict[str, ImageInfo] = {}
    for service in SERVICES:
        text = topology.image(service)
        name, tag = parse_image_reference(text)
        infos[service] = ImageInfo(
            service=service,
            reference_text=text,
            image_name=name,
            version=parse_version(tag, allow_build=True),
        )
    return infos


def classify(current: Version, target: Version) -> VersionChange:
    """Return how moving from *current* to *target* changes the version."""
    order = compare_versions(current, target)
    if order < 0:
        return VersionChange.UPGRADE
    if order > 0:
        return VersionChange.DOWNGRADE
    return VersionChange.SAME


@dataclass(slots=True)
class UpdateOrchestrator:
    """Point the application file at the bundled version and redeploy."""

    lifecycle: ApplicationLifecycle
    application_version: str
    public_registry: str = PUBLIC_REGISTRY
    private_registry: str = PRIVATE_REGISTRY

    def plan(self, registry_override: str | None = None) -> UpdatePlan:
        """Compute the replacements for every service image."""
        self.lifecycle.require_artifacts()
        topology = load_topology(self.lifecycle.app_file)
        images = read_image_info(topology)
        registry = registry_override or default_registry(
            self.application_version,
            public=self.public_registry,
            private=self.private_registry,
        )
        target_version = parse_version(self.application_version, allow_build=True)
        replacements: dict[str, str] = {}
        changes: dict[str, VersionChange] = {}
        for service, info in images.items():
            new_reference = str(
                build_reference(registry, info.image_name, self.application_version)
            )
            replacements[info.reference_text] = new_reference
            change = classify(info.version, target_version)
            changes[service] = change
            if change is VersionChange.UPGRADE:
                LOGGER.info("Upgrading %s from %s to %s", service, info.version, target_version)
            elif change is VersionChange.DOWNGRADE:
                LOGGER.warning(
                    "Downgrading %s from %s to %s", service, info.version, target_version
                )
            else:
                LOGGER.info("Re-deploying %s at version %s", service, target_version)
        return UpdatePlan(
            registry=registry,
            target_tag=self.application_version,
            target_version=target_version,
            images=images,
            replacements=replacements,
            changes=changes,
        )

    def rewrite(self, plan: UpdatePlan) -> str:
        """Apply *plan* to the application file and return the new text."""
        topology = load_topology(self.lifecycle.app_file)
        text = replace_image_references(topology.raw, plan.replacements)
        write_topology(self.lifecycle.app_file, text)
        return text

    def redeploy(self, *, refresh_images: bool = False) -> None:
        """Optionally pull images, then undeploy and deploy again."""
        if refresh_images:
            self.lifecycle.refresh_images()
        self.lifecycle.undeploy()
        self.lifecycle.deploy()

    def run(self, registry_override: str | None = None, *, refresh_images: bool = False) -> UpdatePlan:
        """Plan, rewrite and redeploy in one call."""
        plan = self.plan(registry_override)
        self.rewrite(plan)
        self.redeploy(refresh_images=refresh_images)
        return plan


__all__ = [
    "ImageInfo",
    "UpdateOrchestrator",
    "UpdatePlan",
    "VersionChange",
    "classify",
    "read_image_info",
]
