"""Image reference composition, registry selection and override probing.

Registry choice follows the shape of the version being deployed: public
releases carry a four-component tag (``25.0.0.2``) and are pulled from the
public registry, anything else (snapshots, internal builds) from the private
one. Override tags are best effort: when the registry cannot confirm the
requested tag, the default reference is kept and the reason is reported.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from .providers.docker import DockerProvider

LOGGER = logging.getLogger(__name__)

PUBLIC_REGISTRY = "public.ecr.aws"
PRIVATE_REGISTRY = "012161395203.dkr.ecr.us-east-1.amazonaws.com"

FRONTEND = "frontend"
BACKEND = "backend"
DB = "db"
SERVICES: tuple[str, ...] = (FRONTEND, BACKEND, DB)

IMAGE_NAMES: Mapping[str, str] = {
    FRONTEND: "apryse/fluent-manager-frontend",
    BACKEND: "apryse/fluent-manager-backend",
    DB: "apryse/fluent-manager-db",
}

_RELEASE_TAG = re.compile(r"[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+")


@dataclass(frozen=True, slots=True)
class ImageReference:
    """``registry/name:tag`` triple."""

    registry: str | None
    name: str
    tag: str

    def __post_init__(self) -> None:
        """Require a non-empty image name."""
        if not self.name.strip():
            raise ValueError("Image name must be a non-empty string.")

    def __str__(self) -> str:
        if self.registry and self.registry.strip():
            return f"{self.registry}/{self.name}:{self.tag}"
        return f"{self.name}:{self.tag}"


@dataclass(frozen=True, slots=True)
class ImageRegistrySet:
    """Registry chosen for each service."""

    frontend: str
    backend: str
    db: str

    @classmethod
    def uniform(cls, registry: str) -> ImageRegistrySet:
        """Return a set that uses *registry* for every service."""
        return cls(frontend=registry, backend=registry, db=registry)

    def for_service(self, service: str) -> str:
        """Return the registry for *service*."""
        return str(getattr(self, service))


def default_registry(
    version: str,
    *,
    public: str = PUBLIC_REGISTRY,
    private: str = PRIVATE_REGISTRY,
) -> str:
    """Return the registry matching the shape of *version*."""
    if _RELEASE_TAG.fullmatch(version):
        return public
    return private


def build_reference(registry: str | None, name: str, tag: str) -> ImageReference:
    """Compose an :class:`ImageReference`."""
    return ImageReference(registry=registry, name=name, tag=tag)


def parse_image_reference(text: str) -> tuple[str, str]:
    """Split a deployed image string into ``(bare name, tag)``.

    The registry segment is dropped when the name holds two ``/`` separators
    (``registry/org/image``); the tag is empty when none is present.
    """
    name, _, tag = text.partition(":")
    if name.count("/") == 2:
        name = name.split("/", 1)[1]
    return name, tag


def registry_for_service(
    override_tag: str | None,
    user_registry: str | None,
    default_tag: str,
    fallback_registry: str,
    *,
    public: str = PUBLIC_REGISTRY,
    private: str = PRIVATE_REGISTRY,
) -> str:
    """Pick the registry for one service given its optional override tag."""
    effective = override_tag if override_tag and override_tag.strip() else default_tag
    if user_registry:
        return user_registry
    if not effective.strip():
        return fallback_registry
    return default_registry(effective, public=public, private=private)


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    """Result of asking a registry whether a reference exists."""

    available: bool
    reason: str = ""


class ImageTagProbe(Protocol):
    """Capability to confirm that an image reference exists in its registry."""

    def probe(self, reference: str) -> ProbeOutcome:
        """Return whether *reference* can be pulled."""
        ...


@dataclass(slots=True)
class DockerManifestProbe:
    """Probe registries with ``docker manifest inspect``."""

    docker: DockerProvider

    def probe(self, reference: str) -> ProbeOutcome:
        """Return availability of *reference*; never raises for command failures."""
        result = self.docker.manifest_inspect(reference)
        if result.ok:
            return ProbeOutcome(available=True)
        detail = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        return ProbeOutcome(
            available=False,
            reason=detail or f"docker manifest inspect exited with {result.returncode}",
        )


@dataclass(frozen=True, slots=True)
class OverrideResolution:
    """Outcome of an override request: the chosen reference and whether it fell back."""

    reference: str
    fell_back: bool = False
    reason: str = ""
    requested: str = ""


def resolve_override(
    probe: ImageTagProbe,
    base_name: str,
    base_reference: str,
    requested_tag: str,
    registry: str | None,
) -> OverrideResolution:
    """Return the overridden reference when available, else *base_reference*."""
    candidate = str(build_reference(registry, base_name, requested_tag))
    outcome = probe.probe(candidate)
    if outcome.available:
        return OverrideResolution(reference=candidate, requested=candidate)
    LOGGER.warning(
        "Could not find image %s. Falling back to default reference %s. Registry said: %s",
        candidate,
        base_reference,
        outcome.reason,
    )
    return OverrideResolution(
        reference=base_reference,
        fell_back=True,
        reason=outcome.reason,
        requested=candidate,
    )


@dataclass(slots=True)
class ImageResolver:
    """Resolve the image reference of every service for one invocation."""

    probe: ImageTagProbe
    default_tag: str
    image_names: Mapping[str, str] = field(default_factory=lambda: dict(IMAGE_NAMES))

    def resolve_all(
        self,
        registries: ImageRegistrySet,
        overrides: Mapping[str, str | None] | None = None,
    ) -> dict[str, OverrideResolution]:
        """Return one resolution per service, applying non-blank override tags."""
        requested = dict(overrides or {})
        resolved: dict[str, OverrideResolution] = {}
        for service in SERVICES:
            name = self.image_names[service]
            registry = registries.for_service(service)
            base = str(build_reference(registry, name, self.default_tag))
            tag = requested.get(service)
            if tag and tag.strip():
                resolved[service] = resolve_override(self.probe, name, base, tag.strip(), registry)
            else:
                resolved[service] = OverrideResolution(reference=base)
        return resolved


__all__ = [
    "BACKEND",
    "DB",
    "DockerManifestProbe",
    "FRONTEND",
    "IMAGE_NAMES",
    "ImageReference",
    "ImageRegistrySet",
    "ImageResolver",
    "ImageTagProbe",
    "OverrideResolution",
    "PRIVATE_REGISTRY",
    "PUBLIC_REGISTRY",
    "ProbeOutcome",
    "SERVICES",
    "build_reference",
    "default_registry",
    "parse_image_reference",
    "registry_for_service",
    "resolve_override",
]
