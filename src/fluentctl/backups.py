"""Database dump and full-volume backup/restore through helper containers.

Every operation runs a throwaway container from the deployed database image:

* ``db_dump`` runs ``pg_dump`` against the live database container.
* ``db_full_backup`` stops the application and archives the database volume.
* ``restore_dump`` replays a dump with ``pg_restore``.
* ``restore_full`` stops the application, wipes the volume and unpacks an archive.

Artifacts are plain files in the backup directory; their names encode the
creation time and their suffix the kind of backup.
"""
from __future__ import annotations

import enum
import logging
import os
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .envfile import (
    DEFAULT_DATABASE_NAME,
    DEFAULT_DATABASE_USER,
    KEY_POSTGRES_PASSWORD,
    read_env_value,
)
from .images import DB
from .providers.docker import DockerProvider
from .topology import TopologyDocument, load_topology

LOGGER = logging.getLogger(__name__)

RESTORE_SCRIPT_NAME = "remove_volumes.sh"
HELPER_WORKDIR = "/tmp"
VOLUME_MOUNT = "/volume"
SCRIPT_MOUNT = f"/script/{RESTORE_SCRIPT_NAME}"
PGPASSWORD = "PGPASSWORD"


class BackupError(RuntimeError):
    """Raised when backup artifacts cannot be prepared."""


class BackupKind(enum.Enum):
    """Kind of backup artifact, identified by its file suffix."""

    DUMP = "dump"
    FULL = "full"

    @property
    def suffix(self) -> str:
        """Return the file suffix of artifacts of this kind."""
        return ".tar" if self is BackupKind.DUMP else ".tar.bz2"


class BackupStage(enum.Enum):
    """Stages every backup or restore passes through."""

    PREPARE = "prepare"
    LAUNCH_HELPER = "launch-helper"
    POLL_COMPLETION = "poll-completion"
    EXTRACT = "extract"
    CLEANUP = "cleanup"
    DONE = "done"


class RestoreOutcome(enum.Enum):
    """How a restore request ended."""

    NO_FILES = "no-files"
    CANCELLED = "cancelled"
    RESTORED = "restored"


@dataclass(frozen=True, slots=True)
class BackupArtifact:
    """A backup file in the backup directory."""

    file_name: str
    kind: BackupKind
    path: Path


@dataclass(frozen=True, slots=True)
class RestoreResult:
    """Outcome of a restore request and the artifact it used, if any."""

    outcome: RestoreOutcome
    file_name: str | None = None
    candidates: tuple[str, ...] = ()


StageHook = Callable[[BackupStage, str], None]
Chooser = Callable[[Sequence[str]], str | None]


def artifact_name(kind: BackupKind, now: datetime) -> str:
    """Return the artifact file name for *kind* created at *now*."""
    if kind is BackupKind.DUMP:
        return now.strftime("%Y_%m_%d_%H_%M") + "-dump_db.tar"
    # Full backups use a 12-hour clock; kept for compatibility with existing archives.
    return now.strftime("%Y_%m_%d_%I_%M") + "-backup.tar.bz2"


def list_artifacts(backup_dir: Path, kind: BackupKind) -> list[str]:
    """Return the sorted names of *kind* artifacts in *backup_dir*."""
    if not backup_dir.is_dir():
        return []
    names = [entry.name for entry in backup_dir.iterdir() if entry.is_file()]
    return sorted(name for name in names if name.endswith(kind.suffix))


def restore_script(file_name: str) -> str:
    """Return the shell script that wipes the volume and unpacks *file_name*."""
    return (
        f"rm -rf {VOLUME_MOUNT}/* {VOLUME_MOUNT}/..?* {VOLUME_MOUNT}/.[!.]*\n"
        f"tar -C {VOLUME_MOUNT}/ -xjf {HELPER_WORKDIR}/{file_name}\n"
    )


@dataclass(slots=True)
class BackupOrchestrator:
    """Drive backup and restore helper containers for one deployment."""

    docker: DockerProvider
    app_file: Path
    env_file: Path
    backup_dir: Path
    poll_interval: float = 1.0
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], datetime] = datetime.now
    on_stage: StageHook | None = None

    # Backups -----------------------------------------------------------
    def db_dump(self) -> BackupArtifact:
        """Dump the database with ``pg_dump`` into the backup directory."""
        topology = load_topology(self.app_file)
        file_name = artifact_name(BackupKind.DUMP, self.clock())
        self._stage(BackupStage.PREPARE, file_name)
        backup_dir = self._prepare_backup_dir()
        password = read_env_value(self.env_file, KEY_POSTGRES_PASSWORD)
        self._stage(BackupStage.LAUNCH_HELPER, topology.image(DB))
        container_id = self.docker.run_detached(
            [
                f"--network={topology.network_name}",
                f"-w={HELPER_WORKDIR}",
            ],
            topology.image(DB),
            [
                "pg_dump",
                "-h",
                topology.container_name(DB),
                "-Ft",
                "-f",
                file_name,
                "-U",
                DEFAULT_DATABASE_USER,
                DEFAULT_DATABASE_NAME,
            ],
            env={PGPASSWORD: password},
        )
        self._collect(container_id, file_name, backup_dir)
        self._stage(BackupStage.DONE, file_name)
        return BackupArtifact(file_name, BackupKind.DUMP, backup_dir / file_name)

    def db_full_backup(self) -> BackupArtifact:
        """Archive the database volume while the application is stopped."""
        topology = load_topology(self.app_file)
        file_name = artifact_name(BackupKind.FULL, self.clock())
        self._stage(BackupStage.PREPARE, file_name)
        backup_dir = self._prepare_backup_dir()
        self.docker.compose_stop()
        try:
            self._stage(BackupStage.LAUNCH_HELPER, topology.image(DB))
            container_id = self.docker.run_detached(
                [f"-v={topology.db_volume}:{VOLUME_MOUNT}", f"-w={HELPER_WORKDIR}"],
                topology.image(DB),
                ["tar", "-cjf", file_name, "-C", VOLUME_MOUNT, "./"],
            )
            self._collect(container_id, file_name, backup_dir)
        finally:
            self.docker.compose_start()
        self._stage(BackupStage.DONE, file_name)
        return BackupArtifact(file_name, BackupKind.FULL, backup_dir / file_name)

    # Restores ----------------------------------------------------------
    def restore_dump(self, choose: Chooser) -> RestoreResult:
        """Restore a dump selected by *choose* with ``pg_restore``."""
        selection = self._select(BackupKind.DUMP, choose)
        if selection.outcome is not RestoreOutcome.RESTORED:
            return selection
        file_name = selection.file_name or ""
        topology = load_topology(self.app_file)
        password = read_env_value(self.env_file, KEY_POSTGRES_PASSWORD)
        self._stage(BackupStage.LAUNCH_HELPER, file_name)
        self.docker.run_once(
            [
                f"--network={topology.network_name}",
                "-v",
                f"{self._mount_source()}:{HELPER_WORKDIR}",
            ],
            topology.image(DB),
            [
                "pg_restore",
                "-h",
                topology.container_name(DB),
                "-d",
                DEFAULT_DATABASE_NAME,
                f"{HELPER_WORKDIR}/{file_name}",
                "-c",
                "-Ft",
                "-U",
                DEFAULT_DATABASE_USER,
            ],
            env={PGPASSWORD: password},
        )
        self._stage(BackupStage.DONE, file_name)
        return selection

    def restore_full(self, choose: Chooser) -> RestoreResult:
        """Replace the database volume with the archive selected by *choose*."""
        selection = self._select(BackupKind.FULL, choose)
        if selection.outcome is not RestoreOutcome.RESTORED:
            return selection
        file_name = selection.file_name or ""
        topology = load_topology(self.app_file)
        script_path = self.app_file.parent / RESTORE_SCRIPT_NAME
        self.docker.compose_stop()
        try:
            self._stage(BackupStage.PREPARE, str(script_path))
            self._write_script(script_path, file_name)
            self._stage(BackupStage.LAUNCH_HELPER, file_name)
            self._extract_full(topology, script_path)
        finally:
            script_path.unlink(missing_ok=True)
            self._stage(BackupStage.CLEANUP, str(script_path))
        self.docker.compose_start()
        self._stage(BackupStage.DONE, file_name)
        return selection

    # Helpers -----------------------------------------------------------
    def wait_for_exit(self, container_id: str) -> None:
        """Block while *container_id* is still listed as running."""
        while self.docker.is_listed(container_id):
            self.sleep(self.poll_interval)

    def _collect(self, container_id: str, file_name: str, backup_dir: Path) -> None:
        if not container_id:
            # An empty id would make `docker ps -f id=` match every container.
            raise BackupError("docker run did not report a helper container id")
        try:
            self._stage(BackupStage.POLL_COMPLETION, container_id)
            self.wait_for_exit(container_id)
            self._stage(BackupStage.EXTRACT, file_name)
            self.docker.copy_from_container(
                container_id, f"{HELPER_WORKDIR}/{file_name}", backup_dir
            )
        finally:
            self._stage(BackupStage.CLEANUP, container_id)
            self.docker.remove_container(container_id)

    def _extract_full(self, topology: TopologyDocument, script_path: Path) -> None:
        self.docker.run_once(
            [
                "-v",
                f"{topology.db_volume}:{VOLUME_MOUNT}",
                "-v",
                f"{self._mount_source()}:{HELPER_WORKDIR}",
                "-v",
                f"{script_path.resolve()}:{SCRIPT_MOUNT}",
            ],
            topology.image(DB),
            ["sh", SCRIPT_MOUNT],
        )

    def _select(self, kind: BackupKind, choose: Chooser) -> RestoreResult:
        candidates = tuple(list_artifacts(self.backup_dir, kind))
        if not candidates:
            return RestoreResult(RestoreOutcome.NO_FILES)
        answer = choose(candidates)
        answer = answer.strip() if answer else ""
        if answer not in candidates:
            LOGGER.debug("Restore selection %r does not match any %s artifact", answer, kind.value)
            return RestoreResult(RestoreOutcome.CANCELLED, candidates=candidates)
        return RestoreResult(RestoreOutcome.RESTORED, file_name=answer, candidates=candidates)

    def _prepare_backup_dir(self) -> Path:
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup directory {self.backup_dir}: {exc}") from exc
        return self.backup_dir

    def _mount_source(self) -> Path:
        return self.backup_dir.resolve()

    def _write_script(self, path: Path, file_name: str) -> None:
        try:
            path.write_text(restore_script(file_name), encoding="utf-8")
            os.chmod(path, 0o755)
        except OSError as exc:
            raise BackupError(f"Failed to write restore script {path}: {exc}") from exc

    def _stage(self, stage: BackupStage, detail: str) -> None:
        LOGGER.debug("backup stage %s: %s", stage.value, detail)
        if self.on_stage is not None:
            self.on_stage(stage, detail)


__all__ = [
    "BackupArtifact",
    "BackupError",
    "BackupKind",
    "BackupOrchestrator",
    "BackupStage",
    "Chooser",
    "RestoreOutcome",
    "RestoreResult",
    "StageHook",
    "artifact_name",
    "list_artifacts",
    "restore_script",
]
