"""CLI tests driven through Typer's runner with a scripted process runner."""
from __future__ import annotations

import importlib
import json
from collections.abc import Mapping, Sequence
from pathlib import Path

import pytest
from conftest import FakeRunner, write_app_files
from typer.testing import CliRunner

from fluentctl import __version__
from fluentctl.cli import app
from fluentctl.envfile import (
    KEY_ADMIN_EMAIL,
    KEY_POSTGRES_PASSWORD,
    KEY_SMTP_FROM,
    read_env_file,
)
from fluentctl.providers.process import ProcessResult, SubprocessRunner
from fluentctl.topology import load_topology

runner = CliRunner()

ADMIN = ["--admin-email", "admin@example.com", "--admin-password", "correct-horse-battery"]


@pytest.fixture
def fake(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeRunner:
    """Point the CLI at *tmp_path* and route every process through a fake runner."""
    fake_runner = FakeRunner()
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FLUENTCTL_WORKDIR", str(tmp_path))
    monkeypatch.setenv("FLUENTCTL_CONFIG_FILE", str(tmp_path / "none.yml"))
    monkeypatch.setenv("FLUENTCTL_POLL_INTERVAL", "0.001")

    def _run(
        self: SubprocessRunner,
        args: Sequence[str],
        *,
        echo: bool = False,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        return fake_runner.run(args, echo=echo, env=env)

    monkeypatch.setattr(SubprocessRunner, "run", _run)
    return fake_runner


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / ".fluentctl" / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_option(fake: FakeRunner) -> None:
    """``--version`` prints the tool version and exits cleanly."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"fluentctl {__version__}" in result.stdout
    assert fake.calls == []


def test_invalid_config_file_exits_with_environment_code(tmp_path: Path, fake: FakeRunner) -> None:
    """Configuration errors stop the CLI before any command runs."""
    (tmp_path / "none.yml").write_text("bogus: true\n", encoding="utf-8")
    result = runner.invoke(app, ["deploy"])
    assert result.exit_code == 3
    assert "Unknown configuration keys: bogus" in result.stdout


def test_create_config_file_then_up_to_date(tmp_path: Path, fake: FakeRunner) -> None:
    """A second identical invocation keeps the file and reports it as current."""
    first = runner.invoke(app, ["create-config-file", *ADMIN])
    assert first.exit_code == 0, first.stdout
    assert "has been successfully created" in first.stdout
    env_file = tmp_path / ".env"
    created = read_env_file(env_file)
    assert created[KEY_ADMIN_EMAIL] == "admin@example.com"
    assert env_file.stat().st_mode & 0o777 == 0o600

    second = runner.invoke(app, ["create-config-file", *ADMIN])
    assert second.exit_code == 0, second.stdout
    assert "exists and is up to date" in second.stdout
    assert read_env_file(env_file) == created
    assert fake.calls == []


def test_create_config_file_rejects_short_password(tmp_path: Path, fake: FakeRunner) -> None:
    """Passwords outside the accepted length fail with the validation code."""
    result = runner.invoke(
        app,
        ["create-config-file", "--admin-email", "a@b.c", "--admin-password", "short"],
    )
    assert result.exit_code == 2
    assert "Password must have length between 12 and 64 characters" in result.stdout
    assert not (tmp_path / ".env").exists()


def test_enable_mailing_requires_options(tmp_path: Path, fake: FakeRunner) -> None:
    """Mailing cannot be enabled without the SMTP settings."""
    result = runner.invoke(app, ["create-config-file", *ADMIN, "--enable-mailing"])
    assert result.exit_code == 2
    assert "mailing options must be specified" in result.stdout


def test_outdated_config_file_update_is_confirmed(tmp_path: Path, fake: FakeRunner) -> None:
    """Outdated files are only replaced after confirmation."""
    assert runner.invoke(app, ["create-config-file", *ADMIN]).exit_code == 0
    env_file = tmp_path / ".env"
    database_password = read_env_file(env_file)[KEY_POSTGRES_PASSWORD]
    changed = ["create-config-file", *ADMIN, "--public-url", "https://fluent.example.com"]

    declined = runner.invoke(app, changed, input="n\n")
    assert declined.exit_code == 0
    assert "exists but is outdated" in declined.stdout
    assert "update has been cancelled by the user" in declined.stdout
    assert read_env_file(env_file)["PUBLIC_URL"] == ""

    accepted = runner.invoke(app, ["--disable-interactivity", *changed])
    assert accepted.exit_code == 0
    assert "is successfully updated" in accepted.stdout
    updated = read_env_file(env_file)
    assert updated["PUBLIC_URL"] == "https://fluent.example.com"
    assert updated[KEY_POSTGRES_PASSWORD] == database_password


def test_create_app_file_writes_topology(tmp_path: Path, fake: FakeRunner) -> None:
    """The application file references the bundled release in the public registry."""
    result = runner.invoke(app, ["create-app-file", "--alias", "blue", "--host-port", "8080"])
    assert result.exit_code == 0, result.stdout
    assert "Application file has been successfully created at" in result.stdout

    document = load_topology(tmp_path / "docker-compose.yml")
    assert document.image("backend") == (
        f"public.ecr.aws/apryse/fluent-manager-backend:{__version__}"
    )
    assert document.container_name("frontend") == "fluent-manager-frontend-blue"
    assert document.data["services"]["frontend"]["ports"] == ["8080:8080"]
    assert fake.calls == []


def test_create_app_file_falls_back_when_override_is_missing(
    tmp_path: Path,
    fake: FakeRunner,
) -> None:
    """Unavailable override tags fall back to the default reference with a warning."""
    fake.when("manifest", "inspect", returncode=1, stderr="no such manifest")
    result = runner.invoke(
        app,
        [
            "create-app-file",
            "--overridden-manager-db-version",
            "99.0.0.1",
            "--refresh-images",
        ],
    )
    assert result.exit_code == 0, result.stdout
    assert "Could not find image public.ecr.aws/apryse/fluent-manager-db:99.0.0.1" in result.stdout
    assert "Refreshing images..." in result.stdout

    document = load_topology(tmp_path / "docker-compose.yml")
    assert document.image("db") == f"public.ecr.aws/apryse/fluent-manager-db:{__version__}"
    assert fake.calls[0] == (
        "docker",
        "manifest",
        "inspect",
        "public.ecr.aws/apryse/fluent-manager-db:99.0.0.1",
    )
    assert fake.calls[-1][-1] == "pull"

    (record,) = _operations(tmp_path)
    assert record["result"]["status"] == "warning"  # type: ignore[index]


def test_create_app_file_keeps_existing_file_when_declined(
    tmp_path: Path,
    fake: FakeRunner,
) -> None:
    """Declining the replacement leaves the current file untouched."""
    app_file = tmp_path / "docker-compose.yml"
    app_file.write_text("original\n", encoding="utf-8")
    result = runner.invoke(app, ["create-app-file"], input="n\n")
    assert result.exit_code == 0
    assert "Create yaml action has been cancelled by the user" in result.stdout
    assert app_file.read_text(encoding="utf-8") == "original\n"


def test_deploy_without_application_file(tmp_path: Path, fake: FakeRunner) -> None:
    """Lifecycle commands fail with the environment code when files are missing."""
    result = runner.invoke(app, ["deploy"])
    assert result.exit_code == 3
    assert "docker-compose.yml file doesn't exist" in result.stdout
    assert fake.calls == []

    (record,) = _operations(tmp_path)
    assert record["command"] == "deploy"
    assert record["result"]["rc"] == 3  # type: ignore[index]


def test_deploy_runs_compose_up(tmp_path: Path, fake: FakeRunner) -> None:
    """Deploy recreates every service of the application file."""
    write_app_files(tmp_path)
    result = runner.invoke(app, ["deploy"])
    assert result.exit_code == 0, result.stdout
    assert "Application has been deployed." in result.stdout
    assert fake.calls == [
        (
            "docker",
            "compose",
            "-f",
            str(tmp_path / "docker-compose.yml"),
            "up",
            "-d",
            "--force-recreate",
        )
    ]
    assert fake.echoed == [True]


def test_failing_docker_command_exits_with_provider_code(tmp_path: Path, fake: FakeRunner) -> None:
    """Non-zero exits of docker surface as provider failures."""
    write_app_files(tmp_path)
    fake.when("stop", returncode=1, stderr="daemon not running")
    result = runner.invoke(app, ["stop"])
    assert result.exit_code == 4
    assert "daemon not running" in result.stdout


def test_remove_declined(tmp_path: Path, fake: FakeRunner) -> None:
    """Removal is cancelled unless the operator confirms it."""
    write_app_files(tmp_path)
    result = runner.invoke(app, ["remove"], input="n\n")
    assert result.exit_code == 0
    assert "Removal action has been cancelled by the user" in result.stdout
    assert fake.calls == []


def test_db_dump_restore_without_backups(tmp_path: Path, fake: FakeRunner) -> None:
    """An empty backup directory is reported without running anything."""
    write_app_files(tmp_path)
    result = runner.invoke(app, ["db-dump-restore"])
    assert result.exit_code == 0
    assert "No files was found" in result.stdout
    full = runner.invoke(app, ["db-full-backup-restore"])
    assert "No files to full restore was found" in full.stdout
    assert fake.calls == []


def test_db_dump_restore_with_unknown_answer(tmp_path: Path, fake: FakeRunner) -> None:
    """Typing a name that is not listed aborts the restore."""
    write_app_files(tmp_path)
    backup_dir = tmp_path / "backup_db"
    backup_dir.mkdir()
    (backup_dir / "2024_01_01_10_00-dump_db.tar").write_text("x", encoding="utf-8")

    result = runner.invoke(app, ["db-dump-restore"], input="nope.tar\n")
    assert result.exit_code == 0
    assert "fileName to restore: 2024_01_01_10_00-dump_db.tar" in result.stdout
    assert "Aborted" in result.stdout
    assert fake.calls == []


def test_db_dump_restore_with_file_name_option(tmp_path: Path, fake: FakeRunner) -> None:
    """``--file-name`` selects the dump without prompting."""
    write_app_files(tmp_path)
    backup_dir = tmp_path / "backup_db"
    backup_dir.mkdir()
    (backup_dir / "a-dump_db.tar").write_text("x", encoding="utf-8")

    result = runner.invoke(app, ["db-dump-restore", "--file-name", "a-dump_db.tar"])
    assert result.exit_code == 0, result.stdout
    assert "Restoring from a-dump_db.tar..." in result.stdout
    (call,) = fake.calls
    assert "pg_restore" in call
    assert "/tmp/a-dump_db.tar" in call


def test_db_dump_reports_artifact(tmp_path: Path, fake: FakeRunner) -> None:
    """The dump command prints the created artifact relative to the backup directory."""
    write_app_files(tmp_path)
    fake.when("run", "-d", stdout="cid\n")
    result = runner.invoke(app, ["db-dump"])
    assert result.exit_code == 0, result.stdout
    assert "backup_db/" in result.stdout
    assert "-dump_db.tar has been successfully created..." in result.stdout

    (record,) = _operations(tmp_path)
    steps = [step["name"] for step in record["steps"]]  # type: ignore[union-attr]
    assert steps[0] == "backup.prepare"
    assert steps[-1] == "backup.done"


def test_update_rewrites_and_redeploys(tmp_path: Path, fake: FakeRunner) -> None:
    """Update points every image at the bundled release and redeploys."""
    app_file = write_app_files(tmp_path, tag="25.0.0.1")
    fake.when("inspect", stdout="'map[com.docker.compose.project:proj]'\n")

    result = runner.invoke(app, ["update"])
    assert result.exit_code == 0, result.stdout
    assert "docker_compose.yaml is successfully updated" in result.stdout
    assert "Update is successfully finished" in result.stdout
    assert load_topology(app_file).image("frontend") == (
        f"public.ecr.aws/apryse/fluent-manager-frontend:{__version__}"
    )
    assert fake.commands_with("-p", "proj", "down")
    assert fake.calls[-1][-3:] == ("up", "-d", "--force-recreate")


def test_operations_log_redacts_admin_password(tmp_path: Path, fake: FakeRunner) -> None:
    """Secrets passed on the command line never reach the operations log."""
    assert runner.invoke(app, ["create-config-file", *ADMIN]).exit_code == 0
    (record,) = _operations(tmp_path)
    assert record["command"] == "create-config-file"
    assert record["args"]["admin_password"] == "***"  # type: ignore[index]
    log_text = (tmp_path / ".fluentctl" / "logs" / "operations.jsonl").read_text(encoding="utf-8")
    assert "correct-horse-battery" not in log_text


def test_cli_module_imports() -> None:
    """The command module imports cleanly and exposes its entry points."""
    module = importlib.import_module("fluentctl.cli")
    assert module.app is app
    assert callable(module.main)


def test_failed_db_dump_keeps_database_password_private(tmp_path: Path, fake: FakeRunner) -> None:
    """A failing helper container reports the command without the database password."""
    write_app_files(tmp_path, env_text="POSTGRES_PASSWORD=Sup3r$ecretDB\n")
    fake.when("run", "-d", returncode=1, stderr="boom")

    result = runner.invoke(app, ["db-dump"])
    assert result.exit_code == 4
    assert "boom" in result.stdout
    assert "Sup3r$ecretDB" not in result.stdout
    assert fake.environments[0] == {"PGPASSWORD": "Sup3r$ecretDB"}
    for log_file in (tmp_path / ".fluentctl" / "logs").iterdir():
        assert "Sup3r$ecretDB" not in log_file.read_text(encoding="utf-8")


def test_undeploy_fails_when_docker_cannot_inspect(tmp_path: Path, fake: FakeRunner) -> None:
    """Inspect failures stop undeploy instead of tearing down the wrong project."""
    write_app_files(tmp_path)
    fake.when("inspect", returncode=1, stderr="Cannot connect to the Docker daemon")

    result = runner.invoke(app, ["undeploy"])
    assert result.exit_code == 4
    assert "Cannot connect to the Docker daemon" in result.stdout
    assert fake.commands_with("down") == []


def test_override_options_are_hidden_from_help(fake: FakeRunner) -> None:
    result = runner.invoke(app, ["create-app-file", "--help"])
    assert result.exit_code == 0
    assert "--overridden-manager-db-version" not in result.stdout
    assert "--alias" in result.stdout


def test_smtp_from_short_alias(tmp_path: Path, fake: FakeRunner) -> None:
    """``--smtp-from`` is accepted as well as ``--smtp-from-address``."""
    result = runner.invoke(
        app,
        [
            "create-config-file",
            *ADMIN,
            "--enable-mailing",
            "--smtp-host",
            "smtp.example.com",
            "--smtp-username",
            "mailer",
            "--smtp-password",
            "mailer-password",
            "--smtp-from",
            "noreply@example.com",
        ],
    )
    assert result.exit_code == 0, result.stdout
    assert read_env_file(tmp_path / ".env")[KEY_SMTP_FROM] == "noreply@example.com"
