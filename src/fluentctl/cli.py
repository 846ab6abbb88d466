"""Typer-powered command line interface for ``fluentctl``.

Each command builds on the shared :class:`RuntimeContext` created by the root
callback, runs inside a structured logging operation and reports failures as
a red one-line message plus a non-zero exit code (see :mod:`fluentctl.exit_codes`).
"""
from __future__ import annotations

import dataclasses
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape

from . import __version__
from .backups import (
    BackupError,
    BackupOrchestrator,
    BackupStage,
    Chooser,
    RestoreOutcome,
    StageHook,
)
from .config import AppConfig, ConfigError, load_config
from .envfile import (
    EnvFileError,
    EnvironmentResolver,
    MailingOptions,
    ValidationError,
    VaultOptions,
    preserve_database_secrets,
    read_env_file,
    reconcile,
    redact,
    resolve_mailing_options,
    resolve_vault_options,
    write_env_file,
)
from .exit_codes import ExitCode
from .images import (
    BACKEND,
    DB,
    FRONTEND,
    DockerManifestProbe,
    ImageRegistrySet,
    ImageResolver,
    default_registry,
    registry_for_service,
)
from .lifecycle import ApplicationLifecycle
from .logging import OperationScope, StructuredLogger
from .providers import DockerProvider, ExternalCommandError, SubprocessRunner
from .topology import (
    DEFAULT_HOST_PORT,
    MissingArtifactError,
    TopologyError,
    render_topology,
    write_topology,
)
from .update import UpdateOrchestrator, VersionChange
from .versions import MalformedVersionError

console = Console(soft_wrap=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to fluentctl's YAML config file.",
)

REGISTRY_OPTION = typer.Option(
    None,
    "--registry",
    hidden=True,
    help="Pull every image from this registry instead of the default one.",
)

REFRESH_IMAGES_OPTION = typer.Option(
    False,
    "--refresh-images",
    help="Pull the referenced images before continuing.",
)

RESTORE_FILE_OPTION = typer.Option(
    None,
    "--file-name",
    help="Restore this backup file instead of asking for one.",
)

_VALIDATION_ERRORS = (ValidationError, MalformedVersionError)
_ENVIRONMENT_ERRORS = (MissingArtifactError, TopologyError, EnvFileError, BackupError)
_HANDLED_ERRORS = (*_VALIDATION_ERRORS, *_ENVIRONMENT_ERRORS, ExternalCommandError)


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Fluent Manager deployment CLI.

        Generates the Docker Compose application file and its environment
        configuration, drives the application lifecycle and backs up or
        restores the bundled database.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    runner: SubprocessRunner
    docker: DockerProvider
    image_resolver: ImageResolver
    env_resolver: EnvironmentResolver
    lifecycle: ApplicationLifecycle
    backups: BackupOrchestrator
    updater: UpdateOrchestrator
    interactive: bool = True


def _echo_line(line: str, is_stderr: bool) -> None:
    console.print(line, markup=False, highlight=False, style="dim" if is_stderr else None)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    disable_interactivity: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    logger = StructuredLogger(config.logs_dir)
    runner = SubprocessRunner(sink=_echo_line, cwd=config.workdir)
    docker = DockerProvider(
        runner=runner,
        docker_bin=config.docker_bin,
        compose_file=config.app_file,
    )
    image_resolver = ImageResolver(
        probe=DockerManifestProbe(docker),
        default_tag=config.application_version,
    )
    lifecycle = ApplicationLifecycle(
        docker=docker,
        app_file=config.app_file,
        env_file=config.env_file,
    )
    backups = BackupOrchestrator(
        docker=docker,
        app_file=config.app_file,
        env_file=config.env_file,
        backup_dir=config.backup_dir,
        poll_interval=config.poll_interval,
    )
    updater = UpdateOrchestrator(
        lifecycle=lifecycle,
        application_version=config.application_version,
        public_registry=config.registries.public,
        private_registry=config.registries.private,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        runner=runner,
        docker=docker,
        image_resolver=image_resolver,
        env_resolver=EnvironmentResolver(),
        lifecycle=lifecycle,
        backups=backups,
        updater=updater,
        interactive=config.interactive and not disable_interactivity,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the fluentctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    disable_interactivity: bool = typer.Option(
        False,
        "--disable-interactivity",
        help="Answer every confirmation with yes.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    runtime = _ensure_runtime(ctx, config_file, disable_interactivity)
    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"fluentctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{escape(message)}[/red]", highlight=False)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _handle_failure(op: OperationScope, exc: Exception) -> NoReturn:
    """Translate a domain exception into a command error."""
    if isinstance(exc, _VALIDATION_ERRORS):
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    if isinstance(exc, ExternalCommandError):
        _command_error(op, str(exc), rc=int(ExitCode.PROVIDER))
    _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))


def _confirm(runtime: RuntimeContext, prompt: str) -> bool:
    if not runtime.interactive:
        return True
    return typer.confirm(prompt, default=False)


def _cancelled(op: OperationScope, message: str) -> None:
    console.print(message)
    op.add_step("confirm", status="cancelled")
    op.success(message, changed=0)


def _env_reference(config: AppConfig, app_file: Path) -> str:
    """Return how the application file should refer to the environment file."""
    if config.env_file.parent.resolve() == app_file.parent.resolve():
        return config.env_file.name
    return str(config.env_file.resolve())


def _stage_recorder(op: OperationScope) -> StageHook:
    def _record(stage: BackupStage, detail: str) -> None:
        op.add_step(f"backup.{stage.value}", detail=detail)

    return _record


# Application file -----------------------------------------------------------
@app.command("create-app-file")
def create_app_file(
    ctx: typer.Context,
    alias: str | None = typer.Option(
        None,
        "--alias",
        help="Suffix appended to container, volume and network names.",
    ),
    host_port: int = typer.Option(
        DEFAULT_HOST_PORT,
        "--host-port",
        min=1,
        max=65535,
        help="Host port published for the web frontend.",
    ),
    registry: str | None = REGISTRY_OPTION,
    refresh_images: bool = REFRESH_IMAGES_OPTION,
    app_file_path: Path | None = typer.Option(
        None,
        "--app-file-path",
        dir_okay=False,
        help="Write the application file here instead of the configured location.",
    ),
    frontend_version: str | None = typer.Option(
        None,
        "--overridden-manager-frontend-version",
        hidden=True,
        help="Deploy this frontend image tag when the registry has it.",
    ),
    backend_version: str | None = typer.Option(
        None,
        "--overridden-manager-backend-version",
        hidden=True,
        help="Deploy this backend image tag when the registry has it.",
    ),
    db_version: str | None = typer.Option(
        None,
        "--overridden-manager-db-version",
        hidden=True,
        help="Deploy this database image tag when the registry has it.",
    ),
) -> None:
    """Generate the Docker Compose application file."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    target = app_file_path or config.app_file
    overrides = {FRONTEND: frontend_version, BACKEND: backend_version, DB: db_version}
    with runtime.logger.operation(
        "create-app-file",
        args={
            "alias": alias,
            "host_port": host_port,
            "registry": registry,
            "refresh_images": refresh_images,
            "overrides": overrides,
        },
        target={"kind": "app-file", "path": str(target)},
    ) as op:
        if target.exists() and not _confirm(
            runtime, f"{target} already exists. Do you want to replace file?"
        ):
            _cancelled(op, "Create yaml action has been cancelled by the user")
            return

        fallback = default_registry(
            config.application_version,
            public=config.registries.public,
            private=config.registries.private,
        )
        registries = ImageRegistrySet(
            **{
                service: registry_for_service(
                    tag,
                    registry,
                    config.application_version,
                    fallback,
                    public=config.registries.public,
                    private=config.registries.private,
                )
                for service, tag in overrides.items()
            }
        )
        warnings: list[str] = []
        try:
            resolutions = runtime.image_resolver.resolve_all(registries, overrides)
            for service, resolution in resolutions.items():
                detail = resolution.reference
                if resolution.fell_back:
                    message = (
                        f"Could not find image {resolution.requested}. "
                        f"Falling back to default reference {resolution.reference}"
                    )
                    console.print(f"[yellow]{message}[/yellow]", highlight=False)
                    warnings.append(message)
                    detail = f"fallback: {resolution.reference}"
                op.add_step(f"image.{service}", detail=detail)

            text = render_topology(
                {service: resolution.reference for service, resolution in resolutions.items()},
                port=host_port,
                alias=alias,
                env_file=_env_reference(config, target),
            )
            write_topology(target, text)
            op.add_step("app-file.write", detail=str(target))
            console.print(f"Application file has been successfully created at {target}")

            if refresh_images:
                console.print("Refreshing images...")
                dataclasses.replace(runtime.docker, compose_file=target).compose_pull()
                op.add_step("images.pull")
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)
        except OSError as exc:
            _command_error(
                op,
                f"Failed to write application file {target}: {exc}",
                rc=int(ExitCode.ENVIRONMENT),
            )

        context = {service: res.reference for service, res in resolutions.items()}
        if warnings:
            op.warning(
                "Application file created with default image fallbacks.",
                warnings=warnings,
                changed=1,
                context=context,
            )
        else:
            op.success("Application file created.", changed=1, context=context)


# Environment file -----------------------------------------------------------
@app.command("create-config-file")
def create_config_file(
    ctx: typer.Context,
    admin_email: str = typer.Option(..., "--admin-email", help="Default administrator email."),
    admin_password: str = typer.Option(
        ...,
        "--admin-password",
        help="Default administrator password (12 to 64 characters).",
    ),
    public_url: str = typer.Option("", "--public-url", help="Public URL of the application."),
    config_file_path: Path | None = typer.Option(
        None,
        "--config-file-path",
        dir_okay=False,
        help="Write the environment file here instead of the configured location.",
    ),
    enable_mailing: bool = typer.Option(
        False, "--enable-mailing", help="Enable outgoing mail (requires --smtp-* options)."
    ),
    smtp_host: str | None = typer.Option(None, "--smtp-host", help="SMTP server host."),
    smtp_port: str = typer.Option("587", "--smtp-port", help="SMTP server port."),
    smtp_username: str | None = typer.Option(None, "--smtp-username", help="SMTP username."),
    smtp_password: str | None = typer.Option(None, "--smtp-password", help="SMTP password."),
    smtp_from_address: str | None = typer.Option(
        None, "--smtp-from", "--smtp-from-address", help="Sender address for outgoing mail."
    ),
    smtp_auth: bool = typer.Option(True, "--smtp-auth/--no-smtp-auth", help="Use SMTP auth."),
    smtp_tls_enable: bool = typer.Option(
        True, "--smtp-tls-enable/--no-smtp-tls-enable", help="Use STARTTLS."
    ),
    enable_vault: bool = typer.Option(
        False, "--enable-vault", help="Store secrets in Vault (requires --vault-* options)."
    ),
    vault_url: str | None = typer.Option(None, "--vault-url", help="Vault server URL."),
    vault_token: str | None = typer.Option(None, "--vault-token", help="Vault access token."),
    vault_secret_engine_path: str | None = typer.Option(
        None, "--vault-secret-engine-path", help="Path of the Vault secret engine."
    ),
) -> None:
    """Generate or refresh the environment configuration file."""
    runtime = _get_runtime(ctx)
    target = config_file_path or runtime.config.env_file
    with runtime.logger.operation(
        "create-config-file",
        args={
            "admin_email": admin_email,
            "admin_password": admin_password,
            "public_url": public_url,
            "enable_mailing": enable_mailing,
            "smtp_host": smtp_host,
            "smtp_password": smtp_password,
            "enable_vault": enable_vault,
            "vault_url": vault_url,
            "vault_token": vault_token,
        },
        target={"kind": "env-file", "path": str(target)},
    ) as op:
        try:
            mailing_values = (smtp_host, smtp_username, smtp_password, smtp_from_address)
            mailing = resolve_mailing_options(
                enable_mailing,
                MailingOptions(
                    smtp_host=smtp_host or "",
                    smtp_username=smtp_username or "",
                    smtp_password=smtp_password or "",
                    smtp_from_address=smtp_from_address or "",
                    smtp_port=smtp_port,
                    smtp_auth=smtp_auth,
                    smtp_tls_enable=smtp_tls_enable,
                )
                if all(mailing_values)
                else None,
            )
            vault_values = (vault_url, vault_token, vault_secret_engine_path)
            vault = resolve_vault_options(
                enable_vault,
                VaultOptions(
                    vault_url=vault_url or "",
                    vault_token=vault_token or "",
                    vault_secret_engine_path=vault_secret_engine_path or "",
                )
                if all(vault_values)
                else None,
            )
            resolved = runtime.env_resolver.resolve(
                admin_email,
                admin_password,
                public_url,
                mailing=mailing,
                vault=vault,
            )
            op.add_step("config.resolve", detail={"keys": len(resolved)})

            if not target.exists():
                write_env_file(target, resolved)
                console.print(f"Configuration file ({target}) has been successfully created")
                op.success(
                    "Configuration file created.", changed=1, context={"config": redact(resolved)}
                )
                return

            resolved = preserve_database_secrets(resolved, read_env_file(target))
            if reconcile(target, resolved):
                op.add_step("config.reconcile", detail="current")
                console.print(f"Configuration file ({target}) exists and is up to date")
                op.success("Configuration file is up to date.", changed=0)
                return

            op.add_step("config.reconcile", detail="outdated")
            if not _confirm(
                runtime,
                f"Configuration file ({target}) exists but is outdated. Would you like to "
                "update configuration file? Warning! Previous configuration will be "
                "permanently lost during update",
            ):
                _cancelled(op, "Configuration file update has been cancelled by the user")
                return

            write_env_file(target, resolved)
            console.print(f"Configuration file({target}) is successfully updated")
            op.success(
                "Configuration file updated.", changed=1, context={"config": redact(resolved)}
            )
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)


# Lifecycle ------------------------------------------------------------------
def _lifecycle_command(ctx: typer.Context, command: str, message: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        command,
        args={},
        target={"kind": "application", "path": str(runtime.config.app_file)},
    ) as op:
        try:
            getattr(runtime.lifecycle, command)()
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)
        op.add_step(f"compose.{command}")
        console.print(f"[green]{message}[/green]")
        op.success(message, changed=1)


@app.command()
def deploy(ctx: typer.Context) -> None:
    """Create and start every service of the application."""
    _lifecycle_command(ctx, "deploy", "Application has been deployed.")


@app.command()
def undeploy(ctx: typer.Context) -> None:
    """Remove the application containers and network (data is kept)."""
    _lifecycle_command(ctx, "undeploy", "Application has been undeployed.")


@app.command()
def start(ctx: typer.Context) -> None:
    """Start previously deployed services."""
    _lifecycle_command(ctx, "start", "Application has been started.")


@app.command()
def stop(ctx: typer.Context) -> None:
    """Stop running services."""
    _lifecycle_command(ctx, "stop", "Application has been stopped.")


@app.command()
def remove(ctx: typer.Context) -> None:
    """Remove containers, images and volumes of the application."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "remove",
        args={},
        target={"kind": "application", "path": str(runtime.config.app_file)},
    ) as op:
        if not _confirm(
            runtime,
            "Do you really want to perform application removal action? "
            "All data will be irreversibly lost",
        ):
            _cancelled(op, "Removal action has been cancelled by the user")
            return
        try:
            runtime.lifecycle.remove()
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)
        op.add_step("compose.remove")
        console.print("[green]Application has been removed.[/green]")
        op.success("Application removed.", changed=1)


@app.command()
def update(
    ctx: typer.Context,
    refresh_images: bool = REFRESH_IMAGES_OPTION,
    registry: str | None = REGISTRY_OPTION,
) -> None:
    """Point the application at the bundled release and redeploy it."""
    runtime = _get_runtime(ctx)
    updater = runtime.updater
    with runtime.logger.operation(
        "update",
        args={"refresh_images": refresh_images, "registry": registry},
        target={"kind": "application", "path": str(runtime.config.app_file)},
    ) as op:
        try:
            plan = updater.plan(registry)
            for service, change in plan.changes.items():
                current = plan.images[service].version
                op.add_step(f"image.{service}", detail=f"{change.value}: {current}")
                if change is VersionChange.DOWNGRADE:
                    console.print(
                        f"[yellow]{service} is downgraded from {current} "
                        f"to {plan.target_version}[/yellow]"
                    )
            updater.rewrite(plan)
            op.add_step("app-file.rewrite", detail=plan.replacements)
            console.print("docker_compose.yaml is successfully updated")
            if refresh_images:
                console.print("Refreshing images...")
            updater.redeploy(refresh_images=refresh_images)
            op.add_step("compose.redeploy")
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)
        console.print("Update is successfully finished")
        op.success(
            "Update finished.",
            changed=1,
            context={"registry": plan.registry, "tag": plan.target_tag},
        )


# Backups --------------------------------------------------------------------
@app.command("db-dump")
def db_dump(ctx: typer.Context) -> None:
    """Dump the database into the backup directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "db-dump",
        args={},
        target={"kind": "backup", "path": str(runtime.config.backup_dir)},
    ) as op:
        orchestrator = dataclasses.replace(runtime.backups, on_stage=_stage_recorder(op))
        try:
            artifact = orchestrator.db_dump()
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)
        console.print(
            f"{runtime.config.backup_dir.name}/{artifact.file_name} has been successfully created..."
        )
        op.success("Database dump created.", changed=1, backups=[str(artifact.path)])


@app.command("db-full-backup")
def db_full_backup(ctx: typer.Context) -> None:
    """Archive the whole database volume (the application is stopped meanwhile)."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "db-full-backup",
        args={},
        target={"kind": "backup", "path": str(runtime.config.backup_dir)},
    ) as op:
        orchestrator = dataclasses.replace(runtime.backups, on_stage=_stage_recorder(op))
        try:
            artifact = orchestrator.db_full_backup()
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)
        console.print(
            f"{runtime.config.backup_dir.name}/{artifact.file_name} has been successfully created..."
        )
        op.success("Full backup created.", changed=1, backups=[str(artifact.path)])


def _chooser(runtime: RuntimeContext, noun: str, file_name: str | None) -> Chooser:
    """Return a callback that lists *candidates* and asks for one of them."""

    def _choose(candidates: Sequence[str]) -> str | None:
        for candidate in candidates:
            console.print(f"fileName to {noun}: {candidate}", markup=False, highlight=False)
        if file_name is not None:
            answer = file_name
        elif runtime.interactive:
            answer = typer.prompt(f"Type file name to {noun}", default="", show_default=False)
        else:
            answer = ""
        if answer.strip() in candidates:
            console.print(f"Restoring from {answer.strip()}...", markup=False, highlight=False)
        return answer

    return _choose


def _restore_command(
    ctx: typer.Context,
    command: str,
    *,
    full: bool,
    file_name: str | None,
) -> None:
    runtime = _get_runtime(ctx)
    noun = "full restore" if full else "restore"
    with runtime.logger.operation(
        command,
        args={"file_name": file_name},
        target={"kind": "backup", "path": str(runtime.config.backup_dir)},
    ) as op:
        orchestrator = dataclasses.replace(runtime.backups, on_stage=_stage_recorder(op))
        choose = _chooser(runtime, noun, file_name)
        try:
            if full:
                result = orchestrator.restore_full(choose)
            else:
                result = orchestrator.restore_dump(choose)
        except _HANDLED_ERRORS as exc:
            _handle_failure(op, exc)

        if result.outcome is RestoreOutcome.NO_FILES:
            message = "No files to full restore was found" if full else "No files was found"
            console.print(message)
            op.success(message, changed=0)
            return
        if result.outcome is RestoreOutcome.CANCELLED:
            console.print("Aborted")
            op.success("Aborted", changed=0, context={"candidates": list(result.candidates)})
            return
        console.print(f"[green]Restored from {result.file_name}.[/green]", highlight=False)
        op.success(
            "Restore finished.",
            changed=1,
            backups=[result.file_name or ""],
        )


@app.command("db-dump-restore")
def db_dump_restore(
    ctx: typer.Context,
    file_name: str | None = RESTORE_FILE_OPTION,
) -> None:
    """Restore the database from a dump in the backup directory."""
    _restore_command(ctx, "db-dump-restore", full=False, file_name=file_name)


@app.command("db-full-backup-restore")
def db_full_backup_restore(
    ctx: typer.Context,
    file_name: str | None = RESTORE_FILE_OPTION,
) -> None:
    """Replace the database volume with a full backup archive."""
    _restore_command(ctx, "db-full-backup-restore", full=True, file_name=file_name)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
