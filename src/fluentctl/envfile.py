"""Environment configuration resolution and ``.env`` reconciliation.

The environment file feeds every deployed service. It is generated from a
fixed default set overlaid with the operator's answers, and it carries
secrets generated by this tool:

* a base64 encoded 256-bit signing key (``FLUENT_MANAGER_JWT_PRIVATE_KEY``),
* a database password shared by the backend and the database container,
* a base64 encoded Tink AES256-GCM keyset used for secret-store encryption.

Signing key and database password are generated once per
:class:`EnvironmentResolver`; the keyset is generated on every resolution.
Reconciliation therefore compares the signing key by length and the keyset
by presence, since Tink key ids vary in width.
"""
from __future__ import annotations

import base64
import io
import os
import secrets
import string
import tempfile
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType

import tink
from tink import aead, cleartext_keyset_handle

SDK_TYPE = "fluent"

KEY_JWT_TOKEN = "FLUENT_MANAGER_JWT_PRIVATE_KEY"
KEY_ADMIN_EMAIL = "FLUENT_MANAGER_DEFAULT_ADMIN_EMAIL"
KEY_ADMIN_PASSWORD = "FLUENT_MANAGER_DEFAULT_ADMIN_PASSWORD"
KEY_LICENSE_SUBSCRIPTION_ENABLE = "FLUENT_MANAGER_LICENSE_SUBSCRIPTION_ENABLE"
KEY_MAILING_ENABLE = "FLUENT_MANAGER_MAILING_ENABLE"
KEY_SMTP_HOST = "FLUENT_MANAGER_SMTP_HOST"
KEY_SMTP_PORT = "FLUENT_MANAGER_SMTP_PORT"
KEY_SMTP_USERNAME = "FLUENT_MANAGER_SMTP_USERNAME"
KEY_SMTP_PASSWORD = "FLUENT_MANAGER_SMTP_PASSWORD"
KEY_SMTP_FROM = "FLUENT_MANAGER_SMTP_FROM"
KEY_SMTP_AUTH = "FLUENT_MANAGER_SMTP_AUTH"
KEY_SMTP_TLS_ENABLE = "FLUENT_MANAGER_SMTP_TLS_ENABLE"
KEY_DATABASE_NAME = "FLUENT_MANAGER_DATABASE_NAME"
KEY_DATABASE_USERNAME = "FLUENT_MANAGER_DATABASE_USERNAME"
KEY_DATABASE_PASSWORD = "FLUENT_MANAGER_DATABASE_PASSWORD"
KEY_POSTGRES_PASSWORD = "POSTGRES_PASSWORD"
KEY_SDK_TYPE = "FLUENT_MANAGER_SDK_TYPE"
KEY_SPRING_PROFILES = "SPRING_PROFILES_ACTIVE"
KEY_VAULT_ENABLE = "FLUENT_MANAGER_VAULT_ENABLE"
KEY_VAULT_URI = "FLUENT_MANAGER_VAULT_URI"
KEY_VAULT_TOKEN = "FLUENT_MANAGER_VAULT_TOKEN"
KEY_VAULT_SECRET_ENGINE_PATH = "FLUENT_MANAGER_VAULT_SECRET_ENGINE_PATH"
KEY_KEYSET_HANDLE = "FLUENT_MANAGER_KEYSET_HANDLE"
KEY_PUBLIC_URL = "PUBLIC_URL"

DEFAULT_DATABASE_NAME = "fluent"
DEFAULT_DATABASE_USER = "postgres"
DEFAULT_PUBLIC_URL = ""

VAULT_DISABLED_DEFAULTS: Mapping[str, str] = MappingProxyType(
    {
        KEY_VAULT_ENABLE: "false",
        KEY_VAULT_URI: "http://host.docker.internal:8200",
        KEY_VAULT_TOKEN: "static-token-value",
        KEY_VAULT_SECRET_ENGINE_PATH: "fluent-manager",
    }
)

# Values regenerated by every run; only their length is stable.
TOLERANT_KEYS: frozenset[str] = frozenset({KEY_JWT_TOKEN})

# Values regenerated by every run whose length varies too; only presence counts.
REGENERATED_KEYS: frozenset[str] = frozenset({KEY_KEYSET_HANDLE})

# Secrets the running database was initialised with.
DATABASE_SECRET_KEYS: tuple[str, ...] = (KEY_DATABASE_PASSWORD, KEY_POSTGRES_PASSWORD)

SECRET_KEYS: frozenset[str] = frozenset(
    {
        KEY_JWT_TOKEN,
        KEY_ADMIN_PASSWORD,
        KEY_SMTP_PASSWORD,
        KEY_DATABASE_PASSWORD,
        KEY_POSTGRES_PASSWORD,
        KEY_VAULT_TOKEN,
        KEY_KEYSET_HANDLE,
    }
)

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 64
DATABASE_PASSWORD_LENGTH = 12
_PASSWORD_SYMBOLS = "$&+:;=?@#|'<>-^*()%!,."


class ValidationError(ValueError):
    """Raised when operator supplied values are rejected."""


class EnvFileError(RuntimeError):
    """Raised when the environment file cannot be read or written."""


@dataclass(frozen=True, slots=True)
class MailingOptions:
    """SMTP settings applied when mailing is enabled."""

    smtp_host: str
    smtp_username: str
    smtp_password: str
    smtp_from_address: str
    smtp_port: str = "587"
    smtp_auth: bool = True
    smtp_tls_enable: bool = True


@dataclass(frozen=True, slots=True)
class VaultOptions:
    """Secret-store connection settings applied when Vault is enabled."""

    vault_url: str
    vault_token: str
    vault_secret_engine_path: str


def generate_signing_key() -> str:
    """Return a base64 encoded 256-bit random value."""
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def generate_password(length: int = DATABASE_PASSWORD_LENGTH) -> str:
    """Return a random password containing every character class at least once."""
    if length < 4:
        raise ValueError("Password length must be at least 4 characters.")
    classes = (string.ascii_lowercase, string.ascii_uppercase, string.digits, _PASSWORD_SYMBOLS)
    alphabet = "".join(classes)
    chars = [secrets.choice(group) for group in classes]
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(classes)))
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def generate_keyset_handle() -> str:
    """Return a base64 encoded Tink JSON keyset holding a fresh AES256-GCM key."""
    aead.register()
    handle = tink.new_keyset_handle(aead.aead_key_templates.AES256_GCM)
    stream = io.StringIO()
    cleartext_keyset_handle.write(tink.JsonKeysetWriter(stream), handle)
    return base64.b64encode(stream.getvalue().encode("utf-8")).decode("ascii")


@dataclass(frozen=True, slots=True)
class SecretMaterial:
    """Secrets generated once per resolver lifetime."""

    signing_key: str
    database_password: str

    @classmethod
    def generate(cls) -> SecretMaterial:
        """Generate fresh secret material."""
        return cls(signing_key=generate_signing_key(), database_password=generate_password())


def default_configuration(material: SecretMaterial) -> dict[str, str]:
    """Return the built-in environment configuration for *material*."""
    return {
        KEY_SPRING_PROFILES: f"prod, {SDK_TYPE}",
        KEY_JWT_TOKEN: material.signing_key,
        "FLUENT_MANAGER_ACCESS_TOKEN_TIME_TO_LIVE": "86400",
        "FLUENT_MANAGER_REFRESH_TOKEN_TIME_TO_LIVE": "1209600",
        "FLUENT_MANAGER_COOKIES_TIME_TO_LIVE": "2592000",
        "FLUENT_MANAGER_MAXIMUM_FAILED_LOGIN_ATTEMPTS": "5",
        "FLUENT_MANAGER_CORS_ALLOWED_PATHS": "*",
        "FLUENT_MANAGER_CORS_ALLOWED_ORIGINS": "*",
        "FLUENT_MANAGER_CORS_ALLOWED_METHODS": "*",
        "FLUENT_MANAGER_DATABASE_URL": "db:5432",
        KEY_DATABASE_NAME: DEFAULT_DATABASE_NAME,
        KEY_DATABASE_USERNAME: DEFAULT_DATABASE_USER,
        KEY_DATABASE_PASSWORD: material.database_password,
        "FLUENT_MANAGER_RESET_SYSTEM_ADMINISTRATOR_CREDENTIALS": "false",
        KEY_MAILING_ENABLE: "false",
        KEY_SMTP_HOST: "smtp.gmail.com",
        KEY_SMTP_PORT: "587",
        KEY_SMTP_USERNAME: "admin@gmail.com",
        KEY_SMTP_PASSWORD: "$$uper$$ecret",
        KEY_SMTP_FROM: "admin@email.com",
        KEY_SMTP_AUTH: "true",
        KEY_SMTP_TLS_ENABLE: "true",
        "FLUENT_MANAGER_SENTRY_DSN": "",
        "FLUENT_MANAGER_SENTRY_ENVIRONMENT": "",
        KEY_LICENSE_SUBSCRIPTION_ENABLE: "true",
        "POSTGRES_DB": DEFAULT_DATABASE_NAME,
        "POSTGRES_USER": DEFAULT_DATABASE_USER,
        KEY_POSTGRES_PASSWORD: material.database_password,
        KEY_ADMIN_EMAIL: "admin@email.com",
        KEY_ADMIN_PASSWORD: "admin@email.com",
        KEY_SDK_TYPE: SDK_TYPE,
        KEY_PUBLIC_URL: DEFAULT_PUBLIC_URL,
    }


def validate_admin_password(password: str) -> str:
    """Return *password* when its length is within the accepted bounds."""
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        raise ValidationError(
            f"Password must have length between {PASSWORD_MIN_LENGTH} "
            f"and {PASSWORD_MAX_LENGTH} characters"
        )
    return password


def resolve_mailing_options(enabled: bool, options: MailingOptions | None) -> MailingOptions | None:
    """Return *options* when mailing is enabled, failing if they are missing."""
    if not enabled:
        return None
    if options is None:
        raise ValidationError(
            "If mailing capabilities are enabled, mailing options must be specified"
        )
    return options


def resolve_vault_options(enabled: bool, options: VaultOptions | None) -> VaultOptions | None:
    """Return *options* when Vault is enabled, failing if they are missing."""
    if not enabled:
        return None
    if options is None:
        raise ValidationError("If Vault capabilities are enabled, Vault options must be specified")
    return options


class EnvironmentResolver:
    """Merge operator input into the default configuration."""

    def __init__(
        self,
        material: SecretMaterial | None = None,
        *,
        keyset_factory: Callable[[], str] = generate_keyset_handle,
    ) -> None:
        """Generate (or adopt) the secret material shared by every resolution."""
        self.material = material or SecretMaterial.generate()
        self.defaults: Mapping[str, str] = MappingProxyType(default_configuration(self.material))
        self._keyset_factory = keyset_factory

    def resolve(
        self,
        admin_email: str,
        admin_password: str,
        public_url: str = DEFAULT_PUBLIC_URL,
        mailing: MailingOptions | None = None,
        vault: VaultOptions | None = None,
    ) -> dict[str, str]:
        """Return the resolved configuration sorted by key."""
        validate_admin_password(admin_password)
        resolved = dict(self.defaults)
        resolved[KEY_ADMIN_EMAIL] = admin_email
        resolved[KEY_ADMIN_PASSWORD] = admin_password
        resolved[KEY_PUBLIC_URL] = public_url
        resolved[KEY_SDK_TYPE] = SDK_TYPE
        resolved[KEY_SPRING_PROFILES] = f"prod, {SDK_TYPE}"
        if mailing is not None:
            resolved[KEY_MAILING_ENABLE] = "true"
            resolved[KEY_SMTP_HOST] = mailing.smtp_host
            resolved[KEY_SMTP_PORT] = mailing.smtp_port
            resolved[KEY_SMTP_USERNAME] = mailing.smtp_username
            resolved[KEY_SMTP_PASSWORD] = mailing.smtp_password
            resolved[KEY_SMTP_FROM] = mailing.smtp_from_address
            resolved[KEY_SMTP_AUTH] = _bool_text(mailing.smtp_auth)
            resolved[KEY_SMTP_TLS_ENABLE] = _bool_text(mailing.smtp_tls_enable)
        if vault is not None:
            resolved[KEY_VAULT_ENABLE] = "true"
            resolved[KEY_VAULT_URI] = vault.vault_url
            resolved[KEY_VAULT_TOKEN] = vault.vault_token
            resolved[KEY_VAULT_SECRET_ENGINE_PATH] = vault.vault_secret_engine_path
        else:
            resolved.update(VAULT_DISABLED_DEFAULTS)
        resolved[KEY_KEYSET_HANDLE] = self._keyset_factory()
        return dict(sorted(resolved.items()))


def preserve_database_secrets(
    resolved: Mapping[str, str],
    existing: Mapping[str, str],
) -> dict[str, str]:
    """Return *resolved* with the database passwords taken from *existing*.

    The database volume keeps the password it was initialised with, so a
    rewrite of the environment file must not rotate it.
    """
    merged = dict(resolved)
    for key in DATABASE_SECRET_KEYS:
        value = existing.get(key)
        if key in merged and value:
            merged[key] = value
    return merged


def configurations_match(
    existing: Mapping[str, str],
    resolved: Mapping[str, str],
    *,
    tolerant_keys: Collection[str] = TOLERANT_KEYS,
    regenerated_keys: Collection[str] = REGENERATED_KEYS,
) -> bool:
    """Return ``True`` when *existing* is equivalent to *resolved*.

    Keys in *tolerant_keys* must agree in length, keys in *regenerated_keys*
    only have to be non-empty on both sides.
    """
    if len(existing) != len(resolved):
        return False
    for key, value in existing.items():
        if key not in resolved:
            return False
        candidate = resolved[key]
        if key in regenerated_keys:
            if not value or not candidate:
                return False
        elif key in tolerant_keys:
            if len(value) != len(candidate):
                return False
        elif value != candidate:
            return False
    return True


def reconcile(path: Path, resolved: Mapping[str, str]) -> bool:
    """Return ``True`` when the file at *path* is current with *resolved*."""
    if not path.exists():
        return False
    return configurations_match(read_env_file(path), resolved)


def read_env_file(path: Path) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines from *path*."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise EnvFileError(f"Failed to read configuration file {path}: {exc}") from exc
    return parse_env_text(text)


def parse_env_text(text: str) -> dict[str, str]:
    """Parse property-style content (``=`` or ``:`` separated, ``#``/``!`` comments)."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.lstrip()
        if not line or line[0] in "#!":
            continue
        positions = [pos for pos in (line.find("="), line.find(":")) if pos != -1]
        if not positions:
            values[line.strip()] = ""
            continue
        split_at = min(positions)
        key = line[:split_at].strip()
        values[key] = line[split_at + 1 :].lstrip()
    return values


def read_env_value(path: Path, key: str) -> str:
    """Return the value of *key* in *path* (empty string when unavailable)."""
    if not path.exists():
        return ""
    return read_env_file(path).get(key, "")


def write_env_file(path: Path, configuration: Mapping[str, str], *, overwrite: bool = True) -> None:
    """Persist *configuration* as ``KEY=VALUE`` lines in iteration order."""
    content = "".join(f"{key}={value}\n" for key, value in configuration.items())
    path = path.expanduser()
    try:
        if not overwrite:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(content)
            return
        directory = path.parent if str(path.parent) else Path(".")
        directory.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
    except OSError as exc:
        raise EnvFileError(f"Failed to write configuration file {path}: {exc}") from exc


def redact(configuration: Mapping[str, str]) -> dict[str, str]:
    """Return a copy of *configuration* safe for logs."""
    return {
        key: ("***" if key in SECRET_KEYS and value else value)
        for key, value in configuration.items()
    }


def _bool_text(value: bool) -> str:
    return "true" if value else "false"


__all__ = [
    "DATABASE_SECRET_KEYS",
    "EnvFileError",
    "EnvironmentResolver",
    "MailingOptions",
    "REGENERATED_KEYS",
    "SecretMaterial",
    "TOLERANT_KEYS",
    "ValidationError",
    "VaultOptions",
    "configurations_match",
    "default_configuration",
    "generate_keyset_handle",
    "generate_password",
    "generate_signing_key",
    "parse_env_text",
    "preserve_database_secrets",
    "read_env_file",
    "read_env_value",
    "reconcile",
    "redact",
    "resolve_mailing_options",
    "resolve_vault_options",
    "validate_admin_password",
    "write_env_file",
]
