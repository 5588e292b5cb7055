"""Typed, frozen dataclasses for every configuration section.

This module is the **single source of truth** for default values.
JSON Schema defaults exist only for documentation; these builders
are what the application actually reads.

Access pattern::

    from certkeeper.config import get_config

    renewal = get_config().settings.renewal
    print(renewal.schedule, renewal.workers)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ServerSettings:
    """HTTP server configuration (bind address, workers, timeouts)."""

    bind: str
    port: int
    workers: int
    worker_class: str
    timeout: int
    graceful_timeout: int
    keepalive: int


def _build_server(data: dict | None) -> ServerSettings:
    d = data or {}
    return ServerSettings(
        bind=d.get("bind", "127.0.0.1"),
        port=d.get("port", 3000),
        # The engine keeps in-process state (index, scheduler), so a
        # single worker process with threads is the supported layout.
        workers=d.get("workers", 1),
        worker_class=d.get("worker_class", "gthread"),
        timeout=d.get("timeout", 120),
        graceful_timeout=d.get("graceful_timeout", 30),
        keepalive=d.get("keepalive", 2),
    )


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StorageSettings:
    """Filesystem locations of certificates and engine state files."""

    root: str
    state_dir: str
    deployment_settings_file: str
    vault_file: str
    salt_file: str
    scheduler_state_file: str


def _build_storage(data: dict | None) -> StorageSettings:
    d = data or {}
    root = d.get("root", "./certs")
    state_dir = d.get("state_dir") or os.path.join(root, ".certkeeper")
    return StorageSettings(
        root=root,
        state_dir=state_dir,
        deployment_settings_file=d.get("deployment_settings_file")
        or os.path.join(state_dir, "deployment-settings.json"),
        vault_file=d.get("vault_file") or os.path.join(state_dir, "passphrases.json"),
        salt_file=d.get("salt_file") or os.path.join(state_dir, "vault.salt"),
        scheduler_state_file=d.get("scheduler_state_file")
        or os.path.join(state_dir, "scheduler.json"),
    )


# ---------------------------------------------------------------------------
# Vault
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VaultSettings:
    """Where the master secret comes from.

    ``master_secret`` is normally a ``${VAR}`` reference; when it is
    empty the secret is read from ``master_secret_env`` at startup.
    """

    master_secret_env: str
    master_secret: str | None


def _build_vault(data: dict | None) -> VaultSettings:
    d = data or {}
    return VaultSettings(
        master_secret_env=d.get("master_secret_env", "CERTKEEPER_MASTER_SECRET"),
        master_secret=d.get("master_secret") or None,
    )


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValiditySettings:
    """Default validity (days) per certificate type."""

    root_ca: int
    intermediate_ca: int
    standard: int

    def for_type(self, cert_type: str) -> int:
        return {
            "rootCA": self.root_ca,
            "intermediateCA": self.intermediate_ca,
        }.get(cert_type, self.standard)


@dataclass(frozen=True)
class RenewalSettings:
    """Renewal scheduler, worker pool and global policy defaults."""

    enabled: bool
    schedule: str
    workers: int
    max_retries: int
    retry_base_seconds: float
    lock_timeout_seconds: int
    validity_days: ValiditySettings
    renew_before_days: int
    key_type: str
    key_size: int
    auto_renew: bool
    include_idle_on_renewal: bool
    backups_enabled: bool
    keep_backups_forever: bool
    backup_retention_days: int


def _build_renewal(data: dict | None) -> RenewalSettings:
    d = data or {}
    v = d.get("validity_days") or {}
    return RenewalSettings(
        enabled=d.get("enabled", True),
        schedule=d.get("schedule", "0 0 * * *"),
        workers=d.get("workers", 3),
        max_retries=d.get("max_retries", 3),
        retry_base_seconds=d.get("retry_base_seconds", 2.0),
        lock_timeout_seconds=d.get("lock_timeout_seconds", 300),
        validity_days=ValiditySettings(
            root_ca=v.get("rootCA", 3650),
            intermediate_ca=v.get("intermediateCA", 1825),
            standard=v.get("standard", 90),
        ),
        renew_before_days=d.get("renew_before_days", 30),
        key_type=d.get("key_type", "rsa"),
        key_size=d.get("key_size", 2048),
        auto_renew=d.get("auto_renew", True),
        include_idle_on_renewal=d.get("include_idle_on_renewal", True),
        backups_enabled=d.get("backups_enabled", True),
        keep_backups_forever=d.get("keep_backups_forever", True),
        backup_retention_days=d.get("backup_retention_days", 90),
    )


# ---------------------------------------------------------------------------
# File watcher
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WatcherSettings:
    """Filesystem watcher that triggers ad-hoc sweeps."""

    enabled: bool
    debounce_seconds: float


def _build_watcher(data: dict | None) -> WatcherSettings:
    d = data or {}
    return WatcherSettings(
        enabled=d.get("enabled", True),
        debounce_seconds=d.get("debounce_seconds", 5.0),
    )


# ---------------------------------------------------------------------------
# Deployment dispatch
# ---------------------------------------------------------------------------

_DEFAULT_ACTION_TIMEOUTS: dict[str, int] = {
    "copy": 30,
    "command": 300,
    "docker-restart": 120,
    "nginx-proxy-manager": 120,
    "ssh-copy": 120,
    "smb-copy": 120,
    "ftp-copy": 120,
    "api-call": 60,
    "webhook": 30,
    "email": 60,
}


@dataclass(frozen=True)
class DispatchSettings:
    """Deployment dispatcher pool, deadlines and history."""

    workers: int
    history_size: int
    timeouts: dict[str, int]

    def timeout_for(self, kind: str) -> int:
        return self.timeouts.get(kind, 60)


def _build_dispatch(data: dict | None) -> DispatchSettings:
    d = data or {}
    timeouts = dict(_DEFAULT_ACTION_TIMEOUTS)
    timeouts.update(d.get("timeouts") or {})
    return DispatchSettings(
        workers=d.get("workers", 4),
        history_size=d.get("history_size", 20),
        timeouts=timeouts,
    )


# ---------------------------------------------------------------------------
# SMTP
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SmtpSettings:
    """Fallback SMTP relay for email deployment actions."""

    host: str
    port: int
    username: str
    password: str
    use_tls: bool
    use_ssl: bool
    from_address: str
    timeout_seconds: int
    templates_path: str | None


def _build_smtp(data: dict | None) -> SmtpSettings:
    d = data or {}
    return SmtpSettings(
        host=d.get("host", ""),
        port=d.get("port", 587),
        username=d.get("username", ""),
        password=d.get("password", ""),
        use_tls=d.get("use_tls", True),
        use_ssl=d.get("use_ssl", False),
        from_address=d.get("from_address", "Certificate Manager <cert-manager@localhost>"),
        timeout_seconds=d.get("timeout_seconds", 30),
        templates_path=d.get("templates_path"),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditLogSettings:
    """Audit log output settings (file, rotation)."""

    enabled: bool
    file: str | None
    max_file_size_bytes: int
    backup_count: int


@dataclass(frozen=True)
class LoggingSettings:
    """Application logging configuration (level, format, audit)."""

    level: str
    format: str
    audit: AuditLogSettings


def _build_logging(data: dict | None) -> LoggingSettings:
    d = data or {}
    a = d.get("audit") or {}
    return LoggingSettings(
        level=d.get("level", "INFO"),
        format=d.get("format", "text"),
        audit=AuditLogSettings(
            enabled=a.get("enabled", False),
            file=a.get("file"),
            max_file_size_bytes=a.get("max_file_size_bytes", 10_485_760),
            backup_count=a.get("backup_count", 5),
        ),
    )


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ApiSettings:
    """HTTP API mount point and request limits."""

    base_path: str
    max_request_body_bytes: int


def _build_api(data: dict | None) -> ApiSettings:
    d = data or {}
    return ApiSettings(
        base_path=d.get("base_path", "/api"),
        max_request_body_bytes=d.get("max_request_body_bytes", 1_048_576),
    )


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HookEntrySettings:
    """Single registered hook entry with events and config."""

    class_path: str
    enabled: bool
    events: tuple[str, ...]
    timeout_seconds: int | None
    config: dict[str, Any]


@dataclass(frozen=True)
class HookSettings:
    """Lifecycle hook system settings (workers, retries, registry)."""

    timeout_seconds: int
    max_workers: int
    max_retries: int
    registered: tuple[HookEntrySettings, ...]


def _build_hooks(data: dict | None) -> HookSettings:
    from certkeeper.hooks.events import KNOWN_EVENTS  # noqa: PLC0415

    d = data or {}
    registered = []
    for idx, entry in enumerate(d.get("registered", [])):
        events = tuple(entry.get("events", []))
        for evt in events:
            if evt not in KNOWN_EVENTS:
                msg = (
                    f"hooks.registered[{idx}].events: unknown event "
                    f"'{evt}'. Known events: {sorted(KNOWN_EVENTS)}"
                )
                raise ValueError(
                    msg,
                )
        registered.append(
            HookEntrySettings(
                class_path=entry["class"],
                enabled=entry.get("enabled", True),
                events=events,
                timeout_seconds=entry.get("timeout_seconds"),
                config=entry.get("config", {}),
            )
        )
    return HookSettings(
        timeout_seconds=d.get("timeout_seconds", 30),
        max_workers=d.get("max_workers", 2),
        max_retries=d.get("max_retries", 0),
        registered=tuple(registered),
    )


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertkeeperSettings:
    """Root of the typed settings tree."""

    server: ServerSettings
    storage: StorageSettings
    vault: VaultSettings
    renewal: RenewalSettings
    watcher: WatcherSettings
    dispatch: DispatchSettings
    smtp: SmtpSettings
    logging: LoggingSettings
    api: ApiSettings
    hooks: HookSettings


def build_settings(data: dict) -> CertkeeperSettings:
    """Build the full typed settings tree from raw config data.

    Called once during :class:`CertkeeperConfig` initialization after
    schema validation and environment-variable resolution.
    """
    return CertkeeperSettings(
        server=_build_server(data.get("server")),
        storage=_build_storage(data.get("storage")),
        vault=_build_vault(data.get("vault")),
        renewal=_build_renewal(data.get("renewal")),
        watcher=_build_watcher(data.get("watcher")),
        dispatch=_build_dispatch(data.get("dispatch")),
        smtp=_build_smtp(data.get("smtp")),
        logging=_build_logging(data.get("logging")),
        api=_build_api(data.get("api")),
        hooks=_build_hooks(data.get("hooks")),
    )
