"""Configuration subsystem for certkeeper.

Public API::

    from certkeeper.config import get_config, CertkeeperConfig

    # At startup (CLI only):
    CertkeeperConfig(config_file="config.yaml")

    # Everywhere else:
    cfg = get_config()
    schedule = cfg.settings.renewal.schedule  # typed access
    host = cfg.get("smtp.host")                # dynamic dot-path
"""

from certkeeper.config.certkeeper_config import (
    CertkeeperConfig,
    ConfigValidationError,
    get_config,
)
from certkeeper.config.settings import (
    ApiSettings,
    AuditLogSettings,
    CertkeeperSettings,
    DispatchSettings,
    HookEntrySettings,
    HookSettings,
    LoggingSettings,
    RenewalSettings,
    ServerSettings,
    SmtpSettings,
    StorageSettings,
    ValiditySettings,
    VaultSettings,
    WatcherSettings,
    build_settings,
)

__all__ = [
    "ApiSettings",
    "AuditLogSettings",
    "CertkeeperConfig",
    "CertkeeperSettings",
    "ConfigValidationError",
    "DispatchSettings",
    "HookEntrySettings",
    "HookSettings",
    "LoggingSettings",
    "RenewalSettings",
    "ServerSettings",
    "SmtpSettings",
    "StorageSettings",
    "ValiditySettings",
    "VaultSettings",
    "WatcherSettings",
    "build_settings",
    "get_config",
]
