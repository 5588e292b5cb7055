"""Loading and validating the configuration file.

The CLI creates the one :class:`CertkeeperConfig` at start-up; code that
runs later fetches it with :func:`get_config`::

    CertkeeperConfig(config_file="/etc/certkeeper/config.yaml")
    ...
    cfg = get_config()
    cfg.settings.renewal.schedule
    cfg.get("smtp.host", default="localhost")

Loading happens in four steps: parse YAML or JSON, substitute
``${VAR}`` / ``${VAR:-default}`` strings from the environment, validate
against the bundled ``schema.json``, then run the cross-field checks
in this module.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from croniter import croniter
from jsonschema import Draft7Validator

from certkeeper.config.settings import CertkeeperSettings, build_settings

log = logging.getLogger(__name__)

_SCHEMA_PATH = Path(__file__).parent / "schema.json"
_ENV_REFERENCE = re.compile(r"^\$\{(?P<name>[^}:]+?)(?::-(?P<default>.*))?\}$", re.DOTALL)
_DOTTED_CLASS = re.compile(r"^[A-Za-z_]\w*(\.[A-Za-z_]\w*)+$", re.ASCII)
_MIN_MASTER_SECRET_LENGTH = 16

_instance: CertkeeperConfig | None = None


def get_config() -> CertkeeperConfig:
    """The configuration created at start-up.

    Raises
    ------
    RuntimeError
        No :class:`CertkeeperConfig` has been created yet.

    """
    if _instance is None:
        msg = "Configuration not initialised; create CertkeeperConfig(config_file=...) first"
        raise RuntimeError(msg)
    return _instance


class ConfigValidationError(Exception):
    """The file failed schema or cross-field validation.

    ``errors`` holds every problem found, not only the first.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        listing = "".join(f"\n  - {error}" for error in errors)
        super().__init__(f"Configuration validation failed:{listing}")


def _substitute(value: Any, where: str) -> Any:  # noqa: ANN401
    """Return *value* with environment references replaced, recursively."""
    if isinstance(value, dict):
        return {k: _substitute(v, f"{where}.{k}" if where else str(k)) for k, v in value.items()}
    if isinstance(value, list):
        return [_substitute(item, f"{where}[{i}]") for i, item in enumerate(value)]
    if not isinstance(value, str):
        return value

    ref = _ENV_REFERENCE.match(value)
    if ref is None:
        return value
    env_value = os.environ.get(ref["name"], ref["default"])
    if env_value is None:
        raise ConfigValidationError(
            [f"'{where}' refers to environment variable {ref['name']}, which is not set"],
        )
    return env_value


def _read_file(path: Path) -> dict:
    text = path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) if path.suffix in (".yaml", ".yml") else json.loads(text)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError([f"{path}: the document must be a mapping"])
    return data


def _schema_errors(data: dict) -> list[str]:
    schema = json.loads(_SCHEMA_PATH.read_text(encoding="utf-8"))
    found = sorted(Draft7Validator(schema).iter_errors(data), key=lambda e: list(e.absolute_path))
    return [
        f"{'.'.join(map(str, err.absolute_path)) or '(root)'}: {err.message}" for err in found
    ]


def _parse(path: Path) -> dict:
    # Substitute first so values from the environment meet the schema too
    data = _substitute(_read_file(path), "")
    errors = _schema_errors(data)
    if errors:
        raise ConfigValidationError(errors)
    return data


# -- cross-field checks ----------------------------------------------------
# Each takes the raw section and appends to (errors, warnings).


def _check_storage(section: dict, errors: list[str], warnings: list[str]) -> None:
    if "root" in section and not str(section["root"]).strip():
        errors.append("storage.root must not be empty")


def _check_renewal(section: dict, errors: list[str], warnings: list[str]) -> None:
    schedule = str(section.get("schedule", "0 0 * * *"))
    if len(schedule.split()) != 5 or not croniter.is_valid(schedule):  # noqa: PLR2004
        errors.append(f"renewal.schedule '{schedule}' is not a valid five-field cron expression")

    renew_before = section.get("renew_before_days", 30)
    errors.extend(
        f"renewal.validity_days.{cert_type} ({days}) must be greater than "
        f"renewal.renew_before_days ({renew_before})"
        for cert_type, days in (section.get("validity_days") or {}).items()
        if days <= renew_before
    )

    if not section.get("keep_backups_forever", True) and section.get("backup_retention_days", 90) < 1:
        errors.append("renewal.backup_retention_days must be at least 1")


def _check_vault(section: dict, errors: list[str], warnings: list[str]) -> None:
    env_name = section.get("master_secret_env", "CERTKEEPER_MASTER_SECRET")
    secret = section.get("master_secret") or os.environ.get(env_name, "")
    if not secret:
        warnings.append(
            f"no master secret (vault.master_secret or ${env_name}): stored passphrases "
            "and action secrets are unavailable (vault sealed)",
        )
    elif len(secret) < _MIN_MASTER_SECRET_LENGTH:
        warnings.append(
            f"vault master secret is short ({len(secret)} chars); "
            f"use at least {_MIN_MASTER_SECRET_LENGTH}",
        )


def _check_smtp(section: dict, errors: list[str], warnings: list[str]) -> None:
    if section.get("use_tls") and section.get("use_ssl"):
        errors.append("smtp.use_tls and smtp.use_ssl are mutually exclusive")


def _check_hooks(section: dict, errors: list[str], warnings: list[str]) -> None:
    for idx, entry in enumerate(section.get("registered", [])):
        class_path = entry.get("class", "")
        if not _DOTTED_CLASS.match(class_path):
            errors.append(
                f"hooks.registered[{idx}].class '{class_path}' must be a "
                "fully-qualified 'package.module.ClassName'",
            )


def _check_logging(section: dict, errors: list[str], warnings: list[str]) -> None:
    audit = section.get("audit") or {}
    if audit.get("enabled") and not audit.get("file"):
        warnings.append("logging.audit is enabled without logging.audit.file; nothing is written")


_CHECKS = {
    "storage": _check_storage,
    "renewal": _check_renewal,
    "vault": _check_vault,
    "smtp": _check_smtp,
    "hooks": _check_hooks,
    "logging": _check_logging,
}


class CertkeeperConfig:
    """The parsed configuration file.

    :pyattr:`settings` is the typed, frozen view; :pyattr:`data` and
    :pymeth:`get` give the raw mapping.  Creating an instance makes it
    the one :func:`get_config` returns.

    Parameters
    ----------
    config_file:
        YAML (``.yaml``/``.yml``) or JSON file.

    Raises
    ------
    ConfigValidationError
        Listing every schema and cross-field problem.

    """

    def __init__(self, *, config_file: str | Path) -> None:
        global _instance  # noqa: PLW0603

        self._path = Path(config_file)
        self._data = _parse(self._path)
        self._data["_source"] = str(self._path)
        self.additional_checks()
        self._settings: CertkeeperSettings = build_settings(self._data)
        _instance = self

    @property
    def settings(self) -> CertkeeperSettings:
        return self._settings

    @property
    def data(self) -> dict:
        return self._data

    @property
    def path(self) -> Path:
        return self._path

    def get(self, dotted: str, default: Any = None) -> Any:  # noqa: ANN401
        """Raw value at a dot path such as ``"smtp.host"``, or *default*."""
        node: Any = self._data
        for key in dotted.split("."):
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def additional_checks(self) -> None:
        """Checks the schema cannot express; warnings are only logged."""
        errors: list[str] = []
        warnings: list[str] = []
        for section, check in _CHECKS.items():
            check(self._data.get(section) or {}, errors, warnings)
        for warning in warnings:
            log.warning("Config warning: %s", warning)
        if errors:
            raise ConfigValidationError(errors)

    def reload_settings(self) -> CertkeeperSettings:
        """Settings built from the file as it is now.

        The instance itself, and what :func:`get_config` returns, are
        left untouched.
        """
        return build_settings(_parse(self._path))

    @classmethod
    def reset(cls) -> None:
        """Forget the current instance (for tests)."""
        global _instance  # noqa: PLW0603
        _instance = None

    def __repr__(self) -> str:
        return f"<CertkeeperConfig {self._path}>"
