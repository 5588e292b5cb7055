"""Deployment actions as a tagged variant.

Every action kind is a frozen dataclass deriving from :class:`Action`
and registered in :data:`ACTION_TYPES` under its :class:`ActionKind`.
Wire dictionaries use camelCase keys; each class declares a JSON Schema
fragment for its own fields, validated with ``jsonschema`` before the
dataclass is built.

Secret fields (passwords, private keys, tokens) hold ``enc:v1:``
tokens while at rest and in memory; :meth:`Action.map_secrets` swaps
them for plaintext right before execution.
"""

from __future__ import annotations

import copy
import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar
from uuid import uuid4

from jsonschema import Draft7Validator

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import ActionKind

SECRET_MASK = "********"
MAX_MODE = 0o7777

_BASE_PROPERTIES: dict[str, Any] = {
    "id": {"type": "string", "minLength": 1, "maxLength": 64},
    "name": {"type": "string", "minLength": 1, "maxLength": 200},
    "kind": {"type": "string"},
    "type": {"type": "string"},
    "enabled": {"type": "boolean"},
    "requiresPrevious": {"type": "boolean"},
    "timeoutSeconds": {"type": ["integer", "null"], "minimum": 1, "maximum": 3600},
}

_PORT = {"type": "integer", "minimum": 1, "maximum": 65535}
_MODE = {"type": ["integer", "string", "null"]}
_STR = {"type": "string"}
_OPT_STR = {"type": ["string", "null"]}
_STR_MAP = {"type": "object", "additionalProperties": {"type": "string"}}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


def wire_name(f: dataclasses.Field) -> str:
    return f.metadata.get("wire") or _camel(f.name)


def parse_mode(value: Any) -> int | None:  # noqa: ANN401
    """Parse a POSIX mode given as an octal string (``"644"``) or a stored integer."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise CertProblem(ErrorKind.INVALID_INPUT, "permissions must be a mode, not a boolean")
    if isinstance(value, int):
        mode = value
    else:
        text = str(value).strip().lower().removeprefix("0o")
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"permissions '{value}' is not an octal mode",
            ) from exc
    if not 0 <= mode <= MAX_MODE:
        raise CertProblem(ErrorKind.INVALID_INPUT, f"permissions {value!r} out of range")
    return mode


# ---------------------------------------------------------------------------
# Base variant
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Action:
    """Fields shared by every action kind."""

    id: str
    name: str
    enabled: bool = True
    requires_previous: bool = False
    timeout_seconds: int | None = None

    kind: ClassVar[ActionKind]
    PROPERTIES: ClassVar[dict[str, Any]] = {}
    REQUIRED: ClassVar[tuple[str, ...]] = ()
    EXTRA_SCHEMA: ClassVar[dict[str, Any]] = {}
    # Dotted wire paths (``"auth.token"``) of secret values
    SECRET_FIELDS: ClassVar[tuple[str, ...]] = ()

    # -- serialisation ------------------------------------------------------

    @classmethod
    def schema(cls) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {**_BASE_PROPERTIES, **cls.PROPERTIES},
            "required": ["name", *cls.REQUIRED],
            **cls.EXTRA_SCHEMA,
        }

    def to_dict(self, *, mask_secrets: bool = False) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value}
        for f in dataclasses.fields(self):
            data[wire_name(f)] = copy.deepcopy(getattr(self, f.name))
        if mask_secrets:
            for path in self.SECRET_FIELDS:
                _apply_path(data, path, lambda v: SECRET_MASK if v else v)
        return data

    @classmethod
    def build(cls, data: dict[str, Any]) -> Action:
        """Validate *data* against this kind's schema and build the variant."""
        errors = sorted(
            Draft7Validator(cls.schema()).iter_errors(data),
            key=lambda e: list(e.absolute_path),
        )
        if errors:
            details = "; ".join(
                f"{'.'.join(str(p) for p in e.absolute_path) or cls.kind.value}: {e.message}"
                for e in errors
            )
            raise CertProblem(ErrorKind.INVALID_INPUT, f"Invalid {cls.kind.value} action: {details}")

        kwargs: dict[str, Any] = {}
        for f in dataclasses.fields(cls):
            key = wire_name(f)
            if key in data:
                kwargs[f.name] = copy.deepcopy(data[key])
        kwargs["id"] = data.get("id") or uuid4().hex
        action = cls(**kwargs)
        action.validate()
        return action

    def validate(self) -> None:
        """Kind-specific checks beyond the schema; override as needed."""

    # -- secrets ------------------------------------------------------------

    def map_secrets(self, fn) -> Action:
        """Return a copy with *fn* applied to every non-empty secret value."""
        if not self.SECRET_FIELDS:
            return self
        data = self.to_dict()
        for path in self.SECRET_FIELDS:
            _apply_path(data, path, lambda v: fn(v) if v else v)
        return type(self).build(data)

    def secret_values(self) -> dict[str, Any]:
        data = self.to_dict()
        values = {}
        for path in self.SECRET_FIELDS:
            node: Any = data
            for part in path.split("."):
                node = node.get(part) if isinstance(node, dict) else None
            values[path] = node
        return values


def _apply_path(data: dict[str, Any], path: str, fn) -> None:
    *parents, leaf = path.split(".")
    node: Any = data
    for part in parents:
        node = node.get(part) if isinstance(node, dict) else None
    if isinstance(node, dict) and leaf in node:
        node[leaf] = fn(node[leaf])


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CopyAction(Action):
    source: str = "crt"
    destination: str = ""
    permissions: int | None = None

    kind = ActionKind.COPY
    PROPERTIES = {"source": _STR, "destination": {"type": "string", "minLength": 1},
                  "permissions": _MODE}
    REQUIRED = ("destination",)

    def validate(self) -> None:
        object.__setattr__(self, "permissions", parse_mode(self.permissions))


@dataclass(frozen=True)
class CommandAction(Action):
    command: str = ""
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    kind = ActionKind.COMMAND
    PROPERTIES = {"command": {"type": "string", "minLength": 1}, "cwd": _OPT_STR,
                  "env": _STR_MAP}
    REQUIRED = ("command",)


@dataclass(frozen=True)
class DockerRestartAction(Action):
    container_id: str | None = None
    container_name: str | None = None
    docker_host: str | None = None
    stop_timeout: int = 10

    kind = ActionKind.DOCKER_RESTART
    PROPERTIES = {"containerId": _OPT_STR, "containerName": _OPT_STR,
                  "dockerHost": _OPT_STR,
                  "stopTimeout": {"type": "integer", "minimum": 0, "maximum": 600}}
    EXTRA_SCHEMA = {
        "anyOf": [
            {"required": ["containerId"], "properties": {"containerId": {"minLength": 1}}},
            {"required": ["containerName"], "properties": {"containerName": {"minLength": 1}}},
        ],
    }


@dataclass(frozen=True)
class NginxProxyManagerAction(Action):
    method: str = "api"
    npm_path: str | None = None
    npm_container_name: str | None = None
    docker_host: str | None = None
    certificate_id: int | None = None
    certificate_name: str | None = None
    create_if_missing: bool = False
    host: str | None = None
    port: int | None = None
    use_https: bool | None = None
    username: str | None = None
    password: str | None = None

    kind = ActionKind.NGINX_PROXY_MANAGER
    PROPERTIES = {
        "method": {"enum": ["path", "docker", "api"]},
        "npmPath": _OPT_STR,
        "npmContainerName": _OPT_STR,
        "dockerHost": _OPT_STR,
        "certificateId": {"type": ["integer", "null"], "minimum": 1},
        "certificateName": _OPT_STR,
        "createIfMissing": {"type": "boolean"},
        "host": _OPT_STR,
        "port": {"type": ["integer", "null"], "minimum": 1, "maximum": 65535},
        "useHttps": {"type": ["boolean", "null"]},
        "username": _OPT_STR,
        "password": _OPT_STR,
    }
    REQUIRED = ("method",)
    SECRET_FIELDS = ("password",)

    def validate(self) -> None:
        if self.method == "path" and not self.npm_path:
            raise CertProblem(ErrorKind.INVALID_INPUT, "npmPath is required for method 'path'")
        if self.method == "docker" and not self.npm_container_name:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                "npmContainerName is required for method 'docker'",
            )


@dataclass(frozen=True)
class SshCopyAction(Action):
    host: str = ""
    port: int = 22
    username: str = ""
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None
    source: str = "crt"
    destination: str = ""
    permissions: int | None = None
    command: str | None = None

    kind = ActionKind.SSH_COPY
    PROPERTIES = {
        "host": {"type": "string", "minLength": 1},
        "port": _PORT,
        "username": {"type": "string", "minLength": 1},
        "password": _OPT_STR,
        "privateKey": _OPT_STR,
        "passphrase": _OPT_STR,
        "source": _STR,
        "destination": {"type": "string", "minLength": 1},
        "permissions": _MODE,
        "command": _OPT_STR,
    }
    REQUIRED = ("host", "username", "destination")
    SECRET_FIELDS = ("password", "privateKey", "passphrase")

    def validate(self) -> None:
        object.__setattr__(self, "permissions", parse_mode(self.permissions))
        if not self.password and not self.private_key:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                "ssh-copy needs either a password or a privateKey",
            )


@dataclass(frozen=True)
class SmbCopyAction(Action):
    host: str = ""
    share: str = ""
    port: int = 445
    domain: str | None = None
    username: str | None = None
    password: str | None = None
    source: str = "crt"
    destination: str = ""

    kind = ActionKind.SMB_COPY
    PROPERTIES = {
        "host": {"type": "string", "minLength": 1},
        "share": {"type": "string", "minLength": 1},
        "port": _PORT,
        "domain": _OPT_STR,
        "username": _OPT_STR,
        "password": _OPT_STR,
        "source": _STR,
        "destination": {"type": "string", "minLength": 1},
    }
    REQUIRED = ("host", "share", "destination")
    SECRET_FIELDS = ("password",)


@dataclass(frozen=True)
class FtpCopyAction(Action):
    host: str = ""
    port: int = 21
    username: str = "anonymous"
    password: str | None = None
    secure: bool = False
    passive: bool = True
    source: str = "crt"
    destination: str = ""
    permissions: int | None = None

    kind = ActionKind.FTP_COPY
    PROPERTIES = {
        "host": {"type": "string", "minLength": 1},
        "port": _PORT,
        "username": _STR,
        "password": _OPT_STR,
        "secure": {"type": "boolean"},
        "passive": {"type": "boolean"},
        "source": _STR,
        "destination": {"type": "string", "minLength": 1},
        "permissions": _MODE,
    }
    REQUIRED = ("host", "destination")
    SECRET_FIELDS = ("password",)

    def validate(self) -> None:
        object.__setattr__(self, "permissions", parse_mode(self.permissions))


_HTTP_AUTH = {
    "type": ["object", "null"],
    "properties": {
        "type": {"enum": ["bearer", "basic", "apiKey", "none"]},
        "token": _OPT_STR,
        "username": _OPT_STR,
        "password": _OPT_STR,
        "apiKey": _OPT_STR,
        "apiKeyHeader": _OPT_STR,
    },
}


@dataclass(frozen=True)
class ApiCallAction(Action):
    url: str = ""
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    json_payload: Any = None
    form_data: dict[str, str] | None = None
    data: str | None = None
    content_type: str | None = None
    auth: dict[str, Any] | None = None

    kind = ActionKind.API_CALL
    PROPERTIES = {
        "url": {"type": "string", "pattern": "^https?://"},
        "method": {"enum": ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]},
        "headers": _STR_MAP,
        "jsonPayload": {},
        "formData": {"type": ["object", "null"], "additionalProperties": {"type": "string"}},
        "data": _OPT_STR,
        "contentType": _OPT_STR,
        "auth": _HTTP_AUTH,
    }
    REQUIRED = ("url",)
    SECRET_FIELDS = ("auth.token", "auth.password", "auth.apiKey")


@dataclass(frozen=True)
class WebhookAction(Action):
    url: str = ""
    method: str = "POST"
    event: str = "certificate.deployed"
    headers: dict[str, str] = field(default_factory=dict)
    payload: str | None = None
    content_type: str = "application/json"
    custom_data: dict[str, Any] | None = None
    include_files: bool = False

    kind = ActionKind.WEBHOOK
    PROPERTIES = {
        "url": {"type": "string", "pattern": "^https?://"},
        "method": {"enum": ["POST", "PUT", "PATCH"]},
        "event": _STR,
        "headers": _STR_MAP,
        "payload": _OPT_STR,
        "contentType": _STR,
        "customData": {"type": ["object", "null"]},
        "includeFiles": {"type": "boolean"},
    }
    REQUIRED = ("url",)


_ADDRESSES = {"anyOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}]}


@dataclass(frozen=True)
class EmailAction(Action):
    to: list[str] | str = field(default_factory=list)
    cc: list[str] | str = field(default_factory=list)
    bcc: list[str] | str = field(default_factory=list)
    sender: str | None = field(default=None, metadata={"wire": "from"})
    subject: str = "Certificate Update: {{ name }}"
    body: str | None = None
    html: bool = True
    attach_certificates: bool = False
    smtp: dict[str, Any] | None = None

    kind = ActionKind.EMAIL
    PROPERTIES = {
        "to": _ADDRESSES,
        "cc": _ADDRESSES,
        "bcc": _ADDRESSES,
        "from": _OPT_STR,
        "subject": _STR,
        "body": _OPT_STR,
        "html": {"type": "boolean"},
        "attachCertificates": {"type": "boolean"},
        "smtp": {
            "type": ["object", "null"],
            "properties": {
                "host": _STR,
                "port": _PORT,
                "secure": {"type": "boolean"},
                "user": _OPT_STR,
                "password": _OPT_STR,
            },
        },
    }
    REQUIRED = ("to",)
    SECRET_FIELDS = ("smtp.password",)

    def recipients(self, which: str) -> list[str]:
        value = getattr(self, which)
        if isinstance(value, str):
            return [a.strip() for a in value.split(",") if a.strip()]
        return list(value)

    def validate(self) -> None:
        if not self.recipients("to"):
            raise CertProblem(ErrorKind.INVALID_INPUT, "email action needs at least one recipient")


# ---------------------------------------------------------------------------
# Registry of variants
# ---------------------------------------------------------------------------

ACTION_TYPES: dict[ActionKind, type[Action]] = {
    cls.kind: cls
    for cls in (
        CopyAction,
        CommandAction,
        DockerRestartAction,
        NginxProxyManagerAction,
        SshCopyAction,
        SmbCopyAction,
        FtpCopyAction,
        ApiCallAction,
        WebhookAction,
        EmailAction,
    )
}


def action_from_dict(data: dict[str, Any]) -> Action:
    """Build the right :class:`Action` variant from a wire dictionary."""
    if not isinstance(data, dict):
        raise CertProblem(ErrorKind.INVALID_INPUT, "Action must be a JSON object")
    raw_kind = data.get("kind") or data.get("type")
    try:
        kind = ActionKind(raw_kind)
    except ValueError as exc:
        raise CertProblem(
            ErrorKind.INVALID_INPUT,
            f"Unknown action kind '{raw_kind}'; expected one of "
            f"{sorted(k.value for k in ActionKind)}",
        ) from exc
    return ACTION_TYPES[kind].build(data)
