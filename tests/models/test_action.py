"""Tests for certkeeper.models.action."""

from __future__ import annotations

import pytest

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import ActionKind
from certkeeper.models.action import (
    SECRET_MASK,
    ApiCallAction,
    CopyAction,
    EmailAction,
    SshCopyAction,
    action_from_dict,
    parse_mode,
)


class TestParseMode:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("644", 0o644), ("0o600", 0o600), (0o640, 0o640), (None, None), ("", None)],
    )
    def test_valid(self, value, expected):
        assert parse_mode(value) == expected

    @pytest.mark.parametrize("value", ["rw-r--r--", "99", True, 0o17777])
    def test_invalid(self, value):
        with pytest.raises(CertProblem) as exc_info:
            parse_mode(value)
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT


class TestBuild:
    def test_copy_action(self):
        action = action_from_dict(
            {"kind": "copy", "name": "to nginx", "destination": "/etc/nginx/{name}.crt",
             "permissions": "640"},
        )
        assert isinstance(action, CopyAction)
        assert action.kind == ActionKind.COPY
        assert action.permissions == 0o640
        assert action.source == "crt"
        assert action.enabled
        assert not action.requires_previous
        assert len(action.id) == 32

    def test_type_is_accepted_for_kind(self):
        action = action_from_dict({"type": "command", "name": "reload", "command": "true"})
        assert action.kind == ActionKind.COMMAND

    def test_unknown_kind(self):
        with pytest.raises(CertProblem, match="Unknown action kind"):
            action_from_dict({"kind": "carrier-pigeon", "name": "x"})

    def test_schema_errors_name_the_field(self):
        with pytest.raises(CertProblem) as exc_info:
            action_from_dict({"kind": "copy", "name": "x", "destination": "", "timeoutSeconds": 0})
        detail = exc_info.value.detail
        assert "destination" in detail
        assert "timeoutSeconds" in detail

    def test_name_required(self):
        with pytest.raises(CertProblem, match="name"):
            action_from_dict({"kind": "command", "command": "true"})

    def test_docker_needs_container(self):
        with pytest.raises(CertProblem):
            action_from_dict({"kind": "docker-restart", "name": "restart"})
        action = action_from_dict({"kind": "docker-restart", "name": "r", "containerName": "web"})
        assert action.stop_timeout == 10

    def test_ssh_needs_credentials(self):
        with pytest.raises(CertProblem, match="password or a privateKey"):
            action_from_dict(
                {"kind": "ssh-copy", "name": "x", "host": "h", "username": "u", "destination": "/d"},
            )

    def test_npm_method_requirements(self):
        with pytest.raises(CertProblem, match="npmPath"):
            action_from_dict({"kind": "nginx-proxy-manager", "name": "x", "method": "path"})

    def test_url_must_be_http(self):
        with pytest.raises(CertProblem):
            action_from_dict({"kind": "webhook", "name": "x", "url": "ftp://example.com"})

    def test_not_a_mapping(self):
        with pytest.raises(CertProblem, match="JSON object"):
            action_from_dict(["copy"])


class TestEmail:
    def test_from_uses_wire_name(self):
        action = action_from_dict(
            {"kind": "email", "name": "notify", "to": "a@example.com, b@example.com",
             "from": "certs@example.com"},
        )
        assert isinstance(action, EmailAction)
        assert action.sender == "certs@example.com"
        assert action.recipients("to") == ["a@example.com", "b@example.com"]
        assert action.to_dict()["from"] == "certs@example.com"

    def test_needs_recipient(self):
        with pytest.raises(CertProblem, match="recipient"):
            action_from_dict({"kind": "email", "name": "notify", "to": " , "})


class TestSecrets:
    def _api(self):
        return action_from_dict(
            {
                "kind": "api-call",
                "name": "hook",
                "url": "https://api.example.com/certs",
                "auth": {"type": "bearer", "token": "t0k3n"},
            },
        )

    def test_masking(self):
        body = self._api().to_dict(mask_secrets=True)
        assert body["auth"]["token"] == SECRET_MASK
        assert body["auth"]["type"] == "bearer"

    def test_unset_secrets_not_masked(self):
        action = action_from_dict(
            {"kind": "ssh-copy", "name": "x", "host": "h", "username": "u",
             "destination": "/d", "password": "pw"},
        )
        body = action.to_dict(mask_secrets=True)
        assert body["password"] == SECRET_MASK
        assert body["privateKey"] is None

    def test_map_secrets_returns_new_action(self):
        action = self._api()
        upper = action.map_secrets(str.upper)
        assert isinstance(upper, ApiCallAction)
        assert upper.auth["token"] == "T0K3N"
        assert action.auth["token"] == "t0k3n"
        assert upper.id == action.id

    def test_secret_values(self):
        assert self._api().secret_values() == {
            "auth.token": "t0k3n",
            "auth.password": None,
            "auth.apiKey": None,
        }

    def test_round_trip_through_wire_dict(self):
        action = action_from_dict(
            {"kind": "ssh-copy", "name": "x", "host": "h", "username": "u",
             "destination": "/d", "privateKey": "KEY", "permissions": "600"},
        )
        again = action_from_dict(action.to_dict())
        assert isinstance(again, SshCopyAction)
        assert again == action
