"""Tests for certkeeper.services.deployment_settings.DeploymentSettingsStore."""

from __future__ import annotations

import json

import pytest

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.models.action import SECRET_MASK
from certkeeper.services.deployment_settings import CATEGORIES, DeploymentSettingsStore


@pytest.fixture()
def store(tmp_path, container):
    return DeploymentSettingsStore(tmp_path / "deployment-settings.json", container.box)


class TestDefaults:
    def test_all_categories(self, store):
        data = store.get()
        assert set(data) == set(CATEGORIES)
        assert data["email"]["smtp"]["port"] == 587
        assert data["nginxProxyManager"]["port"] == 81
        assert data["defaults"] == {"timeouts": {}}

    def test_unknown_category(self, store):
        with pytest.raises(CertProblem) as exc_info:
            store.get("slack")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND


class TestUpdate:
    def test_secrets_masked_and_encrypted(self, tmp_path, store):
        masked = store.update("nginxProxyManager", {"host": "npm.local", "password": "s3cret"})
        assert masked["password"] == SECRET_MASK
        assert masked["host"] == "npm.local"
        assert store.resolved("nginxProxyManager")["password"] == "s3cret"
        raw = (tmp_path / "deployment-settings.json").read_text(encoding="utf-8")
        assert "s3cret" not in raw
        assert json.loads(raw)["nginxProxyManager"]["password"].startswith("enc:v1:")

    def test_masked_value_keeps_stored_secret(self, store):
        store.update("email", {"smtp": {"host": "mail", "password": "s3cret"}})
        store.update("email", {"smtp": {"host": "relay", "password": SECRET_MASK}})
        resolved = store.resolved("email")
        assert resolved["smtp"]["host"] == "relay"
        assert resolved["smtp"]["password"] == "s3cret"

    def test_nested_merge(self, store):
        store.update("email", {"smtp": {"host": "mail"}})
        store.update("email", {"smtp": {"port": 2525}})
        smtp = store.get("email")["smtp"]
        assert (smtp["host"], smtp["port"]) == ("mail", 2525)

    def test_empty_secret_not_masked(self, store):
        assert store.get("email")["smtp"]["password"] == ""

    def test_timeouts(self, store):
        store.update("defaults", {"timeouts": {"command": 120}})
        assert store.resolved("defaults") == {"timeouts": {"command": 120}}

    @pytest.mark.parametrize(
        ("category", "patch"),
        [
            ("email", {"smtp": {"port": "25"}}),
            ("email", {"relay": {}}),
            ("nginxProxyManager", {"port": 0}),
            ("defaults", {"timeouts": {"copy": 0}}),
        ],
    )
    def test_invalid_patch(self, store, category, patch):
        with pytest.raises(CertProblem) as exc_info:
            store.update(category, patch)
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_patch_must_be_object(self, store):
        with pytest.raises(CertProblem, match="JSON object"):
            store.update("email", ["smtp"])

    def test_persisted(self, tmp_path, container, store):
        store.update("nginxProxyManager", {"host": "npm.local", "password": "s3cret"})
        reopened = DeploymentSettingsStore(tmp_path / "deployment-settings.json", container.box)
        assert reopened.resolved("nginxProxyManager")["password"] == "s3cret"
        assert reopened.get("nginxProxyManager")["host"] == "npm.local"
