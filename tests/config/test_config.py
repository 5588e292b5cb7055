"""Tests for certkeeper.config: loading, validation and typed settings."""

from __future__ import annotations

import logging

import pytest
import yaml

from certkeeper.config import CertkeeperConfig, ConfigValidationError, build_settings, get_config


def _write(tmp_path, data):
    path = tmp_path / "cfg.yaml"
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoading:
    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        cfg = CertkeeperConfig(config_file=path)
        s = cfg.settings
        assert s.server.port == 3000
        assert s.renewal.schedule == "0 0 * * *"
        assert s.renewal.renew_before_days == 30
        assert s.renewal.validity_days.for_type("rootCA") == 3650
        assert s.renewal.validity_days.for_type("intermediateCA") == 1825
        assert s.renewal.validity_days.for_type("standard") == 90
        assert s.renewal.auto_renew is True
        assert s.watcher.enabled is True
        assert s.dispatch.history_size == 20
        assert s.api.base_path == "/api"

    def test_singleton_and_reset(self, tmp_config_file):
        cfg = CertkeeperConfig(config_file=tmp_config_file)
        assert get_config() is cfg
        CertkeeperConfig.reset()
        with pytest.raises(RuntimeError, match="not initialised"):
            get_config()

    def test_dotted_get(self, config, tmp_path):
        assert config.get("storage.root") == str(tmp_path / "certs")
        assert config.get("smtp.host", "fallback") == "fallback"
        assert config.get("renewal.max_retries") == 0

    def test_path_property(self, config, tmp_config_file):
        assert config.path == tmp_config_file

    def test_state_paths_default_under_root(self, settings, tmp_path):
        root = tmp_path / "certs"
        assert settings.storage.root == str(root)
        assert settings.storage.vault_file.startswith(str(root))
        assert settings.storage.salt_file.endswith("vault.salt")

    def test_json_config(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text('{"server": {"port": 8443}}', encoding="utf-8")
        assert CertkeeperConfig(config_file=path).settings.server.port == 8443

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigValidationError, match="must be a mapping"):
            CertkeeperConfig(config_file=path)


class TestEnvironmentVariables:
    def test_variable_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CK_TEST_ROOT", str(tmp_path / "from-env"))
        path = _write(tmp_path, {"storage": {"root": "${CK_TEST_ROOT}"}})
        assert CertkeeperConfig(config_file=path).settings.storage.root == str(tmp_path / "from-env")

    def test_default_used_when_unset(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CK_TEST_LEVEL", raising=False)
        path = _write(tmp_path, {"logging": {"level": "${CK_TEST_LEVEL:-WARNING}"}})
        assert CertkeeperConfig(config_file=path).settings.logging.level == "WARNING"

    def test_missing_variable_without_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("CK_TEST_MISSING", raising=False)
        path = _write(tmp_path, {"smtp": {"host": "${CK_TEST_MISSING}"}})
        with pytest.raises(ConfigValidationError, match="CK_TEST_MISSING"):
            CertkeeperConfig(config_file=path)

    def test_resolved_value_checked_against_schema(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CK_TEST_LEVEL", "LOUD")
        path = _write(tmp_path, {"logging": {"level": "${CK_TEST_LEVEL}"}})
        with pytest.raises(ConfigValidationError, match="logging.level"):
            CertkeeperConfig(config_file=path)


class TestValidation:
    def test_unknown_key_rejected(self, tmp_path):
        path = _write(tmp_path, {"renewal": {"bogus": 1}})
        with pytest.raises(ConfigValidationError, match="bogus"):
            CertkeeperConfig(config_file=path)

    def test_invalid_cron(self, tmp_path):
        path = _write(tmp_path, {"renewal": {"schedule": "every day"}})
        with pytest.raises(ConfigValidationError, match="cron"):
            CertkeeperConfig(config_file=path)

    def test_six_field_cron_rejected(self, tmp_path):
        path = _write(tmp_path, {"renewal": {"schedule": "0 0 0 * * *"}})
        with pytest.raises(ConfigValidationError, match="five-field"):
            CertkeeperConfig(config_file=path)

    def test_validity_must_exceed_renew_before(self, tmp_path):
        path = _write(
            tmp_path,
            {"renewal": {"renew_before_days": 30, "validity_days": {"standard": 30}}},
        )
        with pytest.raises(ConfigValidationError, match="validity_days.standard"):
            CertkeeperConfig(config_file=path)

    def test_tls_and_ssl_exclusive(self, tmp_path):
        path = _write(tmp_path, {"smtp": {"use_tls": True, "use_ssl": True}})
        with pytest.raises(ConfigValidationError, match="mutually exclusive"):
            CertkeeperConfig(config_file=path)

    def test_hook_class_path_checked(self, tmp_path):
        path = _write(tmp_path, {"hooks": {"registered": [{"class": "NotQualified"}]}})
        with pytest.raises(ConfigValidationError, match="fully-qualified"):
            CertkeeperConfig(config_file=path)

    def test_errors_are_collected(self, tmp_path):
        path = _write(
            tmp_path,
            {"renewal": {"schedule": "nope"}, "smtp": {"use_tls": True, "use_ssl": True}},
        )
        with pytest.raises(ConfigValidationError) as exc_info:
            CertkeeperConfig(config_file=path)
        assert len(exc_info.value.errors) == 2

    def test_short_master_secret_warns(self, tmp_path, caplog):
        path = _write(tmp_path, {"vault": {"master_secret": "short"}})
        with caplog.at_level(logging.WARNING, logger="certkeeper.config"):
            CertkeeperConfig(config_file=path)
        assert "master secret is short" in caplog.text

    def test_missing_master_secret_warns(self, tmp_path, caplog, monkeypatch):
        monkeypatch.delenv("CERTKEEPER_MASTER_SECRET", raising=False)
        path = _write(tmp_path, {})
        with caplog.at_level(logging.WARNING, logger="certkeeper.config"):
            CertkeeperConfig(config_file=path)
        assert "vault sealed" in caplog.text


class TestBuildSettings:
    def test_dispatch_timeouts_merge_with_defaults(self):
        s = build_settings({"dispatch": {"timeouts": {"copy": 5}}})
        assert s.dispatch.timeout_for("copy") == 5
        assert s.dispatch.timeout_for("unknown-kind") == 60

    def test_unknown_hook_event_rejected(self):
        with pytest.raises(ValueError, match="unknown event"):
            build_settings(
                {"hooks": {"registered": [{"class": "a.b.C", "events": ["order.created"]}]}},
            )

    def test_settings_are_frozen(self):
        s = build_settings({})
        with pytest.raises(AttributeError):
            s.renewal.schedule = "* * * * *"  # type: ignore[misc]

    def test_reload_settings_reads_file_again(self, tmp_path):
        path = _write(tmp_path, {"logging": {"level": "INFO"}})
        cfg = CertkeeperConfig(config_file=path)
        path.write_text(yaml.safe_dump({"logging": {"level": "ERROR"}}), encoding="utf-8")
        assert cfg.reload_settings().logging.level == "ERROR"
        assert cfg.settings.logging.level == "INFO"
