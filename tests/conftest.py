"""Root conftest for the certkeeper test suite."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml

# ---------------------------------------------------------------------------
# Make ``src/`` importable without installing the package
# ---------------------------------------------------------------------------
_SRC = str(Path(__file__).resolve().parent.parent / "src")
if _SRC not in sys.path:
    sys.path.insert(0, _SRC)

MASTER_SECRET = "test-master-secret-0123456789"


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@pytest.fixture()
def minimal_config_data(tmp_path: Path) -> dict:
    """Config with the store under *tmp_path* and the workers quiet."""
    return {
        "storage": {"root": str(tmp_path / "certs")},
        "vault": {"master_secret": MASTER_SECRET},
        "renewal": {
            "max_retries": 0,
            "retry_base_seconds": 0,
            "lock_timeout_seconds": 5,
        },
        "watcher": {"enabled": False},
        "logging": {"level": "DEBUG"},
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, minimal_config_data: dict) -> Path:
    """Write *minimal_config_data* to a temp YAML file and return its path."""
    cfg = tmp_path / "config.yaml"
    cfg.write_text(
        yaml.safe_dump(minimal_config_data, default_flow_style=False, sort_keys=False),
        encoding="utf-8",
    )
    return cfg


@pytest.fixture(autouse=True)
def fresh_config():
    """Reset the CertkeeperConfig singleton before and after every test."""
    from certkeeper.config.certkeeper_config import CertkeeperConfig

    CertkeeperConfig.reset()
    yield
    CertkeeperConfig.reset()


@pytest.fixture()
def config(tmp_config_file: Path):
    from certkeeper.config import CertkeeperConfig

    return CertkeeperConfig(config_file=tmp_config_file)


@pytest.fixture()
def settings(config):
    return config.settings


# ---------------------------------------------------------------------------
# Application wiring
# ---------------------------------------------------------------------------


@pytest.fixture()
def adapters():
    """Adapter set whose every protocol client is a MagicMock."""
    return MagicMock()


@pytest.fixture()
def container(settings, adapters):
    from certkeeper.app.context import Container

    c = Container(settings, adapters=adapters)
    yield c
    c.stop()


@pytest.fixture()
def app(config, adapters):
    from certkeeper.app import create_app

    application = create_app(config, adapters=adapters, start_workers=False)
    application.config["TESTING"] = True
    yield application
    application.extensions["container"].stop()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def app_container(app):
    return app.extensions["container"]


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_cert():
    """Issue a certificate through ``CertificateService.create``.

    Keys default to EC P-256 so the suite stays fast.
    """

    def _make(container, name="web", domains=("web.example.com",), **extra):
        body = {
            "name": name,
            "domains": list(domains),
            "keyType": "ec",
            **extra,
        }
        return container.certificate_service.create(body)

    return _make


@pytest.fixture()
def root_and_leaf(container, make_cert):
    """A root CA and a standard certificate it signs."""
    root = make_cert(container, "Root CA", ("ca.example.com",), certType="rootCA")
    leaf = make_cert(
        container,
        "web",
        ("web.example.com", "www.example.com"),
        signerFingerprint=root.fingerprint,
    )
    return root, leaf
