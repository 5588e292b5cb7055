"""Tests for the ``list``, ``renew`` and ``sweep`` subcommands."""

from __future__ import annotations

import argparse
import json
from unittest.mock import patch

import pytest

from certkeeper.cli.commands.certificates import run_certificates


def _args(command, **kw):
    defaults = {
        "command": command,
        "group": None,
        "as_json": False,
        "fingerprint": None,
        "days": None,
        "ask_passphrase": False,
        "no_deploy": False,
    }
    defaults.update(kw)
    return argparse.Namespace(**defaults)


@pytest.fixture()
def issued(container, make_cert):
    web = make_cert(container, "web", group="prod")
    api = make_cert(container, "api", ("api.example.com",), validityDays=10)
    return web, api


class TestList:
    def test_table(self, config, issued, capsys):
        assert run_certificates(config, _args("list")) == 0
        lines = capsys.readouterr().out.splitlines()
        assert [line.split()[0] for line in lines] == ["api", "web"]
        assert "expiringSoon" in lines[0]
        assert issued[0].fingerprint in lines[1]

    def test_json_with_group(self, config, issued, capsys):
        assert run_certificates(config, _args("list", group="prod", as_json=True)) == 0
        rows = json.loads(capsys.readouterr().out)
        assert [r["name"] for r in rows] == ["web"]
        assert rows[0]["status"] == "valid"
        assert rows[0]["type"] == "standard"


class TestRenew:
    def test_renew(self, config, issued, capsys):
        web = issued[0]
        code = run_certificates(config, _args("renew", fingerprint=web.fingerprint, days=30))
        assert code == 0
        out = capsys.readouterr().out
        assert out.startswith(f"Renewed web: {web.fingerprint} -> ")

    def test_unknown_fingerprint(self, config, capsys):
        assert run_certificates(config, _args("renew", fingerprint="AA:BB")) == 1
        assert capsys.readouterr().err.startswith("certkeeper: NotFound:")

    def test_needs_passphrase(self, config, container, make_cert, capsys):
        cert = make_cert(container, "locked", ("locked.example.com",), passphrase="pw")
        assert run_certificates(config, _args("renew", fingerprint=cert.fingerprint)) == 1
        assert "PassphraseRequired" in capsys.readouterr().err

    def test_ask_passphrase(self, config, container, make_cert, capsys):
        cert = make_cert(container, "locked", ("locked.example.com",), passphrase="pw")
        with patch("certkeeper.cli.commands.certificates.getpass.getpass", return_value="pw"):
            code = run_certificates(
                config,
                _args("renew", fingerprint=cert.fingerprint, ask_passphrase=True),
            )
        assert code == 0
        assert "Renewed locked" in capsys.readouterr().out


class TestSweep:
    def test_sweep_renews_due(self, config, issued, capsys):
        assert run_certificates(config, _args("sweep")) == 0
        assert capsys.readouterr().out.startswith("Sweep: 1 candidate(s), 1 renewed, 0 failed")
