"""Tests for the deployment executors and their execution context."""

from __future__ import annotations

import json
import os
import stat
from types import SimpleNamespace

import pytest

from certkeeper.adapters import HttpResponse, SmtpTarget
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import ActionStatus, ArtifactForm, DispatchMode
from certkeeper.crypto import key_is_encrypted
from certkeeper.deploy.context import DeployContext, build_variables
from certkeeper.deploy.executors import (
    ApiCallExecutor,
    CommandExecutor,
    CopyExecutor,
    DockerRestartExecutor,
    EmailExecutor,
    NginxProxyManagerExecutor,
    SshCopyExecutor,
    WebhookExecutor,
)
from certkeeper.deploy.executors.http import auth_headers, check_response
from certkeeper.models.action import action_from_dict


@pytest.fixture()
def cert(container, make_cert):
    return make_cert(container)


def _ctx(container, record, mode=DispatchMode.LIVE, **kw):
    return DeployContext(
        record=record,
        store=container.store,
        mode=mode,
        variables=build_variables(record, container.store),
        settings=container.deployment_settings,
        **kw,
    ).for_action(30)


def _action(kind, **fields):
    return action_from_dict({"kind": kind, "name": f"{kind} test", **fields})


class TestContext:
    def test_expand_leaves_unknown_placeholders(self, container, cert):
        ctx = _ctx(container, cert)
        assert ctx.expand("/srv/{name}/{unknown}.crt") == "/srv/web/{unknown}.crt"
        assert ctx.expand({"a": ["{domain}"]}) == {"a": ["web.example.com"]}
        assert ctx.expand(5) == 5

    def test_variables(self, container, cert):
        variables = build_variables(cert, container.store)
        assert variables["fingerprint"] == cert.fingerprint
        assert variables["cert_path"].endswith("web.crt")
        assert variables["domains"] == "web.example.com"
        assert variables["cert_type"] == "standard"

    def test_artifact_on_disk(self, container, cert):
        data, filename = _ctx(container, cert).artifact("cert")
        assert filename == "web.crt"
        assert data.startswith(b"-----BEGIN CERTIFICATE-----")

    def test_keyless_form_rendered_on_the_fly(self, container, cert):
        data, filename = _ctx(container, cert).artifact("fullchain")
        assert filename == "web.fullchain.pem"
        assert b"BEGIN CERTIFICATE" in data

    def test_keyed_form_must_exist(self, container, cert):
        with pytest.raises(CertProblem) as exc_info:
            _ctx(container, cert).artifact("p12")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_literal_path(self, container, cert, tmp_path):
        src = tmp_path / "extra.txt"
        src.write_text("hello", encoding="utf-8")
        assert _ctx(container, cert).artifact(str(src)) == (b"hello", "extra.txt")
        with pytest.raises(CertProblem):
            _ctx(container, cert).artifact(str(tmp_path / "missing.txt"))

    def test_private_key_decrypted_with_passphrase(self, container, make_cert):
        locked = make_cert(container, "locked", ("locked.example.com",), passphrase="pw")
        pem = _ctx(container, locked, key_passphrase="pw").private_key_pem()
        assert not key_is_encrypted(pem)
        with pytest.raises(CertProblem):
            _ctx(container, locked).private_key_pem()

    def test_abort(self, container, cert):
        ctx = _ctx(container, cert)
        ctx.raise_if_aborted()
        ctx.abort.set()
        with pytest.raises(CertProblem) as exc_info:
            ctx.raise_if_aborted()
        assert exc_info.value.kind == ErrorKind.CANCELLED


class TestCopy:
    def test_copy_into_directory(self, container, cert, adapters, tmp_path):
        out = tmp_path / "out"
        action = _action("copy", destination=f"{out}/", permissions="600")
        outcome = CopyExecutor(adapters).execute(action, _ctx(container, cert))
        target = out / "web.crt"
        assert target.read_bytes() == container.store.read_artifact(cert, ArtifactForm.CRT)
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
        assert outcome.message == f"Copied web.crt to {target} (mode 600)"

    def test_destination_placeholders(self, container, cert, adapters, tmp_path):
        action = _action("copy", source="key", destination=str(tmp_path / "{name}.key"))
        CopyExecutor(adapters).execute(action, _ctx(container, cert))
        assert (tmp_path / "web.key").is_file()

    def test_simulate_writes_nothing(self, container, cert, adapters, tmp_path):
        action = _action("copy", destination=str(tmp_path / "sim" / "web.crt"))
        outcome = CopyExecutor(adapters).simulate(action, _ctx(container, cert, DispatchMode.SIMULATE))
        assert outcome.message.startswith("Would copy web.crt")
        assert not (tmp_path / "sim").exists()


class TestCommand:
    def test_runs_with_environment(self, container, cert, adapters):
        action = _action("command", command='echo "hello-$CERTKEEPER_NAME-$EXTRA"',
                         env={"EXTRA": "{domain}"})
        outcome = CommandExecutor(adapters).execute(action, _ctx(container, cert))
        assert outcome.status == ActionStatus.SUCCESS
        assert outcome.message == "Command completed: hello-web-web.example.com"

    def test_nonzero_exit(self, container, cert, adapters):
        action = _action("command", command="echo broken >&2; exit 3")
        with pytest.raises(CertProblem) as exc_info:
            CommandExecutor(adapters).execute(action, _ctx(container, cert))
        assert exc_info.value.kind == ErrorKind.ADAPTER_REMOTE
        assert exc_info.value.detail == "Command exited with status 3: broken"

    def test_abort_kills_command(self, container, cert, adapters):
        ctx = _ctx(container, cert)
        ctx.abort.set()
        with pytest.raises(CertProblem) as exc_info:
            CommandExecutor(adapters).execute(_action("command", command="sleep 5"), ctx)
        assert exc_info.value.kind == ErrorKind.CANCELLED

    def test_simulate(self, container, cert, adapters):
        action = _action("command", command="definitely-not-a-program-xyz --flag")
        outcome = CommandExecutor(adapters).simulate(action, _ctx(container, cert, DispatchMode.SIMULATE))
        assert outcome.message == "Would run: definitely-not-a-program-xyz --flag"
        assert "not found on PATH" in outcome.details["warning"]


class TestDockerRestart:
    def test_restarts_running_container(self, container, cert, adapters):
        adapters.docker.find.return_value = SimpleNamespace(name="web", status="running")
        adapters.docker.is_running.return_value = True
        action = _action("docker-restart", containerName="web", stopTimeout=5)
        outcome = DockerRestartExecutor(adapters).execute(action, _ctx(container, cert))
        assert outcome.status == ActionStatus.SUCCESS
        ref = adapters.docker.restart.call_args.args[0]
        assert ref.container_name == "web"
        assert adapters.docker.restart.call_args.kwargs == {"timeout": 5}

    def test_stopped_container_is_skipped(self, container, cert, adapters):
        adapters.docker.find.return_value = SimpleNamespace(name="web", status="exited")
        adapters.docker.is_running.return_value = False
        action = _action("docker-restart", containerId="abc123")
        outcome = DockerRestartExecutor(adapters).execute(action, _ctx(container, cert))
        assert outcome.status == ActionStatus.SKIPPED
        adapters.docker.restart.assert_not_called()


class TestHttp:
    def test_auth_headers(self):
        assert auth_headers({"type": "bearer", "token": "t"}) == {"Authorization": "Bearer t"}
        assert auth_headers({"type": "basic", "username": "u", "password": "p"}) == {
            "Authorization": "Basic dTpw",
        }
        assert auth_headers({"apiKey": "k"}) == {"X-API-Key": "k"}
        assert auth_headers({"type": "apiKey", "apiKey": "k", "apiKeyHeader": "X-Token"}) == {
            "X-Token": "k",
        }
        assert auth_headers(None) == {}

    def test_check_response(self):
        check_response(HttpResponse(204), "https://x")
        with pytest.raises(CertProblem) as exc_info:
            check_response(HttpResponse(403), "https://x")
        assert exc_info.value.kind == ErrorKind.ADAPTER_AUTH
        with pytest.raises(CertProblem) as exc_info:
            check_response(HttpResponse(500, b"oops"), "https://x")
        assert exc_info.value.kind == ErrorKind.ADAPTER_REMOTE
        assert "oops" in exc_info.value.detail

    def test_api_call_json_payload(self, container, cert, adapters):
        adapters.http.request.return_value = HttpResponse(200, b'{"ok": true}')
        action = _action(
            "api-call",
            url="https://api.example.com/certs/{name}",
            method="PUT",
            jsonPayload={"fingerprint": "{fingerprint}"},
            auth={"type": "bearer", "token": "t0k3n"},
        )
        outcome = ApiCallExecutor(adapters).execute(action, _ctx(container, cert))
        method, url = adapters.http.request.call_args.args
        kwargs = adapters.http.request.call_args.kwargs
        assert (method, url) == ("PUT", "https://api.example.com/certs/web")
        assert json.loads(kwargs["body"]) == {"fingerprint": cert.fingerprint}
        assert kwargs["headers"]["Authorization"] == "Bearer t0k3n"
        assert kwargs["headers"]["Content-Type"] == "application/json"
        assert outcome.details["status"] == 200

    def test_api_call_rejected(self, container, cert, adapters):
        adapters.http.request.return_value = HttpResponse(401)
        action = _action("api-call", url="https://api.example.com")
        with pytest.raises(CertProblem) as exc_info:
            ApiCallExecutor(adapters).execute(action, _ctx(container, cert))
        assert exc_info.value.kind == ErrorKind.ADAPTER_AUTH

    def test_webhook_payload_never_carries_the_key(self, container, cert, adapters):
        adapters.http.request.return_value = HttpResponse(200)
        action = _action("webhook", url="https://hooks.example.com", includeFiles=True,
                         customData={"env": "{name}"})
        WebhookExecutor(adapters).execute(action, _ctx(container, cert))
        body = json.loads(adapters.http.request.call_args.kwargs["body"])
        assert body["event"] == "certificate.deployed"
        assert body["certificate"]["fingerprint"] == cert.fingerprint
        assert body["certificate"]["domains"] == ["web.example.com"]
        assert body["customData"] == {"env": "web"}
        assert set(body["files"]) == {"crt", "chain", "fullchain"}
        assert "PRIVATE KEY" not in json.dumps(body)

    def test_webhook_simulate_does_not_send(self, container, cert, adapters):
        action = _action("webhook", url="https://hooks.example.com")
        outcome = WebhookExecutor(adapters).simulate(action, _ctx(container, cert, DispatchMode.SIMULATE))
        assert outcome.message.startswith("Would deliver webhook")
        adapters.http.request.assert_not_called()


class TestEmail:
    def test_sends_through_action_relay(self, container, cert, adapters):
        action = _action(
            "email",
            to=["ops@example.com"],
            cc="sec@example.com",
            smtp={"host": "mail.example.com", "port": 2525, "user": "u", "password": "p"},
            **{"from": "certs@example.com"},
        )
        executor = EmailExecutor(adapters, container.settings.smtp)
        outcome = executor.execute(action, _ctx(container, cert))
        target, msg, sender, recipients = adapters.smtp.send.call_args.args
        assert isinstance(target, SmtpTarget)
        assert (target.host, target.port, target.username) == ("mail.example.com", 2525, "u")
        assert sender == "certs@example.com"
        assert recipients == ["ops@example.com", "sec@example.com"]
        assert msg["Subject"] == "Certificate Update: web"
        assert outcome.details == {"recipients": 2}

    def test_falls_back_to_deployment_settings(self, container, cert, adapters):
        container.deployment_settings.update(
            "email",
            {"smtp": {"host": "relay.example.com", "port": 465, "secure": True, "from": "noreply@example.com"}},
        )
        action = _action("email", to="ops@example.com", subject="Renewed {{ domain }}")
        EmailExecutor(adapters, container.settings.smtp).execute(action, _ctx(container, cert))
        target, msg, sender, _ = adapters.smtp.send.call_args.args
        assert (target.host, target.port, target.use_ssl) == ("relay.example.com", 465, True)
        assert sender == "noreply@example.com"
        assert msg["Subject"] == "Renewed web.example.com"

    def test_no_relay_configured(self, container, cert, adapters):
        action = _action("email", to="ops@example.com")
        with pytest.raises(CertProblem, match="No SMTP server"):
            EmailExecutor(adapters, container.settings.smtp).execute(action, _ctx(container, cert))

    def test_attachments_are_public_only(self, container, cert, adapters):
        action = _action("email", to="ops@example.com", attachCertificates=True,
                         smtp={"host": "mail.example.com"})
        msg = EmailExecutor(adapters, container.settings.smtp).compose(
            action, _ctx(container, cert), "certs@example.com",
        )
        names = [p.get_filename() for p in msg.get_payload()[1:]]
        assert "web.crt" in names
        assert not any(n.endswith(".key") for n in names)


class TestRemoteCopies:
    def test_ssh_upload_and_command(self, container, cert, adapters):
        adapters.ssh.run.return_value = SimpleNamespace(exit_status=0, stdout="reloaded\n", stderr="")
        action = _action("ssh-copy", host="web01", username="deploy", password="pw",
                         destination="/etc/ssl/", permissions="644", command="systemctl reload nginx")
        outcome = SshCopyExecutor(adapters).execute(action, _ctx(container, cert))
        target, data, remote, mode = adapters.ssh.upload.call_args.args
        assert target.host == "web01"
        assert remote == "/etc/ssl/web.crt"
        assert mode == 0o644
        assert outcome.details["commandOutput"] == "reloaded"

    def test_ssh_command_failure(self, container, cert, adapters):
        adapters.ssh.run.return_value = SimpleNamespace(exit_status=1, stdout="", stderr="denied")
        action = _action("ssh-copy", host="web01", username="deploy", password="pw",
                         destination="/etc/ssl/web.crt", command="reload")
        with pytest.raises(CertProblem) as exc_info:
            SshCopyExecutor(adapters).execute(action, _ctx(container, cert))
        assert exc_info.value.kind == ErrorKind.ADAPTER_REMOTE
        assert "denied" in exc_info.value.detail


class TestNginxProxyManager:
    def test_path_method(self, container, cert, adapters, tmp_path):
        npm = tmp_path / "npm"
        npm.mkdir()
        action = _action("nginx-proxy-manager", method="path", npmPath=str(npm))
        NginxProxyManagerExecutor(adapters).execute(action, _ctx(container, cert))
        live = npm / "letsencrypt" / "live" / "custom-web"
        assert (live / "fullchain.pem").is_file()
        assert b"PRIVATE KEY" in (live / "privkey.pem").read_bytes()
        assert (npm / "letsencrypt" / "reload.nginx").exists()

    def test_api_method_uses_settings_defaults(self, container, cert, adapters):
        container.deployment_settings.update(
            "nginxProxyManager",
            {"host": "npm.local", "username": "admin@example.com", "password": "secret"},
        )
        adapters.npm.upload_certificate.return_value = (7, True)
        action = _action("nginx-proxy-manager", method="api", createIfMissing=True)
        outcome = NginxProxyManagerExecutor(adapters).execute(action, _ctx(container, cert))
        target = adapters.npm.upload_certificate.call_args.args[0]
        assert target.base_url == "http://npm.local:81"
        assert target.password == "secret"
        assert outcome.message == "Created custom certificate 'web' (id 7) on http://npm.local:81"

    def test_api_method_needs_host(self, container, cert, adapters):
        action = _action("nginx-proxy-manager", method="api")
        with pytest.raises(CertProblem, match="No Nginx Proxy Manager host"):
            NginxProxyManagerExecutor(adapters).execute(action, _ctx(container, cert))
