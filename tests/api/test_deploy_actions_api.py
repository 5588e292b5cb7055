"""Tests for the deployment action endpoints."""

from __future__ import annotations

import pytest

from certkeeper.models.action import SECRET_MASK


@pytest.fixture()
def cert(client):
    resp = client.post(
        "/api/certificates",
        json={"name": "web", "domains": ["web.example.com"], "keyType": "ec"},
    )
    return resp.get_json()["certificate"]


@pytest.fixture()
def base(cert):
    return f"/api/certificates/{cert['fingerprint']}/deploy-actions"


def _add(client, base, body):
    resp = client.post(base, json=body)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()["action"]


def _api_call(**extra):
    return {
        "kind": "api-call",
        "name": "notify",
        "url": "https://hooks.example.com/cert",
        "auth": {"type": "bearer", "token": "tok-123"},
        **extra,
    }


class TestCrud:
    def test_add_and_list(self, client, base, tmp_path):
        action = _add(client, base, {"kind": "copy", "name": "to disk", "destination": str(tmp_path)})
        assert action["kind"] == "copy"
        assert action["source"] == "crt"
        assert action["enabled"] is True
        assert action["id"]
        listed = client.get(base).get_json()["actions"]
        assert [a["id"] for a in listed] == [action["id"]]

    def test_unknown_kind(self, client, base):
        resp = client.post(base, json={"kind": "fax", "name": "x"})
        assert resp.status_code == 400
        assert "Unknown action kind" in resp.get_json()["message"]

    def test_schema_error(self, client, base):
        resp = client.post(base, json={"kind": "copy", "name": "x"})
        assert resp.status_code == 400
        assert resp.get_json()["message"].startswith("Invalid copy action")

    def test_secret_masked_and_sealed(self, client, base, cert, app_container):
        action = _add(client, base, _api_call())
        assert action["auth"]["token"] == SECRET_MASK
        assert client.get(f"{base}/{action['id']}").get_json()["auth"]["token"] == SECRET_MASK

        stored = app_container.index.get(cert["fingerprint"]).find_action(action["id"])
        assert stored.auth["token"].startswith("enc:v1:")
        assert app_container.box.decrypt(stored.auth["token"]) == "tok-123"

    def test_update_with_mask_keeps_secret(self, client, base, cert, app_container):
        action = _add(client, base, _api_call())
        resp = client.put(
            f"{base}/{action['id']}",
            json={"name": "renamed", "auth": {"type": "bearer", "token": SECRET_MASK}},
        )
        assert resp.status_code == 200
        assert resp.get_json()["action"]["name"] == "renamed"
        stored = app_container.index.get(cert["fingerprint"]).find_action(action["id"])
        assert app_container.box.decrypt(stored.auth["token"]) == "tok-123"

    def test_reorder(self, client, base, tmp_path):
        first = _add(client, base, {"kind": "copy", "name": "a", "destination": str(tmp_path)})
        second = _add(client, base, {"kind": "command", "name": "b", "command": "true"})
        resp = client.put(f"{base}/order", json={"order": [second["id"], first["id"]]})
        assert [a["name"] for a in resp.get_json()["actions"]] == ["b", "a"]

    def test_reorder_must_list_every_id(self, client, base, tmp_path):
        first = _add(client, base, {"kind": "copy", "name": "a", "destination": str(tmp_path)})
        _add(client, base, {"kind": "command", "name": "b", "command": "true"})
        resp = client.put(f"{base}/order", json={"order": [first["id"]]})
        assert resp.status_code == 400

    def test_delete(self, client, base):
        action = _add(client, base, {"kind": "command", "name": "b", "command": "true"})
        assert client.delete(f"{base}/{action['id']}").status_code == 200
        assert client.get(f"{base}/{action['id']}").status_code == 404

    def test_actions_show_in_certificate_detail(self, client, base, cert):
        _add(client, base, _api_call())
        detail = client.get(f"/api/certificates/{cert['fingerprint']}").get_json()
        assert detail["actionCount"] == 1
        assert detail["deploymentActions"][0]["auth"]["token"] == SECRET_MASK


class TestRunning:
    def test_test_action_simulates_by_default(self, client, base, tmp_path):
        action = _add(client, base, {"kind": "copy", "name": "a", "destination": str(tmp_path)})
        body = client.post(f"{base}/{action['id']}/test").get_json()
        assert body["success"] is True
        assert body["message"].startswith("Would copy web.crt")
        assert not (tmp_path / "web.crt").exists()

    def test_test_action_live(self, client, base, tmp_path):
        action = _add(client, base, {"kind": "copy", "name": "a", "destination": str(tmp_path)})
        body = client.post(f"{base}/{action['id']}/test", json={"liveMode": True}).get_json()
        assert body["result"]["status"] == "success"
        assert (tmp_path / "web.crt").is_file()

    def test_live_mode_must_be_boolean(self, client, base, tmp_path):
        action = _add(client, base, {"kind": "copy", "name": "a", "destination": str(tmp_path)})
        resp = client.post(f"{base}/{action['id']}/test", json={"liveMode": "yes"})
        assert resp.status_code == 400

    def test_run_all_and_history(self, client, base, tmp_path):
        _add(client, base, {"kind": "copy", "name": "a", "destination": str(tmp_path)})
        body = client.post(f"{base}/run", json={"liveMode": True}).get_json()
        assert body["success"] is True
        assert body["message"] == "Deployment finished"
        assert body["mode"] == "live"
        assert body["trigger"] == "manual"
        assert [r["status"] for r in body["results"]] == ["success"]
        assert (tmp_path / "web.crt").is_file()

        history = client.get(f"{base}/history").get_json()["history"]
        assert [h["id"] for h in history] == [body["id"]]

    def test_run_reports_failures(self, client, base):
        _add(client, base, {"kind": "command", "name": "boom", "command": "exit 4"})
        body = client.post(f"{base}/run", json={"liveMode": True}).get_json()
        assert body["success"] is False
        assert body["message"] == "Deployment finished with failures"
        assert body["results"][0]["status"] == "failure"

    def test_cancel_without_dispatch(self, client, base):
        body = client.post(f"{base}/cancel").get_json()
        assert body == {"success": True, "message": "No deployment is running", "cancelled": False}
