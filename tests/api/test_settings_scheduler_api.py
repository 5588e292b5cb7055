"""Tests for the deployment settings and scheduler endpoints."""

from __future__ import annotations

from unittest.mock import patch

from certkeeper.models.action import SECRET_MASK


class TestDeploymentSettings:
    def test_all_categories(self, client):
        body = client.get("/api/settings/deployment").get_json()
        assert set(body) == {"email", "nginxProxyManager", "defaults"}
        assert body["email"]["smtp"]["port"] == 587
        assert body["nginxProxyManager"]["port"] == 81

    def test_update_masks_secrets(self, client, app_container):
        resp = client.put(
            "/api/settings/deployment/email",
            json={"smtp": {"host": "mail.example.com", "password": "hunter2"}},
        )
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["message"] == "email settings updated"
        assert body["settings"]["smtp"]["host"] == "mail.example.com"
        assert body["settings"]["smtp"]["password"] == SECRET_MASK
        assert app_container.deployment_settings.resolved("email")["smtp"]["password"] == "hunter2"

        fetched = client.get("/api/settings/deployment/email").get_json()
        assert fetched["smtp"]["password"] == SECRET_MASK

    def test_masked_value_keeps_secret(self, client, app_container):
        client.put("/api/settings/deployment/nginxProxyManager", json={"password": "pw"})
        client.put(
            "/api/settings/deployment/nginxProxyManager",
            json={"host": "npm.local", "password": SECRET_MASK},
        )
        resolved = app_container.deployment_settings.resolved("nginxProxyManager")
        assert resolved["host"] == "npm.local"
        assert resolved["password"] == "pw"

    def test_unknown_field_rejected(self, client):
        resp = client.put("/api/settings/deployment/defaults", json={"retries": 3})
        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "InvalidInput"

    def test_unknown_category(self, client):
        assert client.get("/api/settings/deployment/pager").status_code == 404
        assert client.put("/api/settings/deployment/pager", json={}).status_code == 404


class TestScheduler:
    def test_status(self, client):
        body = client.get("/api/scheduler/status").get_json()
        assert body["running"] is False
        assert body["sweepInProgress"] is False
        assert body["enabled"] is True
        assert body["schedule"] == "0 0 * * *"
        assert body["renewBeforeDays"] == 30
        assert body["lastRun"] is None

    def test_update_settings(self, client):
        resp = client.post(
            "/api/scheduler/settings",
            json={"schedule": "30 2 * * *", "renewBeforeDays": 14},
        )
        assert resp.status_code == 200
        status = resp.get_json()["scheduler"]
        assert status["schedule"] == "30 2 * * *"
        assert status["renewBeforeDays"] == 14
        assert status["nextRun"] is not None

    def test_disable(self, client):
        status = client.post("/api/scheduler/settings", json={"enabled": False}).get_json()["scheduler"]
        assert status["enabled"] is False
        assert status["nextRun"] is None

    def test_invalid_schedule_reported_as_invalid_input(self, client):
        resp = client.post("/api/scheduler/settings", json={"schedule": "whenever"})
        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "InvalidInput"
        assert client.get("/api/scheduler/status").get_json()["schedule"] == "0 0 * * *"

    def test_invalid_days(self, client):
        resp = client.post("/api/scheduler/settings", json={"renewBeforeDays": -1})
        assert resp.status_code == 400

    def test_run_and_wait(self, client):
        created = client.post(
            "/api/certificates",
            json={"name": "short", "domains": ["short.example.com"], "keyType": "ec",
                  "validityDays": 10},
        ).get_json()["certificate"]
        assert created["status"] == "expiringSoon"

        body = client.post("/api/scheduler/run", json={"wait": True}).get_json()
        assert body["message"] == "Renewal sweep finished"
        assert body["result"]["trigger"] == "api"
        assert body["result"]["candidates"] == 1
        assert body["result"]["renewed"] == 1
        assert body["scheduler"]["lastResult"] == {"candidates": 1, "renewed": 1, "failed": 0}

    def test_run_in_background(self, client, app_container):
        with patch.object(app_container.scheduler, "run_now", return_value=None) as run_now:
            resp = client.post("/api/scheduler/run")
        assert resp.status_code == 202
        assert resp.get_json()["message"] == "Renewal sweep started"
        assert resp.get_json()["scheduler"]["enabled"] is True
        run_now.assert_called_once_with(wait=False)

    def test_run_while_sweep_in_progress(self, client, app_container):
        with patch.object(app_container.scheduler, "run_now", return_value=None):
            resp = client.post("/api/scheduler/run", json={"wait": True})
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["message"] == "A renewal sweep is already running"
        assert body["scheduler"]["schedule"] == "0 0 * * *"
        assert "result" not in body
