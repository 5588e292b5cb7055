"""Tests for certkeeper.app: errors, middleware, health checks and shutdown."""

from __future__ import annotations

import logging
import threading
import time

import pytest
from flask import Flask

from certkeeper.app.context import get_container
from certkeeper.app.errors import CertProblem, ErrorKind, kind_of, register_error_handlers
from certkeeper.app.middleware import register_request_hooks
from certkeeper.app.shutdown import ShutdownCoordinator

# =========================================================================
# Errors
# =========================================================================


class TestCertProblem:
    def test_default_status_per_kind(self):
        assert CertProblem(ErrorKind.NOT_FOUND, "x").status == 404
        assert CertProblem(ErrorKind.CONFLICT, "x").status == 409
        assert CertProblem(ErrorKind.VAULT_SEALED, "x").status == 503
        assert CertProblem(ErrorKind.ADAPTER_AUTH, "x").status == 502

    def test_explicit_status_wins(self):
        assert CertProblem(ErrorKind.INTERNAL, "x", 418).status == 418

    def test_envelope(self):
        problem = CertProblem(
            ErrorKind.PASSPHRASE_REQUIRED,
            "Passphrase required",
            payload={"required": [{"role": "certificate"}]},
        )
        assert problem.to_dict() == {
            "required": [{"role": "certificate"}],
            "success": False,
            "message": "Passphrase required",
            "kind": "PassphraseRequired",
        }

    def test_payload_cannot_override_envelope(self):
        problem = CertProblem(ErrorKind.CONFLICT, "busy", payload={"success": True})
        assert problem.to_dict()["success"] is False

    def test_invalid_schedule_reported_as_invalid_input(self):
        problem = CertProblem(ErrorKind.INVALID_SCHEDULE, "bad cron")
        assert problem.kind == ErrorKind.INVALID_SCHEDULE
        assert problem.to_dict()["kind"] == "InvalidInput"

    def test_retryable(self):
        assert CertProblem(ErrorKind.TRANSIENT, "x").retryable
        assert CertProblem(ErrorKind.ADAPTER_UNREACHABLE, "x").retryable
        assert not CertProblem(ErrorKind.ADAPTER_AUTH, "x").retryable

    def test_to_response(self):
        app = Flask(__name__)
        with app.app_context():
            resp = CertProblem(ErrorKind.NOT_FOUND, "gone").to_response()
        assert resp.status_code == 404
        assert resp.get_json()["message"] == "gone"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_repr(self):
        assert repr(CertProblem(ErrorKind.TIMEOUT, "slow")) == "CertProblem(Timeout, 'slow')"


class TestKindOf:
    @pytest.mark.parametrize(
        ("exc", "kind"),
        [
            (CertProblem(ErrorKind.CONFLICT, "x"), ErrorKind.CONFLICT),
            (TimeoutError(), ErrorKind.TIMEOUT),
            (ConnectionResetError(), ErrorKind.TRANSIENT),
            (FileNotFoundError(), ErrorKind.TRANSIENT),
            (ValueError(), ErrorKind.INTERNAL),
        ],
    )
    def test_mapping(self, exc, kind):
        assert kind_of(exc) == kind


@pytest.fixture()
def bare_app():
    app = Flask(__name__)
    register_error_handlers(app)
    register_request_hooks(app)

    @app.route("/problem")
    def problem():
        raise CertProblem(ErrorKind.CONFLICT, "Certificate is busy")

    @app.route("/crash")
    def crash():
        raise RuntimeError("secret internals")

    @app.route("/ok", methods=["GET", "POST"])
    def ok():
        return {"success": True}

    return app


class TestErrorHandlers:
    def test_problem_rendered(self, bare_app):
        resp = bare_app.test_client().get("/problem")
        assert resp.status_code == 409
        assert resp.get_json() == {
            "success": False,
            "message": "Certificate is busy",
            "kind": "Conflict",
        }

    def test_unhandled_exception_hides_details(self, bare_app):
        resp = bare_app.test_client().get("/crash")
        assert resp.status_code == 500
        body = resp.get_json()
        assert body["kind"] == "Internal"
        assert "secret internals" not in body["message"]

    def test_unknown_route_uses_envelope(self, bare_app):
        resp = bare_app.test_client().get("/nowhere")
        assert resp.status_code == 404
        assert resp.get_json()["kind"] == "NotFound"

    def test_method_not_allowed(self, bare_app):
        resp = bare_app.test_client().delete("/ok")
        assert resp.status_code == 405
        assert resp.get_json()["kind"] == "InvalidInput"


# =========================================================================
# Middleware
# =========================================================================


class TestMiddleware:
    def test_security_headers(self, bare_app):
        resp = bare_app.test_client().get("/ok")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["Cache-Control"] == "no-store"

    def test_request_id_generated(self, bare_app):
        resp = bare_app.test_client().get("/ok")
        assert len(resp.headers["X-Request-ID"]) == 32

    def test_request_id_passthrough(self, bare_app):
        resp = bare_app.test_client().get("/ok", headers={"X-Request-ID": "abc-123"})
        assert resp.headers["X-Request-ID"] == "abc-123"

    def test_access_log_level_follows_status(self, bare_app, caplog):
        with caplog.at_level(logging.INFO, logger="certkeeper.access"):
            bare_app.test_client().get("/ok")
            bare_app.test_client().get("/nowhere")
        levels = [r.levelno for r in caplog.records if r.name == "certkeeper.access"]
        assert levels == [logging.INFO, logging.WARNING]

    def test_audit_never_logs_bodies(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="certkeeper.audit"):
            client.post(
                "/api/certificates",
                json={"name": "x", "domains": ["x.example.com"], "passphrase": "hunter2"},
            )
        audit = [r for r in caplog.records if r.name == "certkeeper.audit"]
        assert audit
        assert all("hunter2" not in r.getMessage() for r in audit)
        assert all("hunter2" not in str(r.__dict__) for r in audit)


# =========================================================================
# Factory and health
# =========================================================================


class TestFactory:
    def test_container_registered(self, app):
        with app.app_context():
            assert get_container() is app.extensions["container"]

    def test_get_container_without_wiring(self):
        with Flask(__name__).app_context(), pytest.raises(RuntimeError):
            get_container()

    def test_livez(self, client):
        resp = client.get("/livez")
        assert resp.status_code == 200
        assert resp.get_json()["alive"] is True

    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["status"] == "ok"
        assert body["checks"]["store"] == "writable"
        assert body["checks"]["vault"] == "unsealed"
        assert body["workers"]["scheduler"] == "stopped"

    def test_healthz_degraded_during_shutdown(self, app, client):
        app.extensions["shutdown_coordinator"].initiate()
        resp = client.get("/healthz")
        assert resp.status_code == 503
        assert resp.get_json()["shutting_down"] is True


# =========================================================================
# Shutdown
# =========================================================================


class TestShutdownCoordinator:
    def test_tracks_in_flight(self):
        sc = ShutdownCoordinator(graceful_timeout=1)
        with sc.track("renewal"):
            assert sc.in_flight_count == 1
            assert sc.in_flight() == {"renewal": 1}
        assert sc.in_flight_count == 0

    def test_initiate_waits_for_operations(self):
        sc = ShutdownCoordinator(graceful_timeout=5)
        entered = threading.Event()

        def work():
            with sc.track("dispatch"):
                entered.set()
                time.sleep(0.2)

        t = threading.Thread(target=work)
        t.start()
        entered.wait(2)
        sc.initiate()
        assert sc.in_flight_count == 0
        assert sc.is_shutting_down
        assert sc.stop_event.is_set()
        t.join()

    def test_initiate_gives_up_after_timeout(self):
        sc = ShutdownCoordinator(graceful_timeout=0)
        with sc.track("renewal"):
            sc.initiate()
            assert sc.in_flight_count == 1

    def test_reload_flag(self):
        sc = ShutdownCoordinator()
        sc._reload_handler(1, None)
        assert sc.reload_requested
        sc.consume_reload()
        assert not sc.reload_requested
