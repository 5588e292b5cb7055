"""Building the Flask application.

Usage::

    from certkeeper.app import create_app
    from certkeeper.config import get_config

    app = create_app(config=get_config())
"""

from __future__ import annotations

import atexit
import logging
import os
from typing import TYPE_CHECKING

from flask import Flask, jsonify

from certkeeper.app.context import Container
from certkeeper.app.errors import register_error_handlers
from certkeeper.app.middleware import register_request_hooks
from certkeeper.app.shutdown import ShutdownCoordinator

if TYPE_CHECKING:
    from flask.typing import ResponseReturnValue

    from certkeeper.adapters import Adapters
    from certkeeper.config.certkeeper_config import CertkeeperConfig

log = logging.getLogger(__name__)


def create_app(
    config: CertkeeperConfig | None = None,
    *,
    adapters: Adapters | None = None,
    start_workers: bool = True,
) -> Flask:
    """Create the application and its service container.

    Parameters
    ----------
    config:
        Loaded :class:`CertkeeperConfig`; :func:`get_config` when ``None``.
    adapters:
        Protocol clients handed to the deployment executors.  The real
        SSH/SMB/FTP/Docker clients are built when ``None``.
    start_workers:
        Whether to start the renewal scheduler and the filesystem
        watcher.  Tests and one-shot CLI commands pass ``False``.

    """
    if config is None:
        from certkeeper.config import get_config  # noqa: PLC0415

        config = get_config()
    settings = config.settings

    app = Flask("certkeeper")
    app.config.update(
        CERTKEEPER_SETTINGS=settings,
        CERTKEEPER_CONFIG=config,
        MAX_CONTENT_LENGTH=settings.api.max_request_body_bytes,
    )
    app.json.sort_keys = False  # type: ignore[attr-defined]

    coordinator = ShutdownCoordinator(graceful_timeout=settings.server.graceful_timeout)
    container = Container(settings, shutdown_coordinator=coordinator, adapters=adapters)
    app.extensions["shutdown_coordinator"] = coordinator
    app.extensions["container"] = container

    register_error_handlers(app)
    register_request_hooks(app)
    _register_health_routes(app)

    from certkeeper.api import register_blueprints  # noqa: PLC0415

    register_blueprints(app, settings.api.base_path)

    if start_workers:
        container.start()
        # atexit runs in reverse: drain tracked work, then stop workers
        atexit.register(container.stop)
        atexit.register(coordinator.initiate)

    coordinator.register_reload_signal()

    @app.before_request
    def _apply_pending_reload() -> None:
        if coordinator.reload_requested:
            try:
                _reload(app, container)
            except Exception:
                log.exception("Configuration reload failed; keeping current settings")
            finally:
                coordinator.consume_reload()

    log.info("Application ready (api at %s)", settings.api.base_path or "/")
    return app


def _reload(app: Flask, container: Container) -> None:
    """Apply the parts of a re-read config that can change at runtime.

    Only the log level and the dispatch timeouts are picked up; every
    other change needs a restart.
    """
    current = app.config["CERTKEEPER_SETTINGS"]
    fresh = app.config["CERTKEEPER_CONFIG"].reload_settings()
    changed = []

    if fresh.logging.level != current.logging.level:
        logging.getLogger("certkeeper").setLevel(fresh.logging.level.upper())
        changed.append(f"logging.level={fresh.logging.level}")
    if fresh.dispatch.timeouts != current.dispatch.timeouts:
        container.dispatcher.update_settings(fresh.dispatch)
        changed.append("dispatch.timeouts")

    if not changed:
        log.info("Configuration re-read; nothing that can change at runtime differs")
        return
    app.config["CERTKEEPER_SETTINGS"] = fresh
    log.info("Configuration reloaded: %s", ", ".join(changed))


def _health(app: Flask) -> dict:
    from certkeeper import __version__  # noqa: PLC0415

    container: Container = app.extensions["container"]
    coordinator: ShutdownCoordinator = app.extensions["shutdown_coordinator"]
    store_root = container.store.root
    writable = store_root.is_dir() and os.access(store_root, os.W_OK)

    workers = {"scheduler": "alive" if container.scheduler.running else "stopped"}
    if container.watcher is not None:
        workers["watcher"] = "alive" if container.watcher.running else "stopped"

    healthy = writable and not coordinator.is_shutting_down
    return {
        "status": "ok" if healthy else "degraded",
        "version": __version__,
        "checks": {
            "store": "writable" if writable else "unwritable",
            "vault": "sealed" if container.vault.sealed else "unsealed",
            "certificates": len(container.index.all()),
        },
        "workers": workers,
        "shutting_down": coordinator.is_shutting_down,
    }


def _register_health_routes(app: Flask) -> None:
    """``/livez`` answers while the process runs; ``/healthz`` checks dependencies."""
    from certkeeper import __version__  # noqa: PLC0415

    @app.route("/livez")
    def livez() -> ResponseReturnValue:
        return jsonify({"alive": True, "version": __version__}), 200

    @app.route("/healthz")
    def healthz() -> ResponseReturnValue:
        report = _health(app)
        return jsonify(report), 200 if report["status"] == "ok" else 503
