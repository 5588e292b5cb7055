"""Serve subcommand: start the certkeeper server."""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


def run_serve(config, args) -> None:
    """Start the HTTP API with the renewal scheduler and watcher."""
    if getattr(args, "dev", False):
        from certkeeper.app import create_app  # noqa: PLC0415

        app = create_app(config=config)
        app.extensions["shutdown_coordinator"].register_signals()
        log.info("Starting development server (not for production)")
        # The reloader would fork a second engine with its own scheduler
        app.run(
            host=config.settings.server.bind,
            port=config.settings.server.port,
            debug=True,
            use_reloader=False,
        )
    else:
        from certkeeper.server.gunicorn_app import run_gunicorn  # noqa: PLC0415

        run_gunicorn(config)
