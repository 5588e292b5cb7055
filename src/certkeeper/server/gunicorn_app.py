"""Programmatic gunicorn runner for certkeeper.

Starts gunicorn with settings derived from the certkeeper config
rather than requiring a separate gunicorn config file.

Usage::

    from certkeeper.server.gunicorn_app import run_gunicorn

    run_gunicorn(config)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from gunicorn.app.base import BaseApplication

if TYPE_CHECKING:
    from flask import Flask

    from certkeeper.config.certkeeper_config import CertkeeperConfig

log = logging.getLogger(__name__)


class CertkeeperApplication(BaseApplication):
    """Gunicorn application that builds the Flask app inside the worker.

    The engine holds in-process state (index, scheduler, dispatcher
    queues), so the app is created after the fork and only one worker
    process runs; concurrency comes from the worker's threads.
    """

    def __init__(self, config: CertkeeperConfig) -> None:
        self._config = config
        self.application: Flask | None = None
        super().__init__()

    def load_config(self) -> None:
        s = self._config.settings.server
        workers = s.workers
        if workers > 1:
            log.warning(
                "server.workers=%d ignored; certkeeper runs one worker process "
                "with %d threads",
                workers,
                workers * 4,
            )
        self.cfg.set("bind", f"{s.bind}:{s.port}")
        self.cfg.set("workers", 1)
        self.cfg.set("worker_class", s.worker_class)
        self.cfg.set("threads", max(4, workers * 4))
        self.cfg.set("timeout", s.timeout)
        self.cfg.set("graceful_timeout", s.graceful_timeout)
        self.cfg.set("keepalive", s.keepalive)
        self.cfg.set("preload_app", False)
        # Silence gunicorn's own access log; certkeeper.access covers it
        self.cfg.set("accesslog", None)

    def load(self) -> Flask:
        if self.application is None:
            from certkeeper.app import create_app  # noqa: PLC0415

            self.application = create_app(config=self._config)
        return self.application


def run_gunicorn(config: CertkeeperConfig) -> None:
    """Start a gunicorn server from the certkeeper :class:`ServerSettings`."""
    s = config.settings.server
    log.info(
        "Starting gunicorn on %s:%s (%s)",
        s.bind,
        s.port,
        s.worker_class,
    )
    CertkeeperApplication(config).run()
