"""HTTP API layer: Flask blueprint registration.

Call :func:`register_blueprints` during application startup to wire
all route blueprints into the Flask app.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from flask import Flask

log = logging.getLogger(__name__)


def register_blueprints(app: Flask, base_path: str = "/api") -> None:
    """Register all API blueprints under *base_path* (``api.base_path``)."""
    base = base_path.rstrip("/")

    from certkeeper.api.certificates import certificates_bp  # noqa: PLC0415
    from certkeeper.api.deploy_actions import deploy_actions_bp  # noqa: PLC0415
    from certkeeper.api.scheduler import scheduler_bp  # noqa: PLC0415
    from certkeeper.api.settings import settings_bp  # noqa: PLC0415

    app.register_blueprint(certificates_bp, url_prefix=base)
    app.register_blueprint(deploy_actions_bp, url_prefix=base)
    app.register_blueprint(settings_bp, url_prefix=base)
    app.register_blueprint(scheduler_bp, url_prefix=base)

    log.info(
        "Registered API blueprints under base_path=%r (%d URL rules)",
        base,
        len(list(app.url_map.iter_rules())),
    )
