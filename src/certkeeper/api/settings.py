"""Global deployment settings endpoints.

- ``GET /settings/deployment``: every category, secrets masked
- ``GET|PUT /settings/deployment/{category}``: one category
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from certkeeper.api.decorators import json_body, success
from certkeeper.app.context import get_container

settings_bp = Blueprint("settings", __name__)


@settings_bp.route("/settings/deployment", methods=["GET"])
def get_all():
    return jsonify(get_container().deployment_settings.get())


@settings_bp.route("/settings/deployment/<category>", methods=["GET"])
def get_category(category):
    return jsonify(get_container().deployment_settings.get(category))


@settings_bp.route("/settings/deployment/<category>", methods=["PUT"])
def update_category(category):
    """PUT /settings/deployment/{category}: merge; masked secrets are kept."""
    settings = get_container().deployment_settings.update(category, json_body())
    return success(f"{category} settings updated", settings=settings)
