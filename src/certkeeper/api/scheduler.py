"""Renewal scheduler endpoints.

- ``GET /scheduler/status``
- ``POST /scheduler/settings``: ``{enabled, schedule, renewBeforeDays,
  includeIdleDomainsOnRenewal}``
- ``POST /scheduler/run``: start a sweep now (``{wait: true}`` blocks)
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from certkeeper.api.decorators import json_body, success
from certkeeper.app.context import get_container

scheduler_bp = Blueprint("scheduler", __name__)


@scheduler_bp.route("/scheduler/status", methods=["GET"])
def status():
    return jsonify(get_container().scheduler.status())


@scheduler_bp.route("/scheduler/settings", methods=["POST"])
def update_settings():
    new_status = get_container().scheduler.update_settings(json_body())
    return success("Scheduler settings updated", scheduler=new_status)


@scheduler_bp.route("/scheduler/run", methods=["POST"])
def run():
    """POST /scheduler/run: a concurrent sweep already covers the request."""
    scheduler = get_container().scheduler
    wait = bool(json_body(required=False).get("wait", False))
    result = scheduler.run_now(wait=wait)
    if not wait:
        return success("Renewal sweep started", 202, scheduler=scheduler.status())
    if result is None:
        return success("A renewal sweep is already running", scheduler=scheduler.status())
    return success("Renewal sweep finished", result=result.to_dict(), scheduler=scheduler.status())
