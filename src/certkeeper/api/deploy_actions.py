"""Deployment action endpoints.

- ``GET|POST /certificates/{fp}/deploy-actions``: list / add
- ``GET|PUT|DELETE /certificates/{fp}/deploy-actions/{id}``
- ``PUT /certificates/{fp}/deploy-actions/order``: ``{order: [id, ...]}``
- ``POST /certificates/{fp}/deploy-actions/{id}/test``: ``{liveMode}``
- ``POST /certificates/{fp}/deploy-actions/run``: run every action now
- ``POST /certificates/{fp}/deploy-actions/cancel``
- ``GET /certificates/{fp}/deploy-actions/history``: recent dispatches
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from certkeeper.api.decorators import certificate_route, json_body, success
from certkeeper.app.context import get_container
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import ActionStatus

deploy_actions_bp = Blueprint("deploy_actions", __name__)

_BASE = "/certificates/<fp>/deploy-actions"


def _live_mode(body: dict) -> bool:
    live = body.get("liveMode", False)
    if not isinstance(live, bool):
        raise CertProblem(ErrorKind.INVALID_INPUT, "liveMode must be a boolean")
    return live


@deploy_actions_bp.route(_BASE, methods=["GET"])
@certificate_route
def list_actions(fp):
    return jsonify({"actions": get_container().deployment_service.list_actions(fp)})


@deploy_actions_bp.route(_BASE, methods=["POST"])
@certificate_route
def add_action(fp):
    action = get_container().deployment_service.add_action(fp, json_body())
    return success(f"Action '{action['name']}' added", 201, action=action)


@deploy_actions_bp.route(f"{_BASE}/order", methods=["PUT"])
@certificate_route
def reorder_actions(fp):
    """PUT .../deploy-actions/order: every action id exactly once."""
    actions = get_container().deployment_service.reorder(fp, json_body().get("order"))
    return success("Actions reordered", actions=actions)


@deploy_actions_bp.route(f"{_BASE}/history", methods=["GET"])
@certificate_route
def dispatch_history(fp):
    return jsonify({"history": get_container().deployment_service.history(fp)})


@deploy_actions_bp.route(f"{_BASE}/run", methods=["POST"])
@certificate_route
def run_actions(fp):
    """POST .../deploy-actions/run: ``{liveMode}``; waits for the report."""
    report = get_container().deployment_service.run(fp, live=_live_mode(json_body(required=False)))
    body = report.to_dict()
    body.pop("success", None)
    response = jsonify(
        {
            "success": report.success,
            "message": "Deployment finished" if report.success else "Deployment finished with failures",
            **body,
        },
    )
    return response


@deploy_actions_bp.route(f"{_BASE}/cancel", methods=["POST"])
@certificate_route
def cancel_dispatch(fp):
    cancelled = get_container().deployment_service.cancel(fp)
    return success("Cancellation requested" if cancelled else "No deployment is running", cancelled=cancelled)


@deploy_actions_bp.route(f"{_BASE}/<action_id>", methods=["GET"])
@certificate_route
def get_action(fp, action_id):
    return jsonify(get_container().deployment_service.get_action(fp, action_id))


@deploy_actions_bp.route(f"{_BASE}/<action_id>", methods=["PUT"])
@certificate_route
def update_action(fp, action_id):
    """PUT .../deploy-actions/{id}: masked secrets keep their stored value."""
    action = get_container().deployment_service.update_action(fp, action_id, json_body())
    return success(f"Action '{action['name']}' updated", action=action)


@deploy_actions_bp.route(f"{_BASE}/<action_id>", methods=["DELETE"])
@certificate_route
def delete_action(fp, action_id):
    get_container().deployment_service.delete_action(fp, action_id)
    return success("Action deleted")


@deploy_actions_bp.route(f"{_BASE}/<action_id>/test", methods=["POST"])
@certificate_route
def test_action(fp, action_id):
    """POST .../deploy-actions/{id}/test: ``{liveMode}``; simulate by default."""
    result = get_container().deployment_service.test_action(
        fp,
        action_id,
        live=_live_mode(json_body(required=False)),
    )
    return jsonify(
        {
            "success": result.status != ActionStatus.FAILURE,
            "message": result.message,
            "result": result.to_dict(),
        },
    )
