"""Lifecycle event names and the :class:`~certkeeper.hooks.base.Hook`
method each one is delivered to.

Imports nothing from certkeeper, so the config validator can use
:data:`KNOWN_EVENTS` without loading the hook machinery.
"""

from __future__ import annotations

EVENT_METHOD_MAP: dict[str, str] = {
    "certificate.created": "on_certificate_created",
    "certificate.renewed": "on_certificate_renewed",
    "certificate.renewal_failed": "on_certificate_renewal_failed",
    "certificate.deleted": "on_certificate_deleted",
    "deployment.completed": "on_deployment_completed",
}

KNOWN_EVENTS: frozenset[str] = frozenset(EVENT_METHOD_MAP)
