"""Lifecycle hooks subsystem for certkeeper.

Public API::

    from certkeeper.hooks import Hook, HookRegistry, KNOWN_EVENTS

    class MyHook(Hook):
        def on_certificate_renewed(self, ctx: dict) -> None:
            ...
"""

from certkeeper.hooks.base import Hook
from certkeeper.hooks.events import KNOWN_EVENTS
from certkeeper.hooks.registry import HookRegistry

__all__ = ["KNOWN_EVENTS", "Hook", "HookRegistry"]
