"""Loading configured hooks and delivering lifecycle events to them.

Hooks are named by dotted class path in ``hooks.registered``.  They are
imported and validated when the application starts; a hook that cannot
be loaded aborts start-up.  Delivery happens on a small thread pool, so
renewals and deployments never wait for a hook, and a hook that raises
is retried ``max_retries`` times and then only logged and counted.
"""

from __future__ import annotations

import copy
import importlib
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING

from certkeeper.hooks.base import Hook
from certkeeper.hooks.events import EVENT_METHOD_MAP, KNOWN_EVENTS

if TYPE_CHECKING:
    from certkeeper.config.settings import HookEntrySettings, HookSettings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Subscription:
    instance: Hook
    name: str
    events: frozenset[str]
    timeout_seconds: int


def _resolve(class_path: str) -> type[Hook]:
    module_name, _, attr = class_path.rpartition(".")
    if not module_name or not attr:
        msg = f"Hook class path '{class_path}' is not fully qualified (expected 'package.module.Class')"
        raise ValueError(msg)
    cls = getattr(importlib.import_module(module_name), attr)
    if not isinstance(cls, type) or not issubclass(cls, Hook):
        msg = f"'{class_path}' is not a subclass of certkeeper.hooks.Hook"
        raise TypeError(msg)
    return cls


class HookRegistry:
    """The hooks enabled in configuration and the pool that runs them.

    Parameters
    ----------
    settings:
        The ``hooks`` section of :class:`CertkeeperSettings`.

    Raises
    ------
    ValueError, TypeError, ImportError, AttributeError
        A configured hook could not be loaded or rejected its config.

    """

    def __init__(self, settings: HookSettings) -> None:
        self._settings = settings
        self._hooks: list[_Subscription] = []
        self._executor: ThreadPoolExecutor | None = None
        self._closed = threading.Event()
        self._errors = 0
        self._lock = threading.Lock()

        for entry in settings.registered:
            if entry.enabled:
                self._hooks.append(self._subscribe(entry))
            else:
                log.debug("Hook %s disabled", entry.class_path)

        if self._hooks:
            self._executor = ThreadPoolExecutor(
                max_workers=settings.max_workers,
                thread_name_prefix="certkeeper-hook",
            )
            log.info("%d hook(s) active on %d worker(s)", len(self._hooks), settings.max_workers)

    def _subscribe(self, entry: HookEntrySettings) -> _Subscription:
        try:
            cls = _resolve(entry.class_path)
            cls.validate_config(entry.config)
            instance = cls(config=entry.config)
        except Exception:
            log.critical("Cannot load hook %s", entry.class_path, exc_info=True)
            raise

        events = frozenset(entry.events) or KNOWN_EVENTS
        log.info(
            "Hook %s subscribed to %s",
            entry.class_path,
            "all events" if events == KNOWN_EVENTS else ", ".join(sorted(events)),
        )
        timeout = entry.timeout_seconds
        return _Subscription(
            instance=instance,
            name=entry.class_path,
            events=events,
            timeout_seconds=self._settings.timeout_seconds if timeout is None else timeout,
        )

    @property
    def hook_count(self) -> int:
        return len(self._hooks)

    @property
    def error_count(self) -> int:
        """Deliveries that failed after all retries."""
        with self._lock:
            return self._errors

    def dispatch(self, event: str, context: dict) -> None:
        """Queue *event* for every hook subscribed to it and return.

        Each hook gets its own copy of *context*, so neither the caller
        nor other hooks see a hook's changes to it.

        Raises
        ------
        ValueError
            *event* is not one of :data:`KNOWN_EVENTS`.

        """
        method = EVENT_METHOD_MAP.get(event)
        if method is None:
            msg = f"Unknown hook event '{event}' (expected one of {', '.join(sorted(KNOWN_EVENTS))})"
            raise ValueError(msg)
        if self._executor is None or self._closed.is_set():
            return

        for sub in self._hooks:
            if event not in sub.events:
                continue
            try:
                self._executor.submit(self._deliver, sub, event, method, copy.deepcopy(context))
            except RuntimeError:
                # Pool shut down between the check above and submit()
                log.warning("Dropped %s for hook %s: registry closed", event, sub.name)

    def _deliver(self, sub: _Subscription, event: str, method: str, context: dict) -> None:
        started = time.monotonic()
        attempts = self._settings.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                getattr(sub.instance, method)(context)
            except Exception as exc:  # noqa: BLE001
                if attempt < attempts:
                    time.sleep(0.5 * 2 ** (attempt - 1))
                    continue
                with self._lock:
                    self._errors += 1
                log.error(
                    "Hook %s failed on %s after %d attempt(s): %s",
                    sub.name,
                    event,
                    attempts,
                    exc,
                    extra={"hook_name": sub.name, "event": event, "outcome": "error"},
                )
                return
            break

        elapsed = time.monotonic() - started
        extra = {
            "hook_name": sub.name,
            "event": event,
            "outcome": "success",
            "duration_ms": round(elapsed * 1000, 1),
        }
        if elapsed > sub.timeout_seconds:
            log.warning(
                "Hook %s took %.1fs on %s (limit %ds)",
                sub.name, elapsed, event, sub.timeout_seconds, extra=extra,
            )
        else:
            log.debug("Hook %s handled %s", sub.name, event, extra=extra)

    def shutdown(self, wait: bool = True) -> None:  # noqa: FBT001, FBT002
        """Stop accepting events and close the pool; later calls do nothing."""
        if self._closed.is_set():
            return
        self._closed.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            log.info("Hook pool closed, %d failed deliveries", self.error_count)
