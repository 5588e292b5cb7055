"""Graceful shutdown and reload signalling.

Renewals and deployment dispatches register themselves with
:meth:`ShutdownCoordinator.track`.  On SIGTERM the coordinator sets its
stop event (sweeps stop picking up new certificates, retry back-offs
wake up) and waits, for at most ``graceful_timeout`` seconds, until
every tracked operation has left.  SIGHUP only raises a flag that the
application polls to re-read its configuration.

Usage::

    coordinator = ShutdownCoordinator(graceful_timeout=30)

    with coordinator.track("renewal"):
        engine.renew(cert_id, request)

    coordinator.initiate()
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections import Counter
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable, Generator

log = logging.getLogger(__name__)


def _install(signum: int, handler: Callable) -> bool:
    # signal.signal() only works from the main thread of the main interpreter
    try:
        signal.signal(signum, handler)
    except (ValueError, OSError):
        log.debug("Cannot install a handler for %s outside the main thread", signum)
        return False
    return True


class ShutdownCoordinator:
    """Counts running renewals and dispatches and drains them on exit.

    Parameters
    ----------
    graceful_timeout:
        Seconds :meth:`initiate` waits for tracked work before giving up.

    """

    def __init__(self, graceful_timeout: int = 30) -> None:
        self._graceful_timeout = graceful_timeout
        self._stopping = threading.Event()
        self._reload = threading.Event()
        self._running: Counter[str] = Counter()
        self._idle = threading.Condition(threading.Lock())

    # -- state --------------------------------------------------------------

    @property
    def is_shutting_down(self) -> bool:
        return self._stopping.is_set()

    @property
    def stop_event(self) -> threading.Event:
        """Set once shutdown starts; worker loops wait on it."""
        return self._stopping

    def in_flight(self) -> dict[str, int]:
        """Running operations by kind, e.g. ``{"renewal": 2}``."""
        with self._idle:
            return dict(+self._running)

    @property
    def in_flight_count(self) -> int:
        with self._idle:
            return self._running.total()

    @contextmanager
    def track(self, kind: str) -> Generator[None, None, None]:
        """Count one *kind* operation for as long as the block runs.

        Work that starts after shutdown began is still counted and
        waited for.
        """
        if self._stopping.is_set():
            log.warning("%s started while shutting down", kind)
        with self._idle:
            self._running[kind] += 1
        try:
            yield
        finally:
            with self._idle:
                self._running[kind] -= 1
                if self._running.total() == 0:
                    self._idle.notify_all()

    # -- shutdown -----------------------------------------------------------

    def initiate(self) -> None:
        """Set the stop event and wait for tracked work to finish.

        Calling it again while (or after) draining does nothing.
        """
        if self._stopping.is_set():
            return
        self._stopping.set()
        deadline = time.monotonic() + self._graceful_timeout
        with self._idle:
            pending = +self._running
            if pending:
                log.info("Shutting down; waiting for %s", _describe(pending))
            while self._running.total():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log.warning(
                        "Grace period of %ds over; abandoning %s",
                        self._graceful_timeout,
                        _describe(+self._running),
                    )
                    return
                self._idle.wait(timeout=remaining)
        log.info("Shutdown complete, no work in flight")

    # -- reload -------------------------------------------------------------

    @property
    def reload_requested(self) -> bool:
        return self._reload.is_set()

    def consume_reload(self) -> None:
        self._reload.clear()

    # -- signals ------------------------------------------------------------

    def register_signals(self) -> None:
        """Drain on SIGTERM and SIGINT.  Call from the main thread."""
        for signum in (signal.SIGTERM, signal.SIGINT):
            _install(signum, self._terminate_handler)

    def register_reload_signal(self) -> None:
        """Flag a config reload on SIGHUP where the platform has it."""
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is not None and _install(sighup, self._reload_handler):
            log.info("Send SIGHUP to reload the configuration")

    def _terminate_handler(self, signum: int, frame) -> None:
        log.info("%s received", signal.Signals(signum).name)
        # Draining blocks; signal handlers must return quickly
        threading.Thread(target=self.initiate, name="shutdown-drain", daemon=True).start()

    def _reload_handler(self, signum: int, frame) -> None:
        log.info("SIGHUP received; configuration reload pending")
        self._reload.set()


def _describe(counts: Counter[str]) -> str:
    return ", ".join(f"{n} {kind}" for kind, n in sorted(counts.items()))
