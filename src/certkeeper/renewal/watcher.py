"""Filesystem watcher over the storage root.

Changes made behind the engine's back (a certificate dropped into a
new directory, a ``.crt`` replaced by hand) are folded back into the
index and followed by an ad-hoc renewal sweep.  Bursts of events are
debounced so one copy operation leads to one reload.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from certkeeper.store.certificate_store import ARCHIVE_DIR, METADATA_FILE

if TYPE_CHECKING:
    from collections.abc import Callable

    from certkeeper.config.settings import WatcherSettings

log = logging.getLogger(__name__)

_WATCHED_SUFFIXES = (".crt", ".key")


def cert_id_for(root: Path, path: str) -> str | None:
    """The certificate directory an event path belongs to, or ``None`` to ignore it."""
    try:
        rel = Path(path).resolve().relative_to(root)
    except ValueError:
        return None
    parts = rel.parts
    if len(parts) < 2 or parts[0].startswith("."):  # noqa: PLR2004
        return None
    if ARCHIVE_DIR in parts[1:-1]:
        return None
    name = parts[-1]
    if name.startswith(".") or name.endswith(".tmp"):
        return None
    if name != METADATA_FILE and not name.endswith(_WATCHED_SUFFIXES):
        return None
    return parts[0]


class _StoreEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: CertificateWatcher) -> None:
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        for path in (event.src_path, getattr(event, "dest_path", "")):
            if path:
                self._watcher.notify(path if isinstance(path, str) else path.decode())


class CertificateWatcher:
    """Debounced watchdog observer calling *on_change* with changed cert ids.

    Parameters
    ----------
    root:
        Storage root to watch recursively.
    on_change:
        Called from a timer thread with the set of certificate ids whose
        files changed during the debounce window.
    settings:
        Watcher settings (enabled flag, debounce window).

    """

    def __init__(
        self,
        root: str | Path,
        on_change: Callable[[set[str]], None],
        settings: WatcherSettings,
    ) -> None:
        self._root = Path(root).resolve()
        self._on_change = on_change
        self._settings = settings
        self._observer: Observer | None = None
        self._pending: set[str] = set()
        self._timer: threading.Timer | None = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def notify(self, path: str) -> None:
        cert_id = cert_id_for(self._root, path)
        if cert_id is None:
            return
        with self._lock:
            self._pending.add(cert_id)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self._settings.debounce_seconds, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def _flush(self) -> None:
        with self._lock:
            changed, self._pending = self._pending, set()
            self._timer = None
        if not changed:
            return
        log.info(
            "Detected changes in %d certificate director(ies)",
            len(changed),
            extra={"cert_ids": sorted(changed)},
        )
        try:
            self._on_change(changed)
        except Exception:
            log.exception("Handling filesystem changes failed")

    def start(self) -> None:
        if not self._settings.enabled or self.running:
            return
        self._observer = Observer()
        self._observer.schedule(_StoreEventHandler(self), str(self._root), recursive=True)
        self._observer.daemon = True
        self._observer.start()
        log.info("Watching %s for certificate changes", self._root)

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending.clear()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            log.info("Certificate watcher stopped")
