"""Change events published by the certificate store.

Subscribers (the metadata index first of all) are called synchronously
while the bus lock is held, so every subscriber sees events in the
order the store produced them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

    from certkeeper.models.certificate import CertificateRecord

log = logging.getLogger(__name__)


class StoreEventKind(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    RENEWED = "renewed"
    DELETED = "deleted"


@dataclass(frozen=True)
class StoreEvent:
    """One change to a certificate directory.

    ``record`` is the state after the change (``None`` for deletions);
    ``previous`` the state before it, when known.
    """

    kind: StoreEventKind
    cert_id: str
    record: CertificateRecord | None
    previous: CertificateRecord | None = None
    sequence: int = 0


class EventBus:
    """Ordered, synchronous fan-out of :class:`StoreEvent` values."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: list[Callable[[StoreEvent], None]] = []
        self._sequence = 0

    def subscribe(self, callback: Callable[[StoreEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(
        self,
        kind: StoreEventKind,
        cert_id: str,
        record: CertificateRecord | None,
        previous: CertificateRecord | None = None,
    ) -> StoreEvent:
        with self._lock:
            self._sequence += 1
            event = StoreEvent(kind, cert_id, record, previous, self._sequence)
            for callback in list(self._subscribers):
                try:
                    callback(event)
                except Exception:
                    log.exception(
                        "Store event subscriber failed",
                        extra={"cert_id": cert_id, "event": kind.value},
                    )
            return event
