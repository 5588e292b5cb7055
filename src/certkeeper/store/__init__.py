"""Filesystem persistence of certificates, artifacts and snapshots."""

from certkeeper.store.certificate_store import CertificateStore, artifact_filename, slugify
from certkeeper.store.events import EventBus, StoreEvent, StoreEventKind

__all__ = [
    "CertificateStore",
    "EventBus",
    "StoreEvent",
    "StoreEventKind",
    "artifact_filename",
    "slugify",
]
