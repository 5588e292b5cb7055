"""Renewal engine, cron scheduler and filesystem watcher."""

from certkeeper.renewal.engine import RenewalEngine, RenewalRequest, RenewalResult, SweepResult
from certkeeper.renewal.scheduler import RenewalScheduler, next_run_after, validate_schedule
from certkeeper.renewal.watcher import CertificateWatcher

__all__ = [
    "CertificateWatcher",
    "RenewalEngine",
    "RenewalRequest",
    "RenewalResult",
    "RenewalScheduler",
    "SweepResult",
    "next_run_after",
    "validate_schedule",
]
