"""Expiry arithmetic.

Renewal due-ness and status compare exact instants: a certificate is
due at ``validTo - renewBeforeDays`` and not one second earlier.
Day counts shown to users (``daysUntilExpiry``, template variables)
are whole days between local midnights.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from certkeeper.core.types import CertStatus


def utcnow() -> datetime:
    return datetime.now(UTC)


def renewal_due_at(valid_to: datetime, renew_before_days: int) -> datetime:
    return valid_to - timedelta(days=renew_before_days)


def is_due(valid_to: datetime, renew_before_days: int, now: datetime | None = None) -> bool:
    """True once *now* has reached ``valid_to - renew_before_days``."""
    now = now or utcnow()
    return now >= renewal_due_at(valid_to, renew_before_days)


def status_for(
    valid_to: datetime | None,
    renew_before_days: int,
    now: datetime | None = None,
) -> CertStatus:
    """Derive the display status of a certificate at *now*."""
    if valid_to is None:
        return CertStatus.UNKNOWN
    now = now or utcnow()
    if now >= valid_to:
        return CertStatus.EXPIRED
    if is_due(valid_to, renew_before_days, now):
        return CertStatus.EXPIRING_SOON
    return CertStatus.VALID


def days_until_expiry(valid_to: datetime, now: datetime | None = None) -> int:
    """Whole days between local midnight of *now* and of *valid_to*."""
    now = now or utcnow()
    return (valid_to.astimezone().date() - now.astimezone().date()).days
