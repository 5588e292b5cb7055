"""Per-certificate renewal state machine.

Defines the valid transitions between :class:`RenewalState` values.
All transitions are enforced via :func:`assert_transition` and logged
with :func:`log_transition`.

Usage::

    from certkeeper.core.state import RENEWAL_TRANSITIONS, assert_transition
    from certkeeper.core.types import RenewalState

    assert_transition(
        RenewalState.PREFLIGHT, RenewalState.PASSPHRASE_RESOLUTION,
        RENEWAL_TRANSITIONS,
    )
"""

from __future__ import annotations

import logging

from certkeeper.core.types import RenewalState

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# idle → preflight → passphraseResolution → issuance → archive →
# materialize → publish → idle.  Failures after issuance starts go
# through rollback; needsPassphrase returns to idle.
# ---------------------------------------------------------------------------

RENEWAL_TRANSITIONS: dict[RenewalState, frozenset[RenewalState]] = {
    RenewalState.IDLE: frozenset({RenewalState.PREFLIGHT}),
    RenewalState.PREFLIGHT: frozenset(
        {RenewalState.PASSPHRASE_RESOLUTION, RenewalState.FAILED},
    ),
    RenewalState.PASSPHRASE_RESOLUTION: frozenset(
        {
            RenewalState.ISSUANCE,
            RenewalState.NEEDS_PASSPHRASE,
            RenewalState.FAILED,
        }
    ),
    RenewalState.NEEDS_PASSPHRASE: frozenset({RenewalState.IDLE}),
    RenewalState.ISSUANCE: frozenset({RenewalState.ARCHIVE, RenewalState.ROLLBACK}),
    RenewalState.ARCHIVE: frozenset({RenewalState.MATERIALIZE, RenewalState.ROLLBACK}),
    RenewalState.MATERIALIZE: frozenset({RenewalState.PUBLISH, RenewalState.ROLLBACK}),
    RenewalState.PUBLISH: frozenset({RenewalState.IDLE}),
    RenewalState.ROLLBACK: frozenset({RenewalState.FAILED}),
    RenewalState.FAILED: frozenset({RenewalState.IDLE}),
}


def assert_transition(
    current: RenewalState,
    target: RenewalState,
    table: dict = RENEWAL_TRANSITIONS,
) -> None:
    """Raise :class:`ValueError` if *current* → *target* is not allowed.

    Parameters
    ----------
    current:
        The current renewal state.
    target:
        The desired new state.
    table:
        Transition table; defaults to :data:`RENEWAL_TRANSITIONS`.

    """
    allowed = table.get(current)
    if allowed is None:
        msg = f"Unknown state {current!r}"
        raise ValueError(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.value!r} -> {target.value!r}; "
            f"allowed targets: {sorted(s.value for s in allowed) or '(terminal)'}"
        )
        raise ValueError(
            msg,
        )


def log_transition(
    certificate: str,
    from_state: RenewalState,
    to_state: RenewalState,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for a renewal state transition."""
    extra = {
        "event": "state_transition",
        "certificate": certificate,
        "from_state": from_state.value,
        "to_state": to_state.value,
    }
    if reason:
        extra["reason"] = reason
    log.info(
        "renewal %s: %s -> %s%s",
        certificate,
        from_state.value,
        to_state.value,
        f" ({reason})" if reason else "",
        extra=extra,
    )
