"""Outcome records of deployment dispatches."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from certkeeper.core.types import ActionStatus, DispatchMode

if TYPE_CHECKING:
    from datetime import datetime


@dataclass(frozen=True)
class ActionOutcome:
    """What an executor reports when it returns normally."""

    status: ActionStatus
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, message: str, **details: Any) -> ActionOutcome:  # noqa: ANN401
        return cls(ActionStatus.SUCCESS, message, details)

    @classmethod
    def skipped(cls, message: str, **details: Any) -> ActionOutcome:  # noqa: ANN401
        return cls(ActionStatus.SKIPPED, message, details)


@dataclass(frozen=True)
class ActionResult:
    """One line of a dispatch log."""

    action_id: str
    name: str
    kind: str
    status: ActionStatus
    message: str
    duration_ms: int
    error_kind: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "actionId": self.action_id,
            "name": self.name,
            "kind": self.kind,
            "status": self.status.value,
            "message": self.message,
            "durationMs": self.duration_ms,
        }
        if self.error_kind:
            body["errorKind"] = self.error_kind
        if self.details:
            body["details"] = self.details
        return body


@dataclass
class DispatchReport:
    """Ordered per-action log of one dispatch plus the overall outcome."""

    dispatch_id: str
    cert_id: str
    fingerprint: str | None
    mode: DispatchMode
    trigger: str
    started_at: datetime
    finished_at: datetime | None = None
    results: list[ActionResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.cancelled and all(r.status != ActionStatus.FAILURE for r in self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.dispatch_id,
            "fingerprint": self.fingerprint,
            "mode": self.mode.value,
            "trigger": self.trigger,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "success": self.success,
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }
