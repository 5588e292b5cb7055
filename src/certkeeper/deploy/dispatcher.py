"""Deployment action dispatcher.

Runs a certificate's deployment actions in declared order, in ``live``
or ``simulate`` mode, and records an ordered per-action result log.

* A failing action never aborts the sequence.  Actions flagged
  ``requiresPrevious`` are skipped once any predecessor failed.
* Each action runs on a worker thread bounded by its deadline
  (``timeoutSeconds`` on the action, else the per-kind default).
  Cancelling the current action marks it ``failure (Cancelled)`` and
  the sequence continues; cancelling the dispatch also skips every
  remaining action.
* Dispatches of one certificate are serialized; different
  certificates dispatch in parallel on a bounded pool.
* Action secrets are decrypted only for the duration of the dispatch.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from uuid import uuid4

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import utcnow
from certkeeper.core.locks import KeyedLocks
from certkeeper.core.types import ActionStatus, DispatchMode
from certkeeper.deploy.context import DeployContext, build_variables
from certkeeper.deploy.results import ActionOutcome, ActionResult, DispatchReport

if TYPE_CHECKING:
    from cryptography import x509

    from certkeeper.app.shutdown import ShutdownCoordinator
    from certkeeper.config.settings import DispatchSettings
    from certkeeper.deploy.registry import ExecutorRegistry
    from certkeeper.hooks.registry import HookRegistry
    from certkeeper.index.metadata_index import MetadataIndex
    from certkeeper.models.action import Action
    from certkeeper.models.certificate import CertificateRecord
    from certkeeper.services.deployment_settings import DeploymentSettingsStore
    from certkeeper.store.certificate_store import CertificateStore
    from certkeeper.vault import PassphraseVault, SecretBox

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.1


@dataclass
class _Running:
    """Cancellation handles of the dispatch currently running for a certificate."""

    cancel: threading.Event = field(default_factory=threading.Event)
    action_abort: threading.Event | None = None


class Dispatcher:
    """Executes deployment actions for certificates.

    Parameters
    ----------
    store:
        Certificate store the artifacts are read from.
    index:
        Metadata index, used to resolve issuer chains.
    registry:
        Executor per action kind.
    settings:
        Pool size, default timeouts and history depth.
    box:
        Decrypts ``enc:v1:`` secrets in action configurations.
    vault:
        Supplies the key passphrase for actions that need a plaintext key.
    deployment_settings:
        Global settings (shared NPM and SMTP targets, timeout overrides).
    hooks:
        Receives ``deployment.completed`` after each dispatch.
    shutdown:
        Tracks dispatches so shutdown waits for them.

    """

    def __init__(  # noqa: PLR0913
        self,
        store: CertificateStore,
        index: MetadataIndex,
        registry: ExecutorRegistry,
        settings: DispatchSettings,
        *,
        box: SecretBox | None = None,
        vault: PassphraseVault | None = None,
        deployment_settings: DeploymentSettingsStore | None = None,
        hooks: HookRegistry | None = None,
        shutdown: ShutdownCoordinator | None = None,
    ) -> None:
        self._store = store
        self._index = index
        self._registry = registry
        self._settings = settings
        self._box = box
        self._vault = vault
        self._deployment_settings = deployment_settings
        self._hooks = hooks
        self._shutdown = shutdown

        self._pool = ThreadPoolExecutor(
            max_workers=max(1, settings.workers),
            thread_name_prefix="dispatch",
        )
        # Actions run here so the dispatch thread can enforce deadlines
        self._runner = ThreadPoolExecutor(
            max_workers=max(2, settings.workers * 2),
            thread_name_prefix="action",
        )
        self._locks = KeyedLocks()
        self._lock = threading.Lock()
        self._running: dict[str, _Running] = {}
        self._history: dict[str, deque[DispatchReport]] = {}

    # -- public API ---------------------------------------------------------

    def update_settings(self, settings: DispatchSettings) -> None:
        """Swap in new timeouts; pool sizes keep their startup values."""
        self._settings = settings

    def enqueue(
        self,
        cert_id: str,
        mode: DispatchMode = DispatchMode.LIVE,
        trigger: str = "renewal",
    ) -> Future:
        """Schedule a dispatch of the certificate's current actions."""
        log.info(
            "Enqueued %s dispatch for %s",
            mode.value,
            cert_id,
            extra={"cert_id": cert_id, "trigger": trigger},
        )
        return self._pool.submit(self._dispatch_latest, cert_id, mode, trigger)

    def _dispatch_latest(self, cert_id: str, mode: DispatchMode, trigger: str) -> DispatchReport:
        return self.dispatch(self._store.load(cert_id), mode, trigger)

    def dispatch(
        self,
        record: CertificateRecord,
        mode: DispatchMode = DispatchMode.LIVE,
        trigger: str = "manual",
        *,
        actions: tuple[Action, ...] | None = None,
    ) -> DispatchReport:
        """Run *actions* (default: all of the record's actions) and return the report."""
        tracker = self._shutdown.track("dispatch") if self._shutdown else nullcontext()
        with tracker, self._locks.hold(record.cert_id):
            running = _Running()
            with self._lock:
                self._running[record.cert_id] = running
            try:
                report = self._run(record, mode, trigger, actions, running)
            finally:
                with self._lock:
                    self._running.pop(record.cert_id, None)
        self._remember(report)
        self._fire_hook(record, report)
        return report

    def test_action(self, record: CertificateRecord, action_id: str, *, live: bool) -> ActionResult:
        """Run one action on its own, ignoring ``enabled`` and ``requiresPrevious``."""
        action = record.find_action(action_id)
        if action is None:
            raise CertProblem(
                ErrorKind.NOT_FOUND,
                f"Certificate '{record.name}' has no deployment action {action_id}",
            )
        mode = DispatchMode.LIVE if live else DispatchMode.SIMULATE
        tracker = self._shutdown.track("dispatch") if self._shutdown else nullcontext()
        with tracker, self._locks.hold(record.cert_id):
            running = _Running()
            with self._lock:
                self._running[record.cert_id] = running
            try:
                base = self._context(record, mode)
                return self._execute(action, base, running)
            finally:
                with self._lock:
                    self._running.pop(record.cert_id, None)

    def cancel(self, cert_id: str, *, current_only: bool = False) -> bool:
        """Cancel the running dispatch of *cert_id* (or only its current action)."""
        with self._lock:
            running = self._running.get(cert_id)
        if running is None:
            return False
        if not current_only:
            running.cancel.set()
        if running.action_abort is not None:
            running.action_abort.set()
        log.info(
            "Cancellation requested for %s",
            cert_id,
            extra={"cert_id": cert_id, "current_only": current_only},
        )
        return True

    def is_running(self, cert_id: str) -> bool:
        with self._lock:
            return cert_id in self._running

    def history(self, cert_id: str) -> list[DispatchReport]:
        """Most recent dispatches first."""
        with self._lock:
            return list(reversed(self._history.get(cert_id, ())))

    def forget(self, cert_id: str) -> None:
        with self._lock:
            self._history.pop(cert_id, None)
        self._locks.discard(cert_id)

    def shutdown(self, wait: bool = True) -> None:  # noqa: FBT001, FBT002
        self._pool.shutdown(wait=wait, cancel_futures=True)
        self._runner.shutdown(wait=False, cancel_futures=True)
        self._registry.close()

    # -- execution ----------------------------------------------------------

    def _issuer_chain(self, record: CertificateRecord) -> tuple[x509.Certificate, ...]:
        if not record.fingerprint:
            return ()
        chain = []
        for issuer in self._index.path_to_root(record.fingerprint)[1:]:
            try:
                chain.append(self._store.load_x509(issuer))
            except CertProblem as exc:
                log.warning("Chain of %s is incomplete: %s", record.name, exc.detail)
                break
        return tuple(chain)

    def _key_passphrase(self, record: CertificateRecord) -> str | None:
        if not record.needs_passphrase or self._vault is None or not record.fingerprint:
            return None
        if self._vault.sealed or not self._vault.has(record.fingerprint):
            return None
        try:
            return self._vault.get(record.fingerprint)
        except CertProblem as exc:
            log.warning("Stored passphrase of %s is unusable: %s", record.name, exc.detail)
            return None

    def _context(self, record: CertificateRecord, mode: DispatchMode) -> DeployContext:
        return DeployContext(
            record=record,
            store=self._store,
            mode=mode,
            variables=build_variables(record, self._store),
            chain=self._issuer_chain(record),
            settings=self._deployment_settings,
            key_passphrase=self._key_passphrase(record),
        )

    def _run(
        self,
        record: CertificateRecord,
        mode: DispatchMode,
        trigger: str,
        actions: tuple[Action, ...] | None,
        running: _Running,
    ) -> DispatchReport:
        report = DispatchReport(
            dispatch_id=uuid4().hex,
            cert_id=record.cert_id,
            fingerprint=record.fingerprint,
            mode=mode,
            trigger=trigger,
            started_at=utcnow(),
        )
        planned = record.deployment_actions if actions is None else actions
        log.info(
            "Dispatching %d action(s) for %s in %s mode",
            len(planned),
            record.name,
            mode.value,
            extra={"fingerprint": record.fingerprint, "dispatch_id": report.dispatch_id},
        )
        base = self._context(record, mode) if planned else None
        failed = False
        for action in planned:
            if running.cancel.is_set():
                report.cancelled = True
                report.results.append(_skip(action, "Dispatch was cancelled"))
                continue
            if not action.enabled:
                report.results.append(_skip(action, "Action is disabled"))
                continue
            if action.requires_previous and failed:
                report.results.append(_skip(action, "A previous action failed"))
                continue
            result = self._execute(action, base, running)
            report.results.append(result)
            if result.status == ActionStatus.FAILURE:
                failed = True
                if result.error_kind == ErrorKind.CANCELLED and running.cancel.is_set():
                    report.cancelled = True

        report.finished_at = utcnow()
        log.info(
            "Dispatch for %s finished: %s",
            record.name,
            "success" if report.success else "failure",
            extra={
                "fingerprint": record.fingerprint,
                "dispatch_id": report.dispatch_id,
                "mode": mode.value,
                "success": report.success,
            },
        )
        return report

    def _timeout(self, action: Action) -> float:
        if action.timeout_seconds:
            return float(action.timeout_seconds)
        if self._deployment_settings is not None:
            overrides = self._deployment_settings.get("defaults").get("timeouts") or {}
            if action.kind.value in overrides:
                return float(overrides[action.kind.value])
        return float(self._settings.timeout_for(action.kind.value))

    def _execute(self, action: Action, base: DeployContext, running: _Running) -> ActionResult:
        started = time.monotonic()
        timeout = self._timeout(action)
        ctx = base.for_action(timeout)
        running.action_abort = ctx.abort
        try:
            outcome = self._await(action, ctx, running)
        except CertProblem as exc:
            return _result(action, started, ActionStatus.FAILURE, exc.detail, exc.kind)
        except Exception as exc:
            log.exception(
                "Action %s (%s) crashed",
                action.name,
                action.kind.value,
                extra={"action_id": action.id},
            )
            return _result(
                action,
                started,
                ActionStatus.FAILURE,
                f"Unexpected error: {type(exc).__name__}",
                ErrorKind.INTERNAL,
            )
        finally:
            running.action_abort = None
        return _result(action, started, outcome.status, outcome.message, details=outcome.details)

    def _await(self, action: Action, ctx: DeployContext, running: _Running) -> ActionOutcome:
        executor = self._registry.get(action.kind)
        plain = action.map_secrets(self._box.decrypt) if self._box is not None else action
        call = executor.simulate if ctx.simulate else executor.execute
        future = self._runner.submit(call, plain, ctx)
        while True:
            try:
                outcome = future.result(timeout=_POLL_SECONDS)
            except FutureTimeout:
                finished = False
            else:
                finished = True
            # An executor that notices the abort flag returns early; that is
            # still a cancelled action, not a successful one
            if ctx.abort.is_set() or running.cancel.is_set():
                ctx.abort.set()
                future.cancel()
                raise CertProblem(ErrorKind.CANCELLED, "Action was cancelled")
            if finished:
                return outcome
            if time.monotonic() >= ctx.deadline:
                ctx.abort.set()
                future.cancel()
                raise CertProblem(
                    ErrorKind.TIMEOUT,
                    f"Action did not finish within {self._timeout(action):.0f}s",
                )

    # -- bookkeeping --------------------------------------------------------

    def _remember(self, report: DispatchReport) -> None:
        with self._lock:
            history = self._history.get(report.cert_id)
            if history is None:
                history = deque(maxlen=max(1, self._settings.history_size))
                self._history[report.cert_id] = history
            history.append(report)

    def _fire_hook(self, record: CertificateRecord, report: DispatchReport) -> None:
        if self._hooks is None:
            return
        self._hooks.dispatch(
            "deployment.completed",
            {
                "certificate": record.name,
                "fingerprint": record.fingerprint,
                "dispatch": report.to_dict(),
            },
        )


def _result(
    action: Action,
    started: float,
    status: ActionStatus,
    message: str,
    error_kind: ErrorKind | None = None,
    details: dict | None = None,
) -> ActionResult:
    duration_ms = int((time.monotonic() - started) * 1000)
    log_fn = log.warning if status == ActionStatus.FAILURE else log.info
    log_fn(
        "Action %s (%s): %s - %s",
        action.name,
        action.kind.value,
        status.value,
        message,
        extra={"action_id": action.id, "duration_ms": duration_ms, "status": status.value},
    )
    return ActionResult(
        action_id=action.id,
        name=action.name,
        kind=action.kind.value,
        status=status,
        message=message,
        duration_ms=duration_ms,
        error_kind=error_kind.value if error_kind else None,
        details=details or {},
    )


def _skip(action: Action, reason: str) -> ActionResult:
    return ActionResult(
        action_id=action.id,
        name=action.name,
        kind=action.kind.value,
        status=ActionStatus.SKIPPED,
        message=reason,
        duration_ms=0,
    )
