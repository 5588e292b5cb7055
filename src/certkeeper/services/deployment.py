"""Deployment-action service.

CRUD and ordering of a certificate's deployment actions, test runs and
dispatch history.  Secret fields are sealed with the vault key before
they are persisted; reads return them masked, and writing a masked
value back keeps the stored secret.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import DispatchMode
from certkeeper.models.action import SECRET_MASK, action_from_dict

if TYPE_CHECKING:
    from certkeeper.deploy import ActionResult, Dispatcher, DispatchReport
    from certkeeper.index import MetadataIndex
    from certkeeper.models.action import Action
    from certkeeper.models.certificate import CertificateRecord
    from certkeeper.store import CertificateStore
    from certkeeper.vault import SecretBox

log = logging.getLogger(__name__)


def _get(data: dict[str, Any], path: str) -> Any:  # noqa: ANN401
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _put(data: dict[str, Any], path: str, value: Any) -> None:  # noqa: ANN401
    *parents, leaf = path.split(".")
    node = data
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            return
        node = child
    node[leaf] = value


class DeploymentService:
    """Manage and run the deployment actions of certificates."""

    def __init__(
        self,
        store: CertificateStore,
        index: MetadataIndex,
        dispatcher: Dispatcher,
        box: SecretBox,
    ) -> None:
        self._store = store
        self._index = index
        self._dispatcher = dispatcher
        self._box = box

    # -- secrets ------------------------------------------------------------

    def _seal(self, action: Action) -> Action:
        return action.map_secrets(lambda v: v if self._box.is_token(v) else self._box.encrypt(v))

    @staticmethod
    def _keep_masked(data: dict[str, Any], previous: Action | None) -> dict[str, Any]:
        """Swap masked secret values in *data* for the stored tokens of *previous*."""
        if previous is None:
            return data
        stored = previous.to_dict()
        for path in previous.SECRET_FIELDS:
            if _get(data, path) == SECRET_MASK:
                _put(data, path, _get(stored, path))
        return data

    # -- reads --------------------------------------------------------------

    def _record(self, fingerprint: str) -> CertificateRecord:
        return self._index.get(fingerprint)

    def list_actions(self, fingerprint: str) -> list[dict[str, Any]]:
        record = self._record(fingerprint)
        return [a.to_dict(mask_secrets=True) for a in record.deployment_actions]

    def get_action(self, fingerprint: str, action_id: str) -> dict[str, Any]:
        record = self._record(fingerprint)
        return self._find(record, action_id).to_dict(mask_secrets=True)

    @staticmethod
    def _find(record: CertificateRecord, action_id: str) -> Action:
        action = record.find_action(action_id)
        if action is None:
            raise CertProblem(
                ErrorKind.NOT_FOUND,
                f"Certificate '{record.name}' has no deployment action {action_id}",
            )
        return action

    # -- writes -------------------------------------------------------------

    def _save_actions(
        self,
        record: CertificateRecord,
        actions: tuple[Action, ...],
    ) -> CertificateRecord:
        return self._store.save(replace(record, deployment_actions=actions), previous=record)

    def add_action(self, fingerprint: str, data: dict[str, Any]) -> dict[str, Any]:
        record = self._record(fingerprint)
        if not isinstance(data, dict):
            raise CertProblem(ErrorKind.INVALID_INPUT, "Action must be a JSON object")
        if data.get("id") and record.find_action(data["id"]) is not None:
            raise CertProblem(
                ErrorKind.CONFLICT,
                f"Certificate '{record.name}' already has an action with id {data['id']}",
            )
        action = self._seal(action_from_dict(data))
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            self._save_actions(current, (*current.deployment_actions, action))
        log.info(
            "Added %s action %r to %s",
            action.kind.value,
            action.name,
            record.name,
            extra={"cert_id": record.cert_id, "action_id": action.id},
        )
        return action.to_dict(mask_secrets=True)

    def update_action(self, fingerprint: str, action_id: str, data: dict[str, Any]) -> dict[str, Any]:
        """Merge *data* into the action; a changed kind replaces it outright."""
        record = self._record(fingerprint)
        if not isinstance(data, dict):
            raise CertProblem(ErrorKind.INVALID_INPUT, "Action must be a JSON object")
        previous = self._find(record, action_id)
        kind = data.get("kind") or data.get("type") or previous.kind.value
        if kind == previous.kind.value:
            merged = {**previous.to_dict(), **data, "id": action_id, "kind": kind}
            merged.pop("type", None)
            merged = self._keep_masked(merged, previous)
        else:
            merged = {**data, "id": action_id}
        action = self._seal(action_from_dict(merged))
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            actions = tuple(action if a.id == action_id else a for a in current.deployment_actions)
            self._save_actions(current, actions)
        log.info(
            "Updated action %r of %s",
            action.name,
            record.name,
            extra={"cert_id": record.cert_id, "action_id": action_id},
        )
        return action.to_dict(mask_secrets=True)

    def delete_action(self, fingerprint: str, action_id: str) -> None:
        record = self._record(fingerprint)
        self._find(record, action_id)
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            self._save_actions(
                current,
                tuple(a for a in current.deployment_actions if a.id != action_id),
            )
        log.info(
            "Deleted action %s of %s",
            action_id,
            record.name,
            extra={"cert_id": record.cert_id, "action_id": action_id},
        )

    def reorder(self, fingerprint: str, order: Any) -> list[dict[str, Any]]:  # noqa: ANN401
        """Put the actions in the order of the *order* id list."""
        record = self._record(fingerprint)
        if not isinstance(order, list) or not all(isinstance(i, str) for i in order):
            raise CertProblem(ErrorKind.INVALID_INPUT, "order must be a list of action ids")
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            by_id = {a.id: a for a in current.deployment_actions}
            if len(order) != len(by_id) or set(order) != set(by_id):
                raise CertProblem(
                    ErrorKind.INVALID_INPUT,
                    "order must list every action id of the certificate exactly once",
                )
            saved = self._save_actions(current, tuple(by_id[i] for i in order))
        return [a.to_dict(mask_secrets=True) for a in saved.deployment_actions]

    # -- running ------------------------------------------------------------

    def test_action(self, fingerprint: str, action_id: str, *, live: bool) -> ActionResult:
        record = self._store.load(self._record(fingerprint).cert_id)
        return self._dispatcher.test_action(record, action_id, live=live)

    def run(self, fingerprint: str, *, live: bool) -> DispatchReport:
        """Dispatch every action of the certificate now and wait for the report."""
        record = self._store.load(self._record(fingerprint).cert_id)
        mode = DispatchMode.LIVE if live else DispatchMode.SIMULATE
        return self._dispatcher.dispatch(record, mode, "manual")

    def cancel(self, fingerprint: str) -> bool:
        return self._dispatcher.cancel(self._record(fingerprint).cert_id)

    def history(self, fingerprint: str) -> list[dict[str, Any]]:
        record = self._record(fingerprint)
        return [r.to_dict() for r in self._dispatcher.history(record.cert_id)]
