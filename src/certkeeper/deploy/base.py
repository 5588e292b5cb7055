"""Abstract base class for deployment action executors.

Every action kind has exactly one :class:`ActionExecutor` subclass,
registered in :class:`~certkeeper.deploy.registry.ExecutorRegistry`
under its :class:`ActionKind`.  The live path and the dry-run path are
both methods of that class.
"""

from __future__ import annotations

import abc
import logging
from typing import TYPE_CHECKING, ClassVar

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import AdapterStatus

if TYPE_CHECKING:
    from certkeeper.adapters import Adapters
    from certkeeper.core.types import ActionKind
    from certkeeper.deploy.context import DeployContext
    from certkeeper.deploy.results import ActionOutcome
    from certkeeper.models.action import Action

log = logging.getLogger(__name__)


class ActionExecutor(abc.ABC):
    """Runs one kind of deployment action.

    Subclasses set :attr:`kind` and implement :meth:`execute` and
    :meth:`simulate`.  Both return an :class:`ActionOutcome` or raise
    :class:`~certkeeper.app.errors.CertProblem`.

    Parameters
    ----------
    adapters:
        The shared adapter set.

    """

    kind: ClassVar[ActionKind]

    def __init__(self, adapters: Adapters) -> None:
        self.adapters = adapters

    @abc.abstractmethod
    def execute(self, action: Action, ctx: DeployContext) -> ActionOutcome:
        """Perform the action."""

    @abc.abstractmethod
    def simulate(self, action: Action, ctx: DeployContext) -> ActionOutcome:
        """Do every local computation and non-mutating check of :meth:`execute`.

        Must not write data, send mail, restart containers or call
        mutating remote APIs.
        """


def require_reachable(target: str, status: AdapterStatus) -> None:
    """Turn a failed :meth:`Adapter.check` result into the matching problem."""
    if status == AdapterStatus.AUTH_REQUIRED:
        raise CertProblem(ErrorKind.ADAPTER_AUTH, f"{target} rejected the configured credentials")
    if status == AdapterStatus.UNREACHABLE:
        raise CertProblem(ErrorKind.ADAPTER_UNREACHABLE, f"{target} is unreachable")
