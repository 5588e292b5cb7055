"""Common surface of the external-service adapters.

Adapters are the only components that hold connections, pools and
per-service caches.  Each one raises :class:`CertProblem` with an
``Adapter*`` (or ``Timeout``) kind and exposes a non-mutating
:meth:`Adapter.check` used by simulated dispatches.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, ClassVar

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import AdapterStatus

log = logging.getLogger(__name__)


class Adapter(abc.ABC):
    """Base class for protocol adapters."""

    name: ClassVar[str] = "adapter"

    @abc.abstractmethod
    def check(self, target: Any) -> AdapterStatus:  # noqa: ANN401
        """Check *target* without changing anything on it."""

    def close(self) -> None:
        """Release pooled connections; adapters without pools do nothing."""


def unreachable(service: str, target: str, exc: BaseException | str) -> CertProblem:
    return CertProblem(ErrorKind.ADAPTER_UNREACHABLE, f"{service} {target} is unreachable: {exc}")


def auth_failed(service: str, target: str, detail: str = "authentication failed") -> CertProblem:
    return CertProblem(ErrorKind.ADAPTER_AUTH, f"{service} {target}: {detail}")


def remote_error(service: str, target: str, detail: str) -> CertProblem:
    return CertProblem(ErrorKind.ADAPTER_REMOTE, f"{service} {target} returned an error: {detail}")


def status_of(problem: CertProblem) -> AdapterStatus:
    """Map a failed check onto the status reported by :meth:`Adapter.check`."""
    if problem.kind == ErrorKind.ADAPTER_AUTH:
        return AdapterStatus.AUTH_REQUIRED
    if problem.kind in (ErrorKind.ADAPTER_UNREACHABLE, ErrorKind.TIMEOUT):
        return AdapterStatus.UNREACHABLE
    return AdapterStatus.REACHABLE
