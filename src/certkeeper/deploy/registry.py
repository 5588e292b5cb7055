"""Maps each :class:`ActionKind` to its executor instance."""

from __future__ import annotations

from typing import TYPE_CHECKING

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.deploy.executors import (
    ApiCallExecutor,
    CommandExecutor,
    CopyExecutor,
    DockerRestartExecutor,
    EmailExecutor,
    FtpCopyExecutor,
    NginxProxyManagerExecutor,
    SmbCopyExecutor,
    SshCopyExecutor,
    WebhookExecutor,
)

if TYPE_CHECKING:
    from certkeeper.adapters import Adapters
    from certkeeper.config.settings import SmtpSettings
    from certkeeper.core.types import ActionKind
    from certkeeper.deploy.base import ActionExecutor


class ExecutorRegistry:
    """Holds one executor per action kind, all sharing one adapter set."""

    def __init__(self, adapters: Adapters, smtp: SmtpSettings | None = None) -> None:
        self.adapters = adapters
        executors: list[ActionExecutor] = [
            CopyExecutor(adapters),
            CommandExecutor(adapters),
            DockerRestartExecutor(adapters),
            NginxProxyManagerExecutor(adapters),
            SshCopyExecutor(adapters),
            SmbCopyExecutor(adapters),
            FtpCopyExecutor(adapters),
            ApiCallExecutor(adapters),
            WebhookExecutor(adapters),
            EmailExecutor(adapters, smtp),
        ]
        self._executors: dict[ActionKind, ActionExecutor] = {e.kind: e for e in executors}

    def register(self, executor: ActionExecutor) -> None:
        """Replace the executor for ``executor.kind``."""
        self._executors[executor.kind] = executor

    def get(self, kind: ActionKind) -> ActionExecutor:
        try:
            return self._executors[kind]
        except KeyError:
            raise CertProblem(ErrorKind.INVALID_INPUT, f"No executor for action kind '{kind}'") from None

    def close(self) -> None:
        self.adapters.close()
