"""``docker-restart`` executor."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from certkeeper.adapters import ContainerRef
from certkeeper.core.types import ActionKind
from certkeeper.deploy.base import ActionExecutor, require_reachable
from certkeeper.deploy.results import ActionOutcome

if TYPE_CHECKING:
    from certkeeper.deploy.context import DeployContext
    from certkeeper.models.action import DockerRestartAction

log = logging.getLogger(__name__)


def _ref(action: DockerRestartAction) -> ContainerRef:
    return ContainerRef(
        container_id=action.container_id or None,
        container_name=action.container_name or None,
        docker_host=action.docker_host or None,
    )


class DockerRestartExecutor(ActionExecutor):
    kind = ActionKind.DOCKER_RESTART

    def execute(self, action: DockerRestartAction, ctx: DeployContext) -> ActionOutcome:
        ref = _ref(action)
        container = self.adapters.docker.find(ref)
        if not self.adapters.docker.is_running(container):
            # A stopped container picks up the new files when it next starts
            return ActionOutcome.skipped(
                f"Container {container.name} is not running; restart not needed",
                container=container.name,
                status=container.status,
            )
        ctx.raise_if_aborted()
        self.adapters.docker.restart(ref, timeout=action.stop_timeout)
        return ActionOutcome.success(f"Restarted container {container.name}", container=container.name)

    def simulate(self, action: DockerRestartAction, ctx: DeployContext) -> ActionOutcome:
        ref = _ref(action)
        require_reachable(f"Docker container {ref.label}", self.adapters.docker.check(ref))
        container = self.adapters.docker.find(ref)
        if not self.adapters.docker.is_running(container):
            return ActionOutcome.skipped(
                f"Container {container.name} is not running; would not restart it",
                container=container.name,
                status=container.status,
            )
        return ActionOutcome.success(f"Would restart container {container.name}", container=container.name)
