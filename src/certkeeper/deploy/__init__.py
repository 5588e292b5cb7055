"""Deployment action dispatch: executors, results and the dispatcher."""

from certkeeper.deploy.base import ActionExecutor
from certkeeper.deploy.context import DeployContext, build_variables
from certkeeper.deploy.dispatcher import Dispatcher
from certkeeper.deploy.registry import ExecutorRegistry
from certkeeper.deploy.results import ActionOutcome, ActionResult, DispatchReport

__all__ = [
    "ActionExecutor",
    "ActionOutcome",
    "ActionResult",
    "DeployContext",
    "DispatchReport",
    "Dispatcher",
    "ExecutorRegistry",
    "build_variables",
]
