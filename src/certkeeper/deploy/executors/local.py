"""Executors that act on the local host: ``copy`` and ``command``."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from pathlib import Path
from typing import TYPE_CHECKING

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.fs import atomic_write_bytes
from certkeeper.core.types import ActionKind
from certkeeper.deploy.base import ActionExecutor
from certkeeper.deploy.results import ActionOutcome

if TYPE_CHECKING:
    from certkeeper.deploy.context import DeployContext
    from certkeeper.models.action import CommandAction, CopyAction

log = logging.getLogger(__name__)

_POLL_SECONDS = 0.2
_MAX_OUTPUT = 2000


def _destination(ctx: DeployContext, raw: str, filename: str) -> Path:
    expanded = ctx.expand(raw)
    dest = Path(expanded).expanduser()
    if expanded.endswith(("/", os.sep)) or dest.is_dir():
        dest = dest / filename
    return dest


def _writable_parent(path: Path) -> Path | None:
    """The nearest existing ancestor of *path*, when the process may write there."""
    for parent in path.parents:
        if parent.exists():
            return parent if os.access(parent, os.W_OK) else None
    return None


class CopyExecutor(ActionExecutor):
    kind = ActionKind.COPY

    def execute(self, action: CopyAction, ctx: DeployContext) -> ActionOutcome:
        data, filename = ctx.artifact(action.source)
        dest = _destination(ctx, action.destination, filename)
        try:
            atomic_write_bytes(dest, data, mode=action.permissions)
        except PermissionError as exc:
            raise CertProblem(ErrorKind.ADAPTER_AUTH, f"Permission denied writing {dest}") from exc
        except OSError as exc:
            raise CertProblem(
                ErrorKind.TRANSIENT,
                f"Could not write {dest}: {exc.strerror or exc}",
            ) from exc
        mode = f" (mode {action.permissions:o})" if action.permissions is not None else ""
        return ActionOutcome.success(
            f"Copied {filename} to {dest}{mode}",
            destination=str(dest),
            bytes=len(data),
        )

    def simulate(self, action: CopyAction, ctx: DeployContext) -> ActionOutcome:
        data, filename = ctx.artifact(action.source)
        dest = _destination(ctx, action.destination, filename)
        if dest.exists() and not os.access(dest, os.W_OK):
            raise CertProblem(ErrorKind.ADAPTER_AUTH, f"{dest} exists and is not writable")
        if not dest.exists() and _writable_parent(dest) is None:
            raise CertProblem(ErrorKind.ADAPTER_AUTH, f"No writable parent directory for {dest}")
        return ActionOutcome.success(
            f"Would copy {filename} ({len(data)} bytes) to {dest}",
            destination=str(dest),
            bytes=len(data),
        )


class CommandExecutor(ActionExecutor):
    kind = ActionKind.COMMAND

    @staticmethod
    def _environment(action: CommandAction, ctx: DeployContext) -> dict[str, str]:
        env = dict(os.environ)
        env.update({f"CERTKEEPER_{k.upper()}": v for k, v in ctx.variables.items()})
        env.update(ctx.expand(action.env))
        return env

    def execute(self, action: CommandAction, ctx: DeployContext) -> ActionOutcome:
        command = ctx.expand(action.command)
        cwd = ctx.expand(action.cwd) if action.cwd else None
        started = time.monotonic()
        try:
            proc = subprocess.Popen(  # noqa: S602
                command,
                shell=True,
                cwd=cwd,
                env=self._environment(action, ctx),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise CertProblem(
                ErrorKind.ADAPTER_REMOTE,
                f"Could not start command: {exc.strerror or exc}",
            ) from exc

        while True:
            try:
                out, err = proc.communicate(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                aborted = ctx.abort.is_set()
                if aborted or time.monotonic() >= ctx.deadline:
                    proc.kill()
                    proc.communicate()
                    if aborted:
                        raise CertProblem(ErrorKind.CANCELLED, "Command was cancelled") from None
                    raise CertProblem(
                        ErrorKind.TIMEOUT,
                        f"Command did not finish within {time.monotonic() - started:.0f}s",
                    ) from None

        stdout = out.decode("utf-8", errors="replace").strip()[:_MAX_OUTPUT]
        stderr = err.decode("utf-8", errors="replace").strip()[:_MAX_OUTPUT]
        if proc.returncode != 0:
            raise CertProblem(
                ErrorKind.ADAPTER_REMOTE,
                f"Command exited with status {proc.returncode}: {stderr or stdout}".strip(),
            )
        log.info("Command finished", extra={"action_id": action.id, "exit_code": 0})
        return ActionOutcome.success(
            f"Command completed: {stdout}" if stdout else "Command completed",
            exitCode=0,
        )

    def simulate(self, action: CommandAction, ctx: DeployContext) -> ActionOutcome:
        command = ctx.expand(action.command)
        cwd = ctx.expand(action.cwd) if action.cwd else None
        if cwd and not Path(cwd).is_dir():
            raise CertProblem(ErrorKind.INVALID_INPUT, f"Working directory {cwd} does not exist")
        try:
            program = shlex.split(command)[0]
        except (ValueError, IndexError):
            program = None
        details = {"command": command}
        if program and shutil.which(program) is None:
            details["warning"] = f"'{program}' was not found on PATH"
        return ActionOutcome.success(f"Would run: {command}", **details)
