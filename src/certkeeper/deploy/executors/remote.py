"""File-transfer executors: ``ssh-copy``, ``smb-copy`` and ``ftp-copy``."""

from __future__ import annotations

import logging
import posixpath
from typing import TYPE_CHECKING

from certkeeper.adapters import FtpTarget, SmbTarget, SshTarget
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import ActionKind
from certkeeper.deploy.base import ActionExecutor, require_reachable
from certkeeper.deploy.results import ActionOutcome

if TYPE_CHECKING:
    from certkeeper.deploy.context import DeployContext
    from certkeeper.models.action import FtpCopyAction, SmbCopyAction, SshCopyAction

log = logging.getLogger(__name__)


def _remote_path(ctx: DeployContext, destination: str, filename: str, sep: str = "/") -> str:
    path = ctx.expand(destination)
    if path.endswith(("/", "\\")):
        path = path + filename if sep == "/" else path.rstrip("/\\") + sep + filename
    return path


class SshCopyExecutor(ActionExecutor):
    kind = ActionKind.SSH_COPY

    @staticmethod
    def _target(action: SshCopyAction, ctx: DeployContext) -> SshTarget:
        return SshTarget(
            host=ctx.expand(action.host),
            port=action.port,
            username=action.username,
            password=action.password,
            private_key=action.private_key,
            passphrase=action.passphrase,
            timeout=min(30.0, ctx.remaining),
        )

    def execute(self, action: SshCopyAction, ctx: DeployContext) -> ActionOutcome:
        target = self._target(action, ctx)
        data, filename = ctx.artifact(action.source)
        remote = _remote_path(ctx, action.destination, filename)
        self.adapters.ssh.upload(target, data, remote, action.permissions)
        ctx.raise_if_aborted()

        details = {"host": target.host, "destination": remote}
        if action.command:
            command = ctx.expand(action.command)
            result = self.adapters.ssh.run(target, command, timeout=ctx.remaining)
            if result.exit_status != 0:
                raise CertProblem(
                    ErrorKind.ADAPTER_REMOTE,
                    f"Uploaded to {target.label}:{remote} but '{command}' exited with "
                    f"status {result.exit_status}: {(result.stderr or result.stdout).strip()}",
                )
            details["commandOutput"] = result.stdout.strip()
        return ActionOutcome.success(f"Uploaded {filename} to {target.label}:{remote}", **details)

    def simulate(self, action: SshCopyAction, ctx: DeployContext) -> ActionOutcome:
        target = self._target(action, ctx)
        data, filename = ctx.artifact(action.source)
        remote = _remote_path(ctx, action.destination, filename)
        require_reachable(f"SSH {target.label}", self.adapters.ssh.check(target))
        message = f"Would upload {filename} ({len(data)} bytes) to {target.label}:{remote}"
        if action.command:
            message += f" and run '{ctx.expand(action.command)}'"
        return ActionOutcome.success(message, host=target.host, destination=remote)


class SmbCopyExecutor(ActionExecutor):
    kind = ActionKind.SMB_COPY

    @staticmethod
    def _target(action: SmbCopyAction, ctx: DeployContext) -> SmbTarget:
        return SmbTarget(
            host=ctx.expand(action.host),
            share=action.share,
            port=action.port,
            domain=action.domain,
            username=action.username,
            password=action.password,
            timeout=min(30.0, ctx.remaining),
        )

    def execute(self, action: SmbCopyAction, ctx: DeployContext) -> ActionOutcome:
        target = self._target(action, ctx)
        data, filename = ctx.artifact(action.source)
        remote = _remote_path(ctx, action.destination, filename, sep="\\")
        unc = self.adapters.smb.upload(target, data, remote)
        return ActionOutcome.success(f"Uploaded {filename} to {unc}", destination=unc)

    def simulate(self, action: SmbCopyAction, ctx: DeployContext) -> ActionOutcome:
        target = self._target(action, ctx)
        data, filename = ctx.artifact(action.source)
        unc = target.unc(_remote_path(ctx, action.destination, filename, sep="\\"))
        require_reachable(f"SMB share {target.label}", self.adapters.smb.check(target))
        return ActionOutcome.success(
            f"Would upload {filename} ({len(data)} bytes) to {unc}",
            destination=unc,
        )


class FtpCopyExecutor(ActionExecutor):
    kind = ActionKind.FTP_COPY

    @staticmethod
    def _target(action: FtpCopyAction, ctx: DeployContext) -> FtpTarget:
        return FtpTarget(
            host=ctx.expand(action.host),
            port=action.port,
            username=action.username,
            password=action.password,
            secure=action.secure,
            passive=action.passive,
            timeout=min(30.0, ctx.remaining),
        )

    def execute(self, action: FtpCopyAction, ctx: DeployContext) -> ActionOutcome:
        target = self._target(action, ctx)
        data, filename = ctx.artifact(action.source)
        remote = _remote_path(ctx, action.destination, filename)
        self.adapters.ftp.upload(target, data, remote, action.permissions)
        return ActionOutcome.success(
            f"Uploaded {filename} to {target.label}{posixpath.join('/', remote.lstrip('/'))}",
            destination=remote,
        )

    def simulate(self, action: FtpCopyAction, ctx: DeployContext) -> ActionOutcome:
        target = self._target(action, ctx)
        data, filename = ctx.artifact(action.source)
        remote = _remote_path(ctx, action.destination, filename)
        require_reachable(f"FTP server {target.label}", self.adapters.ftp.check(target))
        return ActionOutcome.success(
            f"Would upload {filename} ({len(data)} bytes) to {target.label} as {remote}",
            destination=remote,
        )
