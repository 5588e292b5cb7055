"""One executor per deployment action kind."""

from certkeeper.deploy.executors.docker import DockerRestartExecutor
from certkeeper.deploy.executors.email import EmailExecutor
from certkeeper.deploy.executors.http import ApiCallExecutor, WebhookExecutor
from certkeeper.deploy.executors.local import CommandExecutor, CopyExecutor
from certkeeper.deploy.executors.npm import NginxProxyManagerExecutor
from certkeeper.deploy.executors.remote import FtpCopyExecutor, SmbCopyExecutor, SshCopyExecutor

__all__ = [
    "ApiCallExecutor",
    "CommandExecutor",
    "CopyExecutor",
    "DockerRestartExecutor",
    "EmailExecutor",
    "FtpCopyExecutor",
    "NginxProxyManagerExecutor",
    "SmbCopyExecutor",
    "SshCopyExecutor",
    "WebhookExecutor",
]
