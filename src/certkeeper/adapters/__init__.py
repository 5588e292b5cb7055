"""Thin per-protocol clients used by the deployment executors."""

from __future__ import annotations

from dataclasses import dataclass, field

from certkeeper.adapters.base import Adapter
from certkeeper.adapters.docker_adapter import ContainerRef, DockerAdapter
from certkeeper.adapters.ftp_adapter import FtpAdapter, FtpTarget
from certkeeper.adapters.http_adapter import HttpAdapter, HttpResponse
from certkeeper.adapters.npm_adapter import NpmAdapter, NpmTarget
from certkeeper.adapters.smb_adapter import SmbAdapter, SmbTarget
from certkeeper.adapters.smtp_adapter import SmtpAdapter, SmtpTarget
from certkeeper.adapters.ssh_adapter import SshAdapter, SshTarget


@dataclass
class Adapters:
    """The adapter set shared by every dispatch."""

    docker: DockerAdapter = field(default_factory=DockerAdapter)
    ssh: SshAdapter = field(default_factory=SshAdapter)
    smb: SmbAdapter = field(default_factory=SmbAdapter)
    ftp: FtpAdapter = field(default_factory=FtpAdapter)
    http: HttpAdapter = field(default_factory=HttpAdapter)
    smtp: SmtpAdapter = field(default_factory=SmtpAdapter)
    npm: NpmAdapter | None = None

    def __post_init__(self) -> None:
        if self.npm is None:
            self.npm = NpmAdapter(self.http)

    def close(self) -> None:
        for adapter in (self.docker, self.ssh, self.smb, self.ftp, self.http, self.smtp, self.npm):
            adapter.close()


__all__ = [
    "Adapter",
    "Adapters",
    "ContainerRef",
    "DockerAdapter",
    "FtpAdapter",
    "FtpTarget",
    "HttpAdapter",
    "HttpResponse",
    "NpmAdapter",
    "NpmTarget",
    "SmbAdapter",
    "SmbTarget",
    "SmtpAdapter",
    "SmtpTarget",
    "SshAdapter",
    "SshTarget",
]
