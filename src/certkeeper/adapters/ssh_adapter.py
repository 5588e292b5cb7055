"""SSH/SFTP adapter built on ``paramiko``.

Connections are pooled per ``(host, port, username)`` and reused across
dispatches while the transport stays active.  A lock per pool key keeps
two threads from driving the same connection at once.
"""

from __future__ import annotations

import io
import logging
import posixpath
import socket
import threading
from dataclasses import dataclass

import paramiko

from certkeeper.adapters.base import Adapter, auth_failed, remote_error, status_of, unreachable
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import AdapterStatus

log = logging.getLogger(__name__)

_SERVICE = "SSH"
_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)
_MAX_OUTPUT = 4096


@dataclass(frozen=True)
class SshTarget:
    host: str
    username: str
    port: int = 22
    password: str | None = None
    private_key: str | None = None
    passphrase: str | None = None
    timeout: float = 30.0

    @property
    def label(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True)
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str


def load_private_key(pem: str, passphrase: str | None) -> paramiko.PKey:
    """Parse an OpenSSH or PEM private key of any supported type."""
    last_error: Exception | None = None
    for cls in _KEY_CLASSES:
        try:
            return cls.from_private_key(io.StringIO(pem), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise CertProblem(
                ErrorKind.ADAPTER_AUTH,
                "SSH private key is encrypted and no passphrase was configured",
            ) from exc
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise CertProblem(ErrorKind.INVALID_INPUT, f"Unsupported SSH private key: {last_error}")


class SshAdapter(Adapter):
    """Uploads files over SFTP and runs remote commands."""

    name = "ssh"

    def __init__(self) -> None:
        self._clients: dict[tuple[str, int, str], paramiko.SSHClient] = {}
        self._key_locks: dict[tuple[str, int, str], threading.Lock] = {}
        self._guard = threading.Lock()

    def _key(self, target: SshTarget) -> tuple[str, int, str]:
        return (target.host, target.port, target.username)

    def _lock_for(self, target: SshTarget) -> threading.Lock:
        with self._guard:
            return self._key_locks.setdefault(self._key(target), threading.Lock())

    def _connect(self, target: SshTarget) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(paramiko.WarningPolicy())
        pkey = load_private_key(target.private_key, target.passphrase) if target.private_key else None
        try:
            client.connect(
                target.host,
                port=target.port,
                username=target.username,
                password=target.password if pkey is None else None,
                pkey=pkey,
                timeout=target.timeout,
                banner_timeout=target.timeout,
                auth_timeout=target.timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise auth_failed(_SERVICE, target.label) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise unreachable(_SERVICE, target.label, exc) from exc
        log.debug("Opened SSH connection to %s", target.label)
        return client

    def _client(self, target: SshTarget) -> paramiko.SSHClient:
        key = self._key(target)
        with self._guard:
            client = self._clients.get(key)
        transport = client.get_transport() if client is not None else None
        if transport is not None and transport.is_active():
            return client
        client = self._connect(target)
        with self._guard:
            self._clients[key] = client
        return client

    def _drop(self, target: SshTarget) -> None:
        with self._guard:
            client = self._clients.pop(self._key(target), None)
        if client is not None:
            client.close()

    # -- operations ---------------------------------------------------------

    def upload(
        self,
        target: SshTarget,
        data: bytes,
        remote_path: str,
        mode: int | None = None,
    ) -> None:
        """Write *data* to *remote_path*, creating parent directories."""
        with self._lock_for(target):
            client = self._client(target)
            try:
                sftp = client.open_sftp()
                try:
                    _makedirs(sftp, posixpath.dirname(remote_path))
                    sftp.putfo(io.BytesIO(data), remote_path)
                    if mode is not None:
                        sftp.chmod(remote_path, mode)
                finally:
                    sftp.close()
            except PermissionError as exc:
                raise remote_error(_SERVICE, target.label, f"permission denied on {remote_path}") from exc
            except (paramiko.SSHException, OSError) as exc:
                self._drop(target)
                raise unreachable(_SERVICE, target.label, exc) from exc
        log.info(
            "Uploaded %d bytes to %s:%s",
            len(data),
            target.label,
            remote_path,
            extra={"host": target.host, "remote_path": remote_path},
        )

    def run(self, target: SshTarget, command: str, timeout: float = 60.0) -> CommandResult:
        with self._lock_for(target):
            client = self._client(target)
            try:
                _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
                exit_status = stdout.channel.recv_exit_status()
                out = stdout.read()[:_MAX_OUTPUT].decode("utf-8", errors="replace")
                err = stderr.read()[:_MAX_OUTPUT].decode("utf-8", errors="replace")
            except socket.timeout as exc:
                raise CertProblem(
                    ErrorKind.TIMEOUT,
                    f"Remote command on {target.label} timed out after {timeout}s",
                ) from exc
            except (paramiko.SSHException, OSError) as exc:
                self._drop(target)
                raise unreachable(_SERVICE, target.label, exc) from exc
        return CommandResult(exit_status, out, err)

    def check(self, target: SshTarget) -> AdapterStatus:
        try:
            with self._lock_for(target):
                self._client(target)
        except CertProblem as exc:
            return status_of(exc)
        return AdapterStatus.REACHABLE

    def close(self) -> None:
        with self._guard:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()


def _makedirs(sftp: paramiko.SFTPClient, directory: str) -> None:
    if not directory or directory == "/":
        return
    try:
        sftp.stat(directory)
    except FileNotFoundError:
        _makedirs(sftp, posixpath.dirname(directory))
        sftp.mkdir(directory)
