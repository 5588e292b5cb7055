"""FTP / FTPS adapter on the standard library's :mod:`ftplib`."""

from __future__ import annotations

import ftplib
import io
import logging
import posixpath
from dataclasses import dataclass

from certkeeper.adapters.base import Adapter, auth_failed, remote_error, status_of, unreachable
from certkeeper.app.errors import CertProblem
from certkeeper.core.types import AdapterStatus

log = logging.getLogger(__name__)

_SERVICE = "FTP"


@dataclass(frozen=True)
class FtpTarget:
    host: str
    port: int = 21
    username: str = "anonymous"
    password: str | None = None
    secure: bool = False
    passive: bool = True
    timeout: float = 30.0

    @property
    def label(self) -> str:
        scheme = "ftps" if self.secure else "ftp"
        return f"{scheme}://{self.username}@{self.host}:{self.port}"


class FtpAdapter(Adapter):
    """Uploads files over FTP, optionally with explicit TLS."""

    name = "ftp"

    def _open(self, target: FtpTarget) -> ftplib.FTP:
        ftp: ftplib.FTP = ftplib.FTP_TLS() if target.secure else ftplib.FTP()
        try:
            ftp.connect(target.host, target.port, timeout=target.timeout)
        except OSError as exc:
            raise unreachable(_SERVICE, target.label, exc) from exc
        try:
            ftp.login(target.username, target.password or "")
            if isinstance(ftp, ftplib.FTP_TLS):
                ftp.prot_p()
            ftp.set_pasv(target.passive)
        except ftplib.error_perm as exc:
            ftp.close()
            if str(exc).startswith("530"):
                raise auth_failed(_SERVICE, target.label) from exc
            raise remote_error(_SERVICE, target.label, str(exc)) from exc
        except (ftplib.Error, OSError) as exc:
            ftp.close()
            raise unreachable(_SERVICE, target.label, exc) from exc
        return ftp

    def upload(
        self,
        target: FtpTarget,
        data: bytes,
        remote_path: str,
        mode: int | None = None,
    ) -> None:
        ftp = self._open(target)
        try:
            _makedirs(ftp, posixpath.dirname(remote_path))
            ftp.storbinary(f"STOR {remote_path}", io.BytesIO(data))
            if mode is not None:
                try:
                    ftp.sendcmd(f"SITE CHMOD {mode:o} {remote_path}")
                except ftplib.error_perm:
                    log.warning("Server %s does not support SITE CHMOD", target.label)
        except ftplib.error_perm as exc:
            raise remote_error(_SERVICE, target.label, str(exc)) from exc
        except (ftplib.Error, OSError) as exc:
            raise unreachable(_SERVICE, target.label, exc) from exc
        finally:
            _quit(ftp)
        log.info(
            "Uploaded %d bytes to %s%s",
            len(data),
            target.label,
            remote_path,
            extra={"host": target.host, "remote_path": remote_path},
        )

    def check(self, target: FtpTarget) -> AdapterStatus:
        try:
            ftp = self._open(target)
        except CertProblem as exc:
            return status_of(exc)
        _quit(ftp)
        return AdapterStatus.REACHABLE


def _makedirs(ftp: ftplib.FTP, directory: str) -> None:
    if not directory or directory == "/":
        return
    parts = [p for p in directory.split("/") if p]
    path = "/" if directory.startswith("/") else ""
    for part in parts:
        path = posixpath.join(path, part) if path else part
        try:
            ftp.mkd(path)
        except ftplib.error_perm:
            # 550 covers both "exists" and "permission denied"
            if not _is_dir(ftp, path):
                raise


def _is_dir(ftp: ftplib.FTP, path: str) -> bool:
    here = ftp.pwd()
    try:
        ftp.cwd(path)
    except ftplib.error_perm:
        return False
    ftp.cwd(here)
    return True


def _quit(ftp: ftplib.FTP) -> None:
    try:
        ftp.quit()
    except (ftplib.Error, OSError):
        ftp.close()
