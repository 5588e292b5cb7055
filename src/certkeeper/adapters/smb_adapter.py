"""SMB adapter built on ``smbprotocol``'s high-level ``smbclient`` API."""

from __future__ import annotations

import logging
import ntpath
import threading
from dataclasses import dataclass

import smbclient
from smbprotocol.exceptions import LogonFailure, SMBAuthenticationError, SMBException

from certkeeper.adapters.base import Adapter, auth_failed, remote_error, status_of, unreachable
from certkeeper.app.errors import CertProblem
from certkeeper.core.types import AdapterStatus

log = logging.getLogger(__name__)

_SERVICE = "SMB"


@dataclass(frozen=True)
class SmbTarget:
    host: str
    share: str
    port: int = 445
    domain: str | None = None
    username: str | None = None
    password: str | None = None
    timeout: float = 30.0

    @property
    def label(self) -> str:
        return rf"\\{self.host}\{self.share}"

    @property
    def account(self) -> str | None:
        if self.username and self.domain:
            return f"{self.domain}\\{self.username}"
        return self.username

    def unc(self, path: str) -> str:
        relative = path.replace("/", "\\").lstrip("\\")
        return ntpath.join(self.label, relative)


class SmbAdapter(Adapter):
    """Writes files onto SMB shares."""

    name = "smb"

    def __init__(self) -> None:
        self._lock = threading.Lock()

    def _session(self, target: SmbTarget) -> None:
        try:
            smbclient.register_session(
                target.host,
                username=target.account,
                password=target.password,
                port=target.port,
                connection_timeout=int(target.timeout),
            )
        except (LogonFailure, SMBAuthenticationError) as exc:
            raise auth_failed(_SERVICE, target.label) from exc
        except (SMBException, OSError, ValueError) as exc:
            raise unreachable(_SERVICE, target.label, exc) from exc

    def upload(self, target: SmbTarget, data: bytes, path: str) -> str:
        """Write *data* to *path* on the share; return the UNC path written."""
        unc = target.unc(path)
        with self._lock:
            self._session(target)
        try:
            smbclient.makedirs(ntpath.dirname(unc), exist_ok=True)
            with smbclient.open_file(unc, mode="wb") as f:
                f.write(data)
        except (LogonFailure, SMBAuthenticationError) as exc:
            raise auth_failed(_SERVICE, target.label) from exc
        except SMBException as exc:
            raise remote_error(_SERVICE, target.label, str(exc)) from exc
        except OSError as exc:
            raise unreachable(_SERVICE, target.label, exc) from exc
        log.info("Uploaded %d bytes to %s", len(data), unc, extra={"host": target.host})
        return unc

    def check(self, target: SmbTarget) -> AdapterStatus:
        try:
            with self._lock:
                self._session(target)
            smbclient.listdir(target.label)
        except CertProblem as exc:
            return status_of(exc)
        except (LogonFailure, SMBAuthenticationError):
            return AdapterStatus.AUTH_REQUIRED
        except (SMBException, OSError):
            return AdapterStatus.UNREACHABLE
        return AdapterStatus.REACHABLE

    def close(self) -> None:
        smbclient.reset_connection_cache()
