"""SMTP adapter on the standard library's :mod:`smtplib`.

One connection per message; the expected volume is a handful of
notifications per renewal.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from typing import TYPE_CHECKING

from certkeeper.adapters.base import Adapter, auth_failed, remote_error, status_of, unreachable
from certkeeper.app.errors import CertProblem
from certkeeper.core.types import AdapterStatus

if TYPE_CHECKING:
    from email.message import Message

log = logging.getLogger(__name__)

_SERVICE = "SMTP server"


@dataclass(frozen=True)
class SmtpTarget:
    host: str
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True
    use_ssl: bool = False
    timeout: float = 30.0

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}"


class SmtpAdapter(Adapter):
    name = "smtp"

    def _connect(self, target: SmtpTarget) -> smtplib.SMTP:
        cls = smtplib.SMTP_SSL if target.use_ssl else smtplib.SMTP
        try:
            server = cls(target.host, target.port, timeout=target.timeout)
        except (smtplib.SMTPException, OSError) as exc:
            raise unreachable(_SERVICE, target.label, exc) from exc
        try:
            server.ehlo()
            if target.use_tls and not target.use_ssl:
                server.starttls()
                server.ehlo()
            if target.username:
                server.login(target.username, target.password or "")
        except smtplib.SMTPAuthenticationError as exc:
            server.close()
            raise auth_failed(_SERVICE, target.label) from exc
        except smtplib.SMTPException as exc:
            server.close()
            raise remote_error(_SERVICE, target.label, str(exc)) from exc
        except OSError as exc:
            server.close()
            raise unreachable(_SERVICE, target.label, exc) from exc
        return server

    def send(self, target: SmtpTarget, message: Message, sender: str, recipients: list[str]) -> None:
        server = self._connect(target)
        try:
            refused = server.sendmail(sender, recipients, message.as_string())
        except smtplib.SMTPRecipientsRefused as exc:
            raise remote_error(_SERVICE, target.label, "all recipients were refused") from exc
        except smtplib.SMTPException as exc:
            raise remote_error(_SERVICE, target.label, str(exc)) from exc
        except OSError as exc:
            raise unreachable(_SERVICE, target.label, exc) from exc
        finally:
            try:
                server.quit()
            except (smtplib.SMTPException, OSError):
                server.close()
        if refused:
            log.warning("SMTP server refused recipients: %s", ", ".join(refused))
        log.info(
            "Sent email to %d recipient(s) via %s",
            len(recipients) - len(refused),
            target.label,
        )

    def check(self, target: SmtpTarget) -> AdapterStatus:
        try:
            server = self._connect(target)
        except CertProblem as exc:
            return status_of(exc)
        try:
            server.quit()
        except (smtplib.SMTPException, OSError):
            server.close()
        return AdapterStatus.REACHABLE
