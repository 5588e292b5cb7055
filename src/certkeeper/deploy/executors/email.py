"""``email`` executor.

SMTP settings are resolved in order: the action's own ``smtp`` block,
the ``email`` deployment settings category, then the ``smtp`` section
of the configuration file.
"""

from __future__ import annotations

import logging
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import TYPE_CHECKING, Any

from certkeeper.adapters import SmtpTarget
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import ActionKind
from certkeeper.deploy.base import ActionExecutor, require_reachable
from certkeeper.deploy.results import ActionOutcome
from certkeeper.notifications import TemplateRenderer

if TYPE_CHECKING:
    from certkeeper.adapters import Adapters
    from certkeeper.config.settings import SmtpSettings
    from certkeeper.deploy.context import DeployContext
    from certkeeper.models.action import EmailAction

log = logging.getLogger(__name__)

# Only public material is ever attached
_ATTACHMENTS = ("crt", "chain", "fullchain")


class EmailExecutor(ActionExecutor):
    kind = ActionKind.EMAIL

    def __init__(
        self,
        adapters: Adapters,
        smtp: SmtpSettings | None = None,
        renderer: TemplateRenderer | None = None,
    ) -> None:
        super().__init__(adapters)
        self._smtp = smtp
        self._renderer = renderer or TemplateRenderer(smtp.templates_path if smtp else None)

    # -- resolution ---------------------------------------------------------

    def _relay(self, action: EmailAction, ctx: DeployContext) -> tuple[SmtpTarget, str]:
        own = action.smtp or {}
        shared = ctx.settings_for("email").get("smtp") or {}
        timeout = min(float(self._smtp.timeout_seconds if self._smtp else 30), ctx.remaining)

        for source in (own, shared):
            if source.get("host"):
                secure = bool(source.get("secure"))
                target = SmtpTarget(
                    host=source["host"],
                    port=int(source.get("port") or (465 if secure else 587)),
                    username=source.get("user") or None,
                    password=source.get("password") or None,
                    use_tls=not secure,
                    use_ssl=secure,
                    timeout=timeout,
                )
                sender = action.sender or source.get("from") or shared.get("from")
                break
        else:
            if self._smtp is None or not self._smtp.host:
                raise CertProblem(
                    ErrorKind.INVALID_INPUT,
                    "No SMTP server configured on the action, in deployment settings or in config",
                )
            target = SmtpTarget(
                host=self._smtp.host,
                port=self._smtp.port,
                username=self._smtp.username or None,
                password=self._smtp.password or None,
                use_tls=self._smtp.use_tls,
                use_ssl=self._smtp.use_ssl,
                timeout=timeout,
            )
            sender = action.sender
        if not sender:
            sender = self._smtp.from_address if self._smtp else f"certkeeper@{target.host}"
        return target, sender

    def _attachments(self, action: EmailAction, ctx: DeployContext) -> dict[str, bytes]:
        if not action.attach_certificates:
            return {}
        files = {}
        for source in _ATTACHMENTS:
            try:
                data, filename = ctx.artifact(source)
            except CertProblem as exc:
                log.warning("Email omits %s attachment: %s", source, exc.detail)
                continue
            files[filename] = data
        return files

    def compose(self, action: EmailAction, ctx: DeployContext, sender: str) -> MIMEMultipart:
        attachments = self._attachments(action, ctx)
        context: dict[str, Any] = {**ctx.variables, "attachments": sorted(attachments)}
        subject = self._renderer.render_string(ctx.expand(action.subject), context).strip()
        if action.body:
            body = self._renderer.render_string(ctx.expand(action.body), context, html=action.html)
        else:
            body = self._renderer.render_default(context, html=action.html)

        msg = MIMEMultipart("mixed")
        msg["From"] = sender
        msg["To"] = ", ".join(action.recipients("to"))
        if action.recipients("cc"):
            msg["Cc"] = ", ".join(action.recipients("cc"))
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "html" if action.html else "plain", "utf-8"))
        for filename, data in attachments.items():
            part = MIMEApplication(data, Name=filename)
            part["Content-Disposition"] = f'attachment; filename="{filename}"'
            msg.attach(part)
        return msg

    # -- execution ----------------------------------------------------------

    def execute(self, action: EmailAction, ctx: DeployContext) -> ActionOutcome:
        target, sender = self._relay(action, ctx)
        msg = self.compose(action, ctx, sender)
        recipients = action.recipients("to") + action.recipients("cc") + action.recipients("bcc")
        self.adapters.smtp.send(target, msg, sender, recipients)
        return ActionOutcome.success(
            f"Sent '{msg['Subject']}' to {len(recipients)} recipient(s) via {target.label}",
            recipients=len(recipients),
        )

    def simulate(self, action: EmailAction, ctx: DeployContext) -> ActionOutcome:
        target, sender = self._relay(action, ctx)
        msg = self.compose(action, ctx, sender)
        require_reachable(f"SMTP server {target.label}", self.adapters.smtp.check(target))
        return ActionOutcome.success(
            f"Would send '{msg['Subject']}' to {msg['To']} via {target.label}",
            subject=msg["Subject"],
        )
