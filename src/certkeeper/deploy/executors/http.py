"""HTTP executors: ``api-call`` and ``webhook``."""

from __future__ import annotations

import base64
import json
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import days_until_expiry, utcnow
from certkeeper.core.types import ActionKind
from certkeeper.deploy.base import ActionExecutor, require_reachable
from certkeeper.deploy.results import ActionOutcome

if TYPE_CHECKING:
    from certkeeper.adapters import HttpResponse
    from certkeeper.deploy.context import DeployContext
    from certkeeper.models.action import ApiCallAction, WebhookAction

log = logging.getLogger(__name__)

# Public artifacts a webhook may carry; the private key is never sent
_WEBHOOK_FILES = ("crt", "chain", "fullchain")


def auth_headers(auth: dict[str, Any] | None) -> dict[str, str]:
    """Headers for the ``bearer``, ``basic`` and ``apiKey`` auth styles."""
    if not auth:
        return {}
    kind = auth.get("type") or (
        "bearer" if auth.get("token") else "apiKey" if auth.get("apiKey") else
        "basic" if auth.get("username") else "none"
    )
    if kind == "bearer" and auth.get("token"):
        return {"Authorization": f"Bearer {auth['token']}"}
    if kind == "basic" and auth.get("username"):
        raw = f"{auth['username']}:{auth.get('password') or ''}".encode()
        return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}
    if kind == "apiKey" and auth.get("apiKey"):
        return {auth.get("apiKeyHeader") or "X-API-Key": auth["apiKey"]}
    return {}


def check_response(resp: HttpResponse, url: str) -> None:
    if resp.ok:
        return
    if resp.status in (401, 403):
        raise CertProblem(ErrorKind.ADAPTER_AUTH, f"{url} answered HTTP {resp.status}")
    raise CertProblem(
        ErrorKind.ADAPTER_REMOTE,
        f"{url} answered HTTP {resp.status}: {resp.snippet()}".rstrip(": "),
    )


class ApiCallExecutor(ActionExecutor):
    kind = ActionKind.API_CALL

    @staticmethod
    def _request(action: ApiCallAction, ctx: DeployContext) -> tuple[str, dict[str, str], bytes | None]:
        url = ctx.expand(action.url)
        headers = {**ctx.expand(action.headers), **auth_headers(action.auth)}
        body: bytes | None = None
        if action.json_payload is not None:
            payload = action.json_payload
            if isinstance(payload, str):
                try:
                    payload = json.loads(ctx.expand(payload))
                except ValueError as exc:
                    raise CertProblem(
                        ErrorKind.INVALID_INPUT,
                        f"jsonPayload is not valid JSON after substitution: {exc}",
                    ) from exc
            else:
                payload = ctx.expand(payload)
            body = json.dumps(payload).encode("utf-8")
            headers.setdefault("Content-Type", action.content_type or "application/json")
        elif action.form_data:
            body = urlencode(ctx.expand(action.form_data)).encode("ascii")
            headers.setdefault("Content-Type", "application/x-www-form-urlencoded")
        elif action.data is not None:
            body = ctx.expand(action.data).encode("utf-8")
            headers.setdefault("Content-Type", action.content_type or "text/plain")
        return url, headers, body

    def execute(self, action: ApiCallAction, ctx: DeployContext) -> ActionOutcome:
        url, headers, body = self._request(action, ctx)
        resp = self.adapters.http.request(
            action.method,
            url,
            headers=headers,
            body=body,
            timeout=ctx.remaining,
        )
        check_response(resp, url)
        return ActionOutcome.success(
            f"{action.method} {url} answered HTTP {resp.status}",
            status=resp.status,
            response=resp.snippet(),
        )

    def simulate(self, action: ApiCallAction, ctx: DeployContext) -> ActionOutcome:
        url, headers, body = self._request(action, ctx)
        require_reachable(url, self.adapters.http.check(url, headers=headers))
        return ActionOutcome.success(
            f"Would send {action.method} {url} ({len(body or b'')} bytes)",
            url=url,
        )


class WebhookExecutor(ActionExecutor):
    kind = ActionKind.WEBHOOK

    @staticmethod
    def payload(action: WebhookAction, ctx: DeployContext) -> dict[str, Any]:
        record = ctx.record
        now = utcnow()
        body: dict[str, Any] = {
            "event": action.event,
            "timestamp": now.isoformat(),
            "certificate": {
                "name": record.name,
                "fingerprint": record.fingerprint,
                "subject": record.common_name,
                "issuer": record.issuer,
                "validFrom": record.valid_from.isoformat() if record.valid_from else None,
                "validTo": record.valid_to.isoformat() if record.valid_to else None,
                "domains": record.domains,
                "ips": record.ips,
                "isExpired": bool(record.valid_to and record.valid_to <= now),
                "daysUntilExpiry": days_until_expiry(record.valid_to, now) if record.valid_to else None,
                "certType": record.cert_type.value,
            },
        }
        if action.custom_data:
            body["customData"] = ctx.expand(action.custom_data)
        if action.include_files:
            files = {}
            for source in _WEBHOOK_FILES:
                try:
                    data, _ = ctx.artifact(source)
                except CertProblem as exc:
                    log.warning("Webhook omits %s: %s", source, exc.detail)
                    continue
                files[source] = data.decode("ascii", errors="replace")
            body["files"] = files
        return body

    def _request(self, action: WebhookAction, ctx: DeployContext) -> tuple[str, dict[str, str], bytes]:
        url = ctx.expand(action.url)
        headers = {"Content-Type": action.content_type, **ctx.expand(action.headers)}
        if action.payload:
            body = ctx.expand(action.payload).encode("utf-8")
        else:
            body = json.dumps(self.payload(action, ctx)).encode("utf-8")
        return url, headers, body

    def execute(self, action: WebhookAction, ctx: DeployContext) -> ActionOutcome:
        url, headers, body = self._request(action, ctx)
        resp = self.adapters.http.request(
            action.method,
            url,
            headers=headers,
            body=body,
            timeout=ctx.remaining,
        )
        check_response(resp, url)
        return ActionOutcome.success(f"Webhook {action.event} delivered to {url}", status=resp.status)

    def simulate(self, action: WebhookAction, ctx: DeployContext) -> ActionOutcome:
        url, headers, body = self._request(action, ctx)
        require_reachable(url, self.adapters.http.check(url, headers=headers))
        return ActionOutcome.success(
            f"Would deliver webhook {action.event} to {url} ({len(body)} bytes)",
            url=url,
        )
