"""Nginx Proxy Manager REST API adapter.

Holds the per-instance access-token cache: a token obtained from
``POST /api/tokens`` is reused for 24 hours (or until the server's own
expiry, whichever comes first) and refreshed once when a request is
answered with 401.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from certkeeper.adapters.base import Adapter, auth_failed, remote_error
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import utcnow
from certkeeper.core.types import AdapterStatus

if TYPE_CHECKING:
    from certkeeper.adapters.http_adapter import HttpAdapter, HttpResponse

log = logging.getLogger(__name__)

_SERVICE = "Nginx Proxy Manager"
TOKEN_LIFETIME = timedelta(hours=24)


@dataclass(frozen=True)
class NpmTarget:
    host: str
    port: int = 81
    use_https: bool = False
    username: str | None = None
    password: str | None = None
    timeout: float = 30.0

    @property
    def base_url(self) -> str:
        scheme = "https" if self.use_https else "http"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class _CachedToken:
    token: str
    expires_at: datetime


class NpmAdapter(Adapter):
    name = "nginx-proxy-manager"

    def __init__(self, http: HttpAdapter) -> None:
        self._http = http
        self._tokens: dict[tuple[str, str | None], _CachedToken] = {}
        self._lock = threading.Lock()

    # -- authentication -----------------------------------------------------

    def token(self, target: NpmTarget, *, force: bool = False) -> str:
        key = (target.base_url, target.username)
        now = utcnow()
        with self._lock:
            cached = self._tokens.get(key)
        if cached is not None and not force and cached.expires_at > now:
            return cached.token

        if not target.username or not target.password:
            raise auth_failed(_SERVICE, target.base_url, "username and password are required")
        resp = self._http.request_json(
            "POST",
            f"{target.base_url}/api/tokens",
            {"identity": target.username, "secret": target.password},
            timeout=target.timeout,
        )
        if resp.status in (400, 401, 403):
            raise auth_failed(_SERVICE, target.base_url)
        if not resp.ok:
            raise remote_error(_SERVICE, target.base_url, f"HTTP {resp.status} on login")
        body = resp.json() or {}
        token = body.get("token")
        if not token:
            raise auth_failed(_SERVICE, target.base_url, "login returned no token")

        expires_at = now + TOKEN_LIFETIME
        server_expiry = body.get("expires")
        if server_expiry:
            try:
                expires_at = min(expires_at, datetime.fromisoformat(server_expiry))
            except (TypeError, ValueError):
                log.debug("Ignoring unparseable NPM token expiry %r", server_expiry)
        with self._lock:
            self._tokens[key] = _CachedToken(token, expires_at)
        log.info("Obtained Nginx Proxy Manager token for %s", target.base_url)
        return token

    def _call(
        self,
        target: NpmTarget,
        method: str,
        path: str,
        payload: Any = None,  # noqa: ANN401
    ) -> HttpResponse:
        url = f"{target.base_url}{path}"
        resp = self._http.request_json(
            method,
            url,
            payload,
            headers={"Authorization": f"Bearer {self.token(target)}"},
            timeout=target.timeout,
        )
        if resp.status == 401:
            resp = self._http.request_json(
                method,
                url,
                payload,
                headers={"Authorization": f"Bearer {self.token(target, force=True)}"},
                timeout=target.timeout,
            )
        if resp.status in (401, 403):
            raise auth_failed(_SERVICE, target.base_url)
        return resp

    # -- certificates -------------------------------------------------------

    def list_certificates(self, target: NpmTarget) -> list[dict[str, Any]]:
        resp = self._call(target, "GET", "/api/nginx/certificates")
        if not resp.ok:
            raise remote_error(_SERVICE, target.base_url, f"HTTP {resp.status} listing certificates")
        return list(resp.json() or [])

    def find_certificate(
        self,
        target: NpmTarget,
        *,
        certificate_id: int | None = None,
        nice_name: str | None = None,
    ) -> dict[str, Any] | None:
        for item in self.list_certificates(target):
            if certificate_id is not None and item.get("id") == certificate_id:
                return item
            if certificate_id is None and nice_name and item.get("nice_name") == nice_name:
                return item
        return None

    def upload_certificate(  # noqa: PLR0913
        self,
        target: NpmTarget,
        *,
        nice_name: str,
        certificate: str,
        certificate_key: str,
        intermediate_certificate: str | None = None,
        certificate_id: int | None = None,
        create_if_missing: bool = False,
    ) -> tuple[int, bool]:
        """Update (or create) a custom certificate record.

        Returns the NPM record id and whether it was newly created.
        """
        existing = self.find_certificate(
            target,
            certificate_id=certificate_id,
            nice_name=nice_name,
        )
        meta = {"certificate": certificate, "certificate_key": certificate_key}
        if intermediate_certificate:
            meta["intermediate_certificate"] = intermediate_certificate
        payload = {"nice_name": nice_name, "provider": "other", "meta": meta}

        if existing is not None:
            record_id = int(existing["id"])
            resp = self._call(target, "PUT", f"/api/nginx/certificates/{record_id}", payload)
            created = False
        elif create_if_missing:
            resp = self._call(target, "POST", "/api/nginx/certificates", payload)
            record_id = int((resp.json() or {}).get("id", 0)) if resp.ok else 0
            created = True
        else:
            wanted = certificate_id if certificate_id is not None else nice_name
            raise CertProblem(
                ErrorKind.ADAPTER_REMOTE,
                f"{_SERVICE} {target.base_url} has no certificate '{wanted}'",
            )
        if not resp.ok:
            raise remote_error(
                _SERVICE,
                target.base_url,
                f"HTTP {resp.status}: {resp.snippet()}",
            )
        return record_id, created

    def check(self, target: NpmTarget) -> AdapterStatus:
        try:
            self.list_certificates(target)
        except CertProblem as exc:
            if exc.kind == ErrorKind.ADAPTER_AUTH:
                return AdapterStatus.AUTH_REQUIRED
            if exc.kind in (ErrorKind.ADAPTER_UNREACHABLE, ErrorKind.TIMEOUT):
                return AdapterStatus.UNREACHABLE
        return AdapterStatus.REACHABLE
