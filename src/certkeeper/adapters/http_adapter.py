"""Plain HTTP(S) client on :mod:`urllib.request`.

Non-2xx statuses are returned to the caller as an :class:`HttpResponse`
rather than raised, so each action decides what counts as failure.
Connection problems become ``AdapterUnreachable``; socket timeouts
become ``Timeout``.
"""

from __future__ import annotations

import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

from certkeeper.adapters.base import Adapter, unreachable
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import AdapterStatus

log = logging.getLogger(__name__)

_SERVICE = "HTTP endpoint"
_MAX_BODY = 1024 * 1024


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:  # noqa: ANN401
        return json.loads(self.body.decode("utf-8")) if self.body else None

    def snippet(self, limit: int = 200) -> str:
        return self.body[:limit].decode("utf-8", errors="replace")


class HttpAdapter(Adapter):
    name = "http"

    def __init__(self, user_agent: str = "certkeeper") -> None:
        self._user_agent = user_agent

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
        timeout: float = 30.0,
    ) -> HttpResponse:
        all_headers = {"User-Agent": self._user_agent, **(headers or {})}
        req = urllib.request.Request(url, data=body, method=method.upper(), headers=all_headers)
        host = urlsplit(url).netloc or url
        try:
            resp = urllib.request.urlopen(req, timeout=timeout)  # noqa: S310
        except urllib.error.HTTPError as exc:
            data = b""
            try:
                data = exc.read(_MAX_BODY)
            except OSError:
                log.debug("Could not read error body from %s", host)
            return HttpResponse(exc.code, data, dict(exc.headers or {}))
        except (TimeoutError, socket.timeout) as exc:
            raise CertProblem(
                ErrorKind.TIMEOUT,
                f"{_SERVICE} {host} did not answer within {timeout}s",
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            reason = getattr(exc, "reason", exc)
            if isinstance(reason, (TimeoutError, socket.timeout)):
                raise CertProblem(
                    ErrorKind.TIMEOUT,
                    f"{_SERVICE} {host} did not answer within {timeout}s",
                ) from exc
            raise unreachable(_SERVICE, host, reason) from exc
        with resp:
            data = resp.read(_MAX_BODY)
            return HttpResponse(resp.status, data, dict(resp.headers))

    def request_json(
        self,
        method: str,
        url: str,
        payload: Any = None,  # noqa: ANN401
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> HttpResponse:
        body = None if payload is None else json.dumps(payload).encode("utf-8")
        return self.request(
            method,
            url,
            headers={"Content-Type": "application/json", "Accept": "application/json", **(headers or {})},
            body=body,
            timeout=timeout,
        )

    def check(self, target: str, *, headers: dict[str, str] | None = None) -> AdapterStatus:
        """Send a ``HEAD`` request; any HTTP answer means reachable."""
        try:
            resp = self.request("HEAD", target, headers=headers, timeout=10.0)
        except CertProblem:
            return AdapterStatus.UNREACHABLE
        if resp.status in (401, 403):
            return AdapterStatus.AUTH_REQUIRED
        return AdapterStatus.REACHABLE
