"""Docker Engine adapter on top of the ``docker`` SDK.

One client per endpoint (``None`` meaning the environment default) is
created lazily and shared by every dispatch.
"""

from __future__ import annotations

import io
import logging
import tarfile
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import docker
from docker.errors import APIError, DockerException, NotFound

from certkeeper.adapters.base import Adapter, auth_failed, remote_error, status_of, unreachable
from certkeeper.app.errors import CertProblem
from certkeeper.core.types import AdapterStatus

if TYPE_CHECKING:
    from collections.abc import Callable

    from docker.models.containers import Container

log = logging.getLogger(__name__)

_SERVICE = "Docker"


@dataclass(frozen=True)
class ContainerRef:
    """A container addressed by id (prefix) or name on one endpoint."""

    container_id: str | None = None
    container_name: str | None = None
    docker_host: str | None = None

    @property
    def label(self) -> str:
        return self.container_name or self.container_id or "?"


class DockerAdapter(Adapter):
    """Finds, restarts and writes files into containers."""

    name = "docker"

    def __init__(self, client_factory: Callable[[str | None], docker.DockerClient] | None = None):
        self._factory = client_factory or _default_client
        self._clients: dict[str | None, docker.DockerClient] = {}
        self._lock = threading.Lock()

    def client(self, docker_host: str | None = None) -> docker.DockerClient:
        with self._lock:
            client = self._clients.get(docker_host)
            if client is None:
                try:
                    client = self._factory(docker_host)
                except DockerException as exc:
                    raise unreachable(_SERVICE, docker_host or "daemon", exc) from exc
                self._clients[docker_host] = client
            return client

    def find(self, ref: ContainerRef) -> Container:
        """Resolve *ref*; names may carry Docker's leading ``/``."""
        client = self.client(ref.docker_host)
        try:
            if ref.container_name:
                return client.containers.get(ref.container_name.lstrip("/"))
            matches = [
                c for c in client.containers.list(all=True) if c.id.startswith(ref.container_id or "")
            ]
        except NotFound as exc:
            raise remote_error(_SERVICE, ref.label, "container not found") from exc
        except APIError as exc:
            raise self._api_problem(ref, exc) from exc
        except DockerException as exc:
            raise unreachable(_SERVICE, ref.docker_host or "daemon", exc) from exc
        if len(matches) != 1:
            detail = "container not found" if not matches else "container id is ambiguous"
            raise remote_error(_SERVICE, ref.label, detail)
        return matches[0]

    @staticmethod
    def _api_problem(ref: ContainerRef, exc: APIError) -> CertProblem:
        if exc.status_code in (401, 403):
            return auth_failed(_SERVICE, ref.docker_host or "daemon", str(exc.explanation or exc))
        return remote_error(_SERVICE, ref.label, str(exc.explanation or exc))

    def is_running(self, container: Container) -> bool:
        container.reload()
        return container.status == "running"

    def restart(self, ref: ContainerRef, timeout: int = 10) -> Container:
        container = self.find(ref)
        started = time.monotonic()
        try:
            container.restart(timeout=timeout)
        except APIError as exc:
            raise self._api_problem(ref, exc) from exc
        except DockerException as exc:
            raise unreachable(_SERVICE, ref.docker_host or "daemon", exc) from exc
        log.info(
            "Restarted container %s",
            container.name,
            extra={"container": container.name, "duration_ms": _ms(started)},
        )
        return container

    def put_files(self, ref: ContainerRef, directory: str, files: dict[str, bytes]) -> None:
        """Copy *files* (name to content) into *directory* of the container."""
        container = self.find(ref)
        buffer = io.BytesIO()
        now = time.time()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for name, data in files.items():
                info = tarfile.TarInfo(name=name)
                info.size = len(data)
                info.mtime = int(now)
                info.mode = 0o600 if name.endswith((".key", "privkey.pem")) else 0o644
                tar.addfile(info, io.BytesIO(data))
        try:
            container.exec_run(["mkdir", "-p", directory])
            if not container.put_archive(directory, buffer.getvalue()):
                raise remote_error(_SERVICE, ref.label, f"could not write into {directory}")
        except APIError as exc:
            raise self._api_problem(ref, exc) from exc
        except DockerException as exc:
            raise unreachable(_SERVICE, ref.docker_host or "daemon", exc) from exc

    def check(self, target: ContainerRef) -> AdapterStatus:
        try:
            self.client(target.docker_host).ping()
            self.find(target)
        except CertProblem as exc:
            return status_of(exc)
        except DockerException:
            return AdapterStatus.UNREACHABLE
        return AdapterStatus.REACHABLE

    def close(self) -> None:
        with self._lock:
            for client in self._clients.values():
                client.close()
            self._clients.clear()


def _default_client(docker_host: str | None) -> docker.DockerClient:
    if docker_host:
        return docker.DockerClient(base_url=docker_host)
    return docker.from_env()


def _ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
