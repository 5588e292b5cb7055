"""``nginx-proxy-manager`` executor.

Three delivery methods:

``path``
    Write ``fullchain.pem`` and ``privkey.pem`` under
    ``<npmPath>/letsencrypt/live/custom-<name>/`` and drop the
    ``reload.nginx`` flag file.
``docker``
    Copy the same two files into the NPM container and restart it.
``api``
    Upload the certificate as a custom certificate through the NPM
    REST API.  Connection details missing from the action are taken
    from the ``nginxProxyManager`` deployment settings.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from certkeeper.adapters import ContainerRef, NpmTarget
from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.fs import atomic_write_bytes
from certkeeper.core.types import ActionKind
from certkeeper.deploy.base import ActionExecutor, require_reachable
from certkeeper.deploy.results import ActionOutcome

if TYPE_CHECKING:
    from certkeeper.deploy.context import DeployContext
    from certkeeper.models.action import NginxProxyManagerAction

log = logging.getLogger(__name__)

CONTAINER_LIVE_DIR = "/etc/letsencrypt/live"


def custom_dir_name(cert_name: str) -> str:
    return "custom-" + cert_name.replace(".", "-")


def _bundle(ctx: DeployContext) -> dict[str, bytes]:
    fullchain, _ = ctx.artifact("fullchain")
    return {"fullchain.pem": fullchain, "privkey.pem": ctx.private_key_pem()}


class NginxProxyManagerExecutor(ActionExecutor):
    kind = ActionKind.NGINX_PROXY_MANAGER

    def execute(self, action: NginxProxyManagerAction, ctx: DeployContext) -> ActionOutcome:
        if action.method == "path":
            return self._write_path(action, ctx)
        if action.method == "docker":
            return self._write_container(action, ctx)
        return self._upload(action, ctx)

    def simulate(self, action: NginxProxyManagerAction, ctx: DeployContext) -> ActionOutcome:
        files = _bundle(ctx)
        name = custom_dir_name(ctx.record.name)
        if action.method == "path":
            root = Path(ctx.expand(action.npm_path or ""))
            if not root.is_dir():
                raise CertProblem(ErrorKind.NOT_FOUND, f"NPM path {root} does not exist")
            live = root / "letsencrypt" / "live" / name
            return ActionOutcome.success(
                f"Would write {', '.join(files)} to {live} and request an nginx reload",
                directory=str(live),
            )
        if action.method == "docker":
            ref = self._container(action)
            require_reachable(f"Docker container {ref.label}", self.adapters.docker.check(ref))
            live = f"{CONTAINER_LIVE_DIR}/{name}"
            return ActionOutcome.success(
                f"Would copy {', '.join(files)} into {ref.label}:{live} and restart it",
                directory=live,
            )
        target = self._target(action, ctx)
        require_reachable(f"Nginx Proxy Manager {target.base_url}", self.adapters.npm.check(target))
        nice_name = action.certificate_name or ctx.record.name
        existing = self.adapters.npm.find_certificate(
            target,
            certificate_id=action.certificate_id,
            nice_name=nice_name,
        )
        if existing is None and not action.create_if_missing:
            raise CertProblem(
                ErrorKind.ADAPTER_REMOTE,
                f"Nginx Proxy Manager has no certificate '{action.certificate_id or nice_name}'",
            )
        verb = "update" if existing is not None else "create"
        return ActionOutcome.success(
            f"Would {verb} custom certificate '{nice_name}' on {target.base_url}",
            npmCertificateId=existing.get("id") if existing else None,
        )

    # -- methods ------------------------------------------------------------

    def _write_path(self, action: NginxProxyManagerAction, ctx: DeployContext) -> ActionOutcome:
        root = Path(ctx.expand(action.npm_path or ""))
        if not root.is_dir():
            raise CertProblem(ErrorKind.NOT_FOUND, f"NPM path {root} does not exist")
        letsencrypt = root / "letsencrypt"
        live = letsencrypt / "live" / custom_dir_name(ctx.record.name)
        try:
            for filename, data in _bundle(ctx).items():
                atomic_write_bytes(live / filename, data, mode=0o600 if "key" in filename else 0o644)
            (letsencrypt / "reload.nginx").touch()
        except PermissionError as exc:
            raise CertProblem(ErrorKind.ADAPTER_AUTH, f"Permission denied writing {live}") from exc
        except OSError as exc:
            raise CertProblem(ErrorKind.TRANSIENT, f"Could not write {live}: {exc}") from exc
        return ActionOutcome.success(
            f"Nginx Proxy Manager certificate updated at {live}",
            directory=str(live),
        )

    @staticmethod
    def _container(action: NginxProxyManagerAction) -> ContainerRef:
        return ContainerRef(
            container_name=action.npm_container_name,
            docker_host=action.docker_host or None,
        )

    def _write_container(
        self,
        action: NginxProxyManagerAction,
        ctx: DeployContext,
    ) -> ActionOutcome:
        ref = self._container(action)
        live = f"{CONTAINER_LIVE_DIR}/{custom_dir_name(ctx.record.name)}"
        self.adapters.docker.put_files(ref, live, _bundle(ctx))
        ctx.raise_if_aborted()
        container = self.adapters.docker.restart(ref)
        if not self.adapters.docker.is_running(container):
            log.warning("Container %s is not running after restart", container.name)
        return ActionOutcome.success(
            f"Nginx Proxy Manager certificate updated in container {container.name}",
            directory=live,
            container=container.name,
        )

    def _target(self, action: NginxProxyManagerAction, ctx: DeployContext) -> NpmTarget:
        defaults = ctx.settings_for("nginxProxyManager")
        host = action.host or defaults.get("host")
        if not host:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                "No Nginx Proxy Manager host configured on the action or in deployment settings",
            )
        return NpmTarget(
            host=host,
            port=action.port or defaults.get("port") or 81,
            use_https=(
                action.use_https if action.use_https is not None else bool(defaults.get("useHttps"))
            ),
            username=action.username or defaults.get("username") or None,
            password=action.password or defaults.get("password") or None,
            timeout=min(30.0, ctx.remaining),
        )

    def _upload(self, action: NginxProxyManagerAction, ctx: DeployContext) -> ActionOutcome:
        target = self._target(action, ctx)
        cert, _ = ctx.artifact("crt")
        intermediate = None
        if ctx.chain:
            intermediate, _ = ctx.artifact("chain")
        nice_name = action.certificate_name or ctx.record.name
        record_id, created = self.adapters.npm.upload_certificate(
            target,
            nice_name=nice_name,
            certificate=cert.decode("ascii"),
            certificate_key=ctx.private_key_pem().decode("ascii"),
            intermediate_certificate=intermediate.decode("ascii") if intermediate else None,
            certificate_id=action.certificate_id,
            create_if_missing=action.create_if_missing,
        )
        verb = "Created" if created else "Updated"
        return ActionOutcome.success(
            f"{verb} custom certificate '{nice_name}' (id {record_id}) on {target.base_url}",
            npmCertificateId=record_id,
            created=created,
        )
