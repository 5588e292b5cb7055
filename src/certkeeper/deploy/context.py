"""Per-dispatch execution context handed to every executor.

Carries the certificate being deployed, its issuer chain, the
placeholder variables (``{name}``, ``{cert_path}``, ...) and the
cancellation and deadline state of the running action.
"""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import days_until_expiry, utcnow
from certkeeper.core.types import ArtifactForm, DispatchMode
from certkeeper.crypto import CryptoError, convert, decrypt_key, key_is_encrypted, serialize_key

if TYPE_CHECKING:
    from datetime import datetime

    from cryptography import x509

    from certkeeper.models.certificate import CertificateRecord
    from certkeeper.services.deployment_settings import DeploymentSettingsStore
    from certkeeper.store.certificate_store import CertificateStore

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")

_SOURCE_ALIASES = {"cert": ArtifactForm.CRT, "certificate": ArtifactForm.CRT}

# Forms that can be rendered on the fly without the private key
_KEYLESS_FORMS = frozenset(
    {
        ArtifactForm.CRT,
        ArtifactForm.CER,
        ArtifactForm.DER,
        ArtifactForm.CHAIN,
        ArtifactForm.FULLCHAIN,
        ArtifactForm.P7B,
    },
)


def build_variables(
    record: CertificateRecord,
    store: CertificateStore,
    now: datetime | None = None,
) -> dict[str, str]:
    """Placeholder values describing *record* at *now*."""
    now = now or utcnow()

    def path(form: ArtifactForm) -> str:
        return str(store.artifact_path(record, form))

    return {
        "name": record.name,
        "fingerprint": record.fingerprint or "",
        "cert_path": path(ArtifactForm.CRT),
        "key_path": path(ArtifactForm.KEY),
        "pem_path": path(ArtifactForm.PEM),
        "p12_path": path(ArtifactForm.P12),
        "chain_path": path(ArtifactForm.CHAIN),
        "fullchain_path": path(ArtifactForm.FULLCHAIN),
        "domains": ",".join(record.domains),
        "domain": record.common_name or "",
        "valid_from": record.valid_from.isoformat() if record.valid_from else "",
        "valid_to": record.valid_to.isoformat() if record.valid_to else "",
        "days_until_expiry": (
            str(days_until_expiry(record.valid_to, now)) if record.valid_to else ""
        ),
        "cert_type": record.cert_type.value,
        "timestamp": now.isoformat(),
    }


@dataclass(frozen=True)
class DeployContext:
    record: CertificateRecord
    store: CertificateStore
    mode: DispatchMode
    variables: dict[str, str]
    chain: tuple[x509.Certificate, ...] = ()
    settings: DeploymentSettingsStore | None = None
    key_passphrase: str | None = field(default=None, repr=False)
    abort: threading.Event = field(default_factory=threading.Event)
    deadline: float = field(default_factory=lambda: time.monotonic() + 60)

    @property
    def simulate(self) -> bool:
        return self.mode == DispatchMode.SIMULATE

    def for_action(self, timeout: float) -> DeployContext:
        return replace(self, abort=threading.Event(), deadline=time.monotonic() + timeout)

    @property
    def remaining(self) -> float:
        """Seconds left before the action's deadline (never below 1)."""
        return max(1.0, self.deadline - time.monotonic())

    def raise_if_aborted(self) -> None:
        if self.abort.is_set():
            raise CertProblem(ErrorKind.CANCELLED, "Action was cancelled")

    # -- placeholders -------------------------------------------------------

    def expand(self, value: Any) -> Any:  # noqa: ANN401
        """Substitute known ``{placeholders}`` in strings, dicts and lists.

        Unknown names are left untouched so literal braces (JSON bodies,
        shell snippets) survive.
        """
        if isinstance(value, str):
            return _PLACEHOLDER_RE.sub(
                lambda m: self.variables.get(m.group(1), m.group(0)),
                value,
            )
        if isinstance(value, dict):
            return {k: self.expand(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.expand(v) for v in value]
        return value

    # -- artifacts ----------------------------------------------------------

    def resolve_form(self, source: str) -> ArtifactForm | None:
        key = source.strip().lower()
        if key in _SOURCE_ALIASES:
            return _SOURCE_ALIASES[key]
        try:
            return ArtifactForm(key)
        except ValueError:
            return None

    def artifact(self, source: str) -> tuple[bytes, str]:
        """Content and file name of a materialized form or a literal path."""
        form = self.resolve_form(source)
        if form is None:
            path = Path(self.expand(source))
            try:
                return path.read_bytes(), path.name
            except FileNotFoundError as exc:
                raise CertProblem(ErrorKind.NOT_FOUND, f"Source file {path} does not exist") from exc

        path = self.store.artifact_path(self.record, form)
        if path.is_file():
            return path.read_bytes(), path.name
        if form in _KEYLESS_FORMS:
            try:
                cert = self.store.load_x509(self.record)
                return convert(cert, None, form, chain=self.chain), path.name
            except CryptoError as exc:
                raise exc.to_problem(ErrorKind.MATERIALIZATION_FAILED) from exc
        raise CertProblem(
            ErrorKind.NOT_FOUND,
            f"Certificate '{self.record.name}' has no {form.value} artifact; convert it first",
        )

    def private_key_pem(self) -> bytes:
        """The private key as unencrypted PEM, for targets that cannot take a passphrase."""
        data = self.store.read_artifact(self.record, ArtifactForm.KEY)
        if not key_is_encrypted(data):
            return data
        try:
            return serialize_key(decrypt_key(data, self.key_passphrase))
        except CryptoError as exc:
            raise exc.to_problem(ErrorKind.MATERIALIZATION_FAILED) from exc

    def settings_for(self, category: str) -> dict[str, Any]:
        return self.settings.resolved(category) if self.settings is not None else {}
