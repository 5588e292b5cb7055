"""Extension profiles per certificate type.

Maps :class:`CertType` to the key-usage, extended-key-usage and
basic-constraints extensions written into issued certificates, and
renders the matching OpenSSL-style ``ext`` artifact.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.x509.oid import ExtendedKeyUsageOID

from certkeeper.core.types import CertType, SanKind

if TYPE_CHECKING:
    from collections.abc import Sequence

    from certkeeper.models.certificate import SanEntry

_KEY_USAGE_FIELDS = (
    "digital_signature",
    "content_commitment",
    "key_encipherment",
    "data_encipherment",
    "key_agreement",
    "key_cert_sign",
    "crl_sign",
    "encipher_only",
    "decipher_only",
)

_OPENSSL_KEY_USAGE = {
    "digital_signature": "digitalSignature",
    "key_encipherment": "keyEncipherment",
    "key_cert_sign": "keyCertSign",
    "crl_sign": "cRLSign",
}

_EKU_OIDS = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
}

_OPENSSL_EKU = {"server_auth": "serverAuth", "client_auth": "clientAuth"}


@dataclass(frozen=True)
class Profile:
    ca: bool
    path_length: int | None
    key_usages: tuple[str, ...]
    extended_key_usages: tuple[str, ...]
    include_san: bool


PROFILES: dict[CertType, Profile] = {
    CertType.ROOT_CA: Profile(
        ca=True,
        path_length=None,
        key_usages=("digital_signature", "key_cert_sign", "crl_sign"),
        extended_key_usages=(),
        include_san=False,
    ),
    CertType.INTERMEDIATE_CA: Profile(
        ca=True,
        path_length=0,
        key_usages=("digital_signature", "key_cert_sign", "crl_sign"),
        extended_key_usages=(),
        include_san=False,
    ),
    CertType.STANDARD: Profile(
        ca=False,
        path_length=None,
        key_usages=("digital_signature", "key_encipherment"),
        extended_key_usages=("server_auth", "client_auth"),
        include_san=True,
    ),
}


def build_key_usage(usages: tuple[str, ...]) -> x509.KeyUsage:
    """Build an :class:`x509.KeyUsage` extension from usage names."""
    usage_set = set(usages)
    return x509.KeyUsage(**{name: name in usage_set for name in _KEY_USAGE_FIELDS})


def build_eku(ekus: tuple[str, ...]) -> x509.ExtendedKeyUsage:
    return x509.ExtendedKeyUsage([_EKU_OIDS[name] for name in ekus])


def build_san(subject: Sequence[SanEntry]) -> x509.SubjectAlternativeName:
    names: list[x509.GeneralName] = []
    for entry in subject:
        if entry.kind == SanKind.IP:
            names.append(x509.IPAddress(ipaddress.ip_address(entry.value)))
        else:
            names.append(x509.DNSName(entry.value))
    return x509.SubjectAlternativeName(names)


def render_ext(subject: Sequence[SanEntry], cert_type: CertType) -> str:
    """Render the OpenSSL extension file stored next to each certificate."""
    profile = PROFILES[cert_type]
    lines = []
    if profile.ca:
        lines.append("authorityKeyIdentifier=keyid:always,issuer")
        pathlen = f", pathlen:{profile.path_length}" if profile.path_length is not None else ""
        lines.append(f"basicConstraints=critical, CA:TRUE{pathlen}")
    else:
        lines.append("authorityKeyIdentifier=keyid,issuer")
        lines.append("basicConstraints=CA:FALSE")
    lines.append(
        "keyUsage = critical, "
        + ", ".join(_OPENSSL_KEY_USAGE[u] for u in profile.key_usages),
    )
    if profile.extended_key_usages:
        lines.append(
            "extendedKeyUsage = "
            + ", ".join(_OPENSSL_EKU[e] for e in profile.extended_key_usages),
        )
    if profile.include_san and subject:
        lines.append("subjectAltName = @alt_names")
        lines.append("")
        lines.append("[alt_names]")
        dns_idx = ip_idx = 0
        for entry in subject:
            if entry.kind == SanKind.IP:
                ip_idx += 1
                lines.append(f"IP.{ip_idx} = {entry.value}")
            else:
                dns_idx += 1
                lines.append(f"DNS.{dns_idx} = {entry.value}")
    return "\n".join(lines) + "\n"
