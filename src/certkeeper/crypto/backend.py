"""X.509 operations on top of ``cryptography``.

Everything the engine needs from a crypto library lives here: key
generation, self-signing and CA signing, parsing, fingerprints, format
conversion and key decryption.  Functions raise :class:`CryptoError`
and never :class:`~certkeeper.app.errors.CertProblem`; callers map
failures onto error kinds with :meth:`CryptoError.to_problem`.
"""

from __future__ import annotations

import hashlib
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
from cryptography.x509.oid import NameOID

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.types import ArtifactForm, CertType, KeyType, SanKind
from certkeeper.crypto.profiles import PROFILES, build_eku, build_key_usage, build_san
from certkeeper.models.certificate import SanEntry

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

log = logging.getLogger(__name__)

_EC_CURVES = {256: ec.SECP256R1, 384: ec.SECP384R1}
_MIN_RSA_KEY_SIZE = 2048
_FINGERPRINT_PREFIX_RE = re.compile(r"^.*fingerprint\s*=\s*", re.IGNORECASE)
_HEX_RE = re.compile(r"^[0-9A-F]{64}$")
_PEM_CERT_RE = re.compile(
    rb"-----BEGIN CERTIFICATE-----[\s\S]+?-----END CERTIFICATE-----",
)


class CryptoError(Exception):
    """Raised on any crypto failure.

    Parameters
    ----------
    detail:
        Human-readable description of the failure.
    passphrase_required:
        True when the operation failed because a passphrase is missing
        or wrong.

    """

    def __init__(self, detail: str, *, passphrase_required: bool = False) -> None:
        self.detail = detail
        self.passphrase_required = passphrase_required
        super().__init__(detail)

    def to_problem(self, kind: ErrorKind) -> CertProblem:
        """Translate into a :class:`CertProblem` of *kind* (or ``PassphraseRequired``)."""
        if self.passphrase_required:
            kind = ErrorKind.PASSPHRASE_REQUIRED
        return CertProblem(kind, self.detail)


@dataclass(frozen=True)
class ParsedCertificate:
    """Fields extracted from an X.509 certificate."""

    fingerprint: str
    subject: tuple[SanEntry, ...]
    common_name: str | None
    issuer: str
    issuer_common_name: str | None
    serial_number: str
    valid_from: datetime
    valid_to: datetime
    key_type: str
    key_size: int
    sig_alg: str
    is_ca: bool
    self_signed: bool
    certificate: x509.Certificate = field(compare=False, repr=False)


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def generate_key(key_type: str = KeyType.RSA, size: int = 2048) -> PrivateKeyTypes:
    """Generate an RSA key of *size* bits or an EC key on the P-*size* curve."""
    if key_type == KeyType.EC:
        curve = _EC_CURVES.get(size)
        if curve is None:
            msg = f"Unsupported EC key size {size}; use 256 or 384"
            raise CryptoError(msg)
        return ec.generate_private_key(curve())
    if key_type == KeyType.RSA:
        if size < _MIN_RSA_KEY_SIZE:
            msg = f"RSA key size {size} is below the minimum of {_MIN_RSA_KEY_SIZE}"
            raise CryptoError(msg)
        return rsa.generate_private_key(public_exponent=65537, key_size=size)
    msg = f"Unsupported key type '{key_type}'"
    raise CryptoError(msg)


def key_is_encrypted(key_bytes: bytes) -> bool:
    """True when the PEM key is protected by a passphrase."""
    return b"ENCRYPTED" in key_bytes


def decrypt_key(key_bytes: bytes, passphrase: str | None = None) -> PrivateKeyTypes:
    """Load a PEM private key, decrypting it with *passphrase* when needed."""
    password = passphrase.encode("utf-8") if passphrase else None
    try:
        return serialization.load_pem_private_key(key_bytes, password=password)
    except TypeError as exc:
        if password is not None and not key_is_encrypted(key_bytes):
            return serialization.load_pem_private_key(key_bytes, password=None)
        msg = "Private key is encrypted and no passphrase was supplied"
        raise CryptoError(msg, passphrase_required=True) from exc
    except ValueError as exc:
        if key_is_encrypted(key_bytes):
            msg = "Incorrect passphrase for private key"
            raise CryptoError(msg, passphrase_required=True) from exc
        msg = f"Unreadable private key: {exc}"
        raise CryptoError(msg) from exc
    except UnsupportedAlgorithm as exc:
        msg = f"Unsupported private key algorithm: {exc}"
        raise CryptoError(msg) from exc


def serialize_key(key: PrivateKeyTypes, passphrase: str | None = None) -> bytes:
    encryption: serialization.KeySerializationEncryption = (
        serialization.BestAvailableEncryption(passphrase.encode("utf-8"))
        if passphrase
        else serialization.NoEncryption()
    )
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        encryption,
    )


def describe_key(key: PrivateKeyTypes) -> tuple[str, int]:
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return KeyType.EC.value, key.curve.key_size
    if isinstance(key, rsa.RSAPrivateKey):
        return KeyType.RSA.value, key.key_size
    msg = f"Unsupported key class {type(key).__name__}"
    raise CryptoError(msg)


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


def _subject_name(subject: Sequence[SanEntry]) -> x509.Name:
    if not subject:
        msg = "Certificate subject must contain at least one entry"
        raise CryptoError(msg)
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject[0].value)])


def build_csr(subject: Sequence[SanEntry], key: PrivateKeyTypes) -> x509.CertificateSigningRequest:
    """Build and sign a PKCS#10 request carrying *subject* as CN and SANs."""
    try:
        return (
            x509.CertificateSigningRequestBuilder()
            .subject_name(_subject_name(subject))
            .add_extension(build_san(subject), critical=False)
            .sign(key, hashes.SHA256())
        )
    except (ValueError, TypeError) as exc:
        msg = f"Could not build CSR: {exc}"
        raise CryptoError(msg) from exc


def _build_certificate(  # noqa: PLR0913
    subject: Sequence[SanEntry],
    public_key,
    issuer_name: x509.Name,
    issuer_public_key,
    signing_key: PrivateKeyTypes,
    validity_days: int,
    cert_type: CertType,
) -> x509.Certificate:
    if validity_days < 1:
        msg = f"Validity must be at least one day (got {validity_days})"
        raise CryptoError(msg)

    profile = PROFILES[cert_type]
    not_before = datetime.now(UTC).replace(microsecond=0)
    not_after = not_before + timedelta(days=validity_days)

    builder = (
        x509.CertificateBuilder()
        .subject_name(_subject_name(subject))
        .issuer_name(issuer_name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .add_extension(
            x509.BasicConstraints(ca=profile.ca, path_length=profile.path_length),
            critical=True,
        )
        .add_extension(build_key_usage(profile.key_usages), critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_public_key),
            critical=False,
        )
    )
    if profile.extended_key_usages:
        builder = builder.add_extension(build_eku(profile.extended_key_usages), critical=False)
    if profile.include_san:
        builder = builder.add_extension(build_san(subject), critical=False)

    try:
        return builder.sign(signing_key, hashes.SHA256())
    except (ValueError, TypeError) as exc:
        msg = f"Signing failed: {exc}"
        raise CryptoError(msg) from exc


def create_self_signed(
    subject: Sequence[SanEntry],
    key: PrivateKeyTypes,
    validity_days: int,
    cert_type: CertType = CertType.ROOT_CA,
) -> x509.Certificate:
    """Issue a certificate for *subject* signed by its own *key*."""
    cert = _build_certificate(
        subject,
        key.public_key(),
        _subject_name(subject),
        key.public_key(),
        key,
        validity_days,
        cert_type,
    )
    log.debug("Self-signed %s certificate for %s", cert_type.value, subject[0].value)
    return cert


def sign_csr(
    csr: x509.CertificateSigningRequest,
    ca_cert: x509.Certificate,
    ca_key: PrivateKeyTypes,
    validity_days: int,
    cert_type: CertType = CertType.STANDARD,
) -> x509.Certificate:
    """Issue a certificate for the CSR's subject, signed by the CA."""
    if not csr.is_signature_valid:
        msg = "CSR signature is invalid"
        raise CryptoError(msg)
    subject = subject_from_csr(csr)
    cert = _build_certificate(
        subject,
        csr.public_key(),
        ca_cert.subject,
        ca_cert.public_key(),
        ca_key,
        validity_days,
        cert_type,
    )
    log.debug(
        "Signed %s certificate for %s with CA %s",
        cert_type.value,
        subject[0].value,
        ca_cert.subject.rfc4514_string(),
    )
    return cert


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _entry_for(value: str) -> SanEntry:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return SanEntry(SanKind.DOMAIN, value)
    return SanEntry(SanKind.IP, value)


def _ordered_subject(cn: str | None, san: list[SanEntry]) -> tuple[SanEntry, ...]:
    entries: list[SanEntry] = []
    seen: set[tuple[str, str]] = set()
    for entry in ([_entry_for(cn)] if cn else []) + san:
        if entry.key not in seen:
            seen.add(entry.key)
            entries.append(entry)
    return tuple(entries)


def _common_name(name: x509.Name) -> str | None:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return None
    value = attrs[0].value
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _san_entries(extensions: x509.Extensions) -> list[SanEntry]:
    try:
        san = extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    entries = [SanEntry(SanKind.DOMAIN, v) for v in san.get_values_for_type(x509.DNSName)]
    entries += [SanEntry(SanKind.IP, str(v)) for v in san.get_values_for_type(x509.IPAddress)]
    return entries


def subject_from_csr(csr: x509.CertificateSigningRequest) -> tuple[SanEntry, ...]:
    return _ordered_subject(_common_name(csr.subject), _san_entries(csr.extensions))


def _leaf_of(bundle: Sequence[x509.Certificate]) -> x509.Certificate:
    """The member of a PKCS#7 bundle that issued none of the others.

    PKCS#7 stores certificates as a DER-sorted SET, so the leaf is not
    necessarily first.
    """
    if not bundle:
        msg = "PKCS#7 bundle carries no certificate"
        raise CryptoError(msg)
    issuers = {
        cert.issuer
        for cert in bundle
        if cert.issuer != cert.subject
    }
    for cert in bundle:
        if cert.subject not in issuers:
            return cert
    return bundle[0]


def load_certificate(data: bytes, password: str | None = None) -> x509.Certificate:
    """Load the end-entity certificate from PEM, DER, PKCS#7 or PKCS#12 bytes."""
    if b"-----BEGIN PKCS7-----" in data:
        return _leaf_of(pkcs7.load_pem_pkcs7_certificates(data))
    if b"-----BEGIN " in data:
        match = _PEM_CERT_RE.search(data)
        if match is None:
            msg = "No certificate found in PEM data"
            raise CryptoError(msg)
        return x509.load_pem_x509_certificate(match.group(0))

    try:
        return x509.load_der_x509_certificate(data)
    except ValueError:
        pass
    try:
        return _leaf_of(pkcs7.load_der_pkcs7_certificates(data))
    except ValueError:
        pass
    try:
        _key, cert, _extra = pkcs12.load_key_and_certificates(
            data,
            password.encode("utf-8") if password else None,
        )
    except ValueError as exc:
        msg = "Could not parse certificate data (or wrong PKCS#12 password)"
        raise CryptoError(msg, passphrase_required=password is None) from exc
    if cert is None:
        msg = "PKCS#12 bundle carries no certificate"
        raise CryptoError(msg)
    return cert


def parse_cert(data: bytes | x509.Certificate, password: str | None = None) -> ParsedCertificate:
    """Parse certificate bytes (any supported encoding) into a :class:`ParsedCertificate`."""
    cert = data if isinstance(data, x509.Certificate) else load_certificate(data, password)
    public_key = cert.public_key()
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        key_type, key_size = KeyType.EC.value, public_key.curve.key_size
    elif isinstance(public_key, rsa.RSAPublicKey):
        key_type, key_size = KeyType.RSA.value, public_key.key_size
    else:
        key_type, key_size = type(public_key).__name__, 0

    try:
        is_ca = cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        is_ca = False

    cn = _common_name(cert.subject)
    sig_hash = cert.signature_hash_algorithm
    return ParsedCertificate(
        fingerprint=format_fingerprint(compute_fingerprint(cert)),
        subject=_ordered_subject(cn, _san_entries(cert.extensions)),
        common_name=cn,
        issuer=cert.issuer.rfc4514_string(),
        issuer_common_name=_common_name(cert.issuer),
        serial_number=format(cert.serial_number, "x"),
        valid_from=cert.not_valid_before_utc,
        valid_to=cert.not_valid_after_utc,
        key_type=key_type,
        key_size=key_size,
        sig_alg=f"{sig_hash.name if sig_hash else 'unknown'}With{key_type.upper()}",
        is_ca=is_ca,
        self_signed=cert.issuer == cert.subject,
        certificate=cert,
    )


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


def compute_fingerprint(cert: x509.Certificate) -> bytes:
    """SHA-256 digest of the DER encoding."""
    return hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).digest()


def format_fingerprint(digest: bytes) -> str:
    """``AB:CD:...`` rendering of a digest."""
    return ":".join(f"{b:02X}" for b in digest)


def normalize_fingerprint(raw: str) -> str:
    """Canonicalise a user-supplied fingerprint.

    Strips an ``sha256 Fingerprint=`` style prefix, accepts any case and
    separator, and returns the ``AB:CD:...`` form.  Input that is not a
    SHA-256 fingerprint is returned stripped and otherwise unchanged.
    """
    value = _FINGERPRINT_PREFIX_RE.sub("", raw.strip())
    compact = re.sub(r"[\s:]", "", value).upper()
    if not _HEX_RE.match(compact):
        return value
    return ":".join(compact[i : i + 2] for i in range(0, len(compact), 2))


# ---------------------------------------------------------------------------
# Serialization & conversion
# ---------------------------------------------------------------------------


def serialize_cert(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def serialize_csr(csr: x509.CertificateSigningRequest) -> bytes:
    return csr.public_bytes(serialization.Encoding.PEM)


def convert(  # noqa: C901, PLR0911
    cert: x509.Certificate,
    key: PrivateKeyTypes | None,
    target: ArtifactForm,
    password: str | None = None,
    chain: Sequence[x509.Certificate] = (),
) -> bytes:
    """Encode *cert* (with *key* and issuer *chain*) as *target*.

    ``pem`` bundles the certificate with its key; the key is encrypted
    with *password* when one is given.  ``p12``/``pfx`` always require
    a password.
    """
    issuers = [c for c in chain if c != cert]
    if target == ArtifactForm.CRT or target == ArtifactForm.CER:
        return serialize_cert(cert)
    if target == ArtifactForm.DER:
        return cert.public_bytes(serialization.Encoding.DER)
    if target == ArtifactForm.CHAIN:
        return b"".join(serialize_cert(c) for c in (issuers or [cert]))
    if target == ArtifactForm.FULLCHAIN:
        return b"".join(serialize_cert(c) for c in [cert, *issuers])
    if target == ArtifactForm.P7B:
        return pkcs7.serialize_certificates([cert, *issuers], serialization.Encoding.PEM)
    if target == ArtifactForm.PEM:
        if key is None:
            msg = "A private key is required for the pem bundle"
            raise CryptoError(msg)
        return serialize_cert(cert) + serialize_key(key, password)
    if target in (ArtifactForm.P12, ArtifactForm.PFX):
        if not password:
            msg = f"A password is required to export {target.value}"
            raise CryptoError(msg, passphrase_required=True)
        if key is None:
            msg = f"A private key is required to export {target.value}"
            raise CryptoError(msg)
        name = (_common_name(cert.subject) or "certificate").encode("utf-8")
        return pkcs12.serialize_key_and_certificates(
            name,
            key,  # type: ignore[arg-type]
            cert,
            issuers or None,
            serialization.BestAvailableEncryption(password.encode("utf-8")),
        )
    msg = f"Conversion to '{target.value}' is not supported"
    raise CryptoError(msg)
