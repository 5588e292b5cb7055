"""Certificate and key operations backed by ``cryptography``."""

from certkeeper.crypto.backend import (
    CryptoError,
    ParsedCertificate,
    build_csr,
    compute_fingerprint,
    convert,
    create_self_signed,
    decrypt_key,
    describe_key,
    format_fingerprint,
    generate_key,
    key_is_encrypted,
    load_certificate,
    normalize_fingerprint,
    parse_cert,
    serialize_cert,
    serialize_csr,
    serialize_key,
    sign_csr,
)

__all__ = [
    "CryptoError",
    "ParsedCertificate",
    "build_csr",
    "compute_fingerprint",
    "convert",
    "create_self_signed",
    "decrypt_key",
    "describe_key",
    "format_fingerprint",
    "generate_key",
    "key_is_encrypted",
    "load_certificate",
    "normalize_fingerprint",
    "parse_cert",
    "serialize_cert",
    "serialize_csr",
    "serialize_key",
    "sign_csr",
]
