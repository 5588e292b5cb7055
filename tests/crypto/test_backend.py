"""Tests for certkeeper.crypto.backend."""

from __future__ import annotations

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12

from certkeeper.app.errors import ErrorKind
from certkeeper.core.types import ArtifactForm, CertType, SanKind
from certkeeper.crypto import (
    CryptoError,
    build_csr,
    convert,
    create_self_signed,
    decrypt_key,
    describe_key,
    generate_key,
    key_is_encrypted,
    load_certificate,
    normalize_fingerprint,
    parse_cert,
    serialize_cert,
    serialize_key,
    sign_csr,
)
from certkeeper.crypto.profiles import render_ext
from certkeeper.models.certificate import SanEntry

WEB = (
    SanEntry(SanKind.DOMAIN, "web.example.com"),
    SanEntry(SanKind.DOMAIN, "www.example.com"),
    SanEntry(SanKind.IP, "10.0.0.1"),
)
CA = (SanEntry(SanKind.DOMAIN, "ca.example.com"),)


@pytest.fixture(scope="module")
def ca():
    key = generate_key("ec", 256)
    return create_self_signed(CA, key, 3650, CertType.ROOT_CA), key


@pytest.fixture(scope="module")
def leaf(ca):
    ca_cert, ca_key = ca
    key = generate_key("ec", 256)
    cert = sign_csr(build_csr(WEB, key), ca_cert, ca_key, 90, CertType.STANDARD)
    return cert, key


class TestKeys:
    def test_ec_sizes(self):
        assert describe_key(generate_key("ec", 256)) == ("ec", 256)
        assert describe_key(generate_key("ec", 384)) == ("ec", 384)

    def test_unsupported_ec_size(self):
        with pytest.raises(CryptoError, match="256 or 384"):
            generate_key("ec", 521)

    def test_rsa_minimum(self):
        with pytest.raises(CryptoError, match="below the minimum"):
            generate_key("rsa", 1024)

    def test_rsa_key(self):
        key = generate_key("rsa", 2048)
        assert isinstance(key, rsa.RSAPrivateKey)

    def test_unknown_type(self):
        with pytest.raises(CryptoError, match="Unsupported key type"):
            generate_key("dsa", 2048)

    def test_encrypted_round_trip(self):
        key = generate_key("ec", 256)
        pem = serialize_key(key, "s3cret")
        assert key_is_encrypted(pem)
        assert isinstance(decrypt_key(pem, "s3cret"), ec.EllipticCurvePrivateKey)

    def test_plain_key_not_encrypted(self):
        pem = serialize_key(generate_key("ec", 256))
        assert not key_is_encrypted(pem)
        assert b"BEGIN PRIVATE KEY" in pem

    def test_wrong_passphrase_flags_passphrase_required(self):
        pem = serialize_key(generate_key("ec", 256), "right")
        with pytest.raises(CryptoError) as exc_info:
            decrypt_key(pem, "wrong")
        assert exc_info.value.passphrase_required
        assert exc_info.value.to_problem(ErrorKind.ISSUANCE_FAILED).kind == ErrorKind.PASSPHRASE_REQUIRED

    def test_missing_passphrase(self):
        pem = serialize_key(generate_key("ec", 256), "right")
        with pytest.raises(CryptoError) as exc_info:
            decrypt_key(pem, None)
        assert exc_info.value.passphrase_required


class TestIssuance:
    def test_root_is_self_signed_ca(self, ca):
        parsed = parse_cert(ca[0])
        assert parsed.is_ca
        assert parsed.self_signed
        assert parsed.common_name == "ca.example.com"
        assert parsed.issuer_common_name == "ca.example.com"

    def test_leaf_subject_order_and_kinds(self, leaf):
        parsed = parse_cert(serialize_cert(leaf[0]))
        assert [s.value for s in parsed.subject] == [
            "web.example.com",
            "www.example.com",
            "10.0.0.1",
        ]
        assert parsed.subject[2].kind == SanKind.IP
        assert not parsed.is_ca
        assert not parsed.self_signed
        assert parsed.issuer_common_name == "ca.example.com"

    def test_leaf_validity(self, leaf):
        parsed = parse_cert(leaf[0])
        assert (parsed.valid_to - parsed.valid_from).days in (89, 90)

    def test_leaf_key_usage(self, leaf):
        eku = leaf[0].extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        assert x509.oid.ExtendedKeyUsageOID.SERVER_AUTH in list(eku)

    def test_zero_validity_rejected(self):
        key = generate_key("ec", 256)
        with pytest.raises(CryptoError, match="at least one day"):
            create_self_signed(CA, key, 0)

    def test_parsed_metadata(self, leaf):
        parsed = parse_cert(leaf[0])
        assert parsed.key_type == "ec"
        assert parsed.key_size == 256
        assert parsed.sig_alg == "sha256WithEC"
        assert len(parsed.fingerprint.split(":")) == 32


class TestFingerprints:
    def test_prefix_and_case_normalised(self, leaf):
        fp = parse_cert(leaf[0]).fingerprint
        raw = "sha256 Fingerprint=" + fp.replace(":", "").lower()
        assert normalize_fingerprint(raw) == fp

    def test_non_fingerprint_passes_through(self):
        assert normalize_fingerprint("  not-a-fingerprint ") == "not-a-fingerprint"

    def test_distinct_certificates_differ(self, ca, leaf):
        assert parse_cert(ca[0]).fingerprint != parse_cert(leaf[0]).fingerprint


class TestConvert:
    def test_der_round_trip(self, leaf):
        der = convert(leaf[0], None, ArtifactForm.DER)
        assert load_certificate(der) == leaf[0]

    def test_fullchain_order(self, ca, leaf):
        data = convert(leaf[0], None, ArtifactForm.FULLCHAIN, chain=[ca[0]])
        certs = x509.load_pem_x509_certificates(data)
        assert certs == [leaf[0], ca[0]]

    def test_chain_without_issuers_is_the_certificate(self, ca):
        data = convert(ca[0], None, ArtifactForm.CHAIN)
        assert x509.load_pem_x509_certificates(data) == [ca[0]]

    def test_p7b_loads(self, ca, leaf):
        data = convert(leaf[0], None, ArtifactForm.P7B, chain=[ca[0]])
        assert load_certificate(data) == leaf[0]

    @pytest.mark.parametrize("encoding", [serialization.Encoding.PEM, serialization.Encoding.DER])
    def test_p7b_leaf_found_whatever_the_member_order(self, ca, leaf, encoding):
        data = pkcs7.serialize_certificates([ca[0], leaf[0]], encoding)
        assert load_certificate(data) == leaf[0]
        assert parse_cert(data).subject[0].value == "web.example.com"

    def test_p7b_with_only_the_ca(self, ca):
        data = convert(ca[0], None, ArtifactForm.P7B)
        assert load_certificate(data) == ca[0]

    def test_pem_bundle_needs_key(self, leaf):
        with pytest.raises(CryptoError, match="private key"):
            convert(leaf[0], None, ArtifactForm.PEM)

    def test_pem_bundle(self, leaf):
        data = convert(leaf[0], leaf[1], ArtifactForm.PEM)
        assert b"BEGIN CERTIFICATE" in data
        assert b"BEGIN PRIVATE KEY" in data

    def test_p12_requires_password(self, leaf):
        with pytest.raises(CryptoError) as exc_info:
            convert(leaf[0], leaf[1], ArtifactForm.P12)
        assert exc_info.value.passphrase_required

    def test_pfx_with_password(self, ca, leaf):
        data = convert(leaf[0], leaf[1], ArtifactForm.PFX, password="pw", chain=[ca[0]])
        key, cert, extra = pkcs12.load_key_and_certificates(data, b"pw")
        assert cert == leaf[0]
        assert extra == [ca[0]]
        assert load_certificate(data, "pw") == leaf[0]

    def test_csr_is_not_a_conversion_target(self, leaf):
        with pytest.raises(CryptoError, match="not supported"):
            convert(leaf[0], leaf[1], ArtifactForm.CSR)


class TestProfiles:
    def test_standard_ext_lists_alt_names(self):
        text = render_ext(WEB, CertType.STANDARD)
        assert "basicConstraints=CA:FALSE" in text
        assert "DNS.2 = www.example.com" in text
        assert "IP.1 = 10.0.0.1" in text

    def test_intermediate_ext_has_path_length(self):
        text = render_ext(CA, CertType.INTERMEDIATE_CA)
        assert "CA:TRUE, pathlen:0" in text
        assert "alt_names" not in text
