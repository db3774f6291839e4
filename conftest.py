import datetime

import pytest

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


def _encode_length(length: int) -> bytes:
    if length < 0x80:
        return bytes([length])
    octets = length.to_bytes((length.bit_length() + 7) // 8, "big")
    return bytes([0x80 | len(octets)]) + octets


@pytest.fixture
def tlv():
    """Minimal DER encoder for hand-built test inputs."""
    def _tlv(tag: int, *parts: bytes) -> bytes:
        payload = b"".join(parts)
        return bytes([tag]) + _encode_length(len(payload)) + payload
    return _tlv


@pytest.fixture(scope="session")
def signing_key():
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture
def make_certificate(signing_key):
    """Build a real certificate with cryptography.

    subject is a list of (oid, value) pairs, extensions a list of
    (extension, critical) pairs added after the subjectKeyIdentifier.
    """
    def _make(subject, extensions=None, with_ski=True):
        public_key = signing_key.public_key()
        builder = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(oid, value) for oid, value in subject]))
            .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test CA")]))
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(datetime.datetime(2025, 1, 1))
            .not_valid_after(datetime.datetime(2035, 1, 1))
        )
        if with_ski:
            builder = builder.add_extension(x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False)
        for extension, critical in extensions or []:
            builder = builder.add_extension(extension, critical=critical)
        return builder.sign(signing_key, hashes.SHA256())
    return _make
