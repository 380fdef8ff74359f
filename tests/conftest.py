"""Shared fixtures: RA identity, client identity, CSRs and SCEP requests."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import AttributeOID, NameOID

from scep_bridge.scep.message import MessageType, new_nonce, seal_envelope, sign_pki_message

WHITELIST = {
    "password1": "example.com",
    "password2": ["subdomain1.example.com", "subdomain2.example.com"],
    "testpass": "test.example.com",
    "multipass": ["multi1.example.com", "multi2.example.com", "multi3.example.com"],
}

WHITELIST_YAML = """\
password1: example.com
password2:
  - subdomain1.example.com
  - subdomain2.example.com
testpass: test.example.com
multipass:
  - multi1.example.com
  - multi2.example.com
  - multi3.example.com
"""


def generate_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_certificate(
    common_name: str,
    key: rsa.RSAPrivateKey,
    *,
    issuer: x509.Certificate | None = None,
    issuer_key: rsa.RSAPrivateKey | None = None,
    ca: bool = False,
) -> x509.Certificate:
    """Build a certificate for key, self-signed unless an issuer is given."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.subject if issuer is not None else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(issuer_key if issuer_key is not None else key, hashes.SHA256())
    )


def pem(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture(scope="session")
def ca_key() -> rsa.RSAPrivateKey:
    """Key of the CA that signed the RA certificate."""
    return generate_key()


@pytest.fixture(scope="session")
def ca_cert(ca_key: rsa.RSAPrivateKey) -> x509.Certificate:
    """Self-signed CA certificate."""
    return build_certificate("Test CA", ca_key, ca=True)


@pytest.fixture(scope="session")
def ra_key() -> rsa.RSAPrivateKey:
    """RA private key used by the bridge."""
    return generate_key()


@pytest.fixture(scope="session")
def ra_cert(
    ra_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    ca_key: rsa.RSAPrivateKey,
) -> x509.Certificate:
    """RA certificate signed by the CA."""
    return build_certificate("Test RA", ra_key, issuer=ca_cert, issuer_key=ca_key)


@pytest.fixture(scope="session")
def client_key() -> rsa.RSAPrivateKey:
    """Device key for CSRs and SCEP request signing."""
    return generate_key()


@pytest.fixture(scope="session")
def client_cert(client_key: rsa.RSAPrivateKey) -> x509.Certificate:
    """Self-signed device certificate, as SCEP clients use before enrollment."""
    return build_certificate("device", client_key)


@pytest.fixture
def chain_files(
    tmp_path: Path,
    ra_cert: x509.Certificate,
    ca_cert: x509.Certificate,
    ra_key: rsa.RSAPrivateKey,
) -> tuple[Path, Path]:
    """RA chain (RA then CA) and PKCS#1 RA key written to disk."""
    cert_path = tmp_path / "ra.pem"
    key_path = tmp_path / "ra.key"
    cert_path.write_bytes(pem(ra_cert) + pem(ca_cert))
    key_path.write_bytes(
        ra_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )
    return cert_path, key_path


@pytest.fixture
def whitelist() -> dict[str, object]:
    """The standard test secrets as a mapping."""
    return dict(WHITELIST)


@pytest.fixture
def whitelist_file(tmp_path: Path) -> Path:
    """Whitelist YAML file with the standard test secrets."""
    path = tmp_path / "whitelist.yaml"
    path.write_text(WHITELIST_YAML)
    return path


@pytest.fixture
def make_csr(client_key: rsa.RSAPrivateKey) -> Callable[..., bytes]:
    """Factory for DER CSRs with a CN, DNS SANs and a challenge password."""

    def factory(
        common_name: str = "",
        dns_names: Sequence[str] = (),
        challenge_password: str | None = None,
    ) -> bytes:
        attrs = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)] if common_name else []
        builder = x509.CertificateSigningRequestBuilder().subject_name(x509.Name(attrs))
        if dns_names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(name) for name in dns_names]),
                critical=False,
            )
        if challenge_password is not None:
            builder = builder.add_attribute(AttributeOID.CHALLENGE_PASSWORD, challenge_password.encode("utf-8"))
        csr = builder.sign(client_key, hashes.SHA256())
        return csr.public_bytes(serialization.Encoding.DER)

    return factory


@pytest.fixture
def make_pki_request(
    ra_cert: x509.Certificate,
    client_cert: x509.Certificate,
    client_key: rsa.RSAPrivateKey,
) -> Callable[..., bytes]:
    """Factory for SCEP requests encrypted to the RA and signed by the device."""

    def factory(
        content: bytes,
        *,
        message_type: MessageType = MessageType.PKCS_REQ,
        transaction_id: str = "txn-0001",
        sender_nonce: bytes | None = None,
        cipher: str = "aes256_cbc",
        digest: str = "sha256",
    ) -> bytes:
        return sign_pki_message(
            seal_envelope(content, ra_cert, cipher=cipher),
            signer_cert=client_cert,
            signer_key=client_key,
            message_type=message_type,
            transaction_id=transaction_id,
            sender_nonce=sender_nonce if sender_nonce is not None else new_nonce(),
            digest=digest,
        )

    return factory
