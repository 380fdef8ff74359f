"""Certificate and key decoding and encoding.

Handles PEM block splitting, RA chain and key parsing, and encoding
certificates to the forms SCEP responses carry (DER, PKCS#7).
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs7

from scep_bridge.exceptions import DepotError

_PEM_BLOCK = re.compile(
    rb"-----BEGIN (?P<label>[A-Z0-9 ]+)-----\r?\n(?P<body>.*?)-----END (?P=label)-----",
    re.DOTALL,
)


@dataclass(frozen=True)
class PemBlock:
    """A decoded PEM block."""

    label: str
    der: bytes


def decode_pem_blocks(data: bytes) -> list[PemBlock]:
    """Decode every PEM block in data, in order.

    Text between blocks is ignored, as are blocks whose body is not valid
    base64.

    Args:
        data: PEM text.

    Returns:
        Decoded blocks in file order.
    """
    blocks: list[PemBlock] = []
    for match in _PEM_BLOCK.finditer(data):
        body = b"".join(match.group("body").split())
        try:
            der = base64.b64decode(body, validate=True)
        except binascii.Error:
            continue
        blocks.append(PemBlock(label=match.group("label").decode("ascii"), der=der))
    return blocks


def load_certificates(data: bytes) -> list[x509.Certificate]:
    """Parse every PEM block in data as a certificate, preserving order.

    Args:
        data: PEM text with one or more blocks; the first is the leaf.

    Returns:
        Certificates in file order.

    Raises:
        DepotError: If there are no blocks, or a block is not a certificate.
    """
    blocks = decode_pem_blocks(data)
    if not blocks:
        raise DepotError.pem_decode_failed()

    certs: list[x509.Certificate] = []
    for block in blocks:
        try:
            certs.append(x509.load_der_x509_certificate(block.der))
        except ValueError as e:
            raise DepotError.cert_parse_failed(index=len(certs), reason=str(e)) from e
    return certs


def load_rsa_private_key(data: bytes) -> rsa.RSAPrivateKey:
    """Parse the first PEM block in data as an RSA private key.

    Accepts PKCS#1 ("RSA PRIVATE KEY") and PKCS#8 ("PRIVATE KEY") encodings.

    Args:
        data: PEM text.

    Returns:
        The RSA private key.

    Raises:
        DepotError: If there is no block, it does not parse, or the key is not RSA.
    """
    blocks = decode_pem_blocks(data)
    if not blocks:
        raise DepotError.pem_decode_failed()

    block = blocks[0]
    try:
        key = serialization.load_der_private_key(block.der, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        msg = f"parsing {block.label.lower()}: {e}"
        raise DepotError(msg, details={"phase": "key"}) from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise DepotError.not_rsa_key()
    return key


def decode_first_certificate(data: bytes) -> x509.Certificate:
    """Parse only the first PEM block of data as a certificate.

    Args:
        data: PEM text.

    Returns:
        The certificate in the first block.

    Raises:
        ValueError: If there is no block or it is not a certificate.
    """
    blocks = decode_pem_blocks(data)
    if not blocks:
        msg = "no PEM certificate found"
        raise ValueError(msg)
    return x509.load_der_x509_certificate(blocks[0].der)


def encode_certificate_der(cert: x509.Certificate) -> bytes:
    """Encode certificate to DER format."""
    return cert.public_bytes(serialization.Encoding.DER)


def encode_pkcs7_certs(certs: list[x509.Certificate]) -> bytes:
    """Encode certificates as a degenerate (certs-only) PKCS#7.

    Args:
        certs: List of certificates to encode.

    Returns:
        DER-encoded PKCS#7 structure.
    """
    return pkcs7.serialize_certificates(certs, serialization.Encoding.DER)
