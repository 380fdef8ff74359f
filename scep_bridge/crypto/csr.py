"""CSR (Certificate Signing Request) parsing.

Extracts the challenge password, Common Name and DNS Subject Alternative
Names that whitelist verification works on.
"""

from __future__ import annotations

from dataclasses import dataclass

from cryptography import x509
from cryptography.x509.oid import AttributeOID, NameOID

from scep_bridge.exceptions import CSRValidationError


@dataclass(frozen=True)
class CertificateRequest:
    """Names and secret carried by a CSR."""

    csr: x509.CertificateSigningRequest
    challenge_password: str
    common_name: str
    dns_names: tuple[str, ...]

    @property
    def subject_dn(self) -> str:
        """Subject in RFC 4514 form."""
        return self.csr.subject.rfc4514_string()

    @property
    def names(self) -> tuple[str, ...]:
        """Every name checked against the whitelist: the CN, even if empty, then the SANs."""
        return (self.common_name, *self.dns_names)


def load_csr(csr_data: bytes) -> x509.CertificateSigningRequest:
    """Load a PKCS#10 CSR from PEM or DER.

    Raises:
        CSRValidationError: If the CSR cannot be parsed.
    """
    try:
        if csr_data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_csr(csr_data)
        return x509.load_der_x509_csr(csr_data)
    except ValueError as e:
        raise CSRValidationError.invalid_format(reason=str(e)) from e


def parse_certificate_request(csr_data: bytes) -> CertificateRequest:
    """Parse a CSR and extract its challenge password and names.

    Args:
        csr_data: CSR as DER or PEM bytes.

    Returns:
        CertificateRequest with the extracted fields. A CSR without a
        challenge password yields an empty one.

    Raises:
        CSRValidationError: If the CSR or its challenge password cannot be parsed.
    """
    csr = load_csr(csr_data)

    return CertificateRequest(
        csr=csr,
        challenge_password=_extract_challenge_password(csr),
        common_name=_extract_common_name(csr),
        dns_names=_extract_dns_names(csr),
    )


def _extract_challenge_password(csr: x509.CertificateSigningRequest) -> str:
    try:
        attribute = csr.attributes.get_attribute_for_oid(AttributeOID.CHALLENGE_PASSWORD)
    except x509.AttributeNotFound:
        return ""
    except ValueError as e:
        raise CSRValidationError.invalid_challenge_password(reason=str(e)) from e

    try:
        return attribute.value.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CSRValidationError.invalid_challenge_password(reason=str(e)) from e


def _extract_common_name(csr: x509.CertificateSigningRequest) -> str:
    attrs = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return ""
    value = attrs[0].value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _extract_dns_names(csr: x509.CertificateSigningRequest) -> tuple[str, ...]:
    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return ()
    except ValueError as e:
        raise CSRValidationError.invalid_format(reason=str(e)) from e
    return tuple(san.value.get_values_for_type(x509.DNSName))
