"""Certificate source backed by an ACME CA.

The SCEP engine hands over each approved request; the CSR bytes go to the
CA unchanged and the leaf certificate comes back as a parsed object.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from scep_bridge.audit.logger import log_certificate_issued
from scep_bridge.crypto.cert import decode_first_certificate
from scep_bridge.exceptions import IssuanceError

if TYPE_CHECKING:
    from cryptography import x509

    from scep_bridge.ca.client import AcmeClient
    from scep_bridge.scep.message import PKIMessage


class AcmeCertificateSource:
    """Obtains certificates for SCEP requests from an ACME account."""

    def __init__(self, client: AcmeClient) -> None:
        """Initialize with a registered ACME client.

        Args:
            client: Client with a DNS-01 provider attached.
        """
        self._client = client

    def obtain(self, request: PKIMessage) -> x509.Certificate:
        """Obtain a certificate for the CSR carried by request.

        May block for as long as DNS-01 validation takes.

        Args:
            request: Decrypted PKCSReq whose content is the CSR.

        Returns:
            The issued leaf certificate.

        Raises:
            IssuanceError: If the order fails or the CA response does not
                start with a certificate.
        """
        resource = self._client.obtain_for_csr(request.content, bundle=False)

        # Only the first block is decoded.
        try:
            cert = decode_first_certificate(resource.certificate)
        except ValueError as e:
            raise IssuanceError.malformed_certificate(reason=str(e)) from e

        log_certificate_issued(
            subject=cert.subject.rfc4514_string(),
            serial_number=cert.serial_number,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            transaction_id=request.transaction_id,
        )
        return cert
