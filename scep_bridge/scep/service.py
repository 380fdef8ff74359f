"""SCEP service: the engine and its decorators.

ScepService answers GetCACaps, GetCACert and PKIOperation using a depot for
the RA identity, a CSR verifier for authorization and a certificate source
for issuance. ServiceWithoutRenewal and LoggingService wrap any Service by
explicit delegation.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Protocol, TypeVar

from scep_bridge.audit.logger import log_debug, log_error, log_service_call
from scep_bridge.crypto.cert import encode_certificate_der, encode_pkcs7_certs
from scep_bridge.exceptions import IssuanceError, ScepBridgeError
from scep_bridge.scep.message import (
    FailInfo,
    MessageType,
    PKIMessage,
    decode_pki_message,
    decrypt_pki_message,
    encode_cert_rep,
    encode_cert_rep_failure,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from cryptography import x509

    from scep_bridge.depot.store import CADepot

DEFAULT_CAPABILITIES = (
    "Renewal",
    "SHA-1",
    "SHA-256",
    "AES",
    "DES3",
    "SCEPStandard",
    "POSTPKIOperation",
)

RENEWAL_CAPABILITY = b"Renewal"

_T = TypeVar("_T")

_ISSUING_TYPES = frozenset({MessageType.PKCS_REQ, MessageType.RENEWAL_REQ})


class CSRVerifier(Protocol):
    """Decides whether a CSR may be issued."""

    def verify(self, data: bytes) -> bool:
        ...


class CertificateSource(Protocol):
    """Produces the certificate for an approved request."""

    def obtain(self, request: PKIMessage) -> x509.Certificate:
        ...


class Service(Protocol):
    """Operations served on the SCEP endpoint."""

    def get_ca_caps(self) -> bytes:
        """Return the newline-delimited capability list."""
        ...

    def get_ca_cert(self, message: str = "") -> tuple[bytes, int]:
        """Return the encoded RA chain and the number of certificates in it."""
        ...

    def pki_operation(self, data: bytes) -> bytes:
        """Handle a PKIMessage and return the encoded CertRep."""
        ...


class ScepService:
    """SCEP engine over a depot, a CSR verifier and a certificate source."""

    def __init__(
        self,
        depot: CADepot,
        *,
        verifier: CSRVerifier | None = None,
        certificate_source: CertificateSource | None = None,
        capabilities: Sequence[str] = DEFAULT_CAPABILITIES,
    ) -> None:
        """Initialize the engine.

        Args:
            depot: Supplies the RA chain and key.
            verifier: Authorizes CSRs; without one every CSR is approved.
            certificate_source: Issues approved requests.
            capabilities: Advertised by GetCACaps, in order.
        """
        self._depot = depot
        self._verifier = verifier
        self._source = certificate_source
        self._capabilities = tuple(capabilities)

    def get_ca_caps(self) -> bytes:
        return "\n".join(self._capabilities).encode("ascii")

    def get_ca_cert(self, message: str = "") -> tuple[bytes, int]:
        """Return the RA chain.

        A single certificate is returned as DER, longer chains as a
        degenerate PKCS#7.

        Args:
            message: CA identifier sent by the client; unused.

        Returns:
            Encoded chain and its certificate count.
        """
        certs, _ = self._depot.ca()
        if len(certs) == 1:
            return encode_certificate_der(certs[0]), 1
        return encode_pkcs7_certs(certs), len(certs)

    def pki_operation(self, data: bytes) -> bytes:
        """Decode a PKIMessage, authorize it and answer with a CertRep.

        Rejections and per-request errors become a failed CertRep with
        failInfo badRequest.

        Args:
            data: DER-encoded PKIMessage.

        Returns:
            DER-encoded CertRep signed by the RA.

        Raises:
            ScepMessageError: If the message cannot be decoded or decrypted.
            DepotError: If the RA chain or key cannot be loaded.
        """
        certs, key = self._depot.ca()
        ra_cert = certs[0]
        request = decrypt_pki_message(decode_pki_message(data), key)

        if request.message_type not in _ISSUING_TYPES:
            log_debug(
                "unsupported message type",
                message_type=request.message_type.name,
                transaction_id=request.transaction_id,
            )
            return encode_cert_rep_failure(request, FailInfo.BAD_REQUEST, ra_cert=ra_cert, ra_key=key)

        try:
            issued = self._issue(request)
        except ScepBridgeError as e:
            log_error(error=e, context="pki_operation")
            return encode_cert_rep_failure(request, FailInfo.BAD_REQUEST, ra_cert=ra_cert, ra_key=key)

        if issued is None:
            return encode_cert_rep_failure(request, FailInfo.BAD_REQUEST, ra_cert=ra_cert, ra_key=key)
        return encode_cert_rep(request, issued, ra_cert=ra_cert, ra_key=key)

    def _issue(self, request: PKIMessage) -> x509.Certificate | None:
        if self._verifier is not None and not self._verifier.verify(request.content):
            return None
        if self._source is None:
            raise IssuanceError.obtain_failed(reason="no certificate source configured")

        cert = self._source.obtain(request)
        self._depot.put(cert.subject.rfc4514_string(), cert)
        return cert


class ServiceWithoutRenewal:
    """Service decorator that stops advertising the Renewal capability."""

    def __init__(self, service: Service) -> None:
        self._service = service

    def get_ca_caps(self) -> bytes:
        """Return the wrapped capabilities without the Renewal token.

        Other tokens keep their order and delimiters; filtering is idempotent.
        """
        caps = self._service.get_ca_caps()
        return b"\n".join(token for token in caps.split(b"\n") if token != RENEWAL_CAPABILITY)

    def get_ca_cert(self, message: str = "") -> tuple[bytes, int]:
        return self._service.get_ca_cert(message)

    def pki_operation(self, data: bytes) -> bytes:
        return self._service.pki_operation(data)


class LoggingService:
    """Service decorator that logs each call with its duration and error."""

    def __init__(self, service: Service) -> None:
        self._service = service

    def get_ca_caps(self) -> bytes:
        return self._timed("GetCACaps", self._service.get_ca_caps)

    def get_ca_cert(self, message: str = "") -> tuple[bytes, int]:
        return self._timed("GetCACert", lambda: self._service.get_ca_cert(message))

    def pki_operation(self, data: bytes) -> bytes:
        return self._timed("PKIOperation", lambda: self._service.pki_operation(data))

    @staticmethod
    def _timed(method: str, call: Callable[[], _T]) -> _T:
        start = time.perf_counter()
        try:
            result = call()
        except Exception as e:
            log_service_call(method=method, took=time.perf_counter() - start, error=e)
            raise
        log_service_call(method=method, took=time.perf_counter() - start)
        return result
