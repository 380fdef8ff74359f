"""Custom exception hierarchy for SCEP Bridge.

All exceptions inherit from ScepBridgeError for consistent handling.
Each exception maps to an HTTP status code for responses produced at the
transport boundary.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping


class ScepBridgeError(Exception):
    """Base exception for all SCEP Bridge errors.

    Attributes:
        message: Human-readable error description.
        http_status: HTTP status code for responses.
        details: Additional context for audit logging.
    """

    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        details: Mapping[str, str | int | bool | None] | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Human-readable error description.
            details: Additional context for audit logging.
        """
        super().__init__(message)
        self.message = message
        self.details = dict(details) if details else {}

    def to_audit_dict(self) -> dict[str, str | int | bool | None]:
        """Return dictionary suitable for audit logging."""
        return {
            "exception_type": self.__class__.__name__,
            "message": self.message,
            **self.details,
        }


class ConfigurationError(ScepBridgeError):
    """Configuration error (startup failure)."""

    @classmethod
    def missing_required(cls, *, field: str) -> ConfigurationError:
        """Create exception for missing required configuration.

        Args:
            field: The missing configuration field.

        Returns:
            ConfigurationError instance.
        """
        return cls(f"Missing required configuration: {field}", details={"field": field})

    @classmethod
    def invalid_config(cls, *, field: str, reason: str) -> ConfigurationError:
        """Create exception for invalid configuration."""
        return cls(f"Invalid configuration for '{field}': {reason}", details={"field": field, "reason": reason})


class WhitelistError(ScepBridgeError):
    """Hostname whitelist could not be loaded."""

    @classmethod
    def unreadable(cls, *, path: str, reason: str) -> WhitelistError:
        """Create exception for a whitelist file that cannot be read or parsed.

        Args:
            path: Path to the whitelist file.
            reason: Why loading failed.

        Returns:
            WhitelistError instance.
        """
        return cls(f"Failed to load whitelist from {path}: {reason}", details={"path": path, "reason": reason})

    @classmethod
    def unknown_item(cls, *, secret: str, item: object) -> WhitelistError:
        """Create exception for a whitelist entry with an unsupported value shape.

        Args:
            secret: The shared secret owning the entry.
            item: The offending value.

        Returns:
            WhitelistError instance.
        """
        type_name = type(item).__name__
        return cls(
            f"Unknown item for secret '{secret}': {item!r} (type {type_name})",
            details={"secret": secret, "item_type": type_name},
        )


class CSRValidationError(ScepBridgeError):
    """Signing request could not be parsed.

    HTTP Status: 400 Bad Request
    """

    http_status = HTTPStatus.BAD_REQUEST

    @classmethod
    def invalid_format(cls, *, reason: str) -> CSRValidationError:
        """Create exception for malformed CSR."""
        return cls(f"Invalid CSR format: {reason}", details={"validation_phase": "parsing", "reason": reason})

    @classmethod
    def invalid_challenge_password(cls, *, reason: str) -> CSRValidationError:
        """Create exception for a challenge password attribute that cannot be decoded."""
        return cls(
            f"scep: parse challenge password in pkiEnvelope: {reason}",
            details={"validation_phase": "challenge_password", "reason": reason},
        )


class DepotError(ScepBridgeError):
    """RA chain or key could not be loaded, or the depot was asked to mint."""

    @classmethod
    def pem_decode_failed(cls) -> DepotError:
        """Create exception for data containing no PEM blocks."""
        return cls("PEM decode failed", details={"phase": "pem"})

    @classmethod
    def cert_parse_failed(cls, *, index: int, reason: str) -> DepotError:
        """Create exception for a PEM block that is not a certificate.

        Args:
            index: Zero-based position of the failing block.
            reason: Parser error.

        Returns:
            DepotError instance.
        """
        return cls(f"parsing cert {index}: {reason}", details={"phase": "certificate", "index": index})

    @classmethod
    def not_rsa_key(cls) -> DepotError:
        """Create exception for a private key of another algorithm."""
        return cls("key is not an RSA private key", details={"phase": "key"})

    @classmethod
    def key_mismatch(cls) -> DepotError:
        """Create exception for a key that does not belong to the leaf certificate."""
        return cls("private key does not match leaf certificate", details={"phase": "key"})

    @classmethod
    def cannot_create_certificates(cls) -> DepotError:
        """Create exception for serial allocation, which this depot never does."""
        return cls("depot cannot create certificates", details={"phase": "serial"})


class CAClientError(ScepBridgeError):
    """ACME account setup failed (startup failure)."""

    @classmethod
    def setup_failed(cls, *, step: str, reason: str) -> CAClientError:
        """Create exception for a failed ACME client setup step.

        Args:
            step: Which setup step failed.
            reason: Why it failed.

        Returns:
            CAClientError instance.
        """
        return cls(f"{step}: {reason}", details={"step": step, "reason": reason})


class IssuanceError(ScepBridgeError):
    """The CA did not produce a usable certificate.

    HTTP Status: 502 Bad Gateway
    """

    http_status = HTTPStatus.BAD_GATEWAY

    @classmethod
    def obtain_failed(cls, *, reason: str) -> IssuanceError:
        """Create exception for a failed ACME order."""
        return cls(f"ObtainForCSR: {reason}", details={"phase": "obtain", "reason": reason})

    @classmethod
    def malformed_certificate(cls, *, reason: str) -> IssuanceError:
        """Create exception for a CA response that does not decode to a certificate."""
        return cls(f"parsing obtained cert: {reason}", details={"phase": "decode", "reason": reason})


class ScepMessageError(ScepBridgeError):
    """SCEP request could not be understood.

    HTTP Status: 400 Bad Request
    """

    http_status = HTTPStatus.BAD_REQUEST

    @classmethod
    def malformed(cls, *, reason: str) -> ScepMessageError:
        """Create exception for an undecodable PKIMessage."""
        return cls(f"Invalid PKIMessage: {reason}", details={"reason": reason})

    @classmethod
    def unknown_operation(cls, *, operation: str) -> ScepMessageError:
        """Create exception for an unsupported SCEP operation."""
        return cls(f"Unknown SCEP operation: {operation}", details={"operation": operation})
