"""RA certificate depot.

Supplies the bridge's own RA chain and key to the SCEP engine. The bridge
never mints certificates itself, so the storage-side operations are stubs.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from scep_bridge.crypto.cert import load_certificates, load_rsa_private_key
from scep_bridge.exceptions import DepotError


class CADepot(Protocol):
    """What the SCEP engine needs from certificate storage."""

    def ca(self) -> tuple[list[x509.Certificate], rsa.RSAPrivateKey]:
        """Return the RA chain (leaf first) and the leaf's private key."""
        ...

    def serial(self) -> int:
        """Allocate a serial number for a new certificate."""
        ...

    def has_cn(self, cn: str, allow_time: int, cert: x509.Certificate, revoke_old: bool) -> bool:
        """Report whether a certificate with this CN already exists."""
        ...

    def put(self, name: str, cert: x509.Certificate) -> None:
        """Store an issued certificate."""
        ...


class Depot:
    """Depot backed by a chain file and a key file, read on every call."""

    def __init__(self, cert_path: Path | str, cert_key_path: Path | str) -> None:
        """Initialize with file locations.

        Args:
            cert_path: PEM file with the RA certificate first, then its CA.
            cert_key_path: PEM file with the RA private key (PKCS#1 or PKCS#8).
        """
        self._cert_path = Path(cert_path)
        self._cert_key_path = Path(cert_key_path)

    def ca(self) -> tuple[list[x509.Certificate], rsa.RSAPrivateKey]:
        """Load the RA chain and key from storage.

        Returns:
            The certificates in file order and the RA private key.

        Raises:
            DepotError: If either file is unreadable or malformed, or the key
                does not belong to the first certificate.
        """
        certs = load_certificates(self._read(self._cert_path))
        key = load_rsa_private_key(self._read(self._cert_key_path))

        leaf_key = certs[0].public_key()
        if not isinstance(leaf_key, rsa.RSAPublicKey) or leaf_key.public_numbers() != key.public_key().public_numbers():
            raise DepotError.key_mismatch()

        return certs, key

    def serial(self) -> int:
        raise DepotError.cannot_create_certificates()

    def has_cn(self, cn: str, allow_time: int, cert: x509.Certificate, revoke_old: bool) -> bool:
        # Issued certificates are not stored, so there is never a duplicate.
        return False

    def put(self, name: str, cert: x509.Certificate) -> None:
        return None

    @staticmethod
    def _read(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as e:
            msg = f"Failed to read {path}: {e}"
            raise DepotError(msg, details={"phase": "read", "path": str(path)}) from e
