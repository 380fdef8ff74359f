"""ACME client for obtaining certificates with DNS-01 validation.

Wraps the ``acme`` library's ClientV2 with the small surface the bridge
needs: account registration and "obtain a certificate for this CSR".
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import josepy as jose
import requests
from acme import challenges, client, errors, messages
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

from scep_bridge.audit.logger import log_acme_registered, log_debug
from scep_bridge.ca.dns import DNSProviderError, new_dns_challenge_provider_by_name
from scep_bridge.crypto.cert import load_rsa_private_key
from scep_bridge.exceptions import CAClientError, DepotError, IssuanceError

if TYPE_CHECKING:
    from scep_bridge.ca.dns import DNSChallengeProvider

USER_AGENT = "scep-bridge"


@dataclass(frozen=True)
class CertificateResource:
    """Result of an ACME order."""

    domain: str
    certificate: bytes
    issuer_certificate: bytes


class AcmeClient:
    """One registered ACME account and its DNS-01 provider."""

    def __init__(self, acme_client: client.ClientV2, account_key: jose.JWK, email: str) -> None:
        """Initialize around an ACME v2 client.

        Args:
            acme_client: Client bound to the CA directory.
            account_key: The account's JWK, used for key authorizations.
            email: Contact address for the account.
        """
        self._client = acme_client
        self._account_key = account_key
        self._email = email
        self._dns_provider: DNSChallengeProvider | None = None
        self.registration: messages.RegistrationResource | None = None

    @classmethod
    def connect(cls, email: str, account_key: jose.JWK, directory_url: str) -> AcmeClient:
        """Fetch the CA directory and build a client for it.

        Raises:
            CAClientError: If the directory cannot be fetched.
        """
        net = client.ClientNetwork(account_key, user_agent=USER_AGENT)
        try:
            directory = client.ClientV2.get_directory(directory_url, net)
        except (errors.Error, requests.RequestException) as e:
            raise CAClientError.setup_failed(step="creating acme client", reason=str(e)) from e
        return cls(client.ClientV2(directory, net=net), account_key, email)

    @property
    def email(self) -> str:
        return self._email

    def set_dns01_provider(self, provider: DNSChallengeProvider) -> None:
        self._dns_provider = provider

    def register(self) -> messages.RegistrationResource:
        """Register the account, agreeing to the terms of service.

        An account that already exists for the key is looked up and reused.

        Raises:
            CAClientError: If registration fails.
        """
        new_reg = messages.NewRegistration.from_data(email=self._email, terms_of_service_agreed=True)
        try:
            try:
                regr = self._client.new_account(new_reg)
            except errors.ConflictError as conflict:
                existing = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                regr = self._client.query_registration(existing)
        except (errors.Error, requests.RequestException) as e:
            raise CAClientError.setup_failed(step="registering acme account", reason=str(e)) from e

        self.registration = regr
        return regr

    def obtain_for_csr(self, csr: bytes, *, bundle: bool = False) -> CertificateResource:
        """Run an ACME order for csr and return the certificate.

        Args:
            csr: The signing request, DER or PEM, passed to the CA unchanged.
            bundle: Include the issuer chain after the leaf.

        Returns:
            CertificateResource with PEM certificate data.

        Raises:
            IssuanceError: If any ACME step fails.
        """
        provider = self._dns_provider
        if provider is None:
            raise IssuanceError.obtain_failed(reason="no DNS-01 provider configured")

        csr_pem = _csr_to_pem(csr)
        try:
            order = self._client.new_order(csr_pem)
            presented = self._answer_challenges(order, provider)
            try:
                order = self._client.poll_and_finalize(order)
            finally:
                self._cleanup(provider, presented)
        except (errors.Error, requests.RequestException, DNSProviderError) as e:
            raise IssuanceError.obtain_failed(reason=str(e)) from e

        blocks = [block for block in _split_pem(order.fullchain_pem.encode("ascii")) if block]
        if not blocks:
            raise IssuanceError.malformed_certificate(reason="empty certificate chain")

        leaf = blocks[0]
        issuer = b"".join(blocks[1:])
        domain = order.body.identifiers[0].value if order.body.identifiers else ""
        return CertificateResource(
            domain=domain,
            certificate=leaf + issuer if bundle else leaf,
            issuer_certificate=issuer,
        )

    def _answer_challenges(
        self,
        order: messages.OrderResource,
        provider: DNSChallengeProvider,
    ) -> list[tuple[str, str, str]]:
        """Publish DNS records for every pending authorization and answer them."""
        pending: list[tuple[messages.ChallengeBody, challenges.ChallengeResponse]] = []
        presented: list[tuple[str, str, str]] = []
        try:
            for authz in order.authorizations:
                if authz.body.status == messages.STATUS_VALID:
                    continue
                domain = authz.body.identifier.value
                challb = _select_dns01(authz)
                response, validation = challb.response_and_validation(self._account_key)
                fqdn = challb.chall.validation_domain_name(domain)
                provider.present(domain, fqdn, validation)
                presented.append((domain, fqdn, validation))
                pending.append((challb, response))

            if pending and provider.propagation_delay > 0:
                time.sleep(provider.propagation_delay)

            for challb, response in pending:
                self._client.answer_challenge(challb, response)
        except Exception:
            self._cleanup(provider, presented)
            raise
        return presented

    def _cleanup(self, provider: DNSChallengeProvider, presented: list[tuple[str, str, str]]) -> None:
        for domain, fqdn, validation in presented:
            try:
                provider.cleanup(domain, fqdn, validation)
            except DNSProviderError as e:
                log_debug("DNS-01 cleanup failed", fqdn=fqdn, error=str(e))


def _select_dns01(authz: messages.AuthorizationResource) -> messages.ChallengeBody:
    for challb in authz.body.challenges:
        if isinstance(challb.chall, challenges.DNS01):
            return challb
    msg = f"no dns-01 challenge offered for {authz.body.identifier.value}"
    raise errors.Error(msg)


def _csr_to_pem(csr: bytes) -> bytes:
    if csr.lstrip().startswith(b"-----BEGIN"):
        return csr
    try:
        return x509.load_der_x509_csr(csr).public_bytes(Encoding.PEM)
    except ValueError as e:
        raise IssuanceError.obtain_failed(reason=f"invalid CSR: {e}") from e


def _split_pem(data: bytes) -> list[bytes]:
    """Split PEM text into its blocks, each re-encoded on its own."""
    marker = b"-----END CERTIFICATE-----"
    return [part.strip() + b"\n" + marker + b"\n" for part in data.split(marker) if part.strip()]


def load_account_key(path: Path | str) -> jose.JWKRSA:
    """Load the ACME account key (RSA, PKCS#1 or PKCS#8 PEM).

    Raises:
        CAClientError: If the key cannot be read or is not RSA.
    """
    try:
        key = load_rsa_private_key(Path(path).read_bytes())
    except (OSError, DepotError) as e:
        raise CAClientError.setup_failed(step="loading acme account key", reason=str(e)) from e
    return jose.JWKRSA(key=key)


def new_acme_client(email: str, key_path: Path | str, directory_url: str, dns_provider: str) -> AcmeClient:
    """Build, configure and register an ACME client.

    Args:
        email: Account contact address; terms of service are accepted.
        key_path: PEM file with the account key.
        directory_url: ACME directory URL.
        dns_provider: Name of the DNS-01 provider to use.

    Returns:
        A registered AcmeClient.

    Raises:
        CAClientError: If any setup step fails.
    """
    acme_client = AcmeClient.connect(email, load_account_key(key_path), directory_url)
    acme_client.set_dns01_provider(new_dns_challenge_provider_by_name(dns_provider))
    acme_client.register()

    log_acme_registered(email=email, directory_url=directory_url, dns_provider=dns_provider)
    return acme_client
