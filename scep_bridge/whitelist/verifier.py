"""Challenge-password whitelist for signing requests.

Each challenge password owns a set of hostname rules. A CSR is approved
only if every name it asks for (CN and each DNS SAN) matches a rule of the
password it was submitted with.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Protocol

import yaml

from scep_bridge.audit.logger import log_csr_approved, log_csr_rejected
from scep_bridge.crypto.csr import parse_certificate_request
from scep_bridge.exceptions import WhitelistError


class HostnameRule(Protocol):
    """Predicate over a candidate hostname."""

    def matches(self, hostname: str) -> bool:
        """Return True if hostname is permitted by this rule."""
        ...


@dataclass(frozen=True)
class ExactHostnameRule:
    """Rule that permits exactly one hostname."""

    hostname: str

    def matches(self, hostname: str) -> bool:
        return self.hostname == hostname


class AuthorizationTable:
    """Immutable mapping of challenge password to its hostname rules."""

    def __init__(self, rules: Mapping[str, tuple[HostnameRule, ...]]) -> None:
        self._rules = MappingProxyType(dict(rules))

    @classmethod
    def from_mapping(cls, mapping: Mapping[object, object]) -> AuthorizationTable:
        """Build the table from a secret -> hostname(s) mapping.

        Args:
            mapping: Each value is a hostname string or a non-empty list of them.

        Returns:
            AuthorizationTable with at least one rule per secret.

        Raises:
            WhitelistError: If a value has any other shape.
        """
        rules: dict[str, tuple[HostnameRule, ...]] = {}
        for raw_secret, value in mapping.items():
            secret = str(raw_secret)
            items = value if isinstance(value, list) else [value]
            if not items:
                raise WhitelistError.unknown_item(secret=secret, item=value)

            secret_rules: list[HostnameRule] = []
            for item in items:
                if not isinstance(item, str):
                    raise WhitelistError.unknown_item(secret=secret, item=item)
                secret_rules.append(ExactHostnameRule(item))
            rules[secret] = tuple(secret_rules)
        return cls(rules)

    def rules_for(self, secret: str) -> tuple[HostnameRule, ...]:
        """Rules registered for secret; empty for an unknown secret."""
        return self._rules.get(secret, ())

    def __contains__(self, secret: object) -> bool:
        return secret in self._rules

    def __len__(self) -> int:
        return len(self._rules)


class CSRPasswordVerifier:
    """Approves CSRs whose names are all whitelisted for their challenge password."""

    def __init__(self, table: AuthorizationTable) -> None:
        self._table = table

    @classmethod
    def from_mapping(cls, mapping: Mapping[object, object]) -> CSRPasswordVerifier:
        """Create a verifier from a secret -> hostname(s) mapping."""
        return cls(AuthorizationTable.from_mapping(mapping))

    @classmethod
    def from_file(cls, path: Path | str) -> CSRPasswordVerifier:
        """Create a verifier from a YAML whitelist file.

        Args:
            path: YAML file mapping each secret to a hostname or a list of hostnames.

        Returns:
            CSRPasswordVerifier for the file's table.

        Raises:
            WhitelistError: If the file cannot be read or has a malformed entry.
        """
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text())
        except OSError as e:
            raise WhitelistError.unreadable(path=str(path), reason=f"reading file: {e}") from e
        except yaml.YAMLError as e:
            raise WhitelistError.unreadable(path=str(path), reason=f"parsing file: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise WhitelistError.unreadable(path=str(path), reason="top level must be a mapping")
        return cls.from_mapping(data)

    @property
    def table(self) -> AuthorizationTable:
        return self._table

    def allowed_dns_name(self, secret: str, dns_name: str) -> bool:
        """Return True if dns_name matches any rule registered for secret."""
        return any(rule.matches(dns_name) for rule in self._table.rules_for(secret))

    def verify(self, data: bytes) -> bool:
        """Decide whether a CSR may be issued.

        Args:
            data: The CSR (DER or PEM) carrying the challenge password.

        Returns:
            True if the CN and every DNS SAN are whitelisted. An empty CN is
            checked like any other name.

        Raises:
            CSRValidationError: If the CSR or challenge password cannot be parsed.
        """
        request = parse_certificate_request(data)
        secret = request.challenge_password
        secret_known = secret in self._table

        if not self.allowed_dns_name(secret, request.common_name):
            log_csr_rejected(secret_known=secret_known, name=request.common_name, field="CN")
            return False

        for name in request.dns_names:
            if not self.allowed_dns_name(secret, name):
                log_csr_rejected(secret_known=secret_known, name=name, field="SAN")
                return False

        log_csr_approved(
            common_name=request.common_name,
            dns_names=request.dns_names,
            subject=request.subject_dn,
        )
        return True
