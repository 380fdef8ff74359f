"""DNS-01 challenge providers, selected by name.

Providers read their own settings from environment variables, so the
bridge only needs the provider name on the command line.
"""

from __future__ import annotations

import os
import subprocess
from collections.abc import Callable, Mapping
from typing import Protocol

from scep_bridge.audit.logger import log_debug
from scep_bridge.exceptions import CAClientError


class DNSProviderError(Exception):
    """A provider failed to publish or remove a record."""


class DNSChallengeProvider(Protocol):
    """Publishes and removes the TXT records that prove domain control."""

    @property
    def propagation_delay(self) -> float:
        """Seconds to wait after presenting records before asking the CA to validate."""
        ...

    def present(self, domain: str, fqdn: str, value: str) -> None:
        """Publish value as a TXT record at fqdn."""
        ...

    def cleanup(self, domain: str, fqdn: str, value: str) -> None:
        """Remove the TXT record published by present."""
        ...


class ExecProvider:
    """Delegates record management to an external program.

    The program is called as ``<program> present <fqdn> <value>`` and
    ``<program> cleanup <fqdn> <value>``; a non-zero exit status fails the
    challenge.
    """

    def __init__(self, program: str, *, propagation_delay: float = 10.0, timeout: float = 60.0) -> None:
        self._program = program
        self._propagation_delay = propagation_delay
        self._timeout = timeout

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ExecProvider:
        """Create the provider from EXEC_PATH and EXEC_PROPAGATION_DELAY.

        Raises:
            CAClientError: If EXEC_PATH is unset or the delay is not a number.
        """
        env = os.environ if environ is None else environ
        program = env.get("EXEC_PATH", "")
        if not program:
            raise CAClientError.setup_failed(step="creating challenge provider", reason="exec: EXEC_PATH is not set")
        try:
            delay = float(env.get("EXEC_PROPAGATION_DELAY", "10"))
        except ValueError as e:
            raise CAClientError.setup_failed(
                step="creating challenge provider",
                reason=f"exec: invalid EXEC_PROPAGATION_DELAY: {e}",
            ) from e
        return cls(program, propagation_delay=delay)

    @property
    def propagation_delay(self) -> float:
        return self._propagation_delay

    def present(self, domain: str, fqdn: str, value: str) -> None:
        self._run("present", fqdn, value)

    def cleanup(self, domain: str, fqdn: str, value: str) -> None:
        self._run("cleanup", fqdn, value)

    def _run(self, action: str, fqdn: str, value: str) -> None:
        log_debug("exec DNS provider", action=action, fqdn=fqdn)
        try:
            subprocess.run(  # noqa: S603 - program comes from operator configuration
                [self._program, action, fqdn, value],
                check=True,
                capture_output=True,
                timeout=self._timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            msg = f"exec: {action} {fqdn}: {e}"
            if isinstance(e, subprocess.CalledProcessError) and e.stderr:
                msg = f"{msg}: {e.stderr.decode(errors='replace').strip()}"
            raise DNSProviderError(msg) from e


ProviderFactory = Callable[[], DNSChallengeProvider]

DNS_PROVIDERS: dict[str, ProviderFactory] = {
    "exec": ExecProvider.from_env,
}


def new_dns_challenge_provider_by_name(name: str) -> DNSChallengeProvider:
    """Create the DNS-01 provider registered under name.

    Raises:
        CAClientError: If no provider has that name or it cannot be configured.
    """
    factory = DNS_PROVIDERS.get(name)
    if factory is None:
        raise CAClientError.setup_failed(
            step="creating challenge provider",
            reason=f"unrecognized DNS provider: {name}",
        )
    return factory()
