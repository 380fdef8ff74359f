"""Configuration management for SCEP Bridge.

Settings come from an optional YAML file and command-line flags, and are
validated with Pydantic models. Flags override the file.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from scep_bridge.exceptions import ConfigurationError

LE_DIRECTORY_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"
LE_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

# Flag name for each settings field, used in error messages
FLAG_NAMES = {
    "listen": "listen",
    "cert_path": "cert",
    "cert_key_path": "certkey",
    "acme_key_path": "acmekey",
    "acme_email": "acmeemail",
    "acme_url": "acmeurl",
    "whitelist_path": "whitelist",
    "dns_provider": "dnsprovider",
    "debug": "debug",
    "log_file": "log-file",
}

_REQUIRED_FIELDS = (
    "cert_path",
    "cert_key_path",
    "acme_email",
    "acme_key_path",
    "acme_url",
    "dns_provider",
    "whitelist_path",
)


class Settings(BaseModel):
    """Root configuration model for SCEP Bridge."""

    model_config = ConfigDict(frozen=True)

    listen: str = "127.0.0.1:8383"
    cert_path: Path | None = None
    cert_key_path: Path | None = None
    acme_key_path: Path | None = None
    acme_email: str | None = None
    acme_url: str = LE_DIRECTORY_STAGING
    whitelist_path: Path | None = None
    dns_provider: str | None = None
    debug: bool = False
    log_file: Path | None = None

    def validate_required(self) -> Settings:
        """Check that every mandatory field is set.

        Returns:
            The same settings instance.

        Raises:
            ConfigurationError: Naming the first missing field.
        """
        for name in _REQUIRED_FIELDS:
            self.required(name)
        return self

    def required(self, name: str) -> Any:
        """Return the value of a mandatory field.

        Raises:
            ConfigurationError: If the field is unset or empty.
        """
        value = getattr(self, name)
        if value is None or value == "":
            raise ConfigurationError.missing_required(field=FLAG_NAMES[name])
        return value


def load_config(config_path: Path | str) -> dict[str, object]:
    """Load raw configuration values from a YAML file.

    Args:
        config_path: Path to configuration YAML file.

    Returns:
        Mapping of settings field names to values.

    Raises:
        ConfigurationError: If the file cannot be read or is not a mapping.
    """
    path = Path(config_path)
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError.invalid_config(field="config", reason=str(e)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError.invalid_config(field="config", reason="top level must be a mapping")
    return data


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="scep-bridge",
        description="SCEP server that issues certificates through an ACME CA",
    )
    parser.add_argument("--config", type=Path, help="Path to YAML configuration file")
    parser.add_argument("--listen", dest="listen", help="Listen IP and port (default 127.0.0.1:8383)")
    parser.add_argument(
        "--cert",
        dest="cert_path",
        type=Path,
        help="Path to certificate file - should include 2 certificates (RA & CA). RA certificate should be signed by CA.",
    )
    parser.add_argument("--certkey", dest="cert_key_path", type=Path, help="Path to certificate key")
    parser.add_argument("--acmekey", dest="acme_key_path", type=Path, help="Path to ACME account key")
    parser.add_argument(
        "--acmeemail",
        dest="acme_email",
        help="ACME account email address - Terms of Service will be accepted automatically",
    )
    parser.add_argument(
        "--acmeurl",
        dest="acme_url",
        help=(
            "ACME directory URL (default is the Let's Encrypt staging directory, "
            f'to switch to production directory use "{LE_DIRECTORY_PRODUCTION}")'
        ),
    )
    parser.add_argument("--whitelist", dest="whitelist_path", type=Path, help="Path to hostname whitelist configuration")
    parser.add_argument(
        "--dnsprovider",
        dest="dns_provider",
        help="DNS provider used for DNS-01 challenges - environment variables are used for its configuration",
    )
    parser.add_argument("--debug", dest="debug", action="store_true", default=None, help="Enable debug logging")
    parser.add_argument("--log-file", dest="log_file", type=Path, help="Also write logs to this file")
    return parser


def load_settings(
    argv: list[str] | None = None,
    env_var: str = "SCEP_BRIDGE_CONFIG",
) -> Settings:
    """Build validated settings from the config file and command-line flags.

    The config file is taken from --config, then from the environment
    variable named by env_var.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).
        env_var: Environment variable name containing config path.

    Returns:
        Settings with every mandatory field present.

    Raises:
        ConfigurationError: If the file is invalid or a mandatory field is missing.
    """
    args = build_parser().parse_args(argv)

    values: dict[str, object] = {}
    config_path = args.config or os.environ.get(env_var)
    if config_path:
        values.update(load_config(config_path))

    for name in FLAG_NAMES:
        flag_value = getattr(args, name, None)
        if flag_value is not None:
            values[name] = flag_value

    try:
        settings = Settings.model_validate(values)
    except ValidationError as e:
        raise ConfigurationError.invalid_config(field="config", reason=str(e)) from e

    return settings.validate_required()
