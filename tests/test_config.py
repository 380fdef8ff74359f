"""Tests for settings loading from YAML and command-line flags."""

from __future__ import annotations

from pathlib import Path

import pytest

from scep_bridge.config import (
    LE_DIRECTORY_PRODUCTION,
    LE_DIRECTORY_STAGING,
    Settings,
    load_config,
    load_settings,
)
from scep_bridge.exceptions import ConfigurationError

REQUIRED_FLAGS = [
    "--cert", "ra.pem",
    "--certkey", "ra.key",
    "--acmekey", "acme.key",
    "--acmeemail", "admin@example.com",
    "--whitelist", "whitelist.yaml",
    "--dnsprovider", "exec",
]  # fmt: skip


def _without(flag: str) -> list[str]:
    i = REQUIRED_FLAGS.index(flag)
    return REQUIRED_FLAGS[:i] + REQUIRED_FLAGS[i + 2 :]


@pytest.fixture(autouse=True)
def no_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the host environment from supplying a config file."""
    monkeypatch.delenv("SCEP_BRIDGE_CONFIG", raising=False)


# --- Defaults ---


class TestSettingsDefaults:
    """Tests for default values."""

    def test_defaults(self) -> None:
        settings = Settings()

        assert settings.listen == "127.0.0.1:8383"
        assert settings.acme_url == LE_DIRECTORY_STAGING
        assert settings.debug is False
        assert settings.log_file is None

    def test_required_returns_value(self) -> None:
        settings = Settings(acme_email="admin@example.com")

        assert settings.required("acme_email") == "admin@example.com"

    def test_required_unset_names_flag(self) -> None:
        with pytest.raises(ConfigurationError, match="Missing required configuration: certkey$"):
            Settings().required("cert_key_path")

    def test_frozen(self) -> None:
        """Settings cannot be changed after loading."""
        settings = Settings()

        with pytest.raises(ValueError):
            settings.listen = "0.0.0.0:80"  # type: ignore[misc]


# --- Command Line ---


class TestLoadSettingsFromFlags:
    """Tests for flag-only configuration."""

    def test_all_required_flags(self) -> None:
        settings = load_settings(REQUIRED_FLAGS)

        assert settings.cert_path == Path("ra.pem")
        assert settings.cert_key_path == Path("ra.key")
        assert settings.acme_key_path == Path("acme.key")
        assert settings.acme_email == "admin@example.com"
        assert settings.whitelist_path == Path("whitelist.yaml")
        assert settings.dns_provider == "exec"
        assert settings.acme_url == LE_DIRECTORY_STAGING

    def test_optional_flags(self) -> None:
        settings = load_settings(
            [*REQUIRED_FLAGS, "--listen", ":9000", "--acmeurl", LE_DIRECTORY_PRODUCTION, "--debug"],
        )

        assert settings.listen == ":9000"
        assert settings.acme_url == LE_DIRECTORY_PRODUCTION
        assert settings.debug is True

    @pytest.mark.parametrize(
        ("flag", "name"),
        [
            ("--cert", "cert"),
            ("--certkey", "certkey"),
            ("--acmekey", "acmekey"),
            ("--acmeemail", "acmeemail"),
            ("--whitelist", "whitelist"),
            ("--dnsprovider", "dnsprovider"),
        ],
    )
    def test_missing_required_named(self, flag: str, name: str) -> None:
        """A missing mandatory setting is reported by its flag name."""
        with pytest.raises(ConfigurationError, match=f"Missing required configuration: {name}$"):
            load_settings(_without(flag))

    def test_empty_acme_url_is_missing(self) -> None:
        with pytest.raises(ConfigurationError, match="acmeurl"):
            load_settings([*REQUIRED_FLAGS, "--acmeurl", ""])


# --- Config File ---


class TestLoadSettingsFromFile:
    """Tests for YAML configuration and precedence."""

    @pytest.fixture
    def config_file(self, tmp_path: Path) -> Path:
        """Config file with every mandatory setting."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "listen: 0.0.0.0:8383\n"
            "cert_path: /etc/scep/ra.pem\n"
            "cert_key_path: /etc/scep/ra.key\n"
            "acme_key_path: /etc/scep/acme.key\n"
            "acme_email: ops@example.com\n"
            "whitelist_path: /etc/scep/whitelist.yaml\n"
            "dns_provider: exec\n",
        )
        return path

    def test_file_only(self, config_file: Path) -> None:
        settings = load_settings(["--config", str(config_file)])

        assert settings.listen == "0.0.0.0:8383"
        assert settings.cert_path == Path("/etc/scep/ra.pem")
        assert settings.acme_email == "ops@example.com"

    def test_flags_override_file(self, config_file: Path) -> None:
        settings = load_settings(["--config", str(config_file), "--acmeemail", "cli@example.com", "--listen", ":1"])

        assert settings.acme_email == "cli@example.com"
        assert settings.listen == ":1"
        assert settings.dns_provider == "exec"

    def test_file_from_environment(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCEP_BRIDGE_CONFIG", str(config_file))

        settings = load_settings([])

        assert settings.acme_email == "ops@example.com"

    def test_unknown_key_ignored(self, config_file: Path) -> None:
        config_file.write_text(config_file.read_text() + "unused: 1\n")

        assert load_settings(["--config", str(config_file)]).dns_provider == "exec"

    def test_invalid_value(self, config_file: Path) -> None:
        config_file.write_text(config_file.read_text() + "debug: [not, a, bool]\n")

        with pytest.raises(ConfigurationError, match="Invalid configuration for 'config'"):
            load_settings(["--config", str(config_file)])


class TestLoadConfig:
    """Tests for reading the YAML file."""

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path) == {}

    def test_list_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("key: [unterminated\n")

        with pytest.raises(ConfigurationError):
            load_config(path)
