"""
Tests for configuration loading, validation, settings resolution and the
configuration file generator.
"""

import stat
from pathlib import Path

import pytest
import yaml

from dirsync.config import (
    ConfigError,
    ConfigLoader,
    DirectoryConfig,
    generate_default_config,
    load_settings,
    save_config_file,
)
from dirsync.config.loader import VALID_KEYS
from dirsync.errors import ConfigurationError


class TestConfigLoaderLoad:
    """Tests for loading configuration files."""

    def test_missing_file_returns_empty_dict(self, tmp_path):
        """Test that a missing file is not an error."""
        loader = ConfigLoader(config_dir=tmp_path)
        assert loader.load() == {}

    def test_empty_file_returns_empty_dict(self, tmp_path):
        """Test that an empty file is treated as no configuration."""
        (tmp_path / "config.yaml").write_text("")
        assert ConfigLoader(config_dir=tmp_path).load() == {}

    def test_load_valid_file(self, tmp_path):
        """Test loading a file with options."""
        (tmp_path / "config.yaml").write_text(
            "tenant_id: contoso\npage_size: 500\nlog_to_file: false\n"
        )

        config = ConfigLoader(config_dir=tmp_path).load_and_validate()

        assert config == {"tenant_id": "contoso", "page_size": 500, "log_to_file": False}

    def test_load_from_explicit_path(self, tmp_path):
        """Test load_from_file with a path outside the config directory."""
        path = tmp_path / "other.yaml"
        path.write_text("verbose: true\n")

        assert ConfigLoader(config_dir=tmp_path).load_from_file(path) == {
            "verbose": True
        }

    def test_invalid_yaml_raises(self, tmp_path):
        """Test that unparseable YAML is a ConfigError."""
        (tmp_path / "config.yaml").write_text("tenant_id: [unclosed\n")

        with pytest.raises(ConfigError, match="Failed to parse YAML"):
            ConfigLoader(config_dir=tmp_path).load()

    def test_non_mapping_raises(self, tmp_path):
        """Test that a YAML list is rejected."""
        (tmp_path / "config.yaml").write_text("- a\n- b\n")

        with pytest.raises(ConfigError, match="YAML dictionary"):
            ConfigLoader(config_dir=tmp_path).load()


class TestConfigLoaderValidate:
    """Tests for ConfigLoader.validate."""

    @pytest.fixture
    def loader(self, tmp_path):
        return ConfigLoader(config_dir=tmp_path)

    def test_unknown_keys_are_ignored(self, loader):
        """Test that unknown keys only produce a warning."""
        loader.validate({"future_option": 1})

    def test_wrong_type_raises(self, loader):
        """Test that type mismatches are reported with the key name."""
        with pytest.raises(ConfigError, match="'page_size': expected int, got str"):
            loader.validate({"page_size": "100"})

    def test_bool_is_not_a_number(self, loader):
        """Test that True is not accepted for numeric options."""
        with pytest.raises(ConfigError, match="max_retries"):
            loader.validate({"max_retries": True})

    def test_float_options_accept_ints(self, loader):
        """Test that whole numbers are valid for float options."""
        loader.validate({"request_timeout": 10, "max_row_error_rate": 1})

    @pytest.mark.parametrize(
        "config, message",
        [
            ({"page_size": 0}, "page_size must be >= 1"),
            ({"page_size": 1000}, "page_size must be <= 999"),
            ({"default_frequency_hours": 0}, "default_frequency_hours must be >= 1"),
            ({"max_retries": -1}, "max_retries must be >= 0"),
            ({"request_timeout": 0}, "request_timeout must be > 0"),
            ({"max_row_error_rate": 1.5}, "between 0.0 and 1.0"),
        ],
    )
    def test_out_of_range_values_raise(self, loader, config, message):
        """Test range checks."""
        with pytest.raises(ConfigError, match=message):
            loader.validate(config)

    def test_every_valid_key_has_a_type(self):
        """Test that the schema covers the credential options."""
        for key in ("tenant_id", "client_id", "client_secret", "database_path"):
            assert key in VALID_KEYS


class TestDirectoryConfig:
    """Tests for DirectoryConfig."""

    def test_urls(self):
        """Test the derived token and users URLs."""
        config = DirectoryConfig(
            tenant_id="contoso", graph_base_url="https://graph.example/v1.0/"
        )

        assert (
            config.token_url
            == "https://login.microsoftonline.com/contoso/oauth2/v2.0/token"
        )
        assert config.users_url == "https://graph.example/v1.0/users"

    def test_validate_lists_missing_fields(self):
        """Test that every missing credential is named."""
        with pytest.raises(ConfigurationError, match="tenant_id, client_id, client_secret"):
            DirectoryConfig().validate()

    def test_validate_passes_when_complete(self, directory_config):
        """Test that a complete config validates."""
        directory_config.validate()
        assert directory_config.missing_fields() == []

    def test_repr_hides_secret(self, directory_config):
        """Test that the secret never appears in repr."""
        assert "s3cr3t-value" not in repr(directory_config)


class TestLoadSettings:
    """Tests for load_settings."""

    def test_config_values_win_over_environment(self, tmp_path):
        """Test that the config file takes precedence."""
        settings = load_settings(
            {"tenant_id": "from-config"},
            config_dir=tmp_path,
            environ={"DIRSYNC_TENANT_ID": "from-env"},
        )

        assert settings.directory.tenant_id == "from-config"

    def test_environment_fallbacks(self, tmp_path):
        """Test the DIRSYNC_ and AZURE_ environment variables."""
        settings = load_settings(
            {},
            config_dir=tmp_path,
            environ={
                "AZURE_TENANT_ID": "azure-tenant",
                "DIRSYNC_CLIENT_ID": "dirsync-client",
                "AZURE_CLIENT_ID": "azure-client",
                "AZURE_CLIENT_SECRET": "azure-secret",
                "AZURE_GRAPH_API_SCOPE": "api://scope/.default",
            },
        )

        assert settings.directory.tenant_id == "azure-tenant"
        assert settings.directory.client_id == "dirsync-client"
        assert settings.directory.client_secret == "azure-secret"
        assert settings.directory.scope == "api://scope/.default"

    def test_client_secret_env_indirection(self, tmp_path):
        """Test reading the secret from a named environment variable."""
        settings = load_settings(
            {"client_secret_env": "MY_APP_SECRET"},
            config_dir=tmp_path,
            environ={"MY_APP_SECRET": "named", "DIRSYNC_CLIENT_SECRET": "generic"},
        )

        assert settings.directory.client_secret == "named"

    def test_defaults(self, tmp_path):
        """Test defaults with no configuration at all."""
        settings = load_settings({}, config_dir=tmp_path, environ={})

        assert settings.directory.tenant_id is None
        assert settings.directory.scope == "https://graph.microsoft.com/.default"
        assert settings.directory.page_size == 999
        assert settings.directory.max_retries == 3
        assert settings.sync.max_row_error_rate == 0.5
        assert settings.sync.lease_ttl_seconds == 3600
        assert settings.sync.default_frequency_hours == 6
        assert settings.sync.database_path == str(tmp_path.resolve() / "dirsync.db")

    def test_explicit_database_path(self, tmp_path):
        """Test that database_path overrides the default location."""
        settings = load_settings(
            {"database_path": str(tmp_path / "mirror.sqlite")},
            config_dir=tmp_path,
            environ={},
        )

        assert settings.sync.database_path == str(tmp_path / "mirror.sqlite")

    def test_tuning_options(self, tmp_path):
        """Test that tuning options are carried over."""
        settings = load_settings(
            {
                "page_size": 100,
                "request_timeout": 5,
                "max_retries": 0,
                "max_row_error_rate": 0.1,
                "lease_ttl_seconds": 600,
            },
            config_dir=tmp_path,
            environ={},
        )

        assert settings.directory.page_size == 100
        assert settings.directory.request_timeout == 5.0
        assert settings.directory.max_retries == 0
        assert settings.sync.max_row_error_rate == 0.1
        assert settings.sync.lease_ttl_seconds == 600


class TestConfigGenerator:
    """Tests for the configuration file generator."""

    def test_template_is_valid_yaml_with_no_active_options(self):
        """Test that the template parses and sets nothing by default."""
        assert yaml.safe_load(generate_default_config()) is None

    def test_template_documents_every_option(self):
        """Test that each valid key is mentioned in the template."""
        template = generate_default_config()

        for key in VALID_KEYS:
            assert key in template

    def test_save_config_file(self, tmp_path):
        """Test writing the template with owner-only permissions."""
        path = tmp_path / "conf" / "config.yaml"

        success, error = save_config_file(path)

        assert success is True
        assert error is None
        assert path.read_text() == generate_default_config()
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_save_refuses_to_overwrite(self, tmp_path):
        """Test that an existing file is kept without overwrite."""
        path = tmp_path / "config.yaml"
        path.write_text("tenant_id: keep\n")

        success, error = save_config_file(path)

        assert success is False
        assert "already exists" in error
        assert path.read_text() == "tenant_id: keep\n"

    def test_save_overwrites_when_asked(self, tmp_path):
        """Test overwrite=True replaces the file."""
        path = Path(tmp_path / "config.yaml")
        path.write_text("tenant_id: old\n")

        success, _ = save_config_file(path, overwrite=True)

        assert success is True
        assert "tenant_id: old" not in path.read_text()
