"""
Resolved runtime settings for the directory client, reconciler and scheduler.

Settings are assembled once from the YAML configuration dictionary and the
process environment, then passed explicitly into constructors. Nothing else
in dirsync reads credentials from the environment.

Credential resolution order (first non-empty wins):

    tenant_id:     config "tenant_id", $DIRSYNC_TENANT_ID, $AZURE_TENANT_ID
    client_id:     config "client_id", $DIRSYNC_CLIENT_ID, $AZURE_CLIENT_ID
    client_secret: config "client_secret", $<config "client_secret_env">,
                   $DIRSYNC_CLIENT_SECRET, $AZURE_CLIENT_SECRET
    scope:         config "graph_scope", $DIRSYNC_GRAPH_SCOPE,
                   $AZURE_GRAPH_API_SCOPE, DEFAULT_SCOPE
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dirsync.errors import ConfigurationError
from dirsync.utils.paths import DEFAULT_DB_FILE, resolve_config_dir

DEFAULT_AUTHORITY_URL = "https://login.microsoftonline.com"
DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_SCOPE = "https://graph.microsoft.com/.default"

DEFAULT_PAGE_SIZE = 999
DEFAULT_REQUEST_TIMEOUT = 30.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_INITIAL_DELAY = 1.0  # seconds
DEFAULT_RETRY_MAX_DELAY = 30.0  # seconds

DEFAULT_MAX_ROW_ERROR_RATE = 0.5
DEFAULT_LEASE_TTL_SECONDS = 3600
DEFAULT_FREQUENCY_HOURS = 6

ENV_TENANT_ID = ("DIRSYNC_TENANT_ID", "AZURE_TENANT_ID")
ENV_CLIENT_ID = ("DIRSYNC_CLIENT_ID", "AZURE_CLIENT_ID")
ENV_CLIENT_SECRET = ("DIRSYNC_CLIENT_SECRET", "AZURE_CLIENT_SECRET")
ENV_SCOPE = ("DIRSYNC_GRAPH_SCOPE", "AZURE_GRAPH_API_SCOPE")


@dataclass
class DirectoryConfig:
    """
    Connection settings for the directory provider.

    Attributes:
        tenant_id: Directory tenant identifier
        client_id: Application (client) identifier
        client_secret: Client secret for the client-credentials grant
        scope: OAuth scope requested for the token
        authority_url: Base URL of the token authority
        graph_base_url: Base URL of the directory API (including version)
        page_size: Users requested per page ($top)
        request_timeout: Timeout in seconds applied to every HTTP request
        max_retries: Retries for throttled (429/503) requests within one call
        retry_initial_delay: First backoff delay in seconds
        retry_max_delay: Upper bound for backoff delays in seconds
    """

    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    scope: str = DEFAULT_SCOPE
    authority_url: str = DEFAULT_AUTHORITY_URL
    graph_base_url: str = DEFAULT_GRAPH_BASE_URL
    page_size: int = DEFAULT_PAGE_SIZE
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY

    @property
    def token_url(self) -> str:
        """OAuth 2.0 v2 token endpoint for the configured tenant."""
        return f"{self.authority_url.rstrip('/')}/{self.tenant_id}/oauth2/v2.0/token"

    @property
    def users_url(self) -> str:
        """User collection endpoint."""
        return f"{self.graph_base_url.rstrip('/')}/users"

    def missing_fields(self) -> list[str]:
        """Return the names of required credentials that are not set."""
        required = {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        return [name for name, value in required.items() if not value]

    def validate(self) -> None:
        """
        Check that all required credentials are present.

        Raises:
            ConfigurationError: If tenant_id, client_id or client_secret is missing
        """
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"Missing directory configuration: {', '.join(missing)}. "
                "Set them in the config file or via DIRSYNC_TENANT_ID, "
                "DIRSYNC_CLIENT_ID and DIRSYNC_CLIENT_SECRET."
            )


@dataclass
class SyncSettings:
    """
    Reconciliation and scheduling settings.

    Attributes:
        database_path: Path to the SQLite mirror database
        max_row_error_rate: Fraction of failed row writes above which a run is
            marked failed and the deactivation sweep is skipped
        lease_ttl_seconds: Lifetime of run and policy leases
        default_frequency_hours: Frequency for the seeded default policy
    """

    database_path: str = ":memory:"
    max_row_error_rate: float = DEFAULT_MAX_ROW_ERROR_RATE
    lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS
    default_frequency_hours: int = DEFAULT_FREQUENCY_HOURS


@dataclass
class Settings:
    """Top-level settings bundle."""

    directory: DirectoryConfig = field(default_factory=DirectoryConfig)
    sync: SyncSettings = field(default_factory=SyncSettings)


def _first_env(environ: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = environ.get(name)
        if value:
            return value
    return None


def load_settings(
    config: dict[str, Any] | None = None,
    config_dir: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Build Settings from a configuration dictionary and the environment.

    Missing credentials are not an error here; they surface as a
    ConfigurationError when a run starts, so that read-only commands work
    without credentials.

    Args:
        config: Validated configuration dictionary (from ConfigLoader)
        config_dir: Configuration directory, used for the default database path
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Settings instance
    """
    config = config or {}
    environ = os.environ if environ is None else environ

    client_secret = config.get("client_secret")
    if not client_secret and config.get("client_secret_env"):
        client_secret = environ.get(config["client_secret_env"])
    if not client_secret:
        client_secret = _first_env(environ, ENV_CLIENT_SECRET)

    directory = DirectoryConfig(
        tenant_id=config.get("tenant_id") or _first_env(environ, ENV_TENANT_ID),
        client_id=config.get("client_id") or _first_env(environ, ENV_CLIENT_ID),
        client_secret=client_secret,
        scope=config.get("graph_scope")
        or _first_env(environ, ENV_SCOPE)
        or DEFAULT_SCOPE,
        authority_url=config.get("authority_url", DEFAULT_AUTHORITY_URL),
        graph_base_url=config.get("graph_base_url", DEFAULT_GRAPH_BASE_URL),
        page_size=config.get("page_size", DEFAULT_PAGE_SIZE),
        request_timeout=float(config.get("request_timeout", DEFAULT_REQUEST_TIMEOUT)),
        max_retries=config.get("max_retries", DEFAULT_MAX_RETRIES),
        retry_initial_delay=float(
            config.get("retry_initial_delay", DEFAULT_RETRY_INITIAL_DELAY)
        ),
        retry_max_delay=float(config.get("retry_max_delay", DEFAULT_RETRY_MAX_DELAY)),
    )

    database_path = config.get("database_path")
    if database_path:
        database_path = str(Path(database_path).expanduser())
    else:
        database_path = str(resolve_config_dir(config_dir) / DEFAULT_DB_FILE)

    sync = SyncSettings(
        database_path=database_path,
        max_row_error_rate=float(
            config.get("max_row_error_rate", DEFAULT_MAX_ROW_ERROR_RATE)
        ),
        lease_ttl_seconds=config.get("lease_ttl_seconds", DEFAULT_LEASE_TTL_SECONDS),
        default_frequency_hours=config.get(
            "default_frequency_hours", DEFAULT_FREQUENCY_HOURS
        ),
    )

    return Settings(directory=directory, sync=sync)
