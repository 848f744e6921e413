"""
OAuth 2.0 client-credentials authentication for the directory provider.

Provides app-only token acquisition with support for:
- Token caching until shortly before expiry
- Mapping of token endpoint failures onto the dirsync error taxonomy
- Bounded request timeouts
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import requests
from requests.exceptions import RequestException

from dirsync.config.settings import DirectoryConfig
from dirsync.errors import AuthenticationError, ProtocolError, TransportError
from dirsync.utils.timestamps import utc_now

# Refresh cached tokens this many seconds before they expire
TOKEN_REFRESH_MARGIN = 60

# Lifetime assumed when the token response has no usable expires_in
DEFAULT_TOKEN_LIFETIME = 3600

# Status codes that mean the credentials themselves were rejected
AUTH_FAILURE_STATUSES = (400, 401, 403)

logger = logging.getLogger(__name__)


@dataclass
class AccessToken:
    """
    A bearer token and its expiry.

    Attributes:
        value: The raw access token
        expires_at: When the token stops being valid
    """

    value: str = field(repr=False)
    expires_at: datetime

    def is_expiring(self, now: datetime, margin: int = TOKEN_REFRESH_MARGIN) -> bool:
        """Return True if the token expires within margin seconds of now."""
        return now >= self.expires_at - timedelta(seconds=margin)


class ClientCredentialsAuth:
    """
    Token provider using the client-credentials grant.

    Attributes:
        config: Directory connection settings

    Usage:
        auth = ClientCredentialsAuth(config)

        # Cached until shortly before expiry
        headers = auth.auth_headers()

        # Bypass the cache
        token = auth.request_token()
    """

    def __init__(
        self,
        config: DirectoryConfig,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the token provider.

        Args:
            config: Directory connection settings with tenant, client id and secret
            clock: Returns the current time; injectable for tests
        """
        self.config = config
        self._clock = clock
        self._token: Optional[AccessToken] = None

    def request_token(self) -> AccessToken:
        """
        Request a new token from the token endpoint.

        Returns:
            AccessToken from the response

        Raises:
            ConfigurationError: If credentials are missing
            AuthenticationError: If the endpoint rejects the credentials
            TransportError: On timeouts and connection failures
            ProtocolError: On unexpected statuses or malformed responses
        """
        self.config.validate()

        data = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "scope": self.config.scope,
            "grant_type": "client_credentials",
        }

        logger.debug(f"Requesting access token for tenant {self.config.tenant_id}")

        try:
            response = requests.post(
                self.config.token_url,
                data=data,
                timeout=self.config.request_timeout,
            )
        except requests.Timeout as e:
            raise TransportError(
                f"Token request timed out after {self.config.request_timeout}s"
            ) from e
        except RequestException as e:
            raise TransportError(f"Token request failed: {e}") from e

        if response.status_code in AUTH_FAILURE_STATUSES:
            logger.error(f"Token request rejected with status {response.status_code}")
            raise AuthenticationError(
                f"Failed to get access token: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        if not response.ok:
            raise ProtocolError(
                f"Unexpected token endpoint status: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise ProtocolError(
                "Token endpoint returned invalid JSON",
                status_code=response.status_code,
                body=response.text,
            ) from e

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token or not isinstance(access_token, str):
            raise ProtocolError(
                "Token endpoint response has no access_token",
                status_code=response.status_code,
            )

        expires_in = payload.get("expires_in", DEFAULT_TOKEN_LIFETIME)
        try:
            lifetime = int(expires_in)
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME

        token = AccessToken(
            value=access_token,
            expires_at=self._clock() + timedelta(seconds=lifetime),
        )
        logger.debug(f"Obtained access token valid for {lifetime}s")
        return token

    def get_token(self, force_refresh: bool = False) -> str:
        """
        Return a valid access token, requesting a new one when needed.

        Args:
            force_refresh: Ignore any cached token

        Returns:
            The raw bearer token
        """
        if (
            force_refresh
            or self._token is None
            or self._token.is_expiring(self._clock())
        ):
            self._token = self.request_token()
        return self._token.value

    def invalidate(self) -> None:
        """Drop the cached token."""
        self._token = None

    def auth_headers(self) -> dict[str, str]:
        """Return the Authorization header for directory requests."""
        return {"Authorization": f"Bearer {self.get_token()}"}
