"""
Directory API wrapper for user synchronization.

Provides a high-level interface to the directory's user listing for:
- Listing all users with @odata.nextLink pagination
- Exponential backoff retry for throttled requests (429/503)
- A connectivity diagnostic that never reveals credential values

No server-side $filter is sent; eligibility is decided client-side so the
same code works against providers with differing filter support.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import requests
from requests.exceptions import RequestException

from dirsync.auth.client_credentials import ClientCredentialsAuth
from dirsync.config.settings import DirectoryConfig
from dirsync.errors import (
    AuthenticationError,
    ConfigurationError,
    DirectoryError,
    ProtocolError,
    TransportError,
)
from dirsync.sync.record import DirectoryRecord

# User fields to request from the API
USER_SELECT_FIELDS = ",".join(
    [
        "id",
        "displayName",
        "mail",
        "userPrincipalName",
        "jobTitle",
        "department",
        "accountEnabled",
        "createdDateTime",
    ]
)

# Statuses that are retried with backoff
RETRYABLE_STATUSES = (429, 503)

# Statuses that mean the token was rejected
AUTH_FAILURE_STATUSES = (401, 403)

# Maximum characters of a response body kept on errors
MAX_ERROR_BODY = 2000

logger = logging.getLogger(__name__)


def _retry_after_seconds(response: requests.Response) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return max(seconds, 0.0)


@dataclass
class ConnectionReport:
    """
    Result of a connectivity diagnostic.

    Attributes:
        config: Per credential, whether it is set and its length
        token_ok: Whether a token was obtained
        token_status: HTTP status of the token request, if any
        token_error: Error message from the token request
        graph_ok: Whether the users endpoint answered successfully
        graph_status: HTTP status of the users request, if any
        graph_error: Error message from the users request
        sample_user_count: Users returned by the users request
    """

    config: dict[str, dict[str, Any]] = field(default_factory=dict)
    token_ok: bool = False
    token_status: Optional[int] = None
    token_error: Optional[str] = None
    graph_ok: bool = False
    graph_status: Optional[int] = None
    graph_error: Optional[str] = None
    sample_user_count: int = 0

    @property
    def ok(self) -> bool:
        return self.token_ok and self.graph_ok

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["ok"] = self.ok
        return result


class DirectoryClient:
    """
    Directory API wrapper for user operations.

    Attributes:
        config: Directory connection settings
        auth: Token provider used for Authorization headers

    Usage:
        client = DirectoryClient(config)

        # Fetch every user, following pagination
        records = client.fetch_users()

        # Check credentials and connectivity
        report = client.check_connection()
    """

    def __init__(
        self,
        config: DirectoryConfig,
        auth: Optional[ClientCredentialsAuth] = None,
    ):
        """
        Initialize the directory client.

        Args:
            config: Directory connection settings
            auth: Token provider; created from config when not given
        """
        self.config = config
        self.auth = auth or ClientCredentialsAuth(config)

    def validate_config(self) -> None:
        """
        Check that credentials are configured, without any network call.

        Raises:
            ConfigurationError: If tenant_id, client_id or client_secret is missing
        """
        self.config.validate()

    def _get_json(
        self,
        url: str,
        params: Optional[dict[str, Any]],
        operation_name: str,
    ) -> dict[str, Any]:
        """
        GET a JSON object, retrying throttled responses with backoff.

        Args:
            url: Absolute URL to fetch
            params: Query parameters, or None when url is a next link
            operation_name: Name for logging purposes

        Returns:
            Decoded JSON object

        Raises:
            AuthenticationError: On 401/403
            TransportError: On timeouts, connection failures and exhausted retries
            ProtocolError: On other non-2xx statuses and malformed bodies
        """
        delay = self.config.retry_initial_delay

        for attempt in range(self.config.max_retries + 1):
            try:
                response = requests.get(
                    url,
                    params=params,
                    headers={
                        **self.auth.auth_headers(),
                        "Accept": "application/json",
                    },
                    timeout=self.config.request_timeout,
                )
            except requests.Timeout as e:
                raise TransportError(
                    f"{operation_name} timed out after {self.config.request_timeout}s"
                ) from e
            except RequestException as e:
                raise TransportError(f"{operation_name} failed: {e}") from e

            status_code = response.status_code

            if status_code in RETRYABLE_STATUSES:
                if attempt < self.config.max_retries:
                    wait = _retry_after_seconds(response)
                    if wait is None:
                        wait = delay
                    wait = min(wait, self.config.retry_max_delay)
                    logger.warning(
                        f"{operation_name} throttled ({status_code}), retrying in "
                        f"{wait:.1f}s (attempt {attempt + 1}/{self.config.max_retries})"
                    )
                    time.sleep(wait)
                    delay = min(delay * 2, self.config.retry_max_delay)
                    continue

                raise TransportError(
                    f"{operation_name} still throttled after "
                    f"{self.config.max_retries} retries",
                    status_code=status_code,
                    body=response.text[:MAX_ERROR_BODY],
                )

            if status_code in AUTH_FAILURE_STATUSES:
                self.auth.invalidate()
                raise AuthenticationError(
                    f"{operation_name} rejected with status {status_code}",
                    status_code=status_code,
                    body=response.text[:MAX_ERROR_BODY],
                )

            if not response.ok:
                raise ProtocolError(
                    f"{operation_name} failed with status {status_code}",
                    status_code=status_code,
                    body=response.text[:MAX_ERROR_BODY],
                )

            try:
                payload = response.json()
            except ValueError as e:
                raise ProtocolError(
                    f"{operation_name} returned invalid JSON",
                    status_code=status_code,
                    body=response.text[:MAX_ERROR_BODY],
                ) from e

            if not isinstance(payload, dict):
                raise ProtocolError(
                    f"{operation_name} returned {type(payload).__name__}, "
                    "expected an object",
                    status_code=status_code,
                )
            return payload

        # Should not reach here, but just in case
        raise TransportError(f"{operation_name} failed after all retries")

    def fetch_users(self) -> list[DirectoryRecord]:
        """
        Fetch every user in the directory.

        Follows @odata.nextLink until it is absent. Any failure aborts the
        whole fetch; partial results are never returned.

        Returns:
            List of DirectoryRecord in provider order

        Raises:
            ConfigurationError: If credentials are missing
            AuthenticationError: If the token or a page request is rejected
            TransportError: On network failures and exhausted throttling retries
            ProtocolError: On unexpected statuses or malformed pages
        """
        self.config.validate()

        url: Optional[str] = self.config.users_url
        params: Optional[dict[str, Any]] = {
            "$select": USER_SELECT_FIELDS,
            "$top": self.config.page_size,
        }
        records: list[DirectoryRecord] = []
        page = 0

        while url:
            page += 1
            payload = self._get_json(url, params, f"list_users(page {page})")

            users = payload.get("value")
            if not isinstance(users, list):
                raise ProtocolError(f"Users page {page} has no 'value' list")

            for user in users:
                records.append(DirectoryRecord.from_api_response(user))

            logger.debug(
                f"Fetched page {page}: {len(users)} users, total so far {len(records)}"
            )

            # The next link already carries $select, $top and the skip token
            url = payload.get("@odata.nextLink")
            params = None

        logger.info(f"Fetched {len(records)} users from the directory in {page} page(s)")
        return records

    def check_connection(self) -> ConnectionReport:
        """
        Diagnose credentials and connectivity.

        Reports which credentials are configured (with their lengths, never
        their values), whether a token can be obtained and whether the users
        endpoint answers. Never raises for directory failures.

        Returns:
            ConnectionReport
        """
        report = ConnectionReport(
            config={
                name: {"present": bool(value), "length": len(value or "")}
                for name, value in (
                    ("tenant_id", self.config.tenant_id),
                    ("client_id", self.config.client_id),
                    ("client_secret", self.config.client_secret),
                    ("scope", self.config.scope),
                )
            }
        )

        try:
            self.auth.get_token(force_refresh=True)
            report.token_ok = True
            report.token_status = 200
        except ConfigurationError as e:
            report.token_error = str(e)
            return report
        except DirectoryError as e:
            report.token_error = str(e)
            report.token_status = e.status_code
            return report

        try:
            payload = self._get_json(
                self.config.users_url,
                {"$select": "id,displayName", "$top": 1},
                "list_users",
            )
            report.graph_ok = True
            report.graph_status = 200
            users = payload.get("value")
            report.sample_user_count = len(users) if isinstance(users, list) else 0
        except DirectoryError as e:
            report.graph_error = str(e)
            report.graph_status = e.status_code

        return report
