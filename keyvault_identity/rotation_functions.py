"""
Scheduled rotation of an Azure SQL server administrator password into Key Vault.

The job sets the new password on the server first and only then writes it
to the vault, so the vault never holds a value the server does not have.
"""
import logging
import os
import secrets
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import httpx
from azure.core.exceptions import AzureError

from .credential_sources import DEFAULT_TIMEOUT, ManagedIdentitySource, resource_to_scope
from .errors import RotationError, RotationInProgress
from .keyvault_functions import create_secret_version, get_vault_url
from .resolver import CredentialResolver

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
SQL_API_VERSION = "2021-11-01"
DEFAULT_SECRET_LENGTH = 30

# Printable ASCII without whitespace, quotes, backslash, backtick and
# characters that are easy to misread (0 O 1 l I)
AMBIGUOUS_CHARACTERS = "0O1lI"
EXCLUDED_PUNCTUATION = "\"'\\`"
DEFAULT_ALPHABET = "".join(
    c for c in string.ascii_letters + string.digits + string.punctuation
    if c not in AMBIGUOUS_CHARACTERS + EXCLUDED_PUNCTUATION
)


def generate_secret(length=DEFAULT_SECRET_LENGTH, alphabet=DEFAULT_ALPHABET) -> str:
    """Draw length characters uniformly, with replacement, from a CSPRNG."""
    if length <= 0:
        raise ValueError("Secret length must be positive")
    if not alphabet:
        raise ValueError("Secret alphabet must not be empty")
    return "".join(secrets.choice(alphabet) for _ in range(length))


@dataclass
class RotationConfig:
    subscription_id: str
    resource_group: str
    server_name: str
    vault_url: str
    secret_name: str
    length: int = DEFAULT_SECRET_LENGTH
    alphabet: str = DEFAULT_ALPHABET
    automation_client_id: Optional[str] = None
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_environment(cls):
        required = {
            "subscription_id": "AZURE_SUBSCRIPTION_ID",
            "resource_group": "SQL_RESOURCE_GROUP",
            "server_name": "SQL_SERVER_NAME",
            "secret_name": "ROTATION_SECRET_NAME",
        }
        values = {}
        for attr, env_var in required.items():
            value = os.environ.get(env_var)
            if not value:
                raise ValueError(f"{env_var} environment variable must be set")
            values[attr] = value

        return cls(
            vault_url=get_vault_url(),
            length=int(os.environ.get("ROTATION_SECRET_LENGTH", DEFAULT_SECRET_LENGTH)),
            automation_client_id=os.environ.get("AUTOMATION_CLIENT_ID"),
            timeout=float(os.environ.get("CREDENTIAL_TIMEOUT", DEFAULT_TIMEOUT)),
            **values,
        )


@dataclass
class RotationResult:
    secret_name: str
    secret_version: Optional[str]
    server_name: str
    rotated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SqlServerAdminClient:
    """Sets the administrator password of an Azure SQL logical server through ARM."""

    def __init__(self, subscription_id, resource_group, server_name, token,
                 http_client: httpx.Client, poll_interval=5, max_polls=60, sleep=None):
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self.server_name = server_name
        self.token = token
        self.http = http_client
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self.sleep = sleep or time.sleep

    @property
    def url(self) -> str:
        return (
            f"{ARM_ENDPOINT}/subscriptions/{self.subscription_id}"
            f"/resourceGroups/{self.resource_group}"
            f"/providers/Microsoft.Sql/servers/{self.server_name}"
        )

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    def set_admin_password(self, password: str) -> None:
        response = self.http.patch(
            self.url,
            params={"api-version": SQL_API_VERSION},
            headers=self.headers,
            json={"properties": {"administratorLoginPassword": password}},
        )
        response.raise_for_status()

        if response.status_code == 202:
            self._wait_for_operation(response)

    def _wait_for_operation(self, response: httpx.Response) -> None:
        operation_url = response.headers.get("Azure-AsyncOperation") or response.headers.get("Location")
        if not operation_url:
            return

        for _ in range(self.max_polls):
            self.sleep(self._retry_after(response))
            response = self.http.get(operation_url, headers=self.headers)
            response.raise_for_status()

            if response.status_code == 202:
                continue
            body = response.json() if response.content else {}
            status = body.get("status", "Succeeded")
            if status == "Succeeded":
                return
            if status in ("Failed", "Canceled"):
                error = body.get("error") or {}
                raise RotationError("datastore", error.get("message") or f"server update {status.lower()}")

        raise RotationError("datastore", f"server update did not finish after {self.max_polls} polls")

    def _retry_after(self, response: httpx.Response) -> float:
        """Seconds to wait before the next poll; HTTP-date or malformed values use poll_interval."""
        value = response.headers.get("Retry-After", "")
        try:
            return max(0, int(value))
        except ValueError:
            return self.poll_interval


def automation_credential(config: RotationConfig):
    """The automation identity: a specific managed identity if configured, else the environment chain."""
    if config.automation_client_id:
        return CredentialResolver(
            sources=[ManagedIdentitySource(client_id=config.automation_client_id, timeout=config.timeout)],
            timeout=config.timeout,
        )
    return CredentialResolver.from_environment()


# BEGIN ROTATE FUNCTION
def rotate(config: RotationConfig, credential=None, http_client=None) -> RotationResult:
    """Run one rotation. Any failure is fatal for the run and is not retried."""
    credential = credential or automation_credential(config)

    logger.info("Starting rotation of '%s' for server %s", config.secret_name, config.server_name)
    try:
        token = credential.get_token(resource_to_scope(ARM_ENDPOINT))
    except AzureError as e:
        raise RotationError("authenticate", e.message) from e

    password = generate_secret(config.length, config.alphabet)

    owns_client = http_client is None
    http_client = http_client or httpx.Client(timeout=config.timeout)
    try:
        SqlServerAdminClient(
            config.subscription_id,
            config.resource_group,
            config.server_name,
            token.token,
            http_client,
        ).set_admin_password(password)
    except httpx.HTTPError as e:
        raise RotationError("datastore", str(e)) from e
    except ValueError as e:
        raise RotationError("datastore", f"unexpected response from server update: {e}") from e
    finally:
        if owns_client:
            http_client.close()
    logger.info("Administrator password updated on server %s", config.server_name)

    try:
        record = create_secret_version(
            config.secret_name,
            password,
            vault_url=config.vault_url,
            credential=credential,
            tags={"rotated-by": "keyvault-identity", "server": config.server_name},
        )
    except AzureError as e:
        logger.critical(
            "Server %s has a new administrator password but secret '%s' was NOT updated; "
            "the vault is out of sync until the next successful run",
            config.server_name,
            config.secret_name,
        )
        raise RotationError("vault", e.message, partial=True) from e

    logger.info("Rotation of '%s' complete, new version %s", config.secret_name, record.version)
    return RotationResult(
        secret_name=config.secret_name,
        secret_version=record.version,
        server_name=config.server_name,
    )
# END ROTATE FUNCTION


class RotationJob:
    """Runs rotate() so that two runs never overlap."""

    def __init__(self, config: RotationConfig, credential=None, http_client=None):
        self.config = config
        self.credential = credential
        self.http_client = http_client
        self._lock = threading.Lock()

    def run(self) -> RotationResult:
        if not self._lock.acquire(blocking=False):
            raise RotationInProgress()
        try:
            return rotate(self.config, credential=self.credential, http_client=self.http_client)
        finally:
            self._lock.release()

    def run_forever(self, interval: float, stop_event: Optional[threading.Event] = None) -> None:
        """Run on a fixed interval until stop_event is set. Failed runs are logged and wait for the next tick."""
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            try:
                result = self.run()
                logger.info("Scheduled rotation succeeded: version %s", result.secret_version)
            except RotationError as e:
                logger.error("Scheduled rotation failed (%s): %s", e.stage, e.reason)
            stop_event.wait(interval)
