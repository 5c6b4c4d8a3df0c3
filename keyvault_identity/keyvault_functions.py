"""
Key Vault secret functions for retrieving and versioning secrets.
These functions serve as the interface between the Flask app, the
rotation job and Azure Key Vault.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)
from azure.keyvault.secrets import SecretClient

from .errors import (
    NoCredentialAvailable,
    SecretAccessDenied,
    SecretNotFound,
    SecretRetrievalFailed,
)
from .resolver import CredentialResolver

logger = logging.getLogger(__name__)

VAULT_DOMAIN = "vault.azure.net"


@dataclass
class SecretRecord:
    name: str
    value: str
    vault_url: str
    version: Optional[str] = None

    def masked(self, visible=4):
        if len(self.value) <= visible:
            return "*" * len(self.value)
        return self.value[:visible] + "*" * (len(self.value) - visible)

    def __repr__(self):
        return f"SecretRecord(name={self.name!r}, vault_url={self.vault_url!r}, version={self.version!r})"


def vault_url_for(vault_name: str, domain: str = VAULT_DOMAIN) -> str:
    return f"https://{vault_name}.{domain}"


def get_vault_url() -> str:
    vault_url = os.environ.get("KEY_VAULT_URL")
    if vault_url:
        return vault_url

    vault_name = os.environ.get("KEY_VAULT_NAME")
    if not vault_name:
        raise ValueError(
            "KEY_VAULT_URL or KEY_VAULT_NAME environment variable must be set"
        )
    return vault_url_for(vault_name)


def get_client(vault_url=None, credential=None):
    """Get a Key Vault SecretClient authenticated through the credential resolver."""
    vault_url = vault_url or get_vault_url()
    credential = credential or CredentialResolver.from_environment()
    return SecretClient(vault_url=vault_url, credential=credential)


# BEGIN RETRIEVE SECRET FUNCTION
def retrieve_secret(name, vault_url=None, credential=None) -> SecretRecord:
    """
    Fetch the latest version of a secret.

    Credential failures propagate as NoCredentialAvailable. Anything that
    goes wrong once a token was obtained is raised as SecretRetrievalFailed;
    permission problems are reported as SecretAccessDenied and are never
    retried with another credential source.
    """
    client = get_client(vault_url, credential)

    try:
        secret = client.get_secret(name)
    except NoCredentialAvailable:
        raise
    except ResourceNotFoundError as e:
        raise SecretNotFound(name, "secret does not exist in the vault", 404) from e
    except ClientAuthenticationError as e:
        raise SecretAccessDenied(name, e.message, e.status_code) from e
    except HttpResponseError as e:
        if e.status_code in (401, 403):
            raise SecretAccessDenied(name, e.message, e.status_code) from e
        raise SecretRetrievalFailed(name, e.message, e.status_code) from e
    except ServiceRequestError as e:
        raise SecretRetrievalFailed(name, f"vault unreachable: {e.message}") from e

    logger.info("Retrieved secret '%s' version %s", name, secret.properties.version)
    return SecretRecord(
        name=secret.name,
        value=secret.value,
        vault_url=client.vault_url,
        version=secret.properties.version,
    )
# END RETRIEVE SECRET FUNCTION


# BEGIN CREATE SECRET VERSION FUNCTION
def create_secret_version(name, value, vault_url=None, credential=None, tags=None) -> SecretRecord:
    """Write a new version of a secret. Previous versions stay retrievable by version id."""
    client = get_client(vault_url, credential)

    secret = client.set_secret(
        name,
        value,
        content_type="text/plain",
        tags=tags,
    )

    logger.info("Created version %s of secret '%s'", secret.properties.version, name)
    return SecretRecord(
        name=secret.name,
        value=value,
        vault_url=client.vault_url,
        version=secret.properties.version,
    )
# END CREATE SECRET VERSION FUNCTION
