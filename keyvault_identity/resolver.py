"""
Credential resolution: try each credential source in a fixed order and
use the first that produces a token.
"""
import logging
import os
import threading
from typing import Optional

from azure.core.credentials import AccessToken

from .credential_sources import (
    DEFAULT_TIMEOUT,
    CliSource,
    DeveloperToolSource,
    IntegratedAuthSource,
    ManagedIdentitySource,
    scope_to_resource,
)
from .errors import CredentialSourceError, NoCredentialAvailable
from .models import ResolvedCredential, SourceFailure, principal_from_token

logger = logging.getLogger(__name__)

KEY_VAULT_RESOURCE = "https://vault.azure.net"
CONNECTION_STRING_ENV = "AZURE_SERVICES_AUTH_CONNECTION_STRING"


def default_sources(client_id=None, tenant_id=None, cli_path=None, timeout=DEFAULT_TIMEOUT):
    """The full chain: managed identity, developer tool, CLI, integrated auth."""
    return [
        ManagedIdentitySource(client_id=client_id, timeout=timeout),
        DeveloperToolSource(tenant_id=tenant_id, timeout=timeout),
        CliSource(cli_path=cli_path, tenant_id=tenant_id, timeout=timeout),
        IntegratedAuthSource(tenant_id=tenant_id, timeout=timeout),
    ]


def parse_connection_string(connection_string: str) -> dict:
    settings = {}
    for part in connection_string.split(";"):
        if not part.strip():
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ValueError(f"Malformed connection string segment: '{part.strip()}'")
        settings[key.strip().lower()] = value.strip()
    return settings


class CredentialResolver:
    """
    Resolve an access token from the first available credential source.

    Sources are attempted sequentially in priority order. A source whose
    availability predicate fails is skipped without being invoked. The
    resolver also satisfies the azure-core TokenCredential protocol so it
    can be handed to any Azure SDK client.
    """

    def __init__(self, sources=None, timeout=DEFAULT_TIMEOUT):
        if sources is None:
            sources = default_sources(timeout=timeout)
        self.sources = sorted(sources, key=lambda s: s.priority)
        # Per thread, so concurrent web requests never see each other's principal
        self._local = threading.local()

    @classmethod
    def from_connection_string(cls, connection_string, timeout=DEFAULT_TIMEOUT):
        """
        Build a resolver restricted by a connection string such as
        "RunAs=Developer; DeveloperTool=AzureCli".

        Supported forms:
            RunAs=App[;AppId=<client id>]
            RunAs=Developer;DeveloperTool=VisualStudio|AzureCli[;AzureCliPath=<path>]
            RunAs=CurrentUser
        TenantId=<tenant> may be added to any of them. An empty string
        yields the full chain.
        """
        settings = parse_connection_string(connection_string or "")
        tenant_id = settings.get("tenantid")
        run_as = settings.get("runas", "").lower()

        if not settings:
            return cls(timeout=timeout)
        if run_as == "app":
            sources = [ManagedIdentitySource(client_id=settings.get("appid"), timeout=timeout)]
        elif run_as == "developer":
            tool = settings.get("developertool", "").lower()
            if tool == "azurecli":
                sources = [CliSource(cli_path=settings.get("azureclipath"), tenant_id=tenant_id, timeout=timeout)]
            elif tool == "visualstudio":
                sources = [DeveloperToolSource(tenant_id=tenant_id, timeout=timeout)]
            else:
                raise ValueError(f"Unsupported DeveloperTool '{settings.get('developertool')}'")
        elif run_as == "currentuser":
            sources = [IntegratedAuthSource(tenant_id=tenant_id, timeout=timeout)]
        else:
            raise ValueError(f"Unsupported RunAs '{settings.get('runas')}' in connection string")
        return cls(sources=sources, timeout=timeout)

    @classmethod
    def from_environment(cls):
        timeout = float(os.environ.get("CREDENTIAL_TIMEOUT", DEFAULT_TIMEOUT))
        connection_string = os.environ.get(CONNECTION_STRING_ENV)
        if connection_string:
            return cls.from_connection_string(connection_string, timeout=timeout)

        return cls(
            sources=default_sources(
                client_id=os.environ.get("AZURE_CLIENT_ID"),
                tenant_id=os.environ.get("AZURE_TENANT_ID"),
                cli_path=os.environ.get("AZURE_CLI_PATH"),
                timeout=timeout,
            ),
            timeout=timeout,
        )

    def resolve(self, resource: str = KEY_VAULT_RESOURCE) -> ResolvedCredential:
        failures = []

        for source in self.sources:
            if not source.is_available():
                logger.info("Skipping %s: %s", source.kind, source.unavailable_reason)
                failures.append(SourceFailure(source.kind, source.unavailable_reason))
                continue

            try:
                token = source.get_token(resource)
            except CredentialSourceError as e:
                logger.info("%s failed: %s", source.kind, e.reason)
                failures.append(SourceFailure(source.kind, e.reason))
                continue
            except Exception as e:
                logger.warning("%s failed unexpectedly", source.kind, exc_info=True)
                failures.append(SourceFailure(source.kind, f"{type(e).__name__}: {e}"))
                continue

            principal = principal_from_token(token.token, source.principal_kind)
            self.last_resolution = ResolvedCredential(token=token, source=source.kind, principal=principal)
            logger.info("Obtained token for %s from %s (%s)", resource, source.kind, principal)
            return self.last_resolution

        raise NoCredentialAvailable(failures)

    @property
    def last_resolution(self) -> Optional[ResolvedCredential]:
        """The resolution made by the most recent resolve() on this thread."""
        return getattr(self._local, "resolution", None)

    @last_resolution.setter
    def last_resolution(self, resolution):
        self._local.resolution = resolution

    def clear(self):
        self.last_resolution = None

    @property
    def principal_used(self):
        if self.last_resolution is None:
            return None
        return self.last_resolution.principal

    def get_token(self, *scopes, claims=None, tenant_id=None, **kwargs) -> AccessToken:
        if not scopes:
            raise ValueError("get_token requires at least one scope")
        return self.resolve(scope_to_resource(scopes[0])).token

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
