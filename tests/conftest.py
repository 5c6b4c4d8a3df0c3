"""Pytest configuration and fixtures."""

import base64
import json

import pytest
from azure.core.credentials import AccessToken

from keyvault_identity.credential_sources import CredentialSource
from keyvault_identity.errors import CredentialSourceError
from keyvault_identity.models import PrincipalKind, SourceKind

IDENTITY_ENV_VARS = [
    "IDENTITY_ENDPOINT",
    "MSI_ENDPOINT",
    "USERDNSDOMAIN",
    "USERNAME",
    "LOCALAPPDATA",
    "AZURE_CLIENT_ID",
    "AZURE_TENANT_ID",
    "AZURE_CLI_PATH",
    "AZURE_SERVICES_AUTH_CONNECTION_STRING",
    "CREDENTIAL_TIMEOUT",
    "KEY_VAULT_URL",
    "KEY_VAULT_NAME",
    "KEY_VAULT_SECRET_NAME",
    "AZURE_SUBSCRIPTION_ID",
    "SQL_RESOURCE_GROUP",
    "SQL_SERVER_NAME",
    "ROTATION_SECRET_NAME",
    "ROTATION_SECRET_LENGTH",
    "AUTOMATION_CLIENT_ID",
]


def make_jwt(claims: dict) -> str:
    """Build an unsigned JWT carrying the given claims."""

    def encode(part):
        return base64.urlsafe_b64encode(json.dumps(part).encode()).decode().rstrip("=")

    return f"{encode({'alg': 'none', 'typ': 'JWT'})}.{encode(claims)}.signature"


class FakeSource(CredentialSource):
    """In-memory credential source that records when it is consulted."""

    def __init__(self, kind, priority, principal_kind=PrincipalKind.USER,
                 available=True, token=None, error=None, log=None):
        super().__init__(timeout=1)
        self.kind = kind
        self.priority = priority
        self.principal_kind = principal_kind
        self.available = available
        self.token = token
        self.error = error
        self.log = log if log is not None else []

    def is_available(self):
        self.log.append(("available", self.kind))
        if not self.available:
            return self._unavailable(f"{self.kind} not present")
        return True

    def get_token(self, resource):
        self.log.append(("attempt", self.kind))
        if self.error:
            raise CredentialSourceError(self.kind, self.error)
        return self.token


SOURCE_LAYOUT = [
    (SourceKind.MANAGED_IDENTITY, 1, PrincipalKind.APP),
    (SourceKind.DEVELOPER_TOOL, 2, PrincipalKind.USER),
    (SourceKind.CLI, 3, PrincipalKind.USER),
    (SourceKind.INTEGRATED_AUTH, 4, PrincipalKind.USER),
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep the host's Azure environment from leaking into tests."""
    for name in IDENTITY_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def app_token():
    return AccessToken(make_jwt({"appid": "app-123", "oid": "obj-1", "tid": "tenant-1"}), 4102444800)


@pytest.fixture
def user_token():
    return AccessToken(make_jwt({"upn": "alice@contoso.com", "oid": "obj-2", "tid": "tenant-1"}), 4102444800)


@pytest.fixture
def fake_sources(app_token, user_token):
    """Factory for the four sources; only the given kinds are available."""

    def build(available=(), failing=(), log=None):
        log = log if log is not None else []
        sources = []
        for kind, priority, principal_kind in SOURCE_LAYOUT:
            token = app_token if principal_kind == PrincipalKind.APP else user_token
            sources.append(FakeSource(
                kind,
                priority,
                principal_kind,
                available=kind in available,
                token=token,
                error="mechanism failed" if kind in failing else None,
                log=log,
            ))
        return sources

    return build
