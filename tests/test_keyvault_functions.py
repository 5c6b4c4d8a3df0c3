"""Tests for Key Vault secret functions."""

from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
)

from keyvault_identity.errors import (
    NoCredentialAvailable,
    SecretAccessDenied,
    SecretNotFound,
    SecretRetrievalFailed,
)
from keyvault_identity.keyvault_functions import (
    SecretRecord,
    create_secret_version,
    get_vault_url,
    retrieve_secret,
    vault_url_for,
)
from keyvault_identity.models import SourceFailure, SourceKind

VAULT_URL = "https://contoso-vault.vault.azure.net"


def http_error(status_code, message="error"):
    error = HttpResponseError(message=message)
    error.status_code = status_code
    return error


@pytest.fixture
def secret_client():
    with patch("keyvault_identity.keyvault_functions.SecretClient") as client_cls:
        client = client_cls.return_value
        client.vault_url = VAULT_URL
        yield client


class TestVaultUrl:
    def test_vault_url_for(self):
        assert vault_url_for("contoso-vault") == VAULT_URL

    def test_explicit_url(self, monkeypatch):
        monkeypatch.setenv("KEY_VAULT_URL", "https://other.vault.azure.net")
        assert get_vault_url() == "https://other.vault.azure.net"

    def test_from_vault_name(self, monkeypatch):
        monkeypatch.setenv("KEY_VAULT_NAME", "contoso-vault")
        assert get_vault_url() == VAULT_URL

    def test_missing(self):
        with pytest.raises(ValueError, match="KEY_VAULT_URL"):
            get_vault_url()


class TestRetrieveSecret:
    """Tests for retrieve_secret."""

    def test_success(self, secret_client):
        secret = MagicMock()
        secret.name = "secret"
        secret.value = "s3cr3t-value"
        secret.properties.version = "v1"
        secret_client.get_secret.return_value = secret

        record = retrieve_secret("secret", vault_url=VAULT_URL, credential=object())

        secret_client.get_secret.assert_called_once_with("secret")
        assert record == SecretRecord(name="secret", value="s3cr3t-value", vault_url=VAULT_URL, version="v1")

    def test_not_found(self, secret_client):
        secret_client.get_secret.side_effect = ResourceNotFoundError(message="SecretNotFound")
        with pytest.raises(SecretNotFound) as exc_info:
            retrieve_secret("missing", vault_url=VAULT_URL, credential=object())
        assert exc_info.value.status_code == 404

    @pytest.mark.parametrize("status_code", [401, 403])
    def test_access_denied(self, secret_client, status_code):
        """Permission errors are a distinct failure, not a credential fall-through."""
        secret_client.get_secret.side_effect = http_error(status_code, "Forbidden")
        with pytest.raises(SecretAccessDenied) as exc_info:
            retrieve_secret("secret", vault_url=VAULT_URL, credential=object())
        assert exc_info.value.status_code == status_code

    def test_client_authentication_error_is_access_denied(self, secret_client):
        secret_client.get_secret.side_effect = ClientAuthenticationError(message="Unauthorized")
        with pytest.raises(SecretAccessDenied):
            retrieve_secret("secret", vault_url=VAULT_URL, credential=object())

    def test_server_error(self, secret_client):
        secret_client.get_secret.side_effect = http_error(500, "Internal error")
        with pytest.raises(SecretRetrievalFailed) as exc_info:
            retrieve_secret("secret", vault_url=VAULT_URL, credential=object())
        assert not isinstance(exc_info.value, SecretAccessDenied)

    def test_network_error(self, secret_client):
        secret_client.get_secret.side_effect = ServiceRequestError(message="Name resolution failed")
        with pytest.raises(SecretRetrievalFailed, match="unreachable"):
            retrieve_secret("secret", vault_url=VAULT_URL, credential=object())

    def test_no_credential_propagates(self, secret_client):
        error = NoCredentialAvailable([SourceFailure(SourceKind.CLI, "not installed")])
        secret_client.get_secret.side_effect = error
        with pytest.raises(NoCredentialAvailable):
            retrieve_secret("secret", vault_url=VAULT_URL, credential=object())


class TestCreateSecretVersion:
    def test_sets_new_version(self, secret_client):
        stored = MagicMock()
        stored.name = "sql-admin"
        stored.properties.version = "v2"
        secret_client.set_secret.return_value = stored

        record = create_secret_version("sql-admin", "new-value", vault_url=VAULT_URL, credential=object(),
                                       tags={"server": "sql1"})

        secret_client.set_secret.assert_called_once_with(
            "sql-admin", "new-value", content_type="text/plain", tags={"server": "sql1"}
        )
        assert record.version == "v2"
        assert record.value == "new-value"


class TestSecretRecord:
    def test_masked(self):
        record = SecretRecord(name="n", value="abcdefgh", vault_url=VAULT_URL)
        assert record.masked() == "abcd****"
        assert SecretRecord(name="n", value="abc", vault_url=VAULT_URL).masked() == "***"

    def test_repr_hides_value(self):
        record = SecretRecord(name="n", value="super-secret", vault_url=VAULT_URL)
        assert "super-secret" not in repr(record)
