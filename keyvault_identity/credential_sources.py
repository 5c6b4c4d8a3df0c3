"""
Credential sources tried by the resolver, one class per mechanism.

Each source exposes an availability predicate (is_available) that is cheap
and side-effect free, and an attempt (get_token) that talks to the
underlying mechanism. Every outbound call is bounded by the source timeout.
"""
import importlib.util
import json
import logging
import os
import shutil
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

import httpx
import msal
from azure.core.credentials import AccessToken
from azure.core.exceptions import AzureError
from azure.identity import ManagedIdentityCredential

from .errors import CredentialSourceError
from .models import PrincipalKind, SourceKind

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30
IMDS_PROBE_TIMEOUT = 1.0
IMDS_ENDPOINT = "http://169.254.169.254/metadata/identity/oauth2/token"
AUTHORITY_HOST = "https://login.microsoftonline.com"
USER_REALM_URL = AUTHORITY_HOST + "/common/userrealm/{username}?api-version=1.0"

# Well-known public client id of the Azure CLI, pre-consented in every tenant
PUBLIC_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"


def resource_to_scope(resource: str) -> str:
    return resource.rstrip("/") + "/.default"


def scope_to_resource(scope: str) -> str:
    if scope.endswith("/.default"):
        return scope[: -len("/.default")]
    return scope


def broker_installed() -> bool:
    return importlib.util.find_spec("pymsalruntime") is not None


def parse_expires_on(value) -> int:
    """Convert the expiry formats emitted by token tools to epoch seconds."""
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if text.isdigit():
        return int(text)
    # Azure CLI prints local time without an offset, e.g. "2024-05-01 10:15:00.000000"
    return int(datetime.fromisoformat(text.replace(" ", "T", 1)).timestamp())


class CredentialSource:
    """Base class for a named strategy that obtains a bearer token."""

    priority = 0
    kind: SourceKind = None
    principal_kind: PrincipalKind = PrincipalKind.USER

    def __init__(self, timeout=DEFAULT_TIMEOUT):
        self.timeout = timeout
        self.unavailable_reason = None

    def is_available(self) -> bool:
        raise NotImplementedError

    def get_token(self, resource: str) -> AccessToken:
        raise NotImplementedError

    def _unavailable(self, reason):
        self.unavailable_reason = reason
        return False

    def __repr__(self):
        return f"{type(self).__name__}(priority={self.priority}, kind={self.kind})"


class ManagedIdentitySource(CredentialSource):
    """Token from the platform identity endpoint (App Service, VM, AKS)."""

    priority = 1
    kind = SourceKind.MANAGED_IDENTITY
    principal_kind = PrincipalKind.APP

    def __init__(self, client_id=None, timeout=DEFAULT_TIMEOUT, probe_timeout=IMDS_PROBE_TIMEOUT):
        super().__init__(timeout)
        self.client_id = client_id
        self.probe_timeout = probe_timeout

    def is_available(self) -> bool:
        # App Service, Functions and Container Apps advertise the endpoint
        if os.environ.get("IDENTITY_ENDPOINT") or os.environ.get("MSI_ENDPOINT"):
            return True

        # VMs expose IMDS without an environment variable; any HTTP answer
        # (IMDS rejects requests without the Metadata header) means it exists
        try:
            httpx.get(IMDS_ENDPOINT, timeout=self.probe_timeout)
            return True
        except httpx.HTTPError as e:
            return self._unavailable(
                "no identity endpoint in environment and instance metadata "
                f"service unreachable ({type(e).__name__})"
            )

    def get_token(self, resource: str) -> AccessToken:
        try:
            with ManagedIdentityCredential(
                client_id=self.client_id,
                connection_timeout=self.timeout,
                read_timeout=self.timeout,
            ) as credential:
                return credential.get_token(resource_to_scope(resource))
        except AzureError as e:
            raise CredentialSourceError(self.kind, e.message) from e


class DeveloperToolSource(CredentialSource):
    """
    Token from the signed-in Visual Studio account.

    Visual Studio publishes a manifest listing token provider executables.
    Each provider prints {"access_token": ..., "expires_on": ...} for the
    resource passed on the command line.
    """

    priority = 2
    kind = SourceKind.DEVELOPER_TOOL

    def __init__(self, manifest_path=None, tenant_id=None, timeout=DEFAULT_TIMEOUT):
        super().__init__(timeout)
        self.manifest_path = Path(manifest_path) if manifest_path else self._default_manifest()
        self.tenant_id = tenant_id

    @staticmethod
    def _default_manifest() -> Optional[Path]:
        local_app_data = os.environ.get("LOCALAPPDATA")
        if not local_app_data:
            return None
        return Path(local_app_data) / ".IdentityService" / "AzureServiceAuth" / "tokenprovider.json"

    def _providers(self) -> list:
        with open(self.manifest_path, encoding="utf-8-sig") as f:
            manifest = json.load(f)
        providers = [
            p for p in manifest.get("TokenProviders", [])
            if p.get("Path") and Path(p["Path"]).is_file()
        ]
        return sorted(providers, key=lambda p: p.get("Preference", 0))

    def is_available(self) -> bool:
        if self.manifest_path is None or not self.manifest_path.is_file():
            return self._unavailable("developer tool not installed or no account signed in")
        try:
            providers = self._providers()
        except (OSError, ValueError) as e:
            return self._unavailable(f"token provider manifest unreadable: {e}")
        if not providers:
            return self._unavailable("token provider manifest lists no installed provider")
        return True

    def get_token(self, resource: str) -> AccessToken:
        try:
            providers = self._providers()
        except (OSError, ValueError) as e:
            raise CredentialSourceError(self.kind, f"token provider manifest unreadable: {e}") from e

        errors = []
        for provider in providers:
            command = [provider["Path"], *provider.get("Arguments", []), "--resource", resource]
            if self.tenant_id:
                command += ["--tenant", self.tenant_id]
            try:
                result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
            except subprocess.TimeoutExpired:
                errors.append(f"{provider['Path']} timed out after {self.timeout}s")
                continue
            except OSError as e:
                errors.append(f"{provider['Path']} could not be started: {e}")
                continue

            if result.returncode != 0:
                errors.append(f"{provider['Path']} exited with {result.returncode}: {result.stderr.strip()}")
                continue
            try:
                payload = json.loads(result.stdout)
                return AccessToken(payload["access_token"], parse_expires_on(payload["expires_on"]))
            except (ValueError, KeyError) as e:
                errors.append(f"{provider['Path']} returned an unexpected response: {e}")

        raise CredentialSourceError(self.kind, "; ".join(errors) or "no token provider succeeded")


class CliSource(CredentialSource):
    """Token from the active Azure CLI login session."""

    priority = 3
    kind = SourceKind.CLI

    def __init__(self, cli_path=None, tenant_id=None, timeout=DEFAULT_TIMEOUT):
        super().__init__(timeout)
        self.cli_path = cli_path
        self.tenant_id = tenant_id

    def locate(self) -> Optional[str]:
        if self.cli_path:
            return self.cli_path if Path(self.cli_path).is_file() else None
        return shutil.which("az")

    def is_available(self) -> bool:
        if self.locate() is None:
            where = self.cli_path or "PATH"
            return self._unavailable(f"Azure CLI not installed (looked in {where})")
        return True

    def get_token(self, resource: str) -> AccessToken:
        command = [self.locate(), "account", "get-access-token", "--resource", resource, "--output", "json"]
        if self.tenant_id:
            command += ["--tenant", self.tenant_id]

        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            raise CredentialSourceError(self.kind, f"az timed out after {self.timeout}s") from e
        except OSError as e:
            raise CredentialSourceError(self.kind, f"az could not be started: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "az login" in stderr:
                raise CredentialSourceError(self.kind, "no active Azure CLI session (run 'az login')")
            raise CredentialSourceError(self.kind, stderr or f"az exited with {result.returncode}")

        try:
            payload = json.loads(result.stdout)
            expires_on = payload.get("expires_on") or payload["expiresOn"]
            return AccessToken(payload["accessToken"], parse_expires_on(expires_on))
        except (ValueError, KeyError) as e:
            raise CredentialSourceError(self.kind, f"unexpected az output: {e}") from e


class IntegratedAuthSource(CredentialSource):
    """
    Token for the signed-in domain account of a domain joined machine
    whose domain is federated with Entra ID. Sign-in goes through the
    operating system broker without prompting.
    """

    priority = 4
    kind = SourceKind.INTEGRATED_AUTH

    def __init__(self, tenant_id=None, client_id=PUBLIC_CLIENT_ID, timeout=DEFAULT_TIMEOUT):
        super().__init__(timeout)
        self.tenant_id = tenant_id
        self.client_id = client_id

    @staticmethod
    def username() -> Optional[str]:
        domain = os.environ.get("USERDNSDOMAIN")
        user = os.environ.get("USERNAME")
        if not domain or not user:
            return None
        return f"{user}@{domain.lower()}"

    def is_available(self) -> bool:
        username = self.username()
        if username is None:
            return self._unavailable("machine is not joined to a domain")
        # Without the OS broker msal falls back to a browser sign-in
        if not broker_installed():
            return self._unavailable("operating system authentication broker (pymsalruntime) not installed")

        try:
            response = httpx.get(USER_REALM_URL.format(username=username), timeout=self.timeout)
            response.raise_for_status()
            realm = response.json()
        except (httpx.HTTPError, ValueError) as e:
            return self._unavailable(f"user realm discovery failed: {e}")

        if realm.get("account_type") != "Federated":
            domain = username.split("@", 1)[1]
            return self._unavailable(f"domain {domain} is not federated with the identity provider")
        return True

    def get_token(self, resource: str) -> AccessToken:
        try:
            app = msal.PublicClientApplication(
                self.client_id,
                authority=f"{AUTHORITY_HOST}/{self.tenant_id or 'organizations'}",
                enable_broker_on_windows=True,
                timeout=self.timeout,
            )
            result = app.acquire_token_interactive(
                [resource_to_scope(resource)],
                prompt="none",
                login_hint=self.username(),
                parent_window_handle=app.CONSOLE_WINDOW_HANDLE,
                timeout=self.timeout,
            )
        except (ValueError, OSError) as e:
            raise CredentialSourceError(self.kind, f"{type(e).__name__}: {e}") from e

        if "access_token" not in result:
            reason = result.get("error_description") or result.get("error") or "sign-in failed"
            raise CredentialSourceError(self.kind, reason)
        return AccessToken(result["access_token"], int(time.time()) + int(result["expires_in"]))
