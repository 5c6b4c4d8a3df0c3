"""
Data types shared by the credential resolver and the web controller.
"""
import base64
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from azure.core.credentials import AccessToken

logger = logging.getLogger(__name__)


class SourceKind(str, Enum):
    MANAGED_IDENTITY = "managed-identity"
    DEVELOPER_TOOL = "developer-tool-session"
    CLI = "cli-session"
    INTEGRATED_AUTH = "integrated-auth"

    def __str__(self):
        return self.value


class PrincipalKind(str, Enum):
    USER = "User"
    APP = "App"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class Principal:
    """The identity that was actually used to authenticate."""
    kind: PrincipalKind
    name: Optional[str] = None
    object_id: Optional[str] = None
    tenant_id: Optional[str] = None

    def __str__(self):
        return f"Type: {self.kind}, Name: {self.name or 'unknown'}, TenantId: {self.tenant_id or 'unknown'}"


@dataclass(frozen=True)
class SourceFailure:
    kind: SourceKind
    reason: str


@dataclass(frozen=True)
class ResolvedCredential:
    token: AccessToken
    source: SourceKind
    principal: Principal


def decode_token_claims(token: str) -> dict:
    """
    Read the payload of a JWT access token without validating it.

    The claims are only used for display, so a token that is not a JWT
    yields an empty dict instead of an error.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return {}
    payload = parts[1]
    payload += "=" * (-len(payload) % 4)
    try:
        return json.loads(base64.urlsafe_b64decode(payload.encode("ascii")))
    except (ValueError, UnicodeEncodeError):
        logger.debug("Access token payload is not JSON; principal details unavailable")
        return {}


def principal_from_token(token: str, kind: PrincipalKind) -> Principal:
    claims = decode_token_claims(token)
    if kind == PrincipalKind.APP:
        name = claims.get("appid") or claims.get("azp")
    else:
        name = claims.get("upn") or claims.get("unique_name") or claims.get("preferred_username")
    return Principal(
        kind=kind,
        name=name,
        object_id=claims.get("oid"),
        tenant_id=claims.get("tid"),
    )
