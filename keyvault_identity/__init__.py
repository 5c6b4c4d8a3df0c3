"""
Access Azure Key Vault with a managed identity and rotate secrets into it.
"""
from .errors import (
    CredentialSourceError,
    NoCredentialAvailable,
    RotationError,
    RotationInProgress,
    SecretAccessDenied,
    SecretNotFound,
    SecretRetrievalFailed,
)
from .models import Principal, PrincipalKind, ResolvedCredential, SourceFailure, SourceKind
from .resolver import CredentialResolver
from .rotation_functions import RotationConfig, RotationJob, generate_secret, rotate

__version__ = "1.0.0"

__all__ = [
    "CredentialResolver",
    "CredentialSourceError",
    "NoCredentialAvailable",
    "Principal",
    "PrincipalKind",
    "ResolvedCredential",
    "RotationConfig",
    "RotationError",
    "RotationInProgress",
    "RotationJob",
    "SecretAccessDenied",
    "SecretNotFound",
    "SecretRetrievalFailed",
    "SourceFailure",
    "SourceKind",
    "generate_secret",
    "rotate",
]
