"""
Exceptions raised by the credential resolver, secret retrieval and
the rotation job.
"""
from azure.core.exceptions import ClientAuthenticationError


class CredentialSourceError(Exception):
    """A single credential source could not produce a token."""

    def __init__(self, kind, reason):
        super().__init__(f"{kind}: {reason}")
        self.kind = kind
        self.reason = reason


class NoCredentialAvailable(ClientAuthenticationError):
    """Every credential source was skipped or failed."""

    def __init__(self, failures):
        self.failures = list(failures)
        lines = [f"  - {f.kind}: {f.reason}" for f in self.failures]
        message = "No credential source could obtain a token. Attempts:\n" + "\n".join(lines)
        super().__init__(message=message)


class SecretRetrievalFailed(Exception):
    """A vault call failed after a credential was obtained."""

    def __init__(self, secret_name, reason, status_code=None):
        super().__init__(f"Could not retrieve secret '{secret_name}': {reason}")
        self.secret_name = secret_name
        self.reason = reason
        self.status_code = status_code


class SecretNotFound(SecretRetrievalFailed):
    pass


class SecretAccessDenied(SecretRetrievalFailed):
    """The credential was valid but lacks permission on the vault."""


class RotationError(Exception):
    """
    A rotation run failed.

    stage is one of "authenticate", "datastore" or "vault". When partial is
    True the datastore already holds the new value but the vault does not.
    """

    def __init__(self, stage, reason, partial=False):
        super().__init__(f"Rotation failed at {stage}: {reason}")
        self.stage = stage
        self.reason = reason
        self.partial = partial


class RotationInProgress(RotationError):
    def __init__(self):
        super().__init__("schedule", "a previous run is still in progress")
