"""Credential resolution for the service principal the pipeline runs as.

The pipeline injects four opaque secrets as environment variables:

    ARM_CLIENT_ID, ARM_CLIENT_SECRET, ARM_SUBSCRIPTION_ID, ARM_TENANT_ID

SECURITY INVARIANTS:
1. Secret values are never logged; only variable names and truncated ids
2. A missing variable is an authentication failure at init, never a default
3. Authorization failures from Azure are surfaced, never retried
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import ClientSecretCredential

logger = logging.getLogger(__name__)

# Token audience for Azure Resource Manager
ARM_SCOPE = "https://management.azure.com/.default"

REQUIRED_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "ARM_CLIENT_ID",
    "ARM_CLIENT_SECRET",
    "ARM_SUBSCRIPTION_ID",
    "ARM_TENANT_ID",
)


class AuthenticationError(Exception):
    """Raised when credentials are missing or cannot obtain a token."""

    pass


class AuthorizationError(Exception):
    """Raised when the identity lacks permission at the target scope.

    Fatal and never retried: granting the role is a human action.
    """

    pass


def _redact(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else value


@dataclass(frozen=True)
class Credentials:
    """Service principal credentials. `repr` never shows the secret."""

    client_id: str
    client_secret: str
    subscription_id: str
    tenant_id: str

    def __repr__(self) -> str:
        return (
            f"Credentials(client_id={_redact(self.client_id)!r}, client_secret='***', "
            f"subscription_id={self.subscription_id!r}, tenant_id={_redact(self.tenant_id)!r})"
        )

    @classmethod
    def from_env(cls) -> Credentials:
        """Read the four ARM_* secrets from the environment.

        Raises:
            AuthenticationError: Naming every missing variable.
        """
        missing = [name for name in REQUIRED_CREDENTIAL_ENV_VARS if not os.environ.get(name)]
        if missing:
            logger.error(
                "Credential environment variables missing",
                extra={"security_event": "credentials_missing", "missing": missing},
            )
            raise AuthenticationError(
                f"Missing credential environment variables: {', '.join(missing)}"
            )

        return cls(
            client_id=os.environ["ARM_CLIENT_ID"],
            client_secret=os.environ["ARM_CLIENT_SECRET"],
            subscription_id=os.environ["ARM_SUBSCRIPTION_ID"],
            tenant_id=os.environ["ARM_TENANT_ID"],
        )


def get_client_secret_credential(
    credentials: Credentials,
    *,
    verify: bool = True,
) -> ClientSecretCredential:
    """Build a ClientSecretCredential, optionally proving it can get a token.

    Args:
        credentials: Resolved service principal credentials.
        verify: Acquire an ARM token now so bad secrets fail at init.

    Returns:
        Credential usable by Azure SDK clients.

    Raises:
        AuthenticationError: If token acquisition fails.
    """
    credential = ClientSecretCredential(
        tenant_id=credentials.tenant_id,
        client_id=credentials.client_id,
        client_secret=credentials.client_secret,
    )

    if verify:
        try:
            credential.get_token(ARM_SCOPE)
        except ClientAuthenticationError as e:
            logger.error(
                "Token acquisition failed",
                extra={
                    "security_event": "auth_failed",
                    "client_id": _redact(credentials.client_id),
                },
            )
            raise AuthenticationError(f"Authentication failed: {e.message}") from e

    logger.info(
        "Using service principal credential",
        extra={"client_id": _redact(credentials.client_id), "verified": verify},
    )
    return credential


def log_security_audit_event(
    event_type: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event for SIEM ingestion."""
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )
