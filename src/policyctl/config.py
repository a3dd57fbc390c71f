"""Configuration management with validation.

Configuration is loaded from environment variables and validated at load time
so a misconfigured pipeline step fails before it touches state or Azure.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class LogFormat(str, Enum):
    """Supported log output formats."""

    JSON = "json"
    TEXT = "text"


class StateBackendKind(str, Enum):
    """Where the state document and its lock live."""

    LOCAL = "local"
    AZURE_BLOB = "azureblob"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Defaults
DEFAULT_STACK_FILE = "policies/stack.yaml"
DEFAULT_STATE_DIR = ".policyctl"
STATE_FILE_NAME = "policy.tfstate.json"
LOCK_FILE_NAME = "policy.tfstate.lock"
DEFAULT_STATE_BLOB = STATE_FILE_NAME

# Security constraints - enforced limits to prevent abuse
MAX_RULE_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max rule document
MAX_STACK_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack manifest
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024
MAX_POLICY_NAME_LENGTH = 128
MAX_ASSIGNMENT_NAME_LENGTH = 64
MAX_MG_ASSIGNMENT_NAME_LENGTH = 24
MAX_DISPLAY_NAME_LENGTH = 128
MAX_RESOURCES_PER_STACK = 200

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_CONTAINER_NAME_PATTERN = r"^[a-z0-9](?!.*--)[a-z0-9-]{1,61}[a-z0-9]$"


@dataclass(frozen=True)
class Config:
    """Driver configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    Credentials are deliberately not part of Config: they are resolved by
    the init step (see security.Credentials) so that their absence surfaces
    as an authentication failure at init.
    """

    stack_file: Path = field(default_factory=lambda: Path(DEFAULT_STACK_FILE))
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))

    # Remote state in Azure Blob Storage, locked with a blob lease
    state_backend: StateBackendKind = StateBackendKind.LOCAL
    state_account_url: str | None = None
    state_container: str | None = None
    state_blob: str = DEFAULT_STATE_BLOB

    # Default target when a stack entry does not name a scope
    subscription_id: str | None = None

    # Acquire a token during init to fail fast on bad credentials
    verify_credentials: bool = True

    log_format: LogFormat = LogFormat.JSON
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not str(self.stack_file):
            errors.append("POLICYCTL_STACK_FILE is required")

        if not str(self.state_dir):
            errors.append("POLICYCTL_STATE_DIR is required")
        elif self.state_dir.exists() and not self.state_dir.is_dir():
            errors.append(f"POLICYCTL_STATE_DIR is not a directory: {self.state_dir}")

        if self.state_backend == StateBackendKind.AZURE_BLOB:
            if not self.state_account_url:
                errors.append("POLICYCTL_STATE_ACCOUNT_URL is required for the azureblob backend")
            elif not self.state_account_url.startswith("https://"):
                errors.append(
                    f"POLICYCTL_STATE_ACCOUNT_URL must be an https URL: {self.state_account_url}"
                )
            if not self.state_container:
                errors.append("POLICYCTL_STATE_CONTAINER is required for the azureblob backend")
            elif not re.match(VALID_CONTAINER_NAME_PATTERN, self.state_container):
                errors.append(
                    f"POLICYCTL_STATE_CONTAINER is not a valid container name: "
                    f"{self.state_container}"
                )
            if not self.state_blob:
                errors.append("POLICYCTL_STATE_BLOB must not be empty")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"ARM_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"POLICYCTL_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def state_file(self) -> Path:
        """Path of the state document."""
        return self.state_dir / STATE_FILE_NAME

    @property
    def lock_file(self) -> Path:
        """Path of the state lock file."""
        return self.state_dir / LOCK_FILE_NAME

    @property
    def default_scope(self) -> str | None:
        """Subscription scope used when a stack entry omits one."""
        if not self.subscription_id:
            return None
        return f"/subscriptions/{self.subscription_id.lower()}"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            POLICYCTL_STACK_FILE: Stack manifest path (default: policies/stack.yaml)
            POLICYCTL_STATE_DIR: Directory holding state and lock (default: .policyctl)
            POLICYCTL_STATE_BACKEND: local or azureblob (default: local)
            POLICYCTL_STATE_ACCOUNT_URL: Blob endpoint, e.g. https://acct.blob.core.windows.net
            POLICYCTL_STATE_CONTAINER: Container holding the state blob
            POLICYCTL_STATE_BLOB: State blob name (default: policy.tfstate.json)
            POLICYCTL_VERIFY_CREDENTIALS: Acquire a token during init (default: true)
            POLICYCTL_LOG_FORMAT: json or text (default: json)
            POLICYCTL_LOG_LEVEL: Root log level (default: INFO)
            ARM_SUBSCRIPTION_ID: Subscription used as default scope
        """

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_log_format(value: str | None) -> LogFormat:
            if not value:
                return LogFormat.JSON
            try:
                return LogFormat(value.lower())
            except ValueError as e:
                valid = [f.value for f in LogFormat]
                raise ConfigurationError(
                    f"POLICYCTL_LOG_FORMAT must be one of {valid}: {value}"
                ) from e

        def get_state_backend(value: str | None) -> StateBackendKind:
            if not value:
                return StateBackendKind.LOCAL
            try:
                return StateBackendKind(value.lower())
            except ValueError as e:
                valid = [b.value for b in StateBackendKind]
                raise ConfigurationError(
                    f"POLICYCTL_STATE_BACKEND must be one of {valid}: {value}"
                ) from e

        return cls(
            stack_file=Path(os.environ.get("POLICYCTL_STACK_FILE", DEFAULT_STACK_FILE)),
            state_dir=Path(os.environ.get("POLICYCTL_STATE_DIR", DEFAULT_STATE_DIR)),
            state_backend=get_state_backend(os.environ.get("POLICYCTL_STATE_BACKEND")),
            state_account_url=os.environ.get("POLICYCTL_STATE_ACCOUNT_URL") or None,
            state_container=os.environ.get("POLICYCTL_STATE_CONTAINER") or None,
            state_blob=os.environ.get("POLICYCTL_STATE_BLOB", DEFAULT_STATE_BLOB),
            subscription_id=os.environ.get("ARM_SUBSCRIPTION_ID") or None,
            verify_credentials=get_bool("POLICYCTL_VERIFY_CREDENTIALS", True),
            log_format=get_log_format(os.environ.get("POLICYCTL_LOG_FORMAT")),
            log_level=os.environ.get("POLICYCTL_LOG_LEVEL", "INFO").upper(),
        )
