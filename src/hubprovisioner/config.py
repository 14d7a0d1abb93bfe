"""Configuration management with validation.

All bounds are enforced at load time so an invalid environment fails before
any graph is built or any Azure call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_CONCURRENCY = 4
MAX_CONCURRENCY_LIMIT = 32

DEFAULT_MAX_CONFLICT_RETRIES = 5
DEFAULT_MAX_THROTTLE_RETRIES = 5
MAX_RETRIES_LIMIT = 20
RETRY_BACKOFF_BASE_SECONDS = 5.0
MAX_RETRY_AFTER_SECONDS = 300.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800

MAX_PARAMS_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max parameter file
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_GRAPH_NODES = 800  # ARM limit for resources per deployment

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry behavior for transient cloud errors."""

    max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES
    max_throttle_retries: int = DEFAULT_MAX_THROTTLE_RETRIES
    backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS
    max_retry_after_seconds: float = MAX_RETRY_AFTER_SECONDS


@dataclass(frozen=True)
class Config:
    """Provisioner configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    subscription_id: str
    resource_group: str
    location: str

    client_id: str | None = None

    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    dry_run: bool = False

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.resource_group:
            errors.append("AZURE_RESOURCE_GROUP is required")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"AZURE_RESOURCE_GROUP exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group):
            errors.append(f"AZURE_RESOURCE_GROUP contains invalid characters: {self.resource_group}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not 1 <= self.max_concurrency <= MAX_CONCURRENCY_LIMIT:
            errors.append(f"MAX_CONCURRENCY must be between 1 and {MAX_CONCURRENCY_LIMIT}")

        if self.operation_timeout_seconds < 1:
            errors.append("OPERATION_TIMEOUT_SECONDS must be positive")

        for name, value in (
            ("MAX_CONFLICT_RETRIES", self.retry.max_conflict_retries),
            ("MAX_THROTTLE_RETRIES", self.retry.max_throttle_retries),
        ):
            if not 0 <= value <= MAX_RETRIES_LIMIT:
                errors.append(f"{name} must be between 0 and {MAX_RETRIES_LIMIT}")

        if self.retry.backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target subscription
            AZURE_RESOURCE_GROUP: Resource group holding the hub resources
            AZURE_LOCATION: Default region
            AZURE_CLIENT_ID: User-assigned managed identity client ID (optional)
            MAX_CONCURRENCY: Parallel API calls per stage (default: 4)
            OPERATION_TIMEOUT_SECONDS: Timeout per create-or-update (default: 1800)
            MAX_CONFLICT_RETRIES: Retries on 409 Conflict (default: 5)
            MAX_THROTTLE_RETRIES: Retries on 429 Throttled (default: 5)
            RETRY_BACKOFF_BASE_SECONDS: Base for exponential backoff (default: 5)
            MAX_RETRY_AFTER_SECONDS: Cap for provider retry-after hints (default: 300)
            DRY_RUN: If "true", compute the plan without applying (default: false)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            resource_group=os.environ.get("AZURE_RESOURCE_GROUP", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            max_concurrency=get_int("MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            operation_timeout_seconds=get_int(
                "OPERATION_TIMEOUT_SECONDS", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            retry=RetryPolicy(
                max_conflict_retries=get_int("MAX_CONFLICT_RETRIES", DEFAULT_MAX_CONFLICT_RETRIES),
                max_throttle_retries=get_int("MAX_THROTTLE_RETRIES", DEFAULT_MAX_THROTTLE_RETRIES),
                backoff_base_seconds=get_float(
                    "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
                ),
                max_retry_after_seconds=get_float(
                    "MAX_RETRY_AFTER_SECONDS", MAX_RETRY_AFTER_SECONDS
                ),
            ),
            dry_run=get_bool("DRY_RUN", False),
        )
