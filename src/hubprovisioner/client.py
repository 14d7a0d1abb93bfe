"""Cloud resource API adapter.

The engine talks to the control plane through the small CloudResourceClient
protocol. AzureResourceClient implements it with the generic resources API of
ResourceManagementClient, addressing every resource by its ARM id, and
classifies SDK failures into the engine's CloudErrorKind taxonomy.
"""

from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

from azure.core.credentials import TokenCredential
from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient

from .errors import CloudApiError, CloudErrorKind
from .models import get_kind

logger = logging.getLogger(__name__)

# ARM error codes that signal a concurrent or not-yet-settled write rather
# than a bad request, whatever the HTTP status
CONFLICT_ERROR_CODES: frozenset[str] = frozenset(
    {
        "AnotherOperationInProgress",
        "Conflict",
        "ReferencedResourceNotProvisioned",
        "RetryableError",
    }
)

THROTTLED_ERROR_CODES: frozenset[str] = frozenset(
    {"TooManyRequests", "SubscriptionRequestsThrottled"}
)

# 409 codes that retrying cannot fix
PERMANENT_CONFLICT_CODES: frozenset[str] = frozenset(
    {"RoleAssignmentExists", "RoleAssignmentUpdateNotPermitted"}
)

_BODY_FIELDS = ("location", "properties", "zones", "tags")

_SKU_FIELDS = ("name", "tier", "size", "family", "model", "capacity")


@dataclass
class WriteResult:
    """Result of a create-or-update call."""

    resource_id: str
    document: dict[str, Any] = field(default_factory=dict)


class CloudResourceClient(Protocol):
    """What the engine needs from the control plane."""

    def get(self, kind: str, resource_id: str) -> dict[str, Any] | None:
        """Return the live document, or None if the resource does not exist."""
        ...

    def create_or_update(
        self, kind: str, resource_id: str, document: dict[str, Any]
    ) -> WriteResult:
        """Idempotently create or replace a resource. Raises CloudApiError."""
        ...


def _parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given in seconds or as an HTTP date."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max((when - datetime.now(UTC)).total_seconds(), 0.0)


def classify_error(error: AzureError) -> CloudApiError:
    """Map an Azure SDK exception onto the engine's error taxonomy."""
    if not isinstance(error, HttpResponseError):
        return CloudApiError(CloudErrorKind.UNKNOWN, str(error))

    status = error.status_code
    code = getattr(getattr(error, "error", None), "code", None)
    message = str(error.message if getattr(error, "message", None) else error)

    if isinstance(error, ResourceNotFoundError) or status == 404:
        return CloudApiError(CloudErrorKind.NOT_FOUND, message, status_code=status)

    if status == 429 or code in THROTTLED_ERROR_CODES:
        headers = getattr(getattr(error, "response", None), "headers", None) or {}
        retry_after = _parse_retry_after(headers.get("Retry-After"))
        return CloudApiError(
            CloudErrorKind.THROTTLED, message, retry_after_seconds=retry_after, status_code=status
        )

    if code in PERMANENT_CONFLICT_CODES:
        return CloudApiError(
            CloudErrorKind.VALIDATION_REJECTED, message, status_code=status, error_code=code
        )

    if status == 409 or code in CONFLICT_ERROR_CODES:
        return CloudApiError(CloudErrorKind.CONFLICT, message, status_code=status, error_code=code)

    if status in (400, 422):
        return CloudApiError(
            CloudErrorKind.VALIDATION_REJECTED, message, status_code=status, error_code=code
        )

    return CloudApiError(CloudErrorKind.UNKNOWN, message, status_code=status, error_code=code)


def _raw_json(pipeline_response: Any, _deserialized: Any, _headers: Any) -> dict[str, Any]:
    """Response hook returning the body as sent by ARM.

    GenericResource drops fields it does not model, such as zones, so live
    state is compared against the raw document instead.
    """
    text = pipeline_response.http_response.text()
    return json.loads(text) if text else {}


def _request_body(document: dict[str, Any]) -> dict[str, Any]:
    body = {k: document[k] for k in _BODY_FIELDS if document.get(k) is not None}
    sku = document.get("sku")
    if sku:
        body["sku"] = {k: sku[k] for k in _SKU_FIELDS if k in sku}
    return body


class AzureResourceClient:
    """CloudResourceClient backed by the ARM generic resources API."""

    def __init__(
        self,
        credential: TokenCredential,
        subscription_id: str,
        operation_timeout_seconds: int,
    ) -> None:
        self._client = ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )
        self._timeout = operation_timeout_seconds

    def get(self, kind: str, resource_id: str) -> dict[str, Any] | None:
        api_version = get_kind(kind).api_version
        try:
            resource = self._client.resources.get_by_id(resource_id, api_version, cls=_raw_json)
        except AzureError as e:
            classified = classify_error(e)
            if classified.kind == CloudErrorKind.NOT_FOUND:
                return None
            raise classified from e
        return resource

    def create_or_update(
        self, kind: str, resource_id: str, document: dict[str, Any]
    ) -> WriteResult:
        api_version = get_kind(kind).api_version
        body = json.dumps(_request_body(document)).encode("utf-8")

        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                resource_id,
                api_version,
                io.BytesIO(body),
                content_type="application/json",
                cls=_raw_json,
            )
            resource = poller.result(timeout=self._timeout)
        except AzureError as e:
            classified = classify_error(e)
            if kind == "roleAssignment" and classified.error_code == "RoleAssignmentExists":
                # Same principal, role and scope already granted under another name
                logger.info(
                    "Role assignment already exists", extra={"resource_id": resource_id}
                )
                return WriteResult(resource_id=resource_id)
            raise classified from e

        if not poller.done():
            raise CloudApiError(
                CloudErrorKind.UNKNOWN,
                f"Create-or-update of {resource_id} did not finish within {self._timeout}s",
            )

        logger.debug("Resource written", extra={"resource_id": resource_id, "kind": kind})
        return WriteResult(
            resource_id=resource_id,
            document=resource if isinstance(resource, dict) else {},
        )
