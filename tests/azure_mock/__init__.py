"""Cloud resource API mock for integration testing.

This module provides an in-memory implementation of the CloudResourceClient
protocol that enables apply testing without Azure connectivity.

Key Features:
- In-memory state keyed by ARM id, with provider-added fields on read
- Whole-object PUT semantics for parents with embedded children
- 409 Conflict on overlapping writes to children of one parent
- Error injection for conflict, throttling and rejection scenarios
- Call recording for write-count assertions

Usage:
    from azure_mock import MockCloudClient

    client = MockCloudClient()
    client.seed(subnet_id, {"addressPrefix": "10.1.0.0/24"})
    result = await Provisioner(config, client).apply(spec)
    assert client.writes == []
"""

from .resources import InjectedError, MockCloudClient, MockResourceState, RecordedCall

__all__ = [
    "InjectedError",
    "MockCloudClient",
    "MockResourceState",
    "RecordedCall",
]
