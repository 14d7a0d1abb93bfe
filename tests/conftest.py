"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from hubprovisioner.config import Config, RetryPolicy  # noqa: E402

SUBSCRIPTION_ID = "11111111-2222-3333-4444-555555555555"
RESOURCE_GROUP = "rg-hub"
LOCATION = "westeurope"

SPOKE_SUBNET_A = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-spokes/providers/"
    "Microsoft.Network/virtualNetworks/vnet-spoke-a/subnets/snet-app"
)
SPOKE_SUBNET_B = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-spokes/providers/"
    "Microsoft.Network/virtualNetworks/vnet-spoke-b/subnets/snet-app"
)


@pytest.fixture
def config() -> Config:
    """Configuration with no backoff delay so retries run instantly."""
    return Config(
        subscription_id=SUBSCRIPTION_ID,
        resource_group=RESOURCE_GROUP,
        location=LOCATION,
        max_concurrency=4,
        retry=RetryPolicy(
            max_conflict_retries=3,
            max_throttle_retries=3,
            backoff_base_seconds=0.0,
            max_retry_after_seconds=0.01,
        ),
    )


@pytest.fixture
def hub_params() -> dict[str, Any]:
    """Hub parameters: three public IPs, one IP group over two spoke subnets, two tiers."""
    return {
        "name": "hub",
        "location": LOCATION,
        "addressSpace": ["10.0.0.0/16"],
        "subnets": [
            {"name": "snet-shared", "addressPrefix": "10.0.1.0/24"},
        ],
        "firewall": {
            "subnetPrefix": "10.0.0.0/26",
            "publicIpCount": 3,
            "availabilityZones": ["1", "2", "3"],
        },
        "ipGroups": [
            {"name": "ipg-spokes", "subnetIds": [SPOKE_SUBNET_A, SPOKE_SUBNET_B]},
        ],
        "ruleCollectionGroups": [
            {
                "name": "rcg-platform",
                "priority": 200,
                "ruleCollections": [
                    {
                        "name": "rc-aks-egress",
                        "priority": 100,
                        "action": "Allow",
                        "rules": [
                            {
                                "name": "allow-api-server",
                                "ruleType": "NetworkRule",
                                "ipProtocols": ["TCP"],
                                "sourceIpGroups": ["ipg-spokes"],
                                "destinationAddresses": [f"AzureCloud.{LOCATION}"],
                                "destinationPorts": ["443"],
                            },
                            {
                                "name": "allow-ntp",
                                "ruleType": "NetworkRule",
                                "ipProtocols": ["UDP"],
                                "sourceIpGroups": ["ipg-spokes"],
                                "destinationAddresses": ["*"],
                                "destinationPorts": ["123"],
                            },
                        ],
                    }
                ],
            },
            {
                "name": "rcg-workloads",
                "priority": 300,
                "ruleCollections": [
                    {
                        "name": "rc-web",
                        "priority": 100,
                        "action": "Allow",
                        "rules": [
                            {
                                "name": "allow-updates",
                                "ruleType": "ApplicationRule",
                                "sourceIpGroups": ["ipg-spokes"],
                                "protocols": [{"protocolType": "Https", "port": 443}],
                                "targetFqdns": ["*.ubuntu.com"],
                            }
                        ],
                    }
                ],
            },
        ],
    }
