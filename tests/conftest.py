"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for apprun_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from apprun_mock import MockGateway  # noqa: E402
from provisioner.models import ClusterConfig  # noqa: E402
from provisioner.state import SecretVersionLedger  # noqa: E402


@pytest.fixture
def app_spec_data() -> dict[str, Any]:
    """Manual-scaled web application spec in configuration (camelCase) form."""
    return {
        "cpu": 500,
        "memory": 1024,
        "scalingMode": "manual",
        "fixedScale": 1,
        "image": "nginx:latest",
        "exposedPorts": [
            {
                "targetPort": 80,
                "loadBalancerPort": 443,
                "useLetsEncrypt": True,
                "host": ["web.example.com"],
                "healthCheck": {"path": "/health", "intervalSeconds": 10, "timeoutSeconds": 5},
            }
        ],
    }


@pytest.fixture
def asg_data() -> dict[str, Any]:
    return {
        "name": "asg-1",
        "zone": "is1a",
        "workerServiceClassPath": "cloud/apprun/dedicated/worker/1core-2gb",
        "minNodes": 1,
        "maxNodes": 3,
        "nameServers": ["133.242.0.3"],
        "interfaces": [
            {
                "interfaceIndex": 0,
                "upstream": "shared",
                "connectsToLb": True,
            }
        ],
    }


@pytest.fixture
def lb_data() -> dict[str, Any]:
    return {
        "name": "lb-1",
        "autoScalingGroupName": "asg-1",
        "serviceClassPath": "cloud/apprun/dedicated/lb/standard",
        "nameServers": ["133.242.0.3"],
        "interfaces": [
            {
                "interfaceIndex": 0,
                "upstream": "shared",
            }
        ],
    }


@pytest.fixture
def config_data(
    app_spec_data: dict[str, Any], asg_data: dict[str, Any], lb_data: dict[str, Any]
) -> dict[str, Any]:
    """Complete cluster configuration with one ASG, one LB and one application."""
    return {
        "clusterName": "prod",
        "autoScalingGroups": [asg_data],
        "loadBalancers": [lb_data],
        "applications": [{"name": "web", "spec": app_spec_data}],
    }


@pytest.fixture
def cluster_config(config_data: dict[str, Any]) -> ClusterConfig:
    return ClusterConfig.model_validate(config_data)


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway()


@pytest.fixture
def ledger() -> SecretVersionLedger:
    return SecretVersionLedger.in_memory()
