"""AppRun control-plane mock for integration testing.

Provides an in-memory implementation of the gateway so the planner,
executor and CLI can be exercised without network access.

Key Features:
- In-memory clusters, auto-scaling groups, load balancers, applications
- Small pages so every listing goes through cursor pagination
- Ordered call log for sequencing assertions
- Deleted infrastructure stays readable for a configurable number of polls
- Error injection per operation

Usage:
    from apprun_mock import MockGateway

    gateway = MockGateway()
    cluster_id = gateway.add_cluster("prod")
    plan = await Reconciler(gateway, SecretVersionLedger.in_memory()).plan(desired)
"""

from .gateway import MockApplicationState, MockGateway, not_found, seed_cluster

__all__ = [
    "MockApplicationState",
    "MockGateway",
    "not_found",
    "seed_cluster",
]
