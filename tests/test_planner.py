"""Tests for plan computation against an in-memory gateway."""

from __future__ import annotations

from typing import Any

import pytest
from apprun_mock import MockGateway, seed_cluster

from provisioner.gateway import GatewayError, resolve_cluster
from provisioner.models import ClusterConfig
from provisioner.planner import (
    INITIAL_VERSION_CHANGE,
    ActionType,
    ClusterIdentity,
    Plan,
    Planner,
    collect_live_state,
)
from provisioner.state import SecretVersionLedger

MUTATING_CALLS = (
    "update_cluster",
    "create_auto_scaling_group",
    "delete_auto_scaling_group",
    "create_load_balancer",
    "delete_load_balancer",
    "create_application",
    "update_application",
    "create_application_version",
)


async def compute_plan(
    gateway: MockGateway, ledger: SecretVersionLedger, desired: ClusterConfig
) -> Plan:
    summary = await resolve_cluster(gateway, desired.cluster_name)
    cluster = ClusterIdentity(name=summary.name, cluster_id=summary.cluster_id)
    live = await collect_live_state(gateway, cluster, desired)
    return Planner(ledger).plan(cluster, desired, live)


class TestEmptyCluster:
    """Planning against a cluster with nothing in it."""

    @pytest.mark.asyncio
    async def test_everything_created(
        self, gateway: MockGateway, ledger: SecretVersionLedger, cluster_config: ClusterConfig
    ) -> None:
        gateway.add_cluster("prod")

        plan = await compute_plan(gateway, ledger, cluster_config)

        assert [(a.action, a.name) for a in plan.asg_actions] == [(ActionType.CREATE, "asg-1")]
        assert [(a.action, a.name) for a in plan.lb_actions] == [(ActionType.CREATE, "lb-1")]
        assert plan.lb_actions[0].asg_id is None
        assert [(a.action, a.name) for a in plan.app_actions] == [(ActionType.CREATE, "web")]
        assert plan.app_actions[0].changes[0] == "Image: nginx:latest"
        assert plan.cluster_action is None
        assert plan.warnings == ()
        assert plan.has_changes is True

    @pytest.mark.asyncio
    async def test_planning_does_not_mutate(
        self, gateway: MockGateway, ledger: SecretVersionLedger, cluster_config: ClusterConfig
    ) -> None:
        gateway.add_cluster("prod")

        await compute_plan(gateway, ledger, cluster_config)

        assert not [op for op, _ in gateway.calls if op in MUTATING_CALLS]


class TestConvergedCluster:
    """Planning when live state already matches."""

    @pytest.mark.asyncio
    async def test_all_noop(
        self, gateway: MockGateway, ledger: SecretVersionLedger, cluster_config: ClusterConfig
    ) -> None:
        seed_cluster(gateway, cluster_config)

        plan = await compute_plan(gateway, ledger, cluster_config)

        assert [a.action for a in plan.asg_actions] == [ActionType.NOOP]
        assert [a.action for a in plan.lb_actions] == [ActionType.NOOP]
        assert [a.action for a in plan.app_actions] == [ActionType.NOOP]
        assert plan.has_changes is False

    @pytest.mark.asyncio
    async def test_image_inherited(
        self, gateway: MockGateway, ledger: SecretVersionLedger, cluster_config: ClusterConfig
    ) -> None:
        """Test that a different live image is never reported as drift."""
        cluster_id = gateway.add_cluster("prod")
        app_id = gateway.add_application(cluster_id, "web", active_version=1)
        gateway.add_version(app_id, cluster_config.applications[0].spec, image="nginx:1.27")
        desired = ClusterConfig.model_validate(
            {"clusterName": "prod", "applications": [cluster_config.applications[0]]}
        )

        plan = await compute_plan(gateway, ledger, desired)

        assert plan.app_actions[0].action == ActionType.NOOP

    @pytest.mark.asyncio
    async def test_lbs_fetched_across_pages(
        self,
        gateway: MockGateway,
        ledger: SecretVersionLedger,
        config_data: dict[str, Any],
        lb_data: dict[str, Any],
    ) -> None:
        config_data["loadBalancers"] = [
            dict(lb_data, name=f"lb-{i}") for i in range(1, 6)
        ]
        desired = ClusterConfig.model_validate(config_data)
        seed_cluster(gateway, desired)

        plan = await compute_plan(gateway, ledger, desired)

        assert [a.action for a in plan.lb_actions] == [ActionType.NOOP] * 5
        assert gateway.calls.count(("list_load_balancers", plan.asg_actions[0].existing_id)) == 3


class TestInfrastructureDrift:
    """Recreate decisions for ASGs and LBs."""

    @pytest.mark.asyncio
    async def test_asg_drift_recreates_dependent_lb(
        self,
        gateway: MockGateway,
        ledger: SecretVersionLedger,
        cluster_config: ClusterConfig,
        config_data: dict[str, Any],
    ) -> None:
        seed_cluster(gateway, cluster_config)
        config_data["autoScalingGroups"][0]["maxNodes"] = 5

        plan = await compute_plan(gateway, ledger, ClusterConfig.model_validate(config_data))

        asg = plan.asg_actions[0]
        assert asg.action == ActionType.RECREATE
        assert asg.changes == ("MaxNodes: 3 -> 5",)
        assert asg.existing_id is not None
        lb = plan.lb_actions[0]
        assert lb.action == ActionType.RECREATE
        assert lb.changes == ("AutoScalingGroup asg-1 is recreated",)
        assert lb.asg_id == asg.existing_id

    @pytest.mark.asyncio
    async def test_lb_drift_only(
        self,
        gateway: MockGateway,
        ledger: SecretVersionLedger,
        cluster_config: ClusterConfig,
        config_data: dict[str, Any],
    ) -> None:
        seed_cluster(gateway, cluster_config)
        config_data["loadBalancers"][0]["nameServers"] = ["133.242.0.4"]

        plan = await compute_plan(gateway, ledger, ClusterConfig.model_validate(config_data))

        assert plan.asg_actions[0].action == ActionType.NOOP
        assert plan.lb_actions[0].action == ActionType.RECREATE
        assert plan.lb_actions[0].changes == ("NameServers: [133.242.0.3] -> [133.242.0.4]",)


class TestOrphans:
    """Live resources that the configuration does not mention."""

    @pytest.mark.asyncio
    async def test_orphan_infrastructure_skipped(
        self,
        gateway: MockGateway,
        ledger: SecretVersionLedger,
        cluster_config: ClusterConfig,
        asg_data: dict[str, Any],
        lb_data: dict[str, Any],
    ) -> None:
        seed_cluster(gateway, cluster_config)
        cluster_id = next(iter(gateway.clusters))
        extra = ClusterConfig.model_validate(
            {
                "clusterName": "prod",
                "autoScalingGroups": [dict(asg_data, name="asg-old")],
                "loadBalancers": [dict(lb_data, name="lb-old", autoScalingGroupName="asg-old")],
            }
        )
        asg_id = gateway.add_auto_scaling_group(cluster_id, extra.auto_scaling_groups[0])
        gateway.add_load_balancer(asg_id, extra.load_balancers[0])

        plan = await compute_plan(gateway, ledger, cluster_config)

        skipped_asg = [a for a in plan.asg_actions if a.action == ActionType.SKIP]
        assert [(a.name, a.existing_id) for a in skipped_asg] == [("asg-old", asg_id)]
        skipped_lb = [a for a in plan.lb_actions if a.action == ActionType.SKIP]
        assert [(a.name, a.asg_name) for a in skipped_lb] == [("lb-old", "asg-old")]
        assert plan.has_changes is False
        assert plan.warnings == ()

    @pytest.mark.asyncio
    async def test_orphan_lb_under_recreated_asg_warns(
        self,
        gateway: MockGateway,
        ledger: SecretVersionLedger,
        cluster_config: ClusterConfig,
        config_data: dict[str, Any],
        lb_data: dict[str, Any],
    ) -> None:
        seed_cluster(gateway, cluster_config)
        extra = ClusterConfig.model_validate(
            {"clusterName": "prod", "loadBalancers": [dict(lb_data, name="lb-extra")]}
        )
        gateway.add_load_balancer(next(iter(gateway.lbs)), extra.load_balancers[0])
        config_data["autoScalingGroups"][0]["zone"] = "is1b"

        plan = await compute_plan(gateway, ledger, ClusterConfig.model_validate(config_data))

        assert plan.warnings == (
            'Load balancer "lb-extra" is not in config and its auto scaling group "asg-1" '
            "will be recreated",
        )

    @pytest.mark.asyncio
    async def test_orphan_application_warns_once(
        self, gateway: MockGateway, ledger: SecretVersionLedger, cluster_config: ClusterConfig
    ) -> None:
        cluster_id = seed_cluster(gateway, cluster_config)
        batch_id = gateway.add_application(cluster_id, "batch")

        plan = await compute_plan(gateway, ledger, cluster_config)

        assert plan.warnings == ('Application "batch" exists but not in config',)
        assert [a.name for a in plan.app_actions] == ["web"]
        assert ("list_application_versions", batch_id) not in gateway.calls

    @pytest.mark.asyncio
    async def test_lb_with_unknown_asg_warns(
        self, gateway: MockGateway, ledger: SecretVersionLedger, lb_data: dict[str, Any]
    ) -> None:
        gateway.add_cluster("prod")
        desired = ClusterConfig.model_validate(
            {"clusterName": "prod", "loadBalancers": [dict(lb_data, autoScalingGroupName="x")]}
        )

        plan = await compute_plan(gateway, ledger, desired)

        assert plan.lb_actions[0].action == ActionType.CREATE
        assert plan.warnings == (
            'Load balancer "lb-1" references auto scaling group "x" '
            "which is neither configured nor live",
        )


class TestApplications:
    """Update decisions for applications."""

    @pytest.mark.asyncio
    async def test_no_versions_yet(
        self, gateway: MockGateway, ledger: SecretVersionLedger, cluster_config: ClusterConfig
    ) -> None:
        cluster_id = gateway.add_cluster("prod")
        gateway.add_application(cluster_id, "web")
        desired = ClusterConfig.model_validate(
            {"clusterName": "prod", "applications": [cluster_config.applications[0]]}
        )

        plan = await compute_plan(gateway, ledger, desired)

        action = plan.app_actions[0]
        assert action.action == ActionType.UPDATE
        assert action.changes == (INITIAL_VERSION_CHANGE,)

    @pytest.mark.asyncio
    async def test_spec_change(
        self,
        gateway: MockGateway,
        ledger: SecretVersionLedger,
        cluster_config: ClusterConfig,
        config_data: dict[str, Any],
    ) -> None:
        seed_cluster(gateway, cluster_config)
        config_data["applications"][0]["spec"]["memory"] = 2048

        plan = await compute_plan(gateway, ledger, ClusterConfig.model_validate(config_data))

        assert plan.app_actions[0].action == ActionType.UPDATE
        assert plan.app_actions[0].changes == ("Memory: 1024 -> 2048",)

    @pytest.mark.asyncio
    async def test_registry_password_rotation(
        self,
        gateway: MockGateway,
        cluster_config: ClusterConfig,
        config_data: dict[str, Any],
    ) -> None:
        """Test that password changes are detected only through the ledger."""
        spec = config_data["applications"][0]["spec"]
        spec.update(
            {
                "registryUsername": "deploy",
                "registryPassword": "hunter2",
                "registryPasswordVersion": 2,
            }
        )
        desired = ClusterConfig.model_validate(config_data)
        seed_cluster(gateway, desired)
        ledger = SecretVersionLedger.in_memory(
            {"version": 1, "applications": {"web": {"registryPasswordVersion": 1}}}
        )

        plan = await compute_plan(gateway, ledger, desired)

        assert plan.app_actions[0].changes == ("RegistryPasswordVersion: 1 -> 2",)

    @pytest.mark.asyncio
    async def test_registry_password_version_unrecorded(
        self, gateway: MockGateway, ledger: SecretVersionLedger, config_data: dict[str, Any]
    ) -> None:
        spec = config_data["applications"][0]["spec"]
        spec.update({"registryUsername": "deploy", "registryPasswordVersion": 1})
        desired = ClusterConfig.model_validate(config_data)
        seed_cluster(gateway, desired)

        plan = await compute_plan(gateway, ledger, desired)

        assert plan.app_actions[0].changes == ("RegistryPasswordVersion: (new) -> 1",)


class TestClusterSettings:
    """Cluster-level settings planning."""

    @pytest.mark.asyncio
    async def test_not_fetched_when_undeclared(
        self, gateway: MockGateway, ledger: SecretVersionLedger, cluster_config: ClusterConfig
    ) -> None:
        seed_cluster(gateway, cluster_config)

        plan = await compute_plan(gateway, ledger, cluster_config)

        assert plan.cluster_action is None
        assert not [c for c in gateway.calls if c[0] == "get_cluster"]

    @pytest.mark.asyncio
    async def test_update(
        self, gateway: MockGateway, ledger: SecretVersionLedger, config_data: dict[str, Any]
    ) -> None:
        config_data["cluster"] = {"servicePrincipalId": "sp-2"}
        desired = ClusterConfig.model_validate(config_data)
        seed_cluster(gateway, desired)

        plan = await compute_plan(gateway, ledger, desired)

        assert plan.cluster_action is not None
        assert plan.cluster_action.action == ActionType.UPDATE
        assert plan.cluster_action.changes == ("ServicePrincipalID: sp-1 -> sp-2",)
        assert plan.has_changes is True

    @pytest.mark.asyncio
    async def test_noop(
        self, gateway: MockGateway, ledger: SecretVersionLedger, config_data: dict[str, Any]
    ) -> None:
        config_data["cluster"] = {"servicePrincipalId": "sp-1"}
        desired = ClusterConfig.model_validate(config_data)
        seed_cluster(gateway, desired)

        plan = await compute_plan(gateway, ledger, desired)

        assert plan.cluster_action is not None
        assert plan.cluster_action.action == ActionType.NOOP
        assert plan.has_changes is False


class TestCollectLiveState:
    @pytest.mark.asyncio
    async def test_list_failure_wrapped(
        self, gateway: MockGateway, cluster_config: ClusterConfig
    ) -> None:
        cluster_id = gateway.add_cluster("prod")
        gateway.fail("list_auto_scaling_groups")

        with pytest.raises(GatewayError) as exc_info:
            await collect_live_state(
                gateway, ClusterIdentity("prod", cluster_id), cluster_config
            )

        assert exc_info.value.message.startswith("failed to list auto scaling groups:")
