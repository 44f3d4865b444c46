"""Tests for the Pydantic configuration models and request building."""

from typing import Any

import pytest
from pydantic import ValidationError

from provisioner.models import ApplicationSpec, AutoScalingGroupConfig, ClusterConfig
from provisioner.resources import (
    ApplicationVersion,
    ApplicationVersionRequest,
    RegistryPasswordAction,
)


class TestClusterConfig:
    """Tests for ClusterConfig model."""

    def test_valid_config(self, config_data: dict[str, Any]) -> None:
        """Test parsing a complete configuration."""
        config = ClusterConfig.model_validate(config_data)

        assert config.cluster_name == "prod"
        assert config.cluster is None
        assert config.auto_scaling_groups[0].worker_service_class_path.endswith("1core-2gb")
        assert config.auto_scaling_groups[0].interfaces[0].connects_to_lb is True
        assert config.load_balancers[0].auto_scaling_group_name == "asg-1"
        assert config.applications[0].spec.exposed_ports[0].host == ["web.example.com"]

    def test_minimal_config(self) -> None:
        config = ClusterConfig.model_validate({"clusterName": "prod"})

        assert config.auto_scaling_groups == []
        assert config.load_balancers == []
        assert config.applications == []

    def test_unknown_fields_ignored(self) -> None:
        config = ClusterConfig.model_validate({"clusterName": "prod", "comment": "x"})

        assert config.cluster_name == "prod"

    def test_missing_cluster_name(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ClusterConfig.model_validate({"applications": []})

        assert "clusterName" in str(exc_info.value)

    def test_duplicate_application_names(self, config_data: dict[str, Any]) -> None:
        """Test that application names must be unique."""
        config_data["applications"].append(dict(config_data["applications"][0]))

        with pytest.raises(ValidationError) as exc_info:
            ClusterConfig.model_validate(config_data)

        assert "applications names must be unique" in str(exc_info.value)

    def test_duplicate_asg_names(self, config_data: dict[str, Any]) -> None:
        config_data["autoScalingGroups"].append(dict(config_data["autoScalingGroups"][0]))

        with pytest.raises(ValidationError) as exc_info:
            ClusterConfig.model_validate(config_data)

        assert "autoScalingGroups names must be unique" in str(exc_info.value)

    def test_same_lb_name_under_different_asgs(self, config_data: dict[str, Any]) -> None:
        """Test that load balancer names are scoped by their group."""
        other = dict(config_data["loadBalancers"][0], autoScalingGroupName="asg-2")
        config_data["loadBalancers"].append(other)

        config = ClusterConfig.model_validate(config_data)

        assert len(config.load_balancers_for("asg-1")) == 1
        assert len(config.load_balancers_for("asg-2")) == 1

    def test_duplicate_lb_within_asg(self, config_data: dict[str, Any]) -> None:
        config_data["loadBalancers"].append(dict(config_data["loadBalancers"][0]))

        with pytest.raises(ValidationError) as exc_info:
            ClusterConfig.model_validate(config_data)

        assert "loadBalancers names must be unique" in str(exc_info.value)


class TestAutoScalingGroupConfig:
    """Tests for AutoScalingGroupConfig model."""

    def test_min_exceeds_max(self, asg_data: dict[str, Any]) -> None:
        asg_data["minNodes"] = 5

        with pytest.raises(ValidationError) as exc_info:
            AutoScalingGroupConfig.model_validate(asg_data)

        assert "minNodes must not exceed maxNodes" in str(exc_info.value)

    def test_negative_interface_index(self, asg_data: dict[str, Any]) -> None:
        asg_data["interfaces"][0]["interfaceIndex"] = -1

        with pytest.raises(ValidationError):
            AutoScalingGroupConfig.model_validate(asg_data)


class TestApplicationSpec:
    """Tests for ApplicationSpec model."""

    def test_manual_requires_fixed_scale(self, app_spec_data: dict[str, Any]) -> None:
        """Test that manual scaling needs fixedScale."""
        del app_spec_data["fixedScale"]

        with pytest.raises(ValidationError) as exc_info:
            ApplicationSpec.model_validate(app_spec_data)

        assert "fixedScale is required" in str(exc_info.value)

    def test_cpu_requires_bounds(self, app_spec_data: dict[str, Any]) -> None:
        app_spec_data["scalingMode"] = "cpu"
        app_spec_data["minScale"] = 1

        with pytest.raises(ValidationError) as exc_info:
            ApplicationSpec.model_validate(app_spec_data)

        assert "minScale and maxScale are required" in str(exc_info.value)

    def test_invalid_scaling_mode(self, app_spec_data: dict[str, Any]) -> None:
        app_spec_data["scalingMode"] = "memory"

        with pytest.raises(ValidationError) as exc_info:
            ApplicationSpec.model_validate(app_spec_data)

        assert "scalingMode must be one of" in str(exc_info.value)

    def test_threshold_range(self, app_spec_data: dict[str, Any]) -> None:
        """Test that scale-in threshold is bounded to 30-70."""
        app_spec_data["scaleInThreshold"] = 80

        with pytest.raises(ValidationError):
            ApplicationSpec.model_validate(app_spec_data)

    def test_cpu_range(self, app_spec_data: dict[str, Any]) -> None:
        app_spec_data["cpu"] = 50

        with pytest.raises(ValidationError):
            ApplicationSpec.model_validate(app_spec_data)

    def test_secret_requires_version(self, app_spec_data: dict[str, Any]) -> None:
        """Test that a secret env var must carry secretVersion."""
        app_spec_data["env"] = [{"key": "DB_PASSWORD", "value": "x", "secret": True}]

        with pytest.raises(ValidationError) as exc_info:
            ApplicationSpec.model_validate(app_spec_data)

        assert "secretVersion is required when secret is true (key: DB_PASSWORD)" in str(
            exc_info.value
        )

    def test_password_requires_version(self, app_spec_data: dict[str, Any]) -> None:
        app_spec_data["registryPassword"] = "hunter2"

        with pytest.raises(ValidationError) as exc_info:
            ApplicationSpec.model_validate(app_spec_data)

        assert "registryPasswordVersion is required" in str(exc_info.value)

    def test_requires_exposed_port(self, app_spec_data: dict[str, Any]) -> None:
        app_spec_data["exposedPorts"] = []

        with pytest.raises(ValidationError):
            ApplicationSpec.model_validate(app_spec_data)

    def test_duplicate_target_ports(self, app_spec_data: dict[str, Any]) -> None:
        app_spec_data["exposedPorts"].append({"targetPort": 80})

        with pytest.raises(ValidationError) as exc_info:
            ApplicationSpec.model_validate(app_spec_data)

        assert "targetPort values must be unique" in str(exc_info.value)

    def test_duplicate_env_keys(self, app_spec_data: dict[str, Any]) -> None:
        app_spec_data["env"] = [{"key": "A", "value": "1"}, {"key": "A", "value": "2"}]

        with pytest.raises(ValidationError) as exc_info:
            ApplicationSpec.model_validate(app_spec_data)

        assert "env keys must be unique" in str(exc_info.value)

    def test_undeclared_lists_are_none(self, app_spec_data: dict[str, Any]) -> None:
        """Test that undeclared cmd and env stay distinguishable from empty lists."""
        spec = ApplicationSpec.model_validate(app_spec_data)

        assert spec.cmd is None
        assert spec.env is None

        app_spec_data["env"] = []
        assert ApplicationSpec.model_validate(app_spec_data).env == []


class TestApplicationVersionRequest:
    """Tests for building version requests from a spec."""

    @pytest.fixture
    def base(self) -> ApplicationVersion:
        """Latest live version with registry credentials and env."""
        return ApplicationVersion.model_validate(
            {
                "version": 3,
                "cpu": 500,
                "memory": 1024,
                "scalingMode": "manual",
                "fixedScale": 2,
                "image": "registry.example.com/web:v3",
                "cmd": ["serve", "--port", "80"],
                "registryUsername": "deploy",
                "exposedPorts": [{"targetPort": 80}],
                "env": [
                    {"key": "MODE", "value": "prod"},
                    {"key": "TOKEN", "secret": True},
                ],
            }
        )

    def test_fresh_application(self, app_spec_data: dict[str, Any]) -> None:
        """Test that a new application uses the declared image."""
        spec = ApplicationSpec.model_validate(app_spec_data)

        request = ApplicationVersionRequest.from_spec(spec)

        assert request.image == "nginx:latest"
        assert request.cmd == []
        assert request.env == []
        assert request.registry_password_action == RegistryPasswordAction.REMOVE

    def test_image_inherited_from_base(
        self, app_spec_data: dict[str, Any], base: ApplicationVersion
    ) -> None:
        """Test that the declared image never overrides the latest version's image."""
        spec = ApplicationSpec.model_validate(app_spec_data)

        request = ApplicationVersionRequest.from_spec(spec, base)

        assert request.image == "registry.example.com/web:v3"

    def test_undeclared_fields_inherited(
        self, app_spec_data: dict[str, Any], base: ApplicationVersion
    ) -> None:
        spec = ApplicationSpec.model_validate(app_spec_data)

        request = ApplicationVersionRequest.from_spec(spec, base)

        assert request.cmd == ["serve", "--port", "80"]
        assert request.registry_username == "deploy"
        assert request.registry_password_action == RegistryPasswordAction.KEEP
        assert [(e.key, e.value, e.secret) for e in request.env] == [
            ("MODE", "prod", False),
            ("TOKEN", None, True),
        ]

    def test_declared_fields_override(
        self, app_spec_data: dict[str, Any], base: ApplicationVersion
    ) -> None:
        app_spec_data.update(
            {
                "cmd": [],
                "env": [{"key": "MODE", "value": "staging"}],
                "registryUsername": "robot",
                "registryPassword": "hunter2",
                "registryPasswordVersion": 1,
            }
        )
        spec = ApplicationSpec.model_validate(app_spec_data)

        request = ApplicationVersionRequest.from_spec(spec, base)

        assert request.cmd == []
        assert [(e.key, e.value) for e in request.env] == [("MODE", "staging")]
        assert request.registry_username == "robot"
        assert request.registry_password == "hunter2"
        assert request.registry_password_action == RegistryPasswordAction.NEW

    def test_declared_fixed_scale_wins(
        self, app_spec_data: dict[str, Any], base: ApplicationVersion
    ) -> None:
        spec = ApplicationSpec.model_validate(app_spec_data)

        assert ApplicationVersionRequest.from_spec(spec, base).fixed_scale == 1

    def test_payload_uses_wire_names(self, app_spec_data: dict[str, Any]) -> None:
        spec = ApplicationSpec.model_validate(app_spec_data)

        payload = ApplicationVersionRequest.from_spec(spec).to_payload()

        assert payload["scalingMode"] == "manual"
        assert payload["registryPasswordAction"] == "remove"
        assert payload["exposedPorts"][0]["healthCheck"]["intervalSeconds"] == 10
