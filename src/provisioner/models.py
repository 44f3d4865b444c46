"""Pydantic models for the declarative cluster configuration.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Stable field names shared by the planner, executor and dump output

Optional list fields use None to mean "not declared". A new application
version inherits undeclared fields from the previous version, while an
explicitly empty list is sent as-is.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

SCALING_MODE_MANUAL = "manual"
SCALING_MODE_CPU = "cpu"
VALID_SCALING_MODES = (SCALING_MODE_MANUAL, SCALING_MODE_CPU)

_MODEL_CONFIG = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Cluster
# =============================================================================


class ClusterSettings(BaseModel):
    """Cluster-level settings.

    The gateway only reports whether a Let's Encrypt e-mail is configured,
    never the address itself.
    """

    model_config = _MODEL_CONFIG

    service_principal_id: str = Field(alias="servicePrincipalId")
    lets_encrypt_email: str | None = Field(None, alias="letsEncryptEmail")


# =============================================================================
# Infrastructure
# =============================================================================


class IpRangeConfig(BaseModel):
    """Inclusive IPv4 address range."""

    model_config = _MODEL_CONFIG

    start: str
    end: str


class ASGInterfaceConfig(BaseModel):
    """Network interface attached to every node of an auto-scaling group."""

    model_config = _MODEL_CONFIG

    interface_index: Annotated[int, Field(ge=0, alias="interfaceIndex")]
    upstream: str
    connects_to_lb: bool = Field(False, alias="connectsToLb")
    ip_pool: list[IpRangeConfig] = Field(default_factory=list, alias="ipPool")
    netmask_len: int | None = Field(None, alias="netmaskLen")
    default_gateway: str | None = Field(None, alias="defaultGateway")
    packet_filter_id: str | None = Field(None, alias="packetFilterId")


class AutoScalingGroupConfig(BaseModel):
    """Auto-scaling worker group. Has no in-place update on the gateway."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    zone: str
    worker_service_class_path: str = Field(alias="workerServiceClassPath")
    min_nodes: Annotated[int, Field(ge=0, alias="minNodes")]
    max_nodes: Annotated[int, Field(ge=0, alias="maxNodes")]
    name_servers: list[str] = Field(default_factory=list, alias="nameServers")
    interfaces: list[ASGInterfaceConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_node_bounds(self) -> AutoScalingGroupConfig:
        if self.min_nodes > self.max_nodes:
            raise ValueError("minNodes must not exceed maxNodes")
        return self


class LBInterfaceConfig(BaseModel):
    """Network interface of a load balancer."""

    model_config = _MODEL_CONFIG

    interface_index: Annotated[int, Field(ge=0, alias="interfaceIndex")]
    upstream: str
    ip_pool: list[IpRangeConfig] = Field(default_factory=list, alias="ipPool")
    netmask_len: int | None = Field(None, alias="netmaskLen")
    default_gateway: str | None = Field(None, alias="defaultGateway")
    vip: str | None = None
    virtual_router_id: int | None = Field(None, alias="virtualRouterId")
    packet_filter_id: str | None = Field(None, alias="packetFilterId")


class LoadBalancerConfig(BaseModel):
    """Load balancer owned by an auto-scaling group."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    auto_scaling_group_name: Annotated[str, Field(min_length=1, alias="autoScalingGroupName")]
    service_class_path: str = Field(alias="serviceClassPath")
    name_servers: list[str] = Field(default_factory=list, alias="nameServers")
    interfaces: list[LBInterfaceConfig] = Field(default_factory=list)


# =============================================================================
# Applications
# =============================================================================


class HealthCheckConfig(BaseModel):
    """HTTP health check for an exposed port."""

    model_config = _MODEL_CONFIG

    path: str
    interval_seconds: Annotated[int, Field(ge=1, alias="intervalSeconds")]
    timeout_seconds: Annotated[int, Field(ge=1, alias="timeoutSeconds")]


class ExposedPortConfig(BaseModel):
    """Port the application listens on, optionally published through a load balancer."""

    model_config = _MODEL_CONFIG

    target_port: Annotated[int, Field(ge=1, le=65535, alias="targetPort")]
    load_balancer_port: Annotated[int | None, Field(ge=1, le=65535, alias="loadBalancerPort")] = (
        None
    )
    use_lets_encrypt: bool = Field(False, alias="useLetsEncrypt")
    host: list[str] = Field(default_factory=list)
    health_check: HealthCheckConfig | None = Field(None, alias="healthCheck")


class EnvVarConfig(BaseModel):
    """Environment variable.

    Secret values are write-only on the gateway, so rotation is tracked by
    secretVersion instead of by value.
    """

    model_config = _MODEL_CONFIG

    key: Annotated[str, Field(min_length=1)]
    value: str | None = None
    secret: bool = False
    secret_version: int | None = Field(None, alias="secretVersion")

    @model_validator(mode="after")
    def validate_secret_version(self) -> EnvVarConfig:
        if self.secret and self.secret_version is None:
            raise ValueError(f"secretVersion is required when secret is true (key: {self.key})")
        return self


class ApplicationSpec(BaseModel):
    """Settings for one immutable application version."""

    model_config = _MODEL_CONFIG

    cpu: Annotated[int, Field(ge=100, le=64000)]
    memory: Annotated[int, Field(ge=128, le=131072)]
    scaling_mode: str = Field(alias="scalingMode")
    fixed_scale: int | None = Field(None, alias="fixedScale")
    min_scale: int | None = Field(None, alias="minScale")
    max_scale: int | None = Field(None, alias="maxScale")
    scale_in_threshold: Annotated[int | None, Field(ge=30, le=70, alias="scaleInThreshold")] = None
    scale_out_threshold: Annotated[int | None, Field(ge=50, le=99, alias="scaleOutThreshold")] = (
        None
    )
    image: Annotated[str, Field(min_length=1)]
    cmd: list[str] | None = None
    registry_username: str | None = Field(None, alias="registryUsername")
    registry_password: str | None = Field(None, alias="registryPassword")
    registry_password_version: int | None = Field(None, alias="registryPasswordVersion")
    exposed_ports: list[ExposedPortConfig] = Field(min_length=1, alias="exposedPorts")
    env: list[EnvVarConfig] | None = None

    @field_validator("scaling_mode")
    @classmethod
    def validate_scaling_mode(cls, v: str) -> str:
        if v not in VALID_SCALING_MODES:
            raise ValueError(f"scalingMode must be one of {list(VALID_SCALING_MODES)}")
        return v

    @model_validator(mode="after")
    def validate_dependent_fields(self) -> ApplicationSpec:
        if self.scaling_mode == SCALING_MODE_MANUAL and self.fixed_scale is None:
            raise ValueError("fixedScale is required when scalingMode is 'manual'")
        if self.scaling_mode == SCALING_MODE_CPU and (
            self.min_scale is None or self.max_scale is None
        ):
            raise ValueError("minScale and maxScale are required when scalingMode is 'cpu'")
        if self.registry_password is not None and self.registry_password_version is None:
            raise ValueError(
                "registryPasswordVersion is required when registryPassword is specified"
            )

        ports = [p.target_port for p in self.exposed_ports]
        if len(ports) != len(set(ports)):
            raise ValueError("exposedPorts targetPort values must be unique")

        keys = [e.key for e in self.env or []]
        if len(keys) != len(set(keys)):
            raise ValueError("env keys must be unique")
        return self


class ApplicationConfig(BaseModel):
    """Named application and the spec its next version should carry."""

    model_config = _MODEL_CONFIG

    name: Annotated[str, Field(min_length=1)]
    spec: ApplicationSpec


# =============================================================================
# Root
# =============================================================================


class ClusterConfig(BaseModel):
    """Desired state for one cluster."""

    model_config = _MODEL_CONFIG

    cluster_name: Annotated[str, Field(min_length=1, alias="clusterName")]
    cluster: ClusterSettings | None = None
    auto_scaling_groups: list[AutoScalingGroupConfig] = Field(
        default_factory=list, alias="autoScalingGroups"
    )
    load_balancers: list[LoadBalancerConfig] = Field(default_factory=list, alias="loadBalancers")
    applications: list[ApplicationConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_names(self) -> ClusterConfig:
        asg_names = [g.name for g in self.auto_scaling_groups]
        if len(asg_names) != len(set(asg_names)):
            raise ValueError("autoScalingGroups names must be unique within the cluster")

        lb_keys = [(lb.auto_scaling_group_name, lb.name) for lb in self.load_balancers]
        if len(lb_keys) != len(set(lb_keys)):
            raise ValueError("loadBalancers names must be unique within their autoScalingGroup")

        app_names = [a.name for a in self.applications]
        if len(app_names) != len(set(app_names)):
            raise ValueError("applications names must be unique within the cluster")
        return self

    def load_balancers_for(self, asg_name: str) -> list[LoadBalancerConfig]:
        """Return the desired load balancers owned by an auto-scaling group."""
        return [lb for lb in self.load_balancers if lb.auto_scaling_group_name == asg_name]
