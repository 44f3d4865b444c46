"""Pydantic models for control-plane payloads.

Read models mirror what the gateway returns. Request models carry what the
gateway accepts. Unknown response fields are ignored so newer API revisions
do not break parsing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

from .models import (
    ApplicationSpec,
    AutoScalingGroupConfig,
    ClusterSettings,
    LoadBalancerConfig,
)

_MODEL_CONFIG = {"extra": "ignore", "populate_by_name": True}

T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """One page of a cursor-paginated listing."""

    items: list[T] = field(default_factory=list)
    next_cursor: str | None = None


# =============================================================================
# Clusters
# =============================================================================


class ClusterSummary(BaseModel):
    model_config = _MODEL_CONFIG

    cluster_id: str = Field(alias="clusterId")
    name: str


class ClusterDetail(BaseModel):
    """Cluster settings as reported by the gateway (e-mail is presence-only)."""

    model_config = _MODEL_CONFIG

    cluster_id: str = Field(alias="clusterId")
    name: str
    service_principal_id: str = Field("", alias="servicePrincipalId")
    has_lets_encrypt_email: bool = Field(False, alias="hasLetsEncryptEmail")


class ClusterUpdateRequest(BaseModel):
    model_config = _MODEL_CONFIG

    service_principal_id: str = Field(alias="servicePrincipalId")
    lets_encrypt_email: str | None = Field(None, alias="letsEncryptEmail")

    @classmethod
    def from_settings(cls, settings: ClusterSettings) -> ClusterUpdateRequest:
        return cls(
            service_principal_id=settings.service_principal_id,
            lets_encrypt_email=settings.lets_encrypt_email,
        )


# =============================================================================
# Auto-scaling groups and load balancers
# =============================================================================


class IpRange(BaseModel):
    model_config = _MODEL_CONFIG

    start: str
    end: str


class ASGInterface(BaseModel):
    model_config = _MODEL_CONFIG

    interface_index: int = Field(alias="interfaceIndex")
    upstream: str
    connects_to_lb: bool = Field(False, alias="connectsToLb")
    ip_pool: list[IpRange] = Field(default_factory=list, alias="ipPool")
    netmask_len: int | None = Field(None, alias="netmaskLen")
    default_gateway: str | None = Field(None, alias="defaultGateway")
    packet_filter_id: str | None = Field(None, alias="packetFilterId")


class AutoScalingGroup(BaseModel):
    model_config = _MODEL_CONFIG

    auto_scaling_group_id: str = Field(alias="autoScalingGroupId")
    name: str
    zone: str
    worker_service_class_path: str = Field(alias="workerServiceClassPath")
    min_nodes: int = Field(alias="minNodes")
    max_nodes: int = Field(alias="maxNodes")
    name_servers: list[str] = Field(default_factory=list, alias="nameServers")
    interfaces: list[ASGInterface] = Field(default_factory=list)


class AutoScalingGroupRequest(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    zone: str
    worker_service_class_path: str = Field(alias="workerServiceClassPath")
    min_nodes: int = Field(alias="minNodes")
    max_nodes: int = Field(alias="maxNodes")
    name_servers: list[str] = Field(default_factory=list, alias="nameServers")
    interfaces: list[ASGInterface] = Field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: AutoScalingGroupConfig) -> AutoScalingGroupRequest:
        return cls(
            name=cfg.name,
            zone=cfg.zone,
            worker_service_class_path=cfg.worker_service_class_path,
            min_nodes=cfg.min_nodes,
            max_nodes=cfg.max_nodes,
            name_servers=list(cfg.name_servers),
            interfaces=[ASGInterface.model_validate(i.model_dump()) for i in cfg.interfaces],
        )


class LBInterface(BaseModel):
    model_config = _MODEL_CONFIG

    interface_index: int = Field(alias="interfaceIndex")
    upstream: str
    ip_pool: list[IpRange] = Field(default_factory=list, alias="ipPool")
    netmask_len: int | None = Field(None, alias="netmaskLen")
    default_gateway: str | None = Field(None, alias="defaultGateway")
    vip: str | None = None
    virtual_router_id: int | None = Field(None, alias="virtualRouterId")
    packet_filter_id: str | None = Field(None, alias="packetFilterId")


class LoadBalancerSummary(BaseModel):
    model_config = _MODEL_CONFIG

    load_balancer_id: str = Field(alias="loadBalancerId")
    name: str


class LoadBalancer(BaseModel):
    model_config = _MODEL_CONFIG

    load_balancer_id: str = Field(alias="loadBalancerId")
    name: str
    service_class_path: str = Field(alias="serviceClassPath")
    name_servers: list[str] = Field(default_factory=list, alias="nameServers")
    interfaces: list[LBInterface] = Field(default_factory=list)


class LoadBalancerRequest(BaseModel):
    model_config = _MODEL_CONFIG

    name: str
    service_class_path: str = Field(alias="serviceClassPath")
    name_servers: list[str] = Field(default_factory=list, alias="nameServers")
    interfaces: list[LBInterface] = Field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: LoadBalancerConfig) -> LoadBalancerRequest:
        return cls(
            name=cfg.name,
            service_class_path=cfg.service_class_path,
            name_servers=list(cfg.name_servers),
            interfaces=[LBInterface.model_validate(i.model_dump()) for i in cfg.interfaces],
        )


# =============================================================================
# Applications and versions
# =============================================================================


class Application(BaseModel):
    model_config = _MODEL_CONFIG

    application_id: str = Field(alias="applicationId")
    name: str
    cluster_id: str | None = Field(None, alias="clusterId")
    active_version: int | None = Field(None, alias="activeVersion")


class HealthCheck(BaseModel):
    model_config = _MODEL_CONFIG

    path: str
    interval_seconds: int = Field(alias="intervalSeconds")
    timeout_seconds: int = Field(alias="timeoutSeconds")


class ExposedPort(BaseModel):
    model_config = _MODEL_CONFIG

    target_port: int = Field(alias="targetPort")
    load_balancer_port: int | None = Field(None, alias="loadBalancerPort")
    use_lets_encrypt: bool = Field(False, alias="useLetsEncrypt")
    host: list[str] = Field(default_factory=list)
    health_check: HealthCheck | None = Field(None, alias="healthCheck")


class EnvironmentVariable(BaseModel):
    """Environment variable. The gateway never returns values of secret keys."""

    model_config = _MODEL_CONFIG

    key: str
    value: str | None = None
    secret: bool = False


class ApplicationVersionSummary(BaseModel):
    model_config = _MODEL_CONFIG

    version: int
    image: str = ""
    created: int = 0
    active_node_count: int = Field(0, alias="activeNodeCount")


class ApplicationVersion(BaseModel):
    """Full settings of one immutable application version."""

    model_config = _MODEL_CONFIG

    version: int
    cpu: int
    memory: int
    scaling_mode: str = Field(alias="scalingMode")
    fixed_scale: int | None = Field(None, alias="fixedScale")
    min_scale: int | None = Field(None, alias="minScale")
    max_scale: int | None = Field(None, alias="maxScale")
    scale_in_threshold: int | None = Field(None, alias="scaleInThreshold")
    scale_out_threshold: int | None = Field(None, alias="scaleOutThreshold")
    image: str
    cmd: list[str] = Field(default_factory=list)
    registry_username: str | None = Field(None, alias="registryUsername")
    exposed_ports: list[ExposedPort] = Field(default_factory=list, alias="exposedPorts")
    env: list[EnvironmentVariable] = Field(default_factory=list)

    @property
    def has_registry_credentials(self) -> bool:
        return bool(self.registry_username)


class RegistryPasswordAction(str, Enum):
    """What the gateway should do with the stored registry password."""

    NEW = "new"
    KEEP = "keep"
    REMOVE = "remove"


class ApplicationVersionRequest(BaseModel):
    """Payload for creating a new application version."""

    model_config = _MODEL_CONFIG

    cpu: int
    memory: int
    scaling_mode: str = Field(alias="scalingMode")
    fixed_scale: int | None = Field(None, alias="fixedScale")
    min_scale: int | None = Field(None, alias="minScale")
    max_scale: int | None = Field(None, alias="maxScale")
    scale_in_threshold: int | None = Field(None, alias="scaleInThreshold")
    scale_out_threshold: int | None = Field(None, alias="scaleOutThreshold")
    image: str
    cmd: list[str] = Field(default_factory=list)
    registry_username: str | None = Field(None, alias="registryUsername")
    registry_password: str | None = Field(None, alias="registryPassword")
    registry_password_action: RegistryPasswordAction = Field(
        RegistryPasswordAction.REMOVE, alias="registryPasswordAction"
    )
    exposed_ports: list[ExposedPort] = Field(default_factory=list, alias="exposedPorts")
    env: list[EnvironmentVariable] = Field(default_factory=list)

    @classmethod
    def from_spec(
        cls, spec: ApplicationSpec, base: ApplicationVersion | None = None
    ) -> ApplicationVersionRequest:
        """Build a version request from the desired spec.

        With a base version (the application's latest), the image is always
        taken from the base and every field the spec leaves undeclared is
        inherited. Secret env values are never inherited because the gateway
        does not return them.
        """

        def pick(desired: Any, inherited: Any) -> Any:
            return desired if desired is not None else inherited

        image = base.image if base is not None else spec.image

        if spec.cmd is not None:
            cmd = list(spec.cmd)
        else:
            cmd = list(base.cmd) if base is not None else []

        if spec.registry_username is not None:
            username: str | None = spec.registry_username
            action = RegistryPasswordAction.NEW
        elif base is not None and base.registry_username:
            username = base.registry_username
            action = RegistryPasswordAction.KEEP
        else:
            username = None
            action = RegistryPasswordAction.REMOVE

        password: str | None = None
        if spec.registry_password is not None:
            password = spec.registry_password
            action = RegistryPasswordAction.NEW
        elif base is not None and base.registry_username is not None:
            action = RegistryPasswordAction.KEEP

        ports = [ExposedPort.model_validate(p.model_dump()) for p in spec.exposed_ports]

        if spec.env is not None:
            env = [EnvironmentVariable(key=e.key, value=e.value, secret=e.secret) for e in spec.env]
        elif base is not None:
            env = [
                EnvironmentVariable(key=e.key, value=None if e.secret else e.value, secret=e.secret)
                for e in base.env
            ]
        else:
            env = []

        return cls(
            cpu=spec.cpu,
            memory=spec.memory,
            scaling_mode=spec.scaling_mode,
            fixed_scale=pick(spec.fixed_scale, base.fixed_scale if base else None),
            min_scale=pick(spec.min_scale, base.min_scale if base else None),
            max_scale=pick(spec.max_scale, base.max_scale if base else None),
            scale_in_threshold=pick(
                spec.scale_in_threshold, base.scale_in_threshold if base else None
            ),
            scale_out_threshold=pick(
                spec.scale_out_threshold, base.scale_out_threshold if base else None
            ),
            image=image,
            cmd=cmd,
            registry_username=username,
            registry_password=password,
            registry_password_action=action,
            exposed_ports=ports,
            env=env,
        )

    def to_payload(self) -> dict[str, Any]:
        """Serialize with wire field names."""
        return self.model_dump(by_alias=True, mode="json")
