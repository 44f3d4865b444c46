"""Spec normalization and field-level diffing.

Desired configuration and live gateway resources have different shapes
(optional lists, unordered host names, presence-only secrets). Everything is
projected onto one canonical, comparison-ready shape first, then walked field
by field to produce human-readable change strings such as::

    CPU: 500 -> 1000
    FixedScale: (unset) -> 2
    ExposedPorts add: 8443
    ExposedPorts[80].Hosts: a.example.com -> a.example.com,b.example.com

DESIGN PHILOSOPHY:
- Order independence: ports are matched by target port, host names sorted
- Scaling fields of the inactive scaling mode are never compared
- Secret values are never compared. Registry passwords and secret env values
  are diffed through the secret version ledger, or surfaced as caveats when
  two concrete versions are compared
"""

from __future__ import annotations

import functools
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .models import (
    SCALING_MODE_CPU,
    SCALING_MODE_MANUAL,
    ApplicationSpec,
    AutoScalingGroupConfig,
    ClusterSettings,
    EnvVarConfig,
    IpRangeConfig,
    LoadBalancerConfig,
)
from .resources import (
    ApplicationVersion,
    ApplicationVersionRequest,
    AutoScalingGroup,
    ClusterDetail,
    EnvironmentVariable,
    IpRange,
    LoadBalancer,
)
from .state import SecretVersionLedger

UNSET = "(unset)"


class ComparisonError(Exception):
    """Raised when a normalized structure is malformed and cannot be compared."""

    pass


@dataclass(frozen=True)
class NormalizedExposedPort:
    """Comparison-ready exposed port. Hosts are sorted."""

    target_port: int
    load_balancer_port: int | None = None
    use_lets_encrypt: bool = False
    hosts: tuple[str, ...] = ()
    health_check_path: str | None = None
    health_check_interval: int | None = None
    health_check_timeout: int | None = None


@dataclass(frozen=True)
class NormalizedApplicationSpec:
    """Comparison-ready projection of an application spec or version.

    Secret-bearing fields (registry password, env values) are excluded.
    """

    cpu: int
    memory: int
    scaling_mode: str
    fixed_scale: int | None = None
    min_scale: int | None = None
    max_scale: int | None = None
    scale_in_threshold: int | None = None
    scale_out_threshold: int | None = None
    image: str = ""
    cmd: str = ""
    registry_username: str = ""
    exposed_ports: tuple[NormalizedExposedPort, ...] = field(default_factory=tuple)


# =============================================================================
# Normalization
# =============================================================================


def _normalize_port(
    target_port: int,
    load_balancer_port: int | None,
    use_lets_encrypt: bool,
    hosts: Iterable[str],
    health_check: Any,
) -> NormalizedExposedPort:
    return NormalizedExposedPort(
        target_port=target_port,
        load_balancer_port=load_balancer_port,
        use_lets_encrypt=use_lets_encrypt,
        hosts=tuple(sorted(hosts)),
        health_check_path=health_check.path if health_check else None,
        health_check_interval=health_check.interval_seconds if health_check else None,
        health_check_timeout=health_check.timeout_seconds if health_check else None,
    )


def _normalize_common(source: Any, cmd: Sequence[str] | None) -> NormalizedApplicationSpec:
    ports = sorted(
        (
            _normalize_port(
                p.target_port, p.load_balancer_port, p.use_lets_encrypt, p.host, p.health_check
            )
            for p in source.exposed_ports
        ),
        key=lambda p: p.target_port,
    )
    return NormalizedApplicationSpec(
        cpu=source.cpu,
        memory=source.memory,
        scaling_mode=source.scaling_mode,
        fixed_scale=source.fixed_scale,
        min_scale=source.min_scale,
        max_scale=source.max_scale,
        scale_in_threshold=source.scale_in_threshold,
        scale_out_threshold=source.scale_out_threshold,
        image=source.image,
        cmd=" ".join(cmd or ()),
        registry_username=source.registry_username or "",
        exposed_ports=tuple(ports),
    )


@functools.singledispatch
def normalize(source: Any) -> NormalizedApplicationSpec:
    """Project a desired spec, live version or version request onto the canonical shape.

    Normalization never fails for validated inputs.
    """
    raise TypeError(f"Cannot normalize {type(source).__name__}")


@normalize.register
def _(source: ApplicationSpec) -> NormalizedApplicationSpec:
    return _normalize_common(source, source.cmd)


@normalize.register
def _(source: ApplicationVersion) -> NormalizedApplicationSpec:
    return _normalize_common(source, source.cmd)


@normalize.register
def _(source: ApplicationVersionRequest) -> NormalizedApplicationSpec:
    return _normalize_common(source, source.cmd)


# =============================================================================
# Formatting
# =============================================================================


def format_value(value: Any) -> str:
    """Render a field value for change output."""
    if value is None or value == "":
        return UNSET
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (tuple, list)):
        return ",".join(str(v) for v in value) if value else UNSET
    return str(value)


def format_list(values: Sequence[Any]) -> str:
    return "[" + ", ".join(str(v) for v in values) + "]"


def describe_change(name: str, old: Any, new: Any) -> str:
    return f"{name}: {format_value(old)} -> {format_value(new)}"


def _diff_field(changes: list[str], name: str, old: Any, new: Any) -> None:
    if old != new:
        changes.append(describe_change(name, old, new))


# =============================================================================
# Application spec comparison
# =============================================================================


_PORT_FIELDS = (
    ("LoadBalancerPort", "load_balancer_port"),
    ("UseLetsEncrypt", "use_lets_encrypt"),
    ("Hosts", "hosts"),
    ("HealthCheckPath", "health_check_path"),
    ("HealthCheckInterval", "health_check_interval"),
    ("HealthCheckTimeout", "health_check_timeout"),
)


def _index_ports(
    ports: Sequence[NormalizedExposedPort],
) -> dict[int, NormalizedExposedPort]:
    indexed: dict[int, NormalizedExposedPort] = {}
    for port in ports:
        if port.target_port in indexed:
            raise ComparisonError(f"Duplicate exposed target port: {port.target_port}")
        indexed[port.target_port] = port
    return indexed


def compare_specs(
    old: NormalizedApplicationSpec,
    new: NormalizedApplicationSpec,
    *,
    skip_image: bool = False,
) -> list[str]:
    """Compare two normalized specs and return ordered change strings.

    Scaling fields are gated by the target's scaling mode: FixedScale only
    under manual, MinScale/MaxScale/thresholds only under cpu.

    Args:
        old: Current (live) spec.
        new: Target spec.
        skip_image: Exclude the image field. Used while planning, where the
            image is always inherited from the latest version.

    Raises:
        ComparisonError: If either spec lists the same target port twice.
    """
    changes: list[str] = []

    _diff_field(changes, "CPU", old.cpu, new.cpu)
    _diff_field(changes, "Memory", old.memory, new.memory)
    _diff_field(changes, "ScalingMode", old.scaling_mode, new.scaling_mode)

    if new.scaling_mode != SCALING_MODE_CPU:
        _diff_field(changes, "FixedScale", old.fixed_scale, new.fixed_scale)
    if new.scaling_mode != SCALING_MODE_MANUAL:
        _diff_field(changes, "MinScale", old.min_scale, new.min_scale)
        _diff_field(changes, "MaxScale", old.max_scale, new.max_scale)
        _diff_field(changes, "ScaleInThreshold", old.scale_in_threshold, new.scale_in_threshold)
        _diff_field(
            changes, "ScaleOutThreshold", old.scale_out_threshold, new.scale_out_threshold
        )

    if not skip_image:
        _diff_field(changes, "Image", old.image, new.image)
    _diff_field(changes, "Cmd", old.cmd, new.cmd)
    _diff_field(changes, "RegistryUsername", old.registry_username, new.registry_username)

    old_ports = _index_ports(old.exposed_ports)
    new_ports = _index_ports(new.exposed_ports)
    for target in sorted(old_ports.keys() | new_ports.keys()):
        if target not in old_ports:
            changes.append(f"ExposedPorts add: {target}")
            continue
        if target not in new_ports:
            changes.append(f"ExposedPorts remove: {target}")
            continue
        for label, attr in _PORT_FIELDS:
            _diff_field(
                changes,
                f"ExposedPorts[{target}].{label}",
                getattr(old_ports[target], attr),
                getattr(new_ports[target], attr),
            )

    return changes


def describe_application_spec(spec: ApplicationSpec) -> list[str]:
    """Render a desired spec for a Create action (nothing live to diff against)."""
    lines = [
        f"Image: {spec.image}",
        f"CPU: {spec.cpu}",
        f"Memory: {spec.memory}",
        f"ScalingMode: {spec.scaling_mode}",
    ]
    if spec.scaling_mode == SCALING_MODE_MANUAL:
        lines.append(f"FixedScale: {format_value(spec.fixed_scale)}")
    else:
        lines.append(
            f"MinScale: {format_value(spec.min_scale)}, MaxScale: {format_value(spec.max_scale)}"
        )
    if spec.cmd:
        lines.append(f"Cmd: {' '.join(spec.cmd)}")
    if spec.registry_username:
        lines.append(f"RegistryUsername: {spec.registry_username}")
    if spec.registry_password_version is not None:
        lines.append(f"RegistryPasswordVersion: (new) -> {spec.registry_password_version}")
    ports = sorted(p.target_port for p in spec.exposed_ports)
    lines.append(f"ExposedPorts: {', '.join(str(p) for p in ports)}")
    if spec.env:
        secrets = sum(1 for e in spec.env if e.secret)
        lines.append(f"Env: {len(spec.env)} variables ({secrets} secret)")
    return lines


# =============================================================================
# Secrets: registry password and environment variables
# =============================================================================


def compare_registry_password(stored: int | None, desired: int | None) -> list[str]:
    """Diff the registry password purely through ledger versions."""
    if desired is not None:
        if stored is None:
            return [f"RegistryPasswordVersion: (new) -> {desired}"]
        if stored != desired:
            return [f"RegistryPasswordVersion: {stored} -> {desired}"]
        return []
    if stored is not None:
        return [f"RegistryPasswordVersion: {stored} -> (removed)"]
    return []


def _env_value(value: str | None) -> str:
    return value if value is not None else ""


def compare_env_with_ledger(
    app_name: str,
    current: Sequence[EnvironmentVariable],
    desired: Sequence[EnvVarConfig] | None,
    ledger: SecretVersionLedger,
) -> list[str]:
    """Diff desired env against the live version while planning.

    Non-secret keys compare effective values. Secret keys defer to the
    ledger: desired version absent from the ledger is "new", differing
    versions are an update, equal versions are no change. An undeclared env
    list is inherited from the live version and produces no changes.
    """
    if desired is None:
        return []

    changes: list[str] = []
    current_by_key = {e.key: e for e in current}
    desired_keys = {e.key for e in desired}

    for env in desired:
        live = current_by_key.get(env.key)
        if live is None:
            if env.secret:
                changes.append(f"Env add: {env.key} (secret)")
            elif env.value is not None:
                changes.append(f"Env add: {env.key}={env.value}")
            else:
                changes.append(f"Env add: {env.key}")
            continue

        if env.secret:
            if env.secret_version is None:
                continue
            stored = ledger.get_secret_env_version(app_name, env.key)
            if stored is None:
                changes.append(
                    f"Env update: {env.key} (secret, version: new -> {env.secret_version})"
                )
            elif stored != env.secret_version:
                changes.append(
                    f"Env update: {env.key} (secret, version: {stored} -> {env.secret_version})"
                )
            continue

        old_value = _env_value(live.value)
        new_value = _env_value(env.value)
        if old_value != new_value:
            changes.append(f"Env update: {env.key}={old_value} -> {new_value}")

    for live in current:
        if live.key not in desired_keys:
            suffix = " (secret)" if live.secret else ""
            changes.append(f"Env remove: {live.key}{suffix}")

    return changes


def compare_version_env(
    old: Sequence[EnvironmentVariable], new: Sequence[EnvironmentVariable]
) -> tuple[list[str], bool]:
    """Diff env between two concrete versions.

    Returns:
        Tuple of (changes, has_secrets). Secret values cannot be compared, so
        keys present on both sides with either side secret yield no change.
    """
    changes: list[str] = []
    has_secrets = any(e.secret for e in old) or any(e.secret for e in new)
    old_by_key = {e.key: e for e in old}
    new_keys = {e.key for e in new}

    for env in new:
        before = old_by_key.get(env.key)
        if before is None:
            if env.secret:
                changes.append(f"Env add: {env.key} (secret)")
            elif env.value is not None:
                changes.append(f"Env add: {env.key}={env.value}")
            else:
                changes.append(f"Env add: {env.key}")
            continue
        if env.secret or before.secret:
            continue
        old_value = _env_value(before.value)
        new_value = _env_value(env.value)
        if old_value != new_value:
            changes.append(f"Env update: {env.key}={old_value} -> {new_value}")

    for env in old:
        if env.key not in new_keys:
            suffix = " (secret)" if env.secret else ""
            changes.append(f"Env remove: {env.key}{suffix}")

    return changes, has_secrets


# =============================================================================
# Cluster settings
# =============================================================================


def compare_cluster_settings(current: ClusterDetail, desired: ClusterSettings) -> list[str]:
    """Diff cluster settings.

    The gateway reports only whether a Let's Encrypt e-mail is set. Presence
    is compared, and when both sides have one an update is always planned
    because the values cannot be compared.
    """
    changes: list[str] = []
    has_current = current.has_lets_encrypt_email
    desired_email = desired.lets_encrypt_email or ""

    if not has_current and desired_email:
        changes.append(f"LetsEncryptEmail: (unset) -> {desired_email}")
    elif has_current and not desired_email:
        changes.append("LetsEncryptEmail: (set) -> (unset)")
    elif has_current and desired_email:
        changes.append(
            f"LetsEncryptEmail: (set) -> {desired_email} (value comparison not possible)"
        )

    _diff_field(
        changes, "ServicePrincipalID", current.service_principal_id, desired.service_principal_id
    )
    return changes


# =============================================================================
# Infrastructure: auto-scaling groups and load balancers
# =============================================================================


def _ranges(pool: Sequence[IpRange | IpRangeConfig]) -> list[tuple[str, str]]:
    return [(r.start, r.end) for r in pool]


def _format_ranges(pool: list[tuple[str, str]]) -> str:
    return format_list([f"{start}-{end}" for start, end in pool])


def _compare_interfaces(
    current: Sequence[Any], desired: Sequence[Any], fields: Sequence[tuple[str, str]]
) -> list[str]:
    if len(current) != len(desired):
        return [f"Interfaces count: {len(current)} -> {len(desired)}"]

    changes: list[str] = []
    current_by_index = {i.interface_index: i for i in current}
    for wanted in sorted(desired, key=lambda i: i.interface_index):
        idx = wanted.interface_index
        live = current_by_index.get(idx)
        if live is None:
            changes.append(f"Interface[{idx}]: new interface")
            continue
        for label, attr in fields:
            _diff_field(
                changes, f"Interface[{idx}].{label}", getattr(live, attr), getattr(wanted, attr)
            )
        live_pool = _ranges(live.ip_pool)
        wanted_pool = _ranges(wanted.ip_pool)
        if live_pool != wanted_pool:
            changes.append(
                f"Interface[{idx}].IpPool: {_format_ranges(live_pool)} -> "
                f"{_format_ranges(wanted_pool)}"
            )
    return changes


_ASG_INTERFACE_FIELDS = (
    ("Upstream", "upstream"),
    ("ConnectsToLB", "connects_to_lb"),
    ("NetmaskLen", "netmask_len"),
    ("DefaultGateway", "default_gateway"),
    ("PacketFilterID", "packet_filter_id"),
)

_LB_INTERFACE_FIELDS = (
    ("Upstream", "upstream"),
    ("NetmaskLen", "netmask_len"),
    ("DefaultGateway", "default_gateway"),
    ("Vip", "vip"),
    ("VirtualRouterID", "virtual_router_id"),
    ("PacketFilterID", "packet_filter_id"),
)


def compare_auto_scaling_group(
    current: AutoScalingGroup, desired: AutoScalingGroupConfig
) -> list[str]:
    """Diff a live auto-scaling group against its desired config."""
    changes: list[str] = []
    _diff_field(changes, "Zone", current.zone, desired.zone)
    _diff_field(
        changes,
        "WorkerServiceClassPath",
        current.worker_service_class_path,
        desired.worker_service_class_path,
    )
    _diff_field(changes, "MinNodes", current.min_nodes, desired.min_nodes)
    _diff_field(changes, "MaxNodes", current.max_nodes, desired.max_nodes)
    # Name server order is significant
    if list(current.name_servers) != list(desired.name_servers):
        changes.append(
            f"NameServers: {format_list(current.name_servers)} -> "
            f"{format_list(desired.name_servers)}"
        )
    changes.extend(
        _compare_interfaces(current.interfaces, desired.interfaces, _ASG_INTERFACE_FIELDS)
    )
    return changes


def compare_load_balancer(current: LoadBalancer, desired: LoadBalancerConfig) -> list[str]:
    """Diff a live load balancer against its desired config."""
    changes: list[str] = []
    _diff_field(changes, "ServiceClassPath", current.service_class_path, desired.service_class_path)
    if list(current.name_servers) != list(desired.name_servers):
        changes.append(
            f"NameServers: {format_list(current.name_servers)} -> "
            f"{format_list(desired.name_servers)}"
        )
    changes.extend(
        _compare_interfaces(current.interfaces, desired.interfaces, _LB_INTERFACE_FIELDS)
    )
    return changes


def describe_auto_scaling_group(cfg: AutoScalingGroupConfig) -> list[str]:
    return [
        f"Zone: {cfg.zone}",
        f"WorkerServiceClassPath: {cfg.worker_service_class_path}",
        f"MinNodes: {cfg.min_nodes}, MaxNodes: {cfg.max_nodes}",
        f"NameServers: {format_list(cfg.name_servers)}",
        f"Interfaces: {len(cfg.interfaces)} configured",
    ]


def describe_load_balancer(cfg: LoadBalancerConfig) -> list[str]:
    return [
        f"AutoScalingGroup: {cfg.auto_scaling_group_name}",
        f"ServiceClassPath: {cfg.service_class_path}",
        f"NameServers: {format_list(cfg.name_servers)}",
        f"Interfaces: {len(cfg.interfaces)} configured",
    ]
