"""Application version operations and cluster dump.

Read-only helpers behind the versions, diff and dump commands, plus the
explicit activation step that points an application at a version.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .diff_normalizer import compare_specs, compare_version_env, normalize
from .gateway import (
    Gateway,
    GatewayError,
    ResolutionError,
    drain,
    find_application,
    latest_version,
    list_all_applications,
    list_all_versions,
    resolve_cluster,
    wrap_gateway_error,
)
from .resources import ApplicationVersion, AutoScalingGroup, LoadBalancer

logger = logging.getLogger(__name__)

SECRET_CAVEAT = (
    "secret env values and registryPassword cannot be compared (values not returned by API)"
)


@dataclass(frozen=True)
class VersionInfo:
    version: int
    image: str
    created: datetime
    active_nodes: int
    is_active: bool


@dataclass
class VersionList:
    """All versions of one application, sorted by version number."""

    application_name: str
    application_id: str
    versions: list[VersionInfo] = field(default_factory=list)
    active_version: int | None = None
    latest_version: int | None = None


@dataclass
class VersionDiff:
    from_version: int
    to_version: int
    changes: list[str] = field(default_factory=list)
    has_secret_env: bool = False
    has_registry_password: bool = False

    @property
    def caveats(self) -> list[str]:
        """Fields whose values exist but could not be compared."""
        if self.has_secret_env or self.has_registry_password:
            return [SECRET_CAVEAT]
        return []


async def list_versions(gateway: Gateway, cluster_name: str, app_name: str) -> VersionList:
    """List every version of an application across all pages.

    Raises:
        ResolutionError: If the cluster or application does not exist.
        GatewayError: If a gateway call fails.
    """
    cluster = await resolve_cluster(gateway, cluster_name)
    app = await find_application(gateway, cluster.cluster_id, app_name)
    summaries = await list_all_versions(gateway, app.application_id)

    versions = sorted(
        (
            VersionInfo(
                version=s.version,
                image=s.image,
                created=datetime.fromtimestamp(s.created, tz=UTC),
                active_nodes=s.active_node_count,
                is_active=s.version == app.active_version,
            )
            for s in summaries
        ),
        key=lambda v: v.version,
    )
    return VersionList(
        application_name=app_name,
        application_id=app.application_id,
        versions=versions,
        active_version=app.active_version,
        latest_version=versions[-1].version if versions else None,
    )


async def _get_version(gateway: Gateway, application_id: str, number: int) -> ApplicationVersion:
    try:
        return await gateway.get_application_version(application_id, number)
    except GatewayError as e:
        raise wrap_gateway_error(e, f"failed to get version {number}") from e


async def diff_versions(
    gateway: Gateway,
    cluster_name: str,
    app_name: str,
    from_version: int = 0,
    to_version: int = 0,
) -> VersionDiff:
    """Compare two concrete versions, image included.

    A from_version of 0 selects the active version; a to_version of 0 selects
    the latest version.

    Raises:
        ResolutionError: If the cluster, application or a version cannot be
            resolved.
        GatewayError: If a gateway call fails.
    """
    cluster = await resolve_cluster(gateway, cluster_name)
    app = await find_application(gateway, cluster.cluster_id, app_name)

    if from_version == 0:
        if app.active_version is None:
            raise ResolutionError(f'no active version exists for application "{app_name}"')
        from_version = app.active_version

    if to_version == 0:
        latest = await latest_version(gateway, app.application_id)
        if latest is None:
            raise ResolutionError(f'no versions exist for application "{app_name}"')
        to_version = latest.version

    old = await _get_version(gateway, app.application_id, from_version)
    new = await _get_version(gateway, app.application_id, to_version)

    changes = compare_specs(normalize(old), normalize(new), skip_image=False)
    env_changes, has_secrets = compare_version_env(old.env, new.env)
    changes.extend(env_changes)

    return VersionDiff(
        from_version=from_version,
        to_version=to_version,
        changes=changes,
        has_secret_env=has_secrets,
        has_registry_password=old.has_registry_credentials or new.has_registry_credentials,
    )


async def activate_version(
    gateway: Gateway, cluster_name: str, app_name: str, version: int = 0
) -> int:
    """Point the application at a version (0 means latest).

    Returns:
        The activated version number.
    """
    cluster = await resolve_cluster(gateway, cluster_name)
    app = await find_application(gateway, cluster.cluster_id, app_name)

    if version == 0:
        latest = await latest_version(gateway, app.application_id)
        if latest is None:
            raise ResolutionError(f'no versions exist for application "{app_name}"')
        version = latest.version

    try:
        await gateway.update_application(app.application_id, version)
    except GatewayError as e:
        raise wrap_gateway_error(e, "failed to activate version") from e

    logger.info(
        "Activated application version",
        extra={"cluster": cluster_name, "application": app_name, "version": version},
    )
    return version


# =============================================================================
# Dump
# =============================================================================


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _dump_interface(interface: Any) -> dict[str, Any]:
    data = interface.model_dump(by_alias=True, mode="json")
    return _drop_none(data)


def _dump_auto_scaling_group(asg: AutoScalingGroup) -> dict[str, Any]:
    return {
        "name": asg.name,
        "zone": asg.zone,
        "workerServiceClassPath": asg.worker_service_class_path,
        "minNodes": asg.min_nodes,
        "maxNodes": asg.max_nodes,
        "nameServers": list(asg.name_servers),
        "interfaces": [_dump_interface(i) for i in asg.interfaces],
    }


def _dump_load_balancer(lb: LoadBalancer, asg_name: str) -> dict[str, Any]:
    return {
        "name": lb.name,
        "autoScalingGroupName": asg_name,
        "serviceClassPath": lb.service_class_path,
        "nameServers": list(lb.name_servers),
        "interfaces": [_dump_interface(i) for i in lb.interfaces],
    }


def _dump_application_spec(version: ApplicationVersion) -> dict[str, Any]:
    spec: dict[str, Any] = _drop_none(
        {
            "cpu": version.cpu,
            "memory": version.memory,
            "scalingMode": version.scaling_mode,
            "fixedScale": version.fixed_scale,
            "minScale": version.min_scale,
            "maxScale": version.max_scale,
            "scaleInThreshold": version.scale_in_threshold,
            "scaleOutThreshold": version.scale_out_threshold,
            "image": version.image,
        }
    )
    if version.cmd:
        spec["cmd"] = list(version.cmd)
    if version.registry_username:
        spec["registryUsername"] = version.registry_username

    ports = []
    for port in version.exposed_ports:
        ports.append(_drop_none(port.model_dump(by_alias=True, mode="json")))
    spec["exposedPorts"] = ports

    if version.env:
        env = []
        for var in version.env:
            entry: dict[str, Any] = {"key": var.key}
            if var.secret:
                entry["secret"] = True
            elif var.value is not None:
                entry["value"] = var.value
            env.append(entry)
        spec["env"] = env
    return spec


async def dump_cluster(gateway: Gateway, cluster_name: str) -> dict[str, Any]:
    """Build a configuration document from the live cluster.

    Secret values never leave the gateway, so secret env entries carry only
    their key and the registry password is absent. Applications whose latest
    version cannot be fetched are skipped with a warning.
    """
    cluster = await resolve_cluster(gateway, cluster_name)
    cid = cluster.cluster_id

    try:
        asgs = await drain(functools.partial(gateway.list_auto_scaling_groups, cid))
    except GatewayError as e:
        raise wrap_gateway_error(e, "failed to list auto scaling groups") from e

    asg_docs: list[dict[str, Any]] = []
    lb_docs: list[dict[str, Any]] = []
    for asg in asgs:
        asg_docs.append(_dump_auto_scaling_group(asg))
        asg_id = asg.auto_scaling_group_id
        try:
            summaries = await drain(functools.partial(gateway.list_load_balancers, cid, asg_id))
            for summary in summaries:
                lb = await gateway.get_load_balancer(cid, asg_id, summary.load_balancer_id)
                lb_docs.append(_dump_load_balancer(lb, asg.name))
        except GatewayError as e:
            raise wrap_gateway_error(e, f"failed to list load balancers for ASG {asg.name}") from e

    app_docs: list[dict[str, Any]] = []
    for app in await list_all_applications(gateway, cid):
        try:
            latest = await latest_version(gateway, app.application_id)
        except GatewayError as e:
            logger.warning(
                "Failed to get latest version, skipping application",
                extra={"application": app.name, "error": str(e)},
            )
            continue
        doc: dict[str, Any] = {"name": app.name}
        if latest is not None:
            doc["spec"] = _dump_application_spec(latest)
        app_docs.append(doc)

    document: dict[str, Any] = {"clusterName": cluster_name}
    if asg_docs:
        document["autoScalingGroups"] = asg_docs
    if lb_docs:
        document["loadBalancers"] = lb_docs
    if app_docs:
        document["applications"] = app_docs
    return document
