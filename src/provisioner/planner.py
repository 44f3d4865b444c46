"""Plan computation: name-keyed joins between desired and live state.

Every decision reduces to an outer join by name between the desired
configuration and the live snapshot of one resource kind:

- desired only            -> Create
- both, settings differ   -> Recreate (ASG, LB) or Update (Application)
- both, no differences    -> Noop
- live only (orphan)      -> Skip (ASG, LB) or a warning (Application)

Auto-scaling groups and load balancers have no in-place update on the
gateway, so any drift is a delete-then-create. Applications get a new
immutable version instead.

Orphan handling is asymmetric: unlisted infrastructure is never deleted, and
unlisted applications are only reported.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from enum import Enum

from .diff_normalizer import (
    compare_auto_scaling_group,
    compare_cluster_settings,
    compare_env_with_ledger,
    compare_load_balancer,
    compare_registry_password,
    compare_specs,
    describe_application_spec,
    describe_auto_scaling_group,
    describe_load_balancer,
    normalize,
)
from .gateway import Gateway, GatewayError, drain, latest_version, wrap_gateway_error
from .models import (
    ApplicationConfig,
    AutoScalingGroupConfig,
    ClusterConfig,
    ClusterSettings,
    LoadBalancerConfig,
)
from .resources import (
    Application,
    ApplicationVersion,
    ApplicationVersionRequest,
    AutoScalingGroup,
    ClusterDetail,
    LoadBalancer,
)
from .state import SecretVersionLedger

logger = logging.getLogger(__name__)

INITIAL_VERSION_CHANGE = "Create initial version (no versions exist)"


class ActionType(str, Enum):
    """Classification of one resource in a plan."""

    CREATE = "create"
    UPDATE = "update"
    RECREATE = "recreate"
    NOOP = "noop"
    SKIP = "skip"
    DELETE = "delete"


MUTATING_ACTIONS = frozenset(
    {ActionType.CREATE, ActionType.UPDATE, ActionType.RECREATE, ActionType.DELETE}
)


@dataclass(frozen=True)
class ClusterIdentity:
    """Cluster name and gateway id, resolved once per operation."""

    name: str
    cluster_id: str


@dataclass(frozen=True)
class PlannedAction:
    action: ActionType
    name: str
    changes: tuple[str, ...] = ()

    @property
    def is_change(self) -> bool:
        return self.action in MUTATING_ACTIONS


@dataclass(frozen=True)
class AutoScalingGroupAction(PlannedAction):
    existing_id: str | None = None
    desired: AutoScalingGroupConfig | None = None


@dataclass(frozen=True)
class LoadBalancerAction(PlannedAction):
    """Load balancer action.

    asg_id is the owning group's id known at planning time. It is None when
    the group does not exist yet; the executor then resolves it from the ids
    recorded while creating groups.
    """

    asg_name: str = ""
    asg_id: str | None = None
    existing_id: str | None = None
    desired: LoadBalancerConfig | None = None


@dataclass(frozen=True)
class ApplicationAction(PlannedAction):
    application_id: str | None = None
    desired: ApplicationConfig | None = None


@dataclass(frozen=True)
class ClusterAction:
    action: ActionType
    changes: tuple[str, ...] = ()
    desired: ClusterSettings | None = None


@dataclass(frozen=True)
class Plan:
    """Immutable result of planning, the sole input to apply."""

    cluster: ClusterIdentity
    cluster_action: ClusterAction | None = None
    asg_actions: tuple[AutoScalingGroupAction, ...] = ()
    lb_actions: tuple[LoadBalancerAction, ...] = ()
    app_actions: tuple[ApplicationAction, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def has_changes(self) -> bool:
        if self.cluster_action is not None and self.cluster_action.action in MUTATING_ACTIONS:
            return True
        return any(
            a.is_change for a in (*self.asg_actions, *self.lb_actions, *self.app_actions)
        )

    def count(self, actions: tuple[PlannedAction, ...], action: ActionType) -> int:
        return sum(1 for a in actions if a.action == action)


@dataclass
class LiveState:
    """Snapshot of the cluster's live resources for one planning run.

    load_balancers is indexed by owning ASG name. latest_versions holds the
    highest-numbered version per application name, or None if it has none.
    """

    auto_scaling_groups: list[AutoScalingGroup] = field(default_factory=list)
    load_balancers: dict[str, list[LoadBalancer]] = field(default_factory=dict)
    applications: list[Application] = field(default_factory=list)
    latest_versions: dict[str, ApplicationVersion | None] = field(default_factory=dict)
    cluster_detail: ClusterDetail | None = None


async def collect_live_state(
    gateway: Gateway, cluster: ClusterIdentity, desired: ClusterConfig
) -> LiveState:
    """Fetch everything the planner needs, draining every listing first.

    Raises:
        GatewayError: If any list or get call fails.
    """
    cid = cluster.cluster_id
    live = LiveState()

    if desired.cluster is not None:
        try:
            live.cluster_detail = await gateway.get_cluster(cid)
        except GatewayError as e:
            raise wrap_gateway_error(e, "failed to get cluster") from e

    try:
        live.auto_scaling_groups = await drain(
            functools.partial(gateway.list_auto_scaling_groups, cid)
        )
    except GatewayError as e:
        raise wrap_gateway_error(e, "failed to list auto scaling groups") from e

    for asg in live.auto_scaling_groups:
        asg_id = asg.auto_scaling_group_id
        try:
            summaries = await drain(functools.partial(gateway.list_load_balancers, cid, asg_id))
        except GatewayError as e:
            raise wrap_gateway_error(
                e, f"failed to list load balancers for auto scaling group {asg.name}"
            ) from e
        details = []
        for summary in summaries:
            try:
                details.append(
                    await gateway.get_load_balancer(cid, asg_id, summary.load_balancer_id)
                )
            except GatewayError as e:
                raise wrap_gateway_error(e, f"failed to get load balancer {summary.name}") from e
        live.load_balancers[asg.name] = details

    try:
        live.applications = await drain(functools.partial(gateway.list_applications, cid))
    except GatewayError as e:
        raise wrap_gateway_error(e, "failed to list applications") from e

    desired_apps = {a.name for a in desired.applications}
    for app in live.applications:
        if app.name in desired_apps:
            live.latest_versions[app.name] = await latest_version(gateway, app.application_id)

    logger.debug(
        "Collected live state",
        extra={
            "cluster": cluster.name,
            "auto_scaling_groups": len(live.auto_scaling_groups),
            "load_balancers": sum(len(v) for v in live.load_balancers.values()),
            "applications": len(live.applications),
        },
    )
    return live


class Planner:
    """Classifies every named resource into an action. Performs no I/O."""

    def __init__(self, ledger: SecretVersionLedger) -> None:
        self._ledger = ledger

    def plan(self, cluster: ClusterIdentity, desired: ClusterConfig, live: LiveState) -> Plan:
        warnings: list[str] = []
        asg_actions = self._plan_auto_scaling_groups(desired, live)
        recreated = {a.name for a in asg_actions if a.action == ActionType.RECREATE}
        lb_actions = self._plan_load_balancers(desired, live, recreated, warnings)
        app_actions = self._plan_applications(desired, live, warnings)

        return Plan(
            cluster=cluster,
            cluster_action=self._plan_cluster(desired, live),
            asg_actions=tuple(asg_actions),
            lb_actions=tuple(lb_actions),
            app_actions=tuple(app_actions),
            warnings=tuple(warnings),
        )

    def _plan_cluster(self, desired: ClusterConfig, live: LiveState) -> ClusterAction | None:
        if desired.cluster is None or live.cluster_detail is None:
            return None
        changes = compare_cluster_settings(live.cluster_detail, desired.cluster)
        action = ActionType.UPDATE if changes else ActionType.NOOP
        return ClusterAction(action=action, changes=tuple(changes), desired=desired.cluster)

    def _plan_auto_scaling_groups(
        self, desired: ClusterConfig, live: LiveState
    ) -> list[AutoScalingGroupAction]:
        live_by_name = {g.name: g for g in live.auto_scaling_groups}
        actions: list[AutoScalingGroupAction] = []

        for cfg in desired.auto_scaling_groups:
            current = live_by_name.get(cfg.name)
            if current is None:
                actions.append(
                    AutoScalingGroupAction(
                        action=ActionType.CREATE,
                        name=cfg.name,
                        changes=tuple(describe_auto_scaling_group(cfg)),
                        desired=cfg,
                    )
                )
                continue

            changes = compare_auto_scaling_group(current, cfg)
            actions.append(
                AutoScalingGroupAction(
                    action=ActionType.RECREATE if changes else ActionType.NOOP,
                    name=cfg.name,
                    changes=tuple(changes),
                    existing_id=current.auto_scaling_group_id,
                    desired=cfg,
                )
            )

        desired_names = {g.name for g in desired.auto_scaling_groups}
        for current in live.auto_scaling_groups:
            if current.name not in desired_names:
                actions.append(
                    AutoScalingGroupAction(
                        action=ActionType.SKIP,
                        name=current.name,
                        existing_id=current.auto_scaling_group_id,
                    )
                )
        return actions

    def _plan_load_balancers(
        self,
        desired: ClusterConfig,
        live: LiveState,
        recreated_asgs: set[str],
        warnings: list[str],
    ) -> list[LoadBalancerAction]:
        asg_ids = {g.name: g.auto_scaling_group_id for g in live.auto_scaling_groups}
        desired_asgs = {g.name for g in desired.auto_scaling_groups}
        actions: list[LoadBalancerAction] = []

        for cfg in desired.load_balancers:
            asg_name = cfg.auto_scaling_group_name
            asg_id = asg_ids.get(asg_name)
            if asg_id is None and asg_name not in desired_asgs:
                warnings.append(
                    f'Load balancer "{cfg.name}" references auto scaling group "{asg_name}" '
                    "which is neither configured nor live"
                )

            current = None
            if asg_id is not None:
                current = next(
                    (lb for lb in live.load_balancers.get(asg_name, []) if lb.name == cfg.name),
                    None,
                )

            if current is None:
                actions.append(
                    LoadBalancerAction(
                        action=ActionType.CREATE,
                        name=cfg.name,
                        changes=tuple(describe_load_balancer(cfg)),
                        asg_name=asg_name,
                        asg_id=asg_id,
                        desired=cfg,
                    )
                )
                continue

            changes = compare_load_balancer(current, cfg)
            if not changes and asg_name in recreated_asgs:
                changes = [f"AutoScalingGroup {asg_name} is recreated"]
            actions.append(
                LoadBalancerAction(
                    action=ActionType.RECREATE if changes else ActionType.NOOP,
                    name=cfg.name,
                    changes=tuple(changes),
                    asg_name=asg_name,
                    asg_id=asg_id,
                    existing_id=current.load_balancer_id,
                    desired=cfg,
                )
            )

        for asg in live.auto_scaling_groups:
            desired_names = {lb.name for lb in desired.load_balancers_for(asg.name)}
            for current in live.load_balancers.get(asg.name, []):
                if current.name in desired_names:
                    continue
                actions.append(
                    LoadBalancerAction(
                        action=ActionType.SKIP,
                        name=current.name,
                        asg_name=asg.name,
                        asg_id=asg.auto_scaling_group_id,
                        existing_id=current.load_balancer_id,
                    )
                )
                if asg.name in recreated_asgs:
                    warnings.append(
                        f'Load balancer "{current.name}" is not in config and its auto scaling '
                        f'group "{asg.name}" will be recreated'
                    )
        return actions

    def _plan_applications(
        self, desired: ClusterConfig, live: LiveState, warnings: list[str]
    ) -> list[ApplicationAction]:
        live_by_name = {a.name: a for a in live.applications}
        actions: list[ApplicationAction] = []

        for cfg in desired.applications:
            current = live_by_name.get(cfg.name)
            if current is None:
                actions.append(
                    ApplicationAction(
                        action=ActionType.CREATE,
                        name=cfg.name,
                        changes=tuple(describe_application_spec(cfg.spec)),
                        desired=cfg,
                    )
                )
                continue

            latest = live.latest_versions.get(cfg.name)
            if latest is None:
                actions.append(
                    ApplicationAction(
                        action=ActionType.UPDATE,
                        name=cfg.name,
                        changes=(INITIAL_VERSION_CHANGE,),
                        application_id=current.application_id,
                        desired=cfg,
                    )
                )
                continue

            changes = self._application_changes(cfg, latest)
            actions.append(
                ApplicationAction(
                    action=ActionType.UPDATE if changes else ActionType.NOOP,
                    name=cfg.name,
                    changes=tuple(changes),
                    application_id=current.application_id,
                    desired=cfg,
                )
            )

        desired_names = {a.name for a in desired.applications}
        for current in live.applications:
            if current.name not in desired_names:
                warnings.append(f'Application "{current.name}" exists but not in config')
        return actions

    def _application_changes(self, cfg: ApplicationConfig, latest: ApplicationVersion) -> list[str]:
        # The request that apply would send: image and undeclared fields inherited
        effective = ApplicationVersionRequest.from_spec(cfg.spec, latest)
        changes = compare_specs(normalize(latest), normalize(effective), skip_image=True)
        changes.extend(
            compare_registry_password(
                self._ledger.get_password_version(cfg.name),
                cfg.spec.registry_password_version,
            )
        )
        changes.extend(compare_env_with_ledger(cfg.name, latest.env, cfg.spec.env, self._ledger))
        return changes
