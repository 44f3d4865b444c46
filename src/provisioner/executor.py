"""Apply a computed plan against the gateway.

Stages run strictly in order and each action commits on its own:

    0. update cluster settings
    1. delete load balancers (Delete, Recreate)
    2. delete auto-scaling groups (Delete, Recreate)
    3. create auto-scaling groups (Create, Recreate), recording new ids
    4. create load balancers (Create, Recreate), resolving owner ids
    5. create or update applications, optionally activating new versions

A failure aborts the remaining stages. Nothing already committed is rolled
back, and nothing is retried: plan and apply are safe to re-run.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import (
    DEFAULT_DELETION_POLL_INTERVAL_SECONDS,
    DEFAULT_DELETION_TIMEOUT_SECONDS,
    Config,
)
from .gateway import Gateway, GatewayError, latest_version
from .models import ApplicationConfig
from .planner import (
    ActionType,
    ApplicationAction,
    AutoScalingGroupAction,
    LoadBalancerAction,
    Plan,
)
from .resources import (
    ApplicationVersionRequest,
    AutoScalingGroupRequest,
    ClusterUpdateRequest,
    LoadBalancerRequest,
)
from .state import LedgerError, SecretVersionLedger

logger = logging.getLogger(__name__)

_DELETING = (ActionType.DELETE, ActionType.RECREATE)
_CREATING = (ActionType.CREATE, ActionType.RECREATE)


class ApplyStage(str, Enum):
    CLUSTER = "update cluster settings"
    DELETE_LOAD_BALANCERS = "delete load balancers"
    DELETE_AUTO_SCALING_GROUPS = "delete auto scaling groups"
    CREATE_AUTO_SCALING_GROUPS = "create auto scaling groups"
    CREATE_LOAD_BALANCERS = "create load balancers"
    APPLICATIONS = "apply applications"


class ApplyError(Exception):
    """Raised when a stage fails. Earlier stages stay committed."""

    def __init__(self, stage: ApplyStage, resource: str, cause: Exception | str) -> None:
        self.stage = stage
        self.resource = resource
        self.cause = cause
        super().__init__(f"apply failed at stage '{stage.value}' for {resource}: {cause}")


class DeletionTimeoutError(Exception):
    """Raised when a deleted resource is still readable after the deletion ceiling."""

    def __init__(self, resource: str, timeout_seconds: float) -> None:
        self.resource = resource
        self.timeout_seconds = timeout_seconds
        super().__init__(f"timed out after {timeout_seconds:g}s waiting for {resource} deletion")


async def wait_for_deletion(
    fetch: Callable[[], Awaitable[Any]],
    resource: str,
    *,
    poll_interval_seconds: float = DEFAULT_DELETION_POLL_INTERVAL_SECONDS,
    timeout_seconds: float = DEFAULT_DELETION_TIMEOUT_SECONDS,
) -> None:
    """Poll until fetching the resource fails.

    The gateway reports completed deletion only as a failing get, so any
    gateway error other than an authentication failure means "deleted".
    Cancelling the calling task cancels the wait.

    Raises:
        DeletionTimeoutError: If the resource is still readable at the deadline.
        GatewayError: On 401/403 while polling.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    while True:
        await asyncio.sleep(poll_interval_seconds)
        try:
            await fetch()
        except GatewayError as e:
            if e.is_auth_failure:
                raise
            logger.debug("Deletion confirmed", extra={"resource": resource})
            return
        if loop.time() >= deadline:
            raise DeletionTimeoutError(resource, timeout_seconds)


@dataclass
class ApplyOptions:
    activate: bool = False
    deletion_poll_interval_seconds: float = DEFAULT_DELETION_POLL_INTERVAL_SECONDS
    deletion_timeout_seconds: float = DEFAULT_DELETION_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, config: Config, activate: bool = False) -> ApplyOptions:
        return cls(
            activate=activate,
            deletion_poll_interval_seconds=config.deletion_poll_interval_seconds,
            deletion_timeout_seconds=config.deletion_timeout_seconds,
        )


@dataclass
class ApplyResult:
    """Counters describing what an apply committed."""

    cluster_updated: bool = False
    created: int = 0
    recreated: int = 0
    deleted: int = 0
    updated: int = 0
    created_versions: dict[str, int] = field(default_factory=dict)
    activated_versions: dict[str, int] = field(default_factory=dict)
    ledger_persisted: bool = False

    def count(self, action: ActionType) -> None:
        if action == ActionType.CREATE:
            self.created += 1
        elif action == ActionType.RECREATE:
            self.recreated += 1
        elif action == ActionType.DELETE:
            self.deleted += 1
        elif action == ActionType.UPDATE:
            self.updated += 1


class ApplyExecutor:
    """Executes a Plan in dependency-safe order."""

    def __init__(
        self,
        gateway: Gateway,
        ledger: SecretVersionLedger,
        options: ApplyOptions | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._options = options or ApplyOptions()

    async def execute(self, plan: Plan) -> ApplyResult:
        """Apply every stage of the plan.

        Raises:
            ApplyError: On the first failing action. Its cause is the
                underlying GatewayError or DeletionTimeoutError, or the
                LedgerError when the secret version ledger cannot be saved.
        """
        result = ApplyResult()
        cluster_id = plan.cluster.cluster_id

        await self._update_cluster(plan, result)

        for lb in plan.lb_actions:
            if lb.action in _DELETING:
                await self._delete_load_balancer(cluster_id, lb)
                if lb.action == ActionType.DELETE:
                    result.count(lb.action)

        for asg in plan.asg_actions:
            if asg.action in _DELETING:
                await self._delete_auto_scaling_group(cluster_id, asg)
                if asg.action == ActionType.DELETE:
                    result.count(asg.action)

        asg_ids = {a.name: a.existing_id for a in plan.asg_actions if a.existing_id}
        for asg in plan.asg_actions:
            if asg.action in _CREATING:
                asg_ids[asg.name] = await self._create_auto_scaling_group(cluster_id, asg)
                result.count(asg.action)

        for lb in plan.lb_actions:
            if lb.action in _CREATING:
                await self._create_load_balancer(cluster_id, lb, asg_ids)
                result.count(lb.action)

        try:
            for app in plan.app_actions:
                if app.action in (ActionType.CREATE, ActionType.UPDATE):
                    await self._apply_application(cluster_id, app, result)
                    result.count(app.action)
        except BaseException:
            # Keep versions recorded for applications committed before the failure
            try:
                result.ledger_persisted = self._ledger.persist()
            except LedgerError as e:
                logger.error(
                    "Failed to persist secret version ledger",
                    extra={"cluster": plan.cluster.name, "error": str(e)},
                )
            raise

        try:
            result.ledger_persisted = self._ledger.persist()
        except LedgerError as e:
            raise ApplyError(ApplyStage.APPLICATIONS, "secret version ledger", e) from e

        return result

    async def _update_cluster(self, plan: Plan, result: ApplyResult) -> None:
        action = plan.cluster_action
        if action is None or action.action != ActionType.UPDATE or action.desired is None:
            return
        logger.info("Updating cluster settings", extra={"cluster": plan.cluster.name})
        try:
            await self._gateway.update_cluster(
                plan.cluster.cluster_id, ClusterUpdateRequest.from_settings(action.desired)
            )
        except GatewayError as e:
            raise ApplyError(ApplyStage.CLUSTER, f"cluster {plan.cluster.name}", e) from e
        result.cluster_updated = True

    async def _delete_load_balancer(self, cluster_id: str, lb: LoadBalancerAction) -> None:
        resource = f"load balancer {lb.name} (ASG: {lb.asg_name})"
        stage = ApplyStage.DELETE_LOAD_BALANCERS
        if lb.asg_id is None or lb.existing_id is None:
            raise ApplyError(stage, resource, "missing identifiers from planning")

        asg_id, lb_id = lb.asg_id, lb.existing_id
        logger.info("Deleting load balancer", extra={"name": lb.name, "asg": lb.asg_name})
        try:
            await self._gateway.delete_load_balancer(cluster_id, asg_id, lb_id)
            await wait_for_deletion(
                lambda: self._gateway.get_load_balancer(cluster_id, asg_id, lb_id),
                resource,
                poll_interval_seconds=self._options.deletion_poll_interval_seconds,
                timeout_seconds=self._options.deletion_timeout_seconds,
            )
        except (GatewayError, DeletionTimeoutError) as e:
            raise ApplyError(stage, resource, e) from e

    async def _delete_auto_scaling_group(
        self, cluster_id: str, asg: AutoScalingGroupAction
    ) -> None:
        resource = f"auto scaling group {asg.name}"
        stage = ApplyStage.DELETE_AUTO_SCALING_GROUPS
        if asg.existing_id is None:
            raise ApplyError(stage, resource, "missing identifier from planning")

        asg_id = asg.existing_id
        logger.info("Deleting auto scaling group", extra={"name": asg.name})
        try:
            await self._gateway.delete_auto_scaling_group(cluster_id, asg_id)
            await wait_for_deletion(
                lambda: self._gateway.get_auto_scaling_group(cluster_id, asg_id),
                resource,
                poll_interval_seconds=self._options.deletion_poll_interval_seconds,
                timeout_seconds=self._options.deletion_timeout_seconds,
            )
        except (GatewayError, DeletionTimeoutError) as e:
            raise ApplyError(stage, resource, e) from e

    async def _create_auto_scaling_group(
        self, cluster_id: str, asg: AutoScalingGroupAction
    ) -> str:
        resource = f"auto scaling group {asg.name}"
        stage = ApplyStage.CREATE_AUTO_SCALING_GROUPS
        if asg.desired is None:
            raise ApplyError(stage, resource, "config not found")

        logger.info("Creating auto scaling group", extra={"name": asg.name})
        try:
            return await self._gateway.create_auto_scaling_group(
                cluster_id, AutoScalingGroupRequest.from_config(asg.desired)
            )
        except GatewayError as e:
            raise ApplyError(stage, resource, e) from e

    async def _create_load_balancer(
        self, cluster_id: str, lb: LoadBalancerAction, asg_ids: dict[str, str | None]
    ) -> None:
        resource = f"load balancer {lb.name} (ASG: {lb.asg_name})"
        stage = ApplyStage.CREATE_LOAD_BALANCERS
        if lb.desired is None:
            raise ApplyError(stage, resource, "config not found")

        asg_id = asg_ids.get(lb.asg_name) or lb.asg_id
        if asg_id is None:
            raise ApplyError(stage, resource, f"auto scaling group {lb.asg_name} not found")

        logger.info("Creating load balancer", extra={"name": lb.name, "asg": lb.asg_name})
        try:
            await self._gateway.create_load_balancer(
                cluster_id, asg_id, LoadBalancerRequest.from_config(lb.desired)
            )
        except GatewayError as e:
            raise ApplyError(stage, resource, e) from e

    async def _apply_application(
        self, cluster_id: str, app: ApplicationAction, result: ApplyResult
    ) -> None:
        resource = f"application {app.name}"
        stage = ApplyStage.APPLICATIONS
        cfg = app.desired
        if cfg is None:
            raise ApplyError(stage, resource, "config not found")

        try:
            if app.action == ActionType.CREATE:
                logger.info("Creating application", extra={"application": app.name})
                created = await self._gateway.create_application(cfg.name, cluster_id)
                application_id = created.application_id
                request = ApplicationVersionRequest.from_spec(cfg.spec)
            else:
                if app.application_id is None:
                    raise ApplyError(stage, resource, "missing identifier from planning")
                logger.info("Updating application", extra={"application": app.name})
                application_id = app.application_id
                base = await latest_version(self._gateway, application_id)
                request = ApplicationVersionRequest.from_spec(cfg.spec, base)

            version = await self._gateway.create_application_version(application_id, request)
            result.created_versions[app.name] = version
            logger.info(
                "Created application version",
                extra={"application": app.name, "version": version},
            )

            if self._options.activate:
                await self._gateway.update_application(application_id, version)
                result.activated_versions[app.name] = version
                logger.info(
                    "Activated application version",
                    extra={"application": app.name, "version": version},
                )
            else:
                logger.info(
                    "Skipped activation (use --activate to activate)",
                    extra={"application": app.name, "version": version},
                )
        except GatewayError as e:
            raise ApplyError(stage, resource, e) from e

        self._record_secret_versions(cfg)

    def _record_secret_versions(self, cfg: ApplicationConfig) -> None:
        spec = cfg.spec
        self._ledger.set_password_version(cfg.name, spec.registry_password_version)

        if spec.env is None:
            return
        declared: set[str] = set()
        for env in spec.env:
            if env.secret and env.secret_version is not None:
                declared.add(env.key)
                self._ledger.set_secret_env_version(cfg.name, env.key, env.secret_version)
        for key in self._ledger.secret_env_keys(cfg.name):
            if key not in declared:
                self._ledger.set_secret_env_version(cfg.name, key, None)
