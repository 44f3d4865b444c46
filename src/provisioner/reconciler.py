"""Reconciliation entry point.

Ties the pieces together for one cluster:
1. Resolve the cluster by name
2. Collect live state, draining every paginated listing
3. Compute the plan (pure, no mutation)
4. Apply the plan stage by stage when requested

A plan is always fully computed before the first mutating call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any

from .executor import ApplyError, ApplyExecutor, ApplyOptions, ApplyResult
from .gateway import Gateway, resolve_cluster
from .models import ClusterConfig
from .planner import ClusterIdentity, Plan, Planner, collect_live_state
from .state import SecretVersionLedger

logger = logging.getLogger(__name__)


class Reconciler:
    """Plans and applies a desired cluster configuration.

    The ledger is injected so read-only callers and tests can pass an
    in-memory one.
    """

    def __init__(
        self,
        gateway: Gateway,
        ledger: SecretVersionLedger,
        options: ApplyOptions | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger
        self._options = options or ApplyOptions()

    async def plan(self, desired: ClusterConfig) -> Plan:
        """Compute the plan for a desired configuration.

        Raises:
            ResolutionError: If the cluster does not exist.
            GatewayError: If collecting live state fails.
        """
        summary = await resolve_cluster(self._gateway, desired.cluster_name)
        cluster = ClusterIdentity(name=summary.name, cluster_id=summary.cluster_id)

        live = await collect_live_state(self._gateway, cluster, desired)
        plan = Planner(self._ledger).plan(cluster, desired, live)

        for warning in plan.warnings:
            logger.warning(warning, extra={"cluster": cluster.name})

        logger.info(
            "Plan computed",
            extra={
                "cluster": cluster.name,
                "has_changes": plan.has_changes,
                "auto_scaling_groups": _action_counts(plan.asg_actions),
                "load_balancers": _action_counts(plan.lb_actions),
                "applications": _action_counts(plan.app_actions),
            },
        )
        return plan

    async def apply(
        self,
        desired: ClusterConfig,
        plan: Plan | None = None,
        activate: bool = False,
    ) -> ApplyResult:
        """Apply a plan, computing it first when none is given.

        Raises:
            ApplyError: When a stage fails. Completed stages stay applied.
        """
        if plan is None:
            plan = await self.plan(desired)

        start = time.monotonic()
        options = replace(self._options, activate=activate)
        executor = ApplyExecutor(self._gateway, self._ledger, options)
        try:
            result = await executor.execute(plan)
        except ApplyError as e:
            logger.error(
                "Apply failed",
                extra={
                    "cluster": plan.cluster.name,
                    "stage": e.stage.value,
                    "resource": e.resource,
                    "error": str(e.cause),
                    "duration_seconds": time.monotonic() - start,
                },
            )
            raise

        logger.info(
            "Apply complete",
            extra={
                "cluster": plan.cluster.name,
                "cluster_updated": result.cluster_updated,
                "created": result.created,
                "recreated": result.recreated,
                "deleted": result.deleted,
                "updated": result.updated,
                "created_versions": result.created_versions,
                "activated_versions": result.activated_versions,
                "ledger_persisted": result.ledger_persisted,
                "duration_seconds": time.monotonic() - start,
            },
        )
        return result


def _action_counts(actions: tuple[Any, ...]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for action in actions:
        counts[action.action.value] = counts.get(action.action.value, 0) + 1
    return counts
