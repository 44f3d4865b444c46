"""Remote resource gateway for the AppRun dedicated control plane.

The reconciler only depends on the Gateway protocol below. HttpGateway is
the production implementation, built on an azure-core pipeline. Tests use
an in-memory double with the same async surface.

All list operations are cursor-paginated; use drain() to collect every page
before acting on a listing, otherwise unfetched resources would look absent.

SECURITY: Timeouts are enforced on every request to prevent indefinite hangs.
No retry policy is installed: a failed call aborts the current operation.
"""

from __future__ import annotations

import asyncio
import base64
import functools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, TypeVar
from urllib.parse import quote

from azure.core import PipelineClient
from azure.core.exceptions import AzureError, HttpResponseError
from azure.core.pipeline import PipelineRequest
from azure.core.pipeline.policies import HeadersPolicy, SansIOHTTPPolicy, UserAgentPolicy
from azure.core.rest import HttpRequest

from .config import Config
from .resources import (
    Application,
    ApplicationVersion,
    ApplicationVersionRequest,
    ApplicationVersionSummary,
    AutoScalingGroup,
    AutoScalingGroupRequest,
    ClusterDetail,
    ClusterSummary,
    ClusterUpdateRequest,
    LoadBalancer,
    LoadBalancerRequest,
    LoadBalancerSummary,
    Page,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

USER_AGENT = "apprun-provisioner/0.1.0"

# Status codes that mean the credentials were rejected rather than the
# resource being missing
AUTH_FAILURE_STATUS_CODES = frozenset({401, 403})


class GatewayError(Exception):
    """Raised when a gateway call fails in transport or on the remote side.

    Carries the HTTP status (when there was a response) and the response body
    so operators can see the API's own diagnostic text.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.body = body
        text = message
        if body:
            text = f"{message}\nResponse body: {body}"
        super().__init__(text)

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in AUTH_FAILURE_STATUS_CODES


class ResolutionError(Exception):
    """Raised when a named cluster, application or version does not exist."""

    pass


def wrap_gateway_error(error: Exception, message: str) -> GatewayError:
    """Wrap a gateway failure with context, keeping status and response body."""
    if isinstance(error, GatewayError):
        return GatewayError(
            f"{message}: {error.message}",
            status_code=error.status_code,
            body=error.body,
        )
    return GatewayError(f"{message}: {error}")


class Gateway(Protocol):
    """Operations the reconciler consumes. All calls are issued sequentially."""

    async def list_clusters(self, cursor: str | None = None) -> Page[ClusterSummary]: ...

    async def get_cluster(self, cluster_id: str) -> ClusterDetail: ...

    async def update_cluster(self, cluster_id: str, request: ClusterUpdateRequest) -> None: ...

    async def list_auto_scaling_groups(
        self, cluster_id: str, cursor: str | None = None
    ) -> Page[AutoScalingGroup]: ...

    async def get_auto_scaling_group(self, cluster_id: str, asg_id: str) -> AutoScalingGroup: ...

    async def create_auto_scaling_group(
        self, cluster_id: str, request: AutoScalingGroupRequest
    ) -> str: ...

    async def delete_auto_scaling_group(self, cluster_id: str, asg_id: str) -> None: ...

    async def list_load_balancers(
        self, cluster_id: str, asg_id: str, cursor: str | None = None
    ) -> Page[LoadBalancerSummary]: ...

    async def get_load_balancer(
        self, cluster_id: str, asg_id: str, lb_id: str
    ) -> LoadBalancer: ...

    async def create_load_balancer(
        self, cluster_id: str, asg_id: str, request: LoadBalancerRequest
    ) -> str: ...

    async def delete_load_balancer(self, cluster_id: str, asg_id: str, lb_id: str) -> None: ...

    async def list_applications(
        self, cluster_id: str, cursor: str | None = None
    ) -> Page[Application]: ...

    async def create_application(self, name: str, cluster_id: str) -> Application: ...

    async def update_application(self, application_id: str, active_version: int | None) -> None: ...

    async def list_application_versions(
        self, application_id: str, cursor: str | None = None
    ) -> Page[ApplicationVersionSummary]: ...

    async def get_application_version(
        self, application_id: str, version: int
    ) -> ApplicationVersion: ...

    async def create_application_version(
        self, application_id: str, request: ApplicationVersionRequest
    ) -> int: ...


# =============================================================================
# Pagination and resolution helpers
# =============================================================================


async def drain(fetch: Callable[[str | None], Awaitable[Page[T]]]) -> list[T]:
    """Follow cursors until the gateway reports no further page.

    Raises:
        GatewayError: If the gateway hands back a cursor it already returned.
    """
    items: list[T] = []
    seen: set[str] = set()
    cursor: str | None = None
    while True:
        page = await fetch(cursor)
        items.extend(page.items)
        if not page.next_cursor:
            return items
        if page.next_cursor in seen:
            raise GatewayError(f"Pagination cursor repeated: {page.next_cursor}")
        seen.add(page.next_cursor)
        cursor = page.next_cursor


async def resolve_cluster(gateway: Gateway, name: str) -> ClusterSummary:
    """Find a cluster by name across all pages.

    Raises:
        ResolutionError: If no cluster has this name.
        GatewayError: If listing fails.
    """
    try:
        clusters = await drain(gateway.list_clusters)
    except GatewayError as e:
        raise wrap_gateway_error(e, "failed to list clusters") from e
    for cluster in clusters:
        if cluster.name == name:
            return cluster
    raise ResolutionError(f'cluster "{name}" not found')


async def list_all_applications(gateway: Gateway, cluster_id: str) -> list[Application]:
    try:
        return await drain(functools.partial(gateway.list_applications, cluster_id))
    except GatewayError as e:
        raise wrap_gateway_error(e, "failed to list applications") from e


async def find_application(gateway: Gateway, cluster_id: str, name: str) -> Application:
    """Find an application by name within a cluster.

    Raises:
        ResolutionError: If no application has this name.
    """
    for app in await list_all_applications(gateway, cluster_id):
        if app.name == name:
            return app
    raise ResolutionError(f'application "{name}" not found in cluster')


async def list_all_versions(
    gateway: Gateway, application_id: str
) -> list[ApplicationVersionSummary]:
    try:
        return await drain(functools.partial(gateway.list_application_versions, application_id))
    except GatewayError as e:
        raise wrap_gateway_error(e, "failed to list versions") from e


async def latest_version(gateway: Gateway, application_id: str) -> ApplicationVersion | None:
    """Return the full detail of the highest-numbered version, or None."""
    versions = await list_all_versions(gateway, application_id)
    if not versions:
        return None
    number = max(v.version for v in versions)
    try:
        return await gateway.get_application_version(application_id, number)
    except GatewayError as e:
        raise wrap_gateway_error(e, f"failed to get version {number}") from e


# =============================================================================
# HTTP implementation
# =============================================================================


class BasicAuthPolicy(SansIOHTTPPolicy):
    """Attach HTTP Basic credentials (access token / secret) to every request."""

    def __init__(self, access_token: str, access_token_secret: str) -> None:
        super().__init__()
        raw = f"{access_token}:{access_token_secret}".encode()
        self._header = "Basic " + base64.b64encode(raw).decode("ascii")

    def on_request(self, request: PipelineRequest) -> None:
        request.http_request.headers["Authorization"] = self._header


def _path(*segments: str) -> str:
    return "/".join(quote(str(s), safe="") for s in segments)


def _page_params(cursor: str | None, page_size: int, **extra: Any) -> dict[str, Any]:
    params: dict[str, Any] = {"maxItems": page_size, **extra}
    if cursor:
        params["cursor"] = cursor
    return params


class HttpGateway:
    """Gateway backed by the control-plane REST API.

    The azure-core pipeline is synchronous; each call runs in the default
    executor and is bounded by the configured request timeout.
    """

    def __init__(self, config: Config, client: PipelineClient | None = None) -> None:
        self._page_size = config.page_size
        self._timeout = config.request_timeout_seconds
        self._client = client or PipelineClient(
            base_url=config.api_url.rstrip("/"),
            policies=[
                HeadersPolicy({"Accept": "application/json"}),
                UserAgentPolicy(base_user_agent=USER_AGENT),
                BasicAuthPolicy(config.access_token, config.access_token_secret),
            ],
        )

    def close(self) -> None:
        self._client.close()

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (None when empty)."""
        request = HttpRequest(method, self._client.format_url(path), params=params, json=json)
        loop = asyncio.get_running_loop()

        def send() -> Any:
            response = self._client.send_request(
                request,
                connection_timeout=self._timeout,
                read_timeout=self._timeout,
            )
            response.raise_for_status()
            if not response.content:
                return None
            return response.json()

        logger.debug("Gateway request", extra={"method": method, "path": path})
        try:
            return await asyncio.wait_for(loop.run_in_executor(None, send), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise GatewayError(
                f"{method} {path} timed out after {self._timeout} seconds"
            ) from e
        except HttpResponseError as e:
            body = e.response.text() if e.response is not None else None
            logger.warning(
                "Gateway request failed",
                extra={"method": method, "path": path, "status_code": e.status_code},
            )
            raise GatewayError(
                f"{method} {path} failed with status {e.status_code}: {e.reason}",
                status_code=e.status_code,
                body=body,
            ) from e
        except AzureError as e:
            logger.warning(
                "Gateway transport error",
                extra={"method": method, "path": path, "error": str(e)},
            )
            raise GatewayError(f"{method} {path} failed: {e}") from e

    # Clusters

    async def list_clusters(self, cursor: str | None = None) -> Page[ClusterSummary]:
        data = await self._send("GET", "clusters", params=_page_params(cursor, self._page_size))
        return Page(
            items=[ClusterSummary.model_validate(c) for c in data.get("clusters", [])],
            next_cursor=data.get("nextCursor"),
        )

    async def get_cluster(self, cluster_id: str) -> ClusterDetail:
        data = await self._send("GET", _path("clusters", cluster_id))
        return ClusterDetail.model_validate(data["cluster"])

    async def update_cluster(self, cluster_id: str, request: ClusterUpdateRequest) -> None:
        await self._send(
            "PUT",
            _path("clusters", cluster_id),
            json=request.model_dump(by_alias=True, exclude_none=True),
        )

    # Auto-scaling groups

    async def list_auto_scaling_groups(
        self, cluster_id: str, cursor: str | None = None
    ) -> Page[AutoScalingGroup]:
        data = await self._send(
            "GET",
            _path("clusters", cluster_id, "autoscalinggroups"),
            params=_page_params(cursor, self._page_size),
        )
        return Page(
            items=[AutoScalingGroup.model_validate(g) for g in data.get("autoScalingGroups", [])],
            next_cursor=data.get("nextCursor"),
        )

    async def get_auto_scaling_group(self, cluster_id: str, asg_id: str) -> AutoScalingGroup:
        data = await self._send("GET", _path("clusters", cluster_id, "autoscalinggroups", asg_id))
        return AutoScalingGroup.model_validate(data["autoScalingGroup"])

    async def create_auto_scaling_group(
        self, cluster_id: str, request: AutoScalingGroupRequest
    ) -> str:
        data = await self._send(
            "POST",
            _path("clusters", cluster_id, "autoscalinggroups"),
            json=request.model_dump(by_alias=True, exclude_none=True),
        )
        return str(data["autoScalingGroup"]["autoScalingGroupId"])

    async def delete_auto_scaling_group(self, cluster_id: str, asg_id: str) -> None:
        await self._send("DELETE", _path("clusters", cluster_id, "autoscalinggroups", asg_id))

    # Load balancers

    async def list_load_balancers(
        self, cluster_id: str, asg_id: str, cursor: str | None = None
    ) -> Page[LoadBalancerSummary]:
        data = await self._send(
            "GET",
            _path("clusters", cluster_id, "autoscalinggroups", asg_id, "loadbalancers"),
            params=_page_params(cursor, self._page_size),
        )
        return Page(
            items=[LoadBalancerSummary.model_validate(lb) for lb in data.get("loadBalancers", [])],
            next_cursor=data.get("nextCursor"),
        )

    async def get_load_balancer(self, cluster_id: str, asg_id: str, lb_id: str) -> LoadBalancer:
        data = await self._send(
            "GET",
            _path("clusters", cluster_id, "autoscalinggroups", asg_id, "loadbalancers", lb_id),
        )
        return LoadBalancer.model_validate(data["loadBalancer"])

    async def create_load_balancer(
        self, cluster_id: str, asg_id: str, request: LoadBalancerRequest
    ) -> str:
        data = await self._send(
            "POST",
            _path("clusters", cluster_id, "autoscalinggroups", asg_id, "loadbalancers"),
            json=request.model_dump(by_alias=True, exclude_none=True),
        )
        return str(data["loadBalancer"]["loadBalancerId"])

    async def delete_load_balancer(self, cluster_id: str, asg_id: str, lb_id: str) -> None:
        await self._send(
            "DELETE",
            _path("clusters", cluster_id, "autoscalinggroups", asg_id, "loadbalancers", lb_id),
        )

    # Applications

    async def list_applications(
        self, cluster_id: str, cursor: str | None = None
    ) -> Page[Application]:
        data = await self._send(
            "GET",
            "applications",
            params=_page_params(cursor, self._page_size, clusterId=cluster_id),
        )
        return Page(
            items=[Application.model_validate(a) for a in data.get("applications", [])],
            next_cursor=data.get("nextCursor"),
        )

    async def create_application(self, name: str, cluster_id: str) -> Application:
        data = await self._send(
            "POST", "applications", json={"name": name, "clusterId": cluster_id}
        )
        return Application.model_validate(data["application"])

    async def update_application(self, application_id: str, active_version: int | None) -> None:
        await self._send(
            "PATCH",
            _path("applications", application_id),
            json={"activeVersion": active_version},
        )

    # Application versions

    async def list_application_versions(
        self, application_id: str, cursor: str | None = None
    ) -> Page[ApplicationVersionSummary]:
        data = await self._send(
            "GET",
            _path("applications", application_id, "versions"),
            params=_page_params(cursor, self._page_size),
        )
        next_cursor = data.get("nextCursor")
        return Page(
            items=[ApplicationVersionSummary.model_validate(v) for v in data.get("versions", [])],
            next_cursor=str(next_cursor) if next_cursor is not None else None,
        )

    async def get_application_version(
        self, application_id: str, version: int
    ) -> ApplicationVersion:
        data = await self._send(
            "GET", _path("applications", application_id, "versions", str(version))
        )
        return ApplicationVersion.model_validate(data["applicationVersion"])

    async def create_application_version(
        self, application_id: str, request: ApplicationVersionRequest
    ) -> int:
        data = await self._send(
            "POST",
            _path("applications", application_id, "versions"),
            json=request.to_payload(),
        )
        return int(data["applicationVersion"]["version"])
