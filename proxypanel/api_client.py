from __future__ import annotations

import logging
from typing import Any, Protocol, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from proxypanel.errors import AuthError, DaemonError, NotFoundError, ProxyApiError, TransportError
from proxypanel.models import Group, Measurement, Node, display_name
from proxypanel.schemas import (
    ConnectionsResponse,
    DaemonConfig,
    DelayResponse,
    ProvidersResponse,
    ProxiesResponse,
    ProxyInfo,
    RoutingMode,
    Rule,
    RulesResponse,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

GLOBAL_GROUP = "GLOBAL"
DEFAULT_PROBE_URL = "https://www.gstatic.com/generate_204"


def _segment(value: str) -> str:
    return quote(value, safe="")


class LatencyProber(Protocol):
    async def probe_latency(self, node_id: str, timeout_ms: int) -> int: ...


class ProxyApiClient:
    """Typed wrapper over the daemon's external-controller REST API.

    Every call is independent: no retries and no shared state besides the
    pooled ``httpx.AsyncClient``. Failures surface as ``ProxyApiError``
    subclasses.
    """

    def __init__(
        self,
        base_url: str,
        secret: str = "",
        timeout: float = 10.0,
        logger: logging.Logger | None = None,
        probe_url: str = DEFAULT_PROBE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._logger = logger or logging.getLogger("proxypanel.api")
        self._probe_url = probe_url

        headers = {}
        if secret.strip():
            headers["Authorization"] = f"Bearer {secret.strip()}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=headers,
            transport=transport,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def close(self) -> None:
        await self._client.aclose()

    def _format_error(self, exc: Exception) -> str:
        if isinstance(exc, httpx.RequestError):
            request = exc.request
            return f"{exc.__class__.__name__} method={request.method} url={request.url} detail={exc}"
        return str(exc)

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        detail = (response.text or "").strip().replace("\n", " ")
        if len(detail) > 220:
            detail = f"{detail[:220]}..."
        if status in {401, 403}:
            raise AuthError(detail, status_code=status)
        if status == 404:
            raise NotFoundError(detail, status_code=status)
        if status in {408, 504}:
            raise TransportError(detail, status_code=status, kind=TransportError.TIMEOUT)
        raise DaemonError(detail, status_code=status)

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_body,
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TimeoutException as exc:
            self._logger.debug("daemon_request_timeout %s", self._format_error(exc))
            raise TransportError(str(exc), kind=TransportError.TIMEOUT) from exc
        except httpx.RequestError as exc:
            self._logger.debug("daemon_request_failed %s", self._format_error(exc))
            raise TransportError(str(exc), kind=TransportError.CONNECTION_REFUSED) from exc
        self._raise_for_status(response)
        return response

    def _parse(self, response: httpx.Response, model: type[ModelT]) -> ModelT:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise TransportError(
                f"{response.request.url.path}: {exc.__class__.__name__}",
                status_code=response.status_code,
                kind=TransportError.MALFORMED,
            ) from exc

    async def get_config(self) -> DaemonConfig:
        response = await self._request("GET", "/configs")
        return self._parse(response, DaemonConfig)

    async def set_routing_mode(self, mode: RoutingMode) -> None:
        await self._request("PATCH", "/configs", json_body={"mode": mode.value})

    async def get_proxies(self) -> dict[str, ProxyInfo]:
        response = await self._request("GET", "/proxies")
        proxies = self._parse(response, ProxiesResponse).proxies
        for name, info in proxies.items():
            if not info.name:
                info.name = name
        return proxies

    async def fetch_proxy_table(self) -> tuple[list[Group], list[Node]]:
        proxies = await self.get_proxies()
        groups: list[Group] = []
        nodes: list[Node] = []
        for name, info in proxies.items():
            if not info.is_group:
                continue
            if not info.all and info.now is None:
                continue
            groups.append(
                Group(
                    id=name,
                    name=display_name(name),
                    node_ids=list(info.all),
                    selected_node_id=info.now,
                    group_type=info.type,
                )
            )
            for member in info.all:
                member_info = proxies.get(member)
                seed = member_info.last_delay() if member_info else None
                nodes.append(
                    Node(
                        id=member,
                        group_id=name,
                        display_name=display_name(member),
                        last_latency=Measurement.ok(seed, epoch=0) if seed is not None else None,
                        proxy_type=member_info.type if member_info else "",
                        # Members missing from /proxies may live in a provider; assume testable.
                        testable=member_info.testable if member_info else True,
                    )
                )
        groups.sort(key=lambda group: (group.id != GLOBAL_GROUP, group.id))
        return groups, nodes

    async def fetch_groups(self) -> list[Group]:
        groups, _ = await self.fetch_proxy_table()
        return groups

    async def probe_latency(self, node_id: str, timeout_ms: int) -> int:
        response = await self._request(
            "GET",
            f"/proxies/{_segment(node_id)}/delay",
            params={"url": self._probe_url, "timeout": int(timeout_ms)},
            timeout=timeout_ms / 1000 + 1,
        )
        return self._parse(response, DelayResponse).delay

    async def switch_node(self, group_id: str, node_id: str) -> None:
        await self._request("PUT", f"/proxies/{_segment(group_id)}", json_body={"name": node_id})

    async def get_rules(self) -> list[Rule]:
        response = await self._request("GET", "/rules")
        return self._parse(response, RulesResponse).rules

    async def get_connections(self) -> ConnectionsResponse:
        response = await self._request("GET", "/connections")
        return self._parse(response, ConnectionsResponse)

    async def close_connection(self, connection_id: str) -> None:
        await self._request("DELETE", f"/connections/{_segment(connection_id)}")

    async def close_all_connections(self) -> None:
        await self._request("DELETE", "/connections")

    async def get_providers(self) -> ProvidersResponse:
        response = await self._request("GET", "/providers/proxies")
        return self._parse(response, ProvidersResponse)

    async def update_provider(self, name: str) -> None:
        await self._request("PUT", f"/providers/proxies/{_segment(name)}")

    async def check_connection(self) -> bool:
        try:
            await self.get_config()
        except ProxyApiError as exc:
            self._logger.warning("daemon_unreachable", extra={"url": self._base_url, "error": str(exc)})
            return False
        return True
