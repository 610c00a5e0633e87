"""
控制面客户端（v2 REST API）

分页集合（resources[].metadata / entity，next_url 翻页）展平为
{guid, created_at, updated_at, **entity}。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

import httpx

from ..config import ControlPlaneConfig
from ..models import SourceRecord, SourceType
from .base import BaseSourceClient, TokenProvider

logger = logging.getLogger(__name__)

# 直接映射的分页集合：种类 -> 路径
COLLECTIONS = {
    "organizations": "/v2/organizations",
    "spaces": "/v2/spaces",
    "apps": "/v2/apps",
    "stacks": "/v2/stacks",
    "routes": "/v2/routes",
    "route_mappings": "/v2/route_mappings",
    "buildpacks": "/v2/buildpacks",
    "quota_definitions": "/v2/quota_definitions",
    "space_quota_definitions": "/v2/space_quota_definitions",
    "service_brokers": "/v2/service_brokers",
    "services": "/v2/services",
    "service_plans": "/v2/service_plans",
    "service_bindings": "/v2/service_bindings",
}

# 用户的 inline relations -> 组织角色 / 空间角色
ORGANIZATION_ROLE_RELATIONS = {
    "organizations": "users",
    "managed_organizations": "managers",
    "billing_managed_organizations": "billing_managers",
    "audited_organizations": "auditors",
}
SPACE_ROLE_RELATIONS = {
    "spaces": "developers",
    "managed_spaces": "managers",
    "audited_spaces": "auditors",
}

# 一次拉取产生多个种类的拉取组
GROUP_KINDS = {
    "users": ("users", "organization_roles", "space_roles"),
}
KIND_GROUP = {kind: group for group, kinds in GROUP_KINDS.items() for kind in kinds}


def flatten(resource: Dict[str, Any]) -> Dict[str, Any]:
    """展平 v2 资源，去掉 *_url 关联链接"""
    metadata = resource.get("metadata") or {}
    entity = resource.get("entity") or {}
    flat = {
        "guid": metadata.get("guid"),
        "created_at": metadata.get("created_at"),
        "updated_at": metadata.get("updated_at"),
    }
    for name, value in entity.items():
        if not name.endswith("_url"):
            flat[name] = value
    return flat


def _guids(resources: Optional[List[Dict[str, Any]]]) -> List[str]:
    return [(r.get("metadata") or {}).get("guid") for r in resources or []]


class ControlPlaneClient(BaseSourceClient):
    """控制面客户端"""

    source_type = SourceType.CONTROL_PLANE

    def __init__(
        self,
        config: ControlPlaneConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
    ):
        super().__init__(config, transport, token_provider)

    async def _get_all(
        self,
        client: httpx.AsyncClient,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        max_pages: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """沿 next_url 拉取分页集合"""
        headers = await self._auth_headers()
        query: Optional[Dict[str, Any]] = {"results-per-page": self.config.results_per_page}
        query.update(params or {})
        resources: List[Dict[str, Any]] = []
        url: Optional[str] = path
        pages = 0
        while url:
            response = await client.get(url, params=query, headers=headers)
            response.raise_for_status()
            payload = self._json(response)
            resources.extend(self._objects(payload.get("resources"), f"{path} resources"))
            pages += 1
            if max_pages is not None and pages >= max_pages:
                break
            url = payload.get("next_url")
            # next_url 已经带上了查询参数
            query = None
        return resources

    def produced_kinds(self, kinds: Iterable[str]) -> Set[str]:
        produced = set()
        for kind in kinds:
            group = KIND_GROUP.get(kind, kind)
            produced.update(GROUP_KINDS.get(group, (group,)))
        return produced

    # =========================================================================
    # 各拉取组
    # =========================================================================

    async def _fetch_simple(self, client: httpx.AsyncClient, kind: str) -> List[SourceRecord]:
        resources = await self._get_all(client, COLLECTIONS[kind])
        return [self._record(kind, r["guid"], r) for r in map(flatten, resources)]

    async def _fetch_domains(self, client: httpx.AsyncClient) -> List[SourceRecord]:
        private, shared = await asyncio.gather(
            self._get_all(client, "/v2/private_domains"),
            self._get_all(client, "/v2/shared_domains"),
        )
        records = []
        for resources, is_shared in ((private, False), (shared, True)):
            for domain in map(flatten, resources):
                domain["shared"] = is_shared
                records.append(self._record("domains", domain["guid"], domain))
        return records

    async def _fetch_feature_flags(self, client: httpx.AsyncClient) -> List[SourceRecord]:
        headers = await self._auth_headers()
        response = await client.get("/v2/config/feature_flags", headers=headers)
        response.raise_for_status()
        flags = self._objects(self._json(response, list), "feature flags")
        return [self._record("feature_flags", flag["name"], flag) for flag in flags]

    async def _fetch_service_instances(self, client: httpx.AsyncClient) -> List[SourceRecord]:
        managed, user_provided = await asyncio.gather(
            self._get_all(client, "/v2/service_instances"),
            self._get_all(client, "/v2/user_provided_service_instances"),
        )
        records = []
        for resources, is_gateway in ((managed, True), (user_provided, False)):
            for instance in map(flatten, resources):
                instance["is_gateway_service"] = is_gateway
                key = f"{instance['guid']}/{'true' if is_gateway else 'false'}"
                records.append(self._record("service_instances", key, instance))
        return records

    async def _fetch_security_groups(self, client: httpx.AsyncClient) -> List[SourceRecord]:
        resources = await self._get_all(client, "/v2/security_groups", {"inline-relations-depth": 1})
        records = []
        for resource in resources:
            group = flatten(resource)
            group["space_guids"] = _guids(group.pop("spaces", None))
            records.append(self._record("security_groups", group["guid"], group))
        return records

    async def _fetch_events(self, client: httpx.AsyncClient) -> List[SourceRecord]:
        resources = await self._get_all(
            client,
            "/v2/events",
            {"order-direction": "desc"},
            max_pages=self.config.events_max_pages,
        )
        return [self._record("events", e["guid"], e) for e in map(flatten, resources)]

    async def _fetch_users(self, client: httpx.AsyncClient) -> List[SourceRecord]:
        """用户及其组织/空间角色（inline relations）"""
        resources = await self._get_all(client, "/v2/users", {"inline-relations-depth": 1})
        records = []
        for resource in resources:
            user = flatten(resource)
            user_guid = user["guid"]
            for relation, role in ORGANIZATION_ROLE_RELATIONS.items():
                for org_guid in _guids(user.pop(relation, None)):
                    records.append(self._record(
                        "organization_roles",
                        f"{org_guid}/{role}/{user_guid}",
                        {"organization_guid": org_guid, "role": role, "user_guid": user_guid},
                    ))
            for relation, role in SPACE_ROLE_RELATIONS.items():
                for space_guid in _guids(user.pop(relation, None)):
                    records.append(self._record(
                        "space_roles",
                        f"{space_guid}/{role}/{user_guid}",
                        {"space_guid": space_guid, "role": role, "user_guid": user_guid},
                    ))
            records.append(self._record("users", user_guid, user))
        return records

    def _groups(self) -> Dict[str, Callable[[httpx.AsyncClient], Awaitable[List[SourceRecord]]]]:
        groups: Dict[str, Callable[[httpx.AsyncClient], Awaitable[List[SourceRecord]]]] = {
            kind: (lambda client, kind=kind: self._fetch_simple(client, kind)) for kind in COLLECTIONS
        }
        groups.update({
            "domains": self._fetch_domains,
            "feature_flags": self._fetch_feature_flags,
            "service_instances": self._fetch_service_instances,
            "security_groups": self._fetch_security_groups,
            "events": self._fetch_events,
            "users": self._fetch_users,
        })
        return groups

    async def fetch(self, kinds: Optional[Set[str]] = None) -> List[SourceRecord]:
        groups = self._groups()
        if kinds is None:
            selected = list(groups)
        else:
            selected = [g for g in groups if g in {KIND_GROUP.get(k, k) for k in kinds}]

        async with self._client() as client:
            results = await asyncio.gather(*[groups[name](client) for name in selected])

        records = [record for group_records in results for record in group_records]
        logger.debug(f"Fetched {len(records)} control plane records from {len(selected)} collections")
        return records
