"""
变更操作分发

处理流程：
1. 匹配操作路由（未知路径 -> NotFound）
2. 校验请求体（JSON 对象，字段与类型按操作限定 -> MalformedInput）
3. 按当前视图校验目标存在（-> NotFound）
4. 写审计日志
5. 原样转发到所属后端（请求体与查询串不做改动）；非 2xx -> BackingOperationFailed
6. 本地失效 + 定向刷新受影响的记录种类，重建依赖视图后返回
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple, Type, Union
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .audit import AuditLogger
from .cache import SourceRecordCache
from .engine import ViewModelEngine
from .errors import BackingOperationFailed, MalformedInput, NotFound, SourceUnreachable
from .models import Operation, SourceType
from .poller import Poller

logger = logging.getLogger(__name__)

CONTROL_PLANE = SourceType.CONTROL_PLANE
IDENTITY = SourceType.IDENTITY
TELEMETRY = SourceType.TELEMETRY
FIREHOSE = SourceType.FIREHOSE


# =============================================================================
# 请求体模型
# =============================================================================

class OperationBody(BaseModel):
    """变更请求体基类：不允许未知字段，不做类型转换"""
    model_config = ConfigDict(extra="forbid", strict=True)


class ApplicationUpdate(OperationBody):
    name: Optional[str] = None
    state: Optional[str] = None


class BuildpackUpdate(OperationBody):
    name: Optional[str] = None
    enabled: Optional[bool] = None
    locked: Optional[bool] = None
    position: Optional[int] = None


class FeatureFlagUpdate(OperationBody):
    enabled: bool


class OrganizationCreate(OperationBody):
    name: str
    quota_definition_guid: Optional[str] = None


class OrganizationUpdate(OperationBody):
    name: Optional[str] = None
    status: Optional[str] = None
    quota_definition_guid: Optional[str] = None


class SpaceUpdate(OperationBody):
    name: Optional[str] = None
    allow_ssh: Optional[bool] = None


class QuotaUpdate(OperationBody):
    name: Optional[str] = None
    total_services: Optional[int] = None
    total_routes: Optional[int] = None
    memory_limit: Optional[int] = None
    instance_memory_limit: Optional[int] = None
    non_basic_services_allowed: Optional[bool] = None


class ServiceBrokerUpdate(OperationBody):
    name: Optional[str] = None
    broker_url: Optional[str] = None
    auth_username: Optional[str] = None
    auth_password: Optional[str] = None


class ServicePlanUpdate(OperationBody):
    public: bool


class ServiceInstanceUpdate(OperationBody):
    name: Optional[str] = None


# =============================================================================
# 路由定义
# =============================================================================

@dataclass(frozen=True)
class BackingCall:
    """一次后端调用；forward=False 时不携带原始请求体和查询串"""
    source: SourceType
    method: str
    path: str
    forward: bool = True


KeySpec = Union[str, Callable[[Dict[str, str]], str]]
BackingSpec = Union[None, str, Callable[[Dict[str, str], ViewModelEngine], List[BackingCall]]]


@dataclass(frozen=True)
class OperationRoute:
    """
    一个变更操作

    backing 为路径模板（发往 source）、返回调用列表的函数，或 None（仅本地操作）。
    """
    method: str
    pattern: Pattern
    source: SourceType
    backing: BackingSpec = None
    exists: Tuple[Tuple[str, KeySpec], ...] = ()
    refresh: Tuple[Tuple[SourceType, Tuple[str, ...]], ...] = ()
    body: Optional[Type[OperationBody]] = None
    query: Tuple[str, ...] = ()
    local: Optional[Callable[["OperationDispatcher", Dict[str, str]], None]] = None

    def match(self, method: str, path: str) -> Optional[Dict[str, str]]:
        if method != self.method:
            return None
        matched = self.pattern.fullmatch(path)
        return matched.groupdict() if matched else None

    def existence_keys(self, params: Dict[str, str]) -> List[Tuple[str, str]]:
        keys = []
        for resource, spec in self.exists:
            key = spec(params) if callable(spec) else spec.format(**params)
            keys.append((resource, key))
        return keys

    def calls(self, params: Dict[str, str], engine: ViewModelEngine) -> List[BackingCall]:
        if self.backing is None:
            return []
        if callable(self.backing):
            return self.backing(params, engine)
        return [BackingCall(self.source, self.method, self.backing.format(**params))]


def _compile(template: str) -> Pattern:
    """'/apps/{guid}' -> 带命名分组的正则，每个占位符匹配一个路径段"""
    regex = re.sub(r"\{(\w+)\}", r"(?P<\1>[^/]+)", template)
    return re.compile(regex)


def route(method: str, template: str, source: SourceType, **kwargs) -> OperationRoute:
    return OperationRoute(method=method, pattern=_compile(template), source=source, **kwargs)


# -----------------------------------------------------------------------------
# 需要查看当前视图才能决定后端路径的操作
# -----------------------------------------------------------------------------

def _domain_calls(params: Dict[str, str], engine: ViewModelEngine) -> List[BackingCall]:
    domain = engine.get_detail("domains", params["guid"])["domain"]
    collection = "shared_domains" if domain.get("shared") else "private_domains"
    return [BackingCall(CONTROL_PLANE, "DELETE", f"/v2/{collection}/{params['guid']}")]


def _service_instance_calls(method: str):
    def calls(params: Dict[str, str], engine: ViewModelEngine) -> List[BackingCall]:
        collection = "service_instances" if params["is_gateway_service"] == "true" else "user_provided_service_instances"
        return [BackingCall(CONTROL_PLANE, method, f"/v2/{collection}/{params['guid']}")]
    return calls


def _user_calls(params: Dict[str, str], engine: ViewModelEngine) -> List[BackingCall]:
    """先删除控制面用户（如存在），再删除身份服务用户"""
    detail = engine.get_detail("users", params["id"])
    calls = []
    if detail.get("cc_user") is not None:
        calls.append(BackingCall(CONTROL_PLANE, "DELETE", f"/v2/users/{params['id']}"))
    calls.append(BackingCall(IDENTITY, "DELETE", f"/Users/{params['id']}", forward=False))
    return calls


# -----------------------------------------------------------------------------
# 本地失效
# -----------------------------------------------------------------------------

def _remove_instance(dispatcher: "OperationDispatcher", params: Dict[str, str]):
    """删除实例后立即移除遥测中的对应记录，行不必等下一次轮询才消失"""
    guid, index = params["guid"], params["index"]

    def matches(record, kind: str) -> bool:
        return (
            record.kind == kind
            and record.data.get("application_id") == guid
            and str(record.data.get("instance_index")) == index
        )

    dispatcher.cache.remove_records(TELEMETRY, lambda r: matches(r, "instances"))
    dispatcher.cache.remove_records(FIREHOSE, lambda r: matches(r, "container_metrics"))
    dispatcher.engine.rebuild_for_source(TELEMETRY)
    dispatcher.engine.rebuild_for_source(FIREHOSE)


def _component_host(params: Dict[str, str]) -> str:
    return urlparse(params["uri"]).netloc


def _remove_component(dispatcher: "OperationDispatcher", params: Dict[str, str]):
    host = _component_host(params)
    dispatcher.cache.remove_records(TELEMETRY, lambda r: r.kind == "components" and r.key == host)
    dispatcher.engine.rebuild_for_source(TELEMETRY)


def _remove_doppler_component(dispatcher: "OperationDispatcher", params: Dict[str, str]):
    uri = params["uri"]
    dispatcher.cache.remove_records(FIREHOSE, lambda r: r.kind == "components" and r.key == uri)
    dispatcher.engine.rebuild_for_source(FIREHOSE)


# -----------------------------------------------------------------------------
# 路由表
# -----------------------------------------------------------------------------

APP_KINDS = ("apps", "route_mappings", "service_bindings")
ORGANIZATION_KINDS = ("organizations", "spaces", "apps", "routes", "service_instances", "users")
SPACE_KINDS = ("spaces", "apps", "routes", "service_instances", "users")
BROKER_KINDS = ("service_brokers", "services", "service_plans")


def _control_plane(*kinds: str) -> Tuple[Tuple[SourceType, Tuple[str, ...]], ...]:
    return ((CONTROL_PLANE, kinds),)


def default_routes() -> List[OperationRoute]:
    return [
        # 应用
        route("PUT", "/applications/{guid}", CONTROL_PLANE, backing="/v2/apps/{guid}",
              exists=(("applications", "{guid}"),), refresh=_control_plane("apps"), body=ApplicationUpdate),
        route("POST", "/applications/{guid}/restage", CONTROL_PLANE, backing="/v2/apps/{guid}/restage",
              exists=(("applications", "{guid}"),), refresh=_control_plane("apps")),
        route("DELETE", "/applications/{guid}", CONTROL_PLANE, backing="/v2/apps/{guid}",
              exists=(("applications", "{guid}"),), refresh=_control_plane(*APP_KINDS)),
        route("DELETE", "/applications/{guid}/{index}", CONTROL_PLANE, backing="/v2/apps/{guid}/instances/{index}",
              exists=(("applications", "{guid}"),), refresh=_control_plane("apps"), local=_remove_instance),

        # buildpack / feature flag
        route("PUT", "/buildpacks/{guid}", CONTROL_PLANE, backing="/v2/buildpacks/{guid}",
              exists=(("buildpacks", "{guid}"),), refresh=_control_plane("buildpacks"), body=BuildpackUpdate),
        route("DELETE", "/buildpacks/{guid}", CONTROL_PLANE, backing="/v2/buildpacks/{guid}",
              exists=(("buildpacks", "{guid}"),), refresh=_control_plane("buildpacks")),
        route("PUT", "/feature_flags/{name}", CONTROL_PLANE, backing="/v2/config/feature_flags/{name}",
              exists=(("feature_flags", "{name}"),), refresh=_control_plane("feature_flags"), body=FeatureFlagUpdate),

        # 组织 / 空间
        route("POST", "/organizations", CONTROL_PLANE, backing="/v2/organizations",
              refresh=_control_plane("organizations"), body=OrganizationCreate),
        route("PUT", "/organizations/{guid}", CONTROL_PLANE, backing="/v2/organizations/{guid}",
              exists=(("organizations", "{guid}"),), refresh=_control_plane("organizations"), body=OrganizationUpdate),
        route("DELETE", "/organizations/{guid}", CONTROL_PLANE, backing="/v2/organizations/{guid}",
              exists=(("organizations", "{guid}"),), refresh=_control_plane(*ORGANIZATION_KINDS)),
        route("DELETE", "/organizations/{guid}/{role}/{user}", CONTROL_PLANE,
              backing="/v2/organizations/{guid}/{role}/{user}",
              exists=(("organization_roles", "{guid}/{role}/{user}"),), refresh=_control_plane("users")),
        route("PUT", "/spaces/{guid}", CONTROL_PLANE, backing="/v2/spaces/{guid}",
              exists=(("spaces", "{guid}"),), refresh=_control_plane("spaces"), body=SpaceUpdate),
        route("DELETE", "/spaces/{guid}", CONTROL_PLANE, backing="/v2/spaces/{guid}",
              exists=(("spaces", "{guid}"),), refresh=_control_plane(*SPACE_KINDS)),
        route("DELETE", "/spaces/{guid}/{role}/{user}", CONTROL_PLANE,
              backing="/v2/spaces/{guid}/{role}/{user}",
              exists=(("space_roles", "{guid}/{role}/{user}"),), refresh=_control_plane("users")),

        # 配额
        route("PUT", "/quota_definitions/{guid}", CONTROL_PLANE, backing="/v2/quota_definitions/{guid}",
              exists=(("quotas", "{guid}"),), refresh=_control_plane("quota_definitions"), body=QuotaUpdate),
        route("DELETE", "/quota_definitions/{guid}", CONTROL_PLANE, backing="/v2/quota_definitions/{guid}",
              exists=(("quotas", "{guid}"),), refresh=_control_plane("quota_definitions", "organizations")),
        route("PUT", "/space_quota_definitions/{guid}", CONTROL_PLANE, backing="/v2/space_quota_definitions/{guid}",
              exists=(("space_quotas", "{guid}"),), refresh=_control_plane("space_quota_definitions"),
              body=QuotaUpdate),
        route("DELETE", "/space_quota_definitions/{guid}", CONTROL_PLANE,
              backing="/v2/space_quota_definitions/{guid}",
              exists=(("space_quotas", "{guid}"),), refresh=_control_plane("space_quota_definitions", "spaces")),
        route("PUT", "/space_quota_definitions/{guid}/spaces/{space_guid}", CONTROL_PLANE,
              backing="/v2/space_quota_definitions/{guid}/spaces/{space_guid}",
              exists=(("space_quotas", "{guid}"), ("spaces", "{space_guid}")),
              refresh=_control_plane("spaces")),
        route("DELETE", "/space_quota_definitions/{guid}/spaces/{space_guid}", CONTROL_PLANE,
              backing="/v2/space_quota_definitions/{guid}/spaces/{space_guid}",
              exists=(("space_quotas", "{guid}"), ("spaces", "{space_guid}")),
              refresh=_control_plane("spaces")),

        # 路由 / 域名 / 安全组
        route("DELETE", "/routes/{guid}", CONTROL_PLANE, backing="/v2/routes/{guid}",
              exists=(("routes", "{guid}"),), refresh=_control_plane("routes", "route_mappings")),
        route("DELETE", "/domains/{guid}", CONTROL_PLANE, backing=_domain_calls,
              exists=(("domains", "{guid}"),), refresh=_control_plane("domains", "routes")),
        route("DELETE", "/security_groups/{guid}", CONTROL_PLANE, backing="/v2/security_groups/{guid}",
              exists=(("security_groups", "{guid}"),), refresh=_control_plane("security_groups")),

        # 服务
        route("PUT", "/service_brokers/{guid}", CONTROL_PLANE, backing="/v2/service_brokers/{guid}",
              exists=(("service_brokers", "{guid}"),), refresh=_control_plane(*BROKER_KINDS),
              body=ServiceBrokerUpdate),
        route("DELETE", "/service_brokers/{guid}", CONTROL_PLANE, backing="/v2/service_brokers/{guid}",
              exists=(("service_brokers", "{guid}"),), refresh=_control_plane(*BROKER_KINDS)),
        route("DELETE", "/services/{guid}", CONTROL_PLANE, backing="/v2/services/{guid}",
              exists=(("services", "{guid}"),), refresh=_control_plane("services", "service_plans")),
        route("PUT", "/service_plans/{guid}", CONTROL_PLANE, backing="/v2/service_plans/{guid}",
              exists=(("service_plans", "{guid}"),), refresh=_control_plane("service_plans"),
              body=ServicePlanUpdate),
        route("DELETE", "/service_plans/{guid}", CONTROL_PLANE, backing="/v2/service_plans/{guid}",
              exists=(("service_plans", "{guid}"),), refresh=_control_plane("service_plans")),
        route("PUT", "/service_instances/{guid}/{is_gateway_service}", CONTROL_PLANE,
              backing=_service_instance_calls("PUT"),
              exists=(("service_instances", "{guid}/{is_gateway_service}"),),
              refresh=_control_plane("service_instances"), body=ServiceInstanceUpdate),
        route("DELETE", "/service_instances/{guid}/{is_gateway_service}", CONTROL_PLANE,
              backing=_service_instance_calls("DELETE"),
              exists=(("service_instances", "{guid}/{is_gateway_service}"),),
              refresh=_control_plane("service_instances", "service_bindings")),
        route("DELETE", "/service_bindings/{guid}", CONTROL_PLANE, backing="/v2/service_bindings/{guid}",
              exists=(("service_bindings", "{guid}"),), refresh=_control_plane("service_bindings")),

        # 身份服务
        route("DELETE", "/users/{id}", IDENTITY, backing=_user_calls,
              exists=(("users", "{id}"),),
              refresh=((CONTROL_PLANE, ("users",)), (IDENTITY, ("users", "groups")))),
        route("DELETE", "/groups/{id}", IDENTITY, backing="/Groups/{id}",
              exists=(("groups", "{id}"),), refresh=((IDENTITY, ("groups", "users")),)),
        route("DELETE", "/clients/{id}", IDENTITY, backing="/oauth/clients/{id}",
              exists=(("clients", "{id}"),), refresh=((IDENTITY, ("clients",)),)),

        # 组件（仅本地移除）
        route("DELETE", "/components", TELEMETRY, query=("uri",),
              exists=(("components", _component_host),), local=_remove_component),
        route("DELETE", "/doppler_components", FIREHOSE, query=("uri",),
              exists=(("components", "{uri}"),), local=_remove_doppler_component),
    ]


# =============================================================================
# 分发器
# =============================================================================

class OperationDispatcher:
    """变更操作分发器"""

    def __init__(
        self,
        engine: ViewModelEngine,
        poller: Poller,
        audit: AuditLogger,
        routes: Optional[Sequence[OperationRoute]] = None,
    ):
        self.engine = engine
        self.poller = poller
        self.audit = audit
        self.routes = list(routes) if routes is not None else default_routes()

    @property
    def cache(self) -> SourceRecordCache:
        return self.engine.cache

    def _match(self, operation: Operation) -> Tuple[OperationRoute, Dict[str, str]]:
        for candidate in self.routes:
            params = candidate.match(operation.verb, operation.path)
            if params is not None:
                query = dict(operation.query)
                for name in candidate.query:
                    if not query.get(name):
                        raise MalformedInput(f"Missing query parameter: {name}")
                    params[name] = query[name]
                return candidate, params
        raise NotFound(f"No operation for {operation.verb} {operation.path}")

    @staticmethod
    def _validate_body(candidate: OperationRoute, body: bytes):
        """请求体必须是 JSON 对象，字段和类型由操作决定"""
        if not body or not body.strip():
            if candidate.body is not None:
                raise MalformedInput("Request body is required")
            return

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise MalformedInput(f"Request body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedInput("Request body must be a JSON object")

        if candidate.body is None:
            if payload:
                raise MalformedInput("Operation does not accept a request body")
            return
        if not payload:
            raise MalformedInput("Request body has no fields")
        try:
            candidate.body.model_validate(payload)
        except ValidationError as e:
            raise MalformedInput(f"Invalid request body: {e.error_count()} error(s): {e.errors()[0]['msg']}") from e

    async def _forward(self, call: BackingCall, operation: Operation):
        client = self.poller.clients[call.source]
        query_string = operation.query_string if call.forward else ""
        content = operation.body if call.forward else None
        try:
            response = await client.request(call.method, call.path, query_string, content)
        except httpx.HTTPError as e:
            raise SourceUnreachable(call.source.value, f"{type(e).__name__}: {e}", cause=e) from e

        if not response.is_success:
            logger.warning(
                f"{call.method} {call.path} on {call.source.value} failed with status {response.status_code}"
            )
            raise BackingOperationFailed(
                response.status_code, response.content, response.headers.get("content-type")
            )
        logger.debug(f"{call.method} {call.path} on {call.source.value} -> {response.status_code}")

    async def dispatch(self, operation: Operation):
        """
        执行一次变更操作

        Raises:
            NotFound: 未知操作或目标不存在
            MalformedInput: 请求体非法
            BackingOperationFailed: 后端返回非 2xx
            SourceUnreachable: 后端不可达或刷新失败
        """
        candidate, params = self._match(operation)
        self._validate_body(candidate, operation.body)
        for resource, key in candidate.existence_keys(params):
            self.engine.get_detail(resource, key)
        calls = candidate.calls(params, self.engine)

        self.audit.log_operation(operation.actor, operation.verb, operation.normalized_path, operation.body)

        for call in calls:
            await self._forward(call, operation)

        if candidate.local is not None:
            candidate.local(self, params)
        for source, kinds in candidate.refresh:
            await self.poller.refresh(source, kinds)

        logger.info(f"{operation.actor} {operation.verb} {operation.normalized_path} completed")
