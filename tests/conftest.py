"""
测试夹具

用 httpx.MockTransport 模拟四类后端：
- FakeControlPlane: v2 分页 REST API，支持变更
- FakeIdentity: token 端点 + SCIM 分页
- FakeTelemetry: 组件发现 + 各组件 /varz
- FakeFirehose: 换行分隔 JSON 事件流
"""

import asyncio
import itertools
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from admin_aggregator.config import (
    AppConfig,
    ControlPlaneConfig,
    DatabaseConfig,
    FirehoseConfig,
    IdentityConfig,
    SourcesConfig,
    TelemetryConfig,
)
from admin_aggregator.context import AdminContext, build_context
from admin_aggregator.models import SourceType

CC_URL = "http://cc.test"
UAA_URL = "http://uaa.test"
BUS_URL = "http://bus.test/components"
DOPPLER_URL = "http://doppler.test"

CC_COLLECTIONS = (
    "organizations", "spaces", "apps", "stacks", "routes", "route_mappings",
    "buildpacks", "quota_definitions", "space_quota_definitions",
    "private_domains", "shared_domains", "service_brokers", "services",
    "service_plans", "service_instances", "user_provided_service_instances",
    "service_bindings", "security_groups", "events", "users",
)

ORG_ROLE_RELATIONS = {
    "users": "organizations",
    "managers": "managed_organizations",
    "billing_managers": "billing_managed_organizations",
    "auditors": "audited_organizations",
}
SPACE_ROLE_RELATIONS = {
    "developers": "spaces",
    "managers": "managed_spaces",
    "auditors": "audited_spaces",
}


def _ref(guid: str) -> Dict[str, Any]:
    return {"metadata": {"guid": guid}, "entity": {}}


class FakeControlPlane:
    """控制面 v2 API 模拟"""

    def __init__(self):
        self.collections: Dict[str, List[Dict[str, Any]]] = {name: [] for name in CC_COLLECTIONS}
        self.feature_flags: List[Dict[str, Any]] = []
        self.mutations: List[Tuple[str, str, str, bytes]] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, bytes]] = {}
        self.raw_bodies: Dict[str, bytes] = {}
        self.get_count = 0
        self.down = False
        self.authorization: Optional[str] = None
        self._guids = itertools.count(1)

    def add(self, collection: str, guid: str, **entity) -> Dict[str, Any]:
        resource = {
            "metadata": {
                "guid": guid,
                "url": f"/v2/{collection}/{guid}",
                "created_at": "2026-01-01T00:00:00Z",
                "updated_at": None,
            },
            "entity": dict(entity, **{f"{collection}_url": f"/v2/{collection}/{guid}/x"}),
        }
        self.collections[collection].append(resource)
        return resource

    def add_user(self, guid: str, organizations=(), managed_organizations=(), spaces=(), **entity):
        return self.add(
            "users",
            guid,
            admin=False,
            active=True,
            organizations=[_ref(g) for g in organizations],
            managed_organizations=[_ref(g) for g in managed_organizations],
            billing_managed_organizations=[],
            audited_organizations=[],
            spaces=[_ref(g) for g in spaces],
            managed_spaces=[],
            audited_spaces=[],
            **entity,
        )

    def find(self, collection: str, guid: str) -> Optional[Dict[str, Any]]:
        for resource in self.collections[collection]:
            if resource["metadata"]["guid"] == guid:
                return resource
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("control plane down", request=request)
        self.authorization = request.headers.get("authorization")
        path = request.url.path

        if request.method != "GET":
            self.mutations.append((request.method, path, request.url.query.decode(), request.content))
            failure = self.failures.get((request.method, path))
            if failure is not None:
                return httpx.Response(failure[0], content=failure[1], headers={"content-type": "application/json"})
            return self._mutate(request)

        self.get_count += 1
        if path in self.raw_bodies:
            return httpx.Response(200, content=self.raw_bodies[path], headers={"content-type": "application/json"})
        if path == "/v2/config/feature_flags":
            return httpx.Response(200, json=self.feature_flags)
        collection = path[len("/v2/"):]
        if collection not in self.collections:
            return httpx.Response(404, json={"code": 10000, "description": "Unknown request"})
        return self._page(request, collection)

    def _page(self, request: httpx.Request, collection: str) -> httpx.Response:
        per_page = int(request.url.params.get("results-per-page", 100))
        page = int(request.url.params.get("page", 1))
        resources = self.collections[collection]
        start = (page - 1) * per_page
        next_url = None
        if start + per_page < len(resources):
            next_url = f"/v2/{collection}?page={page + 1}&results-per-page={per_page}"
        return httpx.Response(200, json={
            "total_results": len(resources),
            "next_url": next_url,
            "resources": resources[start:start + per_page],
        })

    def _mutate(self, request: httpx.Request) -> httpx.Response:
        parts = request.url.path.strip("/").split("/")[1:]
        body = json.loads(request.content) if request.content else {}

        if parts[:2] == ["config", "feature_flags"]:
            for flag in self.feature_flags:
                if flag["name"] == parts[2]:
                    flag.update(body)
            return httpx.Response(200, json={})

        collection = parts[0]
        if request.method == "POST" and len(parts) == 1:
            resource = self.add(collection, f"new-{next(self._guids)}", **body)
            return httpx.Response(201, json=resource)

        resource = self.find(collection, parts[1]) if len(parts) > 1 and collection in self.collections else None
        if len(parts) == 2:
            if resource is None:
                return httpx.Response(404, json={"code": 10000})
            if request.method == "PUT":
                resource["entity"].update(body)
                return httpx.Response(201, json=resource)
            if request.method == "DELETE":
                self.collections[collection].remove(resource)
                return httpx.Response(204)

        if len(parts) == 4 and collection in ("organizations", "spaces") and request.method == "DELETE":
            relations = ORG_ROLE_RELATIONS if collection == "organizations" else SPACE_ROLE_RELATIONS
            user = self.find("users", parts[3])
            relation = relations.get(parts[2])
            if user is None or relation is None:
                return httpx.Response(404, json={"code": 10000})
            user["entity"][relation] = [r for r in user["entity"][relation] if r["metadata"]["guid"] != parts[1]]
            return httpx.Response(204)

        return httpx.Response(204)


class FakeIdentity:
    """身份服务模拟"""

    COLLECTIONS = {"/Users": "users", "/Groups": "groups", "/oauth/clients": "clients"}

    def __init__(self):
        self.resources: Dict[str, List[Dict[str, Any]]] = {"users": [], "groups": [], "clients": []}
        self.token_requests = 0
        self.deleted: List[str] = []
        self.down = False

    def add_user(self, user_id: str, user_name: str, **extra):
        self.resources["users"].append(dict({
            "id": user_id,
            "userName": user_name,
            "emails": [{"value": f"{user_name}@example.com"}],
            "name": {"familyName": user_name.title(), "givenName": user_name},
            "active": True,
            "verified": True,
            "meta": {"created": "2026-01-01T00:00:00Z", "lastModified": None, "version": 1},
            "groups": [],
        }, **extra))

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("identity down", request=request)
        path = request.url.path

        if path == "/oauth/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_requests}", "expires_in": 3600})

        if request.method == "DELETE":
            self.deleted.append(path)
            prefix, _, resource_id = path.rpartition("/")
            kind = self.COLLECTIONS.get(prefix)
            key_field = "client_id" if kind == "clients" else "id"
            if kind:
                self.resources[kind] = [r for r in self.resources[kind] if r[key_field] != resource_id]
            return httpx.Response(200, json={})

        kind = self.COLLECTIONS.get(path)
        if kind is None:
            return httpx.Response(404, json={"error": "not_found"})
        start = int(request.url.params.get("startIndex", 1))
        count = int(request.url.params.get("count", 100))
        resources = self.resources[kind]
        return httpx.Response(200, json={
            "resources": resources[start - 1:start - 1 + count],
            "startIndex": start,
            "itemsPerPage": count,
            "totalResults": len(resources),
        })


class FakeTelemetry:
    """心跳总线与组件 varz 模拟"""

    def __init__(self):
        self.announcements: List[Dict[str, Any]] = []
        self.varz: Dict[str, Dict[str, Any]] = {}
        self.offline = set()
        self.down = False

    def add_component(self, component_type: str, host: str, index: int = 0, **varz):
        self.announcements.append({
            "type": component_type,
            "index": index,
            "host": host,
            "uuid": f"{component_type}-{index}",
            "credentials": ["varz", "secret"],
        })
        self.varz[host] = dict({"type": component_type, "index": index, "start": "2026-01-01T00:00:00Z",
                                "cpu": 1.5, "mem": 1024, "num_cores": 2}, **varz)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == BUS_URL:
            if self.down:
                raise httpx.ConnectError("bus down", request=request)
            return httpx.Response(200, json=self.announcements)

        host = request.url.netloc.decode()
        if host in self.offline:
            raise httpx.ConnectError(f"{host} unreachable", request=request)
        if request.url.path == "/varz" and host in self.varz:
            return httpx.Response(200, json=self.varz[host])
        return httpx.Response(404)


class FakeFirehose:
    """firehose 事件流模拟（流在发送完所有事件后结束）"""

    def __init__(self):
        self.envelopes: List[Any] = []
        self.down = False

    def value_metric(self, origin: str, ip: str, name: str, value: float, index: str = "0"):
        self.envelopes.append({
            "origin": origin, "eventType": "ValueMetric", "timestamp": 1767225600000000000,
            "deployment": "cf", "job": origin, "index": index, "ip": ip,
            "valueMetric": {"name": name, "value": value, "unit": "count"},
        })

    def container_metric(self, app_guid: str, instance_index: int, ip: str = "10.0.0.5", **metric):
        self.envelopes.append({
            "origin": "rep", "eventType": "ContainerMetric", "timestamp": 1767225600000000000,
            "deployment": "cf", "job": "diego_cell", "index": "0", "ip": ip,
            "containerMetric": dict({
                "applicationId": app_guid, "instanceIndex": instance_index,
                "cpuPercentage": 2.5, "memoryBytes": 64 * 1024 * 1024, "diskBytes": 128 * 1024 * 1024,
                "memoryBytesQuota": 256 * 1024 * 1024, "diskBytesQuota": 1024 * 1024 * 1024,
            }, **metric),
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("doppler down", request=request)
        lines = [e if isinstance(e, str) else json.dumps(e) for e in self.envelopes]
        return httpx.Response(200, content="\n".join(lines).encode("utf-8"))


class Backends:
    """四类后端的集合"""

    def __init__(self):
        self.control_plane = FakeControlPlane()
        self.identity = FakeIdentity()
        self.telemetry = FakeTelemetry()
        self.firehose = FakeFirehose()

    def transports(self) -> Dict[SourceType, httpx.MockTransport]:
        return {
            SourceType.CONTROL_PLANE: httpx.MockTransport(self.control_plane.handler),
            SourceType.IDENTITY: httpx.MockTransport(self.identity.handler),
            SourceType.TELEMETRY: httpx.MockTransport(self.telemetry.handler),
            SourceType.FIREHOSE: httpx.MockTransport(self.firehose.handler),
        }


def seed(backends: Backends):
    """标准测试数据：一个组织、一个空间、两个应用及周边资源"""
    cc = backends.control_plane
    cc.add("quota_definitions", "quota-1", name="default", total_services=100, total_routes=1000,
           memory_limit=10240, instance_memory_limit=-1, non_basic_services_allowed=True)
    cc.add("organizations", "org-1", name="Org One", status="active", quota_definition_guid="quota-1",
           billing_enabled=False)
    cc.add("space_quota_definitions", "squota-1", name="small", organization_guid="org-1",
           total_services=10, total_routes=10, memory_limit=2048, instance_memory_limit=512,
           non_basic_services_allowed=False)
    cc.add("spaces", "space-1", name="dev", organization_guid="org-1", space_quota_definition_guid="squota-1",
           allow_ssh=True)
    cc.add("stacks", "stack-1", name="cflinuxfs4", description="Ubuntu 22.04")
    cc.add("apps", "app-1", name="web", space_guid="space-1", stack_guid="stack-1", state="STARTED",
           package_state="STAGED", instances=2, memory=256, disk_quota=1024, buildpack=None,
           detected_buildpack="python_buildpack", diego=False)
    cc.add("apps", "app-2", name="worker", space_guid="space-1", stack_guid="stack-1", state="STOPPED",
           package_state="STAGED", instances=1, memory=128, disk_quota=512, buildpack="go_buildpack",
           diego=True)
    cc.add("buildpacks", "bp-1", name="python_buildpack", position=1, enabled=True, locked=False,
           filename="python.zip")
    cc.add("private_domains", "dom-1", name="apps.internal", owning_organization_guid="org-1")
    cc.add("shared_domains", "dom-2", name="apps.example.com")
    cc.add("routes", "route-1", host="web", path="", domain_guid="dom-2", space_guid="space-1")
    cc.add("route_mappings", "rm-1", app_guid="app-1", route_guid="route-1")
    cc.add("service_brokers", "broker-1", name="mysql-broker", broker_url="http://broker.test")
    cc.add("services", "svc-1", label="mysql", provider=None, active=True, bindable=True,
           service_broker_guid="broker-1", description="MySQL")
    cc.add("service_plans", "plan-1", name="small", service_guid="svc-1", free=True, active=True,
           public=False, description="Small")
    cc.add("service_instances", "si-1", name="db", service_plan_guid="plan-1", space_guid="space-1")
    cc.add("user_provided_service_instances", "upsi-1", name="external-db", space_guid="space-1")
    cc.add("service_bindings", "sb-1", app_guid="app-1", service_instance_guid="si-1")
    cc.add("security_groups", "sg-1", name="public", running_default=True, staging_default=False,
           spaces=[_ref("space-1")])
    cc.add("events", "event-1", type="audit.app.update", actor="user-1", actor_type="user",
           actor_name="alice", actee="app-1", actee_type="app", actee_name="web",
           timestamp="2026-01-02T00:00:00Z", space_guid="space-1", organization_guid="org-1")
    cc.feature_flags.append({"name": "user_org_creation", "enabled": False, "error_message": None,
                             "url": "/v2/config/feature_flags/user_org_creation"})
    cc.add_user("user-1", organizations=["org-1"], managed_organizations=["org-1"], spaces=["space-1"],
                default_space_guid="space-1")

    uaa = backends.identity
    uaa.add_user("user-1", "alice", groups=[{"display": "cloud_controller.admin", "value": "group-1"}])
    uaa.add_user("user-2", "bob")
    uaa.resources["groups"].append({"id": "group-1", "displayName": "cloud_controller.admin",
                                    "members": [{"value": "user-1"}], "meta": {"version": 1}})
    uaa.resources["clients"].append({"client_id": "cf", "scope": ["openid"],
                                     "authorized_grant_types": ["password"], "lastModified": 1767225600000})

    bus = backends.telemetry
    bus.add_component("CloudController", "10.0.0.1:9022")
    bus.add_component("DEA", "10.0.0.2:9023", stacks=["cflinuxfs4"], available_memory_ratio=0.5,
                      available_disk_ratio=0.75, instance_registry={
                          "app-1": {
                              "inst-a": {"application_id": "app-1", "application_name": "web",
                                         "instance_index": 0, "state": "RUNNING",
                                         "state_running_timestamp": 1767225600,
                                         "used_memory_in_bytes": 100 * 1024 * 1024,
                                         "used_disk_in_bytes": 200 * 1024 * 1024, "computed_pcpu": 1.25},
                          },
                          "app-ghost": {
                              "inst-z": {"application_id": "app-ghost", "instance_index": 0, "state": "RUNNING"},
                          },
                      })
    bus.add_component("Router", "10.0.0.3:9024", droplets=3, requests=100, bad_requests=1)

    doppler = backends.firehose
    doppler.value_metric("rep", "10.0.0.5", "CapacityTotalMemory", 16384)
    doppler.value_metric("rep", "10.0.0.5", "ContainerCount", 1)
    doppler.container_metric("app-1", 1)


def poll_all(context: AdminContext):
    """按顺序轮询全部数据源一次"""
    async def _poll():
        for source in SourceType:
            await context.poller.poll(source)
    asyncio.run(_poll())


@pytest.fixture
def backends() -> Backends:
    return Backends()


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        database=DatabaseConfig(path=str(tmp_path / "admin_aggregator.db")),
        sources=SourcesConfig(
            control_plane=ControlPlaneConfig(url=CC_URL),
            identity=IdentityConfig(url=UAA_URL, client_secret="secret"),
            telemetry=TelemetryConfig(url=BUS_URL),
            firehose=FirehoseConfig(url=DOPPLER_URL, window_seconds=2.0),
        ),
    )


@pytest.fixture
def context(config, backends) -> AdminContext:
    return build_context(config, transports=backends.transports())


@pytest.fixture
def seeded(backends, context) -> AdminContext:
    """已填充标准数据并完成一次全量轮询的上下文"""
    seed(backends)
    poll_all(context)
    return context
