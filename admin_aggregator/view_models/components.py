"""
平台组件视图

components、cloud_controllers、deas、routers、health_managers、cells

组件来自两条路径：心跳总线发现的 varz 端点（自然键为 host），
以及 firehose 指标（自然键为 origin:index:ip，按角色视图中为 ip:index）。
"""

from typing import Any, Callable, FrozenSet, List, Optional

from .base import (
    FIREHOSE,
    TELEMETRY,
    BuildContext,
    JoinedEntity,
    ResourceView,
    count_by,
)

CLOUD_CONTROLLER_TYPES = frozenset({"cloudcontroller"})
DEA_TYPES = frozenset({"dea"})
ROUTER_TYPES = frozenset({"router", "gorouter"})
HEALTH_MANAGER_TYPES = frozenset({"healthmanager", "hm9000", "hm"})
CELL_ORIGINS = frozenset({"rep"})


def varz_entity(record) -> JoinedEntity:
    component = record.data
    varz = component.get("varz") or {}
    return JoinedEntity(
        key=record.key,
        parts={"component": component},
        derived={
            "name": component.get("type"),
            "index": component.get("index"),
            "state": "RUNNING" if component.get("connected") else "OFFLINE",
            "started": varz.get("start"),
            "cpu": varz.get("cpu"),
            "memory": varz.get("mem"),
            "uri": component.get("uri"),
            "host": component.get("host"),
            "source": "varz",
        },
    )


def doppler_entity(record, key: Optional[str] = None) -> JoinedEntity:
    component = record.data
    metrics = component.get("metrics") or {}
    return JoinedEntity(
        key=key or record.key,
        parts={"component": component},
        derived={
            "name": component.get("origin"),
            "index": component.get("index"),
            "state": "RUNNING",
            "started": component.get("timestamp"),
            "cpu": metrics.get("cpu"),
            "memory": metrics.get("memory"),
            "uri": record.key,
            "host": component.get("ip"),
            "source": "doppler",
        },
    )


def value_of(entity: JoinedEntity, name: str) -> Any:
    """组件字段：varz 优先，其次 firehose 指标"""
    component = entity.parts["component"]
    if entity.derived["source"] == "varz":
        return (component.get("varz") or {}).get(name)
    return (component.get("metrics") or {}).get(name)


def _matches(value: Optional[str], accepted: FrozenSet[str]) -> bool:
    return value is not None and value.lower() in accepted


def component_entities(
    ctx: BuildContext,
    varz_types: Optional[FrozenSet[str]] = None,
    doppler_origins: Optional[FrozenSet[str]] = None,
) -> List[JoinedEntity]:
    """
    按角色筛选组件

    types/origins 为 None 表示该路径全部接受，为空集合表示该路径不参与。
    按角色筛选时 firehose 组件以 ip:index 为键。
    """
    entities = []
    for record in ctx.tagged(TELEMETRY, "components"):
        if varz_types is None or _matches(record.data.get("type"), varz_types):
            entities.append(varz_entity(record))
    for record in ctx.tagged(FIREHOSE, "components"):
        if doppler_origins is None:
            entities.append(doppler_entity(record))
        elif _matches(record.data.get("origin"), doppler_origins):
            component = record.data
            entities.append(doppler_entity(record, key=f"{component.get('ip')}:{component.get('index')}"))
    return entities


def _common_columns(entity: JoinedEntity) -> List[Any]:
    derived = entity.derived
    return [derived["name"], derived["index"], derived["state"], derived["started"]]


def component_row(entity: JoinedEntity) -> List[Any]:
    return _common_columns(entity) + [
        entity.derived["uri"],
        entity.key,
        entity.derived["source"],
    ]


def cloud_controller_row(entity: JoinedEntity) -> List[Any]:
    return _common_columns(entity) + [
        value_of(entity, "num_cores"),
        entity.derived["cpu"],
        entity.derived["memory"],
        entity.derived["uri"],
    ]


def join_deas(ctx: BuildContext) -> List[JoinedEntity]:
    entities = component_entities(ctx, DEA_TYPES, DEA_TYPES)
    varz_instances = count_by(ctx.rows(TELEMETRY, "instances"), "host")
    doppler_instances = count_by(ctx.rows(FIREHOSE, "container_metrics"), "ip")
    result = []
    for entity in entities:
        if entity.derived["source"] == "varz":
            instances = varz_instances.get(entity.derived["host"], 0)
        else:
            instances = doppler_instances.get(entity.derived["host"], 0)
        derived = dict(entity.derived, instances=instances)
        result.append(JoinedEntity(key=entity.key, parts=entity.parts, derived=derived))
    return result


def dea_row(entity: JoinedEntity) -> List[Any]:
    return _common_columns(entity) + [
        value_of(entity, "stacks"),
        entity.derived["cpu"],
        entity.derived["memory"],
        entity.derived["instances"],
        value_of(entity, "available_memory_ratio"),
        value_of(entity, "available_disk_ratio"),
        entity.derived["source"],
    ]


def router_row(entity: JoinedEntity) -> List[Any]:
    return _common_columns(entity) + [
        entity.derived["cpu"],
        entity.derived["memory"],
        value_of(entity, "droplets"),
        value_of(entity, "requests"),
        value_of(entity, "bad_requests"),
        entity.derived["source"],
    ]


def health_manager_row(entity: JoinedEntity) -> List[Any]:
    return _common_columns(entity) + [
        entity.derived["cpu"],
        entity.derived["memory"],
        entity.derived["source"],
    ]


def cell_row(entity: JoinedEntity) -> List[Any]:
    return [
        entity.derived["host"],
        entity.derived["index"],
        entity.derived["state"],
        entity.derived["started"],
        value_of(entity, "CapacityTotalMemory"),
        value_of(entity, "CapacityRemainingMemory"),
        value_of(entity, "CapacityTotalDisk"),
        value_of(entity, "CapacityRemainingDisk"),
        value_of(entity, "ContainerCount"),
    ]


def _role_join(
    varz_types: FrozenSet[str], doppler_origins: FrozenSet[str]
) -> Callable[[BuildContext], List[JoinedEntity]]:
    def join(ctx: BuildContext) -> List[JoinedEntity]:
        return component_entities(ctx, varz_types, doppler_origins)
    return join


VIEWS = [
    ResourceView(
        name="components",
        sources=frozenset({TELEMETRY, FIREHOSE}),
        join=component_entities,
        row=component_row,
    ),
    ResourceView(
        name="cloud_controllers",
        sources=frozenset({TELEMETRY}),
        join=_role_join(CLOUD_CONTROLLER_TYPES, frozenset()),
        row=cloud_controller_row,
    ),
    ResourceView(
        name="deas",
        sources=frozenset({TELEMETRY, FIREHOSE}),
        join=join_deas,
        row=dea_row,
    ),
    ResourceView(
        name="routers",
        sources=frozenset({TELEMETRY, FIREHOSE}),
        join=_role_join(ROUTER_TYPES, ROUTER_TYPES),
        row=router_row,
    ),
    ResourceView(
        name="health_managers",
        sources=frozenset({TELEMETRY, FIREHOSE}),
        join=_role_join(HEALTH_MANAGER_TYPES, HEALTH_MANAGER_TYPES),
        row=health_manager_row,
    ),
    ResourceView(
        name="cells",
        sources=frozenset({FIREHOSE}),
        join=_role_join(frozenset(), CELL_ORIGINS),
        row=cell_row,
    ),
]
