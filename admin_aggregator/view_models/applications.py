"""
应用相关视图：applications、application_instances、buildpacks、stacks

存在性以控制面为准：遥测里出现、但控制面已不存在的应用实例被忽略；
运行态字段（运行实例数、内存/磁盘/CPU 占用）以遥测为准。
"""

from collections import defaultdict
from typing import Any, Dict, List

from .base import (
    CONTROL_PLANE,
    FIREHOSE,
    TELEMETRY,
    BuildContext,
    JoinedEntity,
    ResourceView,
    name_of,
    target_of,
)

MB = 1024 * 1024


def _to_mb(value) -> Any:
    if value is None:
        return None
    return round(value / MB, 2)


def _app_parts(ctx: BuildContext, app: Dict[str, Any]) -> Dict[str, Any]:
    space = ctx.lookup(CONTROL_PLANE, "spaces", app.get("space_guid"))
    organization = ctx.lookup(CONTROL_PLANE, "organizations", space.get("organization_guid")) if space else None
    return {
        "application": app,
        "space": space,
        "organization": organization,
        "stack": ctx.lookup(CONTROL_PLANE, "stacks", app.get("stack_guid")),
    }


def instance_entities(ctx: BuildContext) -> List[JoinedEntity]:
    """
    应用实例 join（applications 与 application_instances 共用）

    心跳总线上的 DEA 实例优先；firehose 的容器指标只补充心跳总线未覆盖的实例。
    """
    apps = ctx.index(CONTROL_PLANE, "apps")
    entities: List[JoinedEntity] = []
    covered = set()

    for record in ctx.tagged(TELEMETRY, "instances"):
        instance = record.data
        app = apps.get(instance.get("application_id"))
        if app is None:
            continue
        index = instance.get("instance_index")
        covered.add(f"{app['guid']}/{index}")
        parts = _app_parts(ctx, app)
        parts["instance"] = instance
        entities.append(JoinedEntity(
            key=record.key,
            parts=parts,
            derived={
                "source": "varz",
                "index": index,
                "instance_id": instance.get("instance_id"),
                "state": instance.get("state"),
                "started": instance.get("state_running_timestamp"),
                "memory_used_mb": _to_mb(instance.get("used_memory_in_bytes")),
                "disk_used_mb": _to_mb(instance.get("used_disk_in_bytes")),
                "cpu_pct": instance.get("computed_pcpu"),
                "host": instance.get("host"),
            },
        ))

    for record in ctx.tagged(FIREHOSE, "container_metrics"):
        metric = record.data
        app = apps.get(metric.get("application_id"))
        if app is None or record.key in covered:
            continue
        parts = _app_parts(ctx, app)
        parts["container_metric"] = metric
        entities.append(JoinedEntity(
            key=record.key,
            parts=parts,
            derived={
                "source": "doppler",
                "index": metric.get("instance_index"),
                "instance_id": None,
                # firehose 只会为正在运行的容器上报指标
                "state": "RUNNING",
                "started": None,
                "memory_used_mb": _to_mb(metric.get("memory_bytes")),
                "disk_used_mb": _to_mb(metric.get("disk_bytes")),
                "cpu_pct": metric.get("cpu_percentage"),
                "host": metric.get("ip"),
            },
        ))

    return entities


def join_applications(ctx: BuildContext) -> List[JoinedEntity]:
    instances_by_app = defaultdict(list)
    for entity in instance_entities(ctx):
        instances_by_app[entity.parts["application"]["guid"]].append(entity.derived)

    entities = []
    for app in ctx.rows(CONTROL_PLANE, "apps"):
        live = instances_by_app.get(app["guid"], [])
        running = [i for i in live if i.get("state") == "RUNNING"]
        entities.append(JoinedEntity(
            key=app["guid"],
            parts=_app_parts(ctx, app),
            derived={
                "running_instances": len(running),
                "memory_used_mb": round(sum(i.get("memory_used_mb") or 0 for i in running), 2),
                "disk_used_mb": round(sum(i.get("disk_used_mb") or 0 for i in running), 2),
                "cpu_pct": round(sum(i.get("cpu_pct") or 0 for i in running), 2),
            },
        ))
    return entities


def application_row(entity: JoinedEntity) -> List[Any]:
    app = entity.parts["application"]
    return [
        app["guid"],
        app.get("name"),
        target_of(entity.parts["organization"], entity.parts["space"]),
        app.get("state"),
        app.get("package_state"),
        app.get("staging_failed_reason"),
        app.get("created_at"),
        app.get("updated_at"),
        entity.derived["running_instances"],
        app.get("instances"),
        entity.derived["memory_used_mb"],
        entity.derived["disk_used_mb"],
        entity.derived["cpu_pct"],
        app.get("memory"),
        app.get("disk_quota"),
        name_of(entity.parts["stack"]),
        app.get("buildpack") or app.get("detected_buildpack"),
        app.get("diego"),
    ]


def application_instance_row(entity: JoinedEntity) -> List[Any]:
    app = entity.parts["application"]
    derived = entity.derived
    return [
        app.get("name"),
        app["guid"],
        derived["index"],
        derived["instance_id"],
        derived["state"],
        derived["started"],
        derived["memory_used_mb"],
        derived["disk_used_mb"],
        derived["cpu_pct"],
        derived["host"],
        target_of(entity.parts["organization"], entity.parts["space"]),
        derived["source"],
    ]


def join_buildpacks(ctx: BuildContext) -> List[JoinedEntity]:
    return [
        JoinedEntity(key=bp["guid"], parts={"buildpack": bp})
        for bp in ctx.rows(CONTROL_PLANE, "buildpacks")
    ]


def buildpack_row(entity: JoinedEntity) -> List[Any]:
    bp = entity.parts["buildpack"]
    return [
        bp["guid"],
        bp.get("name"),
        bp.get("position"),
        bp.get("filename"),
        bp.get("created_at"),
        bp.get("updated_at"),
        bp.get("enabled"),
        bp.get("locked"),
    ]


def join_stacks(ctx: BuildContext) -> List[JoinedEntity]:
    app_counts: Dict[str, int] = defaultdict(int)
    for app in ctx.rows(CONTROL_PLANE, "apps"):
        app_counts[app.get("stack_guid")] += 1
    return [
        JoinedEntity(key=stack["guid"], parts={"stack": stack}, derived={"apps": app_counts.get(stack["guid"], 0)})
        for stack in ctx.rows(CONTROL_PLANE, "stacks")
    ]


def stack_row(entity: JoinedEntity) -> List[Any]:
    stack = entity.parts["stack"]
    return [
        stack["guid"],
        stack.get("name"),
        stack.get("description"),
        stack.get("created_at"),
        stack.get("updated_at"),
        entity.derived["apps"],
    ]


VIEWS = [
    ResourceView(
        name="applications",
        sources=frozenset({CONTROL_PLANE, TELEMETRY, FIREHOSE}),
        join=join_applications,
        row=application_row,
    ),
    ResourceView(
        name="application_instances",
        sources=frozenset({CONTROL_PLANE, TELEMETRY, FIREHOSE}),
        join=instance_entities,
        row=application_instance_row,
    ),
    ResourceView(
        name="buildpacks",
        sources=frozenset({CONTROL_PLANE}),
        join=join_buildpacks,
        row=buildpack_row,
    ),
    ResourceView(
        name="stacks",
        sources=frozenset({CONTROL_PLANE}),
        join=join_stacks,
        row=stack_row,
    ),
]
