"""
服务相关视图

service_brokers、services、service_plans、service_instances、service_bindings

service_instances 同时包含托管实例和用户提供实例，自然键为 guid/is_gateway_service。
"""

from typing import Any, Dict, List

from .base import (
    CONTROL_PLANE,
    BuildContext,
    JoinedEntity,
    ResourceView,
    count_by,
    name_of,
    target_of,
)


def join_service_brokers(ctx: BuildContext) -> List[JoinedEntity]:
    services = ctx.rows(CONTROL_PLANE, "services")
    service_counts = count_by(services, "service_broker_guid")
    service_broker = {s["guid"]: s.get("service_broker_guid") for s in services}
    plan_counts: Dict[str, int] = {}
    for plan in ctx.rows(CONTROL_PLANE, "service_plans"):
        broker_guid = service_broker.get(plan.get("service_guid"))
        plan_counts[broker_guid] = plan_counts.get(broker_guid, 0) + 1

    return [
        JoinedEntity(
            key=broker["guid"],
            parts={"service_broker": broker},
            derived={
                "services": service_counts.get(broker["guid"], 0),
                "service_plans": plan_counts.get(broker["guid"], 0),
            },
        )
        for broker in ctx.rows(CONTROL_PLANE, "service_brokers")
    ]


def service_broker_row(entity: JoinedEntity) -> List[Any]:
    broker = entity.parts["service_broker"]
    return [
        broker["guid"],
        broker.get("name"),
        broker.get("created_at"),
        broker.get("updated_at"),
        broker.get("broker_url"),
        entity.derived["services"],
        entity.derived["service_plans"],
    ]


def join_services(ctx: BuildContext) -> List[JoinedEntity]:
    plan_counts = count_by(ctx.rows(CONTROL_PLANE, "service_plans"), "service_guid")
    return [
        JoinedEntity(
            key=service["guid"],
            parts={
                "service": service,
                "service_broker": ctx.lookup(CONTROL_PLANE, "service_brokers", service.get("service_broker_guid")),
            },
            derived={"service_plans": plan_counts.get(service["guid"], 0)},
        )
        for service in ctx.rows(CONTROL_PLANE, "services")
    ]


def service_row(entity: JoinedEntity) -> List[Any]:
    service = entity.parts["service"]
    return [
        service["guid"],
        service.get("label"),
        service.get("provider"),
        name_of(entity.parts["service_broker"]),
        service.get("created_at"),
        service.get("updated_at"),
        service.get("active"),
        service.get("bindable"),
        entity.derived["service_plans"],
        service.get("description"),
    ]


def join_service_plans(ctx: BuildContext) -> List[JoinedEntity]:
    instance_counts = count_by(ctx.rows(CONTROL_PLANE, "service_instances"), "service_plan_guid")
    entities = []
    for plan in ctx.rows(CONTROL_PLANE, "service_plans"):
        service = ctx.lookup(CONTROL_PLANE, "services", plan.get("service_guid"))
        broker = ctx.lookup(CONTROL_PLANE, "service_brokers", service.get("service_broker_guid")) if service else None
        entities.append(JoinedEntity(
            key=plan["guid"],
            parts={"service_plan": plan, "service": service, "service_broker": broker},
            derived={"service_instances": instance_counts.get(plan["guid"], 0)},
        ))
    return entities


def service_plan_row(entity: JoinedEntity) -> List[Any]:
    plan = entity.parts["service_plan"]
    return [
        plan["guid"],
        plan.get("name"),
        name_of(entity.parts["service"], "label"),
        name_of(entity.parts["service_broker"]),
        plan.get("created_at"),
        plan.get("updated_at"),
        plan.get("active"),
        plan.get("public"),
        plan.get("free"),
        entity.derived["service_instances"],
    ]


def _instances_by_guid(ctx: BuildContext) -> Dict[str, Dict[str, Any]]:
    return {instance["guid"]: instance for instance in ctx.rows(CONTROL_PLANE, "service_instances")}


def join_service_instances(ctx: BuildContext) -> List[JoinedEntity]:
    binding_counts = count_by(ctx.rows(CONTROL_PLANE, "service_bindings"), "service_instance_guid")
    entities = []
    for record in ctx.tagged(CONTROL_PLANE, "service_instances"):
        instance = record.data
        plan = ctx.lookup(CONTROL_PLANE, "service_plans", instance.get("service_plan_guid"))
        service = ctx.lookup(CONTROL_PLANE, "services", plan.get("service_guid")) if plan else None
        space = ctx.lookup(CONTROL_PLANE, "spaces", instance.get("space_guid"))
        organization = ctx.lookup(CONTROL_PLANE, "organizations", space.get("organization_guid")) if space else None
        entities.append(JoinedEntity(
            key=record.key,
            parts={
                "service_instance": instance,
                "service_plan": plan,
                "service": service,
                "space": space,
                "organization": organization,
            },
            derived={"service_bindings": binding_counts.get(instance["guid"], 0)},
        ))
    return entities


def service_instance_row(entity: JoinedEntity) -> List[Any]:
    instance = entity.parts["service_instance"]
    return [
        instance["guid"],
        instance.get("name"),
        target_of(entity.parts["organization"], entity.parts["space"]),
        name_of(entity.parts["service_plan"]),
        name_of(entity.parts["service"], "label"),
        instance.get("created_at"),
        instance.get("updated_at"),
        instance.get("is_gateway_service"),
        entity.derived["service_bindings"],
    ]


def join_service_bindings(ctx: BuildContext) -> List[JoinedEntity]:
    instances = _instances_by_guid(ctx)
    entities = []
    for binding in ctx.rows(CONTROL_PLANE, "service_bindings"):
        app = ctx.lookup(CONTROL_PLANE, "apps", binding.get("app_guid"))
        space = ctx.lookup(CONTROL_PLANE, "spaces", app.get("space_guid")) if app else None
        organization = ctx.lookup(CONTROL_PLANE, "organizations", space.get("organization_guid")) if space else None
        entities.append(JoinedEntity(
            key=binding["guid"],
            parts={
                "service_binding": binding,
                "application": app,
                "service_instance": instances.get(binding.get("service_instance_guid")),
                "space": space,
                "organization": organization,
            },
        ))
    return entities


def service_binding_row(entity: JoinedEntity) -> List[Any]:
    binding = entity.parts["service_binding"]
    return [
        binding["guid"],
        name_of(entity.parts["application"]),
        name_of(entity.parts["service_instance"]),
        target_of(entity.parts["organization"], entity.parts["space"]),
        binding.get("created_at"),
        binding.get("updated_at"),
    ]


VIEWS = [
    ResourceView(
        name="service_brokers",
        sources=frozenset({CONTROL_PLANE}),
        join=join_service_brokers,
        row=service_broker_row,
    ),
    ResourceView(
        name="services",
        sources=frozenset({CONTROL_PLANE}),
        join=join_services,
        row=service_row,
    ),
    ResourceView(
        name="service_plans",
        sources=frozenset({CONTROL_PLANE}),
        join=join_service_plans,
        row=service_plan_row,
    ),
    ResourceView(
        name="service_instances",
        sources=frozenset({CONTROL_PLANE}),
        join=join_service_instances,
        row=service_instance_row,
    ),
    ResourceView(
        name="service_bindings",
        sources=frozenset({CONTROL_PLANE}),
        join=join_service_bindings,
        row=service_binding_row,
    ),
]
