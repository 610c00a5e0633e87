"""
组织相关视图

organizations、spaces、quotas、space_quotas、organization_roles、
space_roles、feature_flags、events
"""

from typing import Any, Dict, List

from .base import (
    CONTROL_PLANE,
    IDENTITY,
    BuildContext,
    JoinedEntity,
    ResourceView,
    count_by,
    name_of,
    target_of,
)

ORGANIZATION_ROLE_LABELS = {
    "auditors": "Auditor",
    "billing_managers": "Billing Manager",
    "managers": "Manager",
    "users": "User",
}

SPACE_ROLE_LABELS = {
    "auditors": "Auditor",
    "developers": "Developer",
    "managers": "Manager",
}


def _instance_totals(apps: List[Dict[str, Any]]) -> Dict[str, int]:
    """声明的实例数与已启动应用的实例数、内存分配"""
    total = started = memory = 0
    for app in apps:
        instances = app.get("instances") or 0
        total += instances
        if app.get("state") == "STARTED":
            started += instances
            memory += instances * (app.get("memory") or 0)
    return {"total_instances": total, "started_instances": started, "memory_allocated": memory}


def join_organizations(ctx: BuildContext) -> List[JoinedEntity]:
    spaces = ctx.rows(CONTROL_PLANE, "spaces")
    space_org = {space["guid"]: space.get("organization_guid") for space in spaces}
    space_counts = count_by(spaces, "organization_guid")
    role_counts = count_by(ctx.rows(CONTROL_PLANE, "organization_roles"), "organization_guid")

    apps_by_org: Dict[str, List[Dict[str, Any]]] = {}
    for app in ctx.rows(CONTROL_PLANE, "apps"):
        apps_by_org.setdefault(space_org.get(app.get("space_guid")), []).append(app)

    entities = []
    for org in ctx.rows(CONTROL_PLANE, "organizations"):
        apps = apps_by_org.get(org["guid"], [])
        derived = {
            "spaces": space_counts.get(org["guid"], 0),
            "roles": role_counts.get(org["guid"], 0),
            "apps": len(apps),
        }
        derived.update(_instance_totals(apps))
        entities.append(JoinedEntity(
            key=org["guid"],
            parts={
                "organization": org,
                "quota_definition": ctx.lookup(CONTROL_PLANE, "quota_definitions", org.get("quota_definition_guid")),
            },
            derived=derived,
        ))
    return entities


def organization_row(entity: JoinedEntity) -> List[Any]:
    org = entity.parts["organization"]
    derived = entity.derived
    return [
        org["guid"],
        org.get("name"),
        org.get("created_at"),
        org.get("status"),
        org.get("updated_at"),
        derived["spaces"],
        derived["roles"],
        derived["apps"],
        derived["total_instances"],
        derived["started_instances"],
        name_of(entity.parts["quota_definition"]),
        derived["memory_allocated"],
        org.get("billing_enabled"),
    ]


def join_spaces(ctx: BuildContext) -> List[JoinedEntity]:
    role_counts = count_by(ctx.rows(CONTROL_PLANE, "space_roles"), "space_guid")
    apps_by_space: Dict[str, List[Dict[str, Any]]] = {}
    for app in ctx.rows(CONTROL_PLANE, "apps"):
        apps_by_space.setdefault(app.get("space_guid"), []).append(app)

    entities = []
    for space in ctx.rows(CONTROL_PLANE, "spaces"):
        apps = apps_by_space.get(space["guid"], [])
        derived = {"roles": role_counts.get(space["guid"], 0), "apps": len(apps)}
        derived.update(_instance_totals(apps))
        entities.append(JoinedEntity(
            key=space["guid"],
            parts={
                "space": space,
                "organization": ctx.lookup(CONTROL_PLANE, "organizations", space.get("organization_guid")),
                "space_quota_definition": ctx.lookup(
                    CONTROL_PLANE, "space_quota_definitions", space.get("space_quota_definition_guid")
                ),
            },
            derived=derived,
        ))
    return entities


def space_row(entity: JoinedEntity) -> List[Any]:
    space = entity.parts["space"]
    derived = entity.derived
    return [
        space["guid"],
        space.get("name"),
        name_of(entity.parts["organization"]),
        space.get("created_at"),
        space.get("updated_at"),
        derived["roles"],
        derived["apps"],
        derived["total_instances"],
        derived["started_instances"],
        name_of(entity.parts["space_quota_definition"]),
        space.get("allow_ssh"),
    ]


def join_quotas(ctx: BuildContext) -> List[JoinedEntity]:
    usage = count_by(ctx.rows(CONTROL_PLANE, "organizations"), "quota_definition_guid")
    return [
        JoinedEntity(key=quota["guid"], parts={"quota_definition": quota},
                     derived={"organizations": usage.get(quota["guid"], 0)})
        for quota in ctx.rows(CONTROL_PLANE, "quota_definitions")
    ]


def _quota_limits(quota: Dict[str, Any]) -> List[Any]:
    return [
        quota.get("total_services"),
        quota.get("total_routes"),
        quota.get("memory_limit"),
        quota.get("instance_memory_limit"),
        quota.get("non_basic_services_allowed"),
    ]


def quota_row(entity: JoinedEntity) -> List[Any]:
    quota = entity.parts["quota_definition"]
    return [
        quota["guid"],
        quota.get("name"),
        quota.get("created_at"),
        quota.get("updated_at"),
        *_quota_limits(quota),
        entity.derived["organizations"],
    ]


def join_space_quotas(ctx: BuildContext) -> List[JoinedEntity]:
    usage = count_by(ctx.rows(CONTROL_PLANE, "spaces"), "space_quota_definition_guid")
    return [
        JoinedEntity(
            key=quota["guid"],
            parts={
                "space_quota_definition": quota,
                "organization": ctx.lookup(CONTROL_PLANE, "organizations", quota.get("organization_guid")),
            },
            derived={"spaces": usage.get(quota["guid"], 0)},
        )
        for quota in ctx.rows(CONTROL_PLANE, "space_quota_definitions")
    ]


def space_quota_row(entity: JoinedEntity) -> List[Any]:
    quota = entity.parts["space_quota_definition"]
    return [
        quota["guid"],
        quota.get("name"),
        name_of(entity.parts["organization"]),
        quota.get("created_at"),
        quota.get("updated_at"),
        *_quota_limits(quota),
        entity.derived["spaces"],
    ]


def _role_user(ctx: BuildContext, user_guid: str) -> Dict[str, Any]:
    """角色成员：控制面用户 + 身份服务中的同一用户"""
    return {
        "user": ctx.lookup(CONTROL_PLANE, "users", user_guid),
        "identity_user": ctx.lookup(IDENTITY, "users", user_guid),
    }


def join_organization_roles(ctx: BuildContext) -> List[JoinedEntity]:
    entities = []
    for record in ctx.tagged(CONTROL_PLANE, "organization_roles"):
        role = record.data
        parts = {
            "role": role,
            "organization": ctx.lookup(CONTROL_PLANE, "organizations", role.get("organization_guid")),
        }
        parts.update(_role_user(ctx, role.get("user_guid")))
        entities.append(JoinedEntity(
            key=record.key,
            parts=parts,
            derived={"role_label": ORGANIZATION_ROLE_LABELS.get(role.get("role"), role.get("role"))},
        ))
    return entities


def organization_role_row(entity: JoinedEntity) -> List[Any]:
    role = entity.parts["role"]
    return [
        name_of(entity.parts["organization"]),
        name_of(entity.parts["identity_user"], "userName"),
        entity.derived["role_label"],
        role.get("organization_guid"),
        role.get("user_guid"),
    ]


def join_space_roles(ctx: BuildContext) -> List[JoinedEntity]:
    entities = []
    for record in ctx.tagged(CONTROL_PLANE, "space_roles"):
        role = record.data
        space = ctx.lookup(CONTROL_PLANE, "spaces", role.get("space_guid"))
        parts = {
            "role": role,
            "space": space,
            "organization": ctx.lookup(CONTROL_PLANE, "organizations", space.get("organization_guid")) if space else None,
        }
        parts.update(_role_user(ctx, role.get("user_guid")))
        entities.append(JoinedEntity(
            key=record.key,
            parts=parts,
            derived={"role_label": SPACE_ROLE_LABELS.get(role.get("role"), role.get("role"))},
        ))
    return entities


def space_role_row(entity: JoinedEntity) -> List[Any]:
    role = entity.parts["role"]
    return [
        name_of(entity.parts["space"]),
        target_of(entity.parts["organization"], entity.parts["space"]),
        name_of(entity.parts["identity_user"], "userName"),
        entity.derived["role_label"],
        role.get("space_guid"),
        role.get("user_guid"),
    ]


def join_feature_flags(ctx: BuildContext) -> List[JoinedEntity]:
    return [
        JoinedEntity(key=record.key, parts={"feature_flag": record.data})
        for record in ctx.tagged(CONTROL_PLANE, "feature_flags")
    ]


def feature_flag_row(entity: JoinedEntity) -> List[Any]:
    flag = entity.parts["feature_flag"]
    return [
        flag.get("name"),
        flag.get("enabled"),
        flag.get("error_message"),
        flag.get("url"),
    ]


def join_events(ctx: BuildContext) -> List[JoinedEntity]:
    entities = []
    for event in ctx.rows(CONTROL_PLANE, "events"):
        space = ctx.lookup(CONTROL_PLANE, "spaces", event.get("space_guid"))
        organization = ctx.lookup(
            CONTROL_PLANE, "organizations",
            event.get("organization_guid") or (space.get("organization_guid") if space else None),
        )
        entities.append(JoinedEntity(
            key=event["guid"],
            parts={"event": event, "space": space, "organization": organization},
        ))
    return entities


def event_row(entity: JoinedEntity) -> List[Any]:
    event = entity.parts["event"]
    return [
        event["guid"],
        event.get("timestamp"),
        event.get("type"),
        event.get("actor_type"),
        event.get("actor_name"),
        event.get("actee_type"),
        event.get("actee_name"),
        target_of(entity.parts["organization"], entity.parts["space"]),
    ]


VIEWS = [
    ResourceView(
        name="organizations",
        sources=frozenset({CONTROL_PLANE}),
        join=join_organizations,
        row=organization_row,
    ),
    ResourceView(
        name="spaces",
        sources=frozenset({CONTROL_PLANE}),
        join=join_spaces,
        row=space_row,
    ),
    ResourceView(
        name="quotas",
        sources=frozenset({CONTROL_PLANE}),
        join=join_quotas,
        row=quota_row,
    ),
    ResourceView(
        name="space_quotas",
        sources=frozenset({CONTROL_PLANE}),
        join=join_space_quotas,
        row=space_quota_row,
    ),
    ResourceView(
        name="organization_roles",
        sources=frozenset({CONTROL_PLANE, IDENTITY}),
        join=join_organization_roles,
        row=organization_role_row,
    ),
    ResourceView(
        name="space_roles",
        sources=frozenset({CONTROL_PLANE, IDENTITY}),
        join=join_space_roles,
        row=space_role_row,
    ),
    ResourceView(
        name="feature_flags",
        sources=frozenset({CONTROL_PLANE}),
        join=join_feature_flags,
        row=feature_flag_row,
    ),
    ResourceView(
        name="events",
        sources=frozenset({CONTROL_PLANE}),
        join=join_events,
        row=event_row,
    ),
]
