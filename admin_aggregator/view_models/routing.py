"""
路由相关视图：routes、domains、security_groups
"""

from collections import defaultdict
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


def _route_uri(route: Dict[str, Any], domain: Dict[str, Any]) -> Any:
    if not domain:
        return None
    host = route.get("host")
    uri = f"{host}.{domain.get('name')}" if host else domain.get("name")
    return uri + (route.get("path") or "")


def join_routes(ctx: BuildContext) -> List[JoinedEntity]:
    apps = ctx.index(CONTROL_PLANE, "apps")
    app_names = defaultdict(list)
    for mapping in ctx.rows(CONTROL_PLANE, "route_mappings"):
        app = apps.get(mapping.get("app_guid"))
        if app is not None:
            app_names[mapping.get("route_guid")].append(app.get("name"))

    entities = []
    for route in ctx.rows(CONTROL_PLANE, "routes"):
        domain = ctx.lookup(CONTROL_PLANE, "domains", route.get("domain_guid"))
        space = ctx.lookup(CONTROL_PLANE, "spaces", route.get("space_guid"))
        organization = ctx.lookup(CONTROL_PLANE, "organizations", space.get("organization_guid")) if space else None
        entities.append(JoinedEntity(
            key=route["guid"],
            parts={"route": route, "domain": domain, "space": space, "organization": organization},
            derived={
                "uri": _route_uri(route, domain),
                "apps": sorted(app_names.get(route["guid"], [])),
            },
        ))
    return entities


def route_row(entity: JoinedEntity) -> List[Any]:
    route = entity.parts["route"]
    return [
        route["guid"],
        route.get("host"),
        name_of(entity.parts["domain"]),
        route.get("path"),
        entity.derived["uri"],
        target_of(entity.parts["organization"], entity.parts["space"]),
        route.get("created_at"),
        route.get("updated_at"),
        entity.derived["apps"],
    ]


def join_domains(ctx: BuildContext) -> List[JoinedEntity]:
    route_counts = count_by(ctx.rows(CONTROL_PLANE, "routes"), "domain_guid")
    entities = []
    for domain in ctx.rows(CONTROL_PLANE, "domains"):
        owner = ctx.lookup(CONTROL_PLANE, "organizations", domain.get("owning_organization_guid"))
        entities.append(JoinedEntity(
            key=domain["guid"],
            parts={"domain": domain, "owning_organization": owner},
            derived={"routes": route_counts.get(domain["guid"], 0)},
        ))
    return entities


def domain_row(entity: JoinedEntity) -> List[Any]:
    domain = entity.parts["domain"]
    return [
        domain["guid"],
        domain.get("name"),
        domain.get("created_at"),
        domain.get("updated_at"),
        name_of(entity.parts["owning_organization"]),
        domain.get("shared", False),
        entity.derived["routes"],
    ]


def join_security_groups(ctx: BuildContext) -> List[JoinedEntity]:
    entities = []
    for group in ctx.rows(CONTROL_PLANE, "security_groups"):
        space_guids = group.get("space_guids") or []
        entities.append(JoinedEntity(
            key=group["guid"],
            parts={"security_group": group},
            derived={"spaces": len(space_guids)},
        ))
    return entities


def security_group_row(entity: JoinedEntity) -> List[Any]:
    group = entity.parts["security_group"]
    return [
        group["guid"],
        group.get("name"),
        group.get("created_at"),
        group.get("updated_at"),
        group.get("staging_default"),
        group.get("running_default"),
        entity.derived["spaces"],
    ]


VIEWS = [
    ResourceView(
        name="routes",
        sources=frozenset({CONTROL_PLANE}),
        join=join_routes,
        row=route_row,
    ),
    ResourceView(
        name="domains",
        sources=frozenset({CONTROL_PLANE}),
        join=join_domains,
        row=domain_row,
    ),
    ResourceView(
        name="security_groups",
        sources=frozenset({CONTROL_PLANE}),
        join=join_security_groups,
        row=security_group_row,
    ),
]
