"""
身份服务视图：users、groups、clients
"""

from typing import Any, Dict, List, Optional

from .base import (
    CONTROL_PLANE,
    IDENTITY,
    BuildContext,
    JoinedEntity,
    ResourceView,
    count_by,
    name_of,
)


def _first_email(user: Dict[str, Any]) -> Optional[str]:
    emails = user.get("emails") or []
    return emails[0].get("value") if emails else None


def join_users(ctx: BuildContext) -> List[JoinedEntity]:
    org_roles = count_by(ctx.rows(CONTROL_PLANE, "organization_roles"), "user_guid")
    space_roles = count_by(ctx.rows(CONTROL_PLANE, "space_roles"), "user_guid")
    entities = []
    for user in ctx.rows(IDENTITY, "users"):
        cc_user = ctx.lookup(CONTROL_PLANE, "users", user["id"])
        default_space = ctx.lookup(CONTROL_PLANE, "spaces", cc_user.get("default_space_guid")) if cc_user else None
        entities.append(JoinedEntity(
            key=user["id"],
            parts={"user": user, "cc_user": cc_user, "default_space": default_space},
            derived={
                "groups": len(user.get("groups") or []),
                "organization_roles": org_roles.get(user["id"], 0),
                "space_roles": space_roles.get(user["id"], 0),
            },
        ))
    return entities


def user_row(entity: JoinedEntity) -> List[Any]:
    user = entity.parts["user"]
    meta = user.get("meta") or {}
    name = user.get("name") or {}
    return [
        user["id"],
        user.get("userName"),
        meta.get("created"),
        meta.get("lastModified"),
        _first_email(user),
        name.get("familyName"),
        name.get("givenName"),
        user.get("active"),
        user.get("verified"),
        meta.get("version"),
        entity.derived["groups"],
        entity.derived["organization_roles"],
        entity.derived["space_roles"],
        name_of(entity.parts["default_space"]),
    ]


def join_groups(ctx: BuildContext) -> List[JoinedEntity]:
    return [
        JoinedEntity(key=group["id"], parts={"group": group},
                     derived={"members": len(group.get("members") or [])})
        for group in ctx.rows(IDENTITY, "groups")
    ]


def group_row(entity: JoinedEntity) -> List[Any]:
    group = entity.parts["group"]
    meta = group.get("meta") or {}
    return [
        group["id"],
        group.get("displayName"),
        meta.get("created"),
        meta.get("lastModified"),
        meta.get("version"),
        entity.derived["members"],
    ]


def join_clients(ctx: BuildContext) -> List[JoinedEntity]:
    return [
        JoinedEntity(key=record.key, parts={"client": record.data})
        for record in ctx.tagged(IDENTITY, "clients")
    ]


def client_row(entity: JoinedEntity) -> List[Any]:
    client = entity.parts["client"]
    return [
        client.get("client_id"),
        client.get("lastModified"),
        client.get("scope"),
        client.get("authorized_grant_types"),
        client.get("redirect_uri"),
        client.get("authorities"),
        client.get("autoapprove"),
        client.get("access_token_validity"),
    ]


VIEWS = [
    ResourceView(
        name="users",
        sources=frozenset({IDENTITY, CONTROL_PLANE}),
        join=join_users,
        row=user_row,
    ),
    ResourceView(
        name="groups",
        sources=frozenset({IDENTITY}),
        join=join_groups,
        row=group_row,
    ),
    ResourceView(
        name="clients",
        sources=frozenset({IDENTITY}),
        join=join_clients,
        row=client_row,
    ),
]
