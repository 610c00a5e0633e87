"""
视图模型注册表
"""

from typing import Dict

from . import applications, components, identity, organizations, routing, services
from .base import BuildContext, JoinedEntity, ResourceView, PLACEHOLDER

ALL_VIEWS = (
    applications.VIEWS
    + routing.VIEWS
    + organizations.VIEWS
    + services.VIEWS
    + identity.VIEWS
    + components.VIEWS
)


def default_views() -> Dict[str, ResourceView]:
    """资源名 -> 视图定义"""
    return {view.name: view for view in ALL_VIEWS}


__all__ = [
    "ALL_VIEWS",
    "BuildContext",
    "JoinedEntity",
    "PLACEHOLDER",
    "ResourceView",
    "default_views",
]
