"""
视图模型 API

- GET /{resource}_view_model          列表视图
- GET /{resource}_view_model/{key}    详情视图（键可以包含 /）
- GET /current_statistics             当前统计
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from ...context import AdminContext
from ...models import StatCounters, ViewModelResponse
from ..dependencies import get_actor, get_context

router = APIRouter(tags=["view_models"])


def request_path(request: Request) -> str:
    """审计日志使用的路径（带原始查询串）"""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


@router.get("/current_statistics", response_model=StatCounters)
async def get_current_statistics(
    request: Request,
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
):
    """从当前视图模型计算的统计"""
    context.audit.log_get(actor, request_path(request))
    return context.engine.current_statistics()


@router.get("/{resource}_view_model", response_model=ViewModelResponse)
async def get_view_model(
    resource: str,
    request: Request,
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
):
    """
    获取资源类型的列表视图

    不等待正在进行的重建，直接返回最新完成的那一份。
    """
    context.audit.log_get(actor, request_path(request))
    return context.engine.get_table(resource).to_dict()


@router.get("/{resource}_view_model/{key:path}")
async def get_view_model_detail(
    resource: str,
    key: str,
    request: Request,
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    """获取单个实体的详情（与列表行来自同一次 join）"""
    # 查不到的资源同样记录审计
    context.audit.log_get(actor, request_path(request))
    return context.engine.get_detail(resource, key)
