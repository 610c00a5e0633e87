"""
统计与状态 API

- GET /statistics         stats 表历史
- GET /stats_view_model   stats 表的视图模型形式
- GET /settings           当前会话信息
- GET /api/health         数据源客户端状态
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from ... import __version__
from ...context import AdminContext
from ...models import HealthResponse, StatsHistoryResponse, StatsRowResponse, ViewModelResponse
from ..dependencies import get_actor, get_context
from .view_models import request_path

router = APIRouter(tags=["statistics"])

# stats_view_model 的列顺序
STATS_VIEW_COLUMNS = (
    "timestamp",
    "organizations",
    "spaces",
    "users",
    "apps",
    "total_instances",
    "running_instances",
    "deas",
)


@router.get("/statistics", response_model=StatsHistoryResponse)
async def get_statistics(
    request: Request,
    from_ts: Optional[float] = Query(None, alias="from", description="开始时间（毫秒时间戳）"),
    to_ts: Optional[float] = Query(None, alias="to", description="结束时间（毫秒时间戳）"),
    limit: int = Query(1000, ge=1, le=10000, description="每页条数"),
    offset: int = Query(0, ge=0, description="偏移量"),
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
):
    """查询统计历史（按时间升序）"""
    context.audit.log_get(actor, request_path(request))
    rows, total = context.db.get_stats(from_ts=from_ts, to_ts=to_ts, limit=limit, offset=offset)
    return StatsHistoryResponse(
        total=total,
        limit=limit,
        offset=offset,
        items=[StatsRowResponse(**row) for row in rows],
    )


@router.get("/stats_view_model", response_model=ViewModelResponse)
async def get_stats_view_model(
    request: Request,
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
):
    """stats 表全部行，按视图模型格式返回"""
    context.audit.log_get(actor, request_path(request))
    rows, total = context.db.get_stats(limit=-1)
    return {
        "recordsTotal": total,
        "recordsFiltered": total,
        "items": {
            "connected": True,
            "items": [[row.get(column) for column in STATS_VIEW_COLUMNS] for row in rows],
        },
    }


@router.get("/settings")
async def get_settings(
    request: Request,
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
) -> Dict[str, Any]:
    """当前操作者与后端地址"""
    context.audit.log_get(actor, request_path(request))
    sources = context.config.sources
    return {
        "admin": True,
        "user": actor,
        "build": __version__,
        "cloud_controller_uri": sources.control_plane.url,
        "uaa_uri": sources.identity.url,
    }


@router.get("/api/health", response_model=HealthResponse)
async def get_health(
    request: Request,
    context: AdminContext = Depends(get_context),
    actor: str = Depends(get_actor),
):
    """各数据源最近一次拉取的状态"""
    context.audit.log_get(actor, request_path(request))
    statuses = [client.get_status() for client in context.clients.values()]
    degraded = any(s.configured and not s.connected for s in statuses)
    return HealthResponse(status="degraded" if degraded else "ok", sources=statuses)
