"""
数据模型定义

包括：
- 源记录 / 源快照（内部不可变结构）
- 视图模型行 / 表
- 变更操作
- Pydantic 响应模型
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

from pydantic import BaseModel, Field


# =============================================================================
# 源记录与快照
# =============================================================================

class SourceType(str, Enum):
    """数据源类型"""
    CONTROL_PLANE = "control_plane"
    IDENTITY = "identity"
    TELEMETRY = "telemetry"
    FIREHOSE = "firehose"


@dataclass(frozen=True)
class SourceRecord:
    """
    单条源记录

    source 标记来源，kind 为记录种类（apps、components 等），
    key 为自然键（GUID、host、origin:index:ip 等）。data 发布后不再修改。
    """
    source: SourceType
    kind: str
    key: str
    data: Dict[str, Any]


@dataclass(frozen=True)
class SourceSnapshot:
    """一次轮询拉取到的某个数据源的全部记录"""
    source: SourceType
    records: Tuple[SourceRecord, ...] = ()
    fetched_at: Optional[float] = None
    connected: bool = True
    generation: int = 0
    error: Optional[str] = None
    # 最近一次拉取（成功或失败）的代数，本地失效不改变它
    fetch_generation: int = 0
    _by_kind: Dict[str, Tuple[SourceRecord, ...]] = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self):
        grouped: Dict[str, List[SourceRecord]] = {}
        for record in self.records:
            grouped.setdefault(record.kind, []).append(record)
        object.__setattr__(self, "_by_kind", {k: tuple(v) for k, v in grouped.items()})

    def of_kind(self, kind: str) -> Tuple[SourceRecord, ...]:
        """按种类取记录，保持拉取顺序"""
        return self._by_kind.get(kind, ())


# =============================================================================
# 视图模型
# =============================================================================

@dataclass(frozen=True)
class ViewModelRow:
    """视图模型中的一行：按列位置排列的显示值 + 自然键"""
    key: str
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class ViewModelTable:
    """某个资源类型的一张视图模型表"""
    resource: str
    rows: Tuple[ViewModelRow, ...]
    connected: bool
    generation: int
    built_at: float = field(default_factory=time.time)

    @property
    def records_total(self) -> int:
        return len(self.rows)

    def to_dict(self) -> Dict[str, Any]:
        """转换为对外 JSON 结构"""
        return {
            "recordsTotal": self.records_total,
            "recordsFiltered": self.records_total,
            "items": {
                "connected": self.connected,
                "items": [list(row.values) for row in self.rows],
            },
        }


# =============================================================================
# 变更操作
# =============================================================================

@dataclass(frozen=True)
class Operation:
    """来自 UI 的一次变更请求"""
    verb: str
    path: str
    query_string: str = ""
    body: bytes = b""
    actor: str = "admin"

    @property
    def query(self) -> List[Tuple[str, str]]:
        return parse_qsl(self.query_string, keep_blank_values=True)

    @property
    def normalized_path(self) -> str:
        """审计日志使用的路径（带原始查询串）"""
        if self.query_string:
            return f"{self.path}?{self.query_string}"
        return self.path


# =============================================================================
# Pydantic 响应模型
# =============================================================================

class ViewModelItems(BaseModel):
    """视图模型内层结构"""
    connected: bool
    items: List[List[Any]] = Field(default_factory=list)


class ViewModelResponse(BaseModel):
    """GET /{resource}_view_model 响应"""
    recordsTotal: int
    recordsFiltered: int
    items: ViewModelItems


class StatCounters(BaseModel):
    """当前统计（实时从视图模型计算）"""
    apps: int = 0
    cells: int = 0
    deas: int = 0
    organizations: int = 0
    running_instances: int = 0
    spaces: int = 0
    total_instances: int = 0
    users: int = 0
    timestamp: float = Field(default_factory=lambda: time.time() * 1000)


class StatsRowResponse(BaseModel):
    """stats 表中的一行"""
    apps: Optional[int] = None
    deas: Optional[int] = None
    organizations: Optional[int] = None
    running_instances: Optional[int] = None
    spaces: Optional[int] = None
    timestamp: Optional[float] = None
    total_instances: Optional[int] = None
    users: Optional[int] = None


class StatsHistoryResponse(BaseModel):
    """GET /statistics 响应"""
    total: int
    limit: int
    offset: int
    items: List[StatsRowResponse] = Field(default_factory=list)


class SourceStatus(BaseModel):
    """数据源客户端状态"""
    source: str
    configured: bool = True
    connected: bool
    last_success_at: Optional[float] = None
    last_error: Optional[str] = None


class HealthResponse(BaseModel):
    """GET /api/health 响应"""
    status: str
    sources: List[SourceStatus] = Field(default_factory=list)
