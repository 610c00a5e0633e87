"""
视图模型构建基础设施

- BuildContext: 一次重建所用的一组源快照（同一时刻捕获，构建期间不变）
- JoinedEntity: 一个实体 join 后的结果，列表行和详情都从它投影
- ResourceView: 资源类型定义（依赖的数据源、join 函数、行投影）
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence

from ..models import SourceRecord, SourceSnapshot, SourceType

# 未解析的交叉引用（例如组织已被删除）统一显示为 null
PLACEHOLDER = None

CONTROL_PLANE = SourceType.CONTROL_PLANE
IDENTITY = SourceType.IDENTITY
TELEMETRY = SourceType.TELEMETRY
FIREHOSE = SourceType.FIREHOSE


class BuildContext:
    """一次重建的输入，按需建立索引"""

    def __init__(self, snapshots: Mapping[SourceType, SourceSnapshot]):
        self.snapshots = snapshots
        self._indexes: Dict[Any, Dict[str, Dict[str, Any]]] = {}

    def tagged(self, source: SourceType, kind: str) -> Sequence[SourceRecord]:
        """带来源标记的记录"""
        snapshot = self.snapshots.get(source)
        return snapshot.of_kind(kind) if snapshot else ()

    def rows(self, source: SourceType, kind: str) -> List[Dict[str, Any]]:
        """记录数据（保持拉取顺序）"""
        return [record.data for record in self.tagged(source, kind)]

    def index(self, source: SourceType, kind: str) -> Dict[str, Dict[str, Any]]:
        """自然键 -> 记录数据"""
        cache_key = (source, kind)
        if cache_key not in self._indexes:
            self._indexes[cache_key] = {r.key: r.data for r in self.tagged(source, kind)}
        return self._indexes[cache_key]

    def lookup(self, source: SourceType, kind: str, key: Optional[str]) -> Optional[Dict[str, Any]]:
        if key is None:
            return None
        return self.index(source, kind).get(key)

    def connected(self, sources: Iterable[SourceType]) -> bool:
        """所有依赖数据源最近一次轮询都成功时为 True"""
        for source in sources:
            snapshot = self.snapshots.get(source)
            if snapshot is not None and not snapshot.connected:
                return False
        return True


@dataclass(frozen=True)
class JoinedEntity:
    """
    join 结果

    parts: 参与 join 的源记录（按角色命名，缺失为 None）
    derived: 由多条记录计算出的值（实例数、内存占用等）
    """
    key: str
    parts: Dict[str, Any]
    derived: Dict[str, Any] = field(default_factory=dict)

    def detail(self) -> Dict[str, Any]:
        """详情视图：完整的 join 结果"""
        result = {name: value for name, value in self.parts.items() if value is not None}
        result.update(self.derived)
        return result


@dataclass(frozen=True)
class ResourceView:
    """资源类型定义"""
    name: str
    sources: FrozenSet[SourceType]
    join: Callable[[BuildContext], Iterable[JoinedEntity]]
    row: Callable[[JoinedEntity], List[Any]]


def name_of(record: Optional[Dict[str, Any]], field_name: str = "name") -> Any:
    """取被引用记录的显示名，引用未解析时返回占位值"""
    if not record:
        return PLACEHOLDER
    return record.get(field_name, PLACEHOLDER)


def target_of(organization: Optional[Dict[str, Any]], space: Optional[Dict[str, Any]]) -> Any:
    """组织/空间 目标显示名"""
    if not organization or not space:
        return PLACEHOLDER
    return f"{organization.get('name')}/{space.get('name')}"


def count_by(rows: Iterable[Dict[str, Any]], field_name: str) -> Dict[Any, int]:
    """按字段计数（如每个组织的空间数）"""
    counts: Dict[Any, int] = {}
    for row in rows:
        value = row.get(field_name)
        counts[value] = counts.get(value, 0) + 1
    return counts
