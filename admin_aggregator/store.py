"""
视图模型存储

每个资源类型持有一个可原子替换的条目（表 + 参与 join 的实体）。
读者拿到的永远是某一次完整重建的结果。
"""

import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from .models import ViewModelTable
from .view_models.base import JoinedEntity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewModelEntry:
    """一次重建的产物：列表表格和按自然键索引的 join 结果"""
    table: ViewModelTable
    entities: Mapping[str, JoinedEntity]

    @property
    def generation(self) -> int:
        return self.table.generation


class ViewModelStore:
    """视图模型存储（显式注入，不使用全局单例）"""

    def __init__(self):
        self._entries: Dict[str, ViewModelEntry] = {}
        self._lock = threading.Lock()

    def get(self, resource: str) -> Optional[ViewModelEntry]:
        """获取最新条目，不等待正在进行的重建"""
        with self._lock:
            return self._entries.get(resource)

    def replace(self, resource: str, entry: ViewModelEntry) -> bool:
        """
        替换条目

        同一代数重复替换是幂等的；代数更旧的结果被丢弃。

        Returns:
            是否生效
        """
        with self._lock:
            current = self._entries.get(resource)
            if current is not None and entry.generation < current.generation:
                logger.debug(
                    f"Discarding stale {resource} view model "
                    f"(generation {entry.generation} < {current.generation})"
                )
                return False
            self._entries[resource] = entry
            return True

    def resources(self) -> List[str]:
        with self._lock:
            return list(self._entries)
