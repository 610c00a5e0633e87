"""
源记录缓存

每个数据源保存最近一次拉取的 SourceSnapshot：
- 拉取成功：整体替换快照
- 拉取失败：保留原有记录，仅标记 connected=False
- 代数（generation）单调递增，旧代数的结果不会覆盖新代数
"""

import itertools
import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional

from .models import SourceRecord, SourceSnapshot, SourceType

logger = logging.getLogger(__name__)


class SourceRecordCache:
    """
    源记录缓存管理器

    快照一旦发布就不再原地修改，所有变化都通过替换引用完成。
    """

    def __init__(self):
        self._snapshots: Dict[SourceType, SourceSnapshot] = {
            source: SourceSnapshot(source=source) for source in SourceType
        }
        self._generations = itertools.count(1)
        self._lock = threading.Lock()

    def next_generation(self) -> int:
        """在拉取开始时领取代数"""
        with self._lock:
            return next(self._generations)

    def get(self, source: SourceType) -> SourceSnapshot:
        """获取某数据源当前快照"""
        with self._lock:
            return self._snapshots[source]

    def get_all(self) -> Dict[SourceType, SourceSnapshot]:
        """一次性获取所有数据源快照（同一时刻的一致集合）"""
        with self._lock:
            return dict(self._snapshots)

    def replace(
        self,
        source: SourceType,
        records: Iterable[SourceRecord],
        generation: int,
        kinds: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        用拉取结果替换快照

        Args:
            source: 数据源
            records: 本次拉取到的记录
            generation: 拉取开始时领取的代数
            kinds: 仅替换这些种类的记录（定向刷新），None 表示整体替换

        Returns:
            是否生效（代数落后时丢弃）
        """
        records = tuple(records)
        with self._lock:
            current = self._snapshots[source]
            if generation < current.generation:
                logger.debug(
                    f"Discarding superseded {source.value} snapshot "
                    f"(generation {generation} < {current.generation})"
                )
                return False

            if kinds is not None:
                replaced = set(kinds)
                kept = tuple(r for r in current.records if r.kind not in replaced)
                records = kept + records

            self._snapshots[source] = SourceSnapshot(
                source=source,
                records=records,
                fetched_at=time.time(),
                connected=True,
                generation=generation,
                fetch_generation=generation,
            )
            return True

    def mark_disconnected(self, source: SourceType, error: str, generation: int) -> bool:
        """
        标记数据源断开

        保留上一份记录（宁可陈旧也不清空），只更新 connected 和错误信息。
        只和上一次拉取的代数比较：拉取期间发生的本地失效不影响断开标记。
        """
        with self._lock:
            current = self._snapshots[source]
            if generation < current.fetch_generation:
                return False
            self._snapshots[source] = SourceSnapshot(
                source=source,
                records=current.records,
                fetched_at=current.fetched_at,
                connected=False,
                generation=max(generation, current.generation),
                error=error,
                fetch_generation=generation,
            )
            return True

    def remove_records(self, source: SourceType, predicate: Callable[[SourceRecord], bool]) -> int:
        """
        从快照中移除满足条件的记录（本地失效）

        以新代数发布新快照，正在进行中的旧拉取不会把记录带回来。

        Returns:
            移除的记录数
        """
        with self._lock:
            current = self._snapshots[source]
            kept = tuple(r for r in current.records if not predicate(r))
            removed = len(current.records) - len(kept)
            if removed:
                self._snapshots[source] = SourceSnapshot(
                    source=source,
                    records=kept,
                    fetched_at=current.fetched_at,
                    connected=current.connected,
                    generation=next(self._generations),
                    error=current.error,
                    fetch_generation=current.fetch_generation,
                )
            return removed
