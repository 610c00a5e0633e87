"""
视图模型引擎

从源记录缓存捕获快照，执行 join，生成视图模型并写入存储。
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .cache import SourceRecordCache
from .errors import NotFound
from .models import SourceType, ViewModelRow, ViewModelTable
from .store import ViewModelEntry, ViewModelStore
from .view_models import BuildContext, ResourceView, default_views
from .view_models.statistics import compute_current_statistics

logger = logging.getLogger(__name__)


class ViewModelEngine:
    """
    视图模型构建器

    每次重建在同一把锁下领取代数并捕获所有源快照，
    所以代数更新的重建一定看到不旧于前者的输入。
    """

    def __init__(
        self,
        cache: SourceRecordCache,
        store: ViewModelStore,
        views: Optional[Mapping[str, ResourceView]] = None,
    ):
        self.cache = cache
        self.store = store
        self.views = dict(views) if views is not None else default_views()
        self._capture_lock = threading.Lock()

    def _view(self, resource: str) -> ResourceView:
        view = self.views.get(resource)
        if view is None:
            raise NotFound(f"Unknown resource type: {resource}")
        return view

    def views_for_source(self, source: SourceType) -> List[str]:
        """依赖某数据源的资源类型"""
        return [name for name, view in self.views.items() if source in view.sources]

    def rebuild(self, resource: str) -> ViewModelEntry:
        """
        重建一个资源类型的视图模型

        Returns:
            本次构建的条目（若已被更新的代数取代，存储中保留更新的那份）
        """
        view = self._view(resource)

        with self._capture_lock:
            generation = self.cache.next_generation()
            snapshots = self.cache.get_all()

        ctx = BuildContext(snapshots)
        entities = {}
        rows = []
        for entity in view.join(ctx):
            entities[entity.key] = entity
            rows.append(ViewModelRow(key=entity.key, values=tuple(view.row(entity))))

        table = ViewModelTable(
            resource=resource,
            rows=tuple(rows),
            connected=ctx.connected(view.sources),
            generation=generation,
        )
        entry = ViewModelEntry(table=table, entities=entities)
        if self.store.replace(resource, entry):
            logger.debug(f"Rebuilt {resource} view model: {len(rows)} rows (generation {generation})")
        return entry

    def rebuild_many(self, resources: Iterable[str]):
        for resource in resources:
            try:
                self.rebuild(resource)
            except Exception as e:
                # 单个视图的 join 失败不影响其他视图
                logger.error(f"Failed to rebuild {resource} view model: {e}", exc_info=True)

    def rebuild_for_source(self, source: SourceType):
        """重建依赖某数据源的所有视图"""
        self.rebuild_many(self.views_for_source(source))

    def _entry(self, resource: str) -> ViewModelEntry:
        self._view(resource)
        entry = self.store.get(resource)
        if entry is None:
            entry = self.rebuild(resource)
        return entry

    def get_table(self, resource: str) -> ViewModelTable:
        """
        列表视图

        Raises:
            NotFound: 未知资源类型
        """
        return self._entry(resource).table

    def find_table(self, resource: str) -> Optional[ViewModelTable]:
        """列表视图（未知资源返回 None）"""
        if resource not in self.views:
            return None
        return self.get_table(resource)

    def get_detail(self, resource: str, key: str) -> Dict[str, Any]:
        """
        详情视图

        Raises:
            NotFound: 未知资源类型或自然键
        """
        entity = self._entry(resource).entities.get(key)
        if entity is None:
            raise NotFound(f"No {resource} entry with key {key}")
        return entity.detail()

    def current_statistics(self):
        return compute_current_statistics(self.find_table)
