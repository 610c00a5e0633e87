"""
数据源轮询

每个数据源一个 asyncio 任务，按固定间隔拉取，互不阻塞：
- 成功：替换快照，标记 connected
- 失败：记录日志，保留原有记录，标记断开，下个间隔照常重试
无论成功与否，都重建依赖该数据源的视图模型。
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional

from .cache import SourceRecordCache
from .engine import ViewModelEngine
from .errors import SourceUnreachable
from .models import SourceType
from .sources import BaseSourceClient

logger = logging.getLogger(__name__)


class Poller:
    """轮询器"""

    def __init__(
        self,
        cache: SourceRecordCache,
        engine: ViewModelEngine,
        clients: Mapping[SourceType, BaseSourceClient],
    ):
        self.cache = cache
        self.engine = engine
        self.clients = dict(clients)
        self._tasks: Dict[SourceType, asyncio.Task] = {}
        self._stop_event: Optional[asyncio.Event] = None

    def configured_sources(self) -> List[SourceType]:
        return [source for source, client in self.clients.items() if client.configured]

    async def _fetch(self, source: SourceType, kinds: Optional[Iterable[str]] = None):
        """
        拉取一次并写入缓存

        Raises:
            SourceUnreachable: 拉取失败或超时（缓存已标记断开）
        """
        client = self.clients[source]
        generation = self.cache.next_generation()
        kind_set = set(kinds) if kinds is not None else None
        try:
            records = await asyncio.wait_for(client.collect(kind_set), timeout=client.config.poll_timeout)
        except asyncio.TimeoutError as e:
            message = f"poll timed out after {client.config.poll_timeout}s"
            client.record_failure(message)
            self.cache.mark_disconnected(source, message, generation)
            raise SourceUnreachable(source.value, message, cause=e) from e
        except SourceUnreachable as e:
            self.cache.mark_disconnected(source, str(e), generation)
            raise

        replaced = client.produced_kinds(kind_set) if kind_set is not None else None
        self.cache.replace(source, records, generation, kinds=replaced)
        logger.debug(f"Polled {source.value}: {len(records)} records")

    async def poll(self, source: SourceType) -> bool:
        """
        轮询一次（失败不抛出）

        Returns:
            是否成功
        """
        try:
            await self._fetch(source)
            ok = True
        except SourceUnreachable as e:
            logger.warning(f"Failed to poll {source.value}: {e}")
            ok = False
        self.engine.rebuild_for_source(source)
        return ok

    async def refresh(self, source: SourceType, kinds: Optional[Iterable[str]] = None):
        """
        定向刷新（变更操作后调用）

        只重新拉取受影响的种类，然后重建依赖视图。

        Raises:
            SourceUnreachable: 拉取失败
        """
        try:
            await self._fetch(source, kinds)
        finally:
            self.engine.rebuild_for_source(source)

    async def _run(self, source: SourceType):
        interval = self.clients[source].config.interval
        logger.info(f"Starting {source.value} poller (interval={interval}s)")
        while not self._stop_event.is_set():
            try:
                await self.poll(source)
            except asyncio.CancelledError:
                logger.info(f"{source.value} poller cancelled")
                raise
            except Exception as e:
                logger.error(f"{source.value} poller error: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"{source.value} poller stopped")

    def start(self):
        """为每个已配置的数据源启动轮询任务（立即执行第一次轮询）"""
        self._stop_event = asyncio.Event()
        for source in self.configured_sources():
            self._tasks[source] = asyncio.create_task(self._run(source))

        for source in SourceType:
            if source not in self._tasks:
                logger.info(f"{source.value} not configured, not polling")

    async def stop(self, timeout: float = 5.0):
        """
        停止轮询

        等待进行中的拉取最多 timeout 秒，之后取消剩余任务。
        """
        if self._stop_event is None:
            return
        self._stop_event.set()
        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.info(f"Cancelled {len(pending)} poller tasks still running at shutdown")
        self._tasks.clear()
