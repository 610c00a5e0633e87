"""
统计历史任务

按固定间隔把当前统计追加到 stats 表，并清理过期行。
"""

import asyncio
import logging

from .database import StatsDatabase
from .engine import ViewModelEngine
from .models import StatCounters

logger = logging.getLogger(__name__)


def record_current_statistics(engine: ViewModelEngine, db: StatsDatabase) -> StatCounters:
    """计算当前统计并写入数据库"""
    counters = engine.current_statistics()
    db.append_stats(counters)
    logger.debug(f"Recorded statistics: {counters.model_dump()}")
    return counters


async def run_historian(engine: ViewModelEngine, db: StatsDatabase, interval_minutes: int, retention_days: int):
    """
    运行统计历史任务

    先等一个间隔再写第一行，让轮询有时间填充视图。
    """
    interval = interval_minutes * 60
    logger.info(f"Starting historian task (interval={interval_minutes}min, retention={retention_days}d)")

    while True:
        try:
            await asyncio.sleep(interval)
            record_current_statistics(engine, db)
            removed = db.cleanup_old_stats(retention_days)
            if removed:
                logger.info(f"Removed {removed} stats rows older than {retention_days} days")

        except asyncio.CancelledError:
            logger.info("Historian task cancelled")
            raise
        except Exception as e:
            logger.error(f"Historian error: {e}", exc_info=True)
