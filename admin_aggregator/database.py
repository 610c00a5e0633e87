"""
数据库操作抽象层

封装 stats 表的 SQLite 操作。
"""

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .models import StatCounters

STATS_COLUMNS = (
    "apps",
    "deas",
    "organizations",
    "running_instances",
    "spaces",
    "timestamp",
    "total_instances",
    "users",
)

STATS_SCHEMA = """
    CREATE TABLE IF NOT EXISTS stats (
        apps INTEGER,
        deas INTEGER,
        organizations INTEGER,
        running_instances INTEGER,
        spaces INTEGER,
        timestamp REAL,
        total_instances INTEGER,
        users INTEGER
    )
"""


class StatsDatabase:
    """统计数据库操作类"""

    def __init__(self, db_path: str, timeout: int = 30):
        """
        初始化数据库

        Args:
            db_path: 数据库文件路径
            timeout: SQLite 锁等待超时（秒）
        """
        self.db_path = Path(db_path)
        self.timeout = timeout

        # 确保目录存在
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def get_conn(self):
        """
        获取数据库连接（上下文管理器）

        正常退出时提交，异常时回滚。
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def table_exists(self) -> bool:
        with self.get_conn() as conn:
            cursor = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'stats'"
            )
            return cursor.fetchone() is not None

    def ensure_schema(self) -> bool:
        """
        创建 stats 表

        Returns:
            表是否在调用前就已存在
        """
        existed = self.table_exists()
        if not existed:
            with self.get_conn() as conn:
                conn.execute(STATS_SCHEMA)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_stats_timestamp ON stats (timestamp)")
        return existed

    def append_stats(self, counters: StatCounters):
        """追加一行统计"""
        values = counters.model_dump()
        with self.get_conn() as conn:
            conn.execute(
                f"INSERT INTO stats ({', '.join(STATS_COLUMNS)}) VALUES ({', '.join('?' * len(STATS_COLUMNS))})",
                tuple(values.get(column) for column in STATS_COLUMNS),
            )

    def get_stats(
        self,
        from_ts: Optional[float] = None,
        to_ts: Optional[float] = None,
        limit: int = 1000,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        查询统计历史

        Args:
            from_ts: 开始时间（毫秒，含）
            to_ts: 结束时间（毫秒，含）
            limit: 返回行数上限
            offset: 偏移

        Returns:
            (按时间升序的行, 满足条件的总行数)
        """
        conditions = []
        params: List[Any] = []
        if from_ts is not None:
            conditions.append("timestamp >= ?")
            params.append(from_ts)
        if to_ts is not None:
            conditions.append("timestamp <= ?")
            params.append(to_ts)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self.get_conn() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM stats {where}", params).fetchone()[0]
            cursor = conn.execute(f"""
                SELECT {', '.join(STATS_COLUMNS)}
                FROM stats
                {where}
                ORDER BY timestamp ASC
                LIMIT ? OFFSET ?
            """, params + [limit, offset])
            return [dict(row) for row in cursor.fetchall()], total

    def cleanup_old_stats(self, retention_days: int) -> int:
        """
        清理过期统计

        Returns:
            删除的行数
        """
        cutoff = (time.time() - retention_days * 86400) * 1000
        with self.get_conn() as conn:
            cursor = conn.execute("DELETE FROM stats WHERE timestamp < ?", (cutoff,))
            return cursor.rowcount
