"""
旧版统计文件迁移

stats 表首次创建时，如果配置了旧版 JSON 统计文件，把其中的记录导入数据库：
1. 单个事务内清空 stats 表并插入全部旧记录
2. 事务提交后把文件重命名为 <path>.bak

第 2 步失败只记录错误，文件保留原处；已导入的数据不回滚。
"""

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .database import STATS_COLUMNS, StatsDatabase
from .errors import MigrationConflict

logger = logging.getLogger(__name__)


class MigrationStatus(str, Enum):
    """迁移结果"""
    NOT_NEEDED = "not_needed"
    MIGRATED = "migrated"
    MIGRATED_BACKUP_FAILED = "migrated_backup_failed"
    SKIPPED_CONFLICT = "skipped_conflict"


class StatsMigration:
    """统计数据迁移"""

    def __init__(self, db: StatsDatabase):
        self.db = db

    def _load_legacy_records(self, path: Path) -> List[Dict[str, Any]]:
        with open(path, "r", encoding="utf-8") as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"legacy stats file {path} does not contain a JSON array")
        return records

    def store_legacy_records(self, records: List[Dict[str, Any]]):
        """第 1 步：单事务替换 stats 表内容"""
        with self.db.get_conn() as conn:
            conn.execute("DELETE FROM stats")
            conn.executemany(
                f"INSERT INTO stats ({', '.join(STATS_COLUMNS)}) VALUES ({', '.join('?' * len(STATS_COLUMNS))})",
                [tuple(record.get(column) for column in STATS_COLUMNS) for record in records],
            )
        logger.debug(f"Stored {len(records)} legacy stats records")

    def backup_legacy_file(self, path: Path) -> Optional[Path]:
        """
        第 2 步：重命名旧文件

        Returns:
            备份文件路径，失败时为 None
        """
        backup_path = Path(f"{path}.bak")
        try:
            os.replace(path, backup_path)
        except OSError as e:
            logger.error(f"Migrated legacy stats but failed to rename {path} to {backup_path}: {e}")
            return None
        return backup_path

    def migrate(self, stats_file: Optional[str]) -> MigrationStatus:
        """
        执行迁移（幂等：stats 表已存在时不会再次导入）

        Args:
            stats_file: 旧版统计文件路径，None 表示未配置
        """
        existed = self.db.ensure_schema()
        if not stats_file:
            return MigrationStatus.NOT_NEEDED

        path = Path(stats_file)
        if not path.exists():
            return MigrationStatus.NOT_NEEDED

        if existed:
            conflict = MigrationConflict(str(path))
            logger.warning(f"Skipping legacy stats migration: {conflict}")
            return MigrationStatus.SKIPPED_CONFLICT

        logger.info(f"Migrating legacy stats file {path} to database")
        records = self._load_legacy_records(path)
        self.store_legacy_records(records)

        backup_path = self.backup_legacy_file(path)
        if backup_path is None:
            return MigrationStatus.MIGRATED_BACKUP_FAILED

        logger.info(f"Migrated {len(records)} stats records; legacy file renamed to {backup_path}")
        return MigrationStatus.MIGRATED
