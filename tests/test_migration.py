"""
测试旧版统计文件迁移
"""

import json
import os

import pytest

from admin_aggregator.database import StatsDatabase
from admin_aggregator.migration import MigrationStatus, StatsMigration

LEGACY_RECORDS = [
    {"apps": 1, "deas": 1, "organizations": 1, "running_instances": 1, "spaces": 1,
     "timestamp": 1700000000000, "total_instances": 1, "users": 1},
    {"apps": 3, "deas": 2, "organizations": 1, "running_instances": 4, "spaces": 2,
     "timestamp": 1700003600000, "total_instances": 5, "users": 7},
]


@pytest.fixture
def db(tmp_path):
    return StatsDatabase(str(tmp_path / "data" / "stats.db"))


@pytest.fixture
def legacy_file(tmp_path):
    path = tmp_path / "stats.json"
    path.write_text(json.dumps(LEGACY_RECORDS), encoding="utf-8")
    return path


def test_migrates_and_renames_legacy_file(db, legacy_file):
    status = StatsMigration(db).migrate(str(legacy_file))

    assert status == MigrationStatus.MIGRATED
    assert not legacy_file.exists()
    assert legacy_file.with_name("stats.json.bak").exists()

    rows, total = db.get_stats()
    assert total == 2
    assert rows[1]["users"] == 7
    assert rows[1]["timestamp"] == 1700003600000


def test_runs_only_once(db, legacy_file):
    """测试：stats 表已存在时不再导入"""
    migration = StatsMigration(db)
    migration.migrate(str(legacy_file))

    legacy_file.write_text(json.dumps(LEGACY_RECORDS[:1]), encoding="utf-8")
    status = migration.migrate(str(legacy_file))

    assert status == MigrationStatus.SKIPPED_CONFLICT
    # 冲突时文件保留，表内容不变
    assert legacy_file.exists()
    assert db.get_stats()[1] == 2


def test_no_legacy_file(db, tmp_path):
    migration = StatsMigration(db)
    assert migration.migrate(None) == MigrationStatus.NOT_NEEDED
    assert migration.migrate(str(tmp_path / "missing.json")) == MigrationStatus.NOT_NEEDED
    assert db.table_exists()


def test_backup_failure_keeps_imported_rows(db, legacy_file, monkeypatch, caplog):
    """测试：重命名失败只记录错误，已导入的数据保留"""
    def fail_replace(src, dst):
        raise PermissionError("read-only directory")

    monkeypatch.setattr(os, "replace", fail_replace)

    status = StatsMigration(db).migrate(str(legacy_file))

    assert status == MigrationStatus.MIGRATED_BACKUP_FAILED
    assert legacy_file.exists()
    assert db.get_stats()[1] == 2
    assert "failed to rename" in caplog.text


def test_bad_record_rolls_back_whole_import(db, legacy_file):
    db.ensure_schema()
    migration = StatsMigration(db)
    migration.store_legacy_records(LEGACY_RECORDS[:1])

    with pytest.raises(AttributeError):
        migration.store_legacy_records([LEGACY_RECORDS[1], "not a record"])

    rows, total = db.get_stats()
    assert total == 1
    assert rows[0]["timestamp"] == 1700000000000


def test_legacy_file_must_be_array(db, tmp_path):
    path = tmp_path / "stats.json"
    path.write_text('{"apps": 1}', encoding="utf-8")

    with pytest.raises(ValueError):
        StatsMigration(db).migrate(str(path))
    assert path.exists()
