"""
当前统计

从已构建的视图模型计算，与各列表视图保持一致。
"""

from typing import Callable, Optional

from ..models import StatCounters, ViewModelTable

# applications 视图中的列位置
APP_RUNNING_INSTANCES_COLUMN = 8
APP_TOTAL_INSTANCES_COLUMN = 9


def _sum_column(table: Optional[ViewModelTable], column: int) -> int:
    if table is None:
        return 0
    return sum(row.values[column] or 0 for row in table.rows)


def _count(table: Optional[ViewModelTable]) -> int:
    return table.records_total if table is not None else 0


def compute_current_statistics(get_table: Callable[[str], Optional[ViewModelTable]]) -> StatCounters:
    """
    计算当前统计

    Args:
        get_table: 资源名 -> 视图模型表
    """
    applications = get_table("applications")
    return StatCounters(
        apps=_count(applications),
        cells=_count(get_table("cells")),
        deas=_count(get_table("deas")),
        organizations=_count(get_table("organizations")),
        running_instances=_sum_column(applications, APP_RUNNING_INSTANCES_COLUMN),
        spaces=_count(get_table("spaces")),
        total_instances=_sum_column(applications, APP_TOTAL_INSTANCES_COLUMN),
        users=_count(get_table("users")),
    )
