"""
Health history merging.
"""

from typing import Dict, Iterable, List

from upgrade_monitor.config.settings import settings
from upgrade_monitor.core.constants import CLUSTER_STATUSES
from upgrade_monitor.schemas.cluster import CatHealthRow


def _row_sort_key(row: CatHealthRow):
    # _cat/health 的 timestamp 只有 HH:MM:SS，优先使用 epoch 排序
    try:
        return (0, float(row.epoch), row.timestamp)
    except (TypeError, ValueError):
        return (1, 0.0, row.timestamp)


def merge_health_history(
    existing: Iterable[CatHealthRow],
    incoming: Iterable[CatHealthRow],
    limit: int = settings.HEALTH_HISTORY_LIMIT,
) -> List[CatHealthRow]:
    """
    合并健康历史

    以 timestamp 为键去重（后出现的覆盖先出现的），按时间升序排序，
    只保留最近的 limit 条。纯函数，不修改输入。
    """
    merged: Dict[str, CatHealthRow] = {}
    for row in list(existing) + list(incoming):
        merged[row.timestamp] = row
    ordered = sorted(merged.values(), key=_row_sort_key)
    if limit <= 0:
        return []
    return ordered[-limit:]


def summarize_status(history: Iterable[CatHealthRow]) -> Dict[str, int]:
    """统计历史中各健康状态出现的次数"""
    summary = {status: 0 for status in CLUSTER_STATUSES}
    for row in history:
        status = row.status if row.status in summary else "unknown"
        summary[status] += 1
    return summary
