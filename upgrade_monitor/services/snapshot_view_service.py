"""
Derived views over a monitoring snapshot: recovery targets, flattened cluster
settings and the allocation tier filter.
"""

import json
from typing import Any, Dict, Iterable, List, Optional

from upgrade_monitor.schemas.cluster import CatAllocationRow, ClusterSettings, RecoveryRow
from upgrade_monitor.schemas.monitoring import RecoveryTargetStat, SettingEntry

ALLOCATION_TIERS = ("all", "hot", "warm", "cold")


def calculate_recovery_target_stats(recovery: Iterable[RecoveryRow]) -> List[RecoveryTargetStat]:
    """
    统计每个目标节点上的恢复数量

    目标优先取 ``target``，为空时取 ``target_node``；两者都为空的行不计入。
    结果按数量降序，数量相同时保持首次出现的顺序。
    """
    counts: Dict[str, int] = {}
    for row in recovery:
        target = row.target or row.target_node
        if target:
            counts[target] = counts.get(target, 0) + 1
    stats = [RecoveryTargetStat(target=target, count=count) for target, count in counts.items()]
    stats.sort(key=lambda item: item.count, reverse=True)
    return stats


def format_setting_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def flatten_settings(settings: ClusterSettings, search: Optional[str] = None) -> List[SettingEntry]:
    """展开 persistent 与 transient 设置（不含 defaults），按 key 或 value 不区分大小写过滤"""
    entries = [
        SettingEntry(scope=scope, key=key, value=format_setting_value(value))
        for scope, values in (("persistent", settings.persistent), ("transient", settings.transient))
        for key, value in values.items()
    ]
    if not search:
        return entries
    needle = search.lower()
    return [entry for entry in entries if needle in entry.key.lower() or needle in entry.value.lower()]


def filter_allocation(allocation: Iterable[CatAllocationRow], tier: str = "all") -> List[CatAllocationRow]:
    """按节点名中包含的层级（hot/warm/cold）过滤，all 返回全部"""
    rows = list(allocation)
    if tier == "all":
        return rows
    tier = tier.lower()
    return [row for row in rows if tier in row.node.lower()]
