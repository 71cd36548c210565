"""
Upgrade order calculation for Elasticsearch nodes.

Role letters from ``_cat/nodes``:

    f frozen, c cold, w warm, h hot, d data (no tier), s content,
    l machine learning, i ingest, t transform, r remote cluster client,
    v voting-only master, m master-eligible

Nodes are upgraded tier by tier (frozen, cold, warm, hot, other data), then
nodes that are neither data nor master-eligible, and master-eligible nodes
last. Nodes already running the highest version in the cluster have no tier.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from upgrade_monitor.schemas.cluster import NodeInfo
from upgrade_monitor.schemas.monitoring import UpgradePlan, VersionStats
from upgrade_monitor.utils.format_utils import parse_uptime_to_seconds
from upgrade_monitor.utils.version_utils import (
    compare_versions,
    get_highest_version,
    is_valid_version,
)

# 按顺序匹配，第一个命中的规则生效
TIER_RULES = (
    (("f",), 1),
    (("c",), 2),
    (("w",), 3),
    (("h",), 4),
    (("d", "s"), 5),
    (("l", "i", "t", "r", "v"), 6),
    (("m",), 7),
)
FALLBACK_TIER = 8

TIER_LABELS = {
    1: "Frozen",
    2: "Cold",
    3: "Warm",
    4: "Hot",
    5: "Data",
    6: "Other",
    7: "Master",
}

UNKNOWN_VERSION = "Unknown"


def calculate_upgrade_order(node: NodeInfo, highest_version: Optional[str]) -> Optional[int]:
    """
    计算节点的升级层级

    Args:
        node: 节点信息
        highest_version: 集群中的最高版本；为 None 时不判断"已升级"

    Returns:
        1-8 的层级，节点已处于最高版本时返回 None
    """
    if highest_version and node.version:
        if compare_versions(node.version, highest_version) >= 0:
            return None

    role = node.node_role or ""
    for letters, tier in TIER_RULES:
        if any(letter in role for letter in letters):
            return tier
    return FALLBACK_TIER


def get_upgrade_order_label(order: Optional[int]) -> str:
    if order is None:
        return "Upgraded"
    label = TIER_LABELS.get(order)
    if label is None:
        return f"{order} - Unknown"
    return f"{order} - {label}"


def get_upgrade_order_explanation() -> str:
    return (
        "Upgrade Order Priority:\n"
        "1. Frozen Tier (f) - Data nodes in frozen tier\n"
        "2. Cold Tier (c) - Data nodes in cold tier\n"
        "3. Warm Tier (w) - Data nodes in warm tier\n"
        "4. Hot Tier (h) - Data nodes in hot tier\n"
        "5. Other Data (d, s) - Data, content - Data nodes without tier\n"
        "6. Other Nodes (l, i, t, r, v) - ML, ingest, transform, remote, voting-only master\n"
        "7. Master (m) - Dedicated master nodes\n"
        "\n"
        'Note: Nodes already upgraded (version >= highest version) are marked as "Upgraded".'
    )


def annotate_upgrade_order(nodes: Iterable[NodeInfo]) -> List[NodeInfo]:
    """按集群中的最高版本为每个节点计算层级（与 _cat/nodes 一起获取时使用）"""
    nodes = list(nodes)
    highest = get_highest_version(node.version for node in nodes if node.version)
    return [
        node.model_copy(update={"upgrade_order": calculate_upgrade_order(node, highest)})
        for node in nodes
    ]


def _sort_key(node: NodeInfo, nulls_first: bool):
    if node.upgrade_order is None:
        null_rank = 0 if nulls_first else 1
        tier = 0
    else:
        null_rank = 1 if nulls_first else 0
        tier = node.upgrade_order
    return (null_rank, tier, -parse_uptime_to_seconds(node.uptime or "0s"))


def assign_sequential_order(nodes: Iterable[NodeInfo]) -> List[NodeInfo]:
    """
    根据当前节点集合计算升级顺序号

    - 所有节点版本相同：以 None 作为最高版本计算层级（不会出现"已升级"），
      按层级升序、运行时长降序排序，层级为 None 的排在最后
    - 存在多个版本：以实际最高版本计算层级，已升级节点（层级为 None）排在最前，
      其余按层级升序、运行时长降序排序

    顺序号从 1 开始，只分配给层级非 None 的节点。
    """
    nodes = list(nodes)
    versions = {node.version for node in nodes}
    single_version = len(versions) == 1

    if single_version:
        baseline: Optional[str] = None
    else:
        baseline = get_highest_version(node.version for node in nodes if node.version)

    tiered = [
        node.model_copy(update={"upgrade_order": calculate_upgrade_order(node, baseline)})
        for node in nodes
    ]
    # sorted 是稳定排序，层级与运行时长都相同时保持输入顺序
    ordered = sorted(tiered, key=lambda node: _sort_key(node, nulls_first=not single_version))

    counter = 0
    result: List[NodeInfo] = []
    for node in ordered:
        if node.upgrade_order is None:
            result.append(node.model_copy(update={"sequential_order": None}))
            continue
        counter += 1
        result.append(node.model_copy(update={"sequential_order": counter}))
    return result


def group_nodes_by_version(nodes: Iterable[NodeInfo]) -> Dict[str, List[NodeInfo]]:
    """按版本分组，组内按顺序号（None 在后）及运行时长降序排列"""
    grouped: Dict[str, List[NodeInfo]] = {}
    for node in nodes:
        grouped.setdefault(node.version or UNKNOWN_VERSION, []).append(node)

    def key(node: NodeInfo):
        has_order = node.sequential_order is not None
        return (
            0 if has_order else 1,
            node.sequential_order if has_order else 0,
            -parse_uptime_to_seconds(node.uptime or "0s"),
        )

    return {version: sorted(group, key=key) for version, group in grouped.items()}


def calculate_version_stats(nodes: List[NodeInfo]) -> VersionStats:
    """统计已升级/待升级节点数量"""
    if not nodes:
        return VersionStats()

    grouped = group_nodes_by_version(nodes)
    versions = list(grouped.keys())
    valid_versions = [version for version in versions if is_valid_version(version)]
    if not valid_versions:
        return VersionStats(upgraded=0, left=len(nodes), remaining_versions=versions)

    if len(versions) == 1:
        return VersionStats(upgraded=0, left=len(nodes), remaining_versions=versions)

    highest = get_highest_version(valid_versions)
    upgraded = len(grouped.get(highest, []))
    return VersionStats(
        upgraded=upgraded,
        left=len(nodes) - upgraded,
        highest_version=highest,
        remaining_versions=[version for version in versions if version != highest],
    )


def build_upgrade_plan(nodes: Iterable[NodeInfo]) -> UpgradePlan:
    ordered = assign_sequential_order(nodes)
    return UpgradePlan(
        nodes=ordered,
        nodes_by_version=group_nodes_by_version(ordered),
        stats=calculate_version_stats(ordered),
        explanation=get_upgrade_order_explanation(),
    )
