"""
Version Utilities
"""

from typing import Iterable, List, Optional


def _parse_version(version: str) -> List[int]:
    parts: List[int] = []
    for segment in (version or "").strip().split("."):
        try:
            parts.append(int(segment))
        except ValueError:
            # 非数字片段（如 "8.15.0-SNAPSHOT" 中的后缀）按 0 处理
            parts.append(0)
    return parts


def compare_versions(v1: str, v2: str) -> int:
    """
    比较两个以点分隔的版本号

    缺失的尾部片段视为 0，因此 "8.15" 与 "8.15.0" 相等。

    Returns:
        -1 表示 v1 < v2，0 表示相等，1 表示 v1 > v2
    """
    parts1 = _parse_version(v1)
    parts2 = _parse_version(v2)
    for i in range(max(len(parts1), len(parts2))):
        part1 = parts1[i] if i < len(parts1) else 0
        part2 = parts2[i] if i < len(parts2) else 0
        if part1 < part2:
            return -1
        if part1 > part2:
            return 1
    return 0


def get_highest_version(versions: Iterable[str]) -> Optional[str]:
    """返回最高版本；输入为空时返回 None"""
    highest: Optional[str] = None
    for version in versions:
        if highest is None or compare_versions(version, highest) > 0:
            highest = version
    return highest


def is_valid_version(version: str) -> bool:
    segments = (version or "").split(".")
    return bool(version) and all(segment.isdigit() for segment in segments)
