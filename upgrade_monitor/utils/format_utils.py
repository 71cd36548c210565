"""
Format Utilities
"""

import re
from typing import Optional

_UPTIME_PATTERN = re.compile(r"^([\d.]+)([smhd])$")
_UPTIME_MULTIPLIERS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_uptime_to_seconds(uptime: Optional[str]) -> float:
    """将 "1.5d"、"2h"、"30m" 等运行时长转换为秒，无法解析时返回 0"""
    if not uptime:
        return 0
    match = _UPTIME_PATTERN.match(uptime.strip())
    if not match:
        return 0
    try:
        value = float(match.group(1))
    except ValueError:
        # 形如 "1.2.3d" 的值
        return 0
    return value * _UPTIME_MULTIPLIERS[match.group(2)]
