"""
Schemas for the monitoring state machine and its HTTP surface.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict

from pydantic import BaseModel, ConfigDict, Field, computed_field

from upgrade_monitor.schemas.cluster import (
    CatHealthRow,
    ClusterConnectionResponse,
    MonitoringSnapshot,
    NodeInfo,
)


class ConnectionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CHECKING_HEALTH = "checking_health"
    FETCHING = "fetching"
    IDLE_POLLING = "idle_polling"
    DEGRADED_RETRYING = "degraded_retrying"
    NO_CONNECTION = "no_connection"


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    CONNECTIVITY = "connectivity"
    TRANSIENT = "transient"
    COMMAND = "command"


class MonitoringError(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    message: str

    @computed_field
    @property
    def blocking(self) -> bool:
        """配置错误与连接错误会阻塞正常展示"""
        return self.kind in (ErrorKind.CONFIGURATION, ErrorKind.CONNECTIVITY)


class Notification(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: str = Field(..., description="success|error")
    title: str
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class HealthCheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    error: Optional[str] = None


class CommandResult(BaseModel):
    success: bool
    message: str
    error: Optional[MonitoringError] = None


class VersionStats(BaseModel):
    upgraded: int = 0
    left: int = 0
    highest_version: Optional[str] = None
    remaining_versions: List[str] = Field(default_factory=list)


class UpgradePlan(BaseModel):
    nodes: List[NodeInfo] = Field(default_factory=list)
    nodes_by_version: Dict[str, List[NodeInfo]] = Field(default_factory=dict)
    stats: VersionStats = Field(default_factory=VersionStats)
    explanation: str = ""


class MonitoringState(BaseModel):
    """对外发布的只读状态视图"""

    state: ConnectionState
    snapshot: Optional[MonitoringSnapshot] = None
    health_history: List[CatHealthRow] = Field(default_factory=list)
    status_summary: Dict[str, int] = Field(default_factory=dict)
    loading: bool = False
    refreshing: bool = False
    error: Optional[MonitoringError] = None
    connection_failed: bool = False
    last_updated: Optional[str] = None
    poll_interval_ms: int
    clusters: List[ClusterConnectionResponse] = Field(default_factory=list)
    active_cluster: Optional[str] = None


class PollIntervalRequest(BaseModel):
    poll_interval_ms: int = Field(..., description="轮询间隔（毫秒），会被限制在允许范围内")


class ActiveClusterRequest(BaseModel):
    label: str = Field(..., min_length=1)


class RecoverySettingRequest(BaseModel):
    value: int = Field(..., ge=0, description="node_initial_primaries_recoveries")


class RecoveryTargetStat(BaseModel):
    target: str
    count: int


class SettingEntry(BaseModel):
    scope: str = Field(..., description="persistent|transient")
    key: str
    value: str
