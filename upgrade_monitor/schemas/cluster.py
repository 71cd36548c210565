"""
Schemas for Elasticsearch cluster connections and monitoring data.
"""

from typing import Optional, List, Dict, Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClusterConnection(BaseModel):
    """集群连接配置（不可变，修改时整体替换）"""

    model_config = ConfigDict(frozen=True)

    label: str = Field(..., description="集群名称，在所有连接中唯一")
    base_url: str = Field(..., description="集群地址，例如 http://localhost:9200")
    username: str = Field("", description="Basic 认证用户名")
    password: str = Field("", description="Basic 认证密码")

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class ClusterConnectionCreate(BaseModel):
    label: Optional[str] = Field(None, description="集群名称，默认使用地址")
    base_url: str = Field(..., min_length=1, description="集群地址")
    username: Optional[str] = None
    password: Optional[str] = None

    @field_validator("base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("base_url 不能为空")
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as exc:
            raise ValueError(f"base_url 无效: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError("base_url 必须是 http(s)://host[:port] 形式")
        return value

    def to_connection(self) -> ClusterConnection:
        """规范化输入：去除首尾空白及末尾的 '/'"""
        base_url = self.base_url.strip()
        if base_url.endswith("/"):
            base_url = base_url[:-1]
        label = (self.label or base_url).strip() or base_url
        return ClusterConnection(
            label=label,
            base_url=base_url,
            username=(self.username or "").strip(),
            password=(self.password or "").strip(),
        )


class ClusterConnectionResponse(BaseModel):
    label: str
    base_url: str
    username: str = ""
    has_credentials: bool = False
    is_active: bool = False

    @classmethod
    def from_connection(cls, connection: ClusterConnection, active_label: Optional[str]) -> "ClusterConnectionResponse":
        return cls(
            label=connection.label,
            base_url=connection.base_url,
            username=connection.username,
            has_credentials=connection.has_credentials,
            is_active=connection.label == active_label,
        )


class CatAllocationRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    shards: int = 0
    disk_avail: str = "N/A"
    node: str
    ip: Optional[str] = None


class RecoveryRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: str = ""
    shard: str = ""
    time: str = ""
    source_node: str = ""
    target_node: str = ""
    target: str = ""
    files_percent: str = "0%"
    bytes_percent: str = "0%"
    stage: str = ""
    translog: str = ""


class ClusterHealth(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    cluster_name: str = ""
    status: str = "unknown"
    timed_out: bool = False
    number_of_nodes: int = 0
    number_of_data_nodes: int = 0
    active_primary_shards: int = 0
    active_shards: int = 0
    relocating_shards: int = 0
    initializing_shards: int = 0
    unassigned_shards: int = 0
    delayed_unassigned_shards: int = 0
    number_of_pending_tasks: int = 0
    task_max_waiting_in_queue_millis: int = 0
    active_shards_percent_as_number: float = 0.0


class NodeInfo(BaseModel):
    """节点信息，upgrade_order 与 sequential_order 为派生字段"""

    model_config = ConfigDict(frozen=True)

    node_role: str = ""
    name: str
    ip: Optional[str] = None
    version: str = ""
    uptime: str = ""
    upgrade_order: Optional[int] = None
    sequential_order: Optional[int] = None


class ClusterSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    persistent: Dict[str, Any] = Field(default_factory=dict)
    transient: Dict[str, Any] = Field(default_factory=dict)
    defaults: Optional[Dict[str, Any]] = None


class CatHealthRow(BaseModel):
    """_cat/health 返回的一行，按 timestamp 去重"""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    epoch: str = ""
    timestamp: str
    cluster: str = ""
    status: str = "unknown"
    node_total: str = Field("", alias="node.total")
    node_data: str = Field("", alias="node.data")
    shards: str = ""
    pri: str = ""
    relo: str = ""
    init: str = ""
    unassign: str = ""
    pending_tasks: str = ""
    max_task_wait_time: str = ""
    active_shards_percent: str = ""

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_to_str(cls, value: Any) -> Any:
        # _cat 接口有时返回数字
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class MonitoringSnapshot(BaseModel):
    """单次完整拉取的监控数据快照"""

    model_config = ConfigDict(frozen=True)

    cluster_label: str
    allocation: List[CatAllocationRow] = Field(default_factory=list)
    recovery: List[RecoveryRow] = Field(default_factory=list)
    health: ClusterHealth
    nodes: List[NodeInfo] = Field(default_factory=list)
    settings: ClusterSettings
    cat_health: List[CatHealthRow] = Field(default_factory=list)
    fetched_at: str
