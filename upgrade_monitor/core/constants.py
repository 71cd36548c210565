"""
Constants Module
"""

# Elasticsearch 只读接口
ENDPOINTS = {
    "allocation": "/_cat/allocation?v&format=json&h=shards,disk.avail,node,ip&s=ip",
    "recovery": (
        "/_cat/recovery?v&format=json"
        "&h=index,shard,time,source_node,target_node,target,fp,bp,stage,translog,bytes_percent"
        "&s=ty:desc,index,bp:desc&active_only"
    ),
    "cluster_health": "/_cluster/health",
    "nodes": "/_cat/nodes?v&format=json&h=node.role,name,version,uptime,ip,attr.data&s=node.role,ip",
    "cluster_settings": "/_cluster/settings?flat_settings",
    "cat_health": "/_cat/health?v&format=json",
}

# 写操作接口
FLUSH_PATH = "/_flush"
CLUSTER_SETTINGS_PATH = "/_cluster/settings"

# 集群设置项
ALLOCATION_ENABLE_SETTING = "cluster.routing.allocation.enable"
REBALANCE_ENABLE_SETTING = "cluster.routing.rebalance.enable"
RECOVERY_THROTTLE_SETTING = "cluster.routing.allocation.node_initial_primaries_recoveries"

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
}

# 持久化存储 key（会加上 STORAGE_KEY_PREFIX 前缀）
STORAGE_KEYS = {
    "CLUSTERS": "clusters",
    "POLL_INTERVAL": "poll-interval",
    "ACTIVE_CLUSTER": "active-cluster",
}

# 集群健康状态
CLUSTER_STATUSES = ("green", "yellow", "red", "unknown")

NO_CLUSTER_MESSAGE = "Please add a cluster to start monitoring."
NETWORK_ERROR_TEMPLATE = "Network error, cannot access your cluster. Cluster uri: {base_url}"
