# Topic provisioning for the integrity service. Declaration changes are the
# audit trail and are kept for a year; snapshots are compacted per vehicle.
TOPICS = {
    "declaration_changes": {
        "partitions": 6,
        "replication_factor": 3,
        "min_insync_replicas": 2,
        "cleanup_policy": "delete",
        "retention_ms": 31_536_000_000,
    },
    "compliance_alerts": {
        "partitions": 6,
        "replication_factor": 3,
        "min_insync_replicas": 2,
        "cleanup_policy": "delete",
        "retention_ms": 2_592_000_000,
    },
    "integrity_snapshots": {
        "partitions": 12,
        "replication_factor": 3,
        "min_insync_replicas": 2,
        "cleanup_policy": "compact",
        "retention_ms": 604_800_000,
    },
    "integrity_sweep_triggers": {
        "partitions": 1,
        "replication_factor": 3,
        "min_insync_replicas": 2,
        "cleanup_policy": "delete",
        "retention_ms": 604_800_000,
    },
}
