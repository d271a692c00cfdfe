"""Monthly partitioned audit trail."""
