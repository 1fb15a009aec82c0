#!/usr/bin/env python3
"""
Data Retention Policy
=====================
Keeps the tracker store bounded: activity logs older than the retention
window are deleted, and so are pages nobody has visited since the cutoff.

Runs from the CLI (``main.py cleanup``) or a scheduler; the ingestion and
stats paths never call it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from echo_tracker.config import TrackerConfig
from echo_tracker.database import Database
from echo_tracker.utils.datetime_utils import format_iso, from_db_timestamp, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)


class DataRetentionManager:
    def __init__(self, db: Database, config: TrackerConfig):
        self.db = db
        self.retention_days = config.retention_days

    def get_storage_stats(self) -> Dict[str, Any]:
        """Row counts plus oldest/newest timestamps per table."""
        stats: Dict[str, Any] = {}
        with self.db.read() as conn:
            for table, column in (
                ("activity_logs", "timestamp"),
                ("pages", "last_seen_at"),
                ("projects", "created_at"),
                ("users", "created_at"),
            ):
                row = conn.execute(
                    f"SELECT COUNT(*) AS row_count, MIN({column}) AS oldest, MAX({column}) AS newest FROM {table}"
                ).fetchone()
                stats[table] = {
                    "rows": row["row_count"],
                    "oldest": format_iso(from_db_timestamp(row["oldest"])),
                    "newest": format_iso(from_db_timestamp(row["newest"])),
                }
        return stats

    def cleanup(self, now: Optional[datetime] = None, dry_run: bool = False) -> Dict[str, Any]:
        cutoff = (now or utcnow()) - timedelta(days=self.retention_days)
        cutoff_ts = to_db_timestamp(cutoff)

        with self.db.transaction() as conn:
            if dry_run:
                deleted_logs = conn.execute(
                    "SELECT COUNT(*) FROM activity_logs WHERE timestamp < ?", (cutoff_ts,)
                ).fetchone()[0]
                deleted_pages = conn.execute(
                    "SELECT COUNT(*) FROM pages WHERE last_seen_at < ?", (cutoff_ts,)
                ).fetchone()[0]
            else:
                deleted_logs = conn.execute(
                    "DELETE FROM activity_logs WHERE timestamp < ?", (cutoff_ts,)
                ).rowcount
                deleted_pages = conn.execute(
                    "DELETE FROM pages WHERE last_seen_at < ?", (cutoff_ts,)
                ).rowcount

        logger.info(
            "Cleanup %s: %d logs and %d pages older than %s",
            "preview" if dry_run else "ran",
            deleted_logs,
            deleted_pages,
            cutoff_ts,
        )
        return {
            "deletedLogs": deleted_logs,
            "deletedPages": deleted_pages,
            "cutoffDate": format_iso(cutoff),
            "dryRun": dry_run,
        }
