"""
Activity Log Store and Ingestion Pipeline
=========================================
Turns one visit event into: page upsert -> project resolution -> log append.

All three steps share one write transaction, so a failed insert also rolls
back the page upsert. Project rules are re-read on every event and the
resolved project id is frozen into the log row; later rule edits never
reclassify history.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from echo_tracker.config import TrackerConfig
from echo_tracker.database import Database, new_id
from echo_tracker.errors import ValidationError
from echo_tracker.models import ActivityLog, Page, SourceInfo
from echo_tracker.services.page_service import extract_domain, upsert_page_in
from echo_tracker.services.project_service import fetch_projects_in, match_project_rules
from echo_tracker.utils.datetime_utils import (
    Clock,
    normalize_to_naive_utc,
    safe_parse_iso,
    to_db_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("url", "title", "duration", "timestamp")

# Largest value a SQLite INTEGER column holds
MAX_DURATION = 2**63 - 1


def validate_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Check an incoming event and return its normalized fields.

    Raises ValidationError before anything is written.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object")
    missing = [name for name in REQUIRED_FIELDS if payload.get(name) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", {"missing": missing}
        )

    url = payload["url"]
    if not isinstance(url, str):
        raise ValidationError("url must be a string")
    try:
        urlsplit(url)
    except ValueError as e:
        raise ValidationError(f"Malformed url: {e}") from e

    title = payload["title"]
    if not isinstance(title, str):
        raise ValidationError("title must be a string")

    duration = payload["duration"]
    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        raise ValidationError("Duration must be a number")
    if isinstance(duration, float) and not math.isfinite(duration):
        raise ValidationError("Duration must be a finite number")
    if duration < 0:
        raise ValidationError("Duration must be a non-negative number")
    if duration > MAX_DURATION:
        raise ValidationError(f"Duration must not exceed {MAX_DURATION} seconds")

    raw_ts = payload["timestamp"]
    if isinstance(raw_ts, datetime):
        try:
            timestamp = normalize_to_naive_utc(raw_ts)
        except OverflowError:
            timestamp = None
    else:
        timestamp = safe_parse_iso(raw_ts)
    if timestamp is None:
        raise ValidationError(f"Invalid ISO-8601 timestamp: {raw_ts!r}")

    description = payload.get("description")
    if description is not None and not isinstance(description, str):
        raise ValidationError("description must be a string")

    source = payload.get("source")
    if source is not None and not isinstance(source, dict):
        raise ValidationError("source must be an object")

    return {
        "url": url,
        "title": title,
        "duration": int(round(duration)),
        "timestamp": timestamp,
        "description": description or None,
        "source": source,
    }


class ActivityService:
    def __init__(self, db: Database, config: TrackerConfig, clock: Clock = utcnow):
        self.db = db
        self.config = config
        self.clock = clock

    async def create_activity_log(self, user_id: str, payload: Dict[str, Any]) -> ActivityLog:
        event = validate_payload(payload)
        source = SourceInfo.from_payload(event["source"], self.config.default_source_type)
        log = await self.db.run(self._ingest, user_id, event, source)
        logger.info(
            "Activity log created: user=%s url=%s domain=%s duration=%s",
            user_id,
            event["url"],
            log.domain,
            log.duration,
            extra={
                "userId": user_id,
                "meta": {"logId": log.id, "pageId": log.page_id, "projectId": log.project_id},
            },
        )
        return log

    async def ingest(self, user_id: str, payload: Dict[str, Any]) -> Dict[str, Optional[str]]:
        log = await self.create_activity_log(user_id, payload)
        return {"logId": log.id, "pageId": log.page_id, "projectId": log.project_id}

    def _ingest(self, user_id: str, event: Dict[str, Any], source: SourceInfo) -> ActivityLog:
        domain = extract_domain(event["url"])
        with self.db.transaction() as conn:
            page = upsert_page_in(
                conn, user_id, event["url"], event["title"], event["description"], self.clock()
            )
            projects = fetch_projects_in(conn, user_id)
            project_id = match_project_rules(projects, event["url"], domain)
            log = ActivityLog(
                id=new_id(),
                user_id=user_id,
                page_id=page.id,
                timestamp=event["timestamp"],
                duration=event["duration"],
                domain=domain,
                project_id=project_id,
                source=source,
            )
            self._insert_log(conn, log)
        return log

    @staticmethod
    def _insert_log(conn: sqlite3.Connection, log: ActivityLog) -> None:
        conn.execute(
            """
            INSERT INTO activity_logs (
                id, user_id, page_id, timestamp, duration, domain, project_id,
                source_type, source_device_name, source_client_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                log.id,
                log.user_id,
                log.page_id,
                to_db_timestamp(log.timestamp),
                log.duration,
                log.domain,
                log.project_id,
                log.source.type,
                log.source.device_name,
                log.source.client_id,
            ),
        )

    async def get_recent_activity(self, user_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Newest events first, each with a summary of its page (None if the page is gone)."""
        limit = limit or self.config.recent_activity_limit
        return await self.db.run(self._recent_activity, user_id, max(1, int(limit)))

    def _recent_activity(self, user_id: str, limit: int) -> List[Dict[str, Any]]:
        with self.db.read() as conn:
            logs = conn.execute(
                "SELECT * FROM activity_logs WHERE user_id = ? "
                "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
            page_ids = sorted({row["page_id"] for row in logs})
            pages: Dict[str, Page] = {}
            if page_ids:
                placeholders = ",".join("?" for _ in page_ids)
                for row in conn.execute(
                    f"SELECT * FROM pages WHERE id IN ({placeholders})", page_ids
                ):
                    pages[row["id"]] = Page.from_row(row)

        items = []
        for row in logs:
            item = ActivityLog.from_row(row).to_dict()
            page = pages.get(row["page_id"])
            item["page"] = page.summary() if page else None
            items.append(item)
        return items
