"""
Page Catalog
============
One canonical page per (user, url), kept current by every visit event.

Listing has two deliberately separate strategies:
- stored-field sort (lastSeenAt, firstSeenAt, title, domain): order the pages
  table, then skip/limit.
- totalDuration sort: the key lives in activity_logs, not on the page, so the
  all-time sum is computed for every page of the user, the joined set is
  ordered, and only then sliced.
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
from echo_tracker.models import Page
from echo_tracker.utils.datetime_utils import Clock, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)

SORT_DURATION = "totalDuration"

# API sort name -> pages column
STORED_SORT_FIELDS = {
    "lastSeenAt": "last_seen_at",
    "firstSeenAt": "first_seen_at",
    "title": "title",
    "domain": "domain",
}

UPSERT_PAGE_SQL = """
    INSERT INTO pages (
        id, user_id, url, domain, title, description,
        first_seen_at, last_seen_at,
        ai_productivity_label, ai_confidence, ai_embedding
    )
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL)
    ON CONFLICT (user_id, url) DO UPDATE SET
        domain = excluded.domain,
        title = excluded.title,
        description = excluded.description,
        last_seen_at = excluded.last_seen_at
"""


def extract_domain(url: str) -> str:
    """Hostname of ``url``; the raw string when it has no parseable authority."""
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return url
    return hostname or url


def upsert_page_in(
    conn: sqlite3.Connection,
    user_id: str,
    url: str,
    title: str,
    description: Optional[str],
    now: datetime,
) -> Page:
    """Find-or-create inside an open transaction.

    The insert and the conflict update are one statement, so concurrent
    callers for the same (user_id, url) converge on a single row.
    """
    ts = to_db_timestamp(now)
    conn.execute(
        UPSERT_PAGE_SQL,
        (new_id(), user_id, url, extract_domain(url), title, description or None, ts, ts),
    )
    row = conn.execute(
        "SELECT * FROM pages WHERE user_id = ? AND url = ?", (user_id, url)
    ).fetchone()
    return Page.from_row(row)


def _pagination(total: int, page: int, limit: int) -> Dict[str, int]:
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }


class PageService:
    def __init__(self, db: Database, config: TrackerConfig, clock: Clock = utcnow):
        self.db = db
        self.config = config
        self.clock = clock

    # ---------------------------- Catalog ----------------------------
    async def upsert_page(
        self, user_id: str, url: str, title: str, description: Optional[str] = None
    ) -> Page:
        if not url or not isinstance(url, str):
            raise ValidationError("url is required")
        if not title or not isinstance(title, str):
            raise ValidationError("title is required")
        return await self.db.run(self._upsert_page, user_id, url, title, description)

    def _upsert_page(
        self, user_id: str, url: str, title: str, description: Optional[str]
    ) -> Page:
        with self.db.transaction() as conn:
            page = upsert_page_in(conn, user_id, url, title, description, self.clock())
        logger.info("Page upserted: user=%s url=%s domain=%s", user_id, url, page.domain)
        return page

    async def get_page(self, user_id: str, page_id: str) -> Optional[Page]:
        return await self.db.run(self._get_page, user_id, page_id)

    def _get_page(self, user_id: str, page_id: str) -> Optional[Page]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM pages WHERE id = ? AND user_id = ?", (page_id, user_id)
            ).fetchone()
        return Page.from_row(row) if row else None

    # ---------------------------- Listing ----------------------------
    def clamp_paging(self, page: Any, limit: Any) -> tuple[int, int]:
        try:
            page = int(page)
        except (TypeError, ValueError):
            page = 1
        try:
            limit = int(limit)
        except (TypeError, ValueError):
            limit = self.config.default_page_limit
        return max(1, page), min(self.config.max_page_limit, max(1, limit))

    async def list_pages(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "lastSeenAt",
        sort_order: str = "desc",
    ) -> Dict[str, Any]:
        if sort_order not in ("asc", "desc"):
            raise ValidationError(f"Invalid sortOrder: {sort_order}", {"allowed": ["asc", "desc"]})
        if sort_by != SORT_DURATION and sort_by not in STORED_SORT_FIELDS:
            raise ValidationError(
                f"Invalid sortBy: {sort_by}",
                {"allowed": [*STORED_SORT_FIELDS, SORT_DURATION]},
            )
        page, limit = self.clamp_paging(page, limit)
        if sort_by == SORT_DURATION:
            return await self.db.run(self._list_by_duration, user_id, page, limit, sort_order)
        return await self.db.run(
            self._list_by_stored_field, user_id, page, limit, STORED_SORT_FIELDS[sort_by], sort_order
        )

    def _list_by_stored_field(
        self, user_id: str, page: int, limit: int, column: str, sort_order: str
    ) -> Dict[str, Any]:
        direction = "ASC" if sort_order == "asc" else "DESC"
        with self.db.read() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM pages WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM pages WHERE user_id = ? "
                f"ORDER BY {column} {direction}, id {direction} LIMIT ? OFFSET ?",
                (user_id, limit, (page - 1) * limit),
            ).fetchall()
            durations = self._durations_for(conn, [row["id"] for row in rows])

        pages = []
        for row in rows:
            item = Page.from_row(row).to_dict()
            item["totalDuration"] = durations.get(row["id"], 0)
            pages.append(item)
        return {"pages": pages, **_pagination(total, page, limit)}

    @staticmethod
    def _durations_for(conn: sqlite3.Connection, page_ids: List[str]) -> Dict[str, int]:
        if not page_ids:
            return {}
        placeholders = ",".join("?" for _ in page_ids)
        rows = conn.execute(
            f"SELECT page_id, SUM(duration) AS total FROM activity_logs "
            f"WHERE page_id IN ({placeholders}) GROUP BY page_id",
            page_ids,
        ).fetchall()
        return {row["page_id"]: row["total"] for row in rows}

    def _list_by_duration(
        self, user_id: str, page: int, limit: int, sort_order: str
    ) -> Dict[str, Any]:
        direction = "ASC" if sort_order == "asc" else "DESC"
        with self.db.read() as conn:
            total = conn.execute(
                "SELECT COUNT(*) FROM pages WHERE user_id = ?", (user_id,)
            ).fetchone()[0]
            # Sum per page over the whole log, order the full joined set, then slice
            rows = conn.execute(
                f"""
                SELECT p.*, COALESCE(d.total, 0) AS total_duration
                FROM pages p
                LEFT JOIN (
                    SELECT page_id, SUM(duration) AS total
                    FROM activity_logs
                    WHERE user_id = ?
                    GROUP BY page_id
                ) d ON d.page_id = p.id
                WHERE p.user_id = ?
                ORDER BY total_duration {direction}, p.last_seen_at DESC, p.id ASC
                LIMIT ? OFFSET ?
                """,
                (user_id, user_id, limit, (page - 1) * limit),
            ).fetchall()

        pages = []
        for row in rows:
            item = Page.from_row(row).to_dict()
            item["totalDuration"] = row["total_duration"]
            pages.append(item)
        return {"pages": pages, **_pagination(total, page, limit)}

    # ---------------------------- Search ----------------------------
    async def search_pages(
        self, user_id: str, query: str, page: int = 1, limit: int = 20
    ) -> Dict[str, Any]:
        """Case-insensitive substring match on title, url or domain.

        Always ordered by lastSeenAt descending; duration sort is not offered here.
        """
        if not query or not isinstance(query, str):
            raise ValidationError("Search query must be a non-empty string")
        page, limit = self.clamp_paging(page, limit)
        return await self.db.run(self._search_pages, user_id, query, page, limit)

    def _search_pages(self, user_id: str, query: str, page: int, limit: int) -> Dict[str, Any]:
        escaped = query.casefold().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        # casefold() is registered per connection in Database._open
        where = (
            "user_id = ? AND ("
            "casefold(title) LIKE ? ESCAPE '\\' OR "
            "casefold(url) LIKE ? ESCAPE '\\' OR "
            "casefold(domain) LIKE ? ESCAPE '\\')"
        )
        params = (user_id, pattern, pattern, pattern)
        with self.db.read() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM pages WHERE {where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM pages WHERE {where} "
                f"ORDER BY last_seen_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
        return {
            "pages": [Page.from_row(row).to_dict() for row in rows],
            "query": query,
            **_pagination(total, page, limit),
        }
