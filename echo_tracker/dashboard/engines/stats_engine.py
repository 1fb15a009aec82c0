#!/usr/bin/env python3
"""
Dashboard Stats Engine
======================
Read-only rollups over the activity log for an inclusive time window.

Key responsibilities:
- Total tracked time
- By-project rollup (null project -> "Uncategorized", neutral gray)
- By-domain rollup on the domain frozen into each log row
- Hour x weekday heatmap with the top URLs of every bucket
- Top pages, per-page daily stats, per-page activity for the assistant tools

Heatmap buckets use UTC. dayOfWeek is 1-indexed from Sunday (1 = Sunday,
2 = Monday ... 7 = Saturday). Buckets without activity are omitted; callers
fill the empty cells.

Every query opens its own connection, so the five rollups of ``get_stats``
run concurrently. Empty windows produce zeros and empty lists, never None.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from echo_tracker.config import TrackerConfig
from echo_tracker.database import Database
from echo_tracker.errors import NotFoundError
from echo_tracker.utils.datetime_utils import (
    Clock,
    format_iso,
    resolve_window,
    start_of_day,
    to_db_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

WINDOW_FILTER = "l.user_id = ? AND l.timestamp >= ? AND l.timestamp <= ?"

Window = Tuple[datetime, datetime]


class StatsEngine:
    def __init__(self, db: Database, config: TrackerConfig, clock: Clock = utcnow):
        self.db = db
        self.config = config
        self.clock = clock

    # ---------------------------- Helpers ----------------------------
    def resolve(self, start: Any, end: Any, default_days: Optional[int] = None) -> Window:
        return resolve_window(
            start,
            end,
            default_days=default_days or self.config.default_window_days,
            now=self.clock(),
        )

    @staticmethod
    def _params(user_id: str, window: Window) -> Tuple[str, str, str]:
        start, end = window
        return user_id, to_db_timestamp(start), to_db_timestamp(end)

    def _query(self, sql: str, params: Tuple[Any, ...]) -> List[sqlite3.Row]:
        with self.db.read() as conn:
            return conn.execute(sql, params).fetchall()

    async def _fetch(self, sql: str, params: Tuple[Any, ...]) -> List[sqlite3.Row]:
        return await self.db.run(self._query, sql, params)

    # ---------------------------- Rollups ----------------------------
    async def total_duration(self, user_id: str, window: Window) -> int:
        rows = await self._fetch(
            f"SELECT COALESCE(SUM(l.duration), 0) AS total FROM activity_logs l WHERE {WINDOW_FILTER}",
            self._params(user_id, window),
        )
        return int(rows[0]["total"])

    async def by_project(self, user_id: str, window: Window) -> List[Dict[str, Any]]:
        rows = await self._fetch(
            f"""
            SELECT l.project_id, SUM(l.duration) AS total, p.name, p.color
            FROM activity_logs l
            LEFT JOIN projects p ON p.id = l.project_id
            WHERE {WINDOW_FILTER}
            GROUP BY l.project_id
            ORDER BY total DESC, l.project_id IS NULL, l.project_id
            """,
            self._params(user_id, window),
        )
        return [
            {
                "projectId": row["project_id"],
                "projectName": row["name"] or self.config.uncategorized_label,
                "color": row["color"] or self.config.uncategorized_color,
                "totalDuration": row["total"],
            }
            for row in rows
        ]

    async def by_domain(self, user_id: str, window: Window) -> List[Dict[str, Any]]:
        rows = await self._fetch(
            f"""
            SELECT l.domain, SUM(l.duration) AS total
            FROM activity_logs l
            WHERE {WINDOW_FILTER}
            GROUP BY l.domain
            ORDER BY total DESC, l.domain
            LIMIT ?
            """,
            (*self._params(user_id, window), self.config.top_domains_limit),
        )
        return [{"domain": row["domain"], "totalDuration": row["total"]} for row in rows]

    async def heatmap(self, user_id: str, window: Window) -> List[Dict[str, Any]]:
        # One row per (bucket, page); bucket totals and top URLs are folded below
        rows = await self._fetch(
            f"""
            SELECT
                CAST(strftime('%H', l.timestamp) AS INTEGER) AS hour,
                CAST(strftime('%w', l.timestamp) AS INTEGER) + 1 AS day_of_week,
                l.page_id,
                COALESCE(p.url, 'Unknown') AS url,
                COALESCE(p.title, 'Unknown') AS title,
                SUM(l.duration) AS total
            FROM activity_logs l
            LEFT JOIN pages p ON p.id = l.page_id
            WHERE {WINDOW_FILTER}
            GROUP BY hour, day_of_week, l.page_id
            """,
            self._params(user_id, window),
        )
        return build_heatmap(rows, self.config.heatmap_top_urls)

    async def top_pages(self, user_id: str, window: Window) -> List[Dict[str, Any]]:
        rows = await self._fetch(
            f"""
            SELECT l.page_id, p.title, p.url, p.domain, SUM(l.duration) AS total
            FROM activity_logs l
            JOIN pages p ON p.id = l.page_id
            WHERE {WINDOW_FILTER}
            GROUP BY l.page_id
            ORDER BY total DESC, p.url
            LIMIT ?
            """,
            (*self._params(user_id, window), self.config.top_pages_limit),
        )
        return [
            {
                "pageId": row["page_id"],
                "title": row["title"],
                "url": row["url"],
                "domain": row["domain"],
                "totalDuration": row["total"],
            }
            for row in rows
        ]

    async def get_stats(self, user_id: str, start: Any = None, end: Any = None) -> Dict[str, Any]:
        """All dashboard rollups for one window, queried concurrently."""
        window = self.resolve(start, end)
        started = time.perf_counter()
        total, projects, domains, heatmap, pages = await asyncio.gather(
            self.total_duration(user_id, window),
            self.by_project(user_id, window),
            self.by_domain(user_id, window),
            self.heatmap(user_id, window),
            self.top_pages(user_id, window),
        )
        logger.debug(
            "Stats computed for user=%s in %.3fs", user_id, time.perf_counter() - started
        )
        return {
            "startDate": format_iso(window[0]),
            "endDate": format_iso(window[1]),
            "totalDuration": total,
            "byProject": projects,
            "byDomain": domains,
            "heatmap": heatmap,
            "topPages": pages,
        }

    # ---------------------------- Per page ----------------------------
    async def get_page_stats(
        self, user_id: str, page_id: str, start: Any = None, end: Any = None
    ) -> Dict[str, Any]:
        window = resolve_window(
            start,
            end,
            default_days=self.config.page_stats_window_days,
            now=self.clock(),
            extend_date_only_end=True,
        )
        return await self.db.run(self._page_stats, user_id, page_id, window)

    def _page_stats(self, user_id: str, page_id: str, window: Window) -> Dict[str, Any]:
        params = self._params(user_id, window)
        with self.db.read() as conn:
            page = conn.execute(
                "SELECT id FROM pages WHERE id = ? AND user_id = ?", (page_id, user_id)
            ).fetchone()
            if page is None:
                raise NotFoundError(f"Page not found: {page_id}")
            summary = conn.execute(
                f"SELECT COALESCE(SUM(l.duration), 0) AS total, COUNT(*) AS count "
                f"FROM activity_logs l WHERE {WINDOW_FILTER} AND l.page_id = ?",
                (*params, page_id),
            ).fetchone()
            daily = conn.execute(
                f"""
                SELECT date(l.timestamp) AS day, SUM(l.duration) AS total
                FROM activity_logs l
                WHERE {WINDOW_FILTER} AND l.page_id = ?
                GROUP BY day
                ORDER BY day
                """,
                (*params, page_id),
            ).fetchall()
        return {
            "summary": {"totalDuration": summary["total"], "count": summary["count"]},
            "daily": [{"date": row["day"], "duration": row["total"]} for row in daily],
        }

    async def page_activity(self, user_id: str, start: Any, end: Any) -> List[Dict[str, Any]]:
        """Time per page in the window with the project of its first event.

        The project name is None when that first event was uncategorized or
        its project has since been deleted, even if later events matched.
        """
        window = self.resolve(start, end)
        rows = await self._fetch(
            f"""
            SELECT agg.*, pr.name AS project_name
            FROM (
                SELECT
                    l.page_id,
                    SUM(l.duration) AS total,
                    COALESCE(p.title, 'Unknown') AS title,
                    COALESCE(p.url, 'Unknown') AS url,
                    COALESCE(p.domain, 'Unknown') AS domain,
                    (
                        SELECT f.project_id FROM activity_logs f
                        WHERE f.page_id = l.page_id AND f.user_id = l.user_id
                          AND f.timestamp >= ? AND f.timestamp <= ?
                        ORDER BY f.timestamp, f.rowid
                        LIMIT 1
                    ) AS first_project_id
                FROM activity_logs l
                LEFT JOIN pages p ON p.id = l.page_id
                WHERE {WINDOW_FILTER}
                GROUP BY l.page_id
            ) agg
            LEFT JOIN projects pr ON pr.id = agg.first_project_id
            ORDER BY agg.total DESC, agg.url
            """,
            (to_db_timestamp(window[0]), to_db_timestamp(window[1]), *self._params(user_id, window)),
        )
        return [
            {
                "pageId": row["page_id"],
                "title": row["title"],
                "url": row["url"],
                "domain": row["domain"],
                "totalDuration": row["total"],
                "projectName": row["project_name"],
            }
            for row in rows
        ]

    async def todays_activity(self, user_id: str) -> List[Dict[str, Any]]:
        now = self.clock()
        start = start_of_day(now)
        return await self.page_activity(user_id, start, start + timedelta(days=1, microseconds=-1))

    async def this_weeks_activity(self, user_id: str) -> List[Dict[str, Any]]:
        # Last 7 days including today
        today = start_of_day(self.clock())
        return await self.page_activity(
            user_id, today - timedelta(days=6), today + timedelta(days=1, microseconds=-1)
        )


def build_heatmap(rows: List[Any], top_n: int = 5) -> List[Dict[str, Any]]:
    """Fold (hour, day_of_week, page) rows into sparse heatmap buckets.

    Each bucket carries its total and its ``top_n`` URLs by duration.
    """
    buckets: Dict[Tuple[int, int], Dict[str, Any]] = defaultdict(
        lambda: {"totalDuration": 0, "urls": defaultdict(lambda: {"title": None, "totalDuration": 0})}
    )
    for row in rows:
        bucket = buckets[(row["hour"], row["day_of_week"])]
        bucket["totalDuration"] += row["total"]
        entry = bucket["urls"][row["url"]]
        entry["title"] = row["title"]
        entry["totalDuration"] += row["total"]

    cells = []
    for (hour, day_of_week), bucket in sorted(buckets.items(), key=lambda kv: (kv[0][1], kv[0][0])):
        ranked = sorted(
            bucket["urls"].items(), key=lambda kv: (-kv[1]["totalDuration"], kv[0])
        )
        cells.append(
            {
                "hour": hour,
                "dayOfWeek": day_of_week,
                "totalDuration": bucket["totalDuration"],
                "topUrls": [
                    {"url": url, "title": info["title"], "totalDuration": info["totalDuration"]}
                    for url, info in ranked[:top_n]
                ],
            }
        )
    return cells
