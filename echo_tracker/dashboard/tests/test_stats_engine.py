#!/usr/bin/env python3
"""
Tests for the Dashboard Stats Engine
====================================
Window inclusivity, rollups, heatmap bucketing and per-page stats.

Run with: pytest echo_tracker/dashboard/tests/test_stats_engine.py -v
"""

import asyncio

import pytest

from echo_tracker.dashboard.engines.stats_engine import build_heatmap
from echo_tracker.errors import NotFoundError

MONDAY_START = "2024-01-15T00:00:00Z"
MONDAY_END = "2024-01-15T23:59:59Z"


def _ingest(activity, user_id, url, duration, timestamp, title=None):
    payload = {"url": url, "title": title or url, "duration": duration, "timestamp": timestamp}
    return asyncio.run(activity.ingest(user_id, payload))


class TestGetStats:
    def test_single_event_scenario(self, activity, stats, user_id):
        _ingest(activity, user_id, "https://github.com/acme", 1800, "2024-01-15T10:00:00Z", "Acme")

        result = asyncio.run(stats.get_stats(user_id, MONDAY_START, MONDAY_END))

        assert result["totalDuration"] == 1800
        assert result["byDomain"] == [{"domain": "github.com", "totalDuration": 1800}]
        assert result["heatmap"] == [
            {
                "hour": 10,
                "dayOfWeek": 2,
                "totalDuration": 1800,
                "topUrls": [{"url": "https://github.com/acme", "title": "Acme", "totalDuration": 1800}],
            }
        ]
        assert result["topPages"][0]["title"] == "Acme"
        assert result["byProject"] == [
            {
                "projectId": None,
                "projectName": "Uncategorized",
                "color": "#6b7280",
                "totalDuration": 1800,
            }
        ]

    def test_window_is_inclusive_on_both_ends(self, activity, stats, user_id):
        _ingest(activity, user_id, "https://a.com/", 10, "2024-01-15T00:00:00Z")
        _ingest(activity, user_id, "https://a.com/", 20, "2024-01-15T23:59:59Z")
        _ingest(activity, user_id, "https://a.com/", 40, "2024-01-16T00:00:00Z")
        _ingest(activity, user_id, "https://a.com/", 80, "2024-01-14T23:59:59.999999Z")

        result = asyncio.run(stats.get_stats(user_id, MONDAY_START, MONDAY_END))
        assert result["totalDuration"] == 30

    def test_empty_window_returns_zeros(self, stats, user_id):
        result = asyncio.run(stats.get_stats(user_id, MONDAY_START, MONDAY_END))
        assert result["totalDuration"] == 0
        for key in ("byProject", "byDomain", "heatmap", "topPages"):
            assert result[key] == []

    def test_default_window_is_trailing_week(self, stats, user_id):
        result = asyncio.run(stats.get_stats(user_id))
        assert result["startDate"] == "2024-01-10T00:00:00Z"
        assert result["endDate"] == "2024-01-17T12:00:00Z"

    def test_out_of_range_bound_uses_default_window(self, stats, user_id):
        result = asyncio.run(stats.get_stats(user_id, "0001-01-01T00:00:00+01:00", "2024-01-01"))
        assert result["startDate"] == "2024-01-10T00:00:00Z"
        assert result["endDate"] == "2024-01-17T12:00:00Z"

    def test_by_project_uses_frozen_attribution(self, activity, projects, stats, user_id):
        project = asyncio.run(
            projects.create_project(user_id, "Acme", "#ff0000", [{"type": "domain", "value": "github.com"}])
        )
        _ingest(activity, user_id, "https://github.com/acme", 600, "2024-01-15T09:00:00Z")
        _ingest(activity, user_id, "https://news.com/", 300, "2024-01-15T09:30:00Z")

        result = asyncio.run(stats.get_stats(user_id, MONDAY_START, MONDAY_END))
        assert [(row["projectName"], row["totalDuration"]) for row in result["byProject"]] == [
            ("Acme", 600),
            ("Uncategorized", 300),
        ]
        assert result["byProject"][0]["color"] == "#ff0000"

        asyncio.run(projects.delete_project(user_id, project.id))
        result = asyncio.run(stats.get_stats(user_id, MONDAY_START, MONDAY_END))
        orphan = result["byProject"][0]
        assert orphan["projectId"] == project.id
        assert orphan["projectName"] == "Uncategorized"

    def test_top_domains_capped_at_ten(self, activity, stats, user_id):
        for i in range(12):
            _ingest(activity, user_id, f"https://site{i:02d}.com/", 100 + i, "2024-01-15T12:00:00Z")

        result = asyncio.run(stats.get_stats(user_id, MONDAY_START, MONDAY_END))
        assert len(result["byDomain"]) == 10
        assert result["byDomain"][0] == {"domain": "site11.com", "totalDuration": 111}
        assert result["totalDuration"] == sum(100 + i for i in range(12))

    def test_heatmap_bucket_accumulates_and_keeps_top_five(self, activity, stats, user_id):
        for i in range(7):
            _ingest(activity, user_id, f"https://p{i}.com/", 10 * (i + 1), f"2024-01-15T14:{i:02d}:00Z")
        # Sunday lands on dayOfWeek 1
        _ingest(activity, user_id, "https://p0.com/", 5, "2024-01-14T23:30:00Z")

        result = asyncio.run(stats.get_stats(user_id, "2024-01-14T00:00:00Z", MONDAY_END))
        sunday, monday = result["heatmap"]
        assert (sunday["dayOfWeek"], sunday["hour"], sunday["totalDuration"]) == (1, 23, 5)
        assert (monday["dayOfWeek"], monday["hour"]) == (2, 14)
        assert monday["totalDuration"] == sum(10 * (i + 1) for i in range(7))
        assert [u["url"] for u in monday["topUrls"]] == [
            "https://p6.com/",
            "https://p5.com/",
            "https://p4.com/",
            "https://p3.com/",
            "https://p2.com/",
        ]

    def test_users_are_isolated(self, activity, stats, users, user_id):
        other, _ = users.create_user("bob")
        _ingest(activity, other.id, "https://a.com/", 100, "2024-01-15T10:00:00Z")
        result = asyncio.run(stats.get_stats(user_id, MONDAY_START, MONDAY_END))
        assert result["totalDuration"] == 0


class TestBuildHeatmap:
    def test_same_url_rows_merge(self):
        rows = [
            {"hour": 9, "day_of_week": 3, "url": "https://a.com/", "title": "A", "total": 10},
            {"hour": 9, "day_of_week": 3, "url": "https://a.com/", "title": "A", "total": 5},
            {"hour": 8, "day_of_week": 3, "url": "https://b.com/", "title": "B", "total": 1},
        ]
        cells = build_heatmap(rows, top_n=5)
        assert [(c["hour"], c["totalDuration"]) for c in cells] == [(8, 1), (9, 15)]
        assert cells[1]["topUrls"] == [{"url": "https://a.com/", "title": "A", "totalDuration": 15}]


class TestPageStats:
    def test_daily_series_and_summary(self, activity, stats, user_id):
        first = _ingest(activity, user_id, "https://a.com/", 100, "2024-01-14T10:00:00Z")
        _ingest(activity, user_id, "https://a.com/", 50, "2024-01-15T08:00:00Z")
        _ingest(activity, user_id, "https://a.com/", 25, "2024-01-15T20:00:00Z")
        _ingest(activity, user_id, "https://other.com/", 999, "2024-01-15T20:00:00Z")

        result = asyncio.run(
            stats.get_page_stats(user_id, first["pageId"], "2024-01-01", "2024-01-15")
        )
        assert result["summary"] == {"totalDuration": 175, "count": 3}
        assert result["daily"] == [
            {"date": "2024-01-14", "duration": 100},
            {"date": "2024-01-15", "duration": 75},
        ]

    def test_page_with_no_activity_in_window(self, activity, stats, user_id):
        first = _ingest(activity, user_id, "https://a.com/", 100, "2023-06-01T10:00:00Z")
        result = asyncio.run(stats.get_page_stats(user_id, first["pageId"]))
        assert result == {"summary": {"totalDuration": 0, "count": 0}, "daily": []}

    def test_unknown_page(self, stats, user_id):
        with pytest.raises(NotFoundError):
            asyncio.run(stats.get_page_stats(user_id, "missing"))

    def test_other_users_page_is_not_found(self, activity, stats, users, user_id):
        other, _ = users.create_user("bob")
        theirs = _ingest(activity, other.id, "https://a.com/", 100, "2024-01-15T10:00:00Z")
        with pytest.raises(NotFoundError):
            asyncio.run(stats.get_page_stats(user_id, theirs["pageId"]))


class TestAssistantActivity:
    def test_today_and_week(self, activity, projects, stats, user_id):
        asyncio.run(
            projects.create_project(user_id, "Acme", "#ff0000", [{"type": "domain", "value": "github.com"}])
        )
        _ingest(activity, user_id, "https://github.com/acme", 300, "2024-01-17T08:00:00Z")
        _ingest(activity, user_id, "https://news.com/", 200, "2024-01-11T01:00:00Z")
        _ingest(activity, user_id, "https://old.com/", 100, "2024-01-10T23:00:00Z")

        today = asyncio.run(stats.todays_activity(user_id))
        assert [(row["url"], row["projectName"]) for row in today] == [
            ("https://github.com/acme", "Acme")
        ]

        week = asyncio.run(stats.this_weeks_activity(user_id))
        assert [(row["domain"], row["totalDuration"]) for row in week] == [
            ("github.com", 300),
            ("news.com", 200),
        ]
        assert week[1]["projectName"] is None

    def test_project_name_follows_first_event(self, activity, projects, stats, user_id):
        _ingest(activity, user_id, "https://github.com/acme", 100, "2024-01-17T08:00:00Z")
        asyncio.run(
            projects.create_project(user_id, "Acme", "#ff0000", [{"type": "domain", "value": "github.com"}])
        )
        _ingest(activity, user_id, "https://github.com/acme", 200, "2024-01-17T09:00:00Z")

        today = asyncio.run(stats.todays_activity(user_id))
        assert today[0]["totalDuration"] == 300
        assert today[0]["projectName"] is None
