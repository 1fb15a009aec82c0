"""Tests for event validation and the ingestion pipeline."""
import asyncio
import json
import logging
import sqlite3
from datetime import datetime

import pytest

from echo_tracker.errors import StoreError, ValidationError
from echo_tracker.services.activity_service import validate_payload
from echo_tracker.utils.log_setup import JsonLineFormatter


def _payload(**overrides):
    payload = {
        "url": "https://github.com/acme/repo",
        "title": "acme/repo",
        "duration": 1800,
        "timestamp": "2024-01-15T10:00:00Z",
    }
    payload.update(overrides)
    return payload


class TestValidatePayload:
    def test_normalizes_fields(self):
        event = validate_payload(_payload(duration=12.6, description=""))
        assert event["duration"] == 13
        assert event["timestamp"] == datetime(2024, 1, 15, 10, 0)
        assert event["description"] is None

    @pytest.mark.parametrize("missing", ["url", "title", "duration", "timestamp"])
    def test_missing_required_field(self, missing):
        payload = _payload()
        del payload[missing]
        with pytest.raises(ValidationError) as excinfo:
            validate_payload(payload)
        assert excinfo.value.details == {"missing": [missing]}

    @pytest.mark.parametrize(
        "overrides",
        [
            {"duration": -1},
            {"duration": True},
            {"duration": "30"},
            {"duration": float("nan")},
            {"duration": float("inf")},
            {"duration": 1e19},
            {"duration": 2**63},
            {"duration": 10**400},
            {"timestamp": "last tuesday"},
            {"timestamp": "0001-01-01T00:00:00+01:00"},
            {"timestamp": "9999-12-31T23:00:00-05:00"},
            {"url": 42},
            {"url": "http://[::1"},
            {"title": ["x"]},
            {"description": 5},
            {"source": "extension"},
        ],
    )
    def test_rejected(self, overrides):
        with pytest.raises(ValidationError):
            validate_payload(_payload(**overrides))

    def test_zero_duration_accepted(self):
        assert validate_payload(_payload(duration=0))["duration"] == 0


class TestIngest:
    def test_creates_page_and_log(self, activity, pages, user_id):
        result = asyncio.run(activity.ingest(user_id, _payload()))
        assert result["logId"]
        assert result["projectId"] is None

        page = asyncio.run(pages.get_page(user_id, result["pageId"]))
        assert page.domain == "github.com"
        assert page.title == "acme/repo"

    def test_source_defaults_to_extension(self, activity, user_id):
        log = asyncio.run(activity.create_activity_log(user_id, _payload()))
        assert log.source.type == "extension"
        assert log.source.device_name is None
        assert log.source.client_id is None

    def test_source_fields_kept(self, activity, user_id):
        source = {"type": "desktop", "deviceName": "laptop", "clientId": "c-1"}
        log = asyncio.run(activity.create_activity_log(user_id, _payload(source=source)))
        assert log.source.to_dict() == source

    def test_identical_events_are_not_deduplicated(self, activity, user_id):
        first = asyncio.run(activity.ingest(user_id, _payload()))
        second = asyncio.run(activity.ingest(user_id, _payload()))
        assert first["logId"] != second["logId"]
        assert first["pageId"] == second["pageId"]
        recent = asyncio.run(activity.get_recent_activity(user_id))
        assert len(recent) == 2

    def test_project_resolved_at_ingest_time(self, activity, projects, user_id):
        before = asyncio.run(activity.ingest(user_id, _payload()))
        project = asyncio.run(
            projects.create_project(
                user_id, "Acme", "#ff0000", [{"type": "domain", "value": "github.com"}]
            )
        )
        after = asyncio.run(activity.ingest(user_id, _payload()))

        assert before["projectId"] is None
        assert after["projectId"] == project.id

        # Later rule edits and deletes never rewrite history
        asyncio.run(projects.replace_rules(user_id, project.id, []))
        asyncio.run(projects.delete_project(user_id, project.id))
        recent = asyncio.run(activity.get_recent_activity(user_id))
        project_ids = sorted(str(item["metadata"]["projectId"]) for item in recent)
        assert project_ids == sorted([str(None), project.id])

    def test_failed_insert_rolls_back_page_upsert(self, activity, pages, user_id, monkeypatch):
        def broken_insert(conn, log):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(activity, "_insert_log", broken_insert)
        with pytest.raises(StoreError):
            asyncio.run(activity.ingest(user_id, _payload()))
        assert asyncio.run(pages.list_pages(user_id))["total"] == 0

    def test_validation_failure_writes_nothing(self, activity, pages, user_id):
        with pytest.raises(ValidationError):
            asyncio.run(activity.ingest(user_id, _payload(duration=-5)))
        assert asyncio.run(pages.list_pages(user_id))["total"] == 0

    def test_ingest_log_carries_structured_fields(self, activity, user_id, caplog):
        caplog.set_level(logging.INFO, logger="echo_tracker")
        result = asyncio.run(activity.ingest(user_id, _payload()))

        record = next(r for r in caplog.records if r.getMessage().startswith("Activity log created"))
        assert record.userId == user_id
        assert record.meta == {
            "logId": result["logId"],
            "pageId": result["pageId"],
            "projectId": None,
        }
        entry = json.loads(JsonLineFormatter().format(record))
        assert entry["userId"] == user_id
        assert entry["meta"]["pageId"] == result["pageId"]


class TestRecentActivity:
    def test_newest_first_with_page_summary(self, activity, user_id):
        asyncio.run(activity.ingest(user_id, _payload(timestamp="2024-01-15T09:00:00Z")))
        asyncio.run(
            activity.ingest(
                user_id,
                _payload(url="https://news.ycombinator.com/", title="HN", timestamp="2024-01-15T11:00:00Z"),
            )
        )
        recent = asyncio.run(activity.get_recent_activity(user_id))
        assert [item["timestamp"] for item in recent] == [
            "2024-01-15T11:00:00Z",
            "2024-01-15T09:00:00Z",
        ]
        assert recent[0]["page"] == {
            "title": "HN",
            "url": "https://news.ycombinator.com/",
            "domain": "news.ycombinator.com",
        }
        assert recent[0]["metadata"]["source"]["type"] == "extension"

    def test_limit(self, activity, user_id):
        for hour in range(5):
            asyncio.run(activity.ingest(user_id, _payload(timestamp=f"2024-01-15T0{hour}:00:00Z")))
        assert len(asyncio.run(activity.get_recent_activity(user_id, limit=3))) == 3

    def test_other_users_activity_hidden(self, activity, users, user_id):
        other, _ = users.create_user("bob")
        asyncio.run(activity.ingest(other.id, _payload()))
        assert asyncio.run(activity.get_recent_activity(user_id)) == []
