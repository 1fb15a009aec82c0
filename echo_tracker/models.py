"""Records persisted in the tracker store and their JSON shapes."""
from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from echo_tracker.utils.datetime_utils import format_iso, from_db_timestamp


class RuleKind(str, Enum):
    DOMAIN = "domain"
    URL_CONTAINS = "url_contains"
    MANUAL_URL = "manual_url"


@dataclass(frozen=True)
class ProjectRule:
    kind: RuleKind
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.kind.value, "value": self.value}


@dataclass
class Project:
    id: str
    user_id: str
    name: str
    color: str
    rules: List[ProjectRule]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Project":
        rules = [
            ProjectRule(RuleKind(item["type"]), item["value"])
            for item in json.loads(row["rules"] or "[]")
        ]
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            color=row["color"],
            rules=rules,
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "rules": [rule.to_dict() for rule in self.rules],
            "createdAt": format_iso(self.created_at),
            "updatedAt": format_iso(self.updated_at),
        }


@dataclass
class PageAnnotation:
    """Classification slot reserved for later inference; never computed here."""

    productivity_label: Optional[str] = None
    confidence: Optional[float] = None
    embedding: Optional[List[float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productivityLabel": self.productivity_label,
            "confidence": self.confidence,
            "embedding": self.embedding,
        }


@dataclass
class Page:
    id: str
    user_id: str
    url: str
    domain: str
    title: str
    description: Optional[str]
    first_seen_at: datetime
    last_seen_at: datetime
    ai: PageAnnotation = field(default_factory=PageAnnotation)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Page":
        embedding = row["ai_embedding"]
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            url=row["url"],
            domain=row["domain"],
            title=row["title"],
            description=row["description"],
            first_seen_at=from_db_timestamp(row["first_seen_at"]),
            last_seen_at=from_db_timestamp(row["last_seen_at"]),
            ai=PageAnnotation(
                productivity_label=row["ai_productivity_label"],
                confidence=row["ai_confidence"],
                embedding=json.loads(embedding) if embedding else None,
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "url": self.url,
            "domain": self.domain,
            "title": self.title,
            "description": self.description,
            "firstSeenAt": format_iso(self.first_seen_at),
            "lastSeenAt": format_iso(self.last_seen_at),
        }

    def summary(self) -> Dict[str, str]:
        return {"title": self.title, "url": self.url, "domain": self.domain}


@dataclass(frozen=True)
class SourceInfo:
    """Where an event came from. Informational only, never aggregated on."""

    type: str = "extension"
    device_name: Optional[str] = None
    client_id: Optional[str] = None

    @classmethod
    def from_payload(
        cls, payload: Optional[Dict[str, Any]], default_type: str = "extension"
    ) -> "SourceInfo":
        payload = payload or {}
        return cls(
            type=payload.get("type") or default_type,
            device_name=payload.get("deviceName") or None,
            client_id=payload.get("clientId") or None,
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "type": self.type,
            "deviceName": self.device_name,
            "clientId": self.client_id,
        }


@dataclass(frozen=True)
class ActivityLog:
    id: str
    user_id: str
    page_id: str
    timestamp: datetime
    duration: int
    domain: str
    project_id: Optional[str]
    source: SourceInfo

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActivityLog":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            page_id=row["page_id"],
            timestamp=from_db_timestamp(row["timestamp"]),
            duration=row["duration"],
            domain=row["domain"],
            project_id=row["project_id"],
            source=SourceInfo(
                type=row["source_type"],
                device_name=row["source_device_name"],
                client_id=row["source_client_id"],
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_iso(self.timestamp),
            "duration": self.duration,
            "pageId": self.page_id,
            "metadata": {
                "userId": self.user_id,
                "domain": self.domain,
                "projectId": self.project_id,
                "source": self.source.to_dict(),
            },
        }


@dataclass
class User:
    id: str
    username: str
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(
            id=row["id"],
            username=row["username"],
            created_at=from_db_timestamp(row["created_at"]),
        )
