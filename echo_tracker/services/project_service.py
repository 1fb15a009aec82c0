"""
Projects and their categorization rules.

``match_project_rules`` is pure: given projects in the order the caller wants
them tried, it returns the id of the first project owning the first rule that
fires. There is no specificity scoring; order alone decides.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Sequence

from echo_tracker.database import Database, new_id
from echo_tracker.errors import NotFoundError, ValidationError
from echo_tracker.models import Project, ProjectRule, RuleKind
from echo_tracker.utils.datetime_utils import Clock, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)


def rule_matches(rule: ProjectRule, url: str, domain: str) -> bool:
    if rule.kind is RuleKind.DOMAIN:
        return domain == rule.value
    if rule.kind is RuleKind.URL_CONTAINS:
        return rule.value in url
    if rule.kind is RuleKind.MANUAL_URL:
        return url == rule.value
    return False


def match_project_rules(projects: Sequence[Project], url: str, domain: str) -> Optional[str]:
    for project in projects:
        for rule in project.rules:
            if rule_matches(rule, url, domain):
                return project.id
    return None


def parse_rule(raw: Any) -> ProjectRule:
    """Validate one rule given as a ProjectRule or a ``{"type", "value"}`` mapping."""
    if isinstance(raw, ProjectRule):
        kind, value = raw.kind, raw.value
    elif isinstance(raw, dict):
        kind, value = raw.get("type"), raw.get("value")
    else:
        raise ValidationError("Rule must be an object with 'type' and 'value'")
    try:
        kind = RuleKind(kind)
    except ValueError:
        raise ValidationError(
            f"Invalid rule type: {kind}", {"allowed": [k.value for k in RuleKind]}
        ) from None
    if not isinstance(value, str) or not value:
        raise ValidationError("Rule value must be a non-empty string")
    return ProjectRule(kind, value)


def parse_rules(raw_rules: Iterable[Any]) -> List[ProjectRule]:
    return [parse_rule(raw) for raw in raw_rules]


def _rules_json(rules: List[ProjectRule]) -> str:
    return json.dumps([rule.to_dict() for rule in rules])


def fetch_projects_in(conn: sqlite3.Connection, user_id: str) -> List[Project]:
    """All projects of a user, most recently created first."""
    rows = conn.execute(
        "SELECT * FROM projects WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
        (user_id,),
    ).fetchall()
    return [Project.from_row(row) for row in rows]


class ProjectService:
    def __init__(self, db: Database, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    async def create_project(
        self, user_id: str, name: str, color: str, rules: Optional[Iterable[Any]] = None
    ) -> Project:
        if not name or not isinstance(name, str):
            raise ValidationError("Project name is required")
        if not color or not isinstance(color, str):
            raise ValidationError("Project color is required")
        parsed = parse_rules(rules or [])
        return await self.db.run(self._create_project, user_id, name, color, parsed)

    def _create_project(
        self, user_id: str, name: str, color: str, rules: List[ProjectRule]
    ) -> Project:
        project_id = new_id()
        now = to_db_timestamp(self.clock())
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO projects (id, user_id, name, color, rules, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (project_id, user_id, name, color, _rules_json(rules), now, now),
            )
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        logger.info("Project created: user=%s name=%s", user_id, name)
        return Project.from_row(row)

    async def list_projects(self, user_id: str) -> List[Project]:
        return await self.db.run(self._list_projects, user_id)

    def _list_projects(self, user_id: str) -> List[Project]:
        with self.db.read() as conn:
            return fetch_projects_in(conn, user_id)

    async def get_project(self, user_id: str, project_id: str) -> Project:
        return await self.db.run(self._get_project, user_id, project_id)

    def _get_project(self, user_id: str, project_id: str) -> Project:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ? AND user_id = ?", (project_id, user_id)
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return Project.from_row(row)

    async def update_project(
        self,
        user_id: str,
        project_id: str,
        name: Optional[str] = None,
        color: Optional[str] = None,
        rules: Optional[Iterable[Any]] = None,
    ) -> Project:
        updates: Dict[str, Any] = {}
        if name is not None:
            if not isinstance(name, str) or not name:
                raise ValidationError("Project name must be a non-empty string")
            updates["name"] = name
        if color is not None:
            if not isinstance(color, str) or not color:
                raise ValidationError("Project color must be a non-empty string")
            updates["color"] = color
        if rules is not None:
            updates["rules"] = _rules_json(parse_rules(rules))
        if not updates:
            raise ValidationError("No valid updates provided")
        return await self.db.run(self._apply_updates, user_id, project_id, updates)

    def _apply_updates(self, user_id: str, project_id: str, updates: Dict[str, Any]) -> Project:
        updates = {**updates, "updated_at": to_db_timestamp(self.clock())}
        assignments = ", ".join(f"{column} = ?" for column in updates)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE projects SET {assignments} WHERE id = ? AND user_id = ?",
                (*updates.values(), project_id, user_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Project not found: {project_id}")
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        logger.info("Project updated: user=%s project=%s", user_id, project_id)
        return Project.from_row(row)

    async def add_rule(self, user_id: str, project_id: str, rule: Any) -> Project:
        parsed = parse_rule(rule)
        return await self.db.run(self._edit_rules, user_id, project_id, lambda rules: [*rules, parsed])

    async def remove_rule(self, user_id: str, project_id: str, index: int) -> Project:
        if isinstance(index, bool) or not isinstance(index, int):
            raise ValidationError("Rule index must be an integer")

        def drop(rules: List[ProjectRule]) -> List[ProjectRule]:
            if not 0 <= index < len(rules):
                raise ValidationError(
                    f"Rule index {index} out of range", {"ruleCount": len(rules)}
                )
            return [rule for i, rule in enumerate(rules) if i != index]

        return await self.db.run(self._edit_rules, user_id, project_id, drop)

    async def replace_rules(self, user_id: str, project_id: str, rules: Iterable[Any]) -> Project:
        return await self.update_project(user_id, project_id, rules=rules)

    def _edit_rules(self, user_id: str, project_id: str, edit) -> Project:
        # Read-modify-write in one transaction so concurrent edits do not drop rules
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE id = ? AND user_id = ?", (project_id, user_id)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"Project not found: {project_id}")
            rules = edit(Project.from_row(row).rules)
            conn.execute(
                "UPDATE projects SET rules = ?, updated_at = ? WHERE id = ?",
                (_rules_json(rules), to_db_timestamp(self.clock()), project_id),
            )
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        logger.info("Project rules updated: user=%s project=%s", user_id, project_id)
        return Project.from_row(row)

    async def delete_project(self, user_id: str, project_id: str) -> None:
        await self.db.run(self._delete_project, user_id, project_id)

    def _delete_project(self, user_id: str, project_id: str) -> None:
        # Activity logs keep their project_id snapshot
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM projects WHERE id = ? AND user_id = ?", (project_id, user_id)
            )
            deleted = cursor.rowcount
        if deleted == 0:
            raise NotFoundError(f"Project not found: {project_id}")
        logger.info("Project deleted: user=%s project=%s", user_id, project_id)
