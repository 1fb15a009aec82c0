"""Access to the ``users`` table: create users and resolve API tokens to user ids."""

from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Optional, Tuple

from echo_tracker.database import Database, new_id
from echo_tracker.errors import ValidationError
from echo_tracker.models import User
from echo_tracker.utils.datetime_utils import Clock, to_db_timestamp, utcnow

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class UserService:
    def __init__(self, db: Database, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

    def create_user(self, username: str) -> Tuple[User, str]:
        """Insert a user and return it with a freshly issued API token.

        Only the token hash is stored; the plain token is returned once.
        """
        if not username or not isinstance(username, str):
            raise ValidationError("username is required")
        token = secrets.token_urlsafe(32)
        user_id = new_id()
        now = to_db_timestamp(self.clock())
        with self.db.transaction() as conn:
            taken = conn.execute(
                "SELECT 1 FROM users WHERE username = ?", (username,)
            ).fetchone()
            if taken:
                raise ValidationError(f"Username already taken: {username}")
            conn.execute(
                "INSERT INTO users (id, username, token_hash, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, username, hash_token(token), now, now),
            )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        logger.info("User created: %s", username)
        return User.from_row(row), token

    def resolve_token(self, token: Optional[str]) -> Optional[str]:
        """User id owning ``token``, or None."""
        if not token:
            return None
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT id FROM users WHERE token_hash = ?", (hash_token(token),)
            ).fetchone()
        return row["id"] if row else None

    async def authenticate(self, token: Optional[str]) -> Optional[str]:
        return await self.db.run(self.resolve_token, token)
