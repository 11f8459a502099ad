from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, List, Optional, Sequence

import aiosqlite


@dataclass
class UserRecord:
    id: int
    username: str
    email: str
    password_hash: str
    created_at: str


@dataclass
class SessionRecord:
    id: int
    user_id: int
    token_hash: str
    created_at: str
    expires_at: str
    last_seen_at: str
    revoked_at: Optional[str]


@dataclass
class ImageRecord:
    id: int
    title: str
    description: str
    tags: str
    orientation: str
    filename: str
    url: str
    user_id: int
    username: str
    created_at: str


IMAGE_COLUMNS = (
    "id, title, description, tags, orientation, filename, url, "
    "user_id, username, created_at"
)


def _like_pattern(search: str) -> str:
    """Turn a search string into a LIKE pattern that matches it literally."""
    escaped = (
        search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return f"%{escaped}%"


class Database:
    """Lightweight wrapper around aiosqlite for users, sessions and images."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection with foreign-key support enabled."""
        async with aiosqlite.connect(self.db_path) as conn:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA foreign_keys = ON;")
            yield conn

    async def initialize(self) -> None:
        """Create directories and ensure every table exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connection() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    token_hash TEXT NOT NULL UNIQUE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    last_seen_at TEXT NOT NULL,
                    revoked_at TEXT,
                    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS images (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    tags TEXT,
                    orientation TEXT,
                    filename TEXT NOT NULL,
                    url TEXT NOT NULL,
                    user_id INTEGER NOT NULL,
                    username TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
                )
                """
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_images_created_at ON images(created_at)"
            )
            await conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_images_user_id ON images(user_id)"
            )
            await conn.commit()

    async def fetch_one(
        self, query: str, params: Sequence[Any]
    ) -> Optional[aiosqlite.Row]:
        """Execute a single-row SELECT statement with given parameters."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
            return row

    async def fetch_all(
        self, query: str, params: Sequence[Any]
    ) -> List[aiosqlite.Row]:
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return list(rows)

    async def execute(self, query: str, params: Sequence[Any]) -> int:
        """Run a write statement and return the number of affected rows."""
        async with self._connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.rowcount

    # Users

    async def fetch_user_by_email(self, email: str) -> Optional[UserRecord]:
        """Find a user row by their normalized (lowercased) email address."""
        row = await self.fetch_one(
            "SELECT id, username, email, password_hash, created_at FROM users WHERE email = ?",
            (email.strip().lower(),),
        )
        return UserRecord(**row) if row else None

    async def fetch_user_by_id(self, user_id: int) -> Optional[UserRecord]:
        """Retrieve a user record directly from its primary key."""
        row = await self.fetch_one(
            "SELECT id, username, email, password_hash, created_at FROM users WHERE id = ?",
            (user_id,),
        )
        return UserRecord(**row) if row else None

    async def count_users(self) -> int:
        row = await self.fetch_one("SELECT COUNT(*) AS total FROM users", ())
        return int(row["total"]) if row else 0

    async def create_user(
        self, username: str, email: str, password_hash: str
    ) -> UserRecord:
        """Insert a new user and return the constructed dataclass.

        Raises aiosqlite.IntegrityError when the email is already taken.
        """
        created_at = datetime.utcnow().isoformat()
        normalized = email.strip().lower()
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO users (username, email, password_hash, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (username, normalized, password_hash, created_at),
            )
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to read the inserted user ID.")
        return UserRecord(
            id=int(lastrowid),
            username=username,
            email=normalized,
            password_hash=password_hash,
            created_at=created_at,
        )

    # Sessions

    async def create_session(
        self, *, user_id: int, token_hash: str, expires_at: str
    ) -> SessionRecord:
        """Insert a new session row for a user."""
        created_at = datetime.utcnow().isoformat()
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO sessions (
                    user_id, token_hash, created_at, expires_at, last_seen_at, revoked_at
                )
                VALUES (?, ?, ?, ?, ?, NULL)
                """,
                (user_id, token_hash, created_at, expires_at, created_at),
            )
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to read the inserted session ID.")
        return SessionRecord(
            id=int(lastrowid),
            user_id=user_id,
            token_hash=token_hash,
            created_at=created_at,
            expires_at=expires_at,
            last_seen_at=created_at,
            revoked_at=None,
        )

    async def fetch_session_by_token_hash(
        self, token_hash: str
    ) -> Optional[SessionRecord]:
        """Retrieve a session by its hashed token value."""
        row = await self.fetch_one(
            """
            SELECT id, user_id, token_hash, created_at, expires_at,
                   last_seen_at, revoked_at
            FROM sessions
            WHERE token_hash = ?
            """,
            (token_hash,),
        )
        return SessionRecord(**row) if row else None

    async def touch_session(self, session_id: int, last_seen_at: str) -> None:
        """Update the session activity timestamp."""
        await self.execute(
            "UPDATE sessions SET last_seen_at = ? WHERE id = ?",
            (last_seen_at, session_id),
        )

    async def revoke_session(self, session_id: int, revoked_at: str) -> None:
        """Mark a session as revoked."""
        await self.execute(
            "UPDATE sessions SET revoked_at = ? WHERE id = ?",
            (revoked_at, session_id),
        )

    async def revoke_session_by_hash(self, token_hash: str, revoked_at: str) -> None:
        """Mark a session as revoked by its token hash."""
        await self.execute(
            "UPDATE sessions SET revoked_at = ? WHERE token_hash = ? AND revoked_at IS NULL",
            (revoked_at, token_hash),
        )

    # Images

    async def create_image(
        self,
        *,
        title: str,
        description: str,
        tags: str,
        orientation: str,
        filename: str,
        url: str,
        user_id: int,
        username: str,
    ) -> ImageRecord:
        """Insert image metadata and return the constructed dataclass."""
        created_at = datetime.utcnow().isoformat()
        async with self._connection() as conn:
            cursor = await conn.execute(
                """
                INSERT INTO images (
                    title, description, tags, orientation, filename, url,
                    user_id, username, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    title,
                    description,
                    tags,
                    orientation,
                    filename,
                    url,
                    user_id,
                    username,
                    created_at,
                ),
            )
            await conn.commit()
            lastrowid = cursor.lastrowid
        if lastrowid is None:
            raise RuntimeError("Failed to read the inserted image ID.")
        return ImageRecord(
            id=int(lastrowid),
            title=title,
            description=description,
            tags=tags,
            orientation=orientation,
            filename=filename,
            url=url,
            user_id=user_id,
            username=username,
            created_at=created_at,
        )

    async def fetch_image(self, image_id: int) -> Optional[ImageRecord]:
        row = await self.fetch_one(
            f"SELECT {IMAGE_COLUMNS} FROM images WHERE id = ?",
            (image_id,),
        )
        return _image_from_row(row) if row else None

    async def list_images(
        self, *, search: str = "", limit: int, offset: int = 0
    ) -> List[ImageRecord]:
        """Newest-first page of images, optionally filtered on title or tags."""
        if search:
            pattern = _like_pattern(search)
            rows = await self.fetch_all(
                f"""
                SELECT {IMAGE_COLUMNS} FROM images
                WHERE title LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\'
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (pattern, pattern, limit, offset),
            )
        else:
            rows = await self.fetch_all(
                f"""
                SELECT {IMAGE_COLUMNS} FROM images
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                (limit, offset),
            )
        return [_image_from_row(row) for row in rows]

    async def count_images(self, *, search: str = "") -> int:
        if search:
            pattern = _like_pattern(search)
            row = await self.fetch_one(
                """
                SELECT COUNT(*) AS total FROM images
                WHERE title LIKE ? ESCAPE '\\' OR tags LIKE ? ESCAPE '\\'
                """,
                (pattern, pattern),
            )
        else:
            row = await self.fetch_one("SELECT COUNT(*) AS total FROM images", ())
        return int(row["total"]) if row else 0

    async def list_images_for_user(self, user_id: int) -> List[ImageRecord]:
        rows = await self.fetch_all(
            f"""
            SELECT {IMAGE_COLUMNS} FROM images
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            """,
            (user_id,),
        )
        return [_image_from_row(row) for row in rows]

    async def update_image(
        self,
        image_id: int,
        user_id: int,
        *,
        title: str,
        description: str,
        tags: str,
    ) -> bool:
        """Update editable fields; returns False when no owned row matched."""
        changed = await self.execute(
            """
            UPDATE images SET title = ?, description = ?, tags = ?
            WHERE id = ? AND user_id = ?
            """,
            (title, description, tags, image_id, user_id),
        )
        return changed > 0

    async def delete_image(self, image_id: int) -> bool:
        changed = await self.execute("DELETE FROM images WHERE id = ?", (image_id,))
        return changed > 0


def _image_from_row(row: aiosqlite.Row) -> ImageRecord:
    record = ImageRecord(**dict(row))
    record.description = record.description or ""
    record.tags = record.tags or ""
    record.orientation = record.orientation or "unknown"
    return record
