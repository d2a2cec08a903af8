"""SQLite-backed store for captured items.

Items are what the capture flow produces and the search flow consumes. List
and dict fields (metadata, keywords, tags, voice) are stored as JSON text.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import settings
from services.errors import ItemNotFoundError

logger = logging.getLogger(__name__)

# Content types an item can be classified as
CONTENT_TYPES = (
    "article", "product", "video", "todo", "quote", "image",
    "screenshot", "diagram", "meme", "book", "link", "note",
    "design", "code",
)


class ItemStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Item:
    """A captured piece of content and its classification."""

    id: str
    type: str = "note"
    raw_content: str = ""
    url: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    keywords: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    image: Optional[str] = None
    voice: Optional[Dict[str, Any]] = None
    status: str = ItemStatus.READY.value
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)

    def to_api(self) -> Dict[str, Any]:
        """Shape used by the HTTP API and by the search filters."""

        return {
            "id": self.id,
            "type": self.type,
            "rawContent": self.raw_content,
            "url": self.url,
            "metadata": dict(self.metadata),
            "keywords": list(self.keywords),
            "tags": list(self.tags),
            "image": self.image,
            "voice": self.voice,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


# Item attribute -> column; JSON columns are encoded on the way in
_COLUMNS = {
    "type": "type",
    "raw_content": "raw_content",
    "url": "url",
    "metadata": "metadata",
    "keywords": "keywords",
    "tags": "tags",
    "image": "image",
    "voice": "voice",
    "status": "status",
}
_JSON_COLUMNS = {"metadata", "keywords", "tags", "voice"}


def new_item_id() -> str:
    return uuid.uuid4().hex


class ItemRepository:
    """Create / update / find / delete items in SQLite."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = str(db_path or settings.db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._ensure_table()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_table(self) -> None:
        conn = self._connect()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                type TEXT NOT NULL DEFAULT 'note',
                raw_content TEXT NOT NULL DEFAULT '',
                url TEXT,
                metadata TEXT,
                keywords TEXT,
                tags TEXT,
                image TEXT,
                voice TEXT,
                status TEXT NOT NULL DEFAULT 'ready',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_items_type_created ON items (type, created_at DESC)"
        )
        conn.commit()
        conn.close()

    def _row_to_item(self, row: sqlite3.Row) -> Item:
        return Item(
            id=row["id"],
            type=row["type"],
            raw_content=row["raw_content"] or "",
            url=row["url"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            keywords=json.loads(row["keywords"]) if row["keywords"] else [],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            image=row["image"],
            voice=json.loads(row["voice"]) if row["voice"] else None,
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create(self, item: Item) -> Item:
        conn = self._connect()
        conn.execute(
            """
            INSERT INTO items (
                id, type, raw_content, url, metadata, keywords, tags,
                image, voice, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.type,
                item.raw_content,
                item.url,
                json.dumps(item.metadata),
                json.dumps(item.keywords),
                json.dumps(item.tags),
                item.image,
                json.dumps(item.voice) if item.voice is not None else None,
                item.status,
                item.created_at,
                item.updated_at,
            ),
        )
        conn.commit()
        conn.close()
        return item

    def update(self, item_id: str, **changes: Any) -> Item:
        """Overwrite the given fields and refresh ``updated_at``."""

        unknown = set(changes) - set(_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown item fields: {', '.join(sorted(unknown))}")

        assignments = []
        values: List[Any] = []
        for attr, value in changes.items():
            column = _COLUMNS[attr]
            if column in _JSON_COLUMNS and value is not None:
                value = json.dumps(value)
            assignments.append(f"{column} = ?")
            values.append(value)
        assignments.append("updated_at = ?")
        values.append(_now_iso())

        conn = self._connect()
        cur = conn.execute(
            f"UPDATE items SET {', '.join(assignments)} WHERE id = ?",
            (*values, item_id),
        )
        conn.commit()
        conn.close()
        if cur.rowcount == 0:
            raise ItemNotFoundError(f"Item not found: {item_id}")
        return self.get(item_id)

    def get(self, item_id: str) -> Optional[Item]:
        conn = self._connect()
        row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_item(row)

    def list(self, item_type: Optional[str] = None, limit: Optional[int] = None) -> List[Item]:
        """Items newest first, optionally of one type."""

        query = "SELECT * FROM items"
        params: List[Any] = []
        if item_type:
            query += " WHERE type = ?"
            params.append(item_type)
        query += " ORDER BY created_at DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        conn = self._connect()
        rows = conn.execute(query, params).fetchall()
        conn.close()
        return [self._row_to_item(row) for row in rows]

    def delete(self, item_id: str) -> bool:
        conn = self._connect()
        cur = conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
        conn.commit()
        conn.close()
        return cur.rowcount > 0

    def count(self) -> int:
        conn = self._connect()
        total = conn.execute("SELECT COUNT(*) FROM items").fetchone()[0]
        conn.close()
        return total

    def stats(self) -> Dict[str, Any]:
        conn = self._connect()
        by_type = {
            row["type"]: row["n"]
            for row in conn.execute("SELECT type, COUNT(*) AS n FROM items GROUP BY type")
        }
        bounds = conn.execute(
            "SELECT MAX(created_at) AS latest, MIN(created_at) AS oldest FROM items"
        ).fetchone()
        conn.close()
        return {
            "total": sum(by_type.values()),
            "byType": by_type,
            "latestDate": bounds["latest"],
            "oldestDate": bounds["oldest"],
        }
