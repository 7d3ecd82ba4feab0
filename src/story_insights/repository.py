"""
Persistence boundary for content items.

The surrounding application owns content records. This package reads their
text and writes only the analysis fields:

- ai_status: AnalysisStatus value
- ai_insights: list of insight objects
- last_analyzed: ISO8601 timestamp of the last completed analysis
- analysis_count: number of completed analyses

Implementations:
- InMemoryContentRepository: dict-backed, for tests and embedding
- SqliteContentRepository: aiosqlite-backed `content_items` table
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from .models import (
    AIInsight,
    AnalysisKind,
    AnalysisStatus,
    ContentItem,
    parse_timestamp,
    utc_now,
)


@dataclass
class AnalysisRecord:
    """Analysis fields persisted for one content item."""

    item_id: str
    status: AnalysisStatus = AnalysisStatus.UNANALYZED
    insights: list[AIInsight] = field(default_factory=list)
    last_analyzed: datetime | None = None
    analysis_count: int = 0


class ContentRepository(Protocol):
    async def get(self, item_id: str) -> ContentItem | None: ...

    async def upsert(self, item: ContentItem) -> None: ...

    async def get_record(self, item_id: str) -> AnalysisRecord: ...

    async def set_status(self, item_id: str, status: AnalysisStatus) -> None: ...

    async def replace_insights(
        self, item_id: str, kind: AnalysisKind, insights: list[AIInsight]
    ) -> list[AIInsight]: ...

    async def dismiss_insight(self, item_id: str, insight_id: str) -> bool: ...

    async def clear_insights(self, item_id: str) -> None: ...

    async def list_by_status(self, status: AnalysisStatus) -> list[ContentItem]: ...

    async def history(self, limit: int = 50) -> list[AnalysisRecord]: ...

    async def statistics(self) -> dict[str, Any]: ...


def _merge_insights(
    existing: list[AIInsight], kind: AnalysisKind, new: list[AIInsight]
) -> list[AIInsight]:
    """A new run supersedes prior insights of the same kind."""
    return [i for i in existing if i.kind != kind] + list(new)


def _compute_statistics(rows: list[tuple[AnalysisStatus, AnalysisKind | None, int]]) -> dict[str, Any]:
    analyzed = [r for r in rows if r[0] != AnalysisStatus.UNANALYZED]
    by_status = Counter(r[0].value for r in analyzed)
    by_kind = Counter(r[1].value for r in analyzed if r[1] is not None)
    total_insights = sum(r[2] for r in analyzed)
    return {
        "total_analyzed": len(analyzed),
        "by_status": dict(by_status),
        "by_kind": dict(by_kind),
        "average_insights_per_item": total_insights / len(analyzed) if analyzed else 0.0,
    }


class InMemoryContentRepository:
    """Dict-backed repository."""

    def __init__(self, items: list[ContentItem] | None = None):
        self._items: dict[str, ContentItem] = {}
        self._records: dict[str, AnalysisRecord] = {}
        for item in items or []:
            self._items[item.id] = item
            self._records[item.id] = AnalysisRecord(item.id, item.status)

    def _record(self, item_id: str) -> AnalysisRecord:
        if item_id not in self._records:
            self._records[item_id] = AnalysisRecord(item_id)
        return self._records[item_id]

    async def get(self, item_id: str) -> ContentItem | None:
        item = self._items.get(item_id)
        if item is not None:
            item.status = self._record(item_id).status
        return item

    async def upsert(self, item: ContentItem) -> None:
        self._items[item.id] = item
        self._record(item.id)

    async def get_record(self, item_id: str) -> AnalysisRecord:
        return self._record(item_id)

    async def set_status(self, item_id: str, status: AnalysisStatus) -> None:
        self._record(item_id).status = status
        if item_id in self._items:
            self._items[item_id].status = status

    async def replace_insights(
        self, item_id: str, kind: AnalysisKind, insights: list[AIInsight]
    ) -> list[AIInsight]:
        record = self._record(item_id)
        record.insights = _merge_insights(record.insights, kind, insights)
        record.last_analyzed = utc_now()
        record.analysis_count += 1
        return list(record.insights)

    async def dismiss_insight(self, item_id: str, insight_id: str) -> bool:
        for insight in self._record(item_id).insights:
            if insight.id == insight_id:
                changed = not insight.dismissed
                insight.dismissed = True
                return changed
        return False

    async def clear_insights(self, item_id: str) -> None:
        self._record(item_id).insights = []

    async def list_by_status(self, status: AnalysisStatus) -> list[ContentItem]:
        return [
            item for item_id, item in self._items.items()
            if self._record(item_id).status == status
        ]

    async def history(self, limit: int = 50) -> list[AnalysisRecord]:
        analyzed = [r for r in self._records.values() if r.last_analyzed is not None]
        analyzed.sort(key=lambda r: r.last_analyzed, reverse=True)
        return analyzed[:limit]

    async def statistics(self) -> dict[str, Any]:
        rows = []
        for item_id, record in self._records.items():
            item = self._items.get(item_id)
            rows.append((record.status, item.kind if item else None, len(record.insights)))
        return _compute_statistics(rows)


class SqliteContentRepository:
    """
    SQLite-backed repository.

    Content columns are nullable so analysis fields can be recorded for items
    the application has not mirrored here.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if self._db is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS content_items (
                id TEXT PRIMARY KEY,
                title TEXT DEFAULT '',
                content TEXT,
                content_kind TEXT,
                word_count INTEGER DEFAULT 0,
                ai_status TEXT NOT NULL DEFAULT 'unanalyzed',
                ai_insights TEXT NOT NULL DEFAULT '[]',
                last_analyzed TEXT,
                analysis_count INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_content_items_status ON content_items(ai_status);
        """)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _ensure_row(self, item_id: str) -> None:
        await self._db.execute(
            "INSERT OR IGNORE INTO content_items (id) VALUES (?)", (item_id,)
        )

    async def get(self, item_id: str) -> ContentItem | None:
        await self.initialize()
        async with self._db.execute(
            "SELECT id, title, content, content_kind, word_count, ai_status "
            "FROM content_items WHERE id = ? AND content_kind IS NOT NULL",
            (item_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return ContentItem(
            id=row[0], title=row[1] or "", content=row[2] or "",
            kind=row[3], word_count=row[4] or 0, status=row[5],
        )

    async def upsert(self, item: ContentItem) -> None:
        await self.initialize()
        await self._db.execute(
            """
            INSERT INTO content_items (id, title, content, content_kind, word_count)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                content = excluded.content,
                content_kind = excluded.content_kind,
                word_count = excluded.word_count
            """,
            (item.id, item.title, item.content, item.kind.value, item.word_count),
        )
        await self._db.commit()

    async def get_record(self, item_id: str) -> AnalysisRecord:
        await self.initialize()
        async with self._db.execute(
            "SELECT ai_status, ai_insights, last_analyzed, analysis_count "
            "FROM content_items WHERE id = ?",
            (item_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return AnalysisRecord(item_id)
        return AnalysisRecord(
            item_id=item_id,
            status=AnalysisStatus(row[0]),
            insights=[AIInsight.from_dict(d) for d in json.loads(row[1] or "[]")],
            last_analyzed=parse_timestamp(row[2]),
            analysis_count=row[3] or 0,
        )

    async def set_status(self, item_id: str, status: AnalysisStatus) -> None:
        await self.initialize()
        await self._ensure_row(item_id)
        await self._db.execute(
            "UPDATE content_items SET ai_status = ? WHERE id = ?", (status.value, item_id)
        )
        await self._db.commit()

    async def _write_insights(self, item_id: str, insights: list[AIInsight]) -> None:
        await self._db.execute(
            "UPDATE content_items SET ai_insights = ? WHERE id = ?",
            (json.dumps([i.to_dict() for i in insights]), item_id),
        )

    async def replace_insights(
        self, item_id: str, kind: AnalysisKind, insights: list[AIInsight]
    ) -> list[AIInsight]:
        record = await self.get_record(item_id)
        merged = _merge_insights(record.insights, kind, insights)
        await self._ensure_row(item_id)
        await self._write_insights(item_id, merged)
        await self._db.execute(
            "UPDATE content_items SET last_analyzed = ?, analysis_count = analysis_count + 1 "
            "WHERE id = ?",
            (utc_now().isoformat(), item_id),
        )
        await self._db.commit()
        return merged

    async def dismiss_insight(self, item_id: str, insight_id: str) -> bool:
        record = await self.get_record(item_id)
        for insight in record.insights:
            if insight.id == insight_id:
                if insight.dismissed:
                    return False
                insight.dismissed = True
                await self._write_insights(item_id, record.insights)
                await self._db.commit()
                return True
        return False

    async def clear_insights(self, item_id: str) -> None:
        await self.initialize()
        await self._write_insights(item_id, [])
        await self._db.commit()

    async def list_by_status(self, status: AnalysisStatus) -> list[ContentItem]:
        await self.initialize()
        async with self._db.execute(
            "SELECT id, title, content, content_kind, word_count, ai_status FROM content_items "
            "WHERE ai_status = ? AND content_kind IS NOT NULL ORDER BY id",
            (status.value,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            ContentItem(id=r[0], title=r[1] or "", content=r[2] or "", kind=r[3],
                        word_count=r[4] or 0, status=r[5])
            for r in rows
        ]

    async def history(self, limit: int = 50) -> list[AnalysisRecord]:
        await self.initialize()
        async with self._db.execute(
            "SELECT id FROM content_items WHERE last_analyzed IS NOT NULL "
            "ORDER BY last_analyzed DESC LIMIT ?",
            (limit,),
        ) as cursor:
            ids = [row[0] for row in await cursor.fetchall()]
        return [await self.get_record(item_id) for item_id in ids]

    async def statistics(self) -> dict[str, Any]:
        await self.initialize()
        async with self._db.execute(
            "SELECT ai_status, content_kind, ai_insights FROM content_items"
        ) as cursor:
            rows = await cursor.fetchall()
        return _compute_statistics([
            (AnalysisStatus(status), AnalysisKind(kind) if kind else None, len(json.loads(insights or "[]")))
            for status, kind, insights in rows
        ])
