# prsync/adapters/entity_sqlite.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Sequence

import aiosqlite

from ..domain.errors import PersistenceError
from ..domain.models import Comment, Entity, PullRequest, Review
from ..domain.value_types import RepoName
from ..ports.storage import EntityStore
from .sqlite_db import SqliteDatabase

logger = logging.getLogger(__name__)

TABLES: tuple[str, ...] = ("pull_requests", "reviews", "comments")

_COLUMNS: dict[str, tuple[str, ...]] = {
    "pull_requests": (
        "id", "repository", "number", "author", "title", "state", "draft", "head_branch",
        "base_branch", "created_at", "updated_at", "merged_at", "closed_at", "labels",
        "requested_reviewers", "synced_at",
    ),
    "reviews": (
        "id", "pull_request_id", "pull_number", "repository", "reviewer", "state",
        "submitted_at", "body", "synced_at",
    ),
    "comments": (
        "kind", "id", "pull_request_id", "pull_number", "repository", "author", "body",
        "created_at", "updated_at", "review_id", "path", "line", "synced_at",
    ),
}
_KEYS: dict[str, tuple[str, ...]] = {
    "pull_requests": ("id",),
    "reviews": ("id",),
    "comments": ("kind", "id"),
}


def _iso(ts: datetime | None) -> str | None: return ts.isoformat() if ts is not None else None


def _upsert_sql(table: str) -> str:
    cols, keys = _COLUMNS[table], _KEYS[table]
    updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c not in keys)
    return (
        f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)}) "
        f"ON CONFLICT({', '.join(keys)}) DO UPDATE SET {updates}"
    )


def _row(e: Entity, synced_at: str) -> tuple[str, tuple[Any, ...]]:
    if isinstance(e, PullRequest):
        return "pull_requests", (
            e.id, e.repository, e.number, e.author, e.title, e.state, int(e.draft),
            e.head_branch, e.base_branch, _iso(e.created_at), _iso(e.updated_at),
            _iso(e.merged_at), _iso(e.closed_at), json.dumps(list(e.labels)),
            json.dumps(list(e.requested_reviewers)), synced_at,
        )
    if isinstance(e, Review):
        return "reviews", (
            e.id, e.pull_request_id, e.pull_number, e.repository, e.reviewer, e.state,
            _iso(e.submitted_at), e.body, synced_at,
        )
    if isinstance(e, Comment):
        return "comments", (
            e.kind, e.id, e.pull_request_id, e.pull_number, e.repository, e.author, e.body,
            _iso(e.created_at), _iso(e.updated_at), e.review_id, e.path, e.line, synced_at,
        )
    raise TypeError(f"not a storable entity: {e!r}")


class SqliteEntityStore(EntityStore):
    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    async def upsert(self, entities: Sequence[Entity]) -> int:
        if not entities:
            return 0
        synced_at = datetime.now(timezone.utc).isoformat()
        by_table: dict[str, list[tuple[Any, ...]]] = {t: [] for t in TABLES}
        for e in entities:
            table, values = _row(e, synced_at)
            by_table[table].append(values)
        try:
            async with self.db.transaction() as conn:
                for table, rows in by_table.items():
                    if rows:
                        await conn.executemany(_upsert_sql(table), rows)
        except aiosqlite.Error as e:
            raise PersistenceError(f"entity upsert failed: {e}") from e
        written = sum(len(rows) for rows in by_table.values())
        logger.debug("upserted %d entities", written)
        return written

    async def counts(self, repository: RepoName | None = None) -> dict[str, int]:
        out: dict[str, int] = {}
        try:
            async with self.db.read() as conn:
                for table in TABLES:
                    sql, args = f"SELECT COUNT(*) FROM {table}", ()
                    if repository is not None:
                        sql, args = sql + " WHERE repository = ?", (repository,)
                    async with conn.execute(sql, args) as cur:
                        row = await cur.fetchone()
                    out[table] = int(row[0]) if row else 0
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot count entities: {e}") from e
        return out

    async def fetch_table(self, table: str) -> tuple[tuple[str, ...], list[tuple[Any, ...]]]:
        """All rows of one entity table, ordered by natural key (used by the Parquet export)."""
        if table not in _COLUMNS:
            raise ValueError(f"unknown table {table!r}")
        cols = _COLUMNS[table]
        try:
            async with self.db.read() as conn:
                async with conn.execute(
                    f"SELECT {', '.join(cols)} FROM {table} ORDER BY repository, {', '.join(_KEYS[table])}"
                ) as cur:
                    rows = await cur.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot read {table}: {e}") from e
        return cols, [tuple(r) for r in rows]
