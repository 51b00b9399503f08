"""Shared aiosqlite connection for the coverage and entity stores.

One connection is opened per process and every statement goes through a lock:
aiosqlite runs statements on a single worker thread, but interleaved
``BEGIN``/``COMMIT`` from two tasks on the same connection would nest.
"""
from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

from ..domain.errors import PersistenceError

logger = logging.getLogger(__name__)

SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS sync_coverage (
        repository TEXT PRIMARY KEY,
        intervals  TEXT NOT NULL,
        version    INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pull_requests (
        id                  INTEGER PRIMARY KEY,
        repository          TEXT NOT NULL,
        number              INTEGER NOT NULL,
        author              TEXT NOT NULL,
        title               TEXT NOT NULL,
        state               TEXT NOT NULL CHECK(state IN ('open', 'closed', 'merged')),
        draft               INTEGER NOT NULL,
        head_branch         TEXT NOT NULL,
        base_branch         TEXT NOT NULL,
        created_at          TEXT NOT NULL,
        updated_at          TEXT NOT NULL,
        merged_at           TEXT,
        closed_at           TEXT,
        labels              TEXT NOT NULL,
        requested_reviewers TEXT NOT NULL,
        synced_at           TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS reviews (
        id              INTEGER PRIMARY KEY,
        pull_request_id INTEGER NOT NULL,
        pull_number     INTEGER NOT NULL,
        repository      TEXT NOT NULL,
        reviewer        TEXT NOT NULL,
        state           TEXT NOT NULL,
        submitted_at    TEXT NOT NULL,
        body            TEXT NOT NULL,
        synced_at       TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS comments (
        kind            TEXT NOT NULL CHECK(kind IN ('issue_comment', 'review_comment')),
        id              INTEGER NOT NULL,
        pull_request_id INTEGER NOT NULL,
        pull_number     INTEGER NOT NULL,
        repository      TEXT NOT NULL,
        author          TEXT NOT NULL,
        body            TEXT NOT NULL,
        created_at      TEXT NOT NULL,
        updated_at      TEXT NOT NULL,
        review_id       INTEGER,
        path            TEXT,
        line            INTEGER,
        synced_at       TEXT NOT NULL,
        PRIMARY KEY (kind, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pull_requests_repo ON pull_requests(repository, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_reviews_repo ON reviews(repository, submitted_at)",
    "CREATE INDEX IF NOT EXISTS idx_comments_repo ON comments(repository, created_at)",
)


class SqliteDatabase:
    def __init__(self, path: str) -> None:
        if path.startswith("sqlite:///"):
            path = path[len("sqlite:///"):]
        self.path = path or ":memory:"
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self) -> "SqliteDatabase":
        if self.path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        try:
            # autocommit mode: transactions are opened explicitly below
            self._conn = await aiosqlite.connect(self.path, isolation_level=None)
            if self.path != ":memory:":
                await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA busy_timeout=5000")
            for stmt in SCHEMA:
                await self._conn.execute(stmt)
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot open database {self.path}: {e}") from e
        logger.debug("opened database %s", self.path)
        return self

    async def __aenter__(self) -> "SqliteDatabase": return await self.connect()
    async def __aexit__(self, *exc: object) -> None: await self.close()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistenceError("database is not connected")
        return self._conn

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self._lock:
            yield self.conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """``BEGIN IMMEDIATE`` ... ``COMMIT``; rolls back on any exception."""
        async with self._lock:
            conn = self.conn
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
