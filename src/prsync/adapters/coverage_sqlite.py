# prsync/adapters/coverage_sqlite.py
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import aiosqlite

from ..domain.errors import ConcurrentUpdateError, InvalidInterval, PersistenceError
from ..domain.ledger import CoverageLedger
from ..domain.value_types import RepoName
from ..ports.coverage import CoverageStore
from .sqlite_db import SqliteDatabase

logger = logging.getLogger(__name__)


class SqliteCoverageStore(CoverageStore):
    """
    One ``sync_coverage`` row per repository: the ledger as a JSON array of
    ``["YYYY-MM-DD", "YYYY-MM-DD"]`` pairs plus a version counter.
    Saves are compare-and-swap on the version.
    """
    def __init__(self, db: SqliteDatabase) -> None:
        self.db = db

    async def load(self, repository: RepoName) -> CoverageLedger:
        try:
            async with self.db.read() as conn:
                async with conn.execute(
                    "SELECT intervals, version FROM sync_coverage WHERE repository = ?",
                    (repository,),
                ) as cur:
                    row = await cur.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot load coverage for {repository}: {e}") from e
        if row is None:
            return CoverageLedger()
        try:
            return CoverageLedger.from_pairs(json.loads(row[0]), version=int(row[1]))
        except (ValueError, TypeError, InvalidInterval) as e:
            raise PersistenceError(f"corrupt coverage row for {repository}: {e}") from e

    async def save(self, repository: RepoName, ledger: CoverageLedger) -> None:
        payload = json.dumps(ledger.to_pairs(), separators=(",", ":"))
        now = datetime.now(timezone.utc).isoformat()
        try:
            async with self.db.transaction() as conn:
                if ledger.version == 0:
                    try:
                        await conn.execute(
                            "INSERT INTO sync_coverage(repository, intervals, version, updated_at) "
                            "VALUES(?, ?, 1, ?)",
                            (repository, payload, now),
                        )
                    except aiosqlite.IntegrityError:
                        raise ConcurrentUpdateError(repository, ledger.version) from None
                else:
                    cur = await conn.execute(
                        "UPDATE sync_coverage SET intervals = ?, version = version + 1, updated_at = ? "
                        "WHERE repository = ? AND version = ?",
                        (payload, now, repository, ledger.version),
                    )
                    if cur.rowcount != 1:
                        raise ConcurrentUpdateError(repository, ledger.version)
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot save coverage for {repository}: {e}") from e
        ledger.version += 1
        logger.debug("saved coverage %s v%d: %s", repository, ledger.version, payload)

    async def repositories(self) -> list[RepoName]:
        try:
            async with self.db.read() as conn:
                async with conn.execute("SELECT repository FROM sync_coverage ORDER BY repository") as cur:
                    rows = await cur.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"cannot list coverage rows: {e}") from e
        return [RepoName(r[0]) for r in rows]
