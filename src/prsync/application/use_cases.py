from __future__ import annotations
import asyncio, logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Sequence

from ..adapters.coverage_sqlite import SqliteCoverageStore
from ..adapters.entity_sqlite import TABLES, SqliteEntityStore
from ..adapters.github_httpx import GitHubClient
from ..adapters.parquet_export import ParquetExporter
from ..adapters.sqlite_db import SqliteDatabase
from ..config import Settings
from ..domain.errors import InvalidInterval
from ..domain.interval import Interval
from ..domain.models import CoverageReport, SyncPlan, SyncRunResult
from ..domain.value_types import RepoName
from ..ports.remote import PullRequestSource
from .orchestrator import EventHook, SyncOrchestrator
from .planning import SyncPlanner
from .retry import RetryPolicy
from .validation import CoverageValidator

log = logging.getLogger(__name__)


def _require_interval(interval: object) -> Interval:
    if not isinstance(interval, Interval):
        raise InvalidInterval(f"expected an Interval, got {interval!r}")
    return interval


async def preview_sync(planner: SyncPlanner, repositories: Sequence[RepoName], interval: Interval,
                       *, force: bool = False) -> list[SyncPlan]:
    """Dry run: the gaps a sync would fetch, without any network call."""
    return await planner.plan(repositories, _require_interval(interval), force=force)


async def request_sync(
    planner: SyncPlanner,
    orchestrator: SyncOrchestrator,
    repositories: Sequence[RepoName],
    interval: Interval,
    *,
    force: bool = False,
    cancel: asyncio.Event | None = None,
) -> SyncRunResult:
    plans = await planner.plan(repositories, _require_interval(interval), force=force)
    todo = [p for p in plans if p.needs_sync]
    log.info("sync %s: %d repositories, %d need fetching (%d gap(s), %d days)",
             interval, len(plans), len(todo), sum(len(p.gaps) for p in todo), sum(p.gap_days for p in todo))
    result = await orchestrator.run(plans, cancel=cancel)
    for p in plans:
        if not p.needs_sync:
            log.info("%s: %s already synced", p.repository, interval)
    return result


async def check_coverage(validator: CoverageValidator, repositories: Sequence[RepoName],
                         interval: Interval) -> list[CoverageReport]:
    return await validator.validate(repositories, _require_interval(interval))


async def export_parquet(entities: SqliteEntityStore, out_dir: str) -> list[str]:
    exporter = ParquetExporter(out_dir)
    written: list[str] = []
    for table in TABLES:
        cols, rows = await entities.fetch_table(table)
        path = await asyncio.to_thread(exporter.write, table, cols, rows)
        log.info("exported %d %s to %s", len(rows), table, path)
        written.append(path)
    return written


@dataclass
class Services:
    db: SqliteDatabase
    coverage: SqliteCoverageStore
    entities: SqliteEntityStore
    planner: SyncPlanner
    validator: CoverageValidator
    source: PullRequestSource | None = None
    settings: Settings | None = None

    def orchestrator(self, *, concurrency: int | None = None, on_event: EventHook | None = None) -> SyncOrchestrator:
        if self.source is None:
            raise RuntimeError("services were opened without a remote source")
        sync = self.settings.sync if self.settings else None
        retry = RetryPolicy(
            rate_limit_attempts=sync.rate_limit_attempts, transient_attempts=sync.transient_attempts,
            backoff_s=sync.backoff_s, max_backoff_s=sync.max_backoff_s,
        ) if sync else RetryPolicy()
        return SyncOrchestrator(
            source=self.source, entities=self.entities, coverage=self.coverage, retry=retry,
            concurrency=concurrency or (sync.concurrency if sync else 4), on_event=on_event,
        )


@asynccontextmanager
async def open_services(settings: Settings, *, remote: bool = True,
                        source: PullRequestSource | None = None,
                        max_gap_days: int | None = None) -> AsyncIterator[Services]:
    """Wire the SQLite stores and (optionally) the GitHub client from settings."""
    db = await SqliteDatabase(settings.database.path).connect()
    client: GitHubClient | None = None
    try:
        if source is None and remote:
            gh = settings.github
            client = GitHubClient(gh.token, api_url=gh.api_url, timeout_s=gh.timeout_s,
                                  max_conn=gh.max_connections, per_page=gh.per_page,
                                  throttle_below=gh.throttle_below, max_wait_s=settings.sync.max_backoff_s)
            source = client
        coverage = SqliteCoverageStore(db)
        yield Services(
            db=db,
            coverage=coverage,
            entities=SqliteEntityStore(db),
            planner=SyncPlanner(coverage, max_gap_days=max_gap_days or settings.sync.max_gap_days),
            validator=CoverageValidator(coverage),
            source=source,
            settings=settings,
        )
    finally:
        if client is not None:
            await client.aclose()
        await db.close()
