from __future__ import annotations
import asyncio, logging, time
from typing import Callable, Hashable, Sequence, TypeVar

from ..domain.errors import CancelledSync, ConcurrentUpdateError, PrsyncError, RateLimited, describe
from ..domain.interval import Interval
from ..domain.ledger import CoverageLedger
from ..domain.models import (
    Entity, FetchCounts, GapEvent, GapFailure, GapState, RepoSyncResult, SyncPlan, SyncRunResult,
)
from ..domain.value_types import RepoName
from ..ports.coverage import CoverageStore
from ..ports.remote import PageStream, PullRequestSource
from ..ports.storage import EntityStore
from .retry import RetryPolicy, Sleep, call_with_retry

log = logging.getLogger(__name__)
T = TypeVar("T")
EventHook = Callable[[GapEvent], None]


def _dedupe(items: Sequence[T], key: Callable[[T], Hashable]) -> list[T]:
    # pages can shift while paginating by updated_at; keep the last copy seen
    out: dict[Hashable, T] = {}
    for it in items:
        out[key(it)] = it
    return list(out.values())


class SyncOrchestrator:
    """Runs sync plans: fetch each gap, upsert its entities, then commit it to the ledger.

    Repositories run concurrently (bounded by ``concurrency``); the gaps of one
    repository run one at a time, oldest first, under a per-repository lock so
    its ledger has a single writer. A gap is only ever committed after its
    entities were persisted, and a failed gap never touches the ledger.

    A rate limit that outlasts the retry policy stops the whole run: every gap
    not yet fetched fails with ``RATE_LIMITED`` and no further request is made.
    """

    def __init__(
        self,
        *,
        source: PullRequestSource,
        entities: EntityStore,
        coverage: CoverageStore,
        retry: RetryPolicy = RetryPolicy(),
        concurrency: int = 4,
        commit_attempts: int = 3,
        sleep: Sleep = asyncio.sleep,
        on_event: EventHook | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if commit_attempts < 1:
            raise ValueError("commit_attempts must be >= 1")
        self.source = source
        self.entities = entities
        self.coverage = coverage
        self.retry = retry
        self.concurrency = concurrency
        self.commit_attempts = commit_attempts
        self._sleep = sleep
        self._on_event = on_event
        self._locks: dict[RepoName, asyncio.Lock] = {}
        self.ledgers: dict[RepoName, CoverageLedger] = {}
        self._quota_spent: RateLimited | None = None

    def _emit(self, repo: RepoName, gap: Interval, state: GapState, detail: str | None = None) -> None:
        log.debug("%s %s -> %s%s", repo, gap, state.value, f" ({detail})" if detail else "")
        if self._on_event is not None:
            self._on_event(GapEvent(repo, gap, state, detail))

    async def run(self, plans: Sequence[SyncPlan], cancel: asyncio.Event | None = None) -> SyncRunResult:
        t0 = time.monotonic()
        cancel = cancel if cancel is not None else asyncio.Event()
        repos = [p.repository for p in plans]
        if len(set(repos)) != len(repos):
            raise ValueError("one plan per repository expected")

        result = SyncRunResult({p.repository: RepoSyncResult(p.repository) for p in plans})
        self._quota_spent = None
        sem = asyncio.Semaphore(self.concurrency)

        async def run_repo(plan: SyncPlan) -> None:
            async with sem:
                await self._sync_repository(plan, result.repositories[plan.repository], cancel)

        await asyncio.gather(*(run_repo(p) for p in plans if p.needs_sync))
        result.cancelled = cancel.is_set()
        result.duration_s = time.monotonic() - t0
        log.info("sync run finished in %.1fs: %d gap(s) failed%s", result.duration_s,
                 len(result.failed_gaps), ", cancelled" if result.cancelled else "")
        return result

    async def _sync_repository(self, plan: SyncPlan, out: RepoSyncResult, cancel: asyncio.Event) -> None:
        repo = plan.repository
        lock = self._locks.setdefault(repo, asyncio.Lock())
        async with lock:
            fatal: PrsyncError | None = None
            for gap in plan.gaps:
                self._emit(repo, gap, GapState.PENDING)
                if cancel.is_set():
                    out.cancelled.append(gap)
                    self._emit(repo, gap, GapState.CANCELLED)
                    continue
                stop = fatal or self._quota_spent
                if stop is not None:
                    out.failed.append(GapFailure(gap, f"not attempted: {describe(stop)}", stop.code))
                    self._emit(repo, gap, GapState.FAILED, stop.code)
                    continue
                try:
                    counts = await self._sync_gap(repo, gap, cancel)
                except CancelledSync:
                    out.cancelled.append(gap)
                    self._emit(repo, gap, GapState.CANCELLED)
                    continue
                except PrsyncError as e:
                    log.warning("%s %s failed: %s", repo, gap, describe(e))
                    out.failed.append(GapFailure(gap, describe(e), e.code))
                    self._emit(repo, gap, GapState.FAILED, e.code)
                    if isinstance(e, RateLimited) and self._quota_spent is None:
                        log.error("%s: rate limit exhausted, no further requests this run", repo)
                        self._quota_spent = e
                    elif e.repository_fatal:
                        fatal = e
                    continue
                except Exception as e:
                    log.exception("%s %s failed unexpectedly", repo, gap)
                    out.failed.append(GapFailure(gap, describe(e)))
                    self._emit(repo, gap, GapState.FAILED, type(e).__name__)
                    continue
                out.committed.append(gap)
                out.fetched = out.fetched + counts
        log.info("%s: %d committed, %d failed, %d cancelled (%d PRs, %d reviews, %d comments)",
                 repo, len(out.committed), len(out.failed), len(out.cancelled),
                 out.fetched.pull_requests, out.fetched.reviews, out.fetched.comments)

    async def _drain(self, stream: PageStream[T], cancel: asyncio.Event, label: str) -> list[T]:
        items: list[T] = []
        while not stream.exhausted:
            if cancel.is_set():
                raise CancelledSync(f"{label}: cancelled while fetching")
            if self._quota_spent is not None:
                raise RateLimited(self._quota_spent.retry_after, f"{label}: not fetched, rate limit exhausted")
            items.extend(await call_with_retry(stream.next_page, self.retry, sleep=self._sleep, label=label))
        return items

    async def _sync_gap(self, repo: RepoName, gap: Interval, cancel: asyncio.Event) -> FetchCounts:
        self._emit(repo, gap, GapState.FETCHING)
        label = f"{repo} {gap}"
        pulls = _dedupe(await self._drain(self.source.pull_requests(repo, gap), cancel, f"{label} pulls"),
                        lambda p: p.id)
        reviews: list[Entity] = []
        comments: list[Entity] = []
        if pulls:
            reviews = _dedupe(await self._drain(self.source.reviews(repo, pulls), cancel, f"{label} reviews"),
                              lambda r: r.id)
            comments = _dedupe(await self._drain(self.source.comments(repo, pulls), cancel, f"{label} comments"),
                               lambda c: (c.kind, c.id))
        counts = FetchCounts(len(pulls), len(reviews), len(comments))
        self._emit(repo, gap, GapState.PERSISTING, f"{counts.total} entities")

        # past this point cancellation waits for the commit to land
        task = asyncio.ensure_future(self._persist_and_commit(repo, gap, [*pulls, *reviews, *comments]))
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            await task
            raise
        self._emit(repo, gap, GapState.COMMITTED)
        return counts

    async def _persist_and_commit(self, repo: RepoName, gap: Interval, entities: list[Entity]) -> None:
        await self.entities.upsert(entities)
        await self._commit(repo, gap)

    async def _commit(self, repo: RepoName, gap: Interval) -> CoverageLedger:
        """Insert ``gap`` into the repository ledger and save it (compare-and-swap on version)."""
        ledger = self.ledgers.get(repo)
        if ledger is None:
            ledger = await self.coverage.load(repo)
        for attempt in range(1, self.commit_attempts + 1):
            candidate = ledger.copy()
            candidate.insert(gap)
            try:
                await self.coverage.save(repo, candidate)
            except ConcurrentUpdateError:
                if attempt >= self.commit_attempts:
                    raise
                log.warning("%s: coverage changed concurrently, reloading (attempt %d/%d)",
                            repo, attempt, self.commit_attempts)
                ledger = await self.coverage.load(repo)
                continue
            self.ledgers[repo] = candidate
            return candidate
        raise AssertionError("unreachable")
