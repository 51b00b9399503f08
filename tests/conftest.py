from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from typing import Awaitable, Callable

import pytest

from prsync.domain.errors import ConcurrentUpdateError, PersistenceError
from prsync.domain.interval import Interval
from prsync.domain.ledger import CoverageLedger
from prsync.domain.models import Comment, PullRequest, Review
from prsync.domain.value_types import RepoName

REPO = RepoName("acme/api")


def d(s: str) -> date:
    return date.fromisoformat(s)


def iv(start: str, end: str) -> Interval:
    return Interval.parse(start, end)


def ts(s: str) -> datetime:
    return datetime.fromisoformat(s).replace(tzinfo=timezone.utc)


def make_pull(id: int, created: str, *, repo: RepoName = REPO, merged: str | None = None,
              updated: str | None = None) -> PullRequest:
    return PullRequest(
        id=id, number=id, repository=repo, author="octocat", title=f"PR {id}",
        state="merged" if merged else "open", draft=False, head_branch=f"feature-{id}",
        base_branch="main", created_at=ts(created), updated_at=ts(updated or merged or created),
        merged_at=ts(merged) if merged else None,
    )


def make_review(id: int, pr: PullRequest, submitted: str) -> Review:
    return Review(id=id, pull_request_id=pr.id, pull_number=pr.number, repository=pr.repository,
                  reviewer="reviewer", state="APPROVED", submitted_at=ts(submitted))


def make_comment(id: int, pr: PullRequest, created: str, kind: str = "issue_comment") -> Comment:
    return Comment(id=id, kind=kind, pull_request_id=pr.id, pull_number=pr.number,  # type: ignore[arg-type]
                   repository=pr.repository, author="octocat", body="lgtm",
                   created_at=ts(created), updated_at=ts(created))


class MemoryCoverage:
    """CoverageStore keeping ``(pairs, version)`` per repository."""

    def __init__(self) -> None:
        self.rows: dict[str, tuple[list[list[str]], int]] = {}
        self.saves = 0
        # awaited once, right before the next save checks the version
        self.before_save: Callable[[RepoName], Awaitable[None]] | None = None

    def seed(self, repo: RepoName, *intervals: Interval) -> None:
        version = self.rows.get(repo, ([], 0))[1]
        self.rows[repo] = (CoverageLedger.from_intervals(intervals).to_pairs(), version + 1)

    async def load(self, repository: RepoName) -> CoverageLedger:
        row = self.rows.get(repository)
        if row is None:
            return CoverageLedger()
        return CoverageLedger.from_pairs(row[0], version=row[1])

    async def save(self, repository: RepoName, ledger: CoverageLedger) -> None:
        if self.before_save is not None:
            hook, self.before_save = self.before_save, None
            await hook(repository)
        current = self.rows.get(repository, ([], 0))[1]
        if current != ledger.version:
            raise ConcurrentUpdateError(repository, ledger.version)
        self.rows[repository] = (ledger.to_pairs(), current + 1)
        ledger.version += 1
        self.saves += 1

    async def repositories(self) -> list[RepoName]:
        return sorted(RepoName(r) for r in self.rows)

    def intervals(self, repo: RepoName) -> list[Interval]:
        return [Interval.parse(s, e) for s, e in self.rows.get(repo, ([], 0))[0]]


class MemoryEntities:
    def __init__(self) -> None:
        self.rows: dict[tuple, object] = {}
        self.fail: PersistenceError | None = None
        # when set, upserts signal ``upserting`` and wait on ``gate`` before writing
        self.gate: asyncio.Event | None = None
        self.upserting: asyncio.Event | None = None

    async def upsert(self, entities) -> int:
        if self.fail is not None:
            raise self.fail
        if self.gate is not None:
            if self.upserting is not None:
                self.upserting.set()
            await self.gate.wait()
        for e in entities:
            key = (type(e).__name__, getattr(e, "kind", None), e.id)
            self.rows[key] = e
        return len(entities)

    async def counts(self, repository=None) -> dict[str, int]:
        out = {"pull_requests": 0, "reviews": 0, "comments": 0}
        table = {"PullRequest": "pull_requests", "Review": "reviews", "Comment": "comments"}
        for (kind, _, _), e in self.rows.items():
            if repository is None or e.repository == repository:
                out[table[kind]] += 1
        return out


class ListStream:
    """PageStream over fixed pages; ``faults`` are raised, in order, before a page is served."""

    def __init__(self, pages: list[list], calls: list, label: tuple, faults: list[BaseException]) -> None:
        self._pages = pages
        self._i = 0
        self._calls = calls
        self._label = label
        self._faults = faults

    @property
    def exhausted(self) -> bool:
        return self._i >= len(self._pages)

    async def next_page(self) -> list:
        self._calls.append(self._label)
        if self._faults:
            raise self._faults.pop(0)
        page = self._pages[self._i]
        self._i += 1
        return page


def _paged(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)] or [[]]


class FakeSource:
    def __init__(self, page_size: int = 2) -> None:
        self.page_size = page_size
        self.pulls: dict[str, list[PullRequest]] = {}
        self.reviews_by_pr: dict[int, list[Review]] = {}
        self.comments_by_pr: dict[int, list[Comment]] = {}
        self.calls: list[tuple] = []
        # per repository, raised one by one by the next pull-request page requests
        self.faults: dict[str, list[BaseException]] = {}
        # raised by every pull-request page request for that (repository, gap)
        self.broken: dict[tuple[str, Interval], BaseException] = {}

    def add(self, *pulls: PullRequest) -> None:
        for pr in pulls:
            self.pulls.setdefault(pr.repository, []).append(pr)

    def pull_requests(self, repository, interval):
        if (repository, interval) in self.broken:
            exc = self.broken[(repository, interval)]
            return ListStream([[]], self.calls, (repository, "pulls", interval), [exc] * 100)
        items = [p for p in self.pulls.get(repository, []) if p.active_in(interval)]
        return ListStream(_paged(items, self.page_size), self.calls, (repository, "pulls", interval),
                          self.faults.setdefault(repository, []))

    def reviews(self, repository, pulls):
        items = [r for p in pulls for r in self.reviews_by_pr.get(p.id, [])]
        return ListStream(_paged(items, self.page_size), self.calls, (repository, "reviews", None), [])

    def comments(self, repository, pulls):
        items = [c for p in pulls for c in self.comments_by_pr.get(p.id, [])]
        return ListStream(_paged(items, self.page_size), self.calls, (repository, "comments", None), [])

    def pull_calls(self, repo: RepoName | None = None) -> list[Interval]:
        return [c[2] for c in self.calls if c[1] == "pulls" and (repo is None or c[0] == repo)]


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def coverage() -> MemoryCoverage:
    return MemoryCoverage()


@pytest.fixture
def entities() -> MemoryEntities:
    return MemoryEntities()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
