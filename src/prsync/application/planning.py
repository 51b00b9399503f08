from __future__ import annotations
import logging
from typing import Iterable, Sequence

from ..domain.interval import Interval
from ..domain.ledger import CoverageLedger
from ..domain.models import SyncPlan
from ..domain.value_types import RepoName
from ..ports.coverage import CoverageStore

log = logging.getLogger(__name__)


def unique_repositories(repositories: Iterable[RepoName]) -> list[RepoName]:
    seen: set[str] = set()
    out: list[RepoName] = []
    for r in repositories:
        if r not in seen:
            seen.add(r); out.append(r)
    return out


def split_gaps(gaps: Sequence[Interval], max_days: int | None) -> list[Interval]:
    if not max_days: return list(gaps)
    out: list[Interval] = []
    for g in gaps:
        out.extend(g.split(max_days))
    return out


def plan_gaps(ledger: CoverageLedger, requested: Interval, *, force: bool = False,
              max_gap_days: int | None = None) -> list[Interval]:
    gaps = [requested] if force else ledger.gaps_within(requested)
    return split_gaps(gaps, max_gap_days)


class SyncPlanner:
    """Turns a sync request into per-repository gap lists. Reads the store only."""

    def __init__(self, coverage: CoverageStore, max_gap_days: int | None = None) -> None:
        if max_gap_days is not None and max_gap_days < 1:
            raise ValueError("max_gap_days must be >= 1")
        self.coverage = coverage
        self.max_gap_days = max_gap_days

    async def plan_one(self, repository: RepoName, requested: Interval, *, force: bool = False) -> SyncPlan:
        ledger = await self.coverage.load(repository)
        gaps = plan_gaps(ledger, requested, force=force, max_gap_days=self.max_gap_days)
        log.debug("plan %s %s: ledger=%s gaps=%s", repository, requested, ledger, [str(g) for g in gaps])
        return SyncPlan(repository=repository, requested=requested, gaps=tuple(gaps))

    async def plan(self, repositories: Iterable[RepoName], requested: Interval, *,
                   force: bool = False) -> list[SyncPlan]:
        """One plan per distinct repository, in request order, fully covered ones included."""
        return [await self.plan_one(r, requested, force=force) for r in unique_repositories(repositories)]
