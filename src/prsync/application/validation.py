from __future__ import annotations
import logging
from typing import Iterable

from ..domain.interval import Interval
from ..domain.models import CoverageReport
from ..domain.value_types import RepoName
from ..ports.coverage import CoverageStore
from .planning import unique_repositories

log = logging.getLogger(__name__)


class CoverageValidator:
    """Report-time check that a window was synced for every repository in scope.

    Missing ranges are returned and logged as warnings; callers decide whether
    to proceed with a partial report or stop.
    """

    def __init__(self, coverage: CoverageStore) -> None:
        self.coverage = coverage

    async def validate_one(self, repository: RepoName, requested: Interval) -> CoverageReport:
        ledger = await self.coverage.load(repository)
        return CoverageReport(repository, requested, tuple(ledger.gaps_within(requested)))

    async def validate(self, repositories: Iterable[RepoName], requested: Interval) -> list[CoverageReport]:
        reports = [await self.validate_one(r, requested) for r in unique_repositories(repositories)]
        for rep in reports:
            msg = rep.warning()
            if msg is not None:
                log.warning(msg)
        return reports


def missing_summary(reports: Iterable[CoverageReport]) -> list[str]:
    return [w for w in (r.warning() for r in reports) if w is not None]
