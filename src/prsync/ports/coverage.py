# prsync/ports/coverage.py
from __future__ import annotations
from typing import Protocol

from ..domain.ledger import CoverageLedger
from ..domain.value_types import RepoName


class CoverageStore(Protocol):
    """Port persisting one coverage ledger row per repository."""

    async def load(self, repository: RepoName) -> CoverageLedger:
        """Return the stored ledger, or an empty one at version 0 if none exists."""

    async def save(self, repository: RepoName, ledger: CoverageLedger) -> None:
        """Persist ``ledger`` if the row is still at ``ledger.version``; bump the version.

        Raises ConcurrentUpdateError when another writer saved first, and
        PersistenceError on any other storage failure.
        """

    async def repositories(self) -> list[RepoName]:
        """Return every repository with a stored ledger, sorted."""
