# prsync/ports/storage.py
from __future__ import annotations

from typing import Protocol, Sequence
from ..domain.models import Entity
from ..domain.value_types import RepoName


class EntityStore(Protocol):
    """Port for persisting fetched pull requests, reviews and comments."""

    async def upsert(self, entities: Sequence[Entity]) -> int:
        """Insert or replace ``entities`` keyed by natural id in one transaction.

        Re-upserting the same entity must not create a duplicate row.
        Returns the number of rows written; raises PersistenceError on failure.
        """

    async def counts(self, repository: RepoName | None = None) -> dict[str, int]:
        """Return stored row counts per entity table."""
