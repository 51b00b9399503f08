# prsync/ports/remote.py
from __future__ import annotations

from typing import Protocol, Sequence, TypeVar
from ..domain.interval import Interval
from ..domain.models import Comment, PullRequest, Review
from ..domain.value_types import RepoName

T_co = TypeVar("T_co", covariant=True)


class PageStream(Protocol[T_co]):
    """Lazy, restartable sequence of pages.

    ``next_page`` only advances the cursor after a page was read successfully,
    so calling it again after a failure re-reads the failed page and nothing
    before it.
    """

    @property
    def exhausted(self) -> bool: ...

    async def next_page(self) -> list[T_co]: ...


class PullRequestSource(Protocol):
    """Port onto the hosting API for one repository's review history."""

    def pull_requests(self, repository: RepoName, interval: Interval) -> PageStream[PullRequest]:
        """Pull requests created, merged or closed within ``interval``."""

    def reviews(self, repository: RepoName, pulls: Sequence[PullRequest]) -> PageStream[Review]:
        """Submitted reviews of ``pulls``."""

    def comments(self, repository: RepoName, pulls: Sequence[PullRequest]) -> PageStream[Comment]:
        """Issue and review comments of ``pulls``."""
