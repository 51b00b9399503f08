from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Union

from .interval import Interval
from .value_types import CommentKind, PRState, RepoName, ReviewState


# ──────────────────────────────
# Entities (natural id = GitHub id)
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class PullRequest:
    id: int
    number: int
    repository: RepoName
    author: str
    title: str
    state: PRState
    draft: bool
    head_branch: str
    base_branch: str
    created_at: datetime
    updated_at: datetime
    merged_at: datetime | None = None
    closed_at: datetime | None = None
    labels: tuple[str, ...] = ()
    requested_reviewers: tuple[str, ...] = ()

    def active_in(self, interval: Interval) -> bool:
        """Created, merged or closed on a UTC day inside ``interval``."""
        return any(
            ts is not None and interval.contains(ts.date())
            for ts in (self.created_at, self.merged_at, self.closed_at)
        )


@dataclass(slots=True, frozen=True)
class Review:
    id: int
    pull_request_id: int
    pull_number: int
    repository: RepoName
    reviewer: str
    state: ReviewState
    submitted_at: datetime
    body: str = ""


@dataclass(slots=True, frozen=True)
class Comment:
    id: int
    kind: CommentKind
    pull_request_id: int
    pull_number: int
    repository: RepoName
    author: str
    body: str
    created_at: datetime
    updated_at: datetime
    review_id: int | None = None
    path: str | None = None
    line: int | None = None


Entity = Union[PullRequest, Review, Comment]


# ──────────────────────────────
# Planning / execution records
# ──────────────────────────────

@dataclass(slots=True, frozen=True)
class SyncPlan:
    repository: RepoName
    requested: Interval
    gaps: tuple[Interval, ...] = ()

    @property
    def needs_sync(self) -> bool: return bool(self.gaps)

    @property
    def gap_days(self) -> int: return sum(g.days for g in self.gaps)


class GapState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    PERSISTING = "persisting"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True, frozen=True)
class GapEvent:
    repository: RepoName
    interval: Interval
    state: GapState
    detail: str | None = None


@dataclass(slots=True, frozen=True)
class GapFailure:
    interval: Interval
    error: str
    code: str = "ERROR"


@dataclass(slots=True, frozen=True)
class FetchCounts:
    pull_requests: int = 0
    reviews: int = 0
    comments: int = 0

    def __add__(self, other: "FetchCounts") -> "FetchCounts":
        return FetchCounts(
            self.pull_requests + other.pull_requests,
            self.reviews + other.reviews,
            self.comments + other.comments,
        )

    @property
    def total(self) -> int: return self.pull_requests + self.reviews + self.comments


@dataclass(slots=True)
class RepoSyncResult:
    repository: RepoName
    committed: list[Interval] = field(default_factory=list)
    failed: list[GapFailure] = field(default_factory=list)
    cancelled: list[Interval] = field(default_factory=list)
    fetched: FetchCounts = field(default_factory=FetchCounts)

    @property
    def ok(self) -> bool: return not self.failed and not self.cancelled


@dataclass(slots=True)
class SyncRunResult:
    repositories: dict[RepoName, RepoSyncResult] = field(default_factory=dict)
    cancelled: bool = False
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(r.ok for r in self.repositories.values())

    @property
    def failed_gaps(self) -> list[tuple[RepoName, GapFailure]]:
        return [(repo, f) for repo, r in self.repositories.items() for f in r.failed]

    @property
    def fetched(self) -> FetchCounts:
        total = FetchCounts()
        for r in self.repositories.values():
            total = total + r.fetched
        return total

    def to_dict(self) -> dict[str, object]:
        return {
            "cancelled": self.cancelled,
            "duration_s": round(self.duration_s, 3),
            "repositories": {
                repo: {
                    "committed": [iv.to_pair() for iv in r.committed],
                    "failed": [{"interval": f.interval.to_pair(), "code": f.code, "error": f.error}
                               for f in r.failed],
                    "cancelled": [iv.to_pair() for iv in r.cancelled],
                    "fetched": {"pull_requests": r.fetched.pull_requests,
                                "reviews": r.fetched.reviews,
                                "comments": r.fetched.comments},
                }
                for repo, r in self.repositories.items()
            },
        }


@dataclass(slots=True, frozen=True)
class CoverageReport:
    repository: RepoName
    requested: Interval
    missing: tuple[Interval, ...] = ()

    @property
    def fully_covered(self) -> bool: return not self.missing

    @property
    def missing_days(self) -> int: return sum(iv.days for iv in self.missing)

    def warning(self) -> str | None:
        if self.fully_covered:
            return None
        ranges = ", ".join(str(iv) for iv in self.missing)
        return (f"{self.repository}: {self.missing_days} of {self.requested.days} days in "
                f"{self.requested} are not synced ({ranges})")
