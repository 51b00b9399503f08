from __future__ import annotations
import re
from datetime import date, datetime, timedelta, timezone
from typing import Iterable

from ..domain.errors import ConfigurationError, InvalidInterval
from ..domain.interval import Interval
from ..domain.value_types import RepoName

_REPO_RE = re.compile(r"^[A-Za-z0-9_.-]+(/[A-Za-z0-9_.-]+)?$")


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def parse_day(value: str, today: date) -> date:
    """``YYYY-MM-DD``, or a whole number of days before ``today``."""
    v = value.strip()
    try:
        if v.isdigit():
            return today - timedelta(days=int(v))
        return date.fromisoformat(v)
    except (OverflowError, ValueError) as e:
        raise InvalidInterval(f"expected YYYY-MM-DD or a number of days, got {value!r}") from e


def request_interval(since: str, until: str | None = None, today: date | None = None) -> Interval:
    today = today or today_utc()
    return Interval(parse_day(since, today), parse_day(until, today) if until else today)


def qualify_repository(name: str, organization: str | None) -> RepoName:
    n = name.strip().strip("/")
    if not _REPO_RE.match(n):
        raise ConfigurationError(f"invalid repository name {name!r}")
    if "/" not in n:
        if not organization:
            raise ConfigurationError(f"repository {name!r} has no owner and no organization is configured",
                                     key="github.organization")
        n = f"{organization}/{n}"
    return RepoName(n.lower())


def qualify_repositories(names: Iterable[str], organization: str | None) -> list[RepoName]:
    return [qualify_repository(n, organization) for n in names]
