from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from .errors import InvalidInterval

_ONE_DAY = timedelta(days=1)


def _ordinal(d: date) -> int: return d.toordinal()


@dataclass(slots=True, frozen=True, order=True)
class Interval:
    """Inclusive calendar-day range ``[start, end]``.

    Adjacency is tested on day ordinals, so intervals ending on ``date.max``
    never overflow.
    """
    start: date
    end: date

    def __post_init__(self) -> None:
        for name in ("start", "end"):
            v = getattr(self, name)
            if not isinstance(v, date) or isinstance(v, datetime):
                raise InvalidInterval(f"{name} must be a calendar date, got {v!r}")
        if self.start > self.end:
            raise InvalidInterval(f"start {self.start} is after end {self.end}")

    @classmethod
    def parse(cls, start: str, end: str) -> "Interval":
        try:
            return cls(date.fromisoformat(start), date.fromisoformat(end))
        except (TypeError, ValueError) as e:
            if isinstance(e, InvalidInterval):
                raise
            raise InvalidInterval(f"invalid ISO dates {start!r}..{end!r}: {e}") from e

    @classmethod
    def day(cls, d: date) -> "Interval": return cls(d, d)

    @property
    def days(self) -> int: return _ordinal(self.end) - _ordinal(self.start) + 1

    def contains(self, point: date) -> bool:
        return self.start <= point <= self.end

    def covers(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "Interval") -> bool:
        return self.start <= other.end and other.start <= self.end

    def touches(self, other: "Interval") -> bool:
        return (_ordinal(self.end) + 1 == _ordinal(other.start)
                or _ordinal(other.end) + 1 == _ordinal(self.start))

    def mergeable(self, other: "Interval") -> bool:
        return self.overlaps(other) or self.touches(other)

    def merge_with(self, other: "Interval") -> "Interval":
        if not self.mergeable(other):
            raise InvalidInterval(f"cannot merge disjoint intervals {self} and {other}")
        return Interval(min(self.start, other.start), max(self.end, other.end))

    def intersection(self, other: "Interval") -> "Interval | None":
        if not self.overlaps(other):
            return None
        return Interval(max(self.start, other.start), min(self.end, other.end))

    def subtract(self, other: "Interval") -> list["Interval"]:
        """Parts of ``self`` not covered by ``other``: zero, one or two intervals."""
        if not self.overlaps(other):
            return [self]
        out: list[Interval] = []
        if other.start > self.start:
            out.append(Interval(self.start, other.start - _ONE_DAY))
        if other.end < self.end:
            out.append(Interval(other.end + _ONE_DAY, self.end))
        return out

    def split(self, max_days: int) -> list["Interval"]:
        """Consecutive chunks of at most ``max_days`` days, oldest first."""
        if max_days < 1:
            raise ValueError("max_days must be >= 1")
        out: list[Interval] = []
        s, e = _ordinal(self.start), _ordinal(self.end)
        while s <= e:
            t = min(e, s + max_days - 1)
            out.append(Interval(date.fromordinal(s), date.fromordinal(t)))
            s = t + 1
        return out

    def to_pair(self) -> tuple[str, str]:
        return (self.start.isoformat(), self.end.isoformat())

    def __str__(self) -> str:
        if self.start == self.end:
            return self.start.isoformat()
        return f"{self.start.isoformat()}..{self.end.isoformat()}"
