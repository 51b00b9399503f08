from __future__ import annotations
from bisect import bisect_left
from datetime import date
from typing import Iterable, Iterator, Sequence

from .errors import InvalidInterval
from .interval import Interval


class CoverageLedger:
    """Sorted, disjoint, non-touching intervals already fetched for one repository.

    ``version`` is the store revision this ledger was loaded at; stores use it
    to reject saves that would overwrite a concurrent writer.
    """

    __slots__ = ("_ivs", "version")

    def __init__(self, intervals: Sequence[Interval] = (), version: int = 0) -> None:
        ivs = tuple(intervals)
        _check_normalized(ivs)
        self._ivs: tuple[Interval, ...] = ivs
        self.version = version

    @classmethod
    def from_intervals(cls, intervals: Iterable[Interval], version: int = 0) -> "CoverageLedger":
        """Normalize arbitrary (unsorted, overlapping) intervals into a ledger."""
        ledger = cls(version=version)
        for iv in sorted(intervals):
            ledger.insert(iv)
        return ledger

    @classmethod
    def from_pairs(cls, pairs: Iterable[Sequence[str]], version: int = 0) -> "CoverageLedger":
        ivs: list[Interval] = []
        for pair in pairs:
            if len(pair) != 2:
                raise InvalidInterval(f"expected [start, end] pair, got {pair!r}")
            ivs.append(Interval.parse(pair[0], pair[1]))
        return cls.from_intervals(ivs, version=version)

    def to_pairs(self) -> list[list[str]]:
        return [list(iv.to_pair()) for iv in self._ivs]

    @property
    def intervals(self) -> tuple[Interval, ...]: return self._ivs

    def copy(self) -> "CoverageLedger":
        out = CoverageLedger.__new__(CoverageLedger)
        out._ivs, out.version = self._ivs, self.version
        return out

    def __len__(self) -> int: return len(self._ivs)
    def __iter__(self) -> Iterator[Interval]: return iter(self._ivs)
    def __bool__(self) -> bool: return bool(self._ivs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CoverageLedger):
            return NotImplemented
        return self._ivs == other._ivs

    def __repr__(self) -> str:
        return f"CoverageLedger([{', '.join(str(iv) for iv in self._ivs)}], version={self.version})"

    @property
    def total_days(self) -> int: return sum(iv.days for iv in self._ivs)

    # ── mutation ────────────────────────────────────────────────

    def insert(self, new: Interval) -> Interval:
        """Add ``new`` and merge every overlapping or touching neighbour.

        Single pass over the current intervals. The new tuple is built aside
        and swapped in at the end, so an exception leaves the ledger as it was.
        Returns the interval ``new`` ended up merged into.
        """
        if not isinstance(new, Interval):
            raise InvalidInterval(f"expected Interval, got {new!r}")
        ivs = self._ivs
        n = len(ivs)
        out: list[Interval] = []
        i = 0
        # strictly left of `new`, not touching
        while i < n and ivs[i].end.toordinal() + 1 < new.start.toordinal():
            out.append(ivs[i]); i += 1
        merged = new
        while i < n and ivs[i].start.toordinal() <= merged.end.toordinal() + 1:
            merged = merged.merge_with(ivs[i]); i += 1
        out.append(merged)
        out.extend(ivs[i:])
        self._ivs = tuple(out)
        return merged

    # ── queries ─────────────────────────────────────────────────

    def _first_candidate(self, requested: Interval) -> int:
        # index of the first interval that could end on or after requested.start
        starts = [iv.start for iv in self._ivs]
        i = bisect_left(starts, requested.start)
        return i - 1 if i > 0 and self._ivs[i - 1].end >= requested.start else i

    def gaps_within(self, requested: Interval) -> list[Interval]:
        """Ordered sub-intervals of ``requested`` that no ledger interval covers."""
        gaps: list[Interval] = []
        cursor = requested.start.toordinal()
        stop = requested.end.toordinal()
        for iv in self._ivs[self._first_candidate(requested):]:
            s, e = iv.start.toordinal(), iv.end.toordinal()
            if s > stop:
                break
            if s > cursor:
                gaps.append(Interval(date.fromordinal(cursor), date.fromordinal(s - 1)))
            cursor = max(cursor, e + 1)
            if cursor > stop:
                break
        if cursor <= stop:
            gaps.append(Interval(date.fromordinal(cursor), requested.end))
        return gaps

    def covered_within(self, requested: Interval) -> list[Interval]:
        out: list[Interval] = []
        for iv in self._ivs[self._first_candidate(requested):]:
            if iv.start > requested.end:
                break
            part = iv.intersection(requested)
            if part is not None:
                out.append(part)
        return out

    def is_fully_covered(self, requested: Interval) -> bool:
        return not self.gaps_within(requested)

    def contains(self, point: date) -> bool:
        return any(iv.contains(point) for iv in self._ivs)


def _check_normalized(ivs: Sequence[Interval]) -> None:
    for a, b in zip(ivs, ivs[1:]):
        if a.end.toordinal() + 1 >= b.start.toordinal():
            raise InvalidInterval(f"ledger intervals {a} and {b} are unsorted, overlapping or touching")
