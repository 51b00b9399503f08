from __future__ import annotations
from typing import Mapping, Sequence

from rich.console import Console
from rich.table import Table

from ..domain.ledger import CoverageLedger
from ..domain.models import CoverageReport, SyncPlan, SyncRunResult
from ..domain.value_types import RepoName


def _ranges(ivs: Sequence[object]) -> str:
    return ", ".join(str(iv) for iv in ivs) or "-"


def plans_table(plans: Sequence[SyncPlan]) -> Table:
    t = Table(title="sync plan", expand=False)
    t.add_column("repository", style="bold")
    t.add_column("requested")
    t.add_column("gaps")
    t.add_column("days", justify="right")
    for p in plans:
        t.add_row(p.repository, str(p.requested),
                  _ranges(p.gaps) if p.needs_sync else "[green]already synced[/]", str(p.gap_days))
    return t


def sync_table(result: SyncRunResult) -> Table:
    t = Table(title=f"sync summary ({result.duration_s:.1f}s)")
    t.add_column("repository", style="bold")
    t.add_column("committed", style="green")
    t.add_column("failed", style="red")
    t.add_column("cancelled", style="yellow")
    t.add_column("PRs", justify="right")
    t.add_column("reviews", justify="right")
    t.add_column("comments", justify="right")
    for repo, r in result.repositories.items():
        t.add_row(repo, _ranges(r.committed), _ranges([f.interval for f in r.failed]), _ranges(r.cancelled),
                  str(r.fetched.pull_requests), str(r.fetched.reviews), str(r.fetched.comments))
    return t


def print_failures(console: Console, result: SyncRunResult) -> None:
    for repo, f in result.failed_gaps:
        console.print(f"[red]✗[/] {repo} {f.interval}: [{f.code}] {f.error}")


def print_coverage(console: Console, reports: Sequence[CoverageReport]) -> None:
    for rep in reports:
        msg = rep.warning()
        if msg is None:
            console.print(f"[green]✓[/] {rep.repository}: {rep.requested} fully synced")
        else:
            console.print(f"[yellow]⚠[/] {msg}")
    if any(not r.fully_covered for r in reports):
        console.print("[yellow]metrics over this window may be incomplete; run `prsync sync` for the "
                      "missing ranges before trusting them[/]")


def status_table(ledgers: Mapping[RepoName, CoverageLedger], counts: Mapping[RepoName, Mapping[str, int]]) -> Table:
    t = Table(title="coverage")
    t.add_column("repository", style="bold")
    t.add_column("synced ranges")
    t.add_column("days", justify="right")
    t.add_column("PRs", justify="right")
    t.add_column("reviews", justify="right")
    t.add_column("comments", justify="right")
    for repo, ledger in ledgers.items():
        c = counts.get(repo, {})
        t.add_row(repo, _ranges(ledger.intervals), str(ledger.total_days), str(c.get("pull_requests", 0)),
                  str(c.get("reviews", 0)), str(c.get("comments", 0)))
    return t
