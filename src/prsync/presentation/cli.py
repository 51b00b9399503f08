import asyncio, contextlib, logging, signal
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from ..adapters.github_httpx import GitHubClient
from ..application.use_cases import check_coverage, export_parquet, open_services, preview_sync, request_sync
from ..application.utils import qualify_repositories, request_interval
from ..config import Settings, load_settings
from ..domain.errors import PrsyncError, RemoteError
from ..domain.models import GapEvent, GapState
from .render import plans_table, print_coverage, print_failures, status_table, sync_table

app = typer.Typer(help="Incremental GitHub pull-request history sync.", no_args_is_help=True)
console = Console()
err_console = Console(stderr=True)
log = logging.getLogger("prsync")

_TERMINAL = (GapState.COMMITTED, GapState.FAILED, GapState.CANCELLED)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _run(main: Callable[[], Awaitable[int]]) -> None:
    try:
        code = asyncio.run(main())
    except PrsyncError as e:
        err_console.print(f"[red]error[/] [{e.code}]: {e}")
        raise typer.Exit(2)
    raise typer.Exit(code)


def _install_cancel(cancel: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # not available on every platform; Ctrl-C then falls back to KeyboardInterrupt
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, cancel.set)


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="YAML config file (default: ./prsync.yml)"),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="DEBUG, INFO, WARNING, ERROR"),
):
    """prsync: fetch only what is missing, and say so when something still is."""
    try:
        settings = load_settings(config)
    except PrsyncError as e:
        err_console.print(f"[red]error[/] [{e.code}]: {e}")
        raise typer.Exit(2)
    if db:
        settings.database.path = db
    if log_level:
        if log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise typer.BadParameter(f"unknown level {log_level!r}", param_hint="--log-level")
        settings.logging.level = log_level.upper()
    setup_logging(settings.logging.level)
    ctx.obj = settings


@app.command()
def sync(
    ctx: typer.Context,
    repos: list[str] = typer.Argument(..., help="owner/name, or name when github.organization is set"),
    since: str = typer.Option(..., "--since", help="YYYY-MM-DD or number of days ago"),
    until: Optional[str] = typer.Option(None, "--until", help="YYYY-MM-DD (default: today, UTC)"),
    force: bool = typer.Option(False, "--force", help="Refetch the whole window even if already synced"),
    max_gap_days: Optional[int] = typer.Option(None, "--max-gap-days", min=1, help="Split gaps into chunks"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", min=1, help="Repositories in parallel"),
    as_json: bool = typer.Option(False, "--json", help="Print the run result as JSON"),
):
    """Fetch the missing parts of a date window and record them as covered."""
    settings: Settings = ctx.obj

    async def main() -> int:
        interval = request_interval(since, until)
        names = qualify_repositories(repos, settings.github.organization)
        if not settings.github.token:
            log.warning("no GitHub token configured; unauthenticated requests are heavily rate limited")
        async with open_services(settings, max_gap_days=max_gap_days) as svc:
            if isinstance(svc.source, GitHubClient):
                try:
                    quota = await svc.source.rate_limit()
                    log.info("GitHub API: %d/%d requests remaining", quota["remaining"], quota["limit"])
                    if quota["remaining"] < settings.github.throttle_below:
                        log.warning("GitHub API quota nearly spent; it resets at %s",
                                    datetime.fromtimestamp(quota["reset"], timezone.utc).strftime("%H:%M:%S UTC"))
                except RemoteError as e:
                    log.warning("could not read rate limit: %s", e)

            cancel = asyncio.Event()
            _install_cancel(cancel)
            progress = Progress(
                SpinnerColumn(), TextColumn("[bold]syncing[/]"), BarColumn(), MofNCompleteColumn(),
                TimeElapsedColumn(), TextColumn("• {task.description}"),
                console=err_console, transient=True,
            )
            seen = 0
            with progress:
                task = progress.add_task(str(interval), total=None)

                def on_event(ev: GapEvent) -> None:
                    nonlocal seen
                    if ev.state is GapState.PENDING:
                        seen += 1
                        progress.update(task, total=seen)
                    elif ev.state in _TERMINAL:
                        progress.advance(task, 1)
                    progress.update(task, description=f"{ev.repository} {ev.interval} {ev.state.value}")

                orchestrator = svc.orchestrator(concurrency=concurrency, on_event=on_event)
                result = await request_sync(svc.planner, orchestrator, names, interval, force=force, cancel=cancel)

        if as_json:
            console.print_json(data=result.to_dict())
        else:
            console.print(sync_table(result))
            print_failures(console, result)
        if result.cancelled:
            err_console.print("[yellow]cancelled; committed gaps are kept, re-run to continue[/]")
            return 130
        return 0 if result.ok else 1

    _run(main)


@app.command()
def plan(
    ctx: typer.Context,
    repos: list[str] = typer.Argument(...),
    since: str = typer.Option(..., "--since"),
    until: Optional[str] = typer.Option(None, "--until"),
    force: bool = typer.Option(False, "--force"),
    max_gap_days: Optional[int] = typer.Option(None, "--max-gap-days", min=1),
):
    """Show what `sync` would fetch, without calling GitHub."""
    settings: Settings = ctx.obj

    async def main() -> int:
        interval = request_interval(since, until)
        names = qualify_repositories(repos, settings.github.organization)
        async with open_services(settings, remote=False, max_gap_days=max_gap_days) as svc:
            plans = await preview_sync(svc.planner, names, interval, force=force)
        console.print(plans_table(plans))
        return 0

    _run(main)


@app.command()
def check(
    ctx: typer.Context,
    repos: list[str] = typer.Argument(...),
    since: str = typer.Option(..., "--since"),
    until: Optional[str] = typer.Option(None, "--until"),
    strict: bool = typer.Option(False, "--strict", help="Exit 2 when any range is missing"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Check that a window is fully synced before computing metrics over it."""
    settings: Settings = ctx.obj

    async def main() -> int:
        interval = request_interval(since, until)
        names = qualify_repositories(repos, settings.github.organization)
        async with open_services(settings, remote=False) as svc:
            reports = await check_coverage(svc.validator, names, interval)
        if as_json:
            console.print_json(data=[{
                "repository": r.repository,
                "requested": r.requested.to_pair(),
                "fully_covered": r.fully_covered,
                "missing": [iv.to_pair() for iv in r.missing],
            } for r in reports])
        else:
            print_coverage(console, reports)
        return 2 if strict and any(not r.fully_covered for r in reports) else 0

    _run(main)


@app.command()
def status(ctx: typer.Context, repos: Optional[list[str]] = typer.Argument(None)):
    """Show the synced ranges and stored entity counts per repository."""
    settings: Settings = ctx.obj

    async def main() -> int:
        async with open_services(settings, remote=False) as svc:
            names = (qualify_repositories(repos, settings.github.organization) if repos
                     else await svc.coverage.repositories())
            ledgers = {n: await svc.coverage.load(n) for n in names}
            counts = {n: await svc.entities.counts(n) for n in names}
        if not ledgers:
            console.print("nothing synced yet")
        else:
            console.print(status_table(ledgers, counts))
        return 0

    _run(main)


@app.command()
def export(ctx: typer.Context, out_dir: str = typer.Argument(..., help="Directory for the .parquet files")):
    """Write stored pull requests, reviews and comments to Parquet."""
    settings: Settings = ctx.obj

    async def main() -> int:
        async with open_services(settings, remote=False) as svc:
            paths = await export_parquet(svc.entities, out_dir)
        for p in paths:
            console.print(p)
        return 0

    _run(main)


if __name__ == "__main__":
    app()
