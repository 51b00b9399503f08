import asyncio

import pytest

from prsync.application.orchestrator import SyncOrchestrator
from prsync.application.planning import SyncPlanner
from prsync.application.retry import RetryPolicy
from prsync.application.use_cases import request_sync
from prsync.application.validation import CoverageValidator
from prsync.domain.errors import (
    AuthError, ConcurrentUpdateError, MalformedResponse, NotFound, PersistenceError, RateLimited,
    TransientNetworkError,
)
from prsync.domain.models import GapState, SyncPlan
from prsync.domain.value_types import RepoName

from conftest import REPO, iv, make_comment, make_pull, make_review

OTHER = RepoName("acme/web")


def _orchestrator(source, entities, coverage, sleep, **kw) -> SyncOrchestrator:
    kw.setdefault("retry", RetryPolicy(rate_limit_attempts=3, transient_attempts=3, backoff_s=0.5))
    return SyncOrchestrator(source=source, entities=entities, coverage=coverage, sleep=sleep, **kw)


async def _sync(source, entities, coverage, sleep, repos, req, **kw):
    orch = _orchestrator(source, entities, coverage, sleep, **kw)
    return await request_sync(SyncPlanner(coverage), orch, repos, req)


@pytest.mark.asyncio
async def test_first_sync_fetches_persists_and_commits(source, entities, coverage, sleep):
    pr1 = make_pull(1, "2024-01-03T10:00:00")
    pr2 = make_pull(2, "2023-12-20T10:00:00", merged="2024-01-15T08:00:00")
    old = make_pull(3, "2023-11-01T10:00:00")
    source.add(pr1, pr2, old)
    source.reviews_by_pr[1] = [make_review(10, pr1, "2024-01-04T09:00:00")]
    source.comments_by_pr[1] = [make_comment(20, pr1, "2024-01-04T09:00:00"),
                                make_comment(20, pr1, "2024-01-04T09:00:00", kind="review_comment")]

    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))

    assert result.ok
    r = result.repositories[REPO]
    assert r.committed == [iv("2024-01-01", "2024-01-31")]
    assert (r.fetched.pull_requests, r.fetched.reviews, r.fetched.comments) == (2, 1, 2)
    assert await entities.counts(REPO) == {"pull_requests": 2, "reviews": 1, "comments": 2}
    assert coverage.intervals(REPO) == [iv("2024-01-01", "2024-01-31")]


@pytest.mark.asyncio
async def test_resync_of_covered_window_makes_no_remote_calls(source, entities, coverage, sleep):
    source.add(make_pull(1, "2024-01-03T10:00:00"))
    req = iv("2024-01-01", "2024-01-31")
    await _sync(source, entities, coverage, sleep, [REPO], req)
    source.calls.clear()
    saves = coverage.saves

    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-10", "2024-01-20"))

    assert result.ok and result.repositories[REPO].committed == []
    assert source.calls == []
    assert coverage.saves == saves


@pytest.mark.asyncio
async def test_partial_overlap_fetches_only_the_gap(source, entities, coverage, sleep):
    coverage.seed(REPO, iv("2024-01-01", "2024-01-10"))
    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-05", "2024-01-20"))
    assert source.pull_calls() == [iv("2024-01-11", "2024-01-20")]
    assert result.repositories[REPO].committed == [iv("2024-01-11", "2024-01-20")]
    assert coverage.intervals(REPO) == [iv("2024-01-01", "2024-01-20")]


@pytest.mark.asyncio
async def test_adjacent_syncs_merge_into_one_interval(source, entities, coverage, sleep):
    await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-10"))
    await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-11", "2024-01-20"))
    assert coverage.intervals(REPO) == [iv("2024-01-01", "2024-01-20")]


@pytest.mark.asyncio
async def test_failed_gap_is_not_committed_and_later_gaps_still_run(source, entities, coverage, sleep):
    coverage.seed(REPO, iv("2024-01-06", "2024-01-09"))
    source.broken[(REPO, iv("2024-01-01", "2024-01-05"))] = MalformedResponse("garbage")
    req = iv("2024-01-01", "2024-01-15")

    result = await _sync(source, entities, coverage, sleep, [REPO], req)

    r = result.repositories[REPO]
    assert not result.ok
    assert [f.interval for f in r.failed] == [iv("2024-01-01", "2024-01-05")]
    assert r.failed[0].code == "MALFORMED_RESPONSE"
    assert r.committed == [iv("2024-01-10", "2024-01-15")]
    assert coverage.intervals(REPO) == [iv("2024-01-06", "2024-01-15")]

    [report] = await CoverageValidator(coverage).validate([REPO], req)
    assert report.missing == (iv("2024-01-01", "2024-01-05"),)


@pytest.mark.asyncio
async def test_transient_and_rate_limit_errors_are_retried(source, entities, coverage, sleep):
    source.add(make_pull(1, "2024-01-03T10:00:00"))
    source.faults[REPO] = [TransientNetworkError("reset"), RateLimited(retry_after=2)]

    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))

    assert result.ok
    assert sleep.delays == [0.5, 2]
    assert result.repositories[REPO].fetched.pull_requests == 1


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_gap(source, entities, coverage, sleep):
    source.faults[REPO] = [TransientNetworkError("reset") for _ in range(3)]
    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))
    [failure] = result.repositories[REPO].failed
    assert failure.code == "TRANSIENT_NETWORK"
    assert coverage.intervals(REPO) == []


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [AuthError("bad credentials"), NotFound("acme/api")])
async def test_repository_fatal_error_skips_remaining_gaps(source, entities, coverage, sleep, exc):
    coverage.seed(REPO, iv("2024-01-10", "2024-01-10"), iv("2024-01-20", "2024-01-20"))
    source.faults[REPO] = [exc]

    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))

    r = result.repositories[REPO]
    assert len(r.failed) == 3 and r.committed == []
    assert all(f.code == exc.code for f in r.failed)
    assert r.failed[1].error.startswith("not attempted")
    assert len(source.pull_calls()) == 1


@pytest.mark.asyncio
async def test_one_repository_failing_does_not_stop_another(source, entities, coverage, sleep):
    source.faults[REPO] = [AuthError("no access")]
    source.add(make_pull(5, "2024-01-02T00:00:00", repo=OTHER))
    result = await _sync(source, entities, coverage, sleep, [REPO, OTHER], iv("2024-01-01", "2024-01-31"))
    assert not result.repositories[REPO].ok
    assert result.repositories[OTHER].committed == [iv("2024-01-01", "2024-01-31")]
    assert coverage.intervals(OTHER) == [iv("2024-01-01", "2024-01-31")]


@pytest.mark.asyncio
async def test_persistence_failure_leaves_ledger_untouched(source, entities, coverage, sleep):
    source.add(make_pull(1, "2024-01-03T10:00:00"))
    entities.fail = PersistenceError("disk full")
    events = []

    orch = _orchestrator(source, entities, coverage, sleep, on_event=lambda e: events.append(e.state))
    result = await request_sync(SyncPlanner(coverage), orch, [REPO], iv("2024-01-01", "2024-01-31"))

    assert result.repositories[REPO].failed[0].code == "PERSISTENCE_ERROR"
    assert coverage.rows == {}
    assert events == [GapState.PENDING, GapState.FETCHING, GapState.PERSISTING, GapState.FAILED]


@pytest.mark.asyncio
async def test_gap_lifecycle_events(source, entities, coverage, sleep):
    events = []
    orch = _orchestrator(source, entities, coverage, sleep, on_event=events.append)
    await request_sync(SyncPlanner(coverage), orch, [REPO], iv("2024-01-01", "2024-01-02"))
    assert [e.state for e in events] == [GapState.PENDING, GapState.FETCHING, GapState.PERSISTING,
                                         GapState.COMMITTED]
    assert all(e.repository == REPO and e.interval == iv("2024-01-01", "2024-01-02") for e in events)


@pytest.mark.asyncio
async def test_concurrent_ledger_update_is_reapplied(source, entities, coverage, sleep):
    async def other_writer(repo):
        ledger = await coverage.load(repo)
        ledger.insert(iv("2024-03-01", "2024-03-31"))
        await coverage.save(repo, ledger)

    coverage.before_save = other_writer
    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))

    assert result.ok
    assert coverage.intervals(REPO) == [iv("2024-01-01", "2024-01-31"), iv("2024-03-01", "2024-03-31")]


@pytest.mark.asyncio
async def test_cancel_before_start_commits_nothing(source, entities, coverage, sleep):
    cancel = asyncio.Event()
    cancel.set()
    orch = _orchestrator(source, entities, coverage, sleep)
    result = await request_sync(SyncPlanner(coverage), orch, [REPO, OTHER], iv("2024-01-01", "2024-01-31"),
                                cancel=cancel)
    assert result.cancelled and not result.ok
    assert result.repositories[REPO].cancelled == [iv("2024-01-01", "2024-01-31")]
    assert source.calls == [] and coverage.rows == {}


@pytest.mark.asyncio
async def test_cancel_mid_run_keeps_committed_gaps(source, entities, coverage, sleep):
    coverage.seed(REPO, iv("2024-01-10", "2024-01-10"))
    cancel = asyncio.Event()

    def on_event(ev):
        if ev.state is GapState.COMMITTED:
            cancel.set()

    orch = _orchestrator(source, entities, coverage, sleep, on_event=on_event)
    result = await request_sync(SyncPlanner(coverage), orch, [REPO], iv("2024-01-01", "2024-01-20"),
                                cancel=cancel)

    r = result.repositories[REPO]
    assert r.committed == [iv("2024-01-01", "2024-01-09")]
    assert r.cancelled == [iv("2024-01-11", "2024-01-20")]
    assert coverage.intervals(REPO) == [iv("2024-01-01", "2024-01-10")]


@pytest.mark.asyncio
async def test_cancel_while_persisting_still_commits_that_gap(source, entities, coverage, sleep):
    coverage.seed(REPO, iv("2024-01-10", "2024-01-10"))
    source.add(make_pull(1, "2024-01-03T10:00:00"))
    cancel = asyncio.Event()
    states = []

    def on_event(ev):
        states.append(ev.state)
        if ev.state is GapState.PERSISTING:
            cancel.set()

    orch = _orchestrator(source, entities, coverage, sleep, on_event=on_event)
    result = await request_sync(SyncPlanner(coverage), orch, [REPO], iv("2024-01-01", "2024-01-20"),
                                cancel=cancel)

    r = result.repositories[REPO]
    assert result.cancelled
    assert r.committed == [iv("2024-01-01", "2024-01-09")]
    assert r.cancelled == [iv("2024-01-11", "2024-01-20")]
    assert coverage.intervals(REPO) == [iv("2024-01-01", "2024-01-10")]
    assert (await entities.counts(REPO))["pull_requests"] == 1
    assert states[:4] == [GapState.PENDING, GapState.FETCHING, GapState.PERSISTING, GapState.COMMITTED]


@pytest.mark.asyncio
async def test_task_cancelled_during_upsert_waits_for_commit(source, entities, coverage, sleep):
    source.add(make_pull(1, "2024-01-03T10:00:00"))
    entities.gate, entities.upserting = asyncio.Event(), asyncio.Event()
    gap = iv("2024-01-01", "2024-01-31")
    orch = _orchestrator(source, entities, coverage, sleep)

    task = asyncio.ensure_future(request_sync(SyncPlanner(coverage), orch, [REPO], gap))
    await entities.upserting.wait()
    task.cancel()
    await asyncio.sleep(0)
    assert coverage.rows == {}
    entities.gate.set()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert coverage.intervals(REPO) == [gap]
    assert (await entities.counts(REPO))["pull_requests"] == 1


@pytest.mark.asyncio
async def test_exhausted_rate_limit_stops_every_repository(source, entities, coverage, sleep):
    for repo in (REPO, OTHER):
        coverage.seed(repo, iv("2024-01-10", "2024-01-10"))
        source.faults[repo] = [RateLimited(retry_after=3600) for _ in range(10)]

    result = await _sync(source, entities, coverage, sleep, [REPO, OTHER], iv("2024-01-01", "2024-01-20"),
                         concurrency=1)

    assert not result.ok
    assert len(source.pull_calls()) == 1
    assert sleep.delays == []
    failures = result.failed_gaps
    assert len(failures) == 4
    assert all(f.code == "RATE_LIMITED" for _, f in failures)
    assert result.repositories[OTHER].failed[0].error.startswith("not attempted")
    assert coverage.intervals(OTHER) == [iv("2024-01-10", "2024-01-10")]


@pytest.mark.asyncio
async def test_rate_limit_retries_spent_stops_later_repositories(source, entities, coverage, sleep):
    source.faults[REPO] = [RateLimited(retry_after=2) for _ in range(3)]
    source.add(make_pull(5, "2024-01-02T00:00:00", repo=OTHER))

    result = await _sync(source, entities, coverage, sleep, [REPO, OTHER], iv("2024-01-01", "2024-01-31"),
                         concurrency=1)

    assert sleep.delays == [2, 2]
    assert source.pull_calls(OTHER) == []
    assert result.repositories[OTHER].failed[0].code == "RATE_LIMITED"

    source.faults[REPO].clear()
    again = await _sync(source, entities, coverage, sleep, [REPO, OTHER], iv("2024-01-01", "2024-01-31"))
    assert again.ok
    assert coverage.intervals(OTHER) == [iv("2024-01-01", "2024-01-31")]


@pytest.mark.asyncio
async def test_duplicate_plans_rejected(source, entities, coverage, sleep):
    plan = SyncPlan(REPO, iv("2024-01-01", "2024-01-02"), (iv("2024-01-01", "2024-01-02"),))
    with pytest.raises(ValueError):
        await _orchestrator(source, entities, coverage, sleep).run([plan, plan])


def test_invalid_settings_rejected(source, entities, coverage, sleep):
    with pytest.raises(ValueError):
        _orchestrator(source, entities, coverage, sleep, concurrency=0)
    with pytest.raises(ValueError):
        _orchestrator(source, entities, coverage, sleep, commit_attempts=0)


@pytest.mark.asyncio
async def test_duplicate_entities_across_pages_are_stored_once(source, entities, coverage, sleep):
    pr = make_pull(1, "2024-01-03T10:00:00")
    source.add(pr, pr, pr)
    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))
    assert result.repositories[REPO].fetched.pull_requests == 1
    assert (await entities.counts())["pull_requests"] == 1


@pytest.mark.asyncio
async def test_concurrency_one_runs_repositories_in_turn(source, entities, coverage, sleep):
    result = await _sync(source, entities, coverage, sleep, [REPO, OTHER], iv("2024-01-01", "2024-01-31"),
                         concurrency=1)
    assert result.ok
    assert [c[0] for c in source.calls if c[1] == "pulls"] == [REPO, OTHER]


@pytest.mark.asyncio
async def test_synced_month_checks_fully_covered(source, entities, coverage, sleep):
    await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))
    [report] = await CoverageValidator(coverage).validate([REPO], iv("2024-01-10", "2024-01-20"))
    assert report.fully_covered and report.missing == ()


@pytest.mark.asyncio
async def test_ledger_save_failure_fails_the_gap(source, entities, coverage, sleep):
    async def broken_save(repository, ledger):
        raise PersistenceError("database is locked")

    coverage.save = broken_save
    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"))
    [failure] = result.repositories[REPO].failed
    assert failure.code == "PERSISTENCE_ERROR"
    assert result.repositories[REPO].committed == []
    assert coverage.rows == {}


@pytest.mark.asyncio
async def test_commit_gives_up_after_repeated_conflicts(source, entities, coverage, sleep):
    async def always_stale(repository, ledger):
        raise ConcurrentUpdateError(repository, ledger.version)

    coverage.save = always_stale
    result = await _sync(source, entities, coverage, sleep, [REPO], iv("2024-01-01", "2024-01-31"),
                         commit_attempts=2)
    assert result.repositories[REPO].failed[0].code == "CONCURRENT_UPDATE"
