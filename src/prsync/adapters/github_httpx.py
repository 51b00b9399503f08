from __future__ import annotations
import asyncio, logging, time
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

import httpx

from ..domain.errors import (
    AuthError, MalformedResponse, NotFound, RateLimited, RemoteError, TransientNetworkError,
)
from ..domain.interval import Interval
from ..domain.models import Comment, PullRequest, Review
from ..domain.value_types import CommentKind, RepoName
from ..ports.remote import PullRequestSource

log = logging.getLogger(__name__)

API_URL = "https://api.github.com"
T = TypeVar("T")
Parse = Callable[[Any], tuple[list[Any], bool]]


def _ts(v: str | None) -> datetime | None:
    if v is None: return None
    return datetime.fromisoformat(v.replace("Z", "+00:00"))

def _ts_req(raw: dict, key: str) -> datetime:
    v = _ts(raw[key])
    if v is None: raise ValueError(f"{key} is null")
    return v

def _login(user: dict | None) -> str: return (user or {}).get("login") or "ghost"


def _to_pull(repository: RepoName, raw: dict) -> PullRequest:
    merged_at = _ts(raw.get("merged_at"))
    return PullRequest(
        id=int(raw["id"]),
        number=int(raw["number"]),
        repository=repository,
        author=_login(raw.get("user")),
        title=raw.get("title") or "",
        state="merged" if merged_at else raw["state"],
        draft=bool(raw.get("draft", False)),
        head_branch=(raw.get("head") or {}).get("ref") or "",
        base_branch=(raw.get("base") or {}).get("ref") or "",
        created_at=_ts_req(raw, "created_at"),
        updated_at=_ts_req(raw, "updated_at"),
        merged_at=merged_at,
        closed_at=_ts(raw.get("closed_at")),
        labels=tuple(l["name"] for l in raw.get("labels") or []),
        requested_reviewers=tuple(_login(u) for u in raw.get("requested_reviewers") or []),
    )

def _to_review(repository: RepoName, pr: PullRequest, raw: dict) -> Review:
    return Review(
        id=int(raw["id"]),
        pull_request_id=pr.id,
        pull_number=pr.number,
        repository=repository,
        reviewer=_login(raw.get("user")),
        state=raw["state"],
        submitted_at=_ts_req(raw, "submitted_at"),
        body=raw.get("body") or "",
    )

def _to_comment(repository: RepoName, pr: PullRequest, kind: CommentKind, raw: dict) -> Comment:
    return Comment(
        id=int(raw["id"]),
        kind=kind,
        pull_request_id=pr.id,
        pull_number=pr.number,
        repository=repository,
        author=_login(raw.get("user")),
        body=raw.get("body") or "",
        created_at=_ts_req(raw, "created_at"),
        updated_at=_ts(raw.get("updated_at")) or _ts_req(raw, "created_at"),
        review_id=raw.get("pull_request_review_id"),
        path=raw.get("path"),
        line=raw.get("line"),
    )


def _rows(data: Any, what: str) -> list[dict]:
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise MalformedResponse(f"expected a JSON array of {what}, got {type(data).__name__}")
    return data

def _guard(fn: Callable[[], T], what: str) -> T:
    try:
        return fn()
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedResponse(f"malformed {what} payload: {e!r}") from e


class LinkPager(Generic[T]):
    """Follows ``Link: rel="next"`` headers; the cursor moves only after a good page.

    With ``recheck_first`` the first page is read once more after the last one
    when the listing spanned several pages, so callers must tolerate duplicates.
    """

    def __init__(self, client: "GitHubClient", repository: RepoName, url: str,
                 params: dict[str, Any] | None, parse: Parse, recheck_first: bool = False) -> None:
        self._client = client
        self._repository = repository
        self._url: str | None = url
        self._params = params
        self._parse = parse
        self.pages_read = 0
        self._first = (url, params)
        self._recheck_first = recheck_first
        self._final = False

    @property
    def exhausted(self) -> bool: return self._url is None

    async def next_page(self) -> list[T]:
        if self._url is None:
            return []
        r = await self._client.get(self._repository, self._url, self._params)
        try:
            data = r.json()
        except ValueError as e:
            raise MalformedResponse(f"non-JSON response from {self._url}") from e
        items, stop = self._parse(data)
        nxt = None if stop or self._final else r.links.get("next", {}).get("url")
        self.pages_read += 1
        if nxt is None and self._recheck_first and not self._final and self.pages_read > 1:
            self._final = True
            self._url, self._params = self._first
        else:
            # the next link already carries every query parameter
            self._url, self._params = nxt, None
        return items


class ChainedPager(Generic[T]):
    """Drains a queue of LinkPagers one after another, creating each lazily."""

    def __init__(self, factories: Sequence[Callable[[], LinkPager[T]]]) -> None:
        self._pending = deque(factories)
        self._current: LinkPager[T] | None = None

    @property
    def exhausted(self) -> bool:
        return not self._pending and (self._current is None or self._current.exhausted)

    async def next_page(self) -> list[T]:
        while self._current is None or self._current.exhausted:
            if not self._pending:
                return []
            self._current = self._pending.popleft()()
        return await self._current.next_page()


class GitHubClient(PullRequestSource):
    def __init__(
        self,
        token: str | None,
        api_url: str = API_URL,
        timeout_s: float = 20,
        max_conn: int = 16,
        per_page: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        throttle_below: int = 10,
        max_wait_s: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.per_page = per_page
        self.throttle_below = throttle_below
        self.max_wait_s = max_wait_s
        self._clock = clock
        self._sleep = sleep
        # last quota seen in X-RateLimit-* headers or /rate_limit
        self._remaining: int | None = None
        self._reset_at: float | None = None
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "prsync",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn // 2)),
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "GitHubClient": return self
    async def __aexit__(self, *exc: object) -> None: await self.aclose()
    async def aclose(self) -> None: await self.client.aclose()

    def _retry_after(self, r: httpx.Response) -> float | None:
        ra = r.headers.get("Retry-After")
        if ra and ra.strip().isdigit():
            return float(ra)
        reset = r.headers.get("X-RateLimit-Reset")
        if reset and reset.strip().isdigit():
            return max(0.0, float(reset) - self._clock())
        return None

    def _note_quota(self, r: httpx.Response) -> None:
        remaining, reset = r.headers.get("X-RateLimit-Remaining"), r.headers.get("X-RateLimit-Reset")
        if remaining and remaining.strip().isdigit() and reset and reset.strip().isdigit():
            self._remaining, self._reset_at = int(remaining), float(reset)

    async def _throttle(self) -> None:
        """Wait for the quota window to reset when fewer than ``throttle_below`` requests are left."""
        if self._remaining is None or self._reset_at is None or self._remaining >= self.throttle_below:
            return
        wait = self._reset_at - self._clock()
        if wait <= 0:
            self._remaining = None
            return
        if wait > self.max_wait_s:
            raise RateLimited(wait, f"{self._remaining} request(s) left until the quota resets in {wait:.0f}s")
        log.warning("%d request(s) left, waiting %.0fs for the rate limit to reset", self._remaining, wait)
        await self._sleep(wait)
        self._remaining = None

    async def get(self, repository: RepoName | None, url: str, params: dict[str, Any] | None = None,
                  throttle: bool = True) -> httpx.Response:
        """GET ``url`` and translate failures into the sync error taxonomy."""
        if not url.startswith("http"):
            url = f"{self.api_url}{url}"
        if throttle:
            await self._throttle()
        try:
            r = await self.client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"timeout fetching {url}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{type(e).__name__} fetching {url}: {e}") from e

        code = r.status_code
        log.debug("GET %s -> %s", url, code)
        self._note_quota(r)
        if code < 400:
            return r
        if code == 401:
            raise AuthError("GitHub rejected the token (401)")
        if code in (403, 429):
            if code == 429 or r.headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in r.text.lower():
                raise RateLimited(self._retry_after(r))
            raise AuthError(f"access to {repository or url} forbidden (403)")
        if code == 404:
            raise NotFound(repository or url)
        if code >= 500:
            raise TransientNetworkError(f"GitHub returned {code} for {url}")
        raise RemoteError(f"GitHub returned {code} for {url}: {r.text[:200]}")

    async def rate_limit(self) -> dict[str, int]:
        r = await self.get(None, "/rate_limit", throttle=False)
        core = _guard(lambda: r.json()["resources"]["core"], "rate_limit")
        quota = _guard(lambda: {k: int(core[k]) for k in ("limit", "remaining", "reset")}, "rate_limit")
        self._remaining, self._reset_at = quota["remaining"], float(quota["reset"])
        return quota

    # ── PullRequestSource ───────────────────────────────────────

    def pull_requests(self, repository: RepoName, interval: Interval) -> LinkPager[PullRequest]:
        """Pull requests active in ``interval``, newest update first.

        The listing is ordered by ``updated_at``, so a pull request updated while
        later pages are being read moves to the first page and would be missed;
        the first page is therefore read again at the end. Duplicates this
        produces are dropped by the caller.
        """
        def parse(data: Any) -> tuple[list[PullRequest], bool]:
            out: list[PullRequest] = []
            for raw in _rows(data, "pull requests"):
                pr = _guard(lambda: _to_pull(repository, raw), "pull request")
                # sorted by updated desc: nothing further down can touch the interval
                if pr.updated_at.date() < interval.start:
                    return out, True
                if pr.active_in(interval):
                    out.append(pr)
            return out, False

        params = {"state": "all", "sort": "updated", "direction": "desc", "per_page": self.per_page}
        return LinkPager(self, repository, f"/repos/{repository}/pulls", params, parse, recheck_first=True)

    def reviews(self, repository: RepoName, pulls: Sequence[PullRequest]) -> ChainedPager[Review]:
        def pager(pr: PullRequest) -> Callable[[], LinkPager[Review]]:
            def parse(data: Any) -> tuple[list[Review], bool]:
                rows = [r for r in _rows(data, "reviews") if r.get("state") != "PENDING"]
                return [_guard(lambda: _to_review(repository, pr, r), "review") for r in rows], False
            return lambda: LinkPager(self, repository, f"/repos/{repository}/pulls/{pr.number}/reviews",
                                     {"per_page": self.per_page}, parse)
        return ChainedPager([pager(pr) for pr in pulls])

    def comments(self, repository: RepoName, pulls: Sequence[PullRequest]) -> ChainedPager[Comment]:
        def pager(pr: PullRequest, kind: CommentKind, path: str) -> Callable[[], LinkPager[Comment]]:
            def parse(data: Any) -> tuple[list[Comment], bool]:
                return [_guard(lambda: _to_comment(repository, pr, kind, r), "comment")
                        for r in _rows(data, "comments")], False
            return lambda: LinkPager(self, repository, f"/repos/{repository}/{path}/{pr.number}/comments",
                                     {"per_page": self.per_page}, parse)
        factories: list[Callable[[], LinkPager[Comment]]] = []
        for pr in pulls:
            factories.append(pager(pr, "issue_comment", "issues"))
            factories.append(pager(pr, "review_comment", "pulls"))
        return ChainedPager(factories)
