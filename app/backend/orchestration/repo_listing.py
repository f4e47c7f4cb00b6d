"""
Listing of the caller's own GitHub repositories, with languages and README
excerpts, as served by GET /api/repos.

Pages are walked 100 at a time; per-repo detail requests go out in batches of
README_BATCH_SIZE. A 403 with an exhausted quota aborts the whole listing with
GitHubRateLimitError so a partial listing is never cached.
"""
import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from errors import GitHubRateLimitError, RepoFetchError
from orchestration.enrichment import README_BATCH_SIZE, decode_readme, github_headers
from orchestration.schemas import RepoDetail

logger = logging.getLogger(__name__)

PER_PAGE = 100


def check_rate_limit(res: httpx.Response, now: float):
    if res.status_code != 403 or res.headers.get("x-ratelimit-remaining") != "0":
        return
    reset = res.headers.get("x-ratelimit-reset")
    if reset and reset.isdigit():
        reset_at = int(reset)
        when = datetime.fromtimestamp(reset_at, tz=timezone.utc).isoformat()
        retry_after = max(0, reset_at - int(now))
    else:
        when = "unknown"
        retry_after = 0
    raise GitHubRateLimitError(f"GitHub API rate limit exceeded. Resets at {when}.", retry_after=retry_after)


class RepoLister:
    def __init__(self, api_url: str = "https://api.github.com", timeout_seconds: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None, clock: Callable[[], float] = time.time):
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._clock = clock

    async def _get(self, http: httpx.AsyncClient, path: str, access_token: str,
                   params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        res = await http.get(f"{self.api_url}{path}", params=params, headers=github_headers(access_token))
        check_rate_limit(res, self._clock())
        return res

    async def list_repos(self, http: httpx.AsyncClient, access_token: str) -> List[Dict[str, Any]]:
        repos: List[Dict[str, Any]] = []
        page = 1
        while True:
            res = await self._get(http, "/user/repos", access_token, params={
                "per_page": PER_PAGE, "page": page, "sort": "updated", "affiliation": "owner",
            })
            if res.status_code != 200:
                logger.warning("GitHub repo listing stopped at page %d with status %d", page, res.status_code)
                break
            data = res.json()
            if not data:
                break
            repos.extend(data)
            if len(data) < PER_PAGE:
                break
            page += 1
        return repos

    async def fetch_languages(self, http: httpx.AsyncClient, access_token: str, full_name: str) -> Dict[str, int]:
        res = await self._get(http, f"/repos/{full_name}/languages", access_token)
        if res.status_code != 200:
            return {}
        data = res.json()
        return data if isinstance(data, dict) else {}

    async def fetch_readme(self, http: httpx.AsyncClient, access_token: str, full_name: str) -> Optional[str]:
        res = await self._get(http, f"/repos/{full_name}/readme", access_token)
        if res.status_code != 200:
            return None
        return decode_readme(res.json())

    async def _detail(self, http: httpx.AsyncClient, access_token: str, raw: Dict[str, Any]) -> Optional[RepoDetail]:
        full_name = raw.get("full_name", "")
        languages, readme = await asyncio.gather(
            self.fetch_languages(http, access_token, full_name),
            self.fetch_readme(http, access_token, full_name),
        )
        try:
            return RepoDetail(
                name=raw.get("name"),
                full_name=full_name,
                html_url=raw.get("html_url"),
                description=raw.get("description"),
                language=raw.get("language"),
                languages=languages,
                topics=raw.get("topics") or [],
                stargazers_count=raw.get("stargazers_count") or 0,
                forks_count=raw.get("forks_count") or 0,
                pushed_at=raw.get("pushed_at"),
                fork=bool(raw.get("fork")),
                readme=readme,
            )
        except ValidationError as e:
            logger.warning("Skipping malformed repo %r: %s", full_name, e)
            return None

    async def fetch_all(self, access_token: str) -> List[RepoDetail]:
        """Every repo the token's owner owns, most recently updated first."""
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as http:
                raw = await self.list_repos(http, access_token)
                detailed: List[RepoDetail] = []
                for i in range(0, len(raw), README_BATCH_SIZE):
                    batch = raw[i:i + README_BATCH_SIZE]
                    results = await asyncio.gather(*[self._detail(http, access_token, r) for r in batch])
                    detailed.extend(r for r in results if r is not None)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error fetching repos: %s", e)
            raise RepoFetchError() from e
        logger.info("Fetched %d repos from GitHub in %dms", len(detailed), int((time.monotonic() - start) * 1000))
        return detailed
