"""
README enrichment for selected repositories.

READMEs are fetched lazily, only for the repositories the user actually sent
for analysis, and only when a GitHub token was supplied. Requests go out in
batches of README_BATCH_SIZE to stay clear of GitHub's secondary rate limits.
"""
import asyncio
import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

import httpx

from orchestration.schemas import RepoDetail

logger = logging.getLogger(__name__)

README_BATCH_SIZE = 10
README_MAX_CHARS = 2000


def github_headers(access_token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/vnd.github.v3+json",
    }


def decode_readme(payload: Any) -> Optional[str]:
    """First README_MAX_CHARS of a /readme response body, or None if it cannot be decoded."""
    try:
        content = payload.get("content", "")
        return base64.b64decode(content).decode("utf-8", errors="replace")[:README_MAX_CHARS]
    except (AttributeError, TypeError, ValueError, binascii.Error):
        return None


class ReadmeFetcher:
    def __init__(self, api_url: str = "https://api.github.com", timeout_seconds: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch_readme(self, http: httpx.AsyncClient, access_token: str, full_name: str) -> Optional[str]:
        try:
            res = await http.get(f"{self.api_url}/repos/{full_name}/readme", headers=github_headers(access_token))
            if res.status_code != 200:
                return None
            return decode_readme(res.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("README fetch failed for %s: %s", full_name, e)
            return None

    async def enrich(self, access_token: Optional[str], repos: List[RepoDetail]) -> List[RepoDetail]:
        """Return repos with `readme` filled where it was missing. Never raises."""
        if not access_token or all(r.readme for r in repos):
            return repos

        results: List[RepoDetail] = []
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as http:
            for i in range(0, len(repos), README_BATCH_SIZE):
                batch = repos[i:i + README_BATCH_SIZE]
                readmes = await asyncio.gather(*[
                    _done(r.readme) if r.readme else self.fetch_readme(http, access_token, r.full_name)
                    for r in batch
                ])
                results.extend(r.model_copy(update={"readme": rd}) for r, rd in zip(batch, readmes))
        logger.info("README enrichment complete for %d repos", len(results))
        return results


async def _done(value):
    return value
