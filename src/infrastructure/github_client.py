import aiohttp
import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from src.domain.exceptions import (
    GitHubApiException,
    NotFoundException,
    RateLimitExceededException,
    SyncException,
    TransientIOException,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
# Maximum page size accepted by the issues endpoint
MAX_PER_PAGE = 100
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=60, connect=10)
MAX_SECONDARY_RATE_LIMIT_WAITS = 3
DEFAULT_RETRY_AFTER = 60


class GitHubRestClient:
    """
    Client for the GitHub REST API: repository metadata, issue listing and
    single-issue lookup. Handles authentication and rate limit signalling;
    transport failures are raised to the caller without retry.
    """

    def __init__(self, token: Optional[str] = None, api_url: str = DEFAULT_API_URL):
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "github-issue-sync",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning("No GitHub token configured, using unauthenticated requests (60 req/hour).")
        self.api_url = api_url.rstrip("/")

    async def _get(
        self,
        session: aiohttp.ClientSession,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Any, Optional[int]]:
        """
        Performs a GET request.

        Returns:
            Tuple of (decoded JSON body, next page number or None).
        """
        url = f"{self.api_url}{path}"

        for attempt in range(MAX_SECONDARY_RATE_LIMIT_WAITS + 1):
            try:
                async with session.get(url, params=params, headers=self.headers, timeout=REQUEST_TIMEOUT) as response:
                    if response.status == 404:
                        raise NotFoundException("GitHub resource", path)

                    if response.status in {403, 429}:
                        if response.headers.get('X-RateLimit-Remaining') == "0":
                            raise RateLimitExceededException(reset_at=response.headers.get('X-RateLimit-Reset', ''))
                        # Secondary rate limit (abuse detection)
                        retry_after = response.headers.get('Retry-After')
                        if response.status == 403 and retry_after is None:
                            body = await response.text()
                            if "secondary rate limit" not in body.lower():
                                raise GitHubApiException("GET", path, response.status, body)
                        if attempt >= MAX_SECONDARY_RATE_LIMIT_WAITS:
                            raise RateLimitExceededException(
                                reset_at=retry_after or '', message="GitHub secondary rate limit persisted."
                            )
                        sleep_time = int(retry_after) if retry_after else DEFAULT_RETRY_AFTER
                        logger.warning(
                            f"Secondary rate limit ({response.status}). Sleeping {sleep_time}s "
                            f"(attempt {attempt + 1}/{MAX_SECONDARY_RATE_LIMIT_WAITS})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    if response.status >= 500:
                        raise TransientIOException("GET", path, f"GitHub server error ({response.status})")

                    if response.status >= 400:
                        raise GitHubApiException("GET", path, response.status, await response.text())

                    data = await response.json()
                    return data, self._next_page(response)

            except SyncException:
                raise
            except aiohttp.ClientResponseError as e:
                raise GitHubApiException("GET", path, e.status, e.message) from e
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise TransientIOException("GET", path, str(e) or type(e).__name__) from e

    @staticmethod
    def _next_page(response: aiohttp.ClientResponse) -> Optional[int]:
        """Reads the page number of the ``rel="next"`` entry of the Link header."""
        next_link = response.links.get("next")
        if not next_link:
            return None
        page = next_link["url"].query.get("page")
        return int(page) if page else None

    async def fetch_repository(self, session: aiohttp.ClientSession, owner: str, name: str) -> Dict[str, Any]:
        data, _ = await self._get(session, f"/repos/{owner}/{name}")
        return data

    async def list_issues_by_repo(
        self,
        session: aiohttp.ClientSession,
        owner: str,
        name: str,
        state: str = "open",
        page: int = 1,
        per_page: int = MAX_PER_PAGE,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """
        Fetches a single page of issues of a repository.

        Returns:
            Tuple of (raw issues, next page number or None on the last page).
        """
        params = {"state": state, "page": page, "per_page": min(per_page, MAX_PER_PAGE)}
        data, next_page = await self._get(session, f"/repos/{owner}/{name}/issues", params)
        return data or [], next_page

    async def get_issue(self, session: aiohttp.ClientSession, owner: str, name: str, number: int) -> Dict[str, Any]:
        data, _ = await self._get(session, f"/repos/{owner}/{name}/issues/{number}")
        return data
