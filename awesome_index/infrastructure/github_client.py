import aiohttp
import asyncio
import base64
import binascii
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from awesome_index.domain.exceptions import (
    DocumentNotFoundException,
    RateLimitExceededException,
    SourceException,
)
from awesome_index.domain.models import EntityId, EntityMetadata, utcnow
from awesome_index.infrastructure.acl import GitHubTranslator, parse_github_datetime

logger = logging.getLogger(__name__)

# Repository details for a single entity, plus the caller's remaining GraphQL budget.
REPOSITORY_QUERY = """
query ($owner: String!, $name: String!) {
  repository(owner: $owner, name: $name) {
    stargazerCount
    forkCount
    description
    pushedAt
    totalPullRequests: pullRequests {
      totalCount
    }
    issues {
      totalCount
    }
    latestMergedPullRequest: pullRequests(
      orderBy: {field: UPDATED_AT, direction: DESC}
      first: 1
      states: MERGED
    ) {
      nodes {
        mergedAt
      }
    }
    primaryLanguage {
      name
    }
    languages(first: 3, orderBy: {field: SIZE, direction: DESC}) {
      nodes {
        name
      }
    }
  }
  rateLimit {
    remaining
    resetAt
  }
}
"""

API_URL = "https://api.github.com"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=30, connect=10)
# Once the remaining GraphQL budget drops below this, further calls fail fast until reset.
RATE_LIMIT_RESERVE = 10
NOT_FOUND_TYPE = "NOT_FOUND"
NOT_FOUND_MESSAGE = "could not resolve to a repository"
RATE_LIMITED_TYPE = "RATE_LIMITED"


def _is_not_found(error: Dict[str, Any]) -> bool:
    return (
        error.get('type') == NOT_FOUND_TYPE
        or NOT_FOUND_MESSAGE in str(error.get('message', '')).lower()
    )


class GitHubClient:
    """
    Source gateway backed by the GitHub REST and GraphQL APIs.

    Keeps the rate-limit deadline reported by GitHub; while it lies in the
    future every call fails with RateLimitExceededException without touching
    the network.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "awesome-index",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.api_url = API_URL
        self.clock = clock
        self._session = session
        self._owns_session = session is None
        self._rate_limit_lock = threading.Lock()
        self._rate_limited_until: Optional[datetime] = None

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    def rate_limited_until(self) -> Optional[datetime]:
        """Returns the rate-limit deadline if it is still in the future, clearing it otherwise."""
        with self._rate_limit_lock:
            until = self._rate_limited_until
            if until is None:
                return None
            if until > self.clock():
                return until
            self._rate_limited_until = None
            return None

    def set_rate_limited_until(self, until: datetime) -> None:
        # Deadlines in the past carry no information.
        if until > self.clock():
            with self._rate_limit_lock:
                self._rate_limited_until = until
            logger.warning(f"GitHub rate limit reached. Source calls are suspended until {until.isoformat()}.")

    async def fetch_document_content(self, entity_id: EntityId) -> str:
        """
        Fetches the README of a repository as text.

        Raises:
            DocumentNotFoundException: If the repository or its README does not exist.
            RateLimitExceededException: If GitHub is currently rate limiting us.
            SourceException: For any other failure.
        """
        url = f"{self.api_url}/repos/{entity_id.owner}/{entity_id.name}/readme"
        status, data, _ = await self._send("GET", url)
        if status == 404:
            raise DocumentNotFoundException(f"No README found for {entity_id}.")

        encoding = data.get("encoding")
        if encoding != "base64":
            raise SourceException(f"Unexpected README encoding for {entity_id}: {encoding}")
        try:
            raw = base64.b64decode(data.get("content", "").replace("\n", ""))
            return raw.decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise SourceException(f"Could not decode README of {entity_id}: {e}") from e

    async def fetch_entity_metadata(self, entity_id: EntityId) -> Optional[EntityMetadata]:
        """
        Fetches repository metadata through GraphQL.

        Returns:
            Optional[EntityMetadata]: None only when GitHub reports that the repository does not exist.

        Raises:
            RateLimitExceededException: If GitHub rate limits the query.
            SourceException: For any other failure, including errors next to a null repository.
        """
        payload = {
            "query": REPOSITORY_QUERY,
            "variables": {"owner": entity_id.owner, "name": entity_id.name},
        }
        status, data, headers = await self._send("POST", f"{self.api_url}/graphql", payload)
        if status == 404:
            raise SourceException(f"GraphQL endpoint returned 404 for {entity_id}.")

        errors = data.get('errors') or []
        body = data.get('data') or {}
        self._track_budget(body.get('rateLimit') or {})

        if any(error.get('type') == RATE_LIMITED_TYPE for error in errors):
            reset_at = self._reset_time(headers)
            if reset_at is not None:
                self.set_rate_limited_until(reset_at)
            raise RateLimitExceededException(reset_at=reset_at)

        repository = body.get('repository')
        if repository is None:
            # GraphQL reports missing repositories as errors alongside a null repository
            if any(_is_not_found(error) for error in errors):
                return None
            message = errors[0].get('message', 'Unknown GraphQL error') if errors else "empty response"
            raise SourceException(f"GraphQL error for {entity_id}: {message}")

        if errors:
            logger.warning(f"GraphQL partial error for {entity_id}: {errors[0].get('message')}")
        return GitHubTranslator.to_domain(entity_id, repository, self.clock())

    def _track_budget(self, rate_limit: Dict[str, Any]) -> None:
        remaining = rate_limit.get('remaining')
        if remaining is None or remaining >= RATE_LIMIT_RESERVE:
            return
        reset_at = parse_github_datetime(rate_limit.get('resetAt'))
        if reset_at is not None:
            self.set_rate_limited_until(reset_at)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _send(
        self, method: str, url: str, payload: Optional[Dict[str, Any]] = None
    ) -> Tuple[int, Any, Mapping[str, str]]:
        """
        Performs one request and returns (status, decoded JSON body, headers). 404 yields a None body.
        """
        until = self.rate_limited_until()
        if until is not None:
            raise RateLimitExceededException(reset_at=until)

        session = await self._get_session()
        try:
            if method == "GET":
                request = session.get(url, headers=self.headers, timeout=REQUEST_TIMEOUT)
            else:
                request = session.post(url, json=payload, headers=self.headers, timeout=REQUEST_TIMEOUT)

            async with request as response:
                if response.status in (403, 429):
                    reset_at = self._reset_time(response.headers)
                    if reset_at is not None and reset_at > self.clock():
                        self.set_rate_limited_until(reset_at)
                        raise RateLimitExceededException(reset_at=reset_at)

                if response.status == 404:
                    return 404, None, response.headers

                if response.status >= 400:
                    text = await response.text()
                    raise SourceException(f"{method} {url} failed with status {response.status}: {text[:200]}")

                return response.status, await response.json(), response.headers

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SourceException(f"Request to {url} failed: {e}") from e

    def _reset_time(self, headers: Mapping[str, str]) -> Optional[datetime]:
        """Reads the rate-limit reset time from a rate-limited response, if GitHub sent one."""
        reset = headers.get('x-ratelimit-reset')
        if reset:
            try:
                return datetime.fromtimestamp(int(reset), tz=timezone.utc)
            except (TypeError, ValueError):
                logger.warning(f"Unparseable x-ratelimit-reset header: {reset!r}")

        # Secondary (abuse) limits only send Retry-After
        retry_after = headers.get('Retry-After')
        if retry_after:
            try:
                return self.clock() + timedelta(seconds=int(retry_after))
            except (TypeError, ValueError):
                logger.warning(f"Unparseable Retry-After header: {retry_after!r}")
        return None
