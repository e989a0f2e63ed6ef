"""Source-control providers used by the codebase sync pipeline."""

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from product_kb.config import settings

logger = logging.getLogger(__name__)


class SourceControlError(Exception):
    """Raised when the provider rejects a request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitError(SourceControlError):
    """Raised when API rate limit is hit."""

    def __init__(self, retry_after: int = 60):
        self.retry_after = retry_after
        super().__init__(f"Rate limited. Retry after {retry_after}s", status_code=429)


class TransientSourceControlError(SourceControlError):
    """Server-side or network failure worth retrying."""

    pass


@dataclass
class RepoFile:
    path: str
    size: int


class SourceControlProvider(ABC):
    """Read access to a repository's file tree."""

    @abstractmethod
    async def list_files(self, repo: str, branch: str) -> list[RepoFile]:
        """List every file (blob) in the branch."""
        pass

    @abstractmethod
    async def fetch_file(self, repo: str, path: str, ref: str | None = None) -> bytes:
        """Fetch one file's raw bytes."""
        pass


def parse_repo_name(repo_url: str) -> str:
    """``owner/name`` from a GitHub URL or an ``owner/name`` string.

    Raises:
        ValueError: If the URL does not name a repository
    """
    value = repo_url.strip().rstrip("/")
    if value.endswith(".git"):
        value = value[: -len(".git")]
    for prefix in ("https://github.com/", "http://github.com/", "git@github.com:", "github.com/"):
        if value.startswith(prefix):
            value = value[len(prefix):]
            break
    parts = [p for p in value.split("/") if p]
    if len(parts) < 2:
        raise ValueError(f"Not a repository URL: {repo_url}")
    return f"{parts[0]}/{parts[1]}"


class GitHubClient(SourceControlProvider):
    """GitHub REST client authenticated with a user-supplied token."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.token = token or settings.GITHUB_TOKEN
        self.base_url = (base_url or settings.GITHUB_API_URL).rstrip("/")
        self._client = client
        self._warned_unshared = False

    @property
    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @retry(
        retry=retry_if_exception_type((TransientSourceControlError, RateLimitError)),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        stop=stop_after_attempt(5),
        reraise=True,
    )
    async def _request(self, endpoint: str, params: dict | None = None) -> dict:
        """Make an authenticated GET request to the GitHub API."""
        url = f"{self.base_url}{endpoint}"
        try:
            if self._client is not None:
                response = await self._client.get(url, headers=self._headers, params=params)
            else:
                if not self._warned_unshared:
                    logger.warning("GitHub client has no shared HTTP client, opening a connection per request")
                    self._warned_unshared = True
                async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT) as client:
                    response = await client.get(url, headers=self._headers, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientSourceControlError(f"GitHub request failed: {e}") from e

        if response.status_code == 429 or (
            response.status_code == 403 and response.headers.get("X-RateLimit-Remaining") == "0"
        ):
            retry_after = int(response.headers.get("Retry-After", 60))
            logger.warning(f"Rate limited. Waiting {retry_after}s...")
            raise RateLimitError(retry_after)
        if response.status_code >= 500:
            raise TransientSourceControlError(
                f"GitHub API error {response.status_code}", status_code=response.status_code
            )
        if response.status_code in (401, 403):
            raise SourceControlError(
                "GitHub rejected the access token", status_code=response.status_code
            )
        if response.status_code == 404:
            raise SourceControlError(
                f"Repository or path not found: {endpoint}", status_code=404
            )
        if response.status_code >= 400:
            raise SourceControlError(
                f"GitHub API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        return response.json()

    async def list_files(self, repo: str, branch: str) -> list[RepoFile]:
        data = await self._request(f"/repos/{repo}/git/trees/{branch}", params={"recursive": "1"})
        if data.get("truncated"):
            logger.warning(f"File tree for {repo}@{branch} was truncated by GitHub")
        return [
            RepoFile(path=item["path"], size=item.get("size", 0))
            for item in data.get("tree", [])
            if item.get("type") == "blob" and item.get("path")
        ]

    async def fetch_file(self, repo: str, path: str, ref: str | None = None) -> bytes:
        params = {"ref": ref} if ref else None
        data = await self._request(f"/repos/{repo}/contents/{path}", params=params)
        if data.get("encoding") != "base64" or "content" not in data:
            raise SourceControlError(f"Unexpected content encoding for {path}")
        return base64.b64decode(data["content"])
