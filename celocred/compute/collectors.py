"""
CeloCred — Identity Source Collectors
The GitHub side of a claim.

Every collector returns raw facts. No scoring logic. No opinions.

Calls:
    1. Profile         GET /users/{handle}
    2. Repositories    GET /users/{handle}/repos      (paged, ranked by stars, up to 100)
    3. Commit count    GET /repos/{o}/{r}/commits     (pagination-count heuristic)
    4. File content    GET /repos/{o}/{r}/contents/{path}   (raw, for content probes)

A missing GITHUB_TOKEN only lowers the rate limit. It is never fatal.
"""
import re
from typing import Any, Dict, List, Optional

import httpx
import structlog

from celocred.config import settings
from celocred.errors import InvalidHandle, ProfileNotFound, UpstreamUnavailable

logger = structlog.get_logger()

_PROFILE_LINK = re.compile(
    r"^(?:https?://)?(?:www\.)?github\.com/"
    r"([A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38})"
    r"(?:[/?#].*)?$",
    re.IGNORECASE,
)
_LAST_PAGE = re.compile(r'[?&]page=(\d+)[^>]*>;\s*rel="last"')


# ── Handle Parsing ────────────────────────────────

def parse_profile_link(link: str) -> str:
    """github.com/<handle>[/...] → handle. Anything else is an InvalidHandle."""
    match = _PROFILE_LINK.match((link or "").strip())
    if not match:
        raise InvalidHandle(
            f"'{link}' is not a GitHub profile link (expected https://github.com/<username>)"
        )
    return match.group(1)


def last_page_from_link_header(link_header: str) -> Optional[int]:
    match = _LAST_PAGE.search(link_header or "")
    return int(match.group(1)) if match else None


# ── Client ────────────────────────────────────────

class GitHubIdentitySource:
    """
    Thin async client over the GitHub REST API.
    Pass your own httpx.AsyncClient to share a connection pool (or to test).
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.GITHUB_API_URL).rstrip("/")
        self.token = settings.GITHUB_TOKEN if token is None else token
        self.timeout = timeout or settings.IDENTITY_TIMEOUT
        self._client = client
        self._owns_client = client is None

    def _headers(self, raw: bool = False) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github.v3.raw" if raw else "application/vnd.github.v3+json",
            "User-Agent": "CeloCred-Agent/1.0",
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                follow_redirects=True,
            )
        return self._client

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def _get(self, path: str, source: str, raw: bool = False, **kwargs) -> httpx.Response:
        try:
            return await self.client.get(
                f"{self.base_url}{path}",
                headers=self._headers(raw=raw),
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(
                f"GitHub {source} request failed: {type(e).__name__}",
                source="github",
                detail={"path": path},
            ) from e

    @staticmethod
    def _json(resp: httpx.Response, source: str, expected: type):
        """Decoded body of a 200. Anything unparseable or of the wrong shape is an outage."""
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(
                f"GitHub {source} response was not valid JSON", source="github") from e
        if not isinstance(data, expected):
            raise UpstreamUnavailable(
                f"GitHub {source} response had an unexpected shape",
                source="github",
                detail={"type": type(data).__name__},
            )
        return data

    # ── 1. Profile ────────────────────────────────

    async def get_profile(self, handle: str) -> Dict[str, Any]:
        resp = await self._get(f"/users/{handle}", "profile")
        if resp.status_code == 404:
            raise ProfileNotFound(handle)
        if resp.status_code != 200:
            raise UpstreamUnavailable(
                f"GitHub profile lookup returned {resp.status_code}",
                source="github",
                detail={"handle": handle, "status": resp.status_code},
            )
        data = self._json(resp, "profile", dict)
        return {
            "login": data.get("login", handle),
            "repo_count": int(data.get("public_repos") or 0),
            "follower_count": int(data.get("followers") or 0),
            "bio": data.get("bio") or "",
        }

    # ── 2. Repositories ───────────────────────────

    async def list_repositories(self, handle: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Up to `limit` repos, most starred first. Order is stable for identical data.

        The listing API cannot sort by stars, so pages are walked (up to
        MAX_REPO_PAGES) before ranking. Past that bound only the most
        recently updated repositories are ranked.
        """
        limit = limit or settings.MAX_REPOS
        raw: List[Dict[str, Any]] = []
        for page in range(1, settings.MAX_REPO_PAGES + 1):
            resp = await self._get(
                f"/users/{handle}/repos",
                "repository",
                params={"per_page": 100, "page": page, "type": "all", "sort": "updated"},
            )
            if resp.status_code == 404:
                raise ProfileNotFound(handle)
            if resp.status_code != 200:
                raise UpstreamUnavailable(
                    f"GitHub repository listing returned {resp.status_code}",
                    source="github",
                    detail={"handle": handle, "status": resp.status_code, "page": page},
                )
            batch = self._json(resp, "repository", list)
            raw.extend(r for r in batch if isinstance(r, dict))
            if len(batch) < 100:
                break
        else:
            logger.info("repository_listing_truncated", handle=handle, pages=settings.MAX_REPO_PAGES)

        repos = []
        for r in raw:
            owner = (r.get("owner") or {}).get("login") or handle
            repos.append({
                "name": r.get("name", ""),
                "description": r.get("description") or "",
                "topics": [t for t in (r.get("topics") or []) if isinstance(t, str)],
                "owner": owner,
                "stars": int(r.get("stargazers_count") or 0),
                "language": r.get("language") or "",
                "is_fork": bool(r.get("fork")),
                "url": r.get("html_url") or f"https://github.com/{owner}/{r.get('name', '')}",
            })

        repos.sort(key=lambda r: (-r["stars"], r["name"].lower()))
        return repos[:limit]

    # ── 3. Commit count ───────────────────────────

    async def count_commits(self, owner: str, repo: str, author: str) -> int:
        """
        Estimate, not an exact count: with per_page=1 the last page number
        in the Link header equals the number of commits.
        """
        try:
            resp = await self._get(
                f"/repos/{owner}/{repo}/commits",
                "commit",
                params={"author": author, "per_page": 1},
            )
        except UpstreamUnavailable as e:
            logger.debug("commit_count_failed", repo=f"{owner}/{repo}", error=e.message)
            return 0
        if resp.status_code != 200:
            return 0

        last_page = last_page_from_link_header(resp.headers.get("Link", ""))
        if last_page is not None:
            return last_page
        try:
            return 1 if resp.json() else 0
        except ValueError:
            return 0

    # ── 4. File content ───────────────────────────

    async def fetch_file(self, owner: str, repo: str, path: str) -> Optional[str]:
        """Raw file text, or None if absent. Transport errors propagate to the probe."""
        resp = await self._get(f"/repos/{owner}/{repo}/contents/{path}", "content", raw=True)
        if resp.status_code != 200:
            return None
        return resp.text
