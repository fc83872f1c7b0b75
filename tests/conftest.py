"""
Shared fixtures. No network: GitHub and Gemini are httpx.MockTransport
handlers, the ledger is an InMemoryLedger.
"""
import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest

from celocred.chain.ledger import InMemoryLedger, LedgerGateway
from celocred.compute.collectors import GitHubIdentitySource
from celocred.errors import OracleUnavailable
from celocred.model import ActivitySignal, AdvisoryOpinion
from celocred.trust.advisory import AdvisoryOracle, opinion_from_payload

GITHUB = "https://api.github.com"

# EIP-55 reference vectors
WALLET = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"
OTHER_WALLET = "0xfB6916095ca1df60bB79Ce92cE3Ea74c37c5d359"

ACCEPT_PAYLOAD = {
    "authentic": True,
    "authenticity": 95,
    "impactScore": 80,
    "qualityScore": 70,
    "finalScore": 84,
    "reasoning": "Consistent ecosystem contributor",
    "keyFindings": ["5 commits to ecosystem tooling"],
    "recommendation": "accept",
}


def run(coro):
    return asyncio.run(coro)


class FakeGitHub:
    """
    Routes GitHub REST paths to canned data.

        profiles   handle → /users/{handle} JSON (missing → 404)
        repos      handle → list of repo JSON
        commits    "owner/repo" → int count, or an int HTTP status via ("status", code)
        files      "owner/repo/path" → text (missing → 404), or an Exception to raise
        stalls     path fragment → seconds to sleep before answering
        bodies     exact path → raw 200 body, served instead of the canned data
    """

    def __init__(self):
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.repos: Dict[str, List[Dict[str, Any]]] = {}
        self.commits: Dict[str, Any] = {}
        self.files: Dict[str, Any] = {}
        self.stalls: Dict[str, float] = {}
        self.bodies: Dict[str, str] = {}
        self.profile_status: Optional[int] = None
        self.requests: List[str] = []

    def add_profile(self, handle: str, bio: str = "", followers: int = 10, public_repos: int = 5):
        self.profiles[handle.lower()] = {
            "login": handle,
            "bio": bio,
            "followers": followers,
            "public_repos": public_repos,
        }
        self.repos.setdefault(handle.lower(), [])

    def add_repo(self, handle: str, name: str, owner: Optional[str] = None, stars: int = 0,
                 language: Optional[str] = None, description: str = "", topics=(), fork: bool = False):
        owner = owner or handle
        self.repos.setdefault(handle.lower(), []).append({
            "name": name,
            "description": description,
            "topics": list(topics),
            "owner": {"login": owner},
            "stargazers_count": stars,
            "language": language,
            "fork": fork,
            "html_url": f"https://github.com/{owner}/{name}",
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append(path)
        if path in self.bodies:
            return httpx.Response(200, text=self.bodies[path])
        parts = path.strip("/").split("/")

        if parts[0] == "users" and len(parts) == 2:
            if self.profile_status is not None:
                return httpx.Response(self.profile_status, json={"message": "unavailable"})
            profile = self.profiles.get(parts[1].lower())
            if profile is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, json=profile)

        if parts[0] == "users" and parts[2] == "repos":
            if parts[1].lower() not in self.profiles:
                return httpx.Response(404, json={"message": "Not Found"})
            per_page = int(request.url.params.get("per_page", 30))
            page = int(request.url.params.get("page", 1))
            listing = self.repos.get(parts[1].lower(), [])
            return httpx.Response(200, json=listing[(page - 1) * per_page:page * per_page])

        if parts[0] == "repos" and parts[3] == "commits":
            key = f"{parts[1]}/{parts[2]}"
            count = self.commits.get(key, 0)
            if isinstance(count, tuple):
                return httpx.Response(count[1])
            if count <= 1:
                return httpx.Response(200, json=[{"sha": "abc"}] if count else [])
            link = (f'<{GITHUB}/repositories/1/commits?author=x&per_page=1&page={count}>; rel="last"')
            return httpx.Response(200, json=[{"sha": "abc"}], headers={"Link": link})

        if parts[0] == "repos" and parts[3] == "contents":
            key = "/".join(parts[1:3] + parts[4:])
            content = self.files.get(key)
            if isinstance(content, Exception):
                raise content
            if content is None:
                return httpx.Response(404, json={"message": "Not Found"})
            return httpx.Response(200, text=content)

        return httpx.Response(404)

    async def async_handler(self, request: httpx.Request) -> httpx.Response:
        for fragment, delay in self.stalls.items():
            if fragment in request.url.path:
                await asyncio.sleep(delay)
        return self.handler(request)

    def source(self) -> GitHubIdentitySource:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.async_handler))
        return GitHubIdentitySource(client=client, base_url=GITHUB, token="")


class StaticOracle(AdvisoryOracle):
    name = "static"

    def __init__(self, payload: Optional[Dict[str, Any]] = None):
        self.payload = payload if payload is not None else dict(ACCEPT_PAYLOAD)
        self.calls = 0

    async def assess(self, signal: ActivitySignal, contribution_type: str) -> AdvisoryOpinion:
        self.calls += 1
        return opinion_from_payload(self.payload)


class DownOracle(AdvisoryOracle):
    name = "down"

    def __init__(self):
        self.calls = 0

    async def assess(self, signal: ActivitySignal, contribution_type: str) -> AdvisoryOpinion:
        self.calls += 1
        raise OracleUnavailable("oracle is down")


@pytest.fixture
def github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def gateway(ledger) -> LedgerGateway:
    return LedgerGateway(
        ledger,
        confirm_timeout=0.05,
        poll_interval=0.01,
        max_retries=2,
        backoff_base=0,
    )
