"""
CeloCred — Signal Extractor
Profile link in, ActivitySignal out.

    1. Parse the handle out of the claim link
    2. Fetch profile + up to 100 repositories (most starred first)
    3. Classify each repository against the target ecosystem:
         fast path: name / description / topics / owning org match a fixed list
         slow path: language in the allow-list → probe 1-2 well-known files,
                      concurrently, each capped at PROBE_TIMEOUT
    4. Count the caller's commits on every confirmed repository
    5. Pull a candidate wallet address out of the bio and canonicalise it

A probe that times out or errors means "not found". A repository that
errors during probing is skipped, never fatal to the batch.
"""
import asyncio
import re
import time
from typing import Any, Dict, List, Optional, Tuple

import structlog

from celocred.compute.collectors import GitHubIdentitySource, parse_profile_link
from celocred.config import settings
from celocred.errors import InvalidAddress
from celocred.model import ActivitySignal, Address, EcosystemRepo

logger = structlog.get_logger()

_BIO_ADDRESS = re.compile(r"0x[a-fA-F0-9]{40}")

# language → specialty
SPECIALTY_MAP = [
    ("Solidity", "Smart Contracts"),
    ("Rust", "Systems Programming"),
    ("Python", "Data Science"),
    ("Go", "Backend"),
    ("TypeScript", "Web Development"),
    ("JavaScript", "Web Development"),
    ("Kotlin", "Mobile Development"),
]
DEFAULT_SPECIALTY = "General Development"
MAX_LANGUAGES = 5


# ── Pure helpers ──────────────────────────────────

def extract_bio_address(bio: str) -> Tuple[Optional[Address], bool, bool]:
    """
    First 0x…40-hex candidate in the bio.
    Returns (address or None, well_formed, candidate_present).
    """
    match = _BIO_ADDRESS.search(bio or "")
    if not match:
        return None, False, False
    try:
        return Address.parse(match.group(0)), True, True
    except InvalidAddress:
        return None, False, True


def detect_languages(repos: List[Dict[str, Any]]) -> List[str]:
    seen: List[str] = []
    for r in repos:
        lang = r.get("language")
        if lang and lang not in seen:
            seen.append(lang)
    return seen[:MAX_LANGUAGES]


def detect_specialties(languages: List[str]) -> List[str]:
    specialties: List[str] = []
    for lang, specialty in SPECIALTY_MAP:
        if lang in languages and specialty not in specialties:
            specialties.append(specialty)
    return specialties or [DEFAULT_SPECIALTY]


def is_target_org(owner: str, orgs: Optional[List[str]] = None) -> bool:
    owner = (owner or "").lower()
    return any(org in owner for org in (orgs or settings.ECOSYSTEM_ORGS))


def matches_keywords(repo: Dict[str, Any], keywords: Optional[List[str]] = None) -> bool:
    keywords = keywords or settings.ECOSYSTEM_KEYWORDS
    name = (repo.get("name") or "").lower()
    desc = (repo.get("description") or "").lower()
    topics = [t.lower() for t in repo.get("topics") or []]
    for kw in keywords:
        if kw in name or kw in desc or any(kw in t for t in topics):
            return True
    return False


def should_probe(repo: Dict[str, Any], languages: Optional[List[str]] = None) -> bool:
    lang = (repo.get("language") or "").lower()
    if not lang:
        return False
    return any(allowed in lang for allowed in (languages or settings.PROBE_LANGUAGES))


def content_has_markers(content: str, markers: Optional[List[str]] = None) -> bool:
    text = (content or "").lower()
    return any(m in text for m in (markers or settings.CONTENT_MARKERS))


# ── Extractor ─────────────────────────────────────

class SignalExtractor:
    """
    Usage:
        async with GitHubIdentitySource() as source:
            signal = await SignalExtractor(source).extract("https://github.com/octocat")
    """

    def __init__(
        self,
        source: GitHubIdentitySource,
        probe_timeout: Optional[float] = None,
        probe_concurrency: Optional[int] = None,
        probe_files: Optional[List[str]] = None,
    ):
        self.source = source
        self.probe_timeout = probe_timeout or settings.PROBE_TIMEOUT
        self.probe_concurrency = probe_concurrency or settings.PROBE_CONCURRENCY
        self.probe_files = (probe_files or settings.PROBE_FILES)[:2]

    async def extract(self, link: str) -> ActivitySignal:
        handle = parse_profile_link(link)
        return await self.extract_handle(handle)

    async def extract_handle(self, handle: str) -> ActivitySignal:
        start = time.time()

        profile, repos = await asyncio.gather(
            self.source.get_profile(handle),
            self.source.list_repositories(handle, limit=settings.MAX_REPOS),
        )

        address, well_formed, candidate = extract_bio_address(profile.get("bio", ""))
        languages = detect_languages(repos)
        specialties = detect_specialties(languages)

        ecosystem_repos, probe_errors = await self._classify(handle, repos)
        commit_total = sum(r.commit_count for r in ecosystem_repos)

        signal = ActivitySignal(
            handle=profile.get("login") or handle,
            repo_count=profile.get("repo_count", 0),
            follower_count=profile.get("follower_count", 0),
            languages=frozenset(languages),
            specialties=frozenset(specialties),
            ecosystem_repos=tuple(ecosystem_repos),
            ecosystem_commit_total=commit_total,
            declared_address=address,
            address_well_formed=well_formed,
            bio_contains_address=candidate,
            language_order=tuple(languages),
            top_repos=tuple(r["name"] for r in repos[:5]),
            probe_errors=tuple(probe_errors),
        )

        logger.info("signal_extracted",
            handle=handle,
            repos_scanned=len(repos),
            ecosystem_repos=len(ecosystem_repos),
            ecosystem_commits=commit_total,
            bio_address=candidate,
            address_well_formed=well_formed,
            elapsed_ms=round((time.time() - start) * 1000, 2),
        )
        return signal

    async def _classify(
        self, handle: str, repos: List[Dict[str, Any]]
    ) -> Tuple[List[EcosystemRepo], List[str]]:
        """Fan out over all repos under a semaphore. gather() keeps input order."""
        sem = asyncio.Semaphore(self.probe_concurrency)

        async def classify_one(repo: Dict[str, Any]):
            async with sem:
                return await self._classify_repo(handle, repo)

        results = await asyncio.gather(
            *[classify_one(r) for r in repos],
            return_exceptions=True,
        )

        found: List[EcosystemRepo] = []
        errors: List[str] = []
        for repo, res in zip(repos, results):
            if isinstance(res, BaseException):
                logger.debug("repo_classification_failed", repo=repo.get("name"), error=str(res))
                errors.append(repo.get("name", ""))
                continue
            eco_repo, errored = res
            if errored:
                errors.append(repo.get("name", ""))
            if eco_repo is not None:
                found.append(eco_repo)
        return found, errors

    async def _classify_repo(
        self, handle: str, repo: Dict[str, Any]
    ) -> Tuple[Optional[EcosystemRepo], bool]:
        owner = repo["owner"]
        target_org = is_target_org(owner)

        if target_org or matches_keywords(repo):
            detected_by = "keyword"
            errored = False
        elif should_probe(repo):
            hit, errored = await self.probe_repository(owner, repo["name"])
            if not hit:
                return None, errored
            detected_by = "content"
        else:
            return None, False

        commits = await self.source.count_commits(owner, repo["name"], handle)
        logger.debug("ecosystem_repo_found",
            repo=repo["name"], commits=commits, stars=repo["stars"], detected_by=detected_by)

        return EcosystemRepo(
            name=repo["name"],
            url=repo["url"],
            owned_by_target_org=target_org,
            commit_count=commits,
            star_count=repo["stars"],
            language=repo.get("language") or "Unknown",
            is_fork=repo.get("is_fork", False),
            detected_by=detected_by,
        ), errored

    async def probe_repository(self, owner: str, repo: str) -> Tuple[bool, bool]:
        """
        Check the candidate files concurrently, each capped at probe_timeout.
        Returns (markers found, any probe errored).
        """
        results = await asyncio.gather(
            *[self._probe_file(owner, repo, path) for path in self.probe_files]
        )
        found = any(hit for hit, _ in results)
        errored = any(err for _, err in results)
        return found, errored

    async def _probe_file(self, owner: str, repo: str, path: str) -> Tuple[bool, bool]:
        try:
            content = await asyncio.wait_for(
                self.source.fetch_file(owner, repo, path),
                timeout=self.probe_timeout,
            )
            return content_has_markers(content or ""), False
        except Exception as e:
            logger.debug("content_probe_failed",
                repo=f"{owner}/{repo}", path=path, error=f"{type(e).__name__}: {e}")
            return False, True


async def extract_activity_signal(link: str, source: Optional[GitHubIdentitySource] = None) -> ActivitySignal:
    """One-shot helper. Opens (and closes) its own GitHub client if none is given."""
    if source is not None:
        return await SignalExtractor(source).extract(link)
    async with GitHubIdentitySource() as own:
        return await SignalExtractor(own).extract(link)
