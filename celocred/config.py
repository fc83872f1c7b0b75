"""
CeloCred — Configuration
Unified config for signal extraction, advisory scoring and the on-chain agent.

All settings load from environment variables with safe defaults for development.
In production, set CELOCRED_ENV=production to enforce required values.
"""
import os
from typing import List
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _csv(name: str, default: str) -> List[str]:
    return [v.strip().lower() for v in os.getenv(name, default).split(",") if v.strip()]


# Target ecosystem: what makes a repository "count"
DEFAULT_ECOSYSTEM_KEYWORDS = ",".join([
    "celo", "celotoolkit", "celojs", "celo-sdk", "celo-protocol", "contractkit",
    "celo-connect", "celo-compose", "celo-name", "farcaster.celo", "@celo/",
    "celo-cli", "celocore", "celo-monorepo", "celo-wallet", "celo-dapp",
    "valora", "minipay", "mento", "celo-blockchain", "celo-governance",
    "celogov", "celo-reserve", "celo-cryptography", "celo-infra",
])
DEFAULT_ECOSYSTEM_ORGS = ",".join([
    "celo", "celo-org", "celolabs", "celotools",
    "celo-protocols", "celo-ecosystem", "valora-ce",
])
DEFAULT_CONTENT_MARKERS = "celo,@celo/,contractkit"
DEFAULT_PROBE_LANGUAGES = "typescript,javascript,rust,go,solidity,python"
DEFAULT_PROBE_FILES = "package.json,README.md"


class Settings:
    def __init__(self):
        self.ENVIRONMENT = os.getenv("CELOCRED_ENV", "development")

        # === Identity source (GitHub) ===
        self.GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.GITHUB_TOKEN = os.getenv("GITHUB_TOKEN", "")
        self.IDENTITY_TIMEOUT = float(os.getenv("IDENTITY_TIMEOUT", "10"))
        self.MAX_REPOS = int(os.getenv("MAX_REPOS", "100"))
        self.MAX_REPO_PAGES = int(os.getenv("MAX_REPO_PAGES", "5"))

        # === Signal extraction ===
        self.ECOSYSTEM_KEYWORDS = _csv("ECOSYSTEM_KEYWORDS", DEFAULT_ECOSYSTEM_KEYWORDS)
        self.ECOSYSTEM_ORGS = _csv("ECOSYSTEM_ORGS", DEFAULT_ECOSYSTEM_ORGS)
        self.CONTENT_MARKERS = _csv("CONTENT_MARKERS", DEFAULT_CONTENT_MARKERS)
        self.PROBE_LANGUAGES = _csv("PROBE_LANGUAGES", DEFAULT_PROBE_LANGUAGES)
        self.PROBE_FILES = [
            f.strip() for f in os.getenv("PROBE_FILES", DEFAULT_PROBE_FILES).split(",") if f.strip()
        ]
        self.PROBE_TIMEOUT = float(os.getenv("PROBE_TIMEOUT", "2.0"))
        self.PROBE_CONCURRENCY = int(os.getenv("PROBE_CONCURRENCY", "8"))

        # === Advisory oracle (Gemini) ===
        self.GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
        self.GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
        self.GEMINI_API_URL = os.getenv(
            "GEMINI_API_URL", "https://generativelanguage.googleapis.com/v1beta"
        ).rstrip("/")
        self.ORACLE_TIMEOUT = float(os.getenv("ORACLE_TIMEOUT", "20"))

        # === Ledger ===
        self.LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")  # "memory" | "web3"
        self.CELO_RPC = os.getenv("CELO_RPC", "https://alfajores-forno.celo-testnet.org")
        self.PRIVATE_KEY = os.getenv("PRIVATE_KEY", "")
        self.CHAIN_ID = int(os.getenv("CHAIN_ID", "44787"))
        self.REGISTRY_ADDRESS = os.getenv("REGISTRY_ADDRESS", "0xAb823bD98965E1847B4c8fd34f7c6b8ee43A118B")
        self.SCORE_ADDRESS = os.getenv("SCORE_ADDRESS", "0x167cC445684492aDA56AF57dff39D845B2b44f3D")
        self.BADGE_ADDRESS = os.getenv("BADGE_ADDRESS", "0x44dF156Fb99CFe8eEF8dA693a4112A50faAe253a")
        self.LEDGER_RPC_TIMEOUT = float(os.getenv("LEDGER_RPC_TIMEOUT", "15"))
        self.LEDGER_CONFIRM_TIMEOUT = float(os.getenv("LEDGER_CONFIRM_TIMEOUT", "60"))
        self.LEDGER_POLL_INTERVAL = float(os.getenv("LEDGER_POLL_INTERVAL", "1.0"))
        self.LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "3"))
        self.LEDGER_BACKOFF_BASE = float(os.getenv("LEDGER_BACKOFF_BASE", "0.5"))

        if self.is_production and self.LEDGER_BACKEND == "web3":
            if not self.PRIVATE_KEY:
                raise RuntimeError("PRIVATE_KEY must be set in production. Add it to .env")
            if not self.CELO_RPC:
                raise RuntimeError("CELO_RPC must be set in production. Add it to .env")

        # === Application ===
        self.REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.RATE_LIMIT_SUBMIT = int(os.getenv("RATE_LIMIT_SUBMIT", "5"))
        self.RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))
        # Seconds to skip Redis after a failed connect or command
        self.RATE_LIMIT_REDIS_RETRY = float(os.getenv("RATE_LIMIT_REDIS_RETRY", "30"))
        self.CORS_ORIGINS = [
            o.strip()
            for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
            if o.strip()
        ]
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def oracle_enabled(self) -> bool:
        return bool(self.GEMINI_API_KEY)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
