import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv

from src.domain.cache_keys import CONFIG, DELIVERY, ISSUE, ISSUES, LABELS

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_CACHE_DIR = ".cache/issue-mirror"
DEFAULT_PAGE_SIZE = 10
DEFAULT_COOLDOWN_SECONDS = 60.0
DEFAULT_FRESHNESS_HOURS = 24.0
DEFAULT_COALESCE_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class CachePolicy:
    """Time-to-live, in seconds, of one namespace in each cache tier."""
    memory_ttl: float
    durable_ttl: float


DEFAULT_CACHE_POLICIES: Dict[str, CachePolicy] = {
    CONFIG: CachePolicy(memory_ttl=60 * 60, durable_ttl=24 * 60 * 60),
    ISSUES: CachePolicy(memory_ttl=5 * 60, durable_ttl=15 * 60),
    ISSUE: CachePolicy(memory_ttl=5 * 60, durable_ttl=15 * 60),
    LABELS: CachePolicy(memory_ttl=15 * 60, durable_ttl=60 * 60),
    DELIVERY: CachePolicy(memory_ttl=10 * 60, durable_ttl=10 * 60),
}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}.") from None


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings, read from the environment (and a .env file when present).
    """
    database_url: Optional[str] = None
    github_api_url: str = DEFAULT_GITHUB_API_URL
    github_owner: Optional[str] = None
    github_repo: Optional[str] = None
    github_token: Optional[str] = field(default=None, repr=False)
    webhook_secret: Optional[str] = field(default=None, repr=False)
    encryption_key: Optional[str] = field(default=None, repr=False)
    cache_dir: str = DEFAULT_CACHE_DIR
    default_page_size: int = DEFAULT_PAGE_SIZE
    sync_cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS
    sync_freshness_hours: float = DEFAULT_FRESHNESS_HOURS
    coalesce_timeout_seconds: float = DEFAULT_COALESCE_TIMEOUT_SECONDS
    cache_policies: Dict[str, CachePolicy] = field(default_factory=lambda: dict(DEFAULT_CACHE_POLICIES))
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        # Load environment variables from .env file
        load_dotenv()

        policies = {}
        for namespace, default in DEFAULT_CACHE_POLICIES.items():
            suffix = namespace.upper()
            policies[namespace] = CachePolicy(
                memory_ttl=_float_env(f"CACHE_TTL_{suffix}", default.memory_ttl),
                durable_ttl=_float_env(f"CACHE_DURABLE_TTL_{suffix}", default.durable_ttl),
            )

        webhook_secret = os.getenv("GITHUB_WEBHOOK_SECRET") or None
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            github_api_url=os.getenv("GITHUB_API_URL") or DEFAULT_GITHUB_API_URL,
            github_owner=os.getenv("GITHUB_OWNER") or None,
            github_repo=os.getenv("GITHUB_REPO") or None,
            github_token=os.getenv("GITHUB_TOKEN") or None,
            webhook_secret=webhook_secret,
            # The webhook secret doubles as the encryption key when no dedicated key is set.
            encryption_key=os.getenv("ENCRYPTION_KEY") or webhook_secret,
            cache_dir=os.getenv("CACHE_DIR") or DEFAULT_CACHE_DIR,
            default_page_size=int(_float_env("DEFAULT_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
            sync_cooldown_seconds=_float_env("SYNC_COOLDOWN_SECONDS", DEFAULT_COOLDOWN_SECONDS),
            sync_freshness_hours=_float_env("SYNC_FRESHNESS_HOURS", DEFAULT_FRESHNESS_HOURS),
            coalesce_timeout_seconds=_float_env("COALESCE_TIMEOUT_SECONDS", DEFAULT_COALESCE_TIMEOUT_SECONDS),
            cache_policies=policies,
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            host=os.getenv("HOST") or "0.0.0.0",
            port=int(_float_env("PORT", 8080)),
        )
