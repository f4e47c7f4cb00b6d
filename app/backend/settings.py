"""
Environment-driven configuration for the CV Tailor backend.

Everything the request-serving layer can be tuned with lives here: model
parameters for the completion call, cache capacity and per-resource TTLs,
rate-limit windows per endpoint, and the billing lookup endpoint.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class CachePolicy:
    ttl_seconds: int
    grace_seconds: int = 0


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_ms: int


# TTLs in seconds, grace windows mirror the Cache-Control stale-while-revalidate values
DEFAULT_CACHE_POLICIES: Dict[str, CachePolicy] = {
    "repos":          CachePolicy(ttl_seconds=5 * 60, grace_seconds=10 * 60),
    "history":        CachePolicy(ttl_seconds=60, grace_seconds=120),
    "usage":          CachePolicy(ttl_seconds=60, grace_seconds=120),
    "categorization": CachePolicy(ttl_seconds=30 * 60, grace_seconds=60 * 60),
}

DEFAULT_RATE_LIMITS: Dict[str, RateLimitPolicy] = {
    "categorize":     RateLimitPolicy(max_requests=5, window_ms=60 * 60 * 1000),
    "generate":       RateLimitPolicy(max_requests=10, window_ms=60 * 60 * 1000),
    "history_delete": RateLimitPolicy(max_requests=30, window_ms=60 * 1000),
    "cv_update":      RateLimitPolicy(max_requests=30, window_ms=60 * 1000),
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    groq_api_key: Optional[str] = None
    groq_base_url: Optional[str] = None
    model: str = "llama-3.3-70b-versatile"
    temperature_categorize: float = 0.5
    temperature_generate: float = 0.7
    max_tokens_categorize: int = 4000
    max_tokens_generate: int = 6000
    completion_timeout_seconds: float = 120.0

    cache_max_entries: int = 500
    cache_policies: Dict[str, CachePolicy] = field(default_factory=lambda: dict(DEFAULT_CACHE_POLICIES))
    rate_limits: Dict[str, RateLimitPolicy] = field(default_factory=lambda: dict(DEFAULT_RATE_LIMITS))
    cleanup_interval_seconds: float = 5 * 60

    billing_lookup_url: Optional[str] = None
    billing_api_key: Optional[str] = None
    billing_initial_delay_seconds: float = 3.0
    billing_retry_delay_seconds: float = 2.0
    billing_max_attempts: int = 2

    github_api_url: str = "https://api.github.com"
    enforce_exclusive_roles: bool = True
    events_log_file: Optional[str] = "events.jsonl"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    def cache_policy(self, resource: str) -> CachePolicy:
        return self.cache_policies[resource]

    def rate_limit(self, endpoint: str) -> RateLimitPolicy:
        return self.rate_limits[endpoint]

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (call load_dotenv() first)."""
        cors = os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:5173")
        return cls(
            groq_api_key=os.getenv("GROQ_API_KEY"),
            groq_base_url=os.getenv("GROQ_BASE_URL") or None,
            model=os.getenv("LLM_MODEL", "llama-3.3-70b-versatile"),
            temperature_categorize=float(os.getenv("LLM_TEMPERATURE_CATEGORIZE", "0.5")),
            temperature_generate=float(os.getenv("LLM_TEMPERATURE_GENERATE", "0.7")),
            max_tokens_categorize=int(os.getenv("LLM_MAX_TOKENS_CATEGORIZE", "4000")),
            max_tokens_generate=int(os.getenv("LLM_MAX_TOKENS_GENERATE", "6000")),
            completion_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
            cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "500")),
            billing_lookup_url=os.getenv("BILLING_LOOKUP_URL") or None,
            billing_api_key=os.getenv("BILLING_API_KEY") or os.getenv("GROQ_API_KEY"),
            github_api_url=os.getenv("GITHUB_API_URL", "https://api.github.com"),
            enforce_exclusive_roles=_env_bool("ENFORCE_EXCLUSIVE_ROLES", True),
            events_log_file=os.getenv("EVENTS_LOG_FILE", "events.jsonl") or None,
            cors_origins=[o.strip() for o in cors.split(",") if o.strip()],
        )
