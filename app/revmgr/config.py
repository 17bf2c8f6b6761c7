import os
from dataclasses import dataclass

CACHE_BACKENDS = ("memory", "db")
WORKFLOW_MODES = ("open", "pending")
# Each distinct limit is its own cache slice, so the range is bounded.
MAX_TIMELINE_LIMIT = 100


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str
    log_level: str

    timeline_limit: int
    default_mode: str
    excerpt_words: int

    cache_backend: str
    cache_ttl_seconds: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getint(name: str, default: int, *, minimum: int = 0, maximum: int | None = None) -> int:
    raw = _getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None
    if value < minimum:
        raise RuntimeError(f"{name} must be >= {minimum} (got {value}).")
    if maximum is not None and value > maximum:
        raise RuntimeError(f"{name} must be <= {maximum} (got {value}).")
    return value


def _getchoice(name: str, default: str, choices: tuple[str, ...]) -> str:
    value = _getenv(name, default).lower()
    if value not in choices:
        raise RuntimeError(f"{name} must be one of {', '.join(choices)} (got {value!r}).")
    return value


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///revmgr.db"),
        log_level=_getenv("LOG_LEVEL", "INFO").upper(),
        timeline_limit=_getint("TIMELINE_LIMIT", 6, minimum=1, maximum=MAX_TIMELINE_LIMIT),
        default_mode=_getchoice("DEFAULT_MODE", "open", WORKFLOW_MODES),
        excerpt_words=_getint("EXCERPT_WORDS", 15, minimum=1),
        cache_backend=_getchoice("CACHE_BACKEND", "memory", CACHE_BACKENDS),
        cache_ttl_seconds=_getint("CACHE_TTL_SECONDS", 300, minimum=1),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "LOG_LEVEL": s.log_level,
        "TIMELINE_LIMIT": s.timeline_limit,
        "DEFAULT_MODE": s.default_mode,
        "EXCERPT_WORDS": s.excerpt_words,
        "CACHE_BACKEND": s.cache_backend,
        "CACHE_TTL_SECONDS": s.cache_ttl_seconds,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
        # request bodies are small JSON documents
        "MAX_CONTENT_LENGTH": 5 * 1024 * 1024,
    }
