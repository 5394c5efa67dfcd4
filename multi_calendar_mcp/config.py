"""Environment-driven settings for the server."""

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _resolve_path(path_str: str) -> Path:
    """Expand ~ and resolve the path."""
    return Path(path_str).expanduser().resolve()


def _env_number(name: str, default: str, cast=float):
    raw = os.environ.get(name, default)
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    credentials_file: Path
    accounts_dir: Path
    local_timezone: str
    log_level: str
    max_concurrency: int
    timeout_seconds: float
    retry_attempts: int
    retry_delay_seconds: float
    registry_ttl_seconds: float


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        credentials_file=_resolve_path(
            os.environ.get(
                "GOOGLE_CREDENTIALS_FILE", "~/.multi_calendar_mcp/google_credentials.json"
            )
        ),
        accounts_dir=_resolve_path(
            os.environ.get("GOOGLE_ACCOUNTS_DIR", "~/.multi_calendar_mcp/accounts")
        ),
        local_timezone=os.environ.get("LOCAL_TIMEZONE", "America/Los_Angeles"),
        log_level=os.environ.get("MCP_LOG_LEVEL", "INFO").upper(),
        max_concurrency=_env_number("EXECUTOR_MAX_CONCURRENCY", "5", int),
        timeout_seconds=_env_number("EXECUTOR_TIMEOUT_SECONDS", "30"),
        retry_attempts=_env_number("EXECUTOR_RETRY_ATTEMPTS", "3", int),
        retry_delay_seconds=_env_number("EXECUTOR_RETRY_DELAY_SECONDS", "1"),
        registry_ttl_seconds=_env_number("REGISTRY_CACHE_TTL_SECONDS", "300"),
    )
