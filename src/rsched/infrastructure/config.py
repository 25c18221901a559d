"""Configuration constants, .env parsing, and runner settings."""

from __future__ import annotations

import os
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def read_env_file(keys: list[str]) -> dict[str, str]:
    """Parse .env file and return values for requested keys.

    Does NOT load into os.environ; callers decide what to do with values.
    This keeps the submission token out of the process environment.
    """
    env_file = Path.cwd() / ".env"
    try:
        content = env_file.read_text()
    except OSError:
        return {}

    result: dict[str, str] = {}
    wanted = set(keys)

    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        eq_idx = trimmed.find("=")
        if eq_idx == -1:
            continue
        key = trimmed[:eq_idx].strip()
        if key not in wanted:
            continue
        value = trimmed[eq_idx + 1 :].strip()
        if (value.startswith('"') and value.endswith('"')) or (value.startswith("'") and value.endswith("'")):
            value = value[1:-1]
        if value:
            result[key] = value

    return result


# Read config values from .env (falls back to os.environ).
_env_config = read_env_file(["SUBMISSION_URL", "SUBMISSION_TOKEN", "DEFAULT_TIMEZONE"])


def _env(key: str, default: str = "") -> str:
    return os.environ.get(key) or _env_config.get(key, default)


SCHEDULER_POLL_INTERVAL: float = float(os.environ.get("SCHEDULER_POLL_INTERVAL", "60"))  # seconds
SUBMISSION_TIMEOUT: float = float(os.environ.get("SUBMISSION_TIMEOUT", "30"))  # seconds
MAX_CONCURRENT_EXECUTIONS: int = max(1, int(os.environ.get("MAX_CONCURRENT_EXECUTIONS", "10")))

SUBMISSION_URL: str = _env("SUBMISSION_URL")
SUBMISSION_TOKEN: str = _env("SUBMISSION_TOKEN")

# Absolute paths
PROJECT_ROOT: Path = Path.cwd()
STORE_DIR: Path = (PROJECT_ROOT / "store").resolve()
DB_PATH: Path = Path(os.environ.get("RSCHED_DB_PATH", str(STORE_DIR / "schedules.db")))


def _resolve_timezone(name: str) -> str:
    if not name:
        return "UTC"
    try:
        ZoneInfo(name)
        return name
    except (ZoneInfoNotFoundError, ValueError, OSError):
        return "UTC"


DEFAULT_TIMEZONE: str = _resolve_timezone(_env("DEFAULT_TIMEZONE", "UTC"))


class RunnerConfig:
    """Tunables for the scheduler runner."""

    def __init__(
        self,
        poll_interval: float = SCHEDULER_POLL_INTERVAL,
        submission_timeout: float = SUBMISSION_TIMEOUT,
        max_concurrent: int = MAX_CONCURRENT_EXECUTIONS,
    ) -> None:
        self.poll_interval = poll_interval
        self.submission_timeout = submission_timeout
        self.max_concurrent = max(1, max_concurrent)
