"""
Runtime configuration for the lead enrichment backend.

Values come from the environment, optionally seeded from a .env file at the
repository root. Anything unparseable falls back to its default.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
LOG_DATEFMT = '%H:%M:%S'

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; ClientFinderBot/1.0)"


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass(frozen=True)
class Settings:
    database_path: str = "leads.db"
    log_level: str = "INFO"
    user_agent: str = DEFAULT_USER_AGENT
    fetch_timeout_s: float = 10.0
    batch_max_jobs: int = 10
    batch_timeout_s: float = 25.0
    scheduler_interval_s: float = 0.0  # 0 disables the background scheduler
    process_rate_limit: str = "30/minute"
    rate_limit_enabled: bool = True
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


def load_settings(overrides: Optional[dict] = None) -> Settings:
    """Build Settings from LEADS_* environment variables."""
    origins = _env_str("LEADS_CORS_ORIGINS", "*")
    values = dict(
        database_path=_env_str("LEADS_DATABASE_PATH", "leads.db"),
        log_level=_env_str("LEADS_LOG_LEVEL", "INFO").upper(),
        user_agent=_env_str("LEADS_USER_AGENT", DEFAULT_USER_AGENT),
        fetch_timeout_s=_env_float("LEADS_FETCH_TIMEOUT_S", 10.0),
        batch_max_jobs=_env_int("LEADS_BATCH_MAX_JOBS", 10),
        batch_timeout_s=_env_float("LEADS_BATCH_TIMEOUT_S", 25.0),
        scheduler_interval_s=_env_float("LEADS_SCHEDULER_INTERVAL_S", 0.0),
        process_rate_limit=_env_str("LEADS_PROCESS_RATE_LIMIT", "30/minute"),
        rate_limit_enabled=_env_bool("LEADS_RATE_LIMIT_ENABLED", True),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
    )
    if overrides:
        values.update(overrides)
    return Settings(**values)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )
