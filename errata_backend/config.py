"""Shared environment configuration constants for the Errata backend."""
import os
from typing import Any


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./errata.db")
SQL_ECHO = _to_bool(os.getenv("SQL_ECHO", "false"))

# --- Logging ---
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --- Investigation limits ---
WORD_COUNT_LIMIT = int(os.getenv("WORD_COUNT_LIMIT", "10000"))
MAX_IMAGES_PER_INVESTIGATION = int(os.getenv("MAX_IMAGES_PER_INVESTIGATION", "10"))

# --- Run lease ---
RUN_LEASE_TTL_SECONDS = float(os.getenv("RUN_LEASE_TTL_SECONDS", "60"))
RUN_HEARTBEAT_INTERVAL_SECONDS = float(os.getenv("RUN_HEARTBEAT_INTERVAL_SECONDS", "15"))
RUN_RECOVERY_GRACE_SECONDS = float(os.getenv("RUN_RECOVERY_GRACE_SECONDS", "60"))

# --- Unique constraint races ---
UNIQUE_RACE_RETRY_ATTEMPTS = int(os.getenv("UNIQUE_RACE_RETRY_ATTEMPTS", "30"))
UNIQUE_RACE_RETRY_DELAY_SECONDS = float(os.getenv("UNIQUE_RACE_RETRY_DELAY_SECONDS", "0.02"))

# --- Canonical fetch ---
CANONICAL_FETCH_TIMEOUT_SECONDS = float(os.getenv("CANONICAL_FETCH_TIMEOUT_SECONDS", "20"))
LESSWRONG_GRAPHQL_URL = os.getenv("LESSWRONG_GRAPHQL_URL", "https://www.lesswrong.com/graphql")
FETCHER_USER_AGENT = os.getenv("FETCHER_USER_AGENT", "errata-backend/0.1 (+https://errata.invalid)")

# --- Image download ---
IMAGE_DOWNLOAD_TIMEOUT_SECONDS = float(os.getenv("IMAGE_DOWNLOAD_TIMEOUT_SECONDS", "15"))
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(20_000_000)))
MAX_REDIRECT_HOPS = int(os.getenv("MAX_REDIRECT_HOPS", "5"))

# --- Job queue / worker ---
JOB_MAX_ATTEMPTS = int(os.getenv("JOB_MAX_ATTEMPTS", "4"))
WORKER_CONCURRENCY = int(os.getenv("WORKER_CONCURRENCY", "2"))
WORKER_POLL_INTERVAL_SECONDS = float(os.getenv("WORKER_POLL_INTERVAL_SECONDS", "1.0"))
LEASE_HELD_BACKOFF_SECONDS = float(os.getenv("LEASE_HELD_BACKOFF_SECONDS", "30"))
JOB_MAX_BACKOFF_SECONDS = float(os.getenv("JOB_MAX_BACKOFF_SECONDS", "300"))

# --- Investigator (LLM) ---
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
INVESTIGATION_MODEL = os.getenv("INVESTIGATION_MODEL", "claude-sonnet-4-5")
INVESTIGATION_TIMEOUT_SECONDS = float(os.getenv("INVESTIGATION_TIMEOUT_SECONDS", "600"))
INVESTIGATION_MAX_TOKENS = int(os.getenv("INVESTIGATION_MAX_TOKENS", "8000"))
TRACE_API_CALLS = _to_bool(os.getenv("TRACE_API_CALLS", "false"))

# --- HTTP API ---
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

# --- Worker maintenance sweep ---
SELECTOR_INTERVAL_SECONDS = float(os.getenv("SELECTOR_INTERVAL_SECONDS", "60"))
SELECTOR_BATCH_LIMIT = int(os.getenv("SELECTOR_BATCH_LIMIT", "100"))
STALE_JOB_LOCK_SECONDS = float(os.getenv("STALE_JOB_LOCK_SECONDS", "900"))
