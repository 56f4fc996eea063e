from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

_SECOND_MS = 1000
_DAY_MS = 24 * 60 * 60 * _SECOND_MS


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass
class Settings:
    """Centralized handoff settings.

    Every timer and bound used by the core lives here so tests and operators
    can override them independently through environment variables. Components
    also accept explicit overrides in their constructors, which is what the
    test-suite uses to run timers at accelerated durations.
    """

    # Segmenter: synthetic window per chunk and the hard ceiling on chunks.
    segment_duration_ms: int = _int_env("HANDOFF_SEGMENT_DURATION_MS", 5000)
    max_segments: int = _int_env("HANDOFF_MAX_SEGMENTS", 360)

    # Live view privacy timers.
    reveal_hold_ms: int = _int_env("HANDOFF_REVEAL_HOLD_MS", 600)
    reveal_window_ms: int = _int_env("HANDOFF_REVEAL_WINDOW_MS", 3 * _SECOND_MS)
    auto_lock_ms: int = _int_env("HANDOFF_AUTO_LOCK_MS", 120 * _SECOND_MS)
    memory_purge_ms: int = _int_env("HANDOFF_MEMORY_PURGE_MS", 300 * _SECOND_MS)

    # At-rest retention.
    vault_ttl_ms: int = _int_env("HANDOFF_VAULT_TTL_MS", 7 * _DAY_MS)
    audit_ttl_ms: int = _int_env("HANDOFF_AUDIT_TTL_MS", 30 * _DAY_MS)
    audit_max_events: int = _int_env("HANDOFF_AUDIT_MAX_EVENTS", 300)

    # Janitor sweep cadence.
    janitor_interval_ms: int = _int_env("HANDOFF_JANITOR_INTERVAL_MS", 5 * 60 * _SECOND_MS)

    # Refinement backend selection: "none" (default), "heuristic" or "llm".
    refine_backend: str = os.getenv("HANDOFF_REFINE_BACKEND", "none")
    # Where the refinement adapter is loaded from. Relative paths are treated
    # as same-origin; absolute URLs are cross-origin for policy purposes.
    refine_adapter_url: str = os.getenv("HANDOFF_REFINE_ADAPTER_URL", "/runtime/refine-adapter")
    refine_timeout_ms: int = _int_env("HANDOFF_REFINE_TIMEOUT_MS", 4 * _SECOND_MS)

    # Privacy posture: "strict" or "standard"; execution "local_only" or "hybrid_opt_in".
    privacy_profile: str = os.getenv("HANDOFF_PRIVACY_PROFILE", "strict")
    execution_mode: str = os.getenv("HANDOFF_EXECUTION_MODE", "local_only")

    # Shared key-value store backing the vault and the audit log.
    store_backend: str = os.getenv("HANDOFF_STORE_BACKEND", "memory")
    database_url: Optional[str] = os.getenv("DATABASE_URL")

    # Optional settings for the LLM refinement backend.
    openai_api_key: Optional[str] = os.getenv("OPENAI_API_KEY")
    llm_model: str = os.getenv("LLM_MODEL", "gpt-4.1-mini")

    # Optional API-key guard on the HTTP surface. Disabled by default.
    enable_api_auth: bool = os.getenv("ENABLE_API_AUTH", "false").lower() == "true"
    api_keys: Optional[str] = os.getenv("API_KEYS")

    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # CORS configuration: comma-separated origins. Defaults to "*" for local
    # development.
    cors_allow_origins: str = os.getenv("CORS_ALLOW_ORIGINS", "*")


settings = Settings()
