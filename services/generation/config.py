"""Environment-driven settings for report generation."""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
from typing import Tuple

from core.env import env_bool, env_float, env_int, env_list, env_str

DEFAULT_MODEL_ALLOWLIST = (
    "claude-3-5-sonnet-20241022",
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
    "gpt-4o",
    "gpt-4o-mini",
)


@dataclass(frozen=True)
class GenerationSettings:
    default_model: str = DEFAULT_MODEL_ALLOWLIST[0]
    model_allowlist: Tuple[str, ...] = DEFAULT_MODEL_ALLOWLIST
    fallback_model: str | None = None
    max_tokens: int = 8000
    temperature: float = 0.7
    idle_timeout_seconds: float = 60.0
    total_timeout_seconds: float = 300.0
    history_limit: int = 20
    lease_ttl_seconds: float = 330.0
    entity_model: str = "claude-3-haiku-20240307"
    entity_timeout_seconds: float = 20.0
    rate_limit_per_window: int = 10
    rate_limit_window_seconds: int = 3600
    use_mock_model: bool = False
    language_choices: Tuple[str, ...] = field(default=("en", "es", "fr", "de", "zh", "ja"))

    def is_allowed_model(self, model: str) -> bool:
        return model in self.model_allowlist


@lru_cache
def get_generation_settings() -> GenerationSettings:
    allowlist = tuple(env_list("REPORT_MODEL_ALLOWLIST", DEFAULT_MODEL_ALLOWLIST))
    default_model = env_str("REPORT_MODEL_DEFAULT") or allowlist[0]
    if default_model not in allowlist:
        allowlist = (default_model, *allowlist)
    total_timeout = env_float("REPORT_TOTAL_TIMEOUT_SECONDS", 300.0, minimum=1.0)
    return GenerationSettings(
        default_model=default_model,
        model_allowlist=allowlist,
        fallback_model=env_str("REPORT_FALLBACK_MODEL") or None,
        max_tokens=env_int("REPORT_MAX_TOKENS", 8000, minimum=100),
        temperature=env_float("REPORT_TEMPERATURE", 0.7, minimum=0.0),
        idle_timeout_seconds=env_float("REPORT_IDLE_TIMEOUT_SECONDS", 60.0, minimum=1.0),
        total_timeout_seconds=total_timeout,
        history_limit=env_int("REPORT_HISTORY_LIMIT", 20, minimum=0),
        lease_ttl_seconds=env_float("REPORT_LEASE_TTL_SECONDS", total_timeout + 30.0, minimum=total_timeout),
        entity_model=env_str("REPORT_ENTITY_MODEL") or "claude-3-haiku-20240307",
        entity_timeout_seconds=env_float("REPORT_ENTITY_TIMEOUT_SECONDS", 20.0, minimum=1.0),
        rate_limit_per_window=env_int("REPORT_RATE_LIMIT_PER_HOUR", 10, minimum=1),
        rate_limit_window_seconds=env_int("REPORT_RATE_LIMIT_WINDOW_SECONDS", 3600, minimum=60),
        use_mock_model=env_bool("USE_MOCK_AI", False),
    )


__all__ = ["DEFAULT_MODEL_ALLOWLIST", "GenerationSettings", "get_generation_settings"]
