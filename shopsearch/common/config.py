"""Configuration management for the ranking core.

This module centralizes environment-driven configuration for the ranking,
pagination, resilience and discovery components. It builds on
``pydantic_settings.BaseSettings`` so configuration can be provided via
environment variables, ``.env`` files, or defaults.

Highlights
- Strongly-typed settings with sensible defaults
- Every scoring constant is a named setting, so tenants can be tuned
  without code changes
- Environment variables are prefixed with ``SHOPSEARCH_`` (for example
  ``SHOPSEARCH_RRF_CONSTANT=60``)

Usage
- Inject the config where components are built:
  ``config = RankingConfig()``
- Or select dynamically: ``config = get_config("ranking")``
"""

import os
from typing import Any, Dict

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration shared by every component.

    Notes
    - Add new shared settings here so downstream configs inherit them.
    - Prefer a declared field over reading ``os.environ`` directly.
    """

    model_config = SettingsConfigDict(
        env_prefix="SHOPSEARCH_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local", description="Deployment environment")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="json or console")
    service_name: str = Field(default="shopsearch-ranking", description="Service name bound to logs")


class RankingConfig(BaseConfig):
    """Configuration for fusion, tiering, pagination, resilience and discovery."""

    # Fusion
    rrf_constant: float = Field(default=60.0, gt=0)
    vector_weight_default: float = Field(default=1.0, gt=0)
    vector_weight_long_query: float = Field(default=2.0, gt=0)
    long_query_min_words: int = Field(default=3, ge=1)

    # Exact-match bonus ladder (strictly decreasing)
    bonus_exact: float = Field(default=100000.0)
    bonus_cleaned_exact: float = Field(default=90000.0)
    bonus_contains_full: float = Field(default=60000.0)
    bonus_contains_cleaned: float = Field(default=50000.0)
    bonus_phrase: float = Field(default=40000.0)
    bonus_prefix: float = Field(default=30000.0)
    bonus_early_occurrence: float = Field(default=20000.0)
    bonus_fuzzy: float = Field(default=10000.0)
    early_occurrence_max_position: int = Field(default=20, ge=0)
    fuzzy_similarity_threshold: float = Field(default=0.75, gt=0, le=1)
    fuzzy_min_token_length: int = Field(default=3, ge=1)
    fuzzy_prefix_chars: int = Field(default=30, ge=1)

    # Tiering
    tier1_bonus_threshold: float = Field(default=35000.0)
    tier1_vector_rank_max: int = Field(default=5, ge=0)
    tier1_fuzzy_rank_min: int = Field(default=10, ge=0)
    simple_query_max_words: int = Field(default=2, ge=1)

    # Source searches
    lexical_limit: int = Field(default=35, ge=1)
    vector_limit: int = Field(default=35, ge=1)
    vector_candidate_multiplier: int = Field(default=10, ge=1)
    vector_min_candidates: int = Field(default=100, ge=1)
    fuzzy_edit_bound: int = Field(default=2, ge=0)
    degrade_on_branch_failure: bool = Field(default=False)

    # Pagination
    default_batch_size: int = Field(default=20, ge=1)
    max_batch_size: int = Field(default=100, ge=1)
    max_query_length: int = Field(default=256, ge=1)
    token_ttl_seconds: int = Field(default=1800, ge=1)
    token_secret: str = Field(default="dev-token-secret-change-in-production")
    token_algorithm: str = Field(default="HS256")

    # AI resilience
    breaker_failure_threshold: int = Field(default=3, ge=1)
    breaker_cooldown_ms: int = Field(default=30000, ge=0)
    ai_call_timeout_seconds: float = Field(default=8.0, gt=0)
    rerank_window: int = Field(default=20, ge=1)
    llm_query_max_chars: int = Field(default=100, ge=1)

    # Discovery expansion
    discovery_enabled: bool = Field(default=True)
    seed_bonus_threshold: float = Field(default=50000.0)
    discovery_max_seeds: int = Field(default=3, ge=1)
    discovery_neighbors_per_seed: int = Field(default=20, ge=1)
    discovery_similarity_boost: float = Field(default=2500.0)
    discovery_dual_source_boost: float = Field(default=5000.0)

    # Embedding service
    embedding_service_url: str = Field(default="http://localhost:9006")
    embedding_model: str = Field(default="default")
    embedding_timeout_seconds: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def _check_bonus_ladder(self) -> "RankingConfig":
        """Bonus tiers must dominate any achievable rrf score."""
        ladder = self.bonus_ladder()
        max_rrf = (1.0 + max(self.vector_weight_default, self.vector_weight_long_query)) / self.rrf_constant
        for (higher_name, higher), (lower_name, lower) in zip(ladder, ladder[1:]):
            if higher - lower <= max_rrf:
                raise ValueError(
                    f"bonus {higher_name}={higher} must exceed {lower_name}={lower} by more than {max_rrf}"
                )
        if self.bonus_fuzzy <= max_rrf:
            raise ValueError(f"bonus_fuzzy must exceed the maximum rrf score {max_rrf}")
        if self.discovery_dual_source_boost <= self.discovery_similarity_boost:
            raise ValueError("discovery_dual_source_boost must exceed discovery_similarity_boost")
        return self

    def bonus_ladder(self):
        """Return ``(name, value)`` pairs from strongest to weakest match."""
        return [
            ("exact", self.bonus_exact),
            ("cleaned_exact", self.bonus_cleaned_exact),
            ("contains_full", self.bonus_contains_full),
            ("contains_cleaned", self.bonus_contains_cleaned),
            ("phrase", self.bonus_phrase),
            ("prefix", self.bonus_prefix),
            ("early_occurrence", self.bonus_early_occurrence),
            ("fuzzy", self.bonus_fuzzy),
        ]

    @property
    def breaker_cooldown_seconds(self) -> float:
        return self.breaker_cooldown_ms / 1000.0


def get_config(component: str = "ranking") -> BaseConfig:
    """Get configuration for a component.

    Defaults to ``BaseConfig`` for unknown names to avoid surprising crashes.
    """
    config_map = {
        "ranking": RankingConfig,
    }
    config_class = config_map.get(component, BaseConfig)
    return config_class()


def load_env_file(env_file: str = ".env") -> Dict[str, Any]:
    """Load ``KEY=VALUE`` pairs from a dotenv-style file.

    Blank lines and comments are skipped. The process environment is not
    modified; callers decide whether to merge or just inspect values.
    """
    env_vars = {}
    if os.path.exists(env_file):
        with open(env_file, "r") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    env_vars[key] = value
    return env_vars
