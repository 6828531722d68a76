"""Common utilities shared across the ranking core.

Includes:
- ``config``: pydantic-settings configuration with named scoring constants.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.
- ``errors``: the error taxonomy surfaced to callers.

Import pattern:
- from shopsearch.common.config import RankingConfig
- from shopsearch.common.logging import configure_logging
"""
