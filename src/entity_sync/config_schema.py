"""Unified configuration schema for entity_sync.

Defines Pydantic models for the config structure with dedicated sections
for the reconciliation engine, named sync profiles and logging.

Usage:
    from entity_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    engine_config = get_profile(unified, "contacts")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .sync.retry import RetryPolicy

logger = logging.getLogger(__name__)

ConflictPolicyName = Literal["report-only", "prefer-a", "prefer-b"]
Direction = Literal["bidirectional", "a-to-b", "b-to-a"]


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class RetryConfig(BaseModel):
    """Bounded exponential backoff for transient repository errors."""

    max_attempts: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Total attempts per action including the first (1-20)",
    )
    base_delay: float = Field(
        default=0.5, ge=0, description="Delay before the first retry (s)"
    )
    max_delay: float = Field(
        default=30.0, ge=0, description="Upper bound for one delay (s)"
    )

    model_config = {"frozen": True}

    def to_policy(self) -> RetryPolicy:
        # Import here to avoid circular imports (sync.engine imports this module)
        from .sync.retry import RetryPolicy

        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


class EngineConfig(BaseModel):
    """Reconciliation engine settings.

    Every field has a default, so ``EngineConfig()`` is always valid and
    is the safe choice: conflicts are reported, never auto-resolved.
    """

    conflict_policy: ConflictPolicyName = Field(
        default="report-only",
        description="How conflicting edits are resolved",
    )
    direction: Direction = Field(
        default="bidirectional",
        description="Which sides may be written",
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrently applied actions (1-64)",
    )
    operation_timeout: float | None = Field(
        default=30.0,
        gt=0,
        description="Timeout per repository call in seconds",
    )
    purge_tombstoned_relations: bool = Field(
        default=False,
        description=(
            "Drop relations whose entity was deleted on one side but kept "
            "on the other, so the survivor is re-created next run"
        ),
    )
    state_dir: str = Field(
        default=".entity_sync",
        description="Directory holding the relation store files",
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(
        default="text", description="Log line format"
    )

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    ``profiles`` holds per-profile engine overrides (e.g. ``contacts``,
    ``calendar``, ``distribution-lists``); a profile section replaces the
    top-level ``engine`` section field by field.
    """

    engine: EngineConfig = Field(default_factory=EngineConfig)
    profiles: dict[str, dict] = Field(default_factory=dict)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory functions
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.
    Profile sections are validated eagerly so errors surface at load time.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    unified = UnifiedConfig(**raw_data)
    for name in unified.profiles:
        get_profile(unified, name)
    return unified


def get_profile(unified: UnifiedConfig, name: str) -> EngineConfig:
    """Return the engine config for profile *name*.

    Unknown profiles fall back to the top-level ``engine`` section.
    """
    overrides = unified.profiles.get(name)
    if not overrides:
        logger.debug("No profile section for '%s', using engine defaults", name)
        return unified.engine

    merged = unified.engine.model_dump()
    for key, value in overrides.items():
        if key == "retry" and isinstance(value, dict):
            merged["retry"] = {**merged["retry"], **value}
        else:
            merged[key] = value
    return EngineConfig(**merged)
