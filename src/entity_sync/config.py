"""Settings resolution for entity_sync.

Reads engine settings from environment variables, .env files and the YAML
config hierarchy.

Precedence (highest to lowest):
    Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    ENTITY_SYNC_CONFLICT_POLICY: report-only | prefer-a | prefer-b
    ENTITY_SYNC_DIRECTION: bidirectional | a-to-b | b-to-a
    ENTITY_SYNC_MAX_WORKERS: Concurrent actions (1-64)
    ENTITY_SYNC_TIMEOUT: Per repository call timeout in seconds
    ENTITY_SYNC_RETRY_ATTEMPTS: Attempts per action (1-20)
    ENTITY_SYNC_STATE_DIR: Directory for relation store files
    ENTITY_SYNC_PURGE_TOMBSTONES: true/false
"""

import logging
import os

from dotenv import load_dotenv

from .config_loader import load_hierarchical_config
from .config_schema import UnifiedConfig, build_config

logger = logging.getLogger(__name__)


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_number_env(
    key: str, cast: type, low: float, high: float | None = None
) -> int | float | None:
    """Parse a numeric env var and check its range.

    Raises:
        ValueError: If the value is not a number or out of range.
    """
    raw = os.getenv(key)
    if raw is None:
        return None
    bounds = f"between {low} and {high}" if high is not None else f">= {low}"
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number {bounds}"
        ) from None
    if value < low or (high is not None and value > high):
        raise ValueError(f"Invalid {key} '{raw}': must be a number {bounds}")
    return value


def env_overrides() -> dict:
    """Collect engine overrides from ``ENTITY_SYNC_*`` environment variables."""
    overrides: dict = {}

    policy = os.getenv("ENTITY_SYNC_CONFLICT_POLICY")
    if policy:
        overrides["conflict_policy"] = policy.strip().lower()

    direction = os.getenv("ENTITY_SYNC_DIRECTION")
    if direction:
        overrides["direction"] = direction.strip().lower()

    workers = _get_number_env("ENTITY_SYNC_MAX_WORKERS", int, 1, 64)
    if workers is not None:
        overrides["max_workers"] = workers

    timeout = _get_number_env("ENTITY_SYNC_TIMEOUT", float, 0.001)
    if timeout is not None:
        overrides["operation_timeout"] = timeout

    attempts = _get_number_env("ENTITY_SYNC_RETRY_ATTEMPTS", int, 1, 20)
    if attempts is not None:
        overrides["retry"] = {"max_attempts": attempts}

    state_dir = os.getenv("ENTITY_SYNC_STATE_DIR")
    if state_dir:
        overrides["state_dir"] = state_dir

    purge = _get_bool_env("ENTITY_SYNC_PURGE_TOMBSTONES")
    if purge is not None:
        overrides["purge_tombstoned_relations"] = purge

    return overrides


def load_settings(raw: dict | None = None) -> UnifiedConfig:
    """Resolve the full configuration.

    Args:
        raw: Pre-loaded config dict; when ``None`` the YAML hierarchy is
            discovered and loaded.

    Returns:
        Validated ``UnifiedConfig`` with environment overrides applied to
        the ``engine`` section.

    Raises:
        ValueError: If an environment override is invalid.
    """
    load_dotenv()

    data = dict(raw) if raw is not None else load_hierarchical_config()
    overrides = env_overrides()
    if overrides:
        engine = dict(data.get("engine") or {})
        retry_override = overrides.pop("retry", None)
        engine.update(overrides)
        if retry_override:
            engine["retry"] = {**(engine.get("retry") or {}), **retry_override}
        data["engine"] = engine
        logger.debug("Applied environment overrides: %s", sorted(engine))

    return build_config(data)
