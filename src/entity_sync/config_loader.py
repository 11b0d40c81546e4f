"""
YAML config discovery and loading for entity_sync.

Config files are looked up by convention, may pull in other files with
``!include`` and may reference environment variables as ``${VAR}`` or
``${VAR:-default}``.  Several files are layered: the project file beats
the user-global one.

Usage:
    from entity_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "ENTITY_SYNC_CONFIG"
PROJECT_DIR = ".entity_sync"

# ${NAME} or ${NAME:-fallback}
_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<fallback>.*?))?\}")


# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------


def interpolate_env_vars(value: str) -> str:
    """Expand ``${VAR}`` / ``${VAR:-default}`` references in *value*.

    An unset or empty variable expands to its fallback, or to ``""`` when
    there is none.  Unterminated ``${`` is kept literally.
    """

    def _expand(match: re.Match) -> str:
        return os.environ.get(match["name"]) or match["fallback"] or ""

    return _ENV_REF.sub(_expand, value)


def _expand_tree(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_env_vars(node)
    if isinstance(node, list):
        return [_expand_tree(item) for item in node]
    if isinstance(node, dict):
        return {key: _expand_tree(item) for key, item in node.items()}
    return node


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader with an ``!include`` tag.

    Typical use is keeping profiles in their own file
    (``profiles: !include profiles.yml``).  Each loader carries the chain
    of files that led to it so include cycles are reported instead of
    recursing forever.
    """

    include_chain: tuple[Path, ...] = ()


def _construct_include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    target = Path(loader.construct_scalar(node))
    including_file = Path(loader.name).resolve()
    if not target.is_absolute():
        target = including_file.parent / target
    target = target.resolve()

    if target in loader.include_chain:
        cycle = " -> ".join(str(p) for p in (*loader.include_chain, target))
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} (referenced from {including_file})"
        )
    return _read_yaml(target, loader.include_chain)


ConfigLoader.add_constructor("!include", _construct_include)


def _read_yaml(path: Path, chain: tuple[Path, ...] = ()) -> Any:
    """Parse one YAML file, resolving ``!include`` relative to it."""
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader.include_chain = (*chain, path)
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# Kept for callers that load a single file directly.
_load_yaml_with_includes = _read_yaml


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first.

    1. the file named by ``ENTITY_SYNC_CONFIG``
    2. ``./.entity_sync/config.yml``
    3. ``./.entity_sync/config.yaml``
    4. ``~/.config/entity_sync/config.yml``
    """
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project = Path.cwd() / PROJECT_DIR
    candidates += [project / "config.yml", project / "config.yaml"]
    candidates.append(Path.home() / ".config" / "entity_sync" / "config.yml")

    return [path for path in candidates if path.exists()]


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def _layer(base: dict[str, Any], top: dict[str, Any]) -> dict[str, Any]:
    """Put *top* over *base*.

    Sections replace each other whole, except ``profiles``, which is
    combined by profile name so a project file can add or replace one
    profile without repeating the user's others.
    """
    merged = {**base, **top}
    if isinstance(base.get("profiles"), dict) and isinstance(
        top.get("profiles"), dict
    ):
        merged["profiles"] = {**base["profiles"], **top["profiles"]}
    return merged


def load_hierarchical_config() -> dict[str, Any]:
    """Load every discovered config file and layer them.

    Returns ``{}`` when there is no config file at all.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using built-in defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = _read_yaml(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if data is None:
            continue
        if not isinstance(data, dict):
            logger.warning(
                "Ignoring config file %s: top level is %s, not a mapping",
                path,
                type(data).__name__,
            )
            continue
        merged = _layer(merged, data)

    return _expand_tree(merged)
