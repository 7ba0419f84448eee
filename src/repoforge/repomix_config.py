"""Repomix configuration file management.

Repomix reads its settings from repomix.config.json in the repository root.
Before every packing run the file is rewritten from three layers, lowest
priority first: built-in defaults, the config already on disk, and the
caller's overrides.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import IoFailure

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "repomix.config.json"

DEFAULT_REPOMIX_CONFIG: dict[str, Any] = {
    "style": "xml",
    "output": "temp/repomix.xml",
    "compress": False,
    "include": ["src/**/*.js"],
    "ignore": ["node_modules", "temp"],
    "outputShowLineNumbers": False,
    "noFileSummary": False,
    "noDirectoryStructure": False,
}

VALID_STYLES = ("xml", "markdown", "plain")


def config_path_for(repo_root: Path) -> Path:
    """Return the location of repomix.config.json for a repository."""
    return Path(repo_root) / CONFIG_FILENAME


def load_existing_config(config_path: Path) -> dict[str, Any]:
    """Read an existing repomix config, ignoring unreadable files.

    Args:
        config_path: Path to repomix.config.json.

    Returns:
        Parsed config mapping, or an empty dict if missing or invalid.
    """
    if not config_path.exists():
        return {}
    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable repomix config {config_path}: {e}")
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring repomix config {config_path}: not a JSON object")
        return {}
    return data


def merge_repomix_config(
    existing: Optional[Mapping[str, Any]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    repo_root: Optional[Path] = None,
) -> dict[str, Any]:
    """Merge defaults, existing config and overrides (overrides win).

    Args:
        existing: Config currently on disk.
        overrides: Caller-supplied overrides.
        repo_root: Repository root, used for include-pattern fixups.

    Returns:
        The normalized merged config.
    """
    config: dict[str, Any] = dict(DEFAULT_REPOMIX_CONFIG)
    config.update(existing or {})
    config.update(overrides or {})
    return normalize_repomix_config(config, repo_root)


def normalize_repomix_config(
    config: dict[str, Any], repo_root: Optional[Path] = None
) -> dict[str, Any]:
    """Coerce config fields into the shapes repomix expects."""
    output = config.get("output")
    if isinstance(output, (str, Path)):
        config["output"] = {"path": str(output)}
    elif isinstance(output, dict) and "path" not in output:
        logger.warning("Repomix config: output object has no 'path' field")

    ignore = config.get("ignore")
    if isinstance(ignore, list):
        config["ignore"] = {"patterns": ignore}
    elif isinstance(ignore, dict) and "patterns" not in ignore:
        logger.warning("Repomix config: ignore object has no 'patterns' field")

    style = config.get("style")
    if style is not None and style not in VALID_STYLES:
        logger.warning(f"Repomix config: unknown style '{style}'")

    # Patterns written relative to the project root do not match when the
    # packed directory is itself src/.
    include = config.get("include")
    if repo_root is not None and Path(repo_root).name.lower() == "src" and isinstance(include, list):
        stripped = [_strip_src_prefix(p) for p in include]
        config["include"] = [p for p in stripped if p] or ["**/*.js"]

    return config


def _strip_src_prefix(pattern: str) -> str:
    if pattern.startswith("./src/"):
        return pattern[len("./src/"):]
    if pattern.startswith("src/"):
        return pattern[len("src/"):]
    return pattern


def ensure_repomix_config(
    repo_root: Path, overrides: Optional[Mapping[str, Any]] = None
) -> Path:
    """Create or update repomix.config.json in the repository root.

    Args:
        repo_root: Repository root directory.
        overrides: Values that take priority over defaults and existing config.

    Returns:
        Path to the written config file.

    Raises:
        IoFailure: If the config file cannot be written.
    """
    config_path = config_path_for(repo_root)
    existing = load_existing_config(config_path)
    config = merge_repomix_config(existing, overrides, repo_root)

    try:
        config_path.write_text(json.dumps(config, indent=2), encoding="utf-8")
    except OSError as e:
        raise IoFailure(
            f"Failed to write repomix config {config_path}: {e}",
            details={"path": str(config_path)},
        ) from e

    logger.debug(f"Wrote repomix config: {config_path}")
    return config_path
