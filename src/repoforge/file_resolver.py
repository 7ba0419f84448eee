"""Resolution of model-supplied paths and application of change sets.

Models often give a plausible but slightly wrong relative path. Each logical
path is resolved against a snapshot of the repository's files:

1. the direct join with the repository root, if that file exists;
2. otherwise the files sharing its base name: a single match is used as is,
   several matches resolve to the shortest absolute path;
3. otherwise the direct join, as a new file.

Resolution is a pure function over a file listing; list_repo_files() is the
filesystem adapter.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Mapping, Optional, Sequence

from .config import DEFAULT_IGNORE_DIRS
from .errors import InvalidInput, IoFailure

logger = logging.getLogger(__name__)


class ResolutionStrategy(str, Enum):
    """How a logical path was mapped onto the repository."""

    DIRECT = "direct"
    FUZZY_UNIQUE = "fuzzy_unique"
    FUZZY_SHORTEST = "fuzzy_shortest"
    NEW_FILE = "new_file"


@dataclass
class ResolvedChange:
    """A change set entry paired with its write target."""

    logical_path: str
    target: Path
    content: str
    strategy: ResolutionStrategy

    @property
    def is_fuzzy(self) -> bool:
        return self.strategy in (ResolutionStrategy.FUZZY_UNIQUE, ResolutionStrategy.FUZZY_SHORTEST)


def normalize_logical_path(logical_path: str) -> str:
    """Convert a model path to a forward-slash path relative to the root."""
    normalized = logical_path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def base_name(logical_path: str) -> str:
    """Base name of a logical path, whichever separator it uses."""
    return PurePosixPath(normalize_logical_path(logical_path)).name


def direct_candidate(logical_path: str, repo_root: Path) -> Path:
    """The repository root joined with the logical path."""
    return Path(repo_root) / Path(*PurePosixPath(normalize_logical_path(logical_path)).parts)


def resolve_path(
    logical_path: str,
    repo_root: Path,
    listing: Sequence[Path],
    exists: Optional[Callable[[Path], bool]] = None,
) -> tuple[Path, ResolutionStrategy]:
    """Pick the write target for a logical path.

    Args:
        logical_path: Path as given by the model.
        repo_root: Repository root directory.
        listing: Every regular file in the repository, in walk order.
        exists: Optional check for direct candidates missing from the
            listing (files inside ignored directories).

    Returns:
        Tuple of (target path, strategy used).
    """
    candidate = direct_candidate(logical_path, repo_root)
    known = {str(p) for p in listing}
    if str(candidate) in known or (exists is not None and exists(candidate)):
        return candidate, ResolutionStrategy.DIRECT

    name = base_name(logical_path)
    matches = [p for p in listing if p.name == name]

    if not matches:
        return candidate, ResolutionStrategy.NEW_FILE
    if len(matches) == 1:
        return matches[0], ResolutionStrategy.FUZZY_UNIQUE

    # min() keeps the first of equal-length paths, so ties follow walk order
    shortest = min(matches, key=lambda p: len(str(p)))
    return shortest, ResolutionStrategy.FUZZY_SHORTEST


def list_repo_files(
    repo_root: Path,
    ignore_dirs: Iterable[str] = DEFAULT_IGNORE_DIRS,
) -> list[Path]:
    """List every regular file under repo_root in lexicographic walk order.

    Args:
        repo_root: Repository root directory.
        ignore_dirs: Directory names that are not descended into.

    Returns:
        Absolute paths of the files found.
    """
    root = Path(repo_root).resolve()
    skip = set(ignore_dirs)
    files: list[Path] = []

    for dirpath, dirnames, filenames in os.walk(root, onerror=_walk_error):
        dirnames[:] = sorted(d for d in dirnames if d not in skip)
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if path.is_file():
                files.append(path)
    return files


def _walk_error(error: OSError) -> None:
    logger.warning(f"Skipping unreadable directory: {error}")


def _check_inside(target: Path, root: Path, logical_path: str) -> None:
    try:
        target.resolve().relative_to(root)
    except ValueError as e:
        raise InvalidInput(
            f"Refusing to write outside the repository: {logical_path}",
            details={"path": logical_path},
        ) from e


def resolve_changes(
    change_set: Mapping[str, str],
    repo_root: Path,
    ignore_dirs: Iterable[str] = DEFAULT_IGNORE_DIRS,
    listing: Optional[Sequence[Path]] = None,
) -> list[ResolvedChange]:
    """Resolve every entry of a change set against one file listing.

    Raises:
        InvalidInput: If any entry would be written outside the repository.
    """
    root = Path(repo_root).resolve()
    if listing is None and change_set:
        listing = list_repo_files(root, ignore_dirs)

    resolved = []
    for logical_path, content in change_set.items():
        target, strategy = resolve_path(logical_path, root, listing or [], exists=Path.is_file)
        _check_inside(target, root, logical_path)
        if strategy == ResolutionStrategy.NEW_FILE:
            logger.info(f"No existing file matches '{logical_path}', creating {target}")
        elif strategy != ResolutionStrategy.DIRECT:
            logger.info(f"Resolved '{logical_path}' to {target} ({strategy.value})")
        resolved.append(ResolvedChange(logical_path, target, content, strategy))
    return resolved


def write_text(path: Path, content: str) -> None:
    """Write text, creating parent directories and keeping newlines as given.

    Raises:
        IoFailure: If the directory or file cannot be written.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8", newline="") as f:
            f.write(content)
    except OSError as e:
        raise IoFailure(
            f"Failed to write file {path}: {e}",
            details={"path": str(path)},
        ) from e


def apply_changes(
    change_set: Mapping[str, str],
    repo_root: Path,
    ignore_dirs: Iterable[str] = DEFAULT_IGNORE_DIRS,
    on_resolved: Optional[Callable[[ResolvedChange], None]] = None,
    on_written: Optional[Callable[[ResolvedChange], None]] = None,
) -> list[ResolvedChange]:
    """Write a change set to disk.

    All entries are resolved before the first write. Each entry is written
    exactly once; files are only created or overwritten, never removed.

    Args:
        change_set: Logical path -> complete file content.
        repo_root: Repository root directory.
        ignore_dirs: Directory names skipped by the fuzzy search.
        on_resolved: Called for each entry after resolution.
        on_written: Called for each entry after its write.

    Returns:
        The resolved changes, in change set order.
    """
    resolved = resolve_changes(change_set, repo_root, ignore_dirs)
    if on_resolved:
        for change in resolved:
            on_resolved(change)

    for change in resolved:
        write_text(change.target, change.content)
        logger.debug(f"Wrote {change.target}")
        if on_written:
            on_written(change)

    logger.info(f"Applied {len(resolved)} file changes")
    return resolved
