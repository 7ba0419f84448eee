"""Repomix integration for codebase snapshots."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from .errors import ExternalToolFailure, InvalidInput, IoFailure
from .repomix_config import DEFAULT_REPOMIX_CONFIG, ensure_repomix_config

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Repomix not found. Install with: npm install -g repomix"


def to_include_pattern(file_path: str) -> str:
    """Convert a logical file path into a repomix include glob."""
    return file_path.replace("\\", "/").lstrip("/")


class RepomixRunner:
    """Runs Repomix to produce compressed and targeted snapshots."""

    def __init__(self, timeout: int = 300, commands: Optional[Sequence[Sequence[str]]] = None):
        """Initialize the Repomix runner.

        Args:
            timeout: Timeout in seconds for each Repomix execution.
            commands: Command prefixes to try in order. The first one whose
                executable exists is used.
        """
        self.timeout = timeout
        self.commands = [list(c) for c in (commands or (["repomix"], ["npx", "repomix"]))]

    def run(self, config_path: Path, cwd: Path, extra_args: Sequence[str] = ()) -> str:
        """Run Repomix with a config file and return its standard output.

        Args:
            config_path: Path to repomix.config.json.
            cwd: Directory to run in (the repository root).
            extra_args: Additional command-line flags.

        Returns:
            The snapshot text written to stdout.

        Raises:
            ExternalToolFailure: If Repomix is missing, times out, or exits non-zero.
        """
        args = ["-c", str(config_path), "--stdout", *extra_args]
        last_error = NOT_FOUND_MESSAGE

        # List-based commands, no shell
        for prefix in self.commands:
            cmd = [*prefix, *args]
            logger.debug(f"Executing: {' '.join(cmd)} (cwd={cwd})")
            try:
                result = subprocess.run(
                    cmd,
                    cwd=cwd,
                    capture_output=True,
                    text=True,
                    encoding="utf-8",
                    timeout=self.timeout,
                    shell=False,
                )
            except FileNotFoundError:
                last_error = f"Command not found: {prefix[0]}"
                continue
            except subprocess.TimeoutExpired as e:
                raise ExternalToolFailure(
                    f"Repomix timed out after {self.timeout} seconds",
                    stderr=_decode(e.stderr),
                ) from e
            except OSError as e:
                raise ExternalToolFailure(f"Failed to execute Repomix: {e}") from e
            except UnicodeDecodeError as e:
                raise ExternalToolFailure(
                    f"Repomix output is not valid UTF-8: {e}",
                    details={"command": cmd},
                ) from e

            if result.returncode != 0:
                stderr = result.stderr or ""
                raise ExternalToolFailure(
                    f"Repomix exited with code {result.returncode}: {stderr.strip()[:500]}",
                    stderr=stderr,
                    details={"command": cmd, "returncode": result.returncode},
                )

            if result.stderr:
                logger.warning(f"Repomix stderr: {result.stderr.strip()[:500]}")
            return result.stdout

        raise ExternalToolFailure(
            f"{NOT_FOUND_MESSAGE} ({last_error})",
            details={"commands": self.commands},
        )

    def generate_compressed(
        self,
        repo_root: Path,
        output_path: Path,
        config_overrides: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Generate a compressed whole-repository snapshot.

        The include patterns come from the caller overrides or the defaults,
        never from the config file, which a targeted run narrows to its own
        files.

        Args:
            repo_root: Repository to pack.
            output_path: Where the snapshot is persisted.
            config_overrides: Caller repomix config overrides.

        Returns:
            The snapshot text.
        """
        repo_root = _require_repo(repo_root)
        config_overrides = config_overrides or {}
        overrides = {
            **config_overrides,
            "include": list(config_overrides.get("include", DEFAULT_REPOMIX_CONFIG["include"])),
            "output": str(output_path),
            "compress": True,
        }
        config_path = ensure_repomix_config(repo_root, overrides)
        snapshot = self.run(config_path, repo_root, ["--compress"])
        _persist(snapshot, output_path)
        return snapshot

    def generate_targeted(
        self,
        repo_root: Path,
        file_paths: Sequence[str],
        output_path: Path,
        config_overrides: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Generate an uncompressed snapshot of specific files.

        Args:
            repo_root: Repository to pack.
            file_paths: Logical paths of the files to include.
            output_path: Where the snapshot is persisted.
            config_overrides: Caller repomix config overrides.

        Returns:
            The snapshot text.

        Raises:
            InvalidInput: If file_paths is empty.
        """
        if not file_paths:
            raise InvalidInput("No file paths provided for targeted context generation.")
        repo_root = _require_repo(repo_root)

        patterns = [to_include_pattern(p) for p in file_paths]
        overrides = {
            **(config_overrides or {}),
            "output": str(output_path),
            "include": patterns,
            "compress": False,
        }
        config_path = ensure_repomix_config(repo_root, overrides)
        snapshot = self.run(config_path, repo_root, ["--include", ",".join(patterns)])
        _persist(snapshot, output_path)
        return snapshot


def _require_repo(repo_root: Path) -> Path:
    repo_root = Path(repo_root)
    if not repo_root.is_dir():
        raise InvalidInput(f"Repository path does not exist: {repo_root}")
    return repo_root


def _persist(snapshot: str, output_path: Path) -> None:
    output_path = Path(output_path)
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "w", encoding="utf-8", newline="") as f:
            f.write(snapshot)
    except OSError as e:
        raise IoFailure(
            f"Failed to write snapshot {output_path}: {e}",
            details={"path": str(output_path)},
        ) from e
    logger.debug(f"Snapshot written: {output_path} ({len(snapshot)} chars)")


def _decode(stream: Any) -> str:
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return str(stream)
