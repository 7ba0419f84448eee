"""Configuration management for repoforge."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

CONFIG_FILENAME = "repoforge.yaml"

DEFAULT_MODEL = "gpt-4"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TEMPERATURE = 0.2
DEFAULT_TIMEOUT = 120
DEFAULT_REPOMIX_TIMEOUT = 300
DEFAULT_DOCS_FILE = "api_docs.md"
DEFAULT_IGNORE_DIRS = (".git", "node_modules", "temp")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


@dataclass
class ModelSettings:
    """Settings for the chat-completion service."""

    name: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: Optional[int] = None
    timeout: int = DEFAULT_TIMEOUT

    @classmethod
    def from_dict(cls, data: dict) -> ModelSettings:
        """Create ModelSettings from dictionary."""
        max_tokens = data.get("max_tokens")
        return cls(
            name=data.get("name", DEFAULT_MODEL),
            base_url=data.get("base_url", DEFAULT_BASE_URL),
            temperature=float(data.get("temperature", DEFAULT_TEMPERATURE)),
            max_tokens=int(max_tokens) if max_tokens is not None else None,
            timeout=int(data.get("timeout", DEFAULT_TIMEOUT)),
        )


@dataclass
class Config:
    """Configuration settings for a repoforge run."""

    # API Keys
    api_key: Optional[str] = None

    # Paths
    repo_path: Path = field(default_factory=Path.cwd)
    docs_file: str = DEFAULT_DOCS_FILE

    # LLM Settings
    model: ModelSettings = field(default_factory=ModelSettings)

    # Packaging tool settings
    repomix_timeout: int = DEFAULT_REPOMIX_TIMEOUT
    repomix_overrides: dict[str, Any] = field(default_factory=dict)

    # File resolution
    ignore_dirs: tuple[str, ...] = DEFAULT_IGNORE_DIRS

    # Runtime Settings
    keep_artifacts: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict, repo_path: Optional[Path] = None) -> Config:
        """Create Config from a parsed repoforge.yaml mapping."""
        resolver = data.get("resolver", {}) or {}
        return cls(
            repo_path=Path(repo_path) if repo_path else Path.cwd(),
            docs_file=data.get("docs_file", DEFAULT_DOCS_FILE),
            model=ModelSettings.from_dict(data.get("model", {}) or {}),
            repomix_timeout=int(data.get("repomix_timeout", DEFAULT_REPOMIX_TIMEOUT)),
            repomix_overrides=dict(data.get("repomix", {}) or {}),
            ignore_dirs=tuple(resolver.get("ignore_dirs", DEFAULT_IGNORE_DIRS)),
            keep_artifacts=bool(data.get("keep_artifacts", False)),
            log_level=data.get("log_level", "INFO"),
        )

    @classmethod
    def load_from_file(cls, repo_path: Path) -> Config:
        """Load config from repoforge.yaml in the repository root."""
        config_path = Path(repo_path) / CONFIG_FILENAME
        if config_path.exists():
            with open(config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            return cls.from_dict(data, repo_path)
        return cls(repo_path=Path(repo_path))

    @classmethod
    def from_env(cls, repo_path: Optional[Path] = None) -> Config:
        """Load configuration from file and environment variables.

        Environment variables take precedence over repoforge.yaml values.

        Args:
            repo_path: Optional path to the repository. Defaults to CWD.

        Returns:
            Config instance.
        """
        load_dotenv()

        repo = Path(repo_path) if repo_path else Path.cwd()
        config = cls.load_from_file(repo)

        config.api_key = os.getenv("REPOFORGE_API_KEY") or os.getenv("OPENAI_API_KEY")
        config.model.name = os.getenv("REPOFORGE_MODEL", config.model.name)
        config.model.base_url = os.getenv("REPOFORGE_BASE_URL", config.model.base_url)
        config.model.temperature = float(
            os.getenv("REPOFORGE_TEMPERATURE", str(config.model.temperature))
        )
        config.model.timeout = int(os.getenv("REPOFORGE_TIMEOUT", str(config.model.timeout)))
        config.repomix_timeout = int(
            os.getenv("REPOFORGE_REPOMIX_TIMEOUT", str(config.repomix_timeout))
        )
        config.docs_file = os.getenv("REPOFORGE_DOCS_FILE", config.docs_file)
        config.keep_artifacts = _env_flag("REPOFORGE_KEEP_ARTIFACTS", config.keep_artifacts)
        config.log_level = os.getenv("REPOFORGE_LOG_LEVEL", config.log_level)
        return config

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of validation error messages. Empty if valid.
        """
        errors = []

        if not self.api_key:
            errors.append("REPOFORGE_API_KEY (or OPENAI_API_KEY) is required")

        if not self.repo_path.exists():
            errors.append(f"Repository path does not exist: {self.repo_path}")

        return errors

    @property
    def config_file(self) -> Path:
        """Path to repoforge.yaml file."""
        return self.repo_path / CONFIG_FILENAME
