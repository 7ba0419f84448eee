"""Shared test fixtures for repoforge tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

import pytest

from repoforge.chat_client import MockChatClient
from repoforge.config import Config
from repoforge.errors import ExternalToolFailure


@pytest.fixture
def temp_repo(tmp_path: Path) -> Path:
    """Create a temporary target repository for testing."""
    repo = tmp_path / "repo"
    (repo / "src" / "utils").mkdir(parents=True)
    (repo / "docs").mkdir()

    (repo / "src" / "index.js").write_text("const helper = require('./utils/helper');\n")
    (repo / "src" / "utils" / "helper.js").write_text("module.exports = {};\n")
    (repo / "docs" / "api_docs.md").write_text("# API\n\nUse CommonJS modules.\n")

    return repo


@pytest.fixture
def docs_dir(temp_repo: Path) -> Path:
    return temp_repo / "docs"


@pytest.fixture
def config(temp_repo: Path) -> Config:
    """Config for the temporary repository, with a dummy API key."""
    return Config(api_key="test-key", repo_path=temp_repo)


class FakeRepomixRunner:
    """Stands in for RepomixRunner; writes canned snapshots."""

    def __init__(
        self,
        compressed: str = "<repository>compressed</repository>",
        targeted: str = "<repository>targeted</repository>",
        fail_on: Optional[str] = None,
    ):
        self.compressed = compressed
        self.targeted = targeted
        self.fail_on = fail_on
        self.calls: list[tuple[str, Any]] = []

    def generate_compressed(
        self,
        repo_root: Path,
        output_path: Path,
        config_overrides: Optional[Mapping[str, Any]] = None,
    ) -> str:
        self.calls.append(("compressed", dict(config_overrides or {})))
        if self.fail_on == "compressed":
            raise ExternalToolFailure("Repomix exited with code 1: boom", stderr="boom")
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_text(self.compressed)
        return self.compressed

    def generate_targeted(
        self,
        repo_root: Path,
        file_paths: Sequence[str],
        output_path: Path,
        config_overrides: Optional[Mapping[str, Any]] = None,
    ) -> str:
        self.calls.append(("targeted", list(file_paths)))
        if self.fail_on == "targeted":
            raise ExternalToolFailure("Repomix exited with code 2: bad include", stderr="bad include")
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_text(self.targeted)
        return self.targeted


@pytest.fixture
def fake_repomix() -> FakeRepomixRunner:
    return FakeRepomixRunner()


@pytest.fixture
def mock_client() -> MockChatClient:
    return MockChatClient()


@pytest.fixture
def failing_repomix():
    """Factory for a fake runner that fails at the given snapshot."""

    def _make(stage: str) -> FakeRepomixRunner:
        return FakeRepomixRunner(fail_on=stage)

    return _make
