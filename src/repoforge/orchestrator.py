"""Orchestrator for the two-stage code modification pipeline.

A run moves through these states, strictly in order:

    start -> context_generated -> files_identified
          -> targeted_context_generated -> changes_generated -> applied

Any stage error moves the run to failed and is raised with the stage name
and correlation id attached. Writes made before a failure stay on disk.

The orchestrator coordinates several subsystems:
- RepomixRunner: compressed and targeted snapshots of the repository
- render_prompt: the identify-files and generate-changes prompts
- ChatClient: the two model calls
- response_parser: JSON and XML extraction with grammar fallback
- file_resolver: path resolution and writes
"""

from __future__ import annotations

import logging
import shutil
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol

from .chat_client import ChatClient
from .config import Config
from .errors import InvalidInput, IoFailure, RepoforgeError
from .events import EventSink, EventType, RunEmitter
from .file_resolver import ResolvedChange, apply_changes
from .prompts import PromptKind, render_prompt
from .repomix import RepomixRunner
from .response_parser import ChangeSet, extract_change_set, extract_identified_files

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Code modification workflow completed successfully."
NO_CHANGES_MESSAGE = "AI generated no code changes to apply."

ARTIFACT_DIR = "temp"
COMPRESSED_CONTEXT_FILE = "compressed_context.xml"
TARGETED_CONTEXT_FILE = "targeted_context.xml"


class RunState(str, Enum):
    """Pipeline states."""

    START = "start"
    CONTEXT_GENERATED = "context_generated"
    FILES_IDENTIFIED = "files_identified"
    TARGETED_CONTEXT_GENERATED = "targeted_context_generated"
    CHANGES_GENERATED = "changes_generated"
    APPLIED = "applied"
    FAILED = "failed"


class Stage(str, Enum):
    """Stage names used in events and errors."""

    VALIDATE = "validate"
    COMPRESSED_CONTEXT = "compressed_context"
    IDENTIFY_FILES = "identify_files"
    TARGETED_CONTEXT = "targeted_context"
    GENERATE_CHANGES = "generate_changes"
    APPLY = "apply"


class CompletionClient(Protocol):
    """The model collaborator: one prompt in, one completion out."""

    def complete(
        self,
        prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        ...


@dataclass(frozen=True)
class OrchestrationRequest:
    """Inputs of one run."""

    repo_root: Path
    docs_root: Path
    task: str
    api_key: str = ""
    base_url: Optional[str] = None
    model: Optional[str] = None
    repomix_overrides: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class RunContext:
    """State owned by a single run."""

    correlation_id: str
    work_dir: Path
    state: RunState = RunState.START
    compressed_context: str = ""
    targeted_context: str = ""
    documentation: str = ""
    identified_files: list[str] = field(default_factory=list)
    change_set: ChangeSet = field(default_factory=dict)

    @classmethod
    def create(cls, repo_root: Path) -> RunContext:
        """Create a context with a fresh correlation id."""
        correlation_id = uuid.uuid4().hex
        return cls(
            correlation_id=correlation_id,
            work_dir=Path(repo_root) / ARTIFACT_DIR / correlation_id,
        )

    @property
    def compressed_output(self) -> Path:
        return self.work_dir / COMPRESSED_CONTEXT_FILE

    @property
    def targeted_output(self) -> Path:
        return self.work_dir / TARGETED_CONTEXT_FILE


@dataclass
class OrchestrationResult:
    """Outcome of a completed run."""

    success: bool
    message: str
    correlation_id: str
    state: RunState
    changes: list[ResolvedChange] = field(default_factory=list)

    @property
    def no_changes(self) -> bool:
        """True when the model produced a well-formed but empty change set."""
        return not self.success and self.state == RunState.CHANGES_GENERATED

    @property
    def files_written(self) -> list[Path]:
        return [c.target for c in self.changes]

    def to_dict(self) -> dict[str, Any]:
        """The caller-facing result."""
        return {"success": self.success, "message": self.message}


class Orchestrator:
    """Runs the identify -> generate -> apply pipeline."""

    def __init__(
        self,
        config: Config,
        chat_client: Optional[CompletionClient] = None,
        repomix_runner: Optional[RepomixRunner] = None,
        event_sink: Optional[EventSink] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Configuration settings.
            chat_client: Optional model client. When omitted a ChatClient is
                built per run from the request's credentials.
            repomix_runner: Optional RepomixRunner instance.
            event_sink: Where run events go. Defaults to logging.
        """
        self.config = config
        self.chat_client = chat_client
        self.repomix_runner = repomix_runner or RepomixRunner(timeout=config.repomix_timeout)
        self.event_sink = event_sink

    def run(self, request: OrchestrationRequest) -> OrchestrationResult:
        """Execute the full pipeline for one request.

        Args:
            request: The run inputs.

        Returns:
            OrchestrationResult. success is False (without an error) when the
            model generated no changes.

        Raises:
            RepoforgeError: The first stage error, with stage and
                correlation id attached.
        """
        ctx = RunContext.create(request.repo_root)
        emit = RunEmitter(self.event_sink, ctx.correlation_id)
        stage = Stage.VALIDATE
        emit(EventType.RUN_START, "run", task=request.task, repo=str(request.repo_root))

        try:
            self._validate(request)
            client = self._client_for(request)
            model = request.model or self.config.model.name
            temperature = self.config.model.temperature
            overrides = {**self.config.repomix_overrides, **dict(request.repomix_overrides)}

            # Step 1: compressed whole-repository context + documentation
            stage = Stage.COMPRESSED_CONTEXT
            emit(EventType.STAGE_START, stage.value)
            ctx.compressed_context = self.repomix_runner.generate_compressed(
                request.repo_root, ctx.compressed_output, overrides
            )
            ctx.documentation = self._load_documentation(request.docs_root)
            ctx.state = RunState.CONTEXT_GENERATED
            emit(
                EventType.STAGE_COMPLETE,
                stage.value,
                snapshot_chars=len(ctx.compressed_context),
                documentation_chars=len(ctx.documentation),
            )

            # Step 2: model call #1, identify files
            stage = Stage.IDENTIFY_FILES
            emit(EventType.STAGE_START, stage.value, model=model)
            prompt = render_prompt(
                PromptKind.IDENTIFY_FILES,
                {
                    "compressed_context": ctx.compressed_context,
                    "documentation": ctx.documentation,
                    "task": request.task,
                },
            )
            response = client.complete(prompt, model=model, temperature=temperature)
            ctx.identified_files = extract_identified_files(response)
            ctx.state = RunState.FILES_IDENTIFIED
            emit(EventType.STAGE_COMPLETE, stage.value, files=list(ctx.identified_files))

            # Step 3: targeted uncompressed context
            stage = Stage.TARGETED_CONTEXT
            emit(EventType.STAGE_START, stage.value)
            ctx.targeted_context = self.repomix_runner.generate_targeted(
                request.repo_root, ctx.identified_files, ctx.targeted_output, overrides
            )
            ctx.state = RunState.TARGETED_CONTEXT_GENERATED
            emit(EventType.STAGE_COMPLETE, stage.value, snapshot_chars=len(ctx.targeted_context))

            # Step 4: model call #2, generate complete file contents
            stage = Stage.GENERATE_CHANGES
            emit(EventType.STAGE_START, stage.value, model=model)
            prompt = render_prompt(
                PromptKind.GENERATE_CHANGES,
                {
                    "task": request.task,
                    "documentation": ctx.documentation,
                    "targeted_context": ctx.targeted_context,
                },
            )
            response = client.complete(prompt, model=model, temperature=temperature)
            ctx.change_set = extract_change_set(response)
            ctx.state = RunState.CHANGES_GENERATED
            emit(EventType.STAGE_COMPLETE, stage.value, files=sorted(ctx.change_set))

            if not ctx.change_set:
                emit(EventType.RUN_COMPLETE, "run", success=False, message=NO_CHANGES_MESSAGE)
                return OrchestrationResult(
                    success=False,
                    message=NO_CHANGES_MESSAGE,
                    correlation_id=ctx.correlation_id,
                    state=ctx.state,
                )

            # Step 5: resolve paths and write
            stage = Stage.APPLY
            emit(EventType.STAGE_START, stage.value, entries=len(ctx.change_set))
            changes = apply_changes(
                ctx.change_set,
                request.repo_root,
                ignore_dirs=self.config.ignore_dirs,
                on_resolved=lambda c: emit(
                    EventType.FILE_RESOLVED,
                    Stage.APPLY.value,
                    logical_path=c.logical_path,
                    path=str(c.target),
                    strategy=c.strategy.value,
                ),
                on_written=lambda c: emit(
                    EventType.FILE_WRITTEN,
                    Stage.APPLY.value,
                    path=str(c.target),
                    chars=len(c.content),
                ),
            )
            ctx.state = RunState.APPLIED
            emit(EventType.STAGE_COMPLETE, stage.value, files_written=len(changes))
            emit(EventType.RUN_COMPLETE, "run", success=True, message=SUCCESS_MESSAGE)

            return OrchestrationResult(
                success=True,
                message=SUCCESS_MESSAGE,
                correlation_id=ctx.correlation_id,
                state=ctx.state,
                changes=changes,
            )

        except (RepoforgeError, OSError, UnicodeDecodeError) as exc:
            ctx.state = RunState.FAILED
            error = exc if isinstance(exc, RepoforgeError) else IoFailure(str(exc))
            error.with_context(stage.value, ctx.correlation_id)
            emit(EventType.RUN_FAILED, error.stage or stage.value, kind=error.kind, error=error.message)
            if error is exc:
                raise
            raise error from exc
        finally:
            self._cleanup(ctx)

    def _validate(self, request: OrchestrationRequest) -> None:
        """Reject incomplete requests before any external call."""
        if not request.task or not request.task.strip():
            raise InvalidInput("A task description is required.")
        if not Path(request.repo_root).is_dir():
            raise InvalidInput(f"Repository path does not exist: {request.repo_root}")
        if self.chat_client is None and not (request.api_key or self.config.api_key):
            raise InvalidInput("An API key is required.")

    def _client_for(self, request: OrchestrationRequest) -> CompletionClient:
        if self.chat_client is not None:
            return self.chat_client
        settings = self.config.model
        return ChatClient(
            api_key=request.api_key or self.config.api_key or "",
            base_url=request.base_url or settings.base_url,
            model=settings.name,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout,
        )

    def _load_documentation(self, docs_root: Path) -> str:
        """Read the project documentation.

        docs_root may be the documentation file itself or the directory that
        holds the configured docs file.

        Raises:
            IoFailure: If the documentation cannot be read.
        """
        docs_path = Path(docs_root)
        if not docs_path.is_file():
            docs_path = docs_path / self.config.docs_file
        try:
            return docs_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise IoFailure(
                f"Failed to read file {docs_path}: {e}",
                details={"path": str(docs_path)},
            ) from e

    def _cleanup(self, ctx: RunContext) -> None:
        if self.config.keep_artifacts or not ctx.work_dir.exists():
            return
        shutil.rmtree(ctx.work_dir, ignore_errors=True)
        logger.debug(f"Removed run artifacts: {ctx.work_dir}")
