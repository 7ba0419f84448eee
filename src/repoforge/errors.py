"""Error taxonomy for the code-modification pipeline.

Every failure raised by repoforge derives from RepoforgeError. The
orchestrator attaches the stage name and correlation id of the run before
re-raising, so callers can log or display a failure without extra plumbing.
"""

from __future__ import annotations

from typing import Any, Optional


class RepoforgeError(Exception):
    """Base exception for all pipeline failures."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        correlation_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.correlation_id = correlation_id
        self.details: dict[str, Any] = dict(details or {})

    def with_context(self, stage: str, correlation_id: str) -> RepoforgeError:
        """Attach run context, keeping any stage already recorded."""
        if self.stage is None:
            self.stage = stage
        if self.correlation_id is None:
            self.correlation_id = correlation_id
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage,
            "correlation_id": self.correlation_id,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.stage and self.correlation_id:
            return f"[{self.stage} {self.correlation_id}] {self.message}"
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class InvalidInput(RepoforgeError):
    """Caller omitted required input or supplied an unusable value."""

    kind = "invalid_input"


class ExternalServiceFailure(RepoforgeError):
    """The chat-completion service failed or returned nothing usable."""

    kind = "external_service_failure"


class ExternalToolFailure(RepoforgeError):
    """The packaging subprocess exited abnormally."""

    kind = "external_tool_failure"

    def __init__(self, message: str, *, stderr: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.stderr = stderr
        if stderr:
            self.details.setdefault("stderr", stderr)


class ResponseFormatError(RepoforgeError):
    """Model output could not be parsed under any supported grammar."""

    kind = "response_format_error"


class NoFilesIdentifiedError(ResponseFormatError, ExternalServiceFailure):
    """The model answered with a well-formed but empty file list."""

    kind = "no_files_identified"


class IoFailure(RepoforgeError):
    """A filesystem read, write or mkdir failed."""

    kind = "io_failure"
