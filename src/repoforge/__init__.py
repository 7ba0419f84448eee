"""repoforge: two-stage, model-driven code modification for repositories."""

from .errors import (
    ExternalServiceFailure,
    ExternalToolFailure,
    InvalidInput,
    IoFailure,
    RepoforgeError,
    ResponseFormatError,
)
from .orchestrator import (
    OrchestrationRequest,
    OrchestrationResult,
    Orchestrator,
    RunState,
)

__version__ = "0.1.0"

__all__ = [
    "ExternalServiceFailure",
    "ExternalToolFailure",
    "InvalidInput",
    "IoFailure",
    "OrchestrationRequest",
    "OrchestrationResult",
    "Orchestrator",
    "RepoforgeError",
    "ResponseFormatError",
    "RunState",
    "__version__",
]
