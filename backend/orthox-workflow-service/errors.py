"""
OrthoX Workflow Service - Pipeline Errors

Exception tree::

    PipelineError (base)
    ├── InsufficientMedia
    ├── PreconditionFailed
    └── CapabilityError
        ├── CapabilityUnavailable
        ├── CapabilityBadResponse
        └── CapabilityTimeout

None of these are raised after a case field has been written: a failed run
leaves the stored case untouched.
"""

from __future__ import annotations

from typing import Dict, List, Optional

from models import CapabilityTrace, WorkflowStage


class PipelineError(Exception):
    """Base exception for every pipeline run failure.

    Attributes:
        message: Human-readable error description.
        stage: Workflow stage whose run failed, when known.
        traces: Capability traces of the failed run (completed, failed, skipped).
    """

    kind = "PipelineError"

    def __init__(self, message: str, stage: Optional[WorkflowStage] = None) -> None:
        self.message: str = message
        self.stage: Optional[WorkflowStage] = stage
        self.traces: List[CapabilityTrace] = []
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, object]:
        return {
            "error": self.kind,
            "stage": self.stage.value if self.stage else None,
            "message": self.message,
            "traces": [t.model_dump(mode="json") for t in self.traces],
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, stage={self.stage!r})"


class InsufficientMedia(PipelineError):
    """Raised when a vision-backed pipeline is started without any media."""

    kind = "InsufficientMedia"


class PreconditionFailed(PipelineError):
    """Raised when a stage runs before its prerequisite artifacts exist.

    Attributes:
        missing: Prerequisite stages (or inputs) that are not yet available.
    """

    kind = "PreconditionFailed"

    def __init__(
        self,
        message: str,
        stage: Optional[WorkflowStage] = None,
        missing: Optional[List[str]] = None,
    ) -> None:
        self.missing: List[str] = list(missing or [])
        super().__init__(message, stage=stage)

    def to_detail(self) -> Dict[str, object]:
        detail = super().to_detail()
        detail["missing"] = self.missing
        return detail


class CapabilityError(PipelineError):
    """Raised when an external capability call fails.

    Attributes:
        capability: Adapter name (e.g. ``VisionExtractor``).
    """

    kind = "CapabilityError"

    def __init__(
        self,
        message: str,
        capability: str = "",
        stage: Optional[WorkflowStage] = None,
    ) -> None:
        self.capability: str = capability
        super().__init__(message, stage=stage)

    def to_detail(self) -> Dict[str, object]:
        detail = super().to_detail()
        detail["capability"] = self.capability
        return detail


class CapabilityUnavailable(CapabilityError):
    """Backend unreachable, rejected the call, or is not configured."""

    kind = "CapabilityUnavailable"


class CapabilityBadResponse(CapabilityError):
    """Backend answered with empty or unparseable output."""

    kind = "CapabilityBadResponse"


class CapabilityTimeout(CapabilityError):
    """Backend did not answer within the configured per-call timeout."""

    kind = "CapabilityTimeout"
