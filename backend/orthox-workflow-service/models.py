"""
OrthoX Workflow Service - Data Models

Pydantic contracts for:
- Case / Note / Media aggregate
- Workflow stage states
- Capability inputs and outputs
- Pipeline run results
- API request/response payloads
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================


class WorkflowStage(str, Enum):
    DIAGNOSIS = "diagnosis"
    TREATMENT = "treatment"
    IMPLANT = "implant"
    OUTCOME = "outcome"


class StageState(str, Enum):
    EMPTY = "empty"
    POPULATED = "populated"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    YOUTUBE = "youtube"


class CapabilityRunStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class AdviceKind(str, Enum):
    TREATMENT = "treatment"
    IMPLANT = "implant"


# =============================================================================
# CASE AGGREGATE
# =============================================================================


class CaseNote(BaseModel):
    id: str
    case_id: str
    content: str
    source_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class CaseMedia(BaseModel):
    id: str
    case_id: str
    type: MediaType
    url: str
    created_at: datetime = Field(default_factory=utc_now)


class OrthoCase(BaseModel):
    id: str
    patient_reference_id: str
    patient_name: str
    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    implant_choice: Optional[str] = None
    outcome_notes: Optional[str] = None
    low_resource_mode: bool = False
    phi_confirmed: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    notes: List[CaseNote] = Field(default_factory=list)
    media: List[CaseMedia] = Field(default_factory=list)


class CaseFieldUpdate(BaseModel):
    """
    Partial update for a case row. Only non-null fields are applied.
    """

    diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    implant_choice: Optional[str] = None
    outcome_notes: Optional[str] = None
    low_resource_mode: Optional[bool] = None
    phi_confirmed: Optional[bool] = None

    def non_null_fields(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


# =============================================================================
# CAPABILITY CONTRACTS
# =============================================================================


class MediaBlob(BaseModel):
    """
    One pipeline input item: uploaded bytes, or an external video reference.
    """

    mime_type: str
    data: Optional[bytes] = None
    uri: Optional[str] = None
    filename: Optional[str] = None

    @model_validator(mode="after")
    def _require_payload(self) -> "MediaBlob":
        if not self.data and not (self.uri or "").strip():
            raise ValueError("MediaBlob requires either data bytes or a uri.")
        return self

    @property
    def is_reference(self) -> bool:
        return not self.data


class GroundingSource(BaseModel):
    title: Optional[str] = None
    url: str


class GroundedAdvice(BaseModel):
    text: str
    sources: List[GroundingSource] = Field(default_factory=list)


class AdviceRequest(BaseModel):
    kind: AdviceKind
    diagnosis: str
    treatment_plan: Optional[str] = None
    patient_context: str = ""
    low_resource_mode: bool = False


class ReasoningResult(BaseModel):
    text: str
    route: str
    fallback_reason: Optional[str] = None


class CapabilityTrace(BaseModel):
    capability: str
    status: CapabilityRunStatus
    started_at: datetime
    completed_at: datetime
    notes: Optional[str] = None


# =============================================================================
# WORKFLOW + RUN RESULTS
# =============================================================================


class StageStatus(BaseModel):
    stage: WorkflowStage
    state: StageState
    runnable: bool
    missing_prerequisites: List[WorkflowStage] = Field(default_factory=list)


class WorkflowStatus(BaseModel):
    case_id: str
    stages: List[StageStatus] = Field(default_factory=list)

    def stage(self, stage: WorkflowStage) -> StageStatus:
        for item in self.stages:
            if item.stage == stage:
                return item
        raise KeyError(f"Unknown workflow stage: {stage}")


class DiagnosisRun(BaseModel):
    case_id: str
    diagnosis: str
    vision_findings: str
    reasoning_route: str
    traces: List[CapabilityTrace] = Field(default_factory=list)


class ClassificationRun(BaseModel):
    case_id: str
    classification: str
    insufficient_data: bool
    note: CaseNote
    traces: List[CapabilityTrace] = Field(default_factory=list)


class AdviceRun(BaseModel):
    case_id: str
    stage: WorkflowStage
    text: str
    sources: List[GroundingSource] = Field(default_factory=list)
    low_resource_mode: bool
    traces: List[CapabilityTrace] = Field(default_factory=list)


class OutcomeRun(BaseModel):
    case_id: str
    outcome_notes: str
    vision_findings: str
    traces: List[CapabilityTrace] = Field(default_factory=list)


# =============================================================================
# API MODELS
# =============================================================================


class CreateCaseRequest(BaseModel):
    patient_reference_id: Optional[str] = None
    low_resource_mode: bool = False


class UpdateCaseRequest(BaseModel):
    # Artifact fields are owned by their pipelines and cannot be patched.
    model_config = ConfigDict(extra="forbid")

    low_resource_mode: Optional[bool] = None
    phi_confirmed: Optional[bool] = None


class AddNoteRequest(BaseModel):
    content: str = Field(min_length=1)
    source_url: Optional[str] = None


class AddMediaRequest(BaseModel):
    type: MediaType
    url: str = Field(min_length=1)


class ClassificationRequest(BaseModel):
    vision_findings: Optional[str] = None


class TreatmentRequest(BaseModel):
    patient_context: str = ""
    low_resource_mode: Optional[bool] = None


class ImplantRequest(BaseModel):
    low_resource_mode: Optional[bool] = None


class CaseResponse(BaseModel):
    success: bool
    case: OrthoCase


class CaseListResponse(BaseModel):
    success: bool
    count: int
    cases: List[OrthoCase] = Field(default_factory=list)


class WorkflowResponse(BaseModel):
    success: bool
    workflow: WorkflowStatus


class NoteResponse(BaseModel):
    success: bool
    note: CaseNote


class MediaResponse(BaseModel):
    success: bool
    media: CaseMedia


class DiagnosisRunResponse(BaseModel):
    success: bool
    message: str
    run: DiagnosisRun


class ClassificationRunResponse(BaseModel):
    success: bool
    message: str
    run: ClassificationRun


class AdviceRunResponse(BaseModel):
    success: bool
    message: str
    run: AdviceRun


class OutcomeRunResponse(BaseModel):
    success: bool
    message: str
    run: OutcomeRun


class HealthResponse(BaseModel):
    status: str
    service: str
    case_store_backend: str
    reasoning_route: str
    gemini_configured: bool
    timestamp: datetime = Field(default_factory=utc_now)
