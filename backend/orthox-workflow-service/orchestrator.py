"""
OrthoX Workflow Service - Pipeline Orchestration

Composes the capability adapters into the clinician-triggered runs:
1. Diagnosis pipeline  VisionExtractor -> ClinicalReasoner       -> cases.diagnosis
2. Classification      Classifier(findings)                      -> notes
3. Treatment flow      GroundedAdvisor(diagnosis, context)       -> cases.treatment_plan
4. Implant flow        GroundedAdvisor(diagnosis, plan)          -> cases.implant_choice
5. Outcome pipeline    VisionExtractor -> OutcomeAssessor        -> cases.outcome_notes

Stages inside a run are strictly sequential. Each capability call runs in a
worker thread under a bounded timeout. A run writes exactly one field (or one
note) and only after every capability in it succeeded.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence
from uuid import uuid4

from capabilities import (
    Classifier,
    GeminiCompendiumClassifier,
    GeminiGateway,
    GeminiGroundedAdvisor,
    GeminiOutcomeAssessor,
    GeminiVisionExtractor,
    GroundedAdvisor,
    OutcomeAssessor,
    VisionExtractor,
    is_insufficient_data,
)
from case_repository import CaseRepository, InMemoryCaseRepository, SqliteCaseRepository
from clinical_reasoner import ClinicalReasoner
from env_loader import env_float, env_str, load_service_env
from errors import (
    CapabilityBadResponse,
    CapabilityError,
    CapabilityTimeout,
    InsufficientMedia,
    PipelineError,
    PreconditionFailed,
)
from models import (
    AdviceKind,
    AdviceRequest,
    AdviceRun,
    CapabilityRunStatus,
    CapabilityTrace,
    CaseFieldUpdate,
    CaseMedia,
    CaseNote,
    ClassificationRun,
    DiagnosisRun,
    MediaBlob,
    MediaType,
    OrthoCase,
    OutcomeRun,
    WorkflowStage,
    WorkflowStatus,
    utc_now,
)
from workflow import artifact_update, ensure_stage_ready, workflow_status

logger = logging.getLogger(__name__)

DIAGNOSIS_CONTEXT = "Orthopedic trauma case assessment."


def _new_id() -> str:
    return uuid4().hex


def anonymized_patient_name(patient_reference_id: str) -> str:
    return f"Patient_{patient_reference_id[:8]}"


class WorkflowOrchestrator:
    """
    Stateless coordinator between the case store and the capability adapters.
    """

    def __init__(
        self,
        repository: CaseRepository,
        vision: VisionExtractor,
        reasoner: ClinicalReasoner,
        classifier: Classifier,
        advisor: GroundedAdvisor,
        outcome_assessor: OutcomeAssessor,
        capability_timeout_seconds: Optional[float] = None,
    ) -> None:
        self.repository = repository
        self.vision = vision
        self.reasoner = reasoner
        self.classifier = classifier
        self.advisor = advisor
        self.outcome_assessor = outcome_assessor
        self.capability_timeout_seconds = max(
            1.0,
            capability_timeout_seconds
            if capability_timeout_seconds is not None
            else env_float("ORTHOX_CAPABILITY_TIMEOUT_SECONDS", 120.0),
        )
        logger.info(
            "WorkflowOrchestrator initialized | store=%s | reasoner_route=%s | capability_timeout=%.1fs",
            self.case_store_backend,
            self.reasoning_route,
            self.capability_timeout_seconds,
        )

    @property
    def case_store_backend(self) -> str:
        return getattr(self.repository, "backend_name", self.repository.__class__.__name__)

    @property
    def reasoning_route(self) -> str:
        return getattr(self.reasoner, "mode", "custom")

    # -------------------------------------------------------------------------
    # Case aggregate
    # -------------------------------------------------------------------------

    def create_case(
        self,
        patient_reference_id: Optional[str] = None,
        low_resource_mode: bool = False,
    ) -> OrthoCase:
        reference_id = (patient_reference_id or "").strip() or str(uuid4())
        record = OrthoCase(
            id=_new_id(),
            patient_reference_id=reference_id,
            patient_name=anonymized_patient_name(reference_id),
            low_resource_mode=bool(low_resource_mode),
        )
        created = self.repository.create_case(record)
        logger.info("Created case %s (low_resource_mode=%s).", created.id, created.low_resource_mode)
        return created

    def get_case(self, case_id: str) -> OrthoCase:
        return self.repository.get_case(case_id)

    def list_cases(self) -> List[OrthoCase]:
        return self.repository.list_cases()

    def get_workflow(self, case_id: str) -> WorkflowStatus:
        return workflow_status(self.repository.get_case(case_id))

    def update_case(
        self,
        case_id: str,
        low_resource_mode: Optional[bool] = None,
        phi_confirmed: Optional[bool] = None,
    ) -> OrthoCase:
        if phi_confirmed is False:
            # One-way gate: confirmation is never withdrawn through an update.
            logger.info("Ignoring phi_confirmed=false for case %s.", case_id)
            phi_confirmed = None
        self.repository.update_case_fields(
            case_id,
            CaseFieldUpdate(low_resource_mode=low_resource_mode, phi_confirmed=phi_confirmed),
        )
        return self.repository.get_case(case_id)

    def add_note(self, case_id: str, content: str, source_url: Optional[str] = None) -> CaseNote:
        note = CaseNote(
            id=_new_id(),
            case_id=case_id,
            content=content,
            source_url=(source_url or "").strip() or None,
        )
        return self.repository.add_note(note)

    def add_media(self, case_id: str, media_type: MediaType, url: str) -> CaseMedia:
        media = CaseMedia(id=_new_id(), case_id=case_id, type=media_type, url=url)
        return self.repository.add_media(media)

    # -------------------------------------------------------------------------
    # Pipelines
    # -------------------------------------------------------------------------

    async def run_diagnosis_pipeline(self, case_id: str, media: Sequence[MediaBlob]) -> DiagnosisRun:
        """
        Vision extraction hands findings to clinical reasoning; the reasoning
        text becomes the case diagnosis. Findings are returned, not stored.
        """
        stage = WorkflowStage.DIAGNOSIS
        self.repository.get_case(case_id)
        if not media:
            raise InsufficientMedia("Diagnosis pipeline requires at least one media item.", stage=stage)

        logger.info("Diagnosis pipeline started for case %s with %d media item(s).", case_id, len(media))
        traces: List[CapabilityTrace] = []
        planned = [self.vision.name, self.reasoner.name]
        try:
            findings = await self._call_capability(stage, self.vision.name, traces, self.vision.extract, list(media))
            findings = self._require_text(findings, stage, self.vision.name)
            reasoning = await self._call_capability(
                stage,
                self.reasoner.name,
                traces,
                self.reasoner.reason,
                findings,
                DIAGNOSIS_CONTEXT,
            )
            diagnosis = self._require_text(reasoning.text, stage, self.reasoner.name)
        except PipelineError as exc:
            self._mark_skipped(exc, traces, planned)
            raise

        if reasoning.fallback_reason:
            traces[-1].notes = f"route={reasoning.route}; fallback: {reasoning.fallback_reason}"
        else:
            traces[-1].notes = f"route={reasoning.route}"

        self.repository.update_case_fields(case_id, artifact_update(stage, diagnosis))
        logger.info("Diagnosis pipeline completed for case %s (route=%s).", case_id, reasoning.route)
        return DiagnosisRun(
            case_id=case_id,
            diagnosis=diagnosis,
            vision_findings=findings,
            reasoning_route=reasoning.route,
            traces=traces,
        )

    async def run_classification(self, case_id: str, vision_findings: Optional[str]) -> ClassificationRun:
        """
        Classify previously extracted findings and save the result as a note.
        An insufficient-data answer is a successful run carrying the sentinel.
        """
        stage = WorkflowStage.DIAGNOSIS
        self.repository.get_case(case_id)
        findings = (vision_findings or "").strip()
        if not findings:
            raise PreconditionFailed(
                "Classification requires vision findings from a diagnosis run.",
                stage=stage,
                missing=["vision_findings"],
            )

        traces: List[CapabilityTrace] = []
        try:
            raw = await self._call_capability(stage, self.classifier.name, traces, self.classifier.classify, findings)
            classification = self._require_text(raw, stage, self.classifier.name)
        except PipelineError as exc:
            self._mark_skipped(exc, traces, [self.classifier.name])
            raise

        note = self.add_note(case_id, classification, source_url=self.classifier.reference_url)
        insufficient = is_insufficient_data(classification)
        logger.info("Classification saved for case %s (insufficient_data=%s).", case_id, insufficient)
        return ClassificationRun(
            case_id=case_id,
            classification=classification,
            insufficient_data=insufficient,
            note=note,
            traces=traces,
        )

    async def run_treatment_flow(
        self,
        case_id: str,
        patient_context: str = "",
        low_resource_mode: Optional[bool] = None,
    ) -> AdviceRun:
        stage = WorkflowStage.TREATMENT
        case = self.repository.get_case(case_id)
        ensure_stage_ready(case, stage)
        request = AdviceRequest(
            kind=AdviceKind.TREATMENT,
            diagnosis=case.diagnosis or "",
            patient_context=patient_context or "",
            low_resource_mode=self._snapshot_low_resource(case, low_resource_mode),
        )
        return await self._run_advice(case_id, stage, request)

    async def run_implant_flow(self, case_id: str, low_resource_mode: Optional[bool] = None) -> AdviceRun:
        stage = WorkflowStage.IMPLANT
        case = self.repository.get_case(case_id)
        ensure_stage_ready(case, stage)
        request = AdviceRequest(
            kind=AdviceKind.IMPLANT,
            diagnosis=case.diagnosis or "",
            treatment_plan=case.treatment_plan,
            low_resource_mode=self._snapshot_low_resource(case, low_resource_mode),
        )
        return await self._run_advice(case_id, stage, request)

    async def run_outcome_pipeline(
        self,
        case_id: str,
        media: Sequence[MediaBlob],
        clinical_status: str = "",
    ) -> OutcomeRun:
        stage = WorkflowStage.OUTCOME
        self.repository.get_case(case_id)
        if not media:
            raise InsufficientMedia("Outcome pipeline requires at least one media item.", stage=stage)

        logger.info("Outcome pipeline started for case %s with %d media item(s).", case_id, len(media))
        traces: List[CapabilityTrace] = []
        planned = [self.vision.name, self.outcome_assessor.name]
        try:
            findings = await self._call_capability(stage, self.vision.name, traces, self.vision.extract, list(media))
            findings = self._require_text(findings, stage, self.vision.name)
            raw = await self._call_capability(
                stage,
                self.outcome_assessor.name,
                traces,
                self.outcome_assessor.assess,
                findings,
                clinical_status or "",
            )
            assessment = self._require_text(raw, stage, self.outcome_assessor.name)
        except PipelineError as exc:
            self._mark_skipped(exc, traces, planned)
            raise

        self.repository.update_case_fields(case_id, artifact_update(stage, assessment))
        logger.info("Outcome pipeline completed for case %s.", case_id)
        return OutcomeRun(
            case_id=case_id,
            outcome_notes=assessment,
            vision_findings=findings,
            traces=traces,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _run_advice(self, case_id: str, stage: WorkflowStage, request: AdviceRequest) -> AdviceRun:
        logger.info(
            "%s flow started for case %s (low_resource_mode=%s).",
            stage.value.capitalize(),
            case_id,
            request.low_resource_mode,
        )
        traces: List[CapabilityTrace] = []
        try:
            advice = await self._call_capability(stage, self.advisor.name, traces, self.advisor.advise, request)
            text = self._require_text(advice.text, stage, self.advisor.name)
        except PipelineError as exc:
            self._mark_skipped(exc, traces, [self.advisor.name])
            raise

        traces[-1].notes = f"sources={len(advice.sources)}; low_resource_mode={request.low_resource_mode}"
        self.repository.update_case_fields(case_id, artifact_update(stage, text))
        logger.info("%s flow completed for case %s.", stage.value.capitalize(), case_id)
        return AdviceRun(
            case_id=case_id,
            stage=stage,
            text=text,
            sources=advice.sources,
            low_resource_mode=request.low_resource_mode,
            traces=traces,
        )

    @staticmethod
    def _snapshot_low_resource(case: OrthoCase, requested: Optional[bool]) -> bool:
        # Fixed for the whole run; later toggles only affect later runs.
        if requested is None:
            return bool(case.low_resource_mode)
        return bool(requested)

    async def _call_capability(
        self,
        stage: WorkflowStage,
        capability: str,
        traces: List[CapabilityTrace],
        fn: Callable[..., Any],
        *args: Any,
    ) -> Any:
        started = utc_now()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args),
                timeout=self.capability_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error(
                "%s timed out after %.1fs during %s run.",
                capability,
                self.capability_timeout_seconds,
                stage.value,
            )
            traces.append(self._trace(capability, CapabilityRunStatus.FAILED, started, "timeout"))
            raise CapabilityTimeout(
                f"{capability} timed out after {self.capability_timeout_seconds:.1f}s.",
                capability=capability,
                stage=stage,
            ) from exc
        except asyncio.CancelledError:
            logger.info("%s call cancelled during %s run (client disconnect or shutdown).", capability, stage.value)
            raise
        except CapabilityError as exc:
            exc.stage = exc.stage or stage
            exc.capability = exc.capability or capability
            logger.warning("%s failed during %s run: %s", capability, stage.value, exc.message)
            traces.append(self._trace(capability, CapabilityRunStatus.FAILED, started, exc.kind))
            raise

        traces.append(self._trace(capability, CapabilityRunStatus.COMPLETED, started))
        return result

    @staticmethod
    def _require_text(text: Any, stage: WorkflowStage, capability: str) -> str:
        if not isinstance(text, str) or not text.strip():
            raise CapabilityBadResponse(
                f"{capability} produced no usable text.",
                capability=capability,
                stage=stage,
            )
        return text

    @staticmethod
    def _trace(
        capability: str,
        status: CapabilityRunStatus,
        started_at: Any,
        notes: Optional[str] = None,
    ) -> CapabilityTrace:
        return CapabilityTrace(
            capability=capability,
            status=status,
            started_at=started_at,
            completed_at=utc_now(),
            notes=notes,
        )

    def _mark_skipped(self, exc: PipelineError, traces: List[CapabilityTrace], planned: List[str]) -> None:
        attempted = {t.capability for t in traces}
        for name in planned:
            if name not in attempted:
                now = utc_now()
                traces.append(
                    CapabilityTrace(
                        capability=name,
                        status=CapabilityRunStatus.SKIPPED,
                        started_at=now,
                        completed_at=now,
                        notes="not run after earlier failure",
                    )
                )
        exc.traces = traces


def build_case_repository() -> CaseRepository:
    backend = env_str("ORTHOX_CASE_STORE_BACKEND", "sqlite").lower()
    if backend == "memory":
        return InMemoryCaseRepository()
    if backend == "sqlite":
        data_dir = Path(env_str("ORTHOX_LOCAL_DATA_DIR", "./local_data")).expanduser().resolve()
        db_path = env_str("ORTHOX_SQLITE_DB_PATH") or str(data_dir / "ortho_x.sqlite3")
        return SqliteCaseRepository(db_path=db_path)
    raise ValueError(
        f"Unsupported ORTHOX_CASE_STORE_BACKEND='{backend}'. Allowed values: sqlite, memory."
    )


def build_orchestrator(repository: Optional[CaseRepository] = None) -> WorkflowOrchestrator:
    """
    Wire the production adapters from environment configuration.
    """
    load_service_env()
    gateway = GeminiGateway()
    if not gateway.configured:
        logger.warning("GEMINI_API_KEY is not set; Gemini-backed capabilities will report unavailable.")
    return WorkflowOrchestrator(
        repository=repository or build_case_repository(),
        vision=GeminiVisionExtractor(gateway),
        reasoner=ClinicalReasoner(gateway),
        classifier=GeminiCompendiumClassifier(gateway),
        advisor=GeminiGroundedAdvisor(gateway),
        outcome_assessor=GeminiOutcomeAssessor(gateway),
    )
