"""
OrthoX Workflow Service - FastAPI Application

Endpoints:
  GET   /health
  GET   /cases                      POST  /cases
  GET   /cases/{case_id}            PATCH /cases/{case_id}
  GET   /cases/{case_id}/workflow
  POST  /cases/{case_id}/notes      POST  /cases/{case_id}/media
  POST  /cases/{case_id}/diagnosis
  POST  /cases/{case_id}/classification
  POST  /cases/{case_id}/treatment
  POST  /cases/{case_id}/implant
  POST  /cases/{case_id}/outcome
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from env_loader import env_flag, env_int, load_service_env
from errors import (
    CapabilityBadResponse,
    CapabilityTimeout,
    CapabilityUnavailable,
    InsufficientMedia,
    PipelineError,
    PreconditionFailed,
)
from models import (
    AddMediaRequest,
    AddNoteRequest,
    AdviceRunResponse,
    CaseListResponse,
    CaseResponse,
    ClassificationRequest,
    ClassificationRunResponse,
    CreateCaseRequest,
    DiagnosisRunResponse,
    HealthResponse,
    ImplantRequest,
    MediaBlob,
    MediaResponse,
    NoteResponse,
    OutcomeRunResponse,
    TreatmentRequest,
    UpdateCaseRequest,
    WorkflowResponse,
)
from orchestrator import WorkflowOrchestrator, build_orchestrator

load_service_env()
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVICE_NAME = "orthox-workflow-service"
SUPPORTED_MEDIA_PREFIXES = ("image/", "video/")
EXTERNAL_VIDEO_MIME_TYPE = "video/mp4"

# Most specific classes first.
_PIPELINE_STATUS = (
    (InsufficientMedia, 422),
    (PreconditionFailed, 409),
    (CapabilityUnavailable, 503),
    (CapabilityBadResponse, 502),
    (CapabilityTimeout, 504),
)


def _debug_error_enabled() -> bool:
    return env_flag("ORTHOX_EXPOSE_ERRORS", True)


def _error_detail(prefix: str, exc: Exception) -> str:
    if not _debug_error_enabled():
        return prefix
    detail = str(exc).strip() or exc.__class__.__name__
    # Keep payload concise for UI.
    if len(detail) > 500:
        detail = detail[:500] + "..."
    return f"{prefix} {detail}"


def _max_media_bytes() -> int:
    return max(1, env_int("ORTHOX_MAX_MEDIA_BYTES", 25 * 1024 * 1024))


def _pipeline_http_error(exc: PipelineError) -> HTTPException:
    status_code = 500
    for error_cls, mapped in _PIPELINE_STATUS:
        if isinstance(exc, error_cls):
            status_code = mapped
            break
    detail = exc.to_detail()
    detail.setdefault("capability", None)
    return HTTPException(status_code=status_code, detail=detail)


def _is_supported_media_upload(content_type: str) -> bool:
    mime = (content_type or "").lower().strip()
    return mime.startswith(SUPPORTED_MEDIA_PREFIXES)


async def _read_media(files: List[UploadFile], video_urls: List[str]) -> List[MediaBlob]:
    """
    Vision input order: uploaded files in form order, then video URLs in form order.
    Multipart keeps order only within one field, so the two are never interleaved.
    """
    blobs: List[MediaBlob] = []
    limit = _max_media_bytes()
    for upload in files:
        filename = upload.filename or "upload"
        payload = await upload.read()
        if not payload:
            raise HTTPException(status_code=400, detail=f"Uploaded file '{filename}' is empty.")
        if len(payload) > limit:
            raise HTTPException(
                status_code=413,
                detail=f"Uploaded file '{filename}' exceeds the {limit}-byte upload limit.",
            )
        content_type = upload.content_type or "application/octet-stream"
        if not _is_supported_media_upload(content_type):
            raise HTTPException(
                status_code=400,
                detail=f"Unsupported media type '{content_type}'. Upload images or videos.",
            )
        blobs.append(MediaBlob(mime_type=content_type, data=payload, filename=filename))

    for raw_url in video_urls:
        url = (raw_url or "").strip()
        if not url:
            continue
        if not url.lower().startswith(("http://", "https://")):
            raise HTTPException(status_code=400, detail=f"Invalid video URL: {url}")
        blobs.append(MediaBlob(mime_type=EXTERNAL_VIDEO_MIME_TYPE, uri=url))
    return blobs


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    return request.app.state.orchestrator


def create_app(orchestrator: Optional[WorkflowOrchestrator] = None) -> FastAPI:
    app = FastAPI(
        title="OrthoX Workflow Service",
        description="Orthopedic case workflow with staged AI pipelines and clinician-triggered runs",
        version="0.1.0",
    )
    app.state.orchestrator = orchestrator or build_orchestrator()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        orch = get_orchestrator(request)
        gateway = getattr(orch.vision, "gateway", None)
        return HealthResponse(
            status="healthy",
            service=SERVICE_NAME,
            case_store_backend=orch.case_store_backend,
            reasoning_route=orch.reasoning_route,
            gemini_configured=bool(getattr(gateway, "configured", False)),
            timestamp=datetime.now(timezone.utc),
        )

    # -------------------------------------------------------------------------
    # Cases
    # -------------------------------------------------------------------------

    @app.get("/cases", response_model=CaseListResponse)
    async def list_cases(request: Request) -> CaseListResponse:
        try:
            cases = get_orchestrator(request).list_cases()
            return CaseListResponse(success=True, count=len(cases), cases=cases)
        except Exception as exc:
            logger.exception("Failed to list cases: %s", exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to list cases.", exc),
            ) from exc

    @app.post("/cases", response_model=CaseResponse)
    async def create_case(body: CreateCaseRequest, request: Request) -> CaseResponse:
        try:
            case = get_orchestrator(request).create_case(
                patient_reference_id=body.patient_reference_id,
                low_resource_mode=body.low_resource_mode,
            )
            return CaseResponse(success=True, case=case)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to create case: %s", exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to create case.", exc),
            ) from exc

    @app.get("/cases/{case_id}", response_model=CaseResponse)
    async def get_case(case_id: str, request: Request) -> CaseResponse:
        try:
            return CaseResponse(success=True, case=get_orchestrator(request).get_case(case_id))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.patch("/cases/{case_id}", response_model=CaseResponse)
    async def update_case(case_id: str, body: UpdateCaseRequest, request: Request) -> CaseResponse:
        try:
            case = get_orchestrator(request).update_case(
                case_id,
                low_resource_mode=body.low_resource_mode,
                phi_confirmed=body.phi_confirmed,
            )
            return CaseResponse(success=True, case=case)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to update case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to update case.", exc),
            ) from exc

    @app.get("/cases/{case_id}/workflow", response_model=WorkflowResponse)
    async def get_workflow(case_id: str, request: Request) -> WorkflowResponse:
        try:
            return WorkflowResponse(
                success=True,
                workflow=get_orchestrator(request).get_workflow(case_id),
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/cases/{case_id}/notes", response_model=NoteResponse)
    async def add_note(case_id: str, body: AddNoteRequest, request: Request) -> NoteResponse:
        try:
            note = get_orchestrator(request).add_note(case_id, body.content, source_url=body.source_url)
            return NoteResponse(success=True, note=note)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to add note to case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to add note.", exc),
            ) from exc

    @app.post("/cases/{case_id}/media", response_model=MediaResponse)
    async def add_media(case_id: str, body: AddMediaRequest, request: Request) -> MediaResponse:
        try:
            media = get_orchestrator(request).add_media(case_id, body.type, body.url)
            return MediaResponse(success=True, media=media)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to add media to case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to add media.", exc),
            ) from exc

    # -------------------------------------------------------------------------
    # Pipelines
    # -------------------------------------------------------------------------

    @app.post("/cases/{case_id}/diagnosis", response_model=DiagnosisRunResponse)
    async def run_diagnosis(
        case_id: str,
        request: Request,
        files: List[UploadFile] = File(default=[]),
        video_urls: List[str] = Form(default=[]),
    ) -> DiagnosisRunResponse:
        try:
            media = await _read_media(files, video_urls)
            run = await get_orchestrator(request).run_diagnosis_pipeline(case_id, media)
            return DiagnosisRunResponse(
                success=True,
                message=f"Diagnosis saved (reasoning route: {run.reasoning_route}).",
                run=run,
            )
        except HTTPException:
            raise
        except asyncio.CancelledError:
            logger.info("Diagnosis request cancelled for case %s (shutdown or client disconnect).", case_id)
            raise HTTPException(status_code=499, detail="Diagnosis request cancelled.")
        except PipelineError as exc:
            raise _pipeline_http_error(exc) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to run diagnosis for case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to run diagnosis pipeline.", exc),
            ) from exc

    @app.post("/cases/{case_id}/classification", response_model=ClassificationRunResponse)
    async def run_classification(
        case_id: str,
        body: ClassificationRequest,
        request: Request,
    ) -> ClassificationRunResponse:
        try:
            run = await get_orchestrator(request).run_classification(case_id, body.vision_findings)
            message = "AO/OTA classification saved to case notes."
            if run.insufficient_data:
                message = "Classification inconclusive; insufficient-data statement saved to case notes."
            return ClassificationRunResponse(success=True, message=message, run=run)
        except asyncio.CancelledError:
            logger.info("Classification request cancelled for case %s (shutdown or client disconnect).", case_id)
            raise HTTPException(status_code=499, detail="Classification request cancelled.")
        except PipelineError as exc:
            raise _pipeline_http_error(exc) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to classify case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to run classification.", exc),
            ) from exc

    @app.post("/cases/{case_id}/treatment", response_model=AdviceRunResponse)
    async def run_treatment(case_id: str, body: TreatmentRequest, request: Request) -> AdviceRunResponse:
        try:
            run = await get_orchestrator(request).run_treatment_flow(
                case_id,
                patient_context=body.patient_context,
                low_resource_mode=body.low_resource_mode,
            )
            return AdviceRunResponse(
                success=True,
                message=f"Treatment plan saved with {len(run.sources)} source(s).",
                run=run,
            )
        except asyncio.CancelledError:
            logger.info("Treatment request cancelled for case %s (shutdown or client disconnect).", case_id)
            raise HTTPException(status_code=499, detail="Treatment request cancelled.")
        except PipelineError as exc:
            raise _pipeline_http_error(exc) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to run treatment flow for case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to run treatment flow.", exc),
            ) from exc

    @app.post("/cases/{case_id}/implant", response_model=AdviceRunResponse)
    async def run_implant(case_id: str, body: ImplantRequest, request: Request) -> AdviceRunResponse:
        try:
            run = await get_orchestrator(request).run_implant_flow(
                case_id,
                low_resource_mode=body.low_resource_mode,
            )
            return AdviceRunResponse(
                success=True,
                message=f"Implant choice saved with {len(run.sources)} source(s).",
                run=run,
            )
        except asyncio.CancelledError:
            logger.info("Implant request cancelled for case %s (shutdown or client disconnect).", case_id)
            raise HTTPException(status_code=499, detail="Implant request cancelled.")
        except PipelineError as exc:
            raise _pipeline_http_error(exc) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to run implant flow for case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to run implant flow.", exc),
            ) from exc

    @app.post("/cases/{case_id}/outcome", response_model=OutcomeRunResponse)
    async def run_outcome(
        case_id: str,
        request: Request,
        files: List[UploadFile] = File(default=[]),
        video_urls: List[str] = Form(default=[]),
        clinical_status: str = Form(default=""),
    ) -> OutcomeRunResponse:
        try:
            media = await _read_media(files, video_urls)
            run = await get_orchestrator(request).run_outcome_pipeline(case_id, media, clinical_status)
            return OutcomeRunResponse(success=True, message="Outcome assessment saved.", run=run)
        except HTTPException:
            raise
        except asyncio.CancelledError:
            logger.info("Outcome request cancelled for case %s (shutdown or client disconnect).", case_id)
            raise HTTPException(status_code=499, detail="Outcome request cancelled.")
        except PipelineError as exc:
            raise _pipeline_http_error(exc) from exc
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Failed to run outcome pipeline for case %s: %s", case_id, exc)
            raise HTTPException(
                status_code=500,
                detail=_error_detail("Failed to run outcome pipeline.", exc),
            ) from exc

    return app


app = create_app()
