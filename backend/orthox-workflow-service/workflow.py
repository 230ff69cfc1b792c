"""
OrthoX Workflow Service - Workflow Stage Gating

Each case carries one artifact field per stage. A stage is `populated` once
its field holds text; there is no way back to `empty`. Pipelines may only run
when every prerequisite stage is populated:

  diagnosis  -> (none)
  treatment  -> diagnosis
  implant    -> diagnosis, treatment
  outcome    -> (none)
"""

from __future__ import annotations

from typing import Dict, List, Tuple

from errors import PreconditionFailed
from models import (
    CaseFieldUpdate,
    OrthoCase,
    StageState,
    StageStatus,
    WorkflowStage,
    WorkflowStatus,
)

STAGE_ORDER: Tuple[WorkflowStage, ...] = (
    WorkflowStage.DIAGNOSIS,
    WorkflowStage.TREATMENT,
    WorkflowStage.IMPLANT,
    WorkflowStage.OUTCOME,
)

STAGE_FIELDS: Dict[WorkflowStage, str] = {
    WorkflowStage.DIAGNOSIS: "diagnosis",
    WorkflowStage.TREATMENT: "treatment_plan",
    WorkflowStage.IMPLANT: "implant_choice",
    WorkflowStage.OUTCOME: "outcome_notes",
}

STAGE_PREREQUISITES: Dict[WorkflowStage, Tuple[WorkflowStage, ...]] = {
    WorkflowStage.DIAGNOSIS: (),
    WorkflowStage.TREATMENT: (WorkflowStage.DIAGNOSIS,),
    WorkflowStage.IMPLANT: (WorkflowStage.DIAGNOSIS, WorkflowStage.TREATMENT),
    WorkflowStage.OUTCOME: (),
}


def stage_artifact(case: OrthoCase, stage: WorkflowStage) -> str:
    return (getattr(case, STAGE_FIELDS[stage]) or "").strip()


def stage_state(case: OrthoCase, stage: WorkflowStage) -> StageState:
    return StageState.POPULATED if stage_artifact(case, stage) else StageState.EMPTY


def missing_prerequisites(case: OrthoCase, stage: WorkflowStage) -> List[WorkflowStage]:
    return [
        prereq
        for prereq in STAGE_PREREQUISITES[stage]
        if stage_state(case, prereq) != StageState.POPULATED
    ]


def ensure_stage_ready(case: OrthoCase, stage: WorkflowStage) -> None:
    """
    Raise PreconditionFailed when `stage` may not run yet for `case`.
    """
    missing = missing_prerequisites(case, stage)
    if missing:
        names = ", ".join(m.value for m in missing)
        raise PreconditionFailed(
            f"Cannot run {stage.value} for case {case.id}: missing {names}.",
            stage=stage,
            missing=[m.value for m in missing],
        )


def workflow_status(case: OrthoCase) -> WorkflowStatus:
    stages: List[StageStatus] = []
    for stage in STAGE_ORDER:
        missing = missing_prerequisites(case, stage)
        stages.append(
            StageStatus(
                stage=stage,
                state=stage_state(case, stage),
                runnable=not missing,
                missing_prerequisites=missing,
            )
        )
    return WorkflowStatus(case_id=case.id, stages=stages)


def artifact_update(stage: WorkflowStage, text: str) -> CaseFieldUpdate:
    """
    Build the single-field update a successful `stage` run writes.
    """
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValueError(f"Refusing to persist an empty {stage.value} artifact.")
    return CaseFieldUpdate(**{STAGE_FIELDS[stage]: cleaned})
