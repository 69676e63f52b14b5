"""
HTTP surface of the NoCheck reconciliation core.

Usage:
    uvicorn nocheck.api.main:app --port 8000
"""

from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from .schemas import (
    ActionPlanListResponse,
    ActionPlanResponse,
    ActionPlanTransitionRequest,
    CrossValidationListResponse,
    CrossValidationResponse,
    DrainResponse,
    EnqueueResponse,
    HealthResponse,
    PendingListResponse,
    PendingSubmissionResponse,
    SectionCompleteResponse,
    SectionResultDraft,
    SubmissionDraft,
    SweepResponse,
    SyncStatusResponse,
)
from ..core.action_plans import ActionPlanNotFound
from ..core.config import APP_URL, VERSION, debug_enabled
from ..core.db import health_check
from ..core.schema import (
    SECTION_DONE,
    InvalidTransitionError,
    PendingSubmission,
    QueueEntryNotFound,
    SectionNotFound,
    SubmissionValidationError,
)
from ..core.service import ChecklistCore
from ..util.logging import logger

app = FastAPI(
    title="NoCheck Reconciliation API",
    version=VERSION,
    description="Offline checklist sync, cross validation and action plan escalation",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[APP_URL, "http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_core: Optional[ChecklistCore] = None


def get_core() -> ChecklistCore:
    """Process-wide core built from environment configuration."""
    global _core
    if _core is None:
        _core = ChecklistCore.from_config()
    return _core


def _pending_response(entry: PendingSubmission) -> PendingSubmissionResponse:
    sections = entry.sections or []
    return PendingSubmissionResponse(
        local_id=entry.local_id,
        template_id=entry.template_id,
        store_id=entry.store_id,
        user_id=entry.user_id,
        sync_status=entry.sync_status,
        created_at=entry.created_at,
        sections_total=len(sections),
        sections_done=sum(1 for s in sections if s.status == SECTION_DONE),
        error_message=entry.error_message,
    )


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(core: ChecklistCore = Depends(get_core)):
    """Check system health."""
    db_health = health_check(core.submission_store.db_path) if hasattr(core.submission_store, "db_path") else True
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        pending_count=core.queue.count_pending(),
    )


@app.post("/offline/submissions", response_model=EnqueueResponse, status_code=201)
def enqueue_submission(draft: SubmissionDraft, core: ChecklistCore = Depends(get_core)):
    """Queue a checklist filled on the device."""
    try:
        local_id = core.enqueue_offline(draft)
    except SubmissionValidationError as e:
        raise HTTPException(status_code=422, detail={"message": str(e), "errors": e.errors})

    entry = core.queue.get(local_id)
    return EnqueueResponse(local_id=local_id, sync_status=entry.sync_status)


@app.get("/offline/submissions", response_model=PendingListResponse)
def list_pending_submissions(core: ChecklistCore = Depends(get_core)):
    return PendingListResponse(items=[_pending_response(e) for e in core.list_pending()])


@app.post("/offline/submissions/{local_id}/sections/{section_id}", response_model=SectionCompleteResponse)
def complete_section(local_id: str, section_id: int, body: SectionResultDraft,
                     core: ChecklistCore = Depends(get_core)):
    try:
        entry = core.complete_section(local_id, section_id, [r.to_response() for r in body.responses])
    except (QueueEntryNotFound, SectionNotFound) as e:
        raise HTTPException(status_code=404, detail=str(e))

    return SectionCompleteResponse(
        local_id=local_id,
        section_id=section_id,
        sync_status=entry.sync_status,
        submission_complete=all(s.status == SECTION_DONE for s in entry.sections or []),
    )


@app.post("/sync/drain", response_model=DrainResponse)
def drain_queue(core: ChecklistCore = Depends(get_core)):
    result = core.drain_queue()
    return DrainResponse(**asdict(result))


@app.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(core: ChecklistCore = Depends(get_core)):
    return SyncStatusResponse(**asdict(core.sync_status()))


@app.post("/action-plans/sweep-overdue", response_model=SweepResponse)
def sweep_overdue(core: ChecklistCore = Depends(get_core)):
    return SweepResponse(count=core.sweep_overdue_action_plans())


@app.patch("/action-plans/{plan_id}", response_model=ActionPlanResponse)
def transition_action_plan(plan_id: int, body: ActionPlanTransitionRequest,
                           core: ChecklistCore = Depends(get_core)):
    try:
        plan = core.transition_action_plan(plan_id, body.status, body.actor)
    except ActionPlanNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        logger.warning(f"Rejected action plan transition: {e}")
        raise HTTPException(status_code=409, detail=str(e))

    return ActionPlanResponse(**asdict(plan))


@app.get("/action-plans", response_model=ActionPlanListResponse)
def list_action_plans(store_id: Optional[int] = None, status: Optional[str] = None,
                      limit: int = Query(100, ge=1, le=500), core: ChecklistCore = Depends(get_core)):
    plans = core.list_action_plans(store_id=store_id, status=status, limit=limit)
    return ActionPlanListResponse(items=[ActionPlanResponse(**asdict(p)) for p in plans])


@app.get("/cross-validations", response_model=CrossValidationListResponse)
def list_cross_validations(store_id: Optional[int] = None, status: Optional[str] = None,
                           limit: int = Query(100, ge=1, le=500), core: ChecklistCore = Depends(get_core)):
    pairs = core.list_cross_validations(store_id=store_id, status=status, limit=limit)
    return CrossValidationListResponse(items=[CrossValidationResponse(**asdict(p)) for p in pairs])


@app.post("/cross-validations/expire", response_model=SweepResponse)
def expire_cross_validations(core: ChecklistCore = Depends(get_core)):
    return SweepResponse(count=core.expire_stale_cross_validations())


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
