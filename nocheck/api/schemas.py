"""
Request/response models of the HTTP surface.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List
from datetime import date, datetime

from ..core.drafts import ResponseDraft, SectionResultDraft, SubmissionDraft
from ..core.schema import PLAN_CANCELLED, PLAN_DONE, PLAN_IN_PROGRESS, PLAN_OVERDUE

__all__ = [
    "ResponseDraft", "SectionResultDraft", "SubmissionDraft",
    "HealthResponse", "EnqueueResponse", "PendingSubmissionResponse", "PendingListResponse",
    "SectionCompleteResponse", "DrainResponse", "SyncStatusResponse", "SweepResponse",
    "ActionPlanTransitionRequest", "ActionPlanResponse", "ActionPlanListResponse",
    "CrossValidationResponse", "CrossValidationListResponse",
]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    pending_count: int


class EnqueueResponse(BaseModel):
    local_id: str
    sync_status: str


class PendingSubmissionResponse(BaseModel):
    local_id: str
    template_id: int
    store_id: int
    user_id: str
    sync_status: str
    created_at: datetime
    sections_total: int = 0
    sections_done: int = 0
    error_message: Optional[str] = None


class PendingListResponse(BaseModel):
    items: List[PendingSubmissionResponse]


class SectionCompleteResponse(BaseModel):
    local_id: str
    section_id: int
    sync_status: str
    submission_complete: bool


class DrainResponse(BaseModel):
    committed: int
    failed: int
    skipped_reason: Optional[str] = None


class SyncStatusResponse(BaseModel):
    is_syncing: bool
    pending_count: int
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None


class SweepResponse(BaseModel):
    count: int


class ActionPlanTransitionRequest(BaseModel):
    status: str
    actor: Optional[str] = None

    @field_validator('status')
    @classmethod
    def status_must_be_valid(cls, v):
        valid_statuses = [PLAN_IN_PROGRESS, PLAN_DONE, PLAN_CANCELLED, PLAN_OVERDUE]
        if v not in valid_statuses:
            raise ValueError(f'status must be one of: {valid_statuses}')
        return v


class ActionPlanResponse(BaseModel):
    id: int
    submission_id: int
    field_id: int
    template_id: int
    store_id: int
    title: str
    severity: str
    status: str
    assigned_to: str
    deadline: date
    is_reincidencia: bool
    reincidencia_count: int
    parent_action_plan_id: Optional[int] = None
    non_conformity_value: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class ActionPlanListResponse(BaseModel):
    items: List[ActionPlanResponse]


class CrossValidationResponse(BaseModel):
    id: int
    store_id: int
    document_number: str
    status: str
    estoquista_submission_id: Optional[int] = None
    aprendiz_submission_id: Optional[int] = None
    estoquista_value: Optional[float] = None
    aprendiz_value: Optional[float] = None
    difference: Optional[float] = None
    validated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    linked_pair_id: Optional[int] = None
    match_reason: Optional[str] = None
    is_primary: bool


class CrossValidationListResponse(BaseModel):
    items: List[CrossValidationResponse]
