"""
Record types shared by the queue, the drainer and both reconciliation engines.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional


# Queue statuses
SYNC_PENDING = "pending"
SYNC_SYNCING = "syncing"
SYNC_FAILED = "failed"
SYNC_STATUSES = (SYNC_PENDING, SYNC_SYNCING, SYNC_FAILED)
DRAINABLE_STATUSES = (SYNC_PENDING, SYNC_FAILED)

SECTION_PENDING = "pending"
SECTION_DONE = "done"

# Cross validation statuses
CV_PENDING = "pendente"
CV_SUCCESS = "sucesso"
CV_FAILED = "falhou"
CV_LINKED = "notas_diferentes"
CV_EXPIRED = "expirado"

ROLE_ESTOQUISTA = "estoquista"
ROLE_APRENDIZ = "aprendiz"

# Action plan statuses
PLAN_OPEN = "aberto"
PLAN_IN_PROGRESS = "em_andamento"
PLAN_DONE = "concluido"
PLAN_CANCELLED = "cancelado"
PLAN_OVERDUE = "vencido"

PLAN_TRANSITIONS = {
    PLAN_OPEN: {PLAN_IN_PROGRESS, PLAN_DONE, PLAN_CANCELLED, PLAN_OVERDUE},
    PLAN_IN_PROGRESS: {PLAN_DONE, PLAN_CANCELLED, PLAN_OVERDUE},
}

SEVERITY_LADDER = ["baixa", "media", "alta", "critica"]

CONDITION_TYPES = (
    "equals", "not_equals", "less_than", "greater_than",
    "between", "in_list", "not_in_list", "empty",
)

# Notification types
NOTIFY_PLAN_ASSIGNED = "action_plan_assigned"
NOTIFY_REINCIDENCIA = "reincidencia_detected"
NOTIFY_PLAN_OVERDUE = "action_plan_overdue"
NOTIFY_CV_DIVERGENCE = "cross_validation_divergence"


class NoCheckError(Exception):
    """Base class for all core errors."""
    pass


class SubmissionValidationError(NoCheckError):
    """A draft was malformed and was never queued."""

    def __init__(self, message: str, errors: List[Any] = None):
        super().__init__(message)
        self.errors = errors or []


class QueueEntryNotFound(NoCheckError):
    pass


class SectionNotFound(NoCheckError):
    pass


class InvalidTransitionError(NoCheckError):
    pass


class DuplicatePrimaryError(NoCheckError):
    """Another primary pair already exists for (store_id, document_number)."""
    pass


@dataclass
class FieldResponse:
    field_id: int
    value_text: Optional[str] = None
    value_number: Optional[float] = None
    value_json: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FieldResponse':
        # Accept both the wire casing and the stored casing
        return cls(
            field_id=int(data.get("field_id", data.get("fieldId"))),
            value_text=data.get("value_text", data.get("valueText")),
            value_number=data.get("value_number", data.get("valueNumber")),
            value_json=data.get("value_json", data.get("valueJson")),
        )


@dataclass
class PendingSection:
    section_id: int
    status: str = SECTION_PENDING  # pending, done
    completed_at: Optional[datetime] = None
    responses: List[FieldResponse] = field(default_factory=list)


@dataclass
class PendingSubmission:
    local_id: str
    template_id: int
    store_id: int
    user_id: str
    created_at: datetime
    sync_status: str  # pending, syncing, failed
    responses: List[FieldResponse] = field(default_factory=list)
    sector_id: Optional[int] = None
    sections: Optional[List[PendingSection]] = None
    error_message: Optional[str] = None

    @property
    def is_drainable(self) -> bool:
        if self.sync_status not in DRAINABLE_STATUSES:
            return False
        return all(s.status == SECTION_DONE for s in self.sections or [])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        data = asdict(self)
        data['created_at'] = self.created_at.isoformat()
        if self.sections is not None:
            for section in data['sections']:
                if section['completed_at'] is not None:
                    section['completed_at'] = section['completed_at'].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingSubmission':
        """Create from dictionary (for loading from storage)."""
        sections = None
        if data.get('sections') is not None:
            sections = [
                PendingSection(
                    section_id=s['section_id'],
                    status=s['status'],
                    completed_at=datetime.fromisoformat(s['completed_at']) if s.get('completed_at') else None,
                    responses=[FieldResponse.from_dict(r) for r in s.get('responses', [])],
                )
                for s in data['sections']
            ]
        return cls(
            local_id=data['local_id'],
            template_id=data['template_id'],
            store_id=data['store_id'],
            user_id=data['user_id'],
            created_at=datetime.fromisoformat(data['created_at']),
            sync_status=data['sync_status'],
            responses=[FieldResponse.from_dict(r) for r in data.get('responses', [])],
            sector_id=data.get('sector_id'),
            sections=sections,
            error_message=data.get('error_message'),
        )


@dataclass
class Submission:
    id: int
    local_id: Optional[str]
    template_id: int
    store_id: int
    user_id: str
    created_at: datetime
    sector_id: Optional[int] = None
    completed_at: Optional[datetime] = None
    media_complete: bool = True
    processed_at: Optional[datetime] = None  # set once the engines have run


@dataclass
class Template:
    id: int
    name: str
    category: Optional[str] = None


@dataclass
class TemplateField:
    id: int
    template_id: int
    name: str
    field_type: str
    options: Any = None


@dataclass
class UserProfile:
    id: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    function_name: Optional[str] = None
    is_admin: bool = False
    is_active: bool = True


@dataclass
class Store:
    id: int
    name: str


@dataclass
class CrossValidationPair:
    id: Optional[int]
    store_id: int
    document_number: str
    status: str = CV_PENDING  # pendente, sucesso, falhou, notas_diferentes, expirado
    estoquista_submission_id: Optional[int] = None
    aprendiz_submission_id: Optional[int] = None
    estoquista_value: Optional[float] = None
    aprendiz_value: Optional[float] = None
    difference: Optional[float] = None
    validated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    linked_pair_id: Optional[int] = None
    match_reason: Optional[str] = None
    is_primary: bool = True

    def leg_submission(self, role: str) -> Optional[int]:
        if role == ROLE_ESTOQUISTA:
            return self.estoquista_submission_id
        return self.aprendiz_submission_id

    def set_leg(self, role: str, submission_id: int, value: Optional[float]):
        if role == ROLE_ESTOQUISTA:
            self.estoquista_submission_id = submission_id
            self.estoquista_value = value
        else:
            self.aprendiz_submission_id = submission_id
            self.aprendiz_value = value

    @property
    def has_both_values(self) -> bool:
        return self.estoquista_value is not None and self.aprendiz_value is not None


@dataclass
class FieldCondition:
    id: int
    field_id: int
    condition_type: str
    condition_value: Dict[str, Any]
    severity: str  # baixa, media, alta, critica
    deadline_days: int
    default_assignee_id: Optional[str] = None
    description_template: Optional[str] = None
    is_active: bool = True


@dataclass
class ActionPlan:
    id: Optional[int]
    submission_id: int
    field_id: int
    field_condition_id: int
    template_id: int
    store_id: int
    title: str
    severity: str
    status: str
    assigned_to: str
    assigned_by: str
    deadline: date
    sector_id: Optional[int] = None
    description: Optional[str] = None
    is_reincidencia: bool = False
    reincidencia_count: int = 0
    parent_action_plan_id: Optional[int] = None
    non_conformity_value: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


@dataclass
class Notification:
    user_id: str
    type: str
    title: str
    message: Optional[str] = None
    link: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    read: bool = False
