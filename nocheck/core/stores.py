"""
Repository interfaces consumed by the drainer and the engines.

Each component receives the stores it needs through its constructor. SQLite
implementations live in dao.py; the in-memory submission store below backs
tests and single-process tooling.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from .schema import (
    ActionPlan,
    CrossValidationPair,
    FieldCondition,
    FieldResponse,
    Notification,
    PendingSection,
    Store,
    Submission,
    Template,
    TemplateField,
    UserProfile,
)


class DuplicateSubmissionError(Exception):
    """A submission with the same local_id is already committed."""

    def __init__(self, local_id: str, existing_id: int):
        super().__init__(f"Submission with local_id {local_id} already committed as #{existing_id}")
        self.local_id = local_id
        self.existing_id = existing_id


@dataclass
class CommitResult:
    submission: Submission
    duplicate: bool = False


class SubmissionStore(ABC):
    """Authoritative store of committed submissions, idempotent per local_id."""

    @abstractmethod
    def insert_submission(self, submission: Submission) -> int:
        """Insert a submission and return its id. Raises DuplicateSubmissionError."""
        pass

    @abstractmethod
    def insert_responses(self, submission_id: int, responses: List[FieldResponse]) -> None:
        pass

    @abstractmethod
    def commit(self, submission: Submission, responses: List[FieldResponse],
               sections: Optional[List[PendingSection]] = None) -> CommitResult:
        """Insert the submission and its responses as one unit.

        A duplicate local_id is not an error here: the existing submission is
        returned with duplicate=True and nothing is written.
        """
        pass

    @abstractmethod
    def find_by_local_id(self, local_id: str) -> Optional[Submission]:
        pass

    @abstractmethod
    def list_responses(self, submission_id: int) -> List[FieldResponse]:
        pass

    @abstractmethod
    def mark_processed(self, submission_id: int, processed_at: datetime) -> None:
        """Record that the engines have run for this submission."""
        pass


class ConfigStore(ABC):
    """Templates, fields and non-conformity conditions (edited elsewhere)."""

    @abstractmethod
    def get_template(self, template_id: int) -> Optional[Template]:
        pass

    @abstractmethod
    def list_template_fields(self, template_id: int) -> List[TemplateField]:
        pass

    @abstractmethod
    def list_field_conditions(self, field_ids: Iterable[int]) -> List[FieldCondition]:
        """Active conditions attached to any of the given fields."""
        pass


class DirectoryStore(ABC):
    """Users and stores (edited elsewhere)."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserProfile]:
        pass

    @abstractmethod
    def get_store(self, store_id: int) -> Optional[Store]:
        pass

    @abstractmethod
    def list_active_admins(self) -> List[UserProfile]:
        pass


class CrossValidationStore(ABC):

    @abstractmethod
    def get(self, pair_id: int) -> Optional[CrossValidationPair]:
        pass

    @abstractmethod
    def get_by_document(self, store_id: int, document_number: str) -> Optional[CrossValidationPair]:
        """Exact-key lookup, preferring the primary pair."""
        pass

    @abstractmethod
    def list_sibling_candidates(self, store_id: int, missing_role: str, since: datetime) -> List[CrossValidationPair]:
        """Pending pairs of a store created at/after `since` whose `missing_role` leg is empty, oldest first."""
        pass

    @abstractmethod
    def list_stale_pending(self, before: datetime) -> List[CrossValidationPair]:
        """Primary pending pairs created before `before`."""
        pass

    @abstractmethod
    def insert(self, pair: CrossValidationPair) -> int:
        """Insert a pair. Raises DuplicatePrimaryError when a primary already exists."""
        pass

    @abstractmethod
    def update(self, pair: CrossValidationPair) -> None:
        pass

    @abstractmethod
    def list(self, store_id: int = None, status: str = None, limit: int = 100) -> List[CrossValidationPair]:
        pass


class ActionPlanStore(ABC):

    @abstractmethod
    def get(self, plan_id: int) -> Optional[ActionPlan]:
        pass

    @abstractmethod
    def list_prior(self, field_id: int, store_id: int, template_id: int, since: datetime) -> List[ActionPlan]:
        """Plans for the same (field, store, template) created at/after `since`, newest first."""
        pass

    @abstractmethod
    def list_for_submission(self, submission_id: int) -> List[ActionPlan]:
        pass

    @abstractmethod
    def insert(self, plan: ActionPlan) -> int:
        """Insert a plan. (submission_id, field_condition_id) is unique."""
        pass

    @abstractmethod
    def update_status(self, plan_id: int, status: str, updated_at: datetime,
                      resolved_at: Optional[datetime] = None) -> None:
        pass

    @abstractmethod
    def list_overdue(self, today: date, statuses: Iterable[str]) -> List[ActionPlan]:
        pass

    @abstractmethod
    def list(self, store_id: int = None, status: str = None, limit: int = 100) -> List[ActionPlan]:
        pass


class NotificationStore(ABC):

    @abstractmethod
    def insert(self, notification: Notification) -> int:
        pass

    @abstractmethod
    def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        pass


class InMemorySubmissionStore(SubmissionStore):
    """Process-local submission store; enforces local_id uniqueness like the SQLite one."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.submissions: Dict[int, Submission] = {}
        self.responses: Dict[int, List[FieldResponse]] = {}
        self.sections: Dict[int, List[PendingSection]] = {}

    def insert_submission(self, submission: Submission) -> int:
        with self._lock:
            return self._insert_locked(submission)

    def _insert_locked(self, submission: Submission) -> int:
        existing = self._find_locked(submission.local_id)
        if existing:
            raise DuplicateSubmissionError(submission.local_id, existing.id)
        submission_id = next(self._ids)
        self.submissions[submission_id] = replace(submission, id=submission_id)
        self.responses[submission_id] = []
        return submission_id

    def insert_responses(self, submission_id: int, responses: List[FieldResponse]) -> None:
        with self._lock:
            self.responses.setdefault(submission_id, []).extend(responses)

    def commit(self, submission, responses, sections=None) -> CommitResult:
        with self._lock:
            existing = self._find_locked(submission.local_id)
            if existing:
                return CommitResult(existing, duplicate=True)
            submission_id = self._insert_locked(submission)
            self.responses[submission_id] = list(responses)
            if sections:
                self.sections[submission_id] = list(sections)
            return CommitResult(self.submissions[submission_id])

    def _find_locked(self, local_id: Optional[str]) -> Optional[Submission]:
        if local_id is None:
            return None
        for submission in self.submissions.values():
            if submission.local_id == local_id:
                return submission
        return None

    def find_by_local_id(self, local_id: str) -> Optional[Submission]:
        with self._lock:
            return self._find_locked(local_id)

    def list_responses(self, submission_id: int) -> List[FieldResponse]:
        return list(self.responses.get(submission_id, []))

    def mark_processed(self, submission_id: int, processed_at: datetime) -> None:
        with self._lock:
            submission = self.submissions.get(submission_id)
            if submission is not None:
                self.submissions[submission_id] = replace(submission, processed_at=processed_at)

