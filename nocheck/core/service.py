"""
ChecklistCore wires the queue, the drainer and both engines together and exposes
the operations used by the API, the heartbeat and the CLI scripts.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .action_plans import ActionPlanEngine, ProcessResult
from .config import DB_PATH, OFFLINE_DB_PATH, validate_engine_config
from .dao import (
    SqliteActionPlanStore,
    SqliteConfigStore,
    SqliteCrossValidationStore,
    SqliteDirectoryStore,
    SqliteNotificationStore,
    SqliteSubmissionStore,
)
from .db import init_db
from .drafts import SectionResultDraft, SubmissionDraft
from .media import HttpMediaStore, MediaMaterializer, MediaStore
from .notifications import HttpNotificationGateway, NotificationGateway
from .offline_queue import OfflineQueue
from .reconcile import CrossValidationEngine, ReconciliationResult
from .schema import (
    ActionPlan,
    CrossValidationPair,
    FieldResponse,
    PendingSubmission,
    Submission,
    SubmissionValidationError,
)
from .stores import ConfigStore, SubmissionStore
from .sync import ConnectivityBus, DrainResult, NetworkStatus, SyncDrainer, SyncStatus
from ..util.logging import logger


def _error_list(error: ValidationError) -> List[Dict[str, Any]]:
    """JSON-safe pydantic errors without the submitted values."""
    return [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in error.errors()
    ]


@dataclass
class CommitOutcome:
    reconciliation: ReconciliationResult
    action_plans: ProcessResult


class ChecklistCore:
    """Exposed operations of the reconciliation core."""

    def __init__(self, queue: OfflineQueue, submission_store: SubmissionStore, config_store: ConfigStore,
                 cross_validation: CrossValidationEngine, action_plans: ActionPlanEngine,
                 materializer: MediaMaterializer, network: NetworkStatus = None, bus: ConnectivityBus = None,
                 now: Callable[[], datetime] = datetime.now):
        self.queue = queue
        self.submission_store = submission_store
        self.config_store = config_store
        self.cross_validation = cross_validation
        self.action_plans = action_plans
        self.now = now
        self.drainer = SyncDrainer(
            queue, materializer, submission_store,
            on_committed=self.on_submission_committed,
            network=network, bus=bus, now=now,
        )

    @classmethod
    def from_config(cls, db_path: str = None, offline_db_path: str = None, gateway: NotificationGateway = None,
                    media_store: MediaStore = None, network: NetworkStatus = None, bus: ConnectivityBus = None,
                    now: Callable[[], datetime] = datetime.now, **materializer_options) -> 'ChecklistCore':
        """Build a core backed by the SQLite stores."""
        db_path = db_path or DB_PATH
        for issue in validate_engine_config():
            logger.warning(f"Engine configuration: {issue}")
        init_db(db_path)

        config_store = SqliteConfigStore(db_path)
        directory = SqliteDirectoryStore(db_path)
        if gateway is None:
            gateway = HttpNotificationGateway(SqliteNotificationStore(db_path), now=now)

        return cls(
            queue=OfflineQueue(offline_db_path or OFFLINE_DB_PATH, now=now),
            submission_store=SqliteSubmissionStore(db_path),
            config_store=config_store,
            cross_validation=CrossValidationEngine(SqliteCrossValidationStore(db_path), config_store, directory,
                                                   gateway, now=now),
            action_plans=ActionPlanEngine(SqliteActionPlanStore(db_path), config_store, directory, gateway, now=now),
            materializer=MediaMaterializer(media_store or HttpMediaStore(), **materializer_options),
            network=network,
            bus=bus,
            now=now,
        )

    def enqueue_offline(self, draft: Union[Dict[str, Any], SubmissionDraft]) -> str:
        """Validate a draft and queue it. Raises SubmissionValidationError."""
        if not isinstance(draft, SubmissionDraft):
            try:
                draft = SubmissionDraft.model_validate(draft)
            except ValidationError as e:
                errors = _error_list(e)
                logger.log_validation_error("queue.enqueue", errors)
                raise SubmissionValidationError("Invalid submission draft", errors) from e

        return self.queue.enqueue(
            template_id=draft.template_id,
            store_id=draft.store_id,
            user_id=draft.user_id,
            responses=[r.to_response() for r in draft.responses],
            sector_id=draft.sector_id,
            section_ids=draft.section_ids,
        )

    def complete_section(self, local_id: str, section_id: int,
                         responses: List[Union[Dict[str, Any], FieldResponse]]) -> PendingSubmission:
        if all(isinstance(r, FieldResponse) for r in responses):
            parsed = list(responses)
        else:
            try:
                result = SectionResultDraft.model_validate({
                    "responses": [r.to_dict() if isinstance(r, FieldResponse) else r for r in responses]
                })
            except ValidationError as e:
                errors = _error_list(e)
                logger.log_validation_error("queue.section_completed", errors)
                raise SubmissionValidationError("Invalid section responses", errors) from e
            parsed = [r.to_response() for r in result.responses]

        return self.queue.update_section_result(local_id, section_id, parsed)

    def list_pending(self) -> List[PendingSubmission]:
        return self.queue.list_pending()

    def drain_queue(self) -> DrainResult:
        return self.drainer.drain()

    def cancel_drain(self):
        self.drainer.cancel()

    def sync_status(self) -> SyncStatus:
        status = self.drainer.status
        status.pending_count = self.queue.count_pending()
        return status

    def on_submission_committed(self, submission: Submission, responses: List[FieldResponse],
                                role: str = None) -> CommitOutcome:
        """Run both engines for a freshly committed submission. Never raises."""
        fields = None
        try:
            fields = self.config_store.list_template_fields(submission.template_id)
        except Exception as e:
            logger.log_operation("submission.fields", "failed", {
                "submission_id": submission.id, "error": str(e)[:200],
            })

        reconciliation = self.cross_validation.process(submission, responses, fields, role)
        plans = self.action_plans.process(submission, responses, fields)

        logger.log_operation("submission.committed", "success", {
            "submission_id": submission.id,
            "cross_validation": reconciliation.outcome,
            "action_plans": plans.plans_created,
        })
        return CommitOutcome(reconciliation, plans)

    def sweep_overdue_action_plans(self, today: date = None) -> int:
        return self.action_plans.sweep_overdue(today)

    def expire_stale_cross_validations(self, max_age_minutes: int = None) -> int:
        return self.cross_validation.expire_stale_pairs(max_age_minutes)

    def transition_action_plan(self, plan_id: int, status: str, actor: str = None) -> ActionPlan:
        return self.action_plans.transition(plan_id, status, actor)

    def list_action_plans(self, store_id: int = None, status: str = None, limit: int = 100) -> List[ActionPlan]:
        return self.action_plans.plans.list(store_id=store_id, status=status, limit=limit)

    def list_cross_validations(self, store_id: int = None, status: str = None,
                               limit: int = 100) -> List[CrossValidationPair]:
        return self.cross_validation.pairs.list(store_id=store_id, status=status, limit=limit)
