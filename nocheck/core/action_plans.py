"""
Non-conformity escalation.

Every active condition on a submitted field is evaluated; a violated condition
opens an action plan. Plans for the same (field, store, template) within the
lookback window form a recurrence chain rooted at the oldest one, and a long
enough chain raises the severity one step.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from .conditions import evaluate_condition
from .config import RECURRENCE_ESCALATION_THRESHOLD, RECURRENCE_LOOKBACK_DAYS
from .notifications import NotificationGateway, build_action_plan_card, build_action_plan_email_html
from .schema import (
    NOTIFY_PLAN_ASSIGNED,
    NOTIFY_PLAN_OVERDUE,
    NOTIFY_REINCIDENCIA,
    PLAN_CANCELLED,
    PLAN_DONE,
    PLAN_IN_PROGRESS,
    PLAN_OPEN,
    PLAN_OVERDUE,
    PLAN_TRANSITIONS,
    SEVERITY_LADDER,
    ActionPlan,
    FieldCondition,
    FieldResponse,
    InvalidTransitionError,
    NoCheckError,
    Submission,
    TemplateField,
)
from .stores import ActionPlanStore, ConfigStore, DirectoryStore
from .values import display_value, parse_field_value
from ..util.logging import logger

DEFAULT_TITLE = "Nao conformidade: {field_name} - {store_name}"


class ActionPlanNotFound(NoCheckError):
    pass


@dataclass
class Recurrence:
    count: int = 0
    parent_plan_id: Optional[int] = None

    @property
    def is_reincidencia(self) -> bool:
        return self.count > 0


@dataclass
class ProcessResult:
    plans_created: int = 0
    plan_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None


def escalate(severity: str) -> str:
    """One step up the severity ladder; critica stays critica."""
    if severity not in SEVERITY_LADDER:
        return severity
    index = SEVERITY_LADDER.index(severity)
    return SEVERITY_LADDER[min(index + 1, len(SEVERITY_LADDER) - 1)]


def render_title(template: Optional[str], field_name: str, value: str, store_name: str) -> str:
    return (template or DEFAULT_TITLE) \
        .replace("{field_name}", field_name) \
        .replace("{value}", value) \
        .replace("{store_name}", store_name)


class ActionPlanEngine:
    """Creates, escalates and ages action plans."""

    def __init__(self, plan_store: ActionPlanStore, config_store: ConfigStore, directory_store: DirectoryStore,
                 gateway: NotificationGateway, now: Callable[[], datetime] = datetime.now,
                 lookback_days: int = None, escalation_threshold: int = None):
        self.plans = plan_store
        self.config_store = config_store
        self.directory = directory_store
        self.gateway = gateway
        self.now = now
        self.lookback_days = lookback_days or RECURRENCE_LOOKBACK_DAYS
        self.escalation_threshold = escalation_threshold or RECURRENCE_ESCALATION_THRESHOLD

    def process(self, submission: Submission, responses: List[FieldResponse],
                fields: List[TemplateField] = None) -> ProcessResult:
        """Evaluate every active condition of the submitted template. Never raises."""
        result = ProcessResult()
        try:
            if fields is None:
                fields = self.config_store.list_template_fields(submission.template_id)
            if not fields:
                return result
            conditions = self.config_store.list_field_conditions([f.id for f in fields])
            store_name = self._store_name(submission.store_id) if conditions else None
            # A replayed submission keeps the plans it already has
            planned = {p.field_condition_id for p in self.plans.list_for_submission(submission.id)} \
                if conditions and submission.id is not None else set()
        except Exception as e:
            logger.log_operation("action_plan.process", "failed", {
                "submission_id": submission.id, "error": str(e)[:200],
            })
            result.error = str(e)
            return result

        if not conditions:
            return result

        fields_by_id = {f.id: f for f in fields}
        responses_by_field = {r.field_id: r for r in responses}

        for condition in conditions:
            template_field = fields_by_id.get(condition.field_id)
            if template_field is None:
                continue
            # Only fields that were part of the submission are evaluated
            if condition.field_id not in responses_by_field:
                continue
            if condition.id in planned:
                continue

            try:
                value = parse_field_value(template_field.field_type, responses_by_field[condition.field_id])
                if not evaluate_condition(template_field, value, condition):
                    continue
                plan = self._open_plan(submission, template_field, condition, display_value(value), store_name)
            except Exception as e:
                logger.log_operation("action_plan.create", "failed", {
                    "submission_id": submission.id,
                    "field_condition_id": condition.id,
                    "error": str(e)[:200],
                })
                result.error = str(e)
                continue

            result.plans_created += 1
            result.plan_ids.append(plan.id)
            try:
                self._dispatch_created(plan, template_field, store_name)
            except Exception as e:
                logger.log_action_plan("notify", plan.id, {"error": str(e)[:200]}, status="failed")

        return result

    def check_recurrence(self, field_id: int, store_id: int, template_id: int) -> Recurrence:
        since = self.now() - timedelta(days=self.lookback_days)
        prior = self.plans.list_prior(field_id, store_id, template_id, since)
        if not prior:
            return Recurrence()
        # Newest first; the chain root is the oldest
        return Recurrence(count=len(prior), parent_plan_id=prior[-1].id)

    def _open_plan(self, submission: Submission, template_field: TemplateField, condition: FieldCondition,
                   value_text: str, store_name: str) -> ActionPlan:
        recurrence = self.check_recurrence(template_field.id, submission.store_id, submission.template_id)

        severity = condition.severity
        if recurrence.count >= self.escalation_threshold:
            severity = escalate(severity)

        now = self.now()
        plan = ActionPlan(
            id=None,
            submission_id=submission.id,
            field_id=template_field.id,
            field_condition_id=condition.id,
            template_id=submission.template_id,
            store_id=submission.store_id,
            sector_id=submission.sector_id,
            title=render_title(condition.description_template, template_field.name, value_text, store_name),
            description=condition.description_template,
            severity=severity,
            status=PLAN_OPEN,
            assigned_to=condition.default_assignee_id or submission.user_id,
            assigned_by=submission.user_id,
            deadline=now.date() + timedelta(days=condition.deadline_days),
            is_reincidencia=recurrence.is_reincidencia,
            reincidencia_count=recurrence.count,
            parent_action_plan_id=recurrence.parent_plan_id,
            non_conformity_value=value_text,
            created_at=now,
            updated_at=now,
        )
        plan.id = self.plans.insert(plan)

        logger.log_action_plan("created", plan.id, {
            "field_id": plan.field_id,
            "store_id": plan.store_id,
            "severity": plan.severity,
            "reincidencia_count": plan.reincidencia_count,
        })
        return plan

    def _dispatch_created(self, plan: ActionPlan, template_field: TemplateField, store_name: str):
        occurrence = plan.reincidencia_count + 1
        if plan.is_reincidencia:
            notification_type = NOTIFY_REINCIDENCIA
            title = f"Reincidencia #{occurrence}: {template_field.name}"
        else:
            notification_type = NOTIFY_PLAN_ASSIGNED
            title = f"Novo plano de acao: {template_field.name}"

        link = f"/admin/planos-de-acao/{plan.id}"
        metadata = {
            "action_plan_id": plan.id,
            "store_id": plan.store_id,
            "severity": plan.severity,
            "is_reincidencia": plan.is_reincidencia,
        }
        self.gateway.create_notification(
            plan.assigned_to, notification_type, title,
            message=f"{store_name} - Prazo: {plan.deadline.strftime('%d/%m/%Y')}",
            link=link, metadata=metadata,
        )

        assignee = self.directory.get_user(plan.assigned_to)
        if assignee and assignee.email:
            prefix = "REINCIDENCIA - " if plan.is_reincidencia else ""
            self.gateway.send_email(
                assignee.email,
                f"[NoCheck] {prefix}Plano de Acao: {template_field.name}",
                build_action_plan_email_html(plan, template_field.name, store_name),
            )

        assignee_name = assignee.full_name if assignee and assignee.full_name else "Nao atribuido"
        self.gateway.send_chat_alert(build_action_plan_card(plan, template_field.name, store_name, assignee_name))

        if plan.is_reincidencia:
            for admin in self.directory.list_active_admins():
                if admin.id == plan.assigned_to:
                    continue
                self.gateway.create_notification(
                    admin.id, NOTIFY_REINCIDENCIA, title,
                    message=(f"{store_name} - {plan.non_conformity_value} - Ocorrencia {occurrence}x "
                             f"nos ultimos {self.lookback_days} dias"),
                    link=link,
                    metadata=dict(metadata, reincidencia_count=occurrence),
                )

    def transition(self, plan_id: int, new_status: str, actor: str = None) -> ActionPlan:
        """Move a plan along its lifecycle. Raises InvalidTransitionError."""
        plan = self.plans.get(plan_id)
        if plan is None:
            raise ActionPlanNotFound(f"Action plan {plan_id} not found")

        allowed = PLAN_TRANSITIONS.get(plan.status, set())
        if new_status not in allowed:
            raise InvalidTransitionError(f"Cannot move action plan {plan_id} from {plan.status} to {new_status}")

        now = self.now()
        resolved_at = now if new_status in (PLAN_DONE, PLAN_CANCELLED) else None
        self.plans.update_status(plan_id, new_status, now, resolved_at)

        logger.log_action_plan("transition", plan_id, {
            "from": plan.status, "to": new_status, "actor": actor,
        })

        plan.status = new_status
        plan.updated_at = now
        if resolved_at:
            plan.resolved_at = resolved_at
        return plan

    def sweep_overdue(self, today: date = None) -> int:
        """Mark open plans past their deadline as vencido and notify. Returns the count."""
        today = today or self.now().date()
        overdue = self.plans.list_overdue(today, (PLAN_OPEN, PLAN_IN_PROGRESS))
        if not overdue:
            return 0

        admins = self.directory.list_active_admins()
        now = self.now()
        for plan in overdue:
            self.plans.update_status(plan.id, PLAN_OVERDUE, now)
            logger.log_action_plan("overdue", plan.id, {"deadline": plan.deadline.isoformat()})

            title = "Plano de acao vencido"
            message = f"{plan.title} - prazo {plan.deadline.strftime('%d/%m/%Y')}"
            link = f"/admin/planos-de-acao/{plan.id}"
            metadata = {"action_plan_id": plan.id, "store_id": plan.store_id}

            self.gateway.create_notification(plan.assigned_to, NOTIFY_PLAN_OVERDUE, title,
                                             message=message, link=link, metadata=metadata)
            for admin in admins:
                if admin.id == plan.assigned_to:
                    continue
                self.gateway.create_notification(admin.id, NOTIFY_PLAN_OVERDUE, title,
                                                 message=message, link=link, metadata=metadata)

        return len(overdue)

    def _store_name(self, store_id: int) -> str:
        store = self.directory.get_store(store_id)
        return store.name if store else f"Loja #{store_id}"
