"""
SQLite implementations of the repository interfaces.
"""

import json
import sqlite3
from datetime import date, datetime
from typing import Any, Iterable, List, Optional

from .db import get_db, transaction
from .schema import (
    ActionPlan,
    CrossValidationPair,
    DuplicatePrimaryError,
    FieldCondition,
    FieldResponse,
    Notification,
    PendingSection,
    Store,
    Submission,
    Template,
    TemplateField,
    UserProfile,
    CV_PENDING,
    ROLE_ESTOQUISTA,
)
from .stores import (
    ActionPlanStore,
    CommitResult,
    ConfigStore,
    CrossValidationStore,
    DirectoryStore,
    DuplicateSubmissionError,
    NotificationStore,
    SubmissionStore,
)
from ..util.logging import logger


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value[:10])


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load_json(value: Optional[str]) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except (json.JSONDecodeError, ValueError):
        return {"raw_data": value}


class SqliteSubmissionStore(SubmissionStore):
    """Committed submissions; `submissions.local_id` is UNIQUE."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def _insert(self, conn: sqlite3.Connection, submission: Submission) -> int:
        try:
            cursor = conn.execute(
                '''INSERT INTO submissions
                   (local_id, template_id, store_id, sector_id, user_id, status, media_complete, created_at, completed_at)
                   VALUES (?, ?, ?, ?, ?, 'concluido', ?, ?, ?)''',
                (submission.local_id, submission.template_id, submission.store_id, submission.sector_id,
                 submission.user_id, submission.media_complete, _ts(submission.created_at),
                 _ts(submission.completed_at))
            )
        except sqlite3.IntegrityError:
            existing = self._find(conn, submission.local_id)
            if existing is None:
                raise
            raise DuplicateSubmissionError(submission.local_id, existing.id)
        return cursor.lastrowid

    def _insert_responses(self, conn: sqlite3.Connection, submission_id: int, responses: List[FieldResponse]):
        conn.executemany(
            '''INSERT INTO submission_responses (submission_id, field_id, value_text, value_number, value_json)
               VALUES (?, ?, ?, ?, ?)''',
            [(submission_id, r.field_id, r.value_text, r.value_number, _dump_json(r.value_json)) for r in responses]
        )

    def insert_submission(self, submission: Submission) -> int:
        with transaction(self.db_path) as conn:
            return self._insert(conn, submission)

    def insert_responses(self, submission_id: int, responses: List[FieldResponse]) -> None:
        with transaction(self.db_path) as conn:
            self._insert_responses(conn, submission_id, responses)

    def commit(self, submission: Submission, responses: List[FieldResponse],
               sections: Optional[List[PendingSection]] = None) -> CommitResult:
        try:
            with transaction(self.db_path) as conn:
                submission_id = self._insert(conn, submission)
                self._insert_responses(conn, submission_id, responses)
                for section in sections or []:
                    conn.execute(
                        '''INSERT INTO submission_sections (submission_id, section_id, status, completed_at)
                           VALUES (?, ?, 'concluido', ?)''',
                        (submission_id, section.section_id, _ts(section.completed_at or submission.completed_at))
                    )
                conn.execute(
                    '''INSERT INTO activity_log (user_id, store_id, submission_id, action, details, ts)
                       VALUES (?, ?, ?, 'checklist_synced', ?, ?)''',
                    (submission.user_id, submission.store_id, submission_id,
                     json.dumps({"local_id": submission.local_id, "original_date": _ts(submission.created_at)}),
                     _ts(submission.completed_at or submission.created_at))
                )
        except DuplicateSubmissionError as e:
            logger.warning(f"Duplicate commit ignored for local_id {e.local_id} (existing #{e.existing_id})")
            return CommitResult(self.find_by_local_id(submission.local_id), duplicate=True)

        return CommitResult(self.get(submission_id))

    def _find(self, conn: sqlite3.Connection, local_id: str) -> Optional[Submission]:
        row = conn.execute("SELECT * FROM submissions WHERE local_id = ?", (local_id,)).fetchone()
        return self._row_to_submission(row) if row else None

    def find_by_local_id(self, local_id: str) -> Optional[Submission]:
        with get_db(self.db_path) as conn:
            return self._find(conn, local_id)

    def get(self, submission_id: int) -> Optional[Submission]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM submissions WHERE id = ?", (submission_id,)).fetchone()
            return self._row_to_submission(row) if row else None

    def count(self) -> int:
        with get_db(self.db_path) as conn:
            return conn.execute("SELECT COUNT(*) FROM submissions").fetchone()[0]

    def list_responses(self, submission_id: int) -> List[FieldResponse]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT field_id, value_text, value_number, value_json FROM submission_responses WHERE submission_id = ? ORDER BY id",
                (submission_id,)
            ).fetchall()
        return [
            FieldResponse(
                field_id=row["field_id"],
                value_text=row["value_text"],
                value_number=row["value_number"],
                value_json=_load_json(row["value_json"]),
            )
            for row in rows
        ]

    def mark_processed(self, submission_id: int, processed_at: datetime) -> None:
        with transaction(self.db_path) as conn:
            conn.execute("UPDATE submissions SET processed_at = ? WHERE id = ?", (_ts(processed_at), submission_id))

    @staticmethod
    def _row_to_submission(row) -> Submission:
        return Submission(
            id=row["id"],
            local_id=row["local_id"],
            template_id=row["template_id"],
            store_id=row["store_id"],
            sector_id=row["sector_id"],
            user_id=row["user_id"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            media_complete=bool(row["media_complete"]),
            processed_at=_parse_ts(row["processed_at"]),
        )


class SqliteConfigStore(ConfigStore):

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def add_template(self, template: Template, fields: List[TemplateField] = None):
        with transaction(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO templates (id, name, category) VALUES (?, ?, ?)",
                (template.id, template.name, template.category)
            )
            for f in fields or []:
                conn.execute(
                    "INSERT OR REPLACE INTO template_fields (id, template_id, name, field_type, options) VALUES (?, ?, ?, ?, ?)",
                    (f.id, f.template_id, f.name, f.field_type, _dump_json(f.options))
                )

    def add_condition(self, condition: FieldCondition):
        with transaction(self.db_path) as conn:
            conn.execute(
                '''INSERT OR REPLACE INTO field_conditions
                   (id, field_id, condition_type, condition_value, severity, default_assignee_id,
                    deadline_days, description_template, is_active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (condition.id, condition.field_id, condition.condition_type,
                 _dump_json(condition.condition_value), condition.severity, condition.default_assignee_id,
                 condition.deadline_days, condition.description_template, condition.is_active)
            )

    def get_template(self, template_id: int) -> Optional[Template]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT id, name, category FROM templates WHERE id = ?", (template_id,)).fetchone()
        if not row:
            return None
        return Template(id=row["id"], name=row["name"], category=row["category"])

    def list_template_fields(self, template_id: int) -> List[TemplateField]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, template_id, name, field_type, options FROM template_fields WHERE template_id = ? ORDER BY id",
                (template_id,)
            ).fetchall()
        return [
            TemplateField(id=r["id"], template_id=r["template_id"], name=r["name"],
                          field_type=r["field_type"], options=_load_json(r["options"]))
            for r in rows
        ]

    def list_field_conditions(self, field_ids: Iterable[int]) -> List[FieldCondition]:
        ids = list(field_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM field_conditions WHERE is_active = 1 AND field_id IN ({placeholders}) ORDER BY id",
                ids
            ).fetchall()
        return [
            FieldCondition(
                id=r["id"],
                field_id=r["field_id"],
                condition_type=r["condition_type"],
                condition_value=_load_json(r["condition_value"]) or {},
                severity=r["severity"],
                deadline_days=r["deadline_days"],
                default_assignee_id=r["default_assignee_id"],
                description_template=r["description_template"],
                is_active=bool(r["is_active"]),
            )
            for r in rows
        ]


class SqliteDirectoryStore(DirectoryStore):

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def add_user(self, user: UserProfile):
        with transaction(self.db_path) as conn:
            conn.execute(
                '''INSERT OR REPLACE INTO users (id, email, full_name, function_name, is_admin, is_active)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                (user.id, user.email, user.full_name, user.function_name, user.is_admin, user.is_active)
            )

    def add_store(self, store: Store):
        with transaction(self.db_path) as conn:
            conn.execute("INSERT OR REPLACE INTO stores (id, name) VALUES (?, ?)", (store.id, store.name))

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_store(self, store_id: int) -> Optional[Store]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT id, name FROM stores WHERE id = ?", (store_id,)).fetchone()
        return Store(id=row["id"], name=row["name"]) if row else None

    def list_active_admins(self) -> List[UserProfile]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM users WHERE is_admin = 1 AND is_active = 1 ORDER BY id").fetchall()
        return [self._row_to_user(r) for r in rows]

    @staticmethod
    def _row_to_user(row) -> UserProfile:
        return UserProfile(
            id=row["id"],
            email=row["email"],
            full_name=row["full_name"],
            function_name=row["function_name"],
            is_admin=bool(row["is_admin"]),
            is_active=bool(row["is_active"]),
        )


class SqliteCrossValidationStore(CrossValidationStore):

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def get(self, pair_id: int) -> Optional[CrossValidationPair]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM cross_validations WHERE id = ?", (pair_id,)).fetchone()
        return self._row_to_pair(row) if row else None

    def get_by_document(self, store_id: int, document_number: str) -> Optional[CrossValidationPair]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                '''SELECT * FROM cross_validations WHERE store_id = ? AND document_number = ?
                   ORDER BY is_primary DESC, id ASC LIMIT 1''',
                (store_id, document_number)
            ).fetchone()
        return self._row_to_pair(row) if row else None

    def list_sibling_candidates(self, store_id: int, missing_role: str, since: datetime) -> List[CrossValidationPair]:
        leg_column = "estoquista_submission_id" if missing_role == ROLE_ESTOQUISTA else "aprendiz_submission_id"
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f'''SELECT * FROM cross_validations
                    WHERE store_id = ? AND status = ? AND created_at >= ? AND {leg_column} IS NULL
                    ORDER BY created_at ASC, id ASC''',
                (store_id, CV_PENDING, _ts(since))
            ).fetchall()
        return [self._row_to_pair(r) for r in rows]

    def list_stale_pending(self, before: datetime) -> List[CrossValidationPair]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                '''SELECT * FROM cross_validations
                   WHERE status = ? AND is_primary = 1 AND created_at < ? ORDER BY created_at''',
                (CV_PENDING, _ts(before))
            ).fetchall()
        return [self._row_to_pair(r) for r in rows]

    def insert(self, pair: CrossValidationPair) -> int:
        try:
            with transaction(self.db_path) as conn:
                cursor = conn.execute(
                    '''INSERT INTO cross_validations
                       (store_id, document_number, estoquista_submission_id, aprendiz_submission_id,
                        estoquista_value, aprendiz_value, difference, status, validated_at, created_at,
                        linked_pair_id, match_reason, is_primary)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                    self._pair_params(pair)
                )
                return cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise DuplicatePrimaryError(
                f"Primary cross validation already exists for store {pair.store_id} document {pair.document_number}"
            ) from e

    def update(self, pair: CrossValidationPair) -> None:
        with transaction(self.db_path) as conn:
            conn.execute(
                '''UPDATE cross_validations SET
                       store_id = ?, document_number = ?, estoquista_submission_id = ?, aprendiz_submission_id = ?,
                       estoquista_value = ?, aprendiz_value = ?, difference = ?, status = ?, validated_at = ?,
                       created_at = ?, linked_pair_id = ?, match_reason = ?, is_primary = ?
                   WHERE id = ?''',
                self._pair_params(pair) + (pair.id,)
            )

    def list(self, store_id: int = None, status: str = None, limit: int = 100) -> List[CrossValidationPair]:
        query = "SELECT * FROM cross_validations WHERE 1 = 1"
        params = []
        if store_id is not None:
            query += " AND store_id = ?"
            params.append(store_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_pair(r) for r in rows]

    @staticmethod
    def _pair_params(pair: CrossValidationPair) -> tuple:
        return (
            pair.store_id, pair.document_number, pair.estoquista_submission_id, pair.aprendiz_submission_id,
            pair.estoquista_value, pair.aprendiz_value, pair.difference, pair.status, _ts(pair.validated_at),
            _ts(pair.created_at), pair.linked_pair_id, pair.match_reason, pair.is_primary,
        )

    @staticmethod
    def _row_to_pair(row) -> CrossValidationPair:
        return CrossValidationPair(
            id=row["id"],
            store_id=row["store_id"],
            document_number=row["document_number"],
            status=row["status"],
            estoquista_submission_id=row["estoquista_submission_id"],
            aprendiz_submission_id=row["aprendiz_submission_id"],
            estoquista_value=row["estoquista_value"],
            aprendiz_value=row["aprendiz_value"],
            difference=row["difference"],
            validated_at=_parse_ts(row["validated_at"]),
            created_at=_parse_ts(row["created_at"]),
            linked_pair_id=row["linked_pair_id"],
            match_reason=row["match_reason"],
            is_primary=bool(row["is_primary"]),
        )


class SqliteActionPlanStore(ActionPlanStore):

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def get(self, plan_id: int) -> Optional[ActionPlan]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM action_plans WHERE id = ?", (plan_id,)).fetchone()
        return self._row_to_plan(row) if row else None

    def list_prior(self, field_id: int, store_id: int, template_id: int, since: datetime) -> List[ActionPlan]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                '''SELECT * FROM action_plans
                   WHERE field_id = ? AND store_id = ? AND template_id = ? AND created_at >= ?
                   ORDER BY created_at DESC, id DESC''',
                (field_id, store_id, template_id, _ts(since))
            ).fetchall()
        return [self._row_to_plan(r) for r in rows]

    def list_for_submission(self, submission_id: int) -> List[ActionPlan]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM action_plans WHERE submission_id = ? ORDER BY id", (submission_id,)
            ).fetchall()
        return [self._row_to_plan(r) for r in rows]

    def insert(self, plan: ActionPlan) -> int:
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                '''INSERT INTO action_plans
                   (submission_id, field_id, field_condition_id, template_id, store_id, sector_id, title,
                    description, severity, status, assigned_to, assigned_by, deadline, is_reincidencia,
                    reincidencia_count, parent_action_plan_id, non_conformity_value, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (plan.submission_id, plan.field_id, plan.field_condition_id, plan.template_id, plan.store_id,
                 plan.sector_id, plan.title, plan.description, plan.severity, plan.status, plan.assigned_to,
                 plan.assigned_by, plan.deadline.isoformat(), plan.is_reincidencia, plan.reincidencia_count,
                 plan.parent_action_plan_id, plan.non_conformity_value, _ts(plan.created_at),
                 _ts(plan.updated_at or plan.created_at))
            )
            return cursor.lastrowid

    def update_status(self, plan_id: int, status: str, updated_at: datetime,
                      resolved_at: Optional[datetime] = None) -> None:
        with transaction(self.db_path) as conn:
            conn.execute(
                "UPDATE action_plans SET status = ?, updated_at = ?, resolved_at = COALESCE(?, resolved_at) WHERE id = ?",
                (status, _ts(updated_at), _ts(resolved_at), plan_id)
            )

    def list_overdue(self, today: date, statuses: Iterable[str]) -> List[ActionPlan]:
        wanted = list(statuses)
        placeholders = ",".join("?" for _ in wanted)
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM action_plans WHERE deadline < ? AND status IN ({placeholders}) ORDER BY id",
                [today.isoformat()] + wanted
            ).fetchall()
        return [self._row_to_plan(r) for r in rows]

    def list(self, store_id: int = None, status: str = None, limit: int = 100) -> List[ActionPlan]:
        query = "SELECT * FROM action_plans WHERE 1 = 1"
        params = []
        if store_id is not None:
            query += " AND store_id = ?"
            params.append(store_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with get_db(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_plan(r) for r in rows]

    @staticmethod
    def _row_to_plan(row) -> ActionPlan:
        return ActionPlan(
            id=row["id"],
            submission_id=row["submission_id"],
            field_id=row["field_id"],
            field_condition_id=row["field_condition_id"],
            template_id=row["template_id"],
            store_id=row["store_id"],
            sector_id=row["sector_id"],
            title=row["title"],
            description=row["description"],
            severity=row["severity"],
            status=row["status"],
            assigned_to=row["assigned_to"],
            assigned_by=row["assigned_by"],
            deadline=_parse_date(row["deadline"]),
            is_reincidencia=bool(row["is_reincidencia"]),
            reincidencia_count=row["reincidencia_count"],
            parent_action_plan_id=row["parent_action_plan_id"],
            non_conformity_value=row["non_conformity_value"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            resolved_at=_parse_ts(row["resolved_at"]),
        )


class SqliteNotificationStore(NotificationStore):

    def __init__(self, db_path: str = None):
        self.db_path = db_path

    def insert(self, notification: Notification) -> int:
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                '''INSERT INTO notifications (user_id, type, title, message, link, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)''',
                (notification.user_id, notification.type, notification.title, notification.message,
                 notification.link, _dump_json(notification.metadata),
                 _ts(notification.created_at or datetime.now()))
            )
            return cursor.lastrowid

    def list_for_user(self, user_id: str, limit: int = 50) -> List[Notification]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit)
            ).fetchall()
        return [self._row_to_notification(r) for r in rows]

    @staticmethod
    def _row_to_notification(row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            title=row["title"],
            message=row["message"],
            link=row["link"],
            metadata=_load_json(row["metadata"]),
            created_at=_parse_ts(row["created_at"]),
            read=bool(row["read"]),
        )
