"""
Durable submission queue.

Checklists filled without connectivity live here until the sync drainer commits
them. Each entry is one row of a device-local SQLite file holding the JSON form
of a PendingSubmission; every call runs in its own transaction and is durable on
return.
"""

import json
import uuid
from datetime import datetime
from typing import Callable, List, Optional

from .config import OFFLINE_DB_PATH
from .db import get_db, init_offline_db, transaction
from .schema import (
    DRAINABLE_STATUSES,
    SECTION_DONE,
    SECTION_PENDING,
    SYNC_PENDING,
    SYNC_STATUSES,
    SYNC_SYNCING,
    FieldResponse,
    PendingSection,
    PendingSubmission,
    QueueEntryNotFound,
    SectionNotFound,
)
from ..util.logging import logger


class OfflineQueue:
    """Device-local queue of pending submissions keyed by local_id."""

    def __init__(self, db_path: str = None, now: Callable[[], datetime] = datetime.now):
        self.db_path = db_path or OFFLINE_DB_PATH
        self.now = now
        init_offline_db(self.db_path)

    def enqueue(self, template_id: int, store_id: int, user_id: str,
                responses: List[FieldResponse] = None, sector_id: int = None,
                section_ids: List[int] = None) -> str:
        """Persist a new draft and return its local_id.

        A sectioned draft is created in `syncing` so the drainer ignores it until
        its last section completes.
        """
        local_id = str(uuid.uuid4())
        sections = None
        if section_ids:
            sections = [PendingSection(section_id=sid, status=SECTION_PENDING) for sid in section_ids]

        entry = PendingSubmission(
            local_id=local_id,
            template_id=template_id,
            store_id=store_id,
            sector_id=sector_id,
            user_id=user_id,
            created_at=self.now(),
            sync_status=SYNC_SYNCING if sections else SYNC_PENDING,
            responses=list(responses or []),
            sections=sections,
        )

        with transaction(self.db_path) as conn:
            self._write(conn, entry, insert=True)

        logger.log_queue_operation("enqueue", local_id, details={
            "template_id": template_id,
            "store_id": store_id,
            "sections": len(sections or []),
        })
        return local_id

    def get(self, local_id: str) -> Optional[PendingSubmission]:
        with get_db(self.db_path) as conn:
            return self._read(conn, local_id)

    def list_pending(self) -> List[PendingSubmission]:
        """Every queued entry regardless of status, oldest first."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT payload FROM pending_submissions ORDER BY created_at, rowid"
            ).fetchall()
        return [PendingSubmission.from_dict(json.loads(row["payload"])) for row in rows]

    def list_drainable(self) -> List[PendingSubmission]:
        """Entries the drainer may pick up (pending or failed), oldest first."""
        placeholders = ",".join("?" for _ in DRAINABLE_STATUSES)
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT payload FROM pending_submissions WHERE sync_status IN ({placeholders}) ORDER BY created_at, rowid",
                DRAINABLE_STATUSES
            ).fetchall()
        entries = [PendingSubmission.from_dict(json.loads(row["payload"])) for row in rows]
        return [e for e in entries if e.is_drainable]

    def count_pending(self) -> int:
        placeholders = ",".join("?" for _ in DRAINABLE_STATUSES)
        with get_db(self.db_path) as conn:
            return conn.execute(
                f"SELECT COUNT(*) FROM pending_submissions WHERE sync_status IN ({placeholders})",
                DRAINABLE_STATUSES
            ).fetchone()[0]

    def update_section_result(self, local_id: str, section_id: int, responses: List[FieldResponse]) -> PendingSubmission:
        """Record a finished section.

        When this was the last open section the section responses are
        consolidated, in section order, into the top-level responses and the
        entry becomes `pending`.
        """
        with transaction(self.db_path) as conn:
            entry = self._read(conn, local_id)
            if entry is None:
                raise QueueEntryNotFound(f"No queued submission {local_id}")

            section = next((s for s in entry.sections or [] if s.section_id == section_id), None)
            if section is None:
                raise SectionNotFound(f"Submission {local_id} has no section {section_id}")

            section.responses = list(responses)
            section.status = SECTION_DONE
            section.completed_at = self.now()

            completed = all(s.status == SECTION_DONE for s in entry.sections)
            if completed:
                consolidated = []
                for s in entry.sections:
                    consolidated.extend(s.responses)
                entry.responses = consolidated
                entry.sync_status = SYNC_PENDING

            self._write(conn, entry)

        logger.log_queue_operation("section_completed", local_id, details={
            "section_id": section_id,
            "submission_complete": completed,
        })
        return entry

    def mark_status(self, local_id: str, status: str, error: str = None) -> None:
        if status not in SYNC_STATUSES:
            raise ValueError(f"Invalid sync status: {status}")

        with transaction(self.db_path) as conn:
            entry = self._read(conn, local_id)
            if entry is None:
                raise QueueEntryNotFound(f"No queued submission {local_id}")
            entry.sync_status = status
            entry.error_message = error
            self._write(conn, entry)

        logger.log_queue_operation("mark_status", local_id, details={"sync_status": status})

    def recover_interrupted(self) -> int:
        """Return complete entries stuck in `syncing` (drain interrupted mid-entry) to `pending`.

        Only safe while holding the drainer; incomplete sectioned drafts are left alone.
        """
        recovered = 0
        with transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT payload FROM pending_submissions WHERE sync_status = ?", (SYNC_SYNCING,)
            ).fetchall()
            for row in rows:
                entry = PendingSubmission.from_dict(json.loads(row["payload"]))
                if any(s.status != SECTION_DONE for s in entry.sections or []):
                    continue
                entry.sync_status = SYNC_PENDING
                self._write(conn, entry)
                recovered += 1

        if recovered:
            logger.log_operation("queue.recover_interrupted", "success", {"recovered": recovered})
        return recovered

    def remove(self, local_id: str) -> bool:
        with transaction(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM pending_submissions WHERE local_id = ?", (local_id,))
            removed = cursor.rowcount > 0

        logger.log_queue_operation("remove", local_id, "success" if removed else "not_found")
        return removed

    def clear(self) -> int:
        with transaction(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM pending_submissions")
            return cursor.rowcount

    def _read(self, conn, local_id: str) -> Optional[PendingSubmission]:
        row = conn.execute(
            "SELECT payload FROM pending_submissions WHERE local_id = ?", (local_id,)
        ).fetchone()
        if not row:
            return None
        return PendingSubmission.from_dict(json.loads(row["payload"]))

    def _write(self, conn, entry: PendingSubmission, insert: bool = False):
        payload = json.dumps(entry.to_dict())
        if insert:
            conn.execute(
                "INSERT INTO pending_submissions (local_id, sync_status, created_at, payload) VALUES (?, ?, ?, ?)",
                (entry.local_id, entry.sync_status, entry.created_at.isoformat(), payload)
            )
        else:
            conn.execute(
                "UPDATE pending_submissions SET sync_status = ?, payload = ? WHERE local_id = ?",
                (entry.sync_status, payload, entry.local_id)
            )
