"""
Structured logging for queue, sync, reconciliation, escalation and dispatch operations.

Every operation is written as one line, ``Operation: <name>, Status: <status>``
followed by the sanitized details. Failures go to ERROR, degraded paths to
WARNING and everything else to INFO.
"""

import logging
from typing import Any, Dict, List

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

ERROR_STATUSES = ("failed", "error")
WARNING_STATUSES = ("degraded", "skipped_unconfigured", "rejected")


def _merged(base: Dict[str, Any], extra: Dict[str, Any] = None) -> Dict[str, Any]:
    if extra:
        base.update(extra)
    return base


class StructuredLogger:
    """Structured logger for NoCheck core operations."""

    def __init__(self, name: str = "nocheck"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # One handler per named logger, even when several instances exist
        if not self.logger.handlers:
            stream = logging.StreamHandler()
            stream.setFormatter(logging.Formatter(LOG_FORMAT))
            self.logger.addHandler(stream)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {sanitize_payload(details)}"

        if status in ERROR_STATUSES:
            level = logging.ERROR
        elif status in WARNING_STATUSES:
            level = logging.WARNING
        else:
            level = logging.INFO
        self.logger.log(level, message)

    def log_queue_operation(self, operation: str, local_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a durable queue mutation."""
        self.log_operation(f"queue.{operation}", status, _merged({"local_id": local_id}, details))

    def log_sync_entry(self, local_id: str, status: str, submission_id: int = None, error: str = None):
        """Log the outcome of draining one queue entry."""
        fields = {"local_id": local_id}
        if submission_id is not None:
            fields["submission_id"] = submission_id
        if error:
            fields["error"] = error[:200]
        self.log_operation("sync.entry", status, fields)

    def log_drain_cycle(self, committed: int, failed: int, status: str = "success", details: Dict[str, Any] = None):
        self.log_operation("sync.drain", status, _merged({"committed": committed, "failed": failed}, details))

    def log_media_upload(self, file_name: str, outcome: str, attempt: int = None, error: str = None):
        fields = {"file_name": file_name}
        if attempt is not None:
            fields["attempt"] = attempt
        if error:
            fields["error"] = str(error)[:100]
        self.log_operation("media.upload", outcome, fields)

    def log_reconciliation(self, outcome: str, store_id: int, document_number: str, details: Dict[str, Any] = None):
        """Log a cross validation decision."""
        fields = {"store_id": store_id, "document_number": document_number}
        self.log_operation("cross_validation", outcome, _merged(fields, details))

    def log_action_plan(self, operation: str, plan_id: int, details: Dict[str, Any] = None, status: str = "success"):
        self.log_operation(f"action_plan.{operation}", status, _merged({"action_plan_id": plan_id}, details))

    def log_notification_dispatch(self, channel: str, target: str, success: bool, error: str = None):
        """Log one dispatch on the in_app, email or chat channel."""
        fields = {"channel": channel, "target": target}
        if error:
            fields["error"] = str(error)[:100]
        self.log_operation(f"notification.{channel}", "success" if success else "failed", fields)

    def log_heartbeat_task(self, task_name: str, start_time: float, end_time: float, status: str = "success", details: Dict[str, Any] = None):
        """Log one sweep run with its duration in milliseconds."""
        duration_ms = round((end_time - start_time) * 1000, 2)
        fields = {"duration_ms": duration_ms}
        if not details:
            fields["message"] = f"Sweep '{task_name}' {status} in {duration_ms}ms"
        self.log_operation(f"heartbeat.{task_name}", status, _merged(fields, details))

    def log_validation_error(self, operation: str, errors: List[Any]):
        """Log schema validation errors without echoing submitted values."""
        cleaned = [
            {k: v for k, v in err.items() if k not in ("input", "ctx")} if isinstance(err, dict) else str(err)[:100]
            for err in errors
        ]
        self.log_operation(operation, "rejected", {"errors": cleaned, "error_count": len(cleaned)})

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)


logger = StructuredLogger()


def sanitize_payload(payload: Any, max_len: int = 100) -> Any:
    """Truncate inline media and long strings before they reach a log line."""
    if isinstance(payload, dict):
        return {k: sanitize_payload(v, max_len) for k, v in payload.items()}
    if isinstance(payload, list):
        return [sanitize_payload(item, max_len) for item in payload]
    if isinstance(payload, str):
        if payload.startswith("data:"):
            return f"[inline {len(payload)} chars]"
        return payload if len(payload) <= max_len else payload[:max_len] + "..."
    return payload
