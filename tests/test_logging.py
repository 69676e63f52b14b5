"""
Structured logger level selection and payload sanitizing.
"""

import logging
from unittest.mock import patch

from nocheck.util.logging import StructuredLogger, sanitize_payload


class TestLevels:
    """Statuses map to ERROR, WARNING or INFO."""

    def test_rejected_validation_logs_at_warning(self):
        structured = StructuredLogger("nocheck.test")
        with patch.object(structured.logger, "log") as log:
            structured.log_validation_error("queue.enqueue", [{"loc": ["template_id"], "input": "secret"}])

        level, message = log.call_args[0]
        assert level == logging.WARNING
        assert "Status: rejected" in message
        assert "secret" not in message

    def test_failed_logs_at_error(self):
        structured = StructuredLogger("nocheck.test")
        with patch.object(structured.logger, "log") as log:
            structured.log_operation("sync.post_commit", "failed")

        assert log.call_args[0][0] == logging.ERROR

    def test_success_logs_at_info(self):
        structured = StructuredLogger("nocheck.test")
        with patch.object(structured.logger, "log") as log:
            structured.log_operation("queue.enqueue", "success")

        assert log.call_args[0][0] == logging.INFO


class TestSanitizePayload:

    def test_inline_media_is_truncated(self):
        cleaned = sanitize_payload({"photo": "data:image/png;base64," + "A" * 500})
        assert len(str(cleaned["photo"])) < 500
