"""
Notification gateway and message builders.
"""

import threading
from datetime import date, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock

import pytest
import requests

from nocheck.core.http import build_dispatch_session, build_session
from nocheck.core.notifications import (
    NOT_CONFIGURED,
    HttpNotificationGateway,
    build_action_plan_card,
    build_action_plan_email_html,
    build_cross_validation_card,
    format_currency,
)
from nocheck.core.schema import CV_EXPIRED, CV_FAILED, CV_LINKED, ActionPlan, CrossValidationPair


def ok_session(status_code=200):
    session = MagicMock()
    session.post.return_value.status_code = status_code
    session.post.return_value.text = "boom"
    return session


def make_plan(**overrides):
    values = dict(
        id=7, submission_id=1, field_id=201, field_condition_id=1, template_id=20, store_id=1,
        title="Temperatura alta", severity="alta", status="aberto", assigned_to="u", assigned_by="u",
        deadline=date(2026, 3, 5), non_conformity_value="9 <b>",
    )
    values.update(overrides)
    return ActionPlan(**values)


class TestHttpNotificationGateway:
    """Test dispatch over HTTP with a mocked session."""

    def test_in_app_notification_is_persisted(self, notification_store, clock):
        gateway = HttpNotificationGateway(notification_store, email_url="", webhook_url="",
                                          session=MagicMock(), now=clock)

        result = gateway.create_notification("admin-1", "action_plan_overdue", "Vencido",
                                             metadata={"action_plan_id": 3})

        assert result.success is True
        [stored] = notification_store.list_for_user("admin-1")
        assert stored.title == "Vencido"
        assert stored.metadata == {"action_plan_id": 3}
        assert stored.created_at == clock()

    def test_email_payload(self, notification_store):
        session = ok_session()
        gateway = HttpNotificationGateway(notification_store, email_url="https://mail.example.com",
                                          webhook_url="", session=session)

        assert gateway.send_email("a@example.com", "Assunto", "<p>oi</p>").success is True
        args, kwargs = session.post.call_args
        assert args[0] == "https://mail.example.com"
        assert kwargs["json"] == {"to": "a@example.com", "subject": "Assunto", "htmlBody": "<p>oi</p>"}

    def test_unconfigured_channels_are_skipped(self, notification_store):
        session = ok_session()
        gateway = HttpNotificationGateway(notification_store, email_url="", webhook_url="", session=session)

        assert gateway.send_email("a@example.com", "s", "b").error == NOT_CONFIGURED
        assert gateway.send_chat_alert({"type": "message"}).error == NOT_CONFIGURED
        session.post.assert_not_called()

    def test_http_error_is_returned_not_raised(self, notification_store):
        gateway = HttpNotificationGateway(notification_store, email_url="", webhook_url="https://teams",
                                          session=ok_session(status_code=502))

        result = gateway.send_chat_alert({"type": "message"})

        assert result.success is False
        assert result.error.startswith("HTTP 502")

    def test_connection_error_is_returned_not_raised(self, notification_store):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        gateway = HttpNotificationGateway(notification_store, email_url="https://mail", webhook_url="",
                                          session=session)

        result = gateway.send_email("a@example.com", "s", "b")

        assert result.success is False
        assert "refused" in result.error

    def test_store_failure_is_returned_not_raised(self):
        store = MagicMock()
        store.insert.side_effect = RuntimeError("disk full")
        gateway = HttpNotificationGateway(store, email_url="", webhook_url="", session=MagicMock())

        assert gateway.create_notification("u", "t", "title").success is False


@pytest.fixture
def unavailable_webhook():
    """Local endpoint that answers every POST with 503 and counts the attempts."""
    attempts = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            self.rfile.read(int(self.headers.get("Content-Length", 0)))
            attempts.append(self.path)
            self.send_response(503)
            self.send_header("Content-Length", "0")
            self.end_headers()

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/hook", attempts
    server.shutdown()
    server.server_close()


class TestDispatchTransport:
    """Email and chat are single attempts; only media upload retries."""

    def test_unavailable_webhook_gets_exactly_one_post(self, notification_store, unavailable_webhook):
        url, attempts = unavailable_webhook
        gateway = HttpNotificationGateway(notification_store, email_url=url, webhook_url=url)

        chat = gateway.send_chat_alert({"text": "x"})
        email = gateway.send_email("a@example.com", "s", "b")

        assert chat.success is False
        assert chat.error.startswith("HTTP 503")
        assert email.error.startswith("HTTP 503")
        assert len(attempts) == 2

    def test_dispatch_session_has_no_retry(self):
        adapter = build_dispatch_session().get_adapter("https://teams.example.com")

        assert adapter.max_retries.total == 0
        assert not adapter.max_retries.status_forcelist

    def test_media_session_keeps_transport_retry(self):
        adapter = build_session().get_adapter("https://media.example.com")

        assert adapter.max_retries.total == 1
        assert 503 in adapter.max_retries.status_forcelist


class TestBuilders:
    """Test card and email rendering."""

    def test_format_currency(self):
        assert format_currency(1234.5) == "R$ 1.234,50"
        assert format_currency(0) == "R$ 0,00"
        assert format_currency(None) == "N/A"

    def test_cross_validation_card_titles(self):
        when = datetime(2026, 3, 2, 9, 30)
        failed = CrossValidationPair(id=1, store_id=1, document_number="123", status=CV_FAILED,
                                     estoquista_value=100, aprendiz_value=150, difference=50, validated_at=when)
        linked = CrossValidationPair(id=2, store_id=1, document_number="123", status=CV_LINKED,
                                     match_reason="Notas preenchidas com apenas 2 minutos de diferença",
                                     created_at=when)
        expired = CrossValidationPair(id=3, store_id=1, document_number="123", status=CV_EXPIRED,
                                      estoquista_value=10, created_at=when)

        def body(card):
            return card["attachments"][0]["content"]["body"]

        assert body(build_cross_validation_card(failed, "Loja"))[0]["text"] == "Divergência na Validação Cruzada"
        facts = {f["title"]: f["value"] for f in body(build_cross_validation_card(failed, "Loja"))[1]["facts"]}
        assert facts["Diferença:"] == "R$ 50,00"
        assert facts["Data/Hora:"] == "02/03/2026 09:30"

        linked_card = body(build_cross_validation_card(linked, "Loja", linked_document="456"))
        assert linked_card[0]["text"] == "Notas Fiscais Diferentes Vinculadas"
        assert "2 minutos" in linked_card[2]["text"]
        assert {"title": "Nota vinculada:", "value": "456"} in linked_card[1]["facts"]

        expired_facts = body(build_cross_validation_card(expired, "Loja"))[1]["facts"]
        assert body(build_cross_validation_card(expired, "Loja"))[0]["text"] == "Nota Fiscal Sem Par Após 1 Hora"
        assert "Aprendiz:" not in [f["title"] for f in expired_facts]

    def test_action_plan_card_marks_recurrence(self):
        card = build_action_plan_card(make_plan(is_reincidencia=True, reincidencia_count=2), "Temp", "Loja", "Ana",
                                      app_url="https://app")
        content = card["attachments"][0]["content"]

        assert content["body"][0]["text"] == "REINCIDÊNCIA #3 - Plano de Ação: Temp"
        assert content["actions"][0]["url"] == "https://app/admin/planos-de-acao/7"

    def test_email_html_escapes_values(self):
        html = build_action_plan_email_html(make_plan(), "Temp", "Loja")

        assert "9 &lt;b&gt;" in html
        assert "05/03/2026" in html
        assert "REINCIDENCIA" not in html
