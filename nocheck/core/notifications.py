"""
Notification gateway: in-app records, email and chat (Teams) dispatch.

Dispatch never raises into the commit path. Every call returns a DispatchResult
and failures are only logged.
"""

import html
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from .config import APP_URL, EMAIL_API_URL, TEAMS_WEBHOOK_URL
from .http import REQUEST_TIMEOUT, build_dispatch_session
from .schema import CV_EXPIRED, CV_LINKED, ActionPlan, CrossValidationPair, Notification
from .stores import NotificationStore
from ..util.logging import logger

NOT_CONFIGURED = "not configured"

SEVERITY_COLORS = {
    "baixa": "#22c55e",
    "media": "#f59e0b",
    "alta": "#f97316",
    "critica": "#ef4444",
}

SEVERITY_CARD_COLORS = {
    "baixa": "Good",
    "media": "Warning",
    "alta": "Attention",
    "critica": "Attention",
}


@dataclass
class DispatchResult:
    success: bool
    error: Optional[str] = None


class NotificationGateway(ABC):

    @abstractmethod
    def create_notification(self, user_id: str, notification_type: str, title: str, message: str = None,
                            link: str = None, metadata: Dict[str, Any] = None) -> DispatchResult:
        pass

    @abstractmethod
    def send_email(self, to: str, subject: str, html_body: str) -> DispatchResult:
        pass

    @abstractmethod
    def send_chat_alert(self, payload: Dict[str, Any]) -> DispatchResult:
        pass


class HttpNotificationGateway(NotificationGateway):
    """Persists in-app notifications and posts email/chat payloads over HTTP."""

    def __init__(self, notification_store: NotificationStore, email_url: str = None, webhook_url: str = None,
                 session=None, now: Callable[[], datetime] = datetime.now):
        self.notification_store = notification_store
        self.email_url = email_url if email_url is not None else EMAIL_API_URL
        self.webhook_url = webhook_url if webhook_url is not None else TEAMS_WEBHOOK_URL
        self.session = session or build_dispatch_session()
        self.now = now

    def create_notification(self, user_id, notification_type, title, message=None, link=None, metadata=None):
        try:
            self.notification_store.insert(Notification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                link=link,
                metadata=metadata,
                created_at=self.now(),
            ))
        except Exception as e:
            logger.log_notification_dispatch("in_app", user_id, False, str(e))
            return DispatchResult(False, str(e))

        logger.log_notification_dispatch("in_app", user_id, True)
        return DispatchResult(True)

    def send_email(self, to, subject, html_body):
        if not self.email_url:
            logger.log_operation("notification.email", "skipped_unconfigured", {"target": to})
            return DispatchResult(False, NOT_CONFIGURED)
        return self._post("email", to, self.email_url, {"to": to, "subject": subject, "htmlBody": html_body})

    def send_chat_alert(self, payload):
        if not self.webhook_url:
            logger.log_operation("notification.chat", "skipped_unconfigured", {"target": "teams"})
            return DispatchResult(False, NOT_CONFIGURED)
        return self._post("chat", "teams", self.webhook_url, payload)

    def _post(self, channel: str, target: str, url: str, body: Dict[str, Any]) -> DispatchResult:
        try:
            response = self.session.post(url, json=body, timeout=REQUEST_TIMEOUT)
        except Exception as e:
            logger.log_notification_dispatch(channel, target, False, str(e))
            return DispatchResult(False, str(e))

        if response.status_code >= 400:
            error = f"HTTP {response.status_code}: {response.text[:200]}"
            logger.log_notification_dispatch(channel, target, False, error)
            return DispatchResult(False, error)

        logger.log_notification_dispatch(channel, target, True)
        return DispatchResult(True)


class InMemoryNotificationGateway(NotificationGateway):
    """Records every dispatch; used by tests and dry runs."""

    def __init__(self, fail_email: bool = False, fail_chat: bool = False):
        self.notifications: List[Notification] = []
        self.emails: List[Dict[str, str]] = []
        self.chat_alerts: List[Dict[str, Any]] = []
        self.fail_email = fail_email
        self.fail_chat = fail_chat

    def create_notification(self, user_id, notification_type, title, message=None, link=None, metadata=None):
        self.notifications.append(Notification(user_id=user_id, type=notification_type, title=title,
                                               message=message, link=link, metadata=metadata))
        return DispatchResult(True)

    def send_email(self, to, subject, html_body):
        if self.fail_email:
            return DispatchResult(False, "simulated email failure")
        self.emails.append({"to": to, "subject": subject, "html": html_body})
        return DispatchResult(True)

    def send_chat_alert(self, payload):
        if self.fail_chat:
            return DispatchResult(False, "simulated chat failure")
        self.chat_alerts.append(payload)
        return DispatchResult(True)

    def notifications_for(self, user_id: str) -> List[Notification]:
        return [n for n in self.notifications if n.user_id == user_id]


def format_currency(value: Optional[float]) -> str:
    """Brazilian real, e.g. R$ 1.234,50."""
    if value is None:
        return "N/A"
    text = f"{value:,.2f}".replace(",", "_").replace(".", ",").replace("_", ".")
    return f"R$ {text}"


def _format_date(value) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%d/%m/%Y")
    return str(value or "")


def _adaptive_card(title: str, color: str, facts: List[Dict[str, str]], text: str,
                   action_title: str, action_url: str) -> Dict[str, Any]:
    return {
        "type": "message",
        "attachments": [
            {
                "contentType": "application/vnd.microsoft.card.adaptive",
                "contentUrl": None,
                "content": {
                    "$schema": "http://adaptivecards.io/schemas/adaptive-card.json",
                    "type": "AdaptiveCard",
                    "version": "1.4",
                    "body": [
                        {"type": "TextBlock", "size": "Large", "weight": "Bolder", "color": color, "text": title},
                        {"type": "FactSet", "facts": facts},
                        {"type": "TextBlock", "text": text, "wrap": True},
                    ],
                    "actions": [
                        {"type": "Action.OpenUrl", "title": action_title, "url": action_url},
                    ],
                },
            }
        ],
    }


def build_cross_validation_card(pair: CrossValidationPair, store_name: str,
                                 linked_document: str = None, app_url: str = None) -> Dict[str, Any]:
    """Teams card for a divergence, a linked pair of different numbers, or an expired pair."""
    if pair.status == CV_EXPIRED:
        title = "Nota Fiscal Sem Par Após 1 Hora"
        text = ("Esta nota fiscal foi preenchida ha mais de 1 hora e nenhum par correspondente foi encontrado. "
                "Verifique se o outro funcionario preencheu o checklist.")
        color = "Warning"
    elif pair.status == CV_LINKED:
        title = "Notas Fiscais Diferentes Vinculadas"
        text = "As notas fiscais são diferentes mas parecem estar relacionadas. Verifique se houve erro de digitação."
        if pair.match_reason:
            text = f"**Motivo do vínculo:** {pair.match_reason}\n\n{text}"
        color = "Warning"
    else:
        title = "Divergência na Validação Cruzada"
        text = "Por favor, verifique a nota fiscal e corrija a divergência."
        color = "Attention"

    if pair.status == CV_LINKED and linked_document:
        facts = [
            {"title": "Nota:", "value": pair.document_number},
            {"title": "Nota vinculada:", "value": linked_document},
        ]
    else:
        facts = [{"title": "Nota Fiscal:", "value": pair.document_number}]

    facts.append({"title": "Loja:", "value": store_name})
    if pair.status != CV_EXPIRED or pair.estoquista_value is not None:
        facts.append({"title": "Estoquista:", "value": format_currency(pair.estoquista_value)})
    if pair.status != CV_EXPIRED or pair.aprendiz_value is not None:
        facts.append({"title": "Aprendiz:", "value": format_currency(pair.aprendiz_value)})
    if pair.difference is not None:
        facts.append({"title": "Diferença:", "value": format_currency(pair.difference)})
    when = pair.validated_at or pair.created_at
    if when:
        facts.append({"title": "Data/Hora:", "value": when.strftime("%d/%m/%Y %H:%M")})

    return _adaptive_card(title, color, facts, text, "Abrir Validações",
                          f"{app_url or APP_URL}/admin/validacoes")


def build_action_plan_card(plan: ActionPlan, field_name: str, store_name: str, assignee_name: str,
                           app_url: str = None) -> Dict[str, Any]:
    title = f"Plano de Ação: {field_name}"
    if plan.is_reincidencia:
        title = f"REINCIDÊNCIA #{plan.reincidencia_count + 1} - {title}"

    facts = [
        {"title": "Loja:", "value": store_name},
        {"title": "Campo:", "value": field_name},
        {"title": "Severidade:", "value": plan.severity.capitalize()},
        {"title": "Responsável:", "value": assignee_name},
        {"title": "Prazo:", "value": _format_date(plan.deadline)},
    ]
    if plan.non_conformity_value:
        facts.append({"title": "Valor encontrado:", "value": plan.non_conformity_value})

    return _adaptive_card(title, SEVERITY_CARD_COLORS.get(plan.severity, "Warning"), facts, plan.title,
                          "Abrir Plano de Ação", f"{app_url or APP_URL}/admin/planos-de-acao/{plan.id}")


def build_action_plan_email_html(plan: ActionPlan, field_name: str, store_name: str, app_url: str = None) -> str:
    color = SEVERITY_COLORS.get(plan.severity, SEVERITY_COLORS["media"])
    heading = "Plano de Acao"
    if plan.is_reincidencia:
        heading += f" (REINCIDENCIA #{plan.reincidencia_count + 1})"
    link = f"{app_url or APP_URL}/admin/planos-de-acao/{plan.id}"

    rows = [
        ("Loja", store_name),
        ("Campo", field_name),
        ("Prazo", _format_date(plan.deadline)),
    ]
    if plan.non_conformity_value:
        rows.append(("Valor encontrado", plan.non_conformity_value))
    rows_html = "".join(
        f'<tr><td style="padding: 4px 12px 4px 0; color: #64748b;">{html.escape(label)}</td>'
        f'<td style="padding: 4px 0; color: #1e293b;">{html.escape(str(value))}</td></tr>'
        for label, value in rows
    )
    description = ""
    if plan.description:
        description = f'<p style="color: #334155;">{html.escape(plan.description)}</p>'

    return f"""<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"></head>
<body style="font-family: sans-serif; background: #f8fafc; padding: 20px;">
  <div style="max-width: 600px; margin: 0 auto; background: white; border-radius: 12px; overflow: hidden;">
    <div style="background: {color}; padding: 20px; color: white;">
      <h1 style="margin: 0; font-size: 20px;">{heading}</h1>
      <p style="margin: 4px 0 0; font-size: 14px;">Severidade: {plan.severity.capitalize()}</p>
    </div>
    <div style="padding: 24px;">
      <h2 style="margin: 0 0 16px; color: #1e293b; font-size: 18px;">{html.escape(plan.title)}</h2>
      <table>{rows_html}</table>
      {description}
      <a href="{link}" style="display: inline-block; margin-top: 16px; padding: 10px 20px; background: #0f172a; color: white; border-radius: 8px; text-decoration: none;">Ver plano de acao</a>
    </div>
  </div>
</body>
</html>"""
