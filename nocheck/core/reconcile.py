"""
Cross validation of receiving checklists.

Two roles report the same invoice (nota fiscal) independently: the stock handler
(estoquista) and the apprentice (aprendiz). Each committed submission fills one
leg of a CrossValidationPair keyed by (store_id, document_number). When both legs
are present the reported totals are compared.

When no pair with the exact document number exists, pending pairs of the same
store are searched for a "sibling": a document that is probably the same paper
with mistyped digits. The first candidate that matches wins.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .config import (
    CROSS_VALIDATION_TOLERANCE,
    PAIR_EXPIRY_MINUTES,
    RECONCILABLE_CATEGORY,
    SIBLING_TIGHT_WINDOW_MINUTES,
    SIBLING_WINDOW_MINUTES,
)
from .notifications import NotificationGateway, build_cross_validation_card
from .schema import (
    CV_EXPIRED,
    CV_FAILED,
    CV_LINKED,
    CV_PENDING,
    CV_SUCCESS,
    NOTIFY_CV_DIVERGENCE,
    ROLE_APRENDIZ,
    ROLE_ESTOQUISTA,
    CrossValidationPair,
    DuplicatePrimaryError,
    FieldResponse,
    Submission,
    TemplateField,
)
from .stores import ConfigStore, CrossValidationStore, DirectoryStore
from ..util.logging import logger

KEY_FIELD_MARKERS = ("nota", "nf", "numero")
VALUE_FIELD_MARKERS = ("valor", "total", "quantia")

OUTCOME_SKIPPED = "skipped"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_ERROR = "error"

RULE_PREFIX = "prefix"
RULE_TIME_PROXIMITY = "time_proximity"


@dataclass
class SiblingMatch:
    matched: bool
    reason: str = ""
    rule: Optional[str] = None


@dataclass
class ReconciliationResult:
    outcome: str  # skipped, duplicate, pendente, sucesso, falhou, notas_diferentes, error
    pair_id: Optional[int] = None
    error: Optional[str] = None


def classify_role(function_name: Optional[str]) -> Optional[str]:
    """Map a job title to one of the two reporting roles, or None."""
    if not function_name:
        return None
    name = function_name.lower()
    if "estoque" in name or "estoquista" in name:
        return ROLE_ESTOQUISTA
    if "aprendiz" in name:
        return ROLE_APRENDIZ
    return None


def find_field(fields: List[TemplateField], markers) -> Optional[TemplateField]:
    for f in fields:
        name = f.name.lower()
        if any(marker in name for marker in markers):
            return f
    return None


def extract_key(response: Optional[FieldResponse]) -> Optional[str]:
    if response is None:
        return None
    if response.value_text and response.value_text.strip():
        return response.value_text.strip()
    if response.value_number is not None:
        number = response.value_number
        return str(int(number)) if float(number).is_integer() else str(number)
    return None


def extract_amount(response: Optional[FieldResponse]) -> Optional[float]:
    if response is None:
        return None
    if response.value_number is not None:
        return float(response.value_number)
    if response.value_text:
        try:
            return float(response.value_text.strip().replace(",", "."))
        except ValueError:
            return None
    return None


def match_siblings(key_a: str, key_b: str, t_a: datetime, t_b: datetime,
                   window_minutes: int = SIBLING_WINDOW_MINUTES,
                   tight_window_minutes: int = SIBLING_TIGHT_WINDOW_MINUTES) -> SiblingMatch:
    """Decide whether two document numbers probably refer to the same paper.

    Equal 3-digit numeric prefixes match within `window_minutes`; any two
    documents match within `tight_window_minutes` (typo or transposition).
    """
    digits_a = re.sub(r"\D", "", key_a or "")
    digits_b = re.sub(r"\D", "", key_b or "")
    prefix_a = digits_a[:3]
    same_prefix = len(prefix_a) >= 3 and prefix_a == digits_b[:3]

    minutes = abs((t_a - t_b).total_seconds()) / 60
    rounded = round(minutes)

    if same_prefix and minutes <= window_minutes:
        return SiblingMatch(
            True,
            f'Notas com prefixo "{prefix_a}" e preenchidas com {rounded} minutos de diferença',
            RULE_PREFIX,
        )

    if minutes <= tight_window_minutes:
        return SiblingMatch(
            True,
            f"Notas preenchidas com apenas {rounded} minutos de diferença (possível erro de digitação)",
            RULE_TIME_PROXIMITY,
        )

    return SiblingMatch(False)


class CrossValidationEngine:
    """Pairs receiving submissions of complementary roles and flags divergences."""

    def __init__(self, cross_validation_store: CrossValidationStore, config_store: ConfigStore,
                 directory_store: DirectoryStore, gateway: NotificationGateway,
                 now: Callable[[], datetime] = datetime.now, tolerance: float = None):
        self.pairs = cross_validation_store
        self.config_store = config_store
        self.directory = directory_store
        self.gateway = gateway
        self.now = now
        self.tolerance = CROSS_VALIDATION_TOLERANCE if tolerance is None else tolerance

    def process(self, submission: Submission, responses: List[FieldResponse],
                fields: List[TemplateField] = None, role: str = None) -> ReconciliationResult:
        """Reconcile one committed submission. Never raises."""
        try:
            return self._process(submission, responses, fields, role)
        except Exception as e:
            logger.log_operation("cross_validation", "failed", {
                "submission_id": submission.id,
                "store_id": submission.store_id,
                "error": str(e)[:200],
            })
            return ReconciliationResult(OUTCOME_ERROR, error=str(e))

    def _process(self, submission, responses, fields, role) -> ReconciliationResult:
        template = self.config_store.get_template(submission.template_id)
        if template is None or template.category != RECONCILABLE_CATEGORY:
            return ReconciliationResult(OUTCOME_SKIPPED)

        if fields is None:
            fields = self.config_store.list_template_fields(submission.template_id)

        key_field = find_field(fields, KEY_FIELD_MARKERS)
        if key_field is None:
            return ReconciliationResult(OUTCOME_SKIPPED)
        value_field = find_field(fields, VALUE_FIELD_MARKERS)

        by_field = {r.field_id: r for r in responses}
        document_number = extract_key(by_field.get(key_field.id))
        if not document_number:
            return ReconciliationResult(OUTCOME_SKIPPED)
        amount = extract_amount(by_field.get(value_field.id)) if value_field else None

        if role is None:
            user = self.directory.get_user(submission.user_id)
            role = classify_role(user.function_name if user else None)
        else:
            role = classify_role(role)
        if role is None:
            return ReconciliationResult(OUTCOME_SKIPPED)

        # Sibling windows and pair age use capture time, not drain time
        captured_at = submission.created_at

        existing = self.pairs.get_by_document(submission.store_id, document_number)
        if existing is not None:
            return self._fill_exact(existing, role, submission, amount)

        sibling = self._find_sibling(submission.store_id, role, document_number, captured_at)
        if sibling is not None:
            candidate, match = sibling
            return self._link_siblings(candidate, match, role, submission, document_number, amount, captured_at)

        pair = CrossValidationPair(
            id=None,
            store_id=submission.store_id,
            document_number=document_number,
            status=CV_PENDING,
            created_at=captured_at,
            is_primary=True,
        )
        pair.set_leg(role, submission.id, amount)
        try:
            pair.id = self.pairs.insert(pair)
        except DuplicatePrimaryError:
            # Lost the race against another device; fold into the winner
            winner = self.pairs.get_by_document(submission.store_id, document_number)
            if winner is None:
                raise
            logger.log_reconciliation("primary_race", submission.store_id, document_number, {"winner": winner.id})
            return self._fill_exact(winner, role, submission, amount)

        logger.log_reconciliation(CV_PENDING, submission.store_id, document_number, {"pair_id": pair.id, "role": role})
        return ReconciliationResult(CV_PENDING, pair.id)

    def _fill_exact(self, pair: CrossValidationPair, role: str, submission: Submission,
                    amount: Optional[float]) -> ReconciliationResult:
        if pair.leg_submission(role) is not None:
            logger.log_reconciliation(OUTCOME_DUPLICATE, pair.store_id, pair.document_number, {
                "pair_id": pair.id, "role": role, "submission_id": submission.id,
            })
            return ReconciliationResult(OUTCOME_DUPLICATE, pair.id)

        pair.set_leg(role, submission.id, amount)
        if pair.has_both_values:
            pair.difference = abs(pair.estoquista_value - pair.aprendiz_value)
            pair.status = CV_SUCCESS if pair.difference <= self.tolerance else CV_FAILED
            pair.validated_at = self.now()
        self.pairs.update(pair)

        logger.log_reconciliation(pair.status, pair.store_id, pair.document_number, {
            "pair_id": pair.id, "role": role, "difference": pair.difference,
        })

        if pair.status == CV_FAILED:
            self._alert(pair)
            self._notify_admins(pair)
        return ReconciliationResult(pair.status, pair.id)

    def _find_sibling(self, store_id: int, role: str, document_number: str, captured_at: datetime):
        since = captured_at - timedelta(minutes=SIBLING_WINDOW_MINUTES)
        for candidate in self.pairs.list_sibling_candidates(store_id, role, since):
            if candidate.document_number == document_number:
                continue
            match = match_siblings(document_number, candidate.document_number, captured_at, candidate.created_at)
            if match.matched:
                return candidate, match
        return None

    def _link_siblings(self, original: CrossValidationPair, match: SiblingMatch, role: str,
                       submission: Submission, document_number: str, amount: Optional[float],
                       captured_at: datetime) -> ReconciliationResult:
        original.set_leg(role, submission.id, amount)
        original.status = CV_LINKED
        original.match_reason = match.reason
        if original.has_both_values:
            original.difference = abs(original.estoquista_value - original.aprendiz_value)
            original.validated_at = self.now()

        secondary = CrossValidationPair(
            id=None,
            store_id=submission.store_id,
            document_number=document_number,
            status=CV_LINKED,
            difference=original.difference,
            validated_at=original.validated_at,
            created_at=captured_at,
            linked_pair_id=original.id,
            match_reason=match.reason,
            is_primary=False,
        )
        secondary.set_leg(role, submission.id, amount)
        secondary.id = self.pairs.insert(secondary)

        original.linked_pair_id = secondary.id
        self.pairs.update(original)

        logger.log_reconciliation(CV_LINKED, original.store_id, original.document_number, {
            "pair_id": original.id,
            "linked_pair_id": secondary.id,
            "linked_document": document_number,
            "rule": match.rule,
        })

        self._alert(original, linked_document=document_number)
        if original.difference is not None and original.difference > self.tolerance:
            self._notify_admins(original)
        return ReconciliationResult(CV_LINKED, original.id)

    def expire_stale_pairs(self, max_age_minutes: int = None) -> int:
        """Mark primary pairs left pending past the window as expired and alert."""
        window = PAIR_EXPIRY_MINUTES if max_age_minutes is None else max_age_minutes
        cutoff = self.now() - timedelta(minutes=window)

        expired = 0
        for pair in self.pairs.list_stale_pending(cutoff):
            pair.status = CV_EXPIRED
            self.pairs.update(pair)
            expired += 1
            logger.log_reconciliation(CV_EXPIRED, pair.store_id, pair.document_number, {"pair_id": pair.id})
            self._alert(pair)

        return expired

    def _store_name(self, store_id: int) -> str:
        store = self.directory.get_store(store_id)
        return store.name if store else f"Loja {store_id}"

    def _alert(self, pair: CrossValidationPair, linked_document: str = None):
        card = build_cross_validation_card(pair, self._store_name(pair.store_id), linked_document)
        self.gateway.send_chat_alert(card)

    def _notify_admins(self, pair: CrossValidationPair):
        store_name = self._store_name(pair.store_id)
        for admin in self.directory.list_active_admins():
            self.gateway.create_notification(
                admin.id,
                NOTIFY_CV_DIVERGENCE,
                f"Divergência na nota {pair.document_number}",
                message=f"{store_name}: diferença de {pair.difference:.2f} entre estoquista e aprendiz",
                link="/admin/validacoes",
                metadata={"cross_validation_id": pair.id, "store_id": pair.store_id},
            )
