"""
Cross validation of receiving checklists: exact pairing, sibling linking and expiry.
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from conftest import FIELD_DOCUMENT, FIELD_TOTAL, OPENING_TEMPLATE, RECEIVING_TEMPLATE, STORE_ID
from nocheck.core.reconcile import (
    OUTCOME_DUPLICATE,
    OUTCOME_ERROR,
    OUTCOME_SKIPPED,
    RULE_PREFIX,
    RULE_TIME_PROXIMITY,
    CrossValidationEngine,
    classify_role,
    extract_amount,
    extract_key,
    match_siblings,
)
from nocheck.core.schema import (
    CV_EXPIRED,
    CV_FAILED,
    CV_LINKED,
    CV_PENDING,
    CV_SUCCESS,
    NOTIFY_CV_DIVERGENCE,
    DuplicatePrimaryError,
    CrossValidationPair,
    FieldResponse,
    Submission,
)


@pytest.fixture
def engine(pair_store, config_store, directory, gateway, clock):
    return CrossValidationEngine(pair_store, config_store, directory, gateway, now=clock)


_ids = iter(range(1, 10_000))


def submit(engine, clock, user_id, document, total, template_id=RECEIVING_TEMPLATE, role=None, captured_at=None):
    submission_id = next(_ids)
    submission = Submission(
        id=submission_id,
        local_id=f"local-{submission_id}",
        template_id=template_id,
        store_id=STORE_ID,
        user_id=user_id,
        created_at=captured_at or clock(),
        completed_at=clock(),
    )
    responses = [
        FieldResponse(field_id=FIELD_DOCUMENT, value_text=document),
        FieldResponse(field_id=FIELD_TOTAL, value_number=total),
    ]
    return engine.process(submission, responses, role=role)


def card_title(card):
    return card["attachments"][0]["content"]["body"][0]["text"]


class TestExactPairing:
    """Both roles report the same document number."""

    def test_first_leg_creates_pending_pair(self, engine, pair_store, clock):
        result = submit(engine, clock, "u-est", "555123", 100.0)

        assert result.outcome == CV_PENDING
        pair = pair_store.get(result.pair_id)
        assert pair.estoquista_value == 100.0
        assert pair.aprendiz_submission_id is None
        assert pair.is_primary is True
        assert pair.created_at == clock()

    def test_matching_totals_succeed_without_alert(self, engine, pair_store, gateway, clock):
        submit(engine, clock, "u-est", "555123", 100.0)
        clock.advance(minutes=40)
        result = submit(engine, clock, "u-apr", "555123", 100.0)

        pair = pair_store.get(result.pair_id)
        assert pair.status == CV_SUCCESS
        assert pair.difference == 0
        assert pair.validated_at == clock()
        assert gateway.chat_alerts == []
        assert gateway.notifications == []

    def test_divergent_totals_fail_and_alert_once(self, engine, pair_store, gateway, clock):
        submit(engine, clock, "u-est", "555123", 100.0)
        result = submit(engine, clock, "u-apr", "555123", 150.0)

        pair = pair_store.get(result.pair_id)
        assert pair.status == CV_FAILED
        assert pair.difference == 50.0
        assert len(gateway.chat_alerts) == 1
        assert card_title(gateway.chat_alerts[0]) == "Divergência na Validação Cruzada"
        assert {n.user_id for n in gateway.notifications} == {"admin-1", "admin-2"}
        assert all(n.type == NOTIFY_CV_DIVERGENCE for n in gateway.notifications)

    def test_difference_within_tolerance_succeeds(self, engine, pair_store, clock):
        submit(engine, clock, "u-est", "555123", 100.0)
        result = submit(engine, clock, "u-apr", "555123", 100.005)
        assert result.outcome == CV_SUCCESS

    def test_same_role_twice_is_duplicate(self, engine, pair_store, clock):
        first = submit(engine, clock, "u-est", "555123", 100.0)
        second = submit(engine, clock, "u-est", "555123", 120.0)

        assert second.outcome == OUTCOME_DUPLICATE
        assert second.pair_id == first.pair_id
        assert pair_store.get(first.pair_id).estoquista_value == 100.0

    def test_missing_amount_leaves_pair_pending(self, engine, pair_store, clock):
        submit(engine, clock, "u-est", "555123", None)
        result = submit(engine, clock, "u-apr", "555123", 100.0)

        assert result.outcome == CV_PENDING
        assert pair_store.get(result.pair_id).aprendiz_submission_id is not None


class TestSkipped:
    """Submissions outside the receiving flow are ignored."""

    def test_other_category_is_skipped(self, engine, clock):
        assert submit(engine, clock, "u-est", "1", 1.0, template_id=OPENING_TEMPLATE).outcome == OUTCOME_SKIPPED

    def test_unknown_role_is_skipped(self, engine, pair_store, clock):
        assert submit(engine, clock, "u-gerente", "555123", 1.0).outcome == OUTCOME_SKIPPED
        assert pair_store.list() == []

    def test_explicit_role_overrides_profile(self, engine, pair_store, clock):
        result = submit(engine, clock, "u-gerente", "555123", 1.0, role="Jovem Aprendiz")
        assert result.outcome == CV_PENDING
        assert pair_store.get(result.pair_id).aprendiz_value == 1.0

    def test_blank_document_is_skipped(self, engine, clock):
        assert submit(engine, clock, "u-est", "   ", 1.0).outcome == OUTCOME_SKIPPED

    def test_store_failure_is_reported_not_raised(self, config_store, directory, gateway, clock):
        broken = MagicMock()
        broken.get_by_document.side_effect = RuntimeError("locked")
        engine = CrossValidationEngine(broken, config_store, directory, gateway, now=clock)

        result = submit(engine, clock, "u-est", "555123", 1.0)

        assert result.outcome == OUTCOME_ERROR
        assert "locked" in result.error


class TestSiblingLinking:
    """Different document numbers that probably describe the same invoice."""

    def test_time_proximity_links_both_pairs(self, engine, pair_store, gateway, clock):
        original = submit(engine, clock, "u-est", "100123", 100.0)
        clock.advance(minutes=5)
        result = submit(engine, clock, "u-apr", "200999", 100.0)

        assert result.outcome == CV_LINKED
        assert result.pair_id == original.pair_id

        primary = pair_store.get(original.pair_id)
        secondary = pair_store.get(primary.linked_pair_id)
        assert primary.status == CV_LINKED
        assert secondary.status == CV_LINKED
        assert secondary.is_primary is False
        assert secondary.document_number == "200999"
        assert secondary.linked_pair_id == primary.id
        assert "5 minutos" in primary.match_reason
        assert "erro de digitação" in primary.match_reason

        assert len(gateway.chat_alerts) == 1
        assert card_title(gateway.chat_alerts[0]) == "Notas Fiscais Diferentes Vinculadas"
        # Equal totals: alert only, no admin notifications
        assert gateway.notifications == []

    def test_linked_pair_with_divergent_totals_notifies_admins(self, engine, gateway, clock):
        submit(engine, clock, "u-est", "100123", 100.0)
        clock.advance(minutes=3)
        submit(engine, clock, "u-apr", "200999", 80.0)

        assert len(gateway.chat_alerts) == 1
        assert {n.user_id for n in gateway.notifications} == {"admin-1", "admin-2"}

    def test_shared_prefix_links_within_wide_window(self, engine, pair_store, clock):
        original = submit(engine, clock, "u-est", "123456", 10.0)
        clock.advance(minutes=20)
        result = submit(engine, clock, "u-apr", "123999", 10.0)

        assert result.outcome == CV_LINKED
        assert 'prefixo "123"' in pair_store.get(original.pair_id).match_reason

    def test_windows_compare_capture_times(self, engine, pair_store, clock):
        """Filled in 5 minutes apart while offline, synced 40 minutes apart."""
        first_capture = clock()
        original = submit(engine, clock, "u-est", "100123", 100.0)
        clock.advance(minutes=40)

        result = submit(engine, clock, "u-apr", "200999", 100.0, captured_at=first_capture + timedelta(minutes=5))

        assert result.outcome == CV_LINKED
        primary = pair_store.get(original.pair_id)
        assert "5 minutos" in primary.match_reason
        assert pair_store.get(primary.linked_pair_id).created_at == first_capture + timedelta(minutes=5)

    def test_different_prefix_outside_tight_window_creates_new_pair(self, engine, clock):
        submit(engine, clock, "u-est", "100123", 10.0)
        clock.advance(minutes=15)
        result = submit(engine, clock, "u-apr", "200999", 10.0)
        assert result.outcome == CV_PENDING

    def test_candidates_older_than_window_are_ignored(self, engine, pair_store, clock):
        original = submit(engine, clock, "u-est", "123456", 10.0)
        clock.advance(minutes=31)
        result = submit(engine, clock, "u-apr", "123999", 10.0)

        assert result.outcome == CV_PENDING
        assert result.pair_id != original.pair_id
        assert pair_store.get(original.pair_id).status == CV_PENDING

    def test_same_role_is_never_a_sibling(self, engine, clock):
        submit(engine, clock, "u-est", "100123", 10.0)
        clock.advance(minutes=1)
        assert submit(engine, clock, "u-est", "100124", 10.0).outcome == CV_PENDING


class TestConcurrentPrimary:
    """Two devices create the same primary pair at once."""

    def test_unique_primary_is_enforced_by_store(self, pair_store, clock):
        pair = CrossValidationPair(id=None, store_id=STORE_ID, document_number="777", created_at=clock())
        pair_store.insert(pair)
        with pytest.raises(DuplicatePrimaryError):
            pair_store.insert(CrossValidationPair(id=None, store_id=STORE_ID, document_number="777",
                                                  created_at=clock()))

    def test_loser_folds_into_winner(self, pair_store, config_store, directory, gateway, clock):
        winner = CrossValidationPair(id=None, store_id=STORE_ID, document_number="777", created_at=clock(),
                                     estoquista_submission_id=900, estoquista_value=50.0)
        winner.id = pair_store.insert(winner)

        racing = MagicMock(wraps=pair_store)
        # First lookup happens before the other device's insert becomes visible
        racing.get_by_document.side_effect = [None, pair_store.get_by_document(STORE_ID, "777")]
        engine = CrossValidationEngine(racing, config_store, directory, gateway, now=clock)

        result = submit(engine, clock, "u-apr", "777", 50.0)

        assert result.outcome == CV_SUCCESS
        assert result.pair_id == winner.id
        assert len(pair_store.list()) == 1


class TestExpiry:

    def test_stale_pending_pairs_expire_and_alert(self, engine, pair_store, gateway, clock):
        stale = submit(engine, clock, "u-est", "888000", 10.0)
        clock.advance(minutes=45)
        fresh = submit(engine, clock, "u-est", "999000", 10.0)
        clock.advance(minutes=20)

        assert engine.expire_stale_pairs() == 1
        assert pair_store.get(stale.pair_id).status == CV_EXPIRED
        assert pair_store.get(fresh.pair_id).status == CV_PENDING
        assert card_title(gateway.chat_alerts[-1]) == "Nota Fiscal Sem Par Após 1 Hora"

    def test_expiry_skips_completed_and_secondary_pairs(self, engine, pair_store, clock):
        submit(engine, clock, "u-est", "100123", 10.0)
        clock.advance(minutes=2)
        submit(engine, clock, "u-apr", "200999", 10.0)
        clock.advance(hours=3)

        assert engine.expire_stale_pairs() == 0

    def test_custom_window(self, engine, clock):
        submit(engine, clock, "u-est", "888000", 10.0)
        clock.advance(minutes=11)
        assert engine.expire_stale_pairs(max_age_minutes=10) == 1


class TestHelpers:

    def test_classify_role(self):
        assert classify_role("Estoquista") == "estoquista"
        assert classify_role("Auxiliar de Estoque") == "estoquista"
        assert classify_role("Jovem Aprendiz") == "aprendiz"
        assert classify_role("Gerente") is None
        assert classify_role(None) is None

    def test_extract_key_and_amount(self):
        assert extract_key(FieldResponse(field_id=1, value_text=" 00123 ")) == "00123"
        assert extract_key(FieldResponse(field_id=1, value_number=123.0)) == "123"
        assert extract_key(FieldResponse(field_id=1)) is None
        assert extract_amount(FieldResponse(field_id=1, value_text="1234,50")) == 1234.5
        assert extract_amount(FieldResponse(field_id=1, value_text="abc")) is None

    def test_match_siblings_rules(self):
        t0 = datetime(2026, 3, 2, 9, 0)

        prefix = match_siblings("123456", "123999", t0, t0 + timedelta(minutes=25))
        assert (prefix.matched, prefix.rule) == (True, RULE_PREFIX)

        tight = match_siblings("100123", "200999", t0, t0 + timedelta(minutes=10))
        assert (tight.matched, tight.rule) == (True, RULE_TIME_PROXIMITY)

        assert match_siblings("100123", "200999", t0, t0 + timedelta(minutes=11)).matched is False
        assert match_siblings("123456", "123999", t0, t0 + timedelta(minutes=31)).matched is False

    def test_short_prefix_does_not_count(self):
        t0 = datetime(2026, 3, 2, 9, 0)
        assert match_siblings("12", "12", t0, t0 + timedelta(minutes=20)).matched is False
