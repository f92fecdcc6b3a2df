"""System repository tests.

Tests for:
- AutomationLogRepository: create_pending, has_open, claim_due, finish,
  expire_stale_claims, get_by_profile
- AutomationEventRepository: enqueue, get_pending, mark, count_by_status
"""
from datetime import timedelta

import pytest

from database.models import (
    AutomationEvent, AutomationLog, EVENT_DISPATCHED, EVENT_FAILED,
    EVENT_PENDING, LOG_FAILED, LOG_PENDING, LOG_PROCESSING, LOG_SENT,
    LOG_SKIPPED,
)
from tests.factories import NOW


@pytest.fixture
def rule(temp_db, profile):
    return temp_db.automation_rules.save(
        profile.id, "r", "after_booking", "send_email"
    )


def pending(db, rule, customer_id=1, at=NOW):
    return db.automation_logs.create_pending(rule.id, customer_id, rule.profile_id, at)


# ============================================================
# AutomationLogRepository Tests
# ============================================================
class TestAutomationLogRepository:
    """Tests for AutomationLogRepository."""

    def test_create_pending(self, temp_db, rule):
        log = pending(temp_db, rule)
        assert log.status == LOG_PENDING
        assert log.scheduled_at == NOW
        assert log.sent_at is None

    def test_has_open(self, temp_db, rule):
        assert temp_db.automation_logs.has_open(rule.id, 1) is False
        log = pending(temp_db, rule)
        assert temp_db.automation_logs.has_open(rule.id, 1) is True
        assert temp_db.automation_logs.has_open(rule.id, 2) is False

        temp_db.automation_logs.claim_due(NOW, 10)
        assert temp_db.automation_logs.has_open(rule.id, 1) is True

        temp_db.automation_logs.finish(log.id, LOG_SKIPPED, NOW)
        assert temp_db.automation_logs.has_open(rule.id, 1) is False

    def test_claim_due_only_due_rows(self, temp_db, rule):
        due = pending(temp_db, rule, at=NOW - timedelta(hours=1))
        pending(temp_db, rule, customer_id=2, at=NOW + timedelta(hours=1))

        claimed = temp_db.automation_logs.claim_due(NOW, 10, claim_token="t1")
        assert [log.id for log in claimed] == [due.id]
        assert claimed[0].claim_token == "t1"
        assert claimed[0].claimed_at == NOW

    def test_claim_due_is_exclusive(self, temp_db, rule):
        pending(temp_db, rule)
        first = temp_db.automation_logs.claim_due(NOW, 10)
        second = temp_db.automation_logs.claim_due(NOW, 10)
        assert len(first) == 1
        assert second == []

    def test_claim_due_respects_limit_and_order(self, temp_db, rule):
        late = pending(temp_db, rule, customer_id=1, at=NOW - timedelta(minutes=1))
        early = pending(temp_db, rule, customer_id=2, at=NOW - timedelta(minutes=9))
        claimed = temp_db.automation_logs.claim_due(NOW, 1)
        assert [log.id for log in claimed] == [early.id]
        assert temp_db.automation_logs.get_by_id(AutomationLog, late.id).status == LOG_PENDING

    def test_finish_only_from_processing(self, temp_db, rule):
        log = pending(temp_db, rule)
        # not yet claimed
        assert temp_db.automation_logs.finish(log.id, LOG_SENT, NOW) is False

        temp_db.automation_logs.claim_due(NOW, 10)
        assert temp_db.automation_logs.finish(log.id, LOG_FAILED, NOW, error="boom") is True
        # terminal rows are never rewritten
        assert temp_db.automation_logs.finish(log.id, LOG_SENT, NOW) is False

        stored = temp_db.automation_logs.get_by_id(AutomationLog, log.id)
        assert stored.status == LOG_FAILED
        assert stored.error == "boom"
        assert stored.sent_at == NOW

    def test_finish_rejects_non_terminal(self, temp_db):
        with pytest.raises(ValueError):
            temp_db.automation_logs.finish(1, LOG_PROCESSING, NOW)

    def test_expire_stale_claims(self, temp_db, rule):
        old = pending(temp_db, rule, customer_id=1)
        temp_db.automation_logs.claim_due(NOW, 10)
        fresh = pending(temp_db, rule, customer_id=2, at=NOW + timedelta(minutes=20))
        temp_db.automation_logs.claim_due(NOW + timedelta(minutes=20), 10)

        expired = temp_db.automation_logs.expire_stale_claims(
            claimed_before=NOW + timedelta(minutes=10),
            now=NOW + timedelta(minutes=30)
        )
        assert expired == 1
        assert temp_db.automation_logs.get_by_id(AutomationLog, old.id).status == LOG_FAILED
        assert temp_db.automation_logs.get_by_id(AutomationLog, fresh.id).status == LOG_PROCESSING

        # expired rows are not returned to the queue
        assert temp_db.automation_logs.claim_due(NOW + timedelta(days=1), 10) == []

    def test_get_by_profile(self, temp_db, profile, rule):
        pending(temp_db, rule, customer_id=1, at=NOW - timedelta(hours=2))
        newest = pending(temp_db, rule, customer_id=2, at=NOW)
        logs = temp_db.automation_logs.get_by_profile(profile.id)
        assert logs[0].id == newest.id
        assert len(temp_db.automation_logs.get_by_profile(profile.id, limit=1)) == 1
        assert temp_db.automation_logs.get_by_profile(profile.id, status=LOG_SENT) == []


# ============================================================
# AutomationEventRepository Tests
# ============================================================
class TestAutomationEventRepository:
    """Tests for AutomationEventRepository."""

    def test_enqueue_and_get_pending(self, temp_db, profile):
        first = temp_db.automation_events.enqueue("after_booking", 1, profile.id)
        second = temp_db.automation_events.enqueue("after_contact", 2, profile.id)
        events = temp_db.automation_events.get_pending(10)
        assert [e.id for e in events] == [first, second]
        assert [e.id for e in temp_db.automation_events.get_pending(1)] == [first]

    def test_mark_is_conditional(self, temp_db, profile):
        event_id = temp_db.automation_events.enqueue("after_booking", 1, profile.id)
        assert temp_db.automation_events.mark(event_id, EVENT_DISPATCHED, NOW) is True
        assert temp_db.automation_events.mark(event_id, EVENT_FAILED, NOW) is False

        event = temp_db.automation_events.get_by_id(AutomationEvent, event_id)
        assert event.status == EVENT_DISPATCHED
        assert event.dispatched_at == NOW
        assert temp_db.automation_events.get_pending(10) == []

    def test_mark_rejects_pending(self, temp_db):
        with pytest.raises(ValueError):
            temp_db.automation_events.mark(1, EVENT_PENDING, NOW)

    def test_count_by_status(self, temp_db, profile):
        a = temp_db.automation_events.enqueue("after_booking", 1, profile.id)
        temp_db.automation_events.enqueue("after_booking", 2, profile.id)
        temp_db.automation_events.mark(a, EVENT_FAILED, NOW, error="x")
        assert temp_db.automation_events.count_by_status() == {
            EVENT_FAILED: 1, EVENT_PENDING: 1
        }
