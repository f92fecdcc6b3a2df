"""ORM model behavior tests.

Tests for:
- Model field defaults
- Unique constraints (Profile.username, segment membership)
- JSON fields (Customer.tags, CustomerSegment.criteria / auto_actions)
- Relationships between models
"""
import pytest
from sqlalchemy.exc import IntegrityError

from database.models import (
    AutomationEvent, AutomationLog, AutomationRule, Customer, CustomerSegment,
    CustomerSegmentMember, Profile, EVENT_PENDING, LOG_PENDING,
)
from tests.factories import NOW


class TestDefaults:

    def test_customer_defaults(self, temp_db, profile):
        with temp_db.get_session() as session:
            customer = Customer(profile_id=profile.id)
            session.add(customer)
            session.commit()
            session.refresh(customer)
            assert customer.name == ""
            assert customer.source == "manual"
            assert customer.total_bookings == 0
            assert customer.total_messages == 0
            assert customer.tags == []
            assert customer.first_seen_at is not None
            assert customer.last_seen_at is not None

    def test_segment_defaults(self, temp_db, profile):
        with temp_db.get_session() as session:
            segment = CustomerSegment(
                profile_id=profile.id, name="S",
                criteria={"match": "all", "rules": []}
            )
            session.add(segment)
            session.commit()
            session.refresh(segment)
            assert segment.type == "custom"
            assert segment.color == "#6B7280"
            assert segment.icon == "users"
            assert segment.auto_actions == []
            assert segment.customer_count == 0
            assert segment.is_active is True

    def test_rule_log_and_event_defaults(self, temp_db, profile):
        with temp_db.get_session() as session:
            rule = AutomationRule(
                profile_id=profile.id, name="r",
                trigger_type="after_booking", action_type="send_email"
            )
            session.add(rule)
            session.flush()
            log = AutomationLog(rule_id=rule.id, customer_id=1,
                                profile_id=profile.id, scheduled_at=NOW)
            event = AutomationEvent(trigger_type="after_booking",
                                    customer_id=1, profile_id=profile.id)
            session.add_all([log, event])
            session.commit()

            assert rule.delay_hours == 0
            assert rule.is_active is True
            assert log.status == LOG_PENDING
            assert log.sent_at is None
            assert log.claim_token is None
            assert event.status == EVENT_PENDING


class TestConstraints:

    def test_profile_username_unique(self, temp_db):
        with temp_db.get_session() as session:
            session.add(Profile(username="dup"))
            session.commit()
            session.add(Profile(username="dup"))
            with pytest.raises(IntegrityError):
                session.commit()

    def test_segment_member_unique(self, temp_db, profile):
        with temp_db.get_session() as session:
            segment = CustomerSegment(profile_id=profile.id, name="S",
                                      criteria={"match": "all", "rules": []})
            customer = Customer(profile_id=profile.id)
            session.add_all([segment, customer])
            session.flush()
            session.add(CustomerSegmentMember(segment_id=segment.id,
                                              customer_id=customer.id))
            session.commit()
            session.add(CustomerSegmentMember(segment_id=segment.id,
                                              customer_id=customer.id))
            with pytest.raises(IntegrityError):
                session.commit()


class TestJsonFields:

    def test_tags_roundtrip(self, temp_db, profile):
        with temp_db.get_session() as session:
            customer = Customer(profile_id=profile.id, tags=["vip", "東京"])
            session.add(customer)
            session.commit()
            customer_id = customer.id

        loaded = temp_db.customers.get_by_id(Customer, customer_id)
        assert loaded.tags == ["vip", "東京"]

    def test_criteria_and_auto_actions(self, temp_db, profile):
        criteria = {"match": "any", "rules": [
            {"field": "isVIP", "operator": "eq", "value": True}
        ]}
        actions = [{"type": "send_email", "delay_hours": 24}]
        with temp_db.get_session() as session:
            segment = CustomerSegment(profile_id=profile.id, name="VIP",
                                      criteria=criteria, auto_actions=actions)
            session.add(segment)
            session.commit()
            segment_id = segment.id

        loaded = temp_db.segments.get_by_id(CustomerSegment, segment_id)
        assert loaded.criteria == criteria
        assert loaded.auto_actions == actions


class TestRelationships:

    def test_profile_customers(self, temp_db, profile):
        temp_db.customers.get_or_create(profile.id, name="A")
        temp_db.customers.get_or_create(profile.id, name="B")
        with temp_db.get_session() as session:
            loaded = session.get(Profile, profile.id)
            assert sorted(c.name for c in loaded.customers) == ["A", "B"]
            assert all(c.profile.username == "salon-a" for c in loaded.customers)
