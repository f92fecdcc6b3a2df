"""DatabaseManager facade tests.

Tests for the convenience methods on DatabaseManager:
- save_customer / get_customer_info
- create_automation_rule / list_automation_rules
- get_automation_logs
- get_event_stats / get_profile_ids
- Property accessors and sub-repository attributes
"""
import pytest

from database.types import AutomationRuleError
from database.models import LOG_PENDING
from tests.factories import NOW


class TestManagerProperties:
    """Test DatabaseManager property accessors."""

    def test_database_url_property(self, temp_db):
        assert temp_db.database_url.startswith("sqlite:///")

    def test_engine_property(self, temp_db):
        assert temp_db.engine is not None

    def test_sub_repositories_accessible(self, temp_db):
        """All sub-repositories should be accessible attributes."""
        for name in ("profiles", "customers", "referrals", "stamps", "coupons",
                     "segments", "automation_rules", "automation_logs",
                     "automation_events"):
            assert getattr(temp_db, name) is not None

    def test_create_tables_is_idempotent(self, temp_db):
        temp_db.create_tables()
        temp_db.create_tables()


class TestManagerCustomers:

    def test_save_customer_and_info(self, temp_db, profile):
        customer_id = temp_db.save_customer(profile.id, {
            "name": "Hanako", "email": "h@example.com",
            "source": "booking", "seen_at": NOW,
        })
        info = temp_db.get_customer_info(customer_id)
        assert info["name"] == "Hanako"
        assert info["email"] == "h@example.com"
        assert info["source"] == "booking"
        assert info["first_seen_at"] == NOW
        assert info["tags"] == []

    def test_save_customer_dedups(self, temp_db, profile):
        a = temp_db.save_customer(profile.id, {"email": "h@example.com"})
        b = temp_db.save_customer(profile.id, {"email": "h@example.com"})
        assert a == b

    def test_customer_info_missing(self, temp_db):
        assert temp_db.get_customer_info(99999) is None


class TestManagerAutomation:

    def test_create_and_list_rules(self, temp_db, profile):
        rule_id = temp_db.create_automation_rule(profile.id, {
            "name": "Thanks", "trigger_type": "after_booking",
            "action_type": "send_email", "delay_hours": 2,
        })
        rules = temp_db.list_automation_rules(profile.id)
        assert len(rules) == 1
        assert rules[0]["id"] == rule_id
        assert rules[0]["delay_hours"] == 2
        assert rules[0]["sent_count"] == 0

    def test_create_rule_invalid(self, temp_db, profile):
        with pytest.raises(AutomationRuleError):
            temp_db.create_automation_rule(profile.id, {"name": "x"})

    def test_get_automation_logs(self, temp_db, profile):
        rule_id = temp_db.create_automation_rule(profile.id, {
            "name": "Thanks", "trigger_type": "after_booking",
            "action_type": "send_email",
        })
        temp_db.automation_logs.create_pending(rule_id, 7, profile.id, NOW)

        logs = temp_db.get_automation_logs(profile.id)
        assert logs == [{
            "id": logs[0]["id"], "rule_id": rule_id, "customer_id": 7,
            "status": LOG_PENDING, "scheduled_at": NOW, "sent_at": None,
            "error": None,
        }]
        assert temp_db.get_automation_logs(profile.id, status="sent") == []

    def test_event_stats_empty(self, temp_db):
        assert temp_db.get_event_stats() == {}

    def test_get_profile_ids(self, temp_db, profile):
        other = temp_db.profiles.get_or_create("salon-b")
        assert sorted(temp_db.get_profile_ids()) == sorted([profile.id, other.id])
