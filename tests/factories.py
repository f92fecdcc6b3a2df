"""Test data helpers shared across test modules."""
from datetime import datetime, timedelta

from business.sender import MessageSender
from database.models import Customer

NOW = datetime(2024, 6, 1, 12, 0, 0)


def make_customer(**overrides) -> Customer:
    """Build an unsaved Customer with every field populated."""
    fields = {
        "id": 1,
        "profile_id": 1,
        "name": "Taro",
        "email": None,
        "phone": None,
        "line_user_id": None,
        "source": "manual",
        "total_bookings": 0,
        "total_messages": 0,
        "first_seen_at": NOW - timedelta(days=10),
        "last_seen_at": NOW - timedelta(days=10),
        "tags": [],
    }
    fields.update(overrides)
    return Customer(**fields)


def add_customer(db, profile_id, days_since_first=10, days_since_last=None,
                 **fields) -> Customer:
    """Persist a customer whose visit dates are relative to NOW."""
    if days_since_last is None:
        days_since_last = days_since_first
    values = {
        "name": "Customer",
        "source": "manual",
        "total_bookings": 0,
        "total_messages": 0,
        "tags": [],
        "first_seen_at": NOW - timedelta(days=days_since_first),
        "last_seen_at": NOW - timedelta(days=days_since_last),
    }
    values.update(fields)
    return db.customers.create(Customer, profile_id=profile_id, **values)


class RecordingSender(MessageSender):
    """Records sends; per-recipient behavior can be scripted.

    ``outcomes`` maps a recipient to an exception instance (raised),
    ``None`` (send failure) or a message id string.
    """

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    def send(self, action_type, subject, body, recipient):
        self.calls.append({
            "action_type": action_type,
            "subject": subject,
            "body": body,
            "recipient": recipient,
        })
        outcome = self.outcomes.get(recipient, f"msg-{len(self.calls)}")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
