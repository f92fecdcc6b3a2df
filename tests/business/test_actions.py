"""Action executor and email template tests."""
import time

import pytest

from business.actions import (
    ACTION_EXECUTORS, ActionContext, SendTimeoutError,
    get_executor, render_placeholders, send_with_timeout, OutgoingMessage,
)
from business.email_templates import (
    follow_up_email, layout, review_request_email, template_to_html,
)
from database.types import ActionType
from database.models import AutomationRule, Coupon, Profile
from tests.factories import RecordingSender, make_customer


def make_rule(**overrides):
    fields = {
        "id": 1, "profile_id": 1, "name": "rule",
        "trigger_type": "after_booking", "action_type": "send_email",
        "delay_hours": 0, "template_id": None, "coupon_id": None,
        "subject": None, "body": None, "is_active": True,
    }
    fields.update(overrides)
    return AutomationRule(**fields)


def make_profile(**overrides):
    fields = {"id": 1, "username": "salon-a", "display_name": "Salon A",
              "google_review_url": None}
    fields.update(overrides)
    return Profile(**fields)


class TestTemplates:

    def test_layout_escapes_business_name(self):
        html = layout("<b>Shop</b>", "<p>hi</p>")
        assert "&lt;b&gt;Shop&lt;/b&gt;" in html
        assert "<p>hi</p>" in html
        assert "{{unsubscribe_url}}" in html

    def test_follow_up_escapes_message_and_keeps_newlines(self):
        html = follow_up_email("Shop", "Hanako", "line1\n<script>")
        assert "Hanako様" in html
        assert "line1<br/>&lt;script&gt;" in html

    def test_review_request_contains_url(self):
        html = review_request_email("Shop", "Hanako", "https://example.com/r?a=1&b=2")
        assert 'href="https://example.com/r?a=1&amp;b=2"' in html
        assert "レビューを書く" in html

    def test_template_to_html(self):
        html = template_to_html("Shop", "Subject", "Hello\nWorld")
        assert "Hello<br/>World" in html


class TestRegistry:

    def test_every_action_type_has_executor(self):
        assert set(ACTION_EXECUTORS) == set(ActionType)
        for action_type, executor in ACTION_EXECUTORS.items():
            assert executor.action_type is action_type

    def test_unknown_action_type(self):
        with pytest.raises(ValueError):
            get_executor("send_fax")


class TestPlaceholders:

    def test_replaces_all_occurrences(self):
        text = "{{customer_name}}様 / {{customer_name}} / {{business_name}}"
        assert render_placeholders(text, "Hanako", "Shop") == "Hanako様 / Hanako / Shop"

    def test_none_body(self):
        assert render_placeholders(None, "a", "b") == ""


class TestSendEmailExecutor:

    def test_defaults(self):
        ctx = ActionContext(rule=make_rule(body="Hi {{customer_name}} from {{business_name}}"),
                            customer=make_customer(name="Hanako", email="h@example.com"),
                            profile=make_profile())
        message = get_executor("send_email").build(ctx)
        assert message.subject == "Salon Aからのお知らせ"
        assert "Hi Hanako from Salon A" in message.html

    def test_custom_subject_and_template(self):
        ctx = ActionContext(rule=make_rule(subject="Thanks", body="Body", template_id=3),
                            customer=make_customer(email="h@example.com"),
                            profile=make_profile())
        message = get_executor("send_email").build(ctx)
        assert message.subject == "Thanks"
        # template wrapper has no salutation line
        assert "様" not in message.html
        assert "Body" in message.html

    def test_subject_placeholders_rendered(self):
        ctx = ActionContext(rule=make_rule(subject="{{customer_name}}様 - {{business_name}}"),
                            customer=make_customer(name="Hanako", email="h@example.com"),
                            profile=make_profile())
        message = get_executor("send_email").build(ctx)
        assert message.subject == "Hanako様 - Salon A"

    def test_fallback_names(self):
        ctx = ActionContext(rule=make_rule(body="{{customer_name}}"),
                            customer=make_customer(name="", email="h@example.com"),
                            profile=None)
        message = get_executor("send_email").build(ctx)
        assert message.subject == "Folioからのお知らせ"
        assert "お客様" in message.html

    def test_execute_sends_to_customer_email(self):
        sender = RecordingSender()
        ctx = ActionContext(rule=make_rule(body="x"),
                            customer=make_customer(email="h@example.com"),
                            profile=make_profile())
        result = get_executor("send_email").execute(ctx, sender, timeout=5)
        assert result == "msg-1"
        assert sender.calls[0]["recipient"] == "h@example.com"
        assert sender.calls[0]["action_type"] == "send_email"


class TestSendReviewRequestExecutor:

    def test_google_review_url(self):
        ctx = ActionContext(
            rule=make_rule(action_type="send_review_request"),
            customer=make_customer(email="h@example.com"),
            profile=make_profile(google_review_url="https://g.page/r/x"),
        )
        message = get_executor("send_review_request").build(ctx)
        assert message.subject == "Salon A - レビューのお願い"
        assert "https://g.page/r/x" in message.html

    def test_falls_back_to_profile_page(self):
        ctx = ActionContext(
            rule=make_rule(action_type="send_review_request"),
            customer=make_customer(email="h@example.com"),
            profile=make_profile(),
            app_url="https://folio.example",
        )
        message = get_executor("send_review_request").build(ctx)
        assert "https://folio.example/salon-a" in message.html


class TestSendCouponExecutor:

    def test_coupon_body(self):
        ctx = ActionContext(
            rule=make_rule(action_type="send_coupon", coupon_id=9),
            customer=make_customer(name="Hanako", email="h@example.com"),
            profile=make_profile(),
            coupon=Coupon(id=9, profile_id=1, title="10% OFF", code="SAVE10"),
        )
        message = get_executor("send_coupon").build(ctx)
        assert message.subject == "Salon Aからクーポンのプレゼント"
        assert "クーポン: 10% OFF" in message.html
        assert "コード: SAVE10" in message.html

    def test_missing_coupon(self):
        ctx = ActionContext(
            rule=make_rule(action_type="send_coupon", subject="Gift"),
            customer=make_customer(email="h@example.com"),
            profile=make_profile(),
        )
        message = get_executor("send_coupon").build(ctx)
        assert message.subject == "Gift"
        assert "クーポン: クーポン" in message.html

    def test_subject_placeholders_rendered(self):
        ctx = ActionContext(
            rule=make_rule(action_type="send_coupon",
                           subject="{{business_name}}より{{customer_name}}様へ"),
            customer=make_customer(name="Hanako", email="h@example.com"),
            profile=make_profile(),
        )
        message = get_executor("send_coupon").build(ctx)
        assert message.subject == "Salon AよりHanako様へ"


class SlowSender(RecordingSender):

    def send(self, action_type, subject, body, recipient):
        time.sleep(0.5)
        return "late"


class TestSendWithTimeout:

    def test_returns_sender_result(self):
        message = OutgoingMessage(subject="s", html="<p/>")
        assert send_with_timeout(
            RecordingSender(), ActionType.SEND_EMAIL, message, "a@b.c", 5
        ) == "msg-1"

    def test_timeout_raises(self):
        message = OutgoingMessage(subject="s", html="<p/>")
        with pytest.raises(SendTimeoutError):
            send_with_timeout(SlowSender(), ActionType.SEND_EMAIL, message, "a@b.c", 0.05)

    def test_sender_exception_propagates(self):
        sender = RecordingSender(outcomes={"a@b.c": RuntimeError("smtp down")})
        message = OutgoingMessage(subject="s", html="<p/>")
        with pytest.raises(RuntimeError, match="smtp down"):
            send_with_timeout(sender, ActionType.SEND_EMAIL, message, "a@b.c", 5)
