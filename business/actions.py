"""自动化动作执行器。

每个 ActionType 对应一个执行器类，执行器负责拼装邮件标题与 HTML
正文，再通过 MessageSender 在超时限制内发送。注册表在导入时检查
是否覆盖了全部动作类型。
"""
import concurrent.futures
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from config.settings import settings
from .email_templates import (
    follow_up_email, review_request_email, template_to_html
)
from .sender import MessageSender
from database.types import ActionType

CUSTOMER_NAME_PLACEHOLDER = "{{customer_name}}"
BUSINESS_NAME_PLACEHOLDER = "{{business_name}}"


class SendTimeoutError(RuntimeError):
    """发送在限定时间内没有返回"""


@dataclass(frozen=True)
class ActionContext:
    """执行一次动作所需的全部数据（由日志处理器解析好后传入）"""
    rule: Any
    customer: Any
    profile: Any = None
    coupon: Any = None
    app_url: str = ""

    @property
    def business_name(self) -> str:
        name = getattr(self.profile, "display_name", None)
        return name or settings.default_business_name

    @property
    def customer_name(self) -> str:
        return self.customer.name or settings.default_customer_name


@dataclass(frozen=True)
class OutgoingMessage:
    subject: str
    html: str


def render_placeholders(text: str, customer_name: str,
                        business_name: str) -> str:
    return (text or "").replace(
        CUSTOMER_NAME_PLACEHOLDER, customer_name
    ).replace(BUSINESS_NAME_PLACEHOLDER, business_name)


def send_with_timeout(sender: MessageSender, action_type: ActionType,
                      message: OutgoingMessage, recipient: str,
                      timeout: float) -> Optional[str]:
    """在独立线程中调用发送器，超时抛出 SendTimeoutError。

    超时后发送线程不会被强制终止，但本次调用立即返回。
    """
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(
            sender.send, action_type.value, message.subject,
            message.html, recipient
        )
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            raise SendTimeoutError(f"send timed out after {timeout:g}s")
    finally:
        pool.shutdown(wait=False)


class ActionExecutor(ABC):
    """动作执行器基类"""

    action_type: ActionType

    @abstractmethod
    def build(self, ctx: ActionContext) -> OutgoingMessage:
        """拼装邮件标题与正文"""

    def execute(self, ctx: ActionContext, sender: MessageSender,
                timeout: Optional[float] = None) -> Optional[str]:
        """拼装并发送，返回发送器给出的消息ID（失败为 None）。"""
        message = self.build(ctx)
        return send_with_timeout(
            sender, self.action_type, message, ctx.customer.email,
            timeout if timeout is not None else settings.send_timeout_seconds
        )


class SendEmailExecutor(ActionExecutor):
    action_type = ActionType.SEND_EMAIL

    def build(self, ctx: ActionContext) -> OutgoingMessage:
        business_name = ctx.business_name
        customer_name = ctx.customer_name
        subject = render_placeholders(
            ctx.rule.subject, customer_name, business_name
        ) or f"{business_name}からのお知らせ"
        body = render_placeholders(ctx.rule.body, customer_name, business_name)

        if ctx.rule.template_id:
            html = template_to_html(business_name, subject, body)
        else:
            html = follow_up_email(business_name, customer_name, body)
        return OutgoingMessage(subject=subject, html=html)


class SendReviewRequestExecutor(ActionExecutor):
    action_type = ActionType.SEND_REVIEW_REQUEST

    def build(self, ctx: ActionContext) -> OutgoingMessage:
        business_name = ctx.business_name
        review_url = getattr(ctx.profile, "google_review_url", None)
        if not review_url:
            username = getattr(ctx.profile, "username", None) or ""
            review_url = f"{ctx.app_url}/{username}"

        return OutgoingMessage(
            subject=f"{business_name} - レビューのお願い",
            html=review_request_email(
                business_name, ctx.customer_name, review_url
            ),
        )


class SendCouponExecutor(ActionExecutor):
    action_type = ActionType.SEND_COUPON

    def build(self, ctx: ActionContext) -> OutgoingMessage:
        business_name = ctx.business_name
        customer_name = ctx.customer_name
        coupon_code = getattr(ctx.coupon, "code", None) or ""
        coupon_title = getattr(ctx.coupon, "title", None) or "クーポン"
        subject = render_placeholders(
            ctx.rule.subject, customer_name, business_name
        ) or f"{business_name}からクーポンのプレゼント"
        body = (
            f"{customer_name}様\n\n"
            f"{business_name}をご利用いただきありがとうございます。\n"
            f"特別クーポンをお届けします。\n\n"
            f"クーポン: {coupon_title}\n"
            f"コード: {coupon_code}\n\n"
            f"ぜひご利用ください。"
        )
        return OutgoingMessage(
            subject=subject,
            html=follow_up_email(business_name, customer_name, body),
        )


ACTION_EXECUTORS: Dict[ActionType, ActionExecutor] = {
    executor.action_type: executor
    for executor in (
        SendEmailExecutor(),
        SendReviewRequestExecutor(),
        SendCouponExecutor(),
    )
}

_missing = set(ActionType) - set(ACTION_EXECUTORS)
if _missing:
    raise RuntimeError(
        f"No executor registered for: {sorted(a.value for a in _missing)}"
    )


def get_executor(action_type: Any) -> ActionExecutor:
    """按动作类型获取执行器。

    Raises:
        ValueError: 未知的动作类型。
    """
    return ACTION_EXECUTORS[ActionType(action_type)]
