"""自动化日志处理器。

由外部定时任务（APScheduler 或 cron 调用 CLI）周期性调用，每次处理
一个有上限的批次：

1. 以条件更新认领到期的 pending 日志（pending → processing）。
2. 逐行解析规则、顾客与店铺，执行对应动作。
3. 把每一行写为终态：
   - 规则不存在或已停用 → skipped（不写 error）
   - 顾客不存在或没有邮箱 → skipped（写入说明）
   - 发送器返回消息ID → sent；返回 None → failed（"send failed"）
   - 任何异常 → failed（写入异常信息）

单行失败不会中断整个批次。终态日志不会被重新打开或自动重试。
"""
import uuid
from typing import Optional, Dict, Tuple
from datetime import datetime, timedelta
from loguru import logger

from config.settings import settings
from database.models import (
    AutomationRule, Customer, Coupon, Profile,
    LOG_SENT, LOG_FAILED, LOG_SKIPPED
)
from .actions import ActionContext, get_executor
from .sender import MessageSender

SEND_FAILED_ERROR = "send failed"
NO_CUSTOMER_ERROR = "顧客が見つかりません"
NO_EMAIL_ERROR = "顧客のメールアドレスがありません"


class AutomationLogProcessor:
    """自动化日志处理器。

    Attributes:
        db: 数据库管理器。
        sender: 消息发送器。
        send_timeout: 单次发送的超时秒数。
        lease_minutes: 认领超过该分钟数仍未结束的日志视为失效。
    """

    def __init__(self, db, sender: MessageSender,
                 send_timeout: Optional[float] = None,
                 lease_minutes: Optional[int] = None,
                 app_url: Optional[str] = None) -> None:
        self.db = db
        self.sender = sender
        self.send_timeout = (
            send_timeout if send_timeout is not None
            else settings.send_timeout_seconds
        )
        self.lease_minutes = lease_minutes or settings.claim_lease_minutes
        self.app_url = app_url if app_url is not None else settings.app_url

    def process_batch(self, now: Optional[datetime] = None,
                      limit: Optional[int] = None) -> Dict[str, int]:
        """处理一个批次的到期日志。

        Args:
            now: 当前时间，默认当前UTC时间。
            limit: 本批次最多处理的行数，默认 settings.automation_batch_size。

        Returns:
            ``{"processed", "sent", "failed", "skipped"}``。processed 是认领到的
            行数；执行期间失去认领（被判定超时或随规则删除）的行结果不会
            写入，也不计入 sent/failed/skipped。
        """
        now = now or datetime.utcnow()
        if limit is None:
            limit = settings.automation_batch_size
        token = uuid.uuid4().hex

        logs = self.db.automation_logs.claim_due(now, limit, claim_token=token)
        counts = {"processed": len(logs), "sent": 0, "failed": 0, "skipped": 0}
        if not logs:
            return counts

        for log in logs:
            try:
                status, error = self._execute(log, now)
            except Exception as e:
                logger.exception(f"Automation log {log.id} raised during execution")
                status, error = LOG_FAILED, str(e) or type(e).__name__

            try:
                finished = self.db.automation_logs.finish(
                    log.id, status, now, error=error, claim_token=token
                )
            except Exception:
                logger.exception(f"Failed to record result for automation log {log.id}")
                finished = False
            if not finished:
                logger.warning(
                    f"Automation log {log.id} was no longer claimed by this run, "
                    f"{status} result not recorded"
                )
                continue

            counts[status] += 1

        logger.info(
            f"Automation batch done: processed={counts['processed']} "
            f"sent={counts['sent']} failed={counts['failed']} "
            f"skipped={counts['skipped']}"
        )
        return counts

    def _execute(self, log, now: datetime) -> Tuple[str, Optional[str]]:
        """执行一行日志，返回 (终态, error)。"""
        rule = self.db.automation_rules.get_by_id(AutomationRule, log.rule_id)
        if rule is None or not rule.is_active:
            return LOG_SKIPPED, None

        customer = self.db.customers.get_by_id(Customer, log.customer_id)
        if customer is None:
            return LOG_SKIPPED, NO_CUSTOMER_ERROR
        if not customer.email:
            return LOG_SKIPPED, NO_EMAIL_ERROR

        profile = self.db.profiles.get_by_id(Profile, log.profile_id)
        coupon = (
            self.db.coupons.get_by_id(Coupon, rule.coupon_id)
            if rule.coupon_id else None
        )
        ctx = ActionContext(
            rule=rule, customer=customer, profile=profile,
            coupon=coupon, app_url=self.app_url
        )

        message_id = get_executor(rule.action_type).execute(
            ctx, self.sender, timeout=self.send_timeout
        )
        if message_id:
            logger.debug(f"Automation log {log.id} sent as {message_id}")
            return LOG_SENT, None
        return LOG_FAILED, SEND_FAILED_ERROR

    def expire_stale_claims(self, now: Optional[datetime] = None) -> int:
        """关闭认领失效的 processing 日志（记为 failed，不重新放回 pending）。"""
        now = now or datetime.utcnow()
        return self.db.automation_logs.expire_stale_claims(
            now - timedelta(minutes=self.lease_minutes), now
        )
