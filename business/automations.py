"""自动化触发分发。

顾客生命周期事件（预约、咨询、订阅、集章完成、长期未来访……）发生后，
把店铺中匹配该触发类型的启用规则转换为待执行日志
（status=pending，scheduled_at = 触发时间 + delay_hours）。

两种接入方式：
- ``dispatch``：同步分发，任何异常都只记日志，不影响调用方。
- ``enqueue_event`` + ``drain_events``：业务写入后只记录一条事件，
  由后台任务统一转换为日志，失败的事件会保留错误原因。
"""
import hmac
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta
from loguru import logger

from config.settings import settings
from database.models import AutomationRule, EVENT_DISPATCHED, EVENT_FAILED
from .metrics import days_between
from database.types import TriggerType, INACTIVITY_TRIGGERS


class TriggerDispatcher:
    """自动化触发分发器。

    Attributes:
        db: 数据库管理器。
    """

    def __init__(self, db) -> None:
        self.db = db

    def schedule(self, trigger_type: str, customer_id: int, profile_id: int,
                 now: Optional[datetime] = None) -> List[int]:
        """为匹配的启用规则创建待执行日志。

        同一规则与顾客已有未完成日志时不会重复创建。

        Args:
            trigger_type: 触发类型。
            customer_id: 顾客ID。
            profile_id: 店铺ID。
            now: 触发时间，默认当前UTC时间。

        Returns:
            新建日志的ID列表。

        Raises:
            ValueError: 未知的触发类型。
        """
        trigger = TriggerType(trigger_type)
        now = now or datetime.utcnow()
        created: List[int] = []

        with self.db.get_session() as session:
            rules = self.db.automation_rules.get_active_for_trigger(
                profile_id, trigger.value, session=session
            )
            for rule in rules:
                if self.db.automation_logs.has_open(
                        rule.id, customer_id, session=session):
                    logger.debug(
                        f"Rule {rule.id} already pending for customer {customer_id}"
                    )
                    continue
                log = self.db.automation_logs.create_pending(
                    rule_id=rule.id,
                    customer_id=customer_id,
                    profile_id=profile_id,
                    scheduled_at=now + timedelta(hours=rule.delay_hours or 0),
                    session=session
                )
                created.append(log.id)
            session.commit()

        if created:
            logger.info(
                f"Scheduled {len(created)} automation(s) for {trigger.value} "
                f"customer={customer_id} profile={profile_id}"
            )
        return created

    def dispatch(self, trigger_type: str, customer_id: int, profile_id: int,
                 now: Optional[datetime] = None) -> List[int]:
        """分发触发事件，永不抛出异常。

        Returns:
            新建日志的ID列表，失败时为空列表。
        """
        try:
            return self.schedule(trigger_type, customer_id, profile_id, now)
        except Exception:
            logger.exception(
                f"Automation trigger {trigger_type} failed for "
                f"customer={customer_id} profile={profile_id}"
            )
            return []

    def enqueue_event(self, trigger_type: str, customer_id: int,
                      profile_id: int) -> Optional[int]:
        """把触发事件写入发件箱，永不抛出异常。

        Returns:
            事件ID，写入失败时为 None。
        """
        try:
            return self.db.automation_events.enqueue(
                trigger_type, customer_id, profile_id
            )
        except Exception:
            logger.exception(
                f"Failed to enqueue {trigger_type} for customer={customer_id}"
            )
            return None

    def drain_events(self, limit: Optional[int] = None,
                     now: Optional[datetime] = None) -> Dict[str, int]:
        """消费发件箱中的待分发事件。

        Returns:
            ``{"drained", "dispatched", "failed", "logs_created"}``。
        """
        if limit is None:
            limit = settings.automation_batch_size
        events = self.db.automation_events.get_pending(limit)
        stats = {"drained": 0, "dispatched": 0, "failed": 0, "logs_created": 0}

        for event in events:
            at = now or datetime.utcnow()
            try:
                ids = self.schedule(
                    event.trigger_type, event.customer_id,
                    event.profile_id, now=at
                )
            except Exception as e:
                logger.warning(f"Automation event {event.id} failed: {e}")
                if self.db.automation_events.mark(
                        event.id, EVENT_FAILED, at, error=str(e)):
                    stats["failed"] += 1
                    stats["drained"] += 1
                continue

            if self.db.automation_events.mark(event.id, EVENT_DISPATCHED, at):
                stats["dispatched"] += 1
                stats["drained"] += 1
                stats["logs_created"] += len(ids)

        if stats["drained"]:
            logger.info(f"Drained automation events: {stats}")
        return stats

    def dispatch_inactivity_triggers(self, now: Optional[datetime] = None,
                                     profile_id: Optional[int] = None
                                     ) -> Dict[str, int]:
        """扫描长期未来访的顾客并分发 no_visit_30d/60d/90d。

        顾客距最近来访恰好 30/60/90 天时触发对应类型，
        每天执行一次即可保证每个阈值只触发一次。

        Args:
            now: 扫描时间，默认当前UTC时间。
            profile_id: 只扫描指定店铺（可选）。

        Returns:
            ``{"profiles_scanned", "customers_scanned", "logs_created"}``。
        """
        now = now or datetime.utcnow()
        filters: Dict[str, Any] = {"is_active": True}
        if profile_id is not None:
            filters["profile_id"] = profile_id
        rules = self.db.automation_rules.get_all(AutomationRule, filters=filters)

        # 店铺ID → {未来访天数: 触发类型}
        thresholds: Dict[int, Dict[int, TriggerType]] = {}
        for rule in rules:
            try:
                trigger = TriggerType(rule.trigger_type)
            except ValueError:
                continue
            if trigger in INACTIVITY_TRIGGERS:
                thresholds.setdefault(rule.profile_id, {})[
                    INACTIVITY_TRIGGERS[trigger]
                ] = trigger

        stats = {"profiles_scanned": 0, "customers_scanned": 0, "logs_created": 0}
        for pid, by_days in thresholds.items():
            stats["profiles_scanned"] += 1
            for customer in self.db.customers.get_by_profile(pid):
                stats["customers_scanned"] += 1
                trigger = by_days.get(days_between(customer.last_seen_at, now))
                if trigger is None:
                    continue
                stats["logs_created"] += len(
                    self.dispatch(trigger.value, customer.id, pid, now=now)
                )

        logger.info(f"Inactivity scan finished: {stats}")
        return stats


def verify_cron_secret(header_value: Optional[str],
                       secret: Optional[str] = None) -> bool:
    """校验外部定时任务携带的密钥。

    未配置密钥时一律拒绝。
    """
    expected = secret if secret is not None else settings.cron_secret
    if not expected or not header_value:
        return False
    return hmac.compare_digest(header_value.encode(), expected.encode())
