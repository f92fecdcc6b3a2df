"""业务配置仓库 —— 分群定义与自动化规则的数据访问层。

管理店主配置的业务对象（顾客分群、自动化规则）。分群的条件求值
不在这里完成，本模块只负责读写与人数缓存。
"""
from typing import Optional, List, Dict, Any, Iterable
from datetime import datetime
from sqlalchemy import func
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    CustomerSegment, CustomerSegmentMember, AutomationRule, AutomationLog,
    LOG_SENT, LOG_PENDING
)
from .types import TriggerType, ActionType, AutomationRuleError


class SegmentRepository(BaseCRUD):
    """顾客分群 仓库。"""

    # 分群成员分批写入的批大小
    MEMBER_BATCH_SIZE = 500

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_by_profile(self, profile_id: int, active_only: bool = False,
                       session: Optional[Session] = None
                       ) -> List[CustomerSegment]:
        """获取店铺的分群列表（按类型、创建时间排序）。

        Args:
            profile_id: 店铺ID。
            active_only: 是否只返回启用的分群。

        Returns:
            CustomerSegment 列表。
        """
        def _query(sess):
            query = sess.query(CustomerSegment).filter(
                CustomerSegment.profile_id == profile_id
            )
            if active_only:
                query = query.filter(CustomerSegment.is_active.is_(True))
            return query.order_by(
                CustomerSegment.type.asc(),
                CustomerSegment.created_at.asc(),
                CustomerSegment.id.asc()
            ).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_for_profile(self, segment_id: int, profile_id: int,
                        session: Optional[Session] = None
                        ) -> Optional[CustomerSegment]:
        """获取属于指定店铺的分群，不属于该店铺时返回 None。"""
        def _query(sess):
            return sess.query(CustomerSegment).filter(
                CustomerSegment.id == segment_id,
                CustomerSegment.profile_id == profile_id
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def has_type(self, profile_id: int, segment_type: str,
                 session: Optional[Session] = None) -> bool:
        """店铺是否已存在指定类型的分群。"""
        def _query(sess):
            return sess.query(CustomerSegment.id).filter(
                CustomerSegment.profile_id == profile_id,
                CustomerSegment.type == segment_type
            ).first() is not None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def bulk_create(self, definitions: List[Dict[str, Any]]
                    ) -> List[CustomerSegment]:
        """在同一事务内批量创建分群。

        Args:
            definitions: 分群字段字典列表。

        Returns:
            新建的 CustomerSegment 列表（保持传入顺序）。
        """
        with self._get_session() as session:
            segments = [CustomerSegment(**d) for d in definitions]
            session.add_all(segments)
            session.commit()
            for segment in segments:
                session.refresh(segment)
            return segments

    def update_count(self, segment_id: int, customer_count: int,
                     session: Optional[Session] = None) -> None:
        """更新分群人数缓存。"""
        self.update_by_id(
            CustomerSegment, segment_id, session=session,
            customer_count=customer_count, updated_at=datetime.utcnow()
        )

    def replace_members(self, segment_id: int,
                        customer_ids: Iterable[int]) -> int:
        """整体重写分群成员，并同步人数缓存。

        Returns:
            写入的成员数。
        """
        ids = list(dict.fromkeys(customer_ids))
        with self._get_session() as session:
            session.query(CustomerSegmentMember).filter(
                CustomerSegmentMember.segment_id == segment_id
            ).delete(synchronize_session=False)

            for start in range(0, len(ids), self.MEMBER_BATCH_SIZE):
                batch = ids[start:start + self.MEMBER_BATCH_SIZE]
                session.add_all([
                    CustomerSegmentMember(segment_id=segment_id, customer_id=cid)
                    for cid in batch
                ])
                session.flush()

            self.update_count(segment_id, len(ids), session=session)
            session.commit()
        return len(ids)

    def get_member_ids(self, segment_id: int,
                       session: Optional[Session] = None) -> List[int]:
        """获取分群成员顾客ID列表。"""
        def _query(sess):
            rows = sess.query(CustomerSegmentMember.customer_id).filter(
                CustomerSegmentMember.segment_id == segment_id
            ).order_by(CustomerSegmentMember.customer_id).all()
            return [cid for (cid,) in rows]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def delete_with_members(self, segment_id: int) -> bool:
        """删除分群及其成员记录。"""
        with self._get_session() as session:
            segment = session.query(CustomerSegment).filter(
                CustomerSegment.id == segment_id
            ).first()
            if segment is None:
                return False
            session.delete(segment)
            session.commit()
            return True


class AutomationRuleRepository(BaseCRUD):
    """自动化规则 仓库。

    负责规则的增删改查与触发类型/动作类型的合法性校验。
    """

    # 允许通过 update 修改的字段
    UPDATABLE_FIELDS = (
        "name", "trigger_type", "action_type", "delay_hours",
        "template_id", "coupon_id", "subject", "body", "is_active",
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def save(self, profile_id: int, name: str, trigger_type: str,
               action_type: str, delay_hours: Optional[int] = None,
               template_id: Optional[int] = None,
               coupon_id: Optional[int] = None,
               subject: Optional[str] = None,
               body: Optional[str] = None) -> AutomationRule:
        """创建自动化规则。

        Args:
            profile_id: 店铺ID。
            name: 规则名称（必填）。
            trigger_type: 触发类型，必须是 TriggerType 的取值。
            action_type: 动作类型，必须是 ActionType 的取值。
            delay_hours: 延迟小时数，默认 0，不可为负。
            template_id / coupon_id / subject / body: 动作参数（可选）。

        Returns:
            新建的 AutomationRule 对象。

        Raises:
            AutomationRuleError: 参数非法。
        """
        if not name:
            raise AutomationRuleError("Rule name, trigger and action are required")
        values = self._validate({
            "trigger_type": trigger_type,
            "action_type": action_type,
            "delay_hours": 0 if delay_hours is None else delay_hours,
        })
        rule = self.create(
            AutomationRule,
            profile_id=profile_id,
            name=name,
            template_id=template_id,
            coupon_id=coupon_id,
            subject=subject or None,
            body=body or None,
            is_active=True,
            **values
        )
        logger.info(
            f"Automation rule {rule.id} created: "
            f"{rule.trigger_type} -> {rule.action_type} (+{rule.delay_hours}h)"
        )
        return rule

    @staticmethod
    def _validate(values: Dict[str, Any]) -> Dict[str, Any]:
        """校验并规范化规则字段。

        Raises:
            AutomationRuleError: 触发类型、动作类型或延迟小时数非法。
        """
        cleaned = dict(values)
        if "trigger_type" in cleaned:
            try:
                cleaned["trigger_type"] = TriggerType(cleaned["trigger_type"]).value
            except ValueError:
                raise AutomationRuleError(
                    f"Invalid trigger type: {cleaned['trigger_type']}"
                )
        if "action_type" in cleaned:
            try:
                cleaned["action_type"] = ActionType(cleaned["action_type"]).value
            except ValueError:
                raise AutomationRuleError(
                    f"Invalid action type: {cleaned['action_type']}"
                )
        if "delay_hours" in cleaned:
            try:
                delay = int(cleaned["delay_hours"])
            except (TypeError, ValueError):
                raise AutomationRuleError(
                    f"Invalid delay_hours: {cleaned['delay_hours']}"
                )
            if delay < 0:
                raise AutomationRuleError("delay_hours must be >= 0")
            cleaned["delay_hours"] = delay
        return cleaned

    def update(self, rule_id: int, profile_id: int,
               **fields) -> Optional[AutomationRule]:
        """更新属于指定店铺的规则。

        Returns:
            更新后的 AutomationRule，不存在或不属于该店铺时返回 None。

        Raises:
            AutomationRuleError: 字段非法或包含不可修改的字段。
        """
        unknown = set(fields) - set(self.UPDATABLE_FIELDS)
        if unknown:
            raise AutomationRuleError(
                f"Unsupported rule fields: {', '.join(sorted(unknown))}"
            )
        values = self._validate(fields)
        with self._get_session() as session:
            rule = self.get_for_profile(rule_id, profile_id, session=session)
            if rule is None:
                return None
            for key, value in values.items():
                setattr(rule, key, value)
            session.commit()
            session.refresh(rule)
            return rule

    def delete(self, rule_id: int, profile_id: int) -> bool:
        """删除属于指定店铺的规则（其执行日志一并删除）。"""
        with self._get_session() as session:
            rule = self.get_for_profile(rule_id, profile_id, session=session)
            if rule is None:
                return False
            session.query(AutomationLog).filter(
                AutomationLog.rule_id == rule_id
            ).delete(synchronize_session=False)
            session.delete(rule)
            session.commit()
            return True

    def get_for_profile(self, rule_id: int, profile_id: int,
                        session: Optional[Session] = None
                        ) -> Optional[AutomationRule]:
        """获取属于指定店铺的规则。"""
        def _query(sess):
            return sess.query(AutomationRule).filter(
                AutomationRule.id == rule_id,
                AutomationRule.profile_id == profile_id
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_active_for_trigger(self, profile_id: int, trigger_type: str,
                               session: Optional[Session] = None
                               ) -> List[AutomationRule]:
        """获取店铺中匹配触发类型的启用规则。"""
        return self.get_all(
            AutomationRule,
            filters={
                "profile_id": profile_id,
                "trigger_type": trigger_type,
                "is_active": True,
            },
            session=session
        )

    def list_with_stats(self, profile_id: int) -> List[Dict[str, Any]]:
        """获取店铺的全部规则及其发送统计。

        Returns:
            规则字典列表（按创建时间倒序），每项附带 sent_count 与 pending_count。
        """
        with self._get_session() as session:
            rules = session.query(AutomationRule).filter(
                AutomationRule.profile_id == profile_id
            ).order_by(
                AutomationRule.created_at.desc(), AutomationRule.id.desc()
            ).all()
            if not rules:
                return []

            counts = session.query(
                AutomationLog.rule_id, AutomationLog.status,
                func.count(AutomationLog.id)
            ).filter(
                AutomationLog.rule_id.in_([r.id for r in rules]),
                AutomationLog.status.in_([LOG_SENT, LOG_PENDING])
            ).group_by(AutomationLog.rule_id, AutomationLog.status).all()

        stats: Dict[int, Dict[str, int]] = {}
        for rule_id, status, count in counts:
            stats.setdefault(rule_id, {})[status] = count

        return [
            {
                "id": r.id,
                "name": r.name,
                "trigger_type": r.trigger_type,
                "action_type": r.action_type,
                "delay_hours": r.delay_hours,
                "template_id": r.template_id,
                "coupon_id": r.coupon_id,
                "subject": r.subject,
                "body": r.body,
                "is_active": r.is_active,
                "sent_count": stats.get(r.id, {}).get(LOG_SENT, 0),
                "pending_count": stats.get(r.id, {}).get(LOG_PENDING, 0),
            }
            for r in rules
        ]
