"""系统数据仓库 —— 自动化执行数据的数据访问层。

管理自动化执行过程中产生的系统数据（执行日志、触发事件发件箱），
这些数据用于调度、状态跟踪与结果追溯。

执行日志的认领使用条件更新（``UPDATE ... WHERE status = 'pending'``），
同一行只会被一个批次认领成功。
"""
import uuid
from typing import Optional, List, Dict, Any
from datetime import datetime
from sqlalchemy import update, func
from sqlalchemy.orm import Session
from loguru import logger

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    AutomationLog, AutomationEvent,
    LOG_PENDING, LOG_PROCESSING, LOG_FAILED, LOG_TERMINAL_STATUSES,
    EVENT_PENDING, EVENT_DISPATCHED, EVENT_FAILED
)


class AutomationLogRepository(BaseCRUD):
    """自动化执行日志 仓库。

    日志由触发分发器以 pending 状态创建，之后只由日志处理器修改：
    pending → processing（认领）→ sent / failed / skipped（终态）。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def create_pending(self, rule_id: int, customer_id: int,
                       profile_id: int, scheduled_at: datetime,
                       session: Optional[Session] = None) -> AutomationLog:
        """创建一条待执行日志。

        Args:
            rule_id: 自动化规则ID。
            customer_id: 顾客ID。
            profile_id: 店铺ID。
            scheduled_at: 计划执行时间。
            session: 外部会话（可选）。

        Returns:
            新建的 AutomationLog 对象。
        """
        return self.create(
            AutomationLog, session=session,
            rule_id=rule_id, customer_id=customer_id,
            profile_id=profile_id, status=LOG_PENDING,
            scheduled_at=scheduled_at
        )

    def has_open(self, rule_id: int, customer_id: int,
                 session: Optional[Session] = None) -> bool:
        """同一规则与顾客是否已有未完成（pending/processing）的日志。"""
        def _query(sess):
            return sess.query(AutomationLog.id).filter(
                AutomationLog.rule_id == rule_id,
                AutomationLog.customer_id == customer_id,
                AutomationLog.status.in_([LOG_PENDING, LOG_PROCESSING])
            ).first() is not None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def claim_due(self, now: datetime, limit: int,
                  claim_token: Optional[str] = None) -> List[AutomationLog]:
        """认领到期的待执行日志。

        先按 scheduled_at 升序选出候选行，再以条件更新把其中仍为 pending
        的行改为 processing 并写入本批次令牌。并发批次选中同一行时，
        只有一个批次的条件更新能命中该行。

        Args:
            now: 当前时间，scheduled_at <= now 的日志视为到期。
            limit: 本批次最多认领的行数。
            claim_token: 批次令牌，默认自动生成。

        Returns:
            本批次认领成功的日志列表（按 scheduled_at 升序）。
        """
        token = claim_token or uuid.uuid4().hex
        with self._get_session() as session:
            candidate_ids = [
                log_id for (log_id,) in session.query(AutomationLog.id).filter(
                    AutomationLog.status == LOG_PENDING,
                    AutomationLog.scheduled_at <= now
                ).order_by(
                    AutomationLog.scheduled_at.asc(), AutomationLog.id.asc()
                ).limit(limit).all()
            ]
            if not candidate_ids:
                return []

            result = session.execute(
                update(AutomationLog)
                .where(
                    AutomationLog.id.in_(candidate_ids),
                    AutomationLog.status == LOG_PENDING
                )
                .values(
                    status=LOG_PROCESSING, claim_token=token, claimed_at=now
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()

            if result.rowcount != len(candidate_ids):
                logger.info(
                    f"Claimed {result.rowcount}/{len(candidate_ids)} due logs, "
                    f"the rest were taken by another run"
                )

            return session.query(AutomationLog).filter(
                AutomationLog.claim_token == token,
                AutomationLog.status == LOG_PROCESSING
            ).order_by(
                AutomationLog.scheduled_at.asc(), AutomationLog.id.asc()
            ).all()

    def finish(self, log_id: int, status: str, finished_at: datetime,
               error: Optional[str] = None,
               claim_token: Optional[str] = None) -> bool:
        """把认领中的日志写为终态。

        只有处于 processing（且令牌匹配，如提供）的日志会被更新，
        终态日志不会被再次修改。

        Args:
            log_id: 日志ID。
            status: 终态（sent/failed/skipped）。
            finished_at: 写入 sent_at 的时间。
            error: 失败原因或跳过说明（可选）。
            claim_token: 批次令牌（可选）。

        Returns:
            是否更新成功。

        Raises:
            ValueError: status 不是终态。
        """
        if status not in LOG_TERMINAL_STATUSES:
            raise ValueError(f"Invalid terminal status: {status}")

        conditions = [
            AutomationLog.id == log_id,
            AutomationLog.status == LOG_PROCESSING,
        ]
        if claim_token is not None:
            conditions.append(AutomationLog.claim_token == claim_token)

        with self._get_session() as session:
            result = session.execute(
                update(AutomationLog)
                .where(*conditions)
                .values(status=status, sent_at=finished_at, error=error)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def expire_stale_claims(self, claimed_before: datetime,
                            now: datetime) -> int:
        """把认领超时的 processing 日志关闭为 failed（不会重新放回 pending）。

        Returns:
            被关闭的日志数。
        """
        with self._get_session() as session:
            result = session.execute(
                update(AutomationLog)
                .where(
                    AutomationLog.status == LOG_PROCESSING,
                    AutomationLog.claimed_at < claimed_before
                )
                .values(
                    status=LOG_FAILED, sent_at=now,
                    error="claim lease expired"
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            if result.rowcount:
                logger.warning(
                    f"Expired {result.rowcount} automation logs stuck in processing"
                )
            return result.rowcount

    def get_by_profile(self, profile_id: int,
                       status: Optional[str] = None,
                       limit: int = 100,
                       session: Optional[Session] = None
                       ) -> List[AutomationLog]:
        """获取店铺的执行日志（按计划时间倒序）。"""
        def _query(sess):
            query = sess.query(AutomationLog).filter(
                AutomationLog.profile_id == profile_id
            )
            if status:
                query = query.filter(AutomationLog.status == status)
            return query.order_by(
                AutomationLog.scheduled_at.desc(), AutomationLog.id.desc()
            ).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class AutomationEventRepository(BaseCRUD):
    """触发事件发件箱 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def enqueue(self, trigger_type: str, customer_id: int,
                profile_id: int) -> int:
        """写入一条待分发的触发事件。

        Returns:
            事件ID。
        """
        event = self.create(
            AutomationEvent,
            trigger_type=trigger_type, customer_id=customer_id,
            profile_id=profile_id, status=EVENT_PENDING
        )
        return event.id

    def get_pending(self, limit: int,
                    session: Optional[Session] = None
                    ) -> List[AutomationEvent]:
        """按写入顺序获取待分发事件。"""
        def _query(sess):
            return sess.query(AutomationEvent).filter(
                AutomationEvent.status == EVENT_PENDING
            ).order_by(AutomationEvent.id.asc()).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def mark(self, event_id: int, status: str, at: datetime,
             error: Optional[str] = None,
             expected_status: str = EVENT_PENDING) -> bool:
        """条件更新事件状态。

        Args:
            event_id: 事件ID。
            status: 新状态（dispatched/failed）。
            at: 写入 dispatched_at 的时间。
            error: 失败原因（可选）。
            expected_status: 仅当事件处于该状态时才更新。

        Returns:
            是否更新成功。
        """
        if status not in (EVENT_DISPATCHED, EVENT_FAILED):
            raise ValueError(f"Invalid event status: {status}")
        with self._get_session() as session:
            result = session.execute(
                update(AutomationEvent)
                .where(
                    AutomationEvent.id == event_id,
                    AutomationEvent.status == expected_status
                )
                .values(status=status, dispatched_at=at, error=error)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def count_by_status(self) -> Dict[str, Any]:
        """按状态统计事件数。"""
        with self._get_session() as session:
            rows = session.query(
                AutomationEvent.status, func.count(AutomationEvent.id)
            ).group_by(AutomationEvent.status).all()
            return {status: count for status, count in rows}
