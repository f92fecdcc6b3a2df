"""实体仓库 —— 基础实体的数据访问层。

管理系统中的基础实体（店铺主页、顾客、推荐码、集章卡、优惠券），
分群引擎与自动化处理器从这里读取顾客及其附属数据。

每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法。
"""
from typing import Optional, List, Dict, Iterable
from datetime import datetime
from sqlalchemy import or_
from sqlalchemy.orm import Session

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    Profile, Customer, ReferralCode, CustomerStamp, Coupon
)


class ProfileRepository(BaseCRUD):
    """店铺主页 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, username: str,
                      display_name: Optional[str] = None,
                      google_review_url: Optional[str] = None,
                      session: Optional[Session] = None) -> Profile:
        """获取或创建店铺主页（按用户名匹配）。

        Args:
            username: 主页用户名。
            display_name: 店铺显示名称（仅创建时使用）。
            google_review_url: Google 评价链接（仅创建时使用）。
            session: 外部会话（可选）。

        Returns:
            Profile 对象。
        """
        def _do(sess):
            profile = sess.query(Profile).filter(
                Profile.username == username
            ).first()
            if not profile:
                profile = Profile(
                    username=username,
                    display_name=display_name,
                    google_review_url=google_review_url,
                )
                sess.add(profile)
                sess.flush()
                sess.refresh(profile)
            return profile

        if session:
            return _do(session)

        with self._get_session() as sess:
            profile = _do(sess)
            sess.commit()
            return profile


class CustomerRepository(BaseCRUD):
    """顾客 仓库。

    除基础查询外，还负责为分群计算批量读取顾客附加指标
    （是否有推荐实绩、是否在集章）。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_or_create(self, profile_id: int, name: str = "",
                      email: Optional[str] = None,
                      phone: Optional[str] = None,
                      line_user_id: Optional[str] = None,
                      source: str = "manual",
                      seen_at: Optional[datetime] = None,
                      session: Optional[Session] = None) -> Customer:
        """获取或创建顾客。

        优先按邮箱、其次按 LINE 用户ID 在同一店铺内匹配；
        都没有提供时总是创建新顾客。

        Args:
            profile_id: 所属店铺ID。
            name: 顾客姓名。
            email / phone / line_user_id: 联系方式。
            source: 来源渠道。
            seen_at: 首次来访时间，默认当前UTC时间。
            session: 外部会话（可选）。

        Returns:
            Customer 对象。
        """
        def _do(sess):
            customer = None
            if email:
                customer = sess.query(Customer).filter(
                    Customer.profile_id == profile_id,
                    Customer.email == email
                ).first()
            if customer is None and line_user_id:
                customer = sess.query(Customer).filter(
                    Customer.profile_id == profile_id,
                    Customer.line_user_id == line_user_id
                ).first()
            if customer is None:
                when = seen_at or datetime.utcnow()
                customer = Customer(
                    profile_id=profile_id,
                    name=name,
                    email=email,
                    phone=phone,
                    line_user_id=line_user_id,
                    source=source,
                    first_seen_at=when,
                    last_seen_at=when,
                    tags=[],
                )
                sess.add(customer)
                sess.flush()
                sess.refresh(customer)
            return customer

        if session:
            return _do(session)

        with self._get_session() as sess:
            customer = _do(sess)
            sess.commit()
            return customer

    def record_touch(self, customer_id: int,
                     seen_at: Optional[datetime] = None,
                     bookings: int = 0, messages: int = 0,
                     source: Optional[str] = None,
                     session: Optional[Session] = None
                     ) -> Optional[Customer]:
        """记录一次顾客接触（预约、咨询等）。

        last_seen_at 只前进不后退；新的来源渠道会追加到 source 中。

        Args:
            customer_id: 顾客ID。
            seen_at: 接触时间，默认当前UTC时间。
            bookings: 预约次数增量。
            messages: 消息数增量。
            source: 本次接触的来源渠道（可选）。

        Returns:
            更新后的 Customer 对象，不存在返回 None。
        """
        def _do(sess):
            customer = sess.query(Customer).filter(
                Customer.id == customer_id
            ).first()
            if customer is None:
                return None
            when = seen_at or datetime.utcnow()
            if customer.last_seen_at is None or when > customer.last_seen_at:
                customer.last_seen_at = when
            customer.total_bookings = (customer.total_bookings or 0) + bookings
            customer.total_messages = (customer.total_messages or 0) + messages
            if source:
                sources = [s for s in (customer.source or "").split(",") if s]
                if source not in sources:
                    sources.append(source)
                    customer.source = ",".join(sources)
            sess.flush()
            sess.refresh(customer)
            return customer

        if session:
            return _do(session)

        with self._get_session() as sess:
            customer = _do(sess)
            if customer is not None:
                sess.commit()
            return customer

    def get_recent_by_profile(self, profile_id: int, limit: int,
                              session: Optional[Session] = None
                              ) -> List[Customer]:
        """获取店铺最近来访的顾客（按 last_seen_at 倒序，最多 limit 条）。"""
        def _query(sess):
            return sess.query(Customer).filter(
                Customer.profile_id == profile_id
            ).order_by(
                Customer.last_seen_at.desc(), Customer.id.desc()
            ).limit(limit).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_by_profile(self, profile_id: int,
                       session: Optional[Session] = None) -> List[Customer]:
        """获取店铺的全部顾客。"""
        return self.get_all(
            Customer, filters={"profile_id": profile_id}, session=session
        )

    def fetch_extras(self, profile_id: int, customer_ids: Iterable[int],
                     session: Optional[Session] = None
                     ) -> Dict[int, Dict[str, bool]]:
        """批量读取顾客附加指标。

        Args:
            profile_id: 店铺ID。
            customer_ids: 需要读取的顾客ID。

        Returns:
            ``{customer_id: {"has_referrals": bool, "has_stamps": bool}}``，
            每个传入的顾客ID都有一项。
        """
        ids = list(customer_ids)
        extras = {
            cid: {"has_referrals": False, "has_stamps": False} for cid in ids
        }
        if not ids:
            return extras

        def _query(sess):
            referrers = sess.query(ReferralCode.customer_id).filter(
                ReferralCode.profile_id == profile_id,
                ReferralCode.referral_count > 0
            ).all()
            stampers = sess.query(CustomerStamp.customer_id).filter(
                CustomerStamp.customer_id.in_(ids),
                CustomerStamp.current_stamps > 0
            ).all()
            return referrers, stampers

        if session:
            referrers, stampers = _query(session)
        else:
            with self._get_session() as sess:
                referrers, stampers = _query(sess)

        for (cid,) in referrers:
            if cid in extras:
                extras[cid]["has_referrals"] = True
        for (cid,) in stampers:
            if cid in extras:
                extras[cid]["has_stamps"] = True
        return extras

    def search(self, profile_id: int, keyword: str,
               session: Optional[Session] = None) -> List[Customer]:
        """按姓名、邮箱或电话搜索顾客。"""
        def _query(sess):
            return sess.query(Customer).filter(
                Customer.profile_id == profile_id,
                or_(
                    Customer.name.contains(keyword),
                    Customer.email.contains(keyword),
                    Customer.phone.contains(keyword)
                )
            ).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)


class ReferralRepository(BaseCRUD):
    """推荐码 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def record_referral(self, profile_id: int, customer_id: int, code: str,
                        session: Optional[Session] = None) -> ReferralCode:
        """记录一次成功推荐（推荐码不存在时自动创建）。

        Returns:
            更新后的 ReferralCode 对象。
        """
        def _do(sess):
            referral = sess.query(ReferralCode).filter(
                ReferralCode.code == code
            ).first()
            if referral is None:
                referral = ReferralCode(
                    profile_id=profile_id, customer_id=customer_id,
                    code=code, referral_count=0
                )
                sess.add(referral)
            referral.referral_count = (referral.referral_count or 0) + 1
            sess.flush()
            sess.refresh(referral)
            return referral

        if session:
            return _do(session)

        with self._get_session() as sess:
            referral = _do(sess)
            sess.commit()
            return referral


class StampRepository(BaseCRUD):
    """集章卡进度 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def add_stamps(self, customer_id: int, card_id: int,
                   stamps_required: int, count: int = 1,
                   session: Optional[Session] = None) -> bool:
        """为顾客盖章。

        集满 stamps_required 个章时归零并累加完成次数。

        Returns:
            本次盖章是否集满一张卡。
        """
        def _do(sess):
            progress = sess.query(CustomerStamp).filter(
                CustomerStamp.customer_id == customer_id,
                CustomerStamp.card_id == card_id
            ).first()
            if progress is None:
                progress = CustomerStamp(
                    customer_id=customer_id, card_id=card_id,
                    current_stamps=0, completed_count=0
                )
                sess.add(progress)
            progress.current_stamps = (progress.current_stamps or 0) + count
            completed = progress.current_stamps >= stamps_required
            if completed:
                progress.current_stamps = 0
                progress.completed_count = (progress.completed_count or 0) + 1
            sess.flush()
            return completed

        if session:
            return _do(session)

        with self._get_session() as sess:
            completed = _do(sess)
            sess.commit()
            return completed


class CouponRepository(BaseCRUD):
    """优惠券 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get_active_by_profile(self, profile_id: int,
                              session: Optional[Session] = None
                              ) -> List[Coupon]:
        """获取店铺的有效优惠券。"""
        return self.get_all(
            Coupon, filters={"profile_id": profile_id, "is_active": True},
            session=session
        )
