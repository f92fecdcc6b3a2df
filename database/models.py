"""SQLAlchemy ORM 模型定义。

本模块定义了所有数据库表的ORM模型，包括：
- 店铺主页（Profile）与顾客（Customer）等基础实体
- 推荐码、集章卡、优惠券等顾客附属数据（用于计算分群附加指标）
- 顾客分群定义与分群成员
- 自动化规则、自动化执行日志、触发事件发件箱
"""
from typing import Dict, Any, List, Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime,
    ForeignKey, JSON, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime

# SQLAlchemy declarative base，所有模型都继承自此类
# 设置 __allow_unmapped__ = True 以兼容 SQLAlchemy 2.0 的类型注解要求
Base = declarative_base()

# 为Base类添加__allow_unmapped__属性，允许使用旧式类型注解
Base.__allow_unmapped__ = True


# 自动化日志状态
LOG_PENDING = "pending"
LOG_PROCESSING = "processing"
LOG_SENT = "sent"
LOG_FAILED = "failed"
LOG_SKIPPED = "skipped"
LOG_TERMINAL_STATUSES = (LOG_SENT, LOG_FAILED, LOG_SKIPPED)

# 触发事件（发件箱）状态
EVENT_PENDING = "pending"
EVENT_DISPATCHED = "dispatched"
EVENT_FAILED = "failed"


class Profile(Base):
    """店铺主页表模型。

    每个 Profile 是一个独立经营的商家，拥有自己的顾客、分群和自动化规则。

    Attributes:
        id: 主键，自增整数。
        username: 主页用户名，唯一，用于拼接公开页面地址。
        display_name: 店铺显示名称，邮件中作为商家名称使用。
        google_review_url: Google 评价链接，可选。
        created_at: 创建时间。
    """
    __tablename__ = "profiles"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    username: str = Column(String(50), nullable=False, unique=True)
    display_name: Optional[str] = Column(String(100))
    google_review_url: Optional[str] = Column(String(500))
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    customers: List["Customer"] = relationship("Customer", back_populates="profile")


class Customer(Base):
    """顾客表模型。

    首次接触（咨询、预约、订阅、LINE 关注）时创建，之后每次接触都会更新
    计数与 last_seen_at。

    Attributes:
        id: 主键，自增整数。
        profile_id: 所属店铺ID。
        name: 顾客姓名。
        email / phone / line_user_id: 联系方式，均可选。
        source: 来源渠道（manual/contact/booking/subscriber/referral/line），
            可能是逗号拼接的复合值，例如 ``booking,subscriber``。
        total_bookings: 累计预约次数。
        total_messages: 累计消息数。
        first_seen_at: 首次来访时间。
        last_seen_at: 最近来访时间，不早于 first_seen_at。
        tags: 自由标签列表（数量上限由接入层校验）。
        created_at: 创建时间。
    """
    __tablename__ = "customers"
    __table_args__ = (
        Index("ix_customers_profile_last_seen", "profile_id", "last_seen_at"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    profile_id: int = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    name: str = Column(String(100), nullable=False, default="")
    email: Optional[str] = Column(String(255))
    phone: Optional[str] = Column(String(50))
    line_user_id: Optional[str] = Column(String(100))
    source: str = Column(String(100), nullable=False, default="manual")
    total_bookings: int = Column(Integer, nullable=False, default=0)
    total_messages: int = Column(Integer, nullable=False, default=0)
    first_seen_at: datetime = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at: datetime = Column(DateTime, nullable=False, default=datetime.utcnow)
    tags: List[str] = Column(JSON, default=list)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    profile: "Profile" = relationship("Profile", back_populates="customers")


class ReferralCode(Base):
    """推荐码表模型。

    referral_count > 0 表示该顾客至少成功推荐过一次，分群时作为
    ``hasReferrals`` 附加指标。
    """
    __tablename__ = "referral_codes"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    profile_id: int = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    customer_id: Optional[int] = Column(Integer, ForeignKey("customers.id"))
    code: str = Column(String(50), nullable=False, unique=True)
    referral_count: int = Column(Integer, default=0)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)


class CustomerStamp(Base):
    """集章卡进度表模型。

    current_stamps > 0 表示顾客正在使用集章卡，分群时作为 ``hasStamps``。
    """
    __tablename__ = "customer_stamps"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    customer_id: int = Column(Integer, ForeignKey("customers.id"), nullable=False)
    card_id: Optional[int] = Column(Integer)
    current_stamps: int = Column(Integer, default=0)
    completed_count: int = Column(Integer, default=0)
    updated_at: datetime = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Coupon(Base):
    """优惠券表模型（send_coupon 动作使用其标题与券码）。"""
    __tablename__ = "coupons"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    profile_id: int = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    title: str = Column(String(100), nullable=False)
    code: str = Column(String(50), nullable=False)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)


class CustomerSegment(Base):
    """顾客分群定义表模型。

    Attributes:
        type: system（系统预置，不可删除，仅可修改 is_active / auto_actions）
            或 custom（店主自定义，可任意修改）。
        criteria: 分群条件 JSON，形如
            ``{"match": "all", "rules": [{"field": ..., "operator": ..., "value": ...}]}``。
        auto_actions: 顾客进入分群时触发的后续动作列表。
        customer_count: 最近一次计算得到的人数缓存。
    """
    __tablename__ = "customer_segments"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    profile_id: int = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    description: Optional[str] = Column(Text)
    type: str = Column(String(20), nullable=False, default="custom")  # system / custom
    criteria: Dict[str, Any] = Column(JSON, nullable=False)
    color: str = Column(String(20), default="#6B7280")
    icon: str = Column(String(50), default="users")
    auto_actions: List[Dict[str, Any]] = Column(JSON, default=list)
    customer_count: int = Column(Integer, default=0)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    updated_at: datetime = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    members: List["CustomerSegmentMember"] = relationship(
        "CustomerSegmentMember", back_populates="segment",
        cascade="all, delete-orphan"
    )


class CustomerSegmentMember(Base):
    """分群成员表模型（由刷新分群时整体重写）。"""
    __tablename__ = "customer_segment_members"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    segment_id: int = Column(Integer, ForeignKey("customer_segments.id"), nullable=False)
    customer_id: int = Column(Integer, ForeignKey("customers.id"), nullable=False)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    segment: "CustomerSegment" = relationship("CustomerSegment", back_populates="members")

    __table_args__ = (
        UniqueConstraint("segment_id", "customer_id", name="uq_segment_member"),
    )


class AutomationRule(Base):
    """自动化规则表模型。

    把一个生命周期触发类型映射到一个延迟执行的动作。

    Attributes:
        trigger_type: after_booking / after_contact / after_subscribe /
            after_stamp_complete / no_visit_30d / no_visit_60d /
            no_visit_90d / birthday。
        action_type: send_email / send_review_request / send_coupon。
        delay_hours: 触发后延迟多少小时执行，0 表示由下一次批处理执行。
        subject / body: 覆盖默认邮件标题与正文，正文支持
            ``{{customer_name}}`` 与 ``{{business_name}}`` 占位符。
    """
    __tablename__ = "automation_rules"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    profile_id: int = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    name: str = Column(String(100), nullable=False)
    trigger_type: str = Column(String(40), nullable=False)
    action_type: str = Column(String(40), nullable=False)
    delay_hours: int = Column(Integer, nullable=False, default=0)
    template_id: Optional[int] = Column(Integer)
    coupon_id: Optional[int] = Column(Integer, ForeignKey("coupons.id"))
    subject: Optional[str] = Column(String(200))
    body: Optional[str] = Column(Text)
    is_active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    coupon: Optional["Coupon"] = relationship("Coupon")


class AutomationLog(Base):
    """自动化执行日志表模型。

    由触发分发器创建（status=pending），之后只由日志处理器修改。
    状态流转：pending → processing → sent / failed / skipped，终态不再变化。

    Attributes:
        scheduled_at: 计划执行时间（触发时间 + delay_hours）。
        sent_at: 离开 pending/processing 时写入。
        error: 失败原因，skipped 时也可能写入说明。
        claim_token: 处理器认领该行时写入的批次令牌。
        claimed_at: 认领时间，用于判断认领是否失效。
    """
    __tablename__ = "automation_logs"
    __table_args__ = (
        Index("ix_automation_logs_status_scheduled", "status", "scheduled_at"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    rule_id: int = Column(Integer, ForeignKey("automation_rules.id"), nullable=False)
    customer_id: int = Column(Integer, nullable=False)
    profile_id: int = Column(Integer, ForeignKey("profiles.id"), nullable=False)
    status: str = Column(String(20), nullable=False, default=LOG_PENDING)
    scheduled_at: datetime = Column(DateTime, nullable=False)
    sent_at: Optional[datetime] = Column(DateTime)
    error: Optional[str] = Column(Text)
    claim_token: Optional[str] = Column(String(64))
    claimed_at: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)


class AutomationEvent(Base):
    """触发事件发件箱表模型。

    业务写入成功后只需写入一条事件，由独立的 worker 消费并转换为
    自动化日志，写入方不会因分发失败而失败。
    """
    __tablename__ = "automation_events"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    trigger_type: str = Column(String(40), nullable=False)
    customer_id: int = Column(Integer, nullable=False)
    profile_id: int = Column(Integer, nullable=False)
    status: str = Column(String(20), nullable=False, default=EVENT_PENDING)
    error: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    dispatched_at: Optional[datetime] = Column(DateTime)
