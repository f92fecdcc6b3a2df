"""顾客行为指标计算。

从顾客原始记录（及可选的附加指标）推导出时间与行为字段，
供分群条件求值使用。纯函数，不做任何 I/O，结果不落库。

活跃度评分（0–100）由三部分组成：
- 最近来访（最高 40）：当天来访为 40，90 天内线性衰减到 0
- 预约频次（最高 30）：每次预约 3 分，最多计 10 次
- 联系深度（最高 30）：邮箱 10、LINE 10、电话 5、集章 5
"""
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

NEW_CUSTOMER_DAYS = 30
ACTIVE_DAYS = 60
AT_RISK_MIN_DAYS = 45
AT_RISK_MAX_DAYS = 90
CHURN_DAYS = 90

RECENCY_WEIGHT = 40.0
RECENCY_WINDOW_DAYS = 90.0
FREQUENCY_PER_BOOKING = 3
FREQUENCY_BOOKING_CAP = 10

_ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class CustomerExtras:
    """来自关联表的附加指标"""
    has_referrals: bool = False
    has_stamps: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CustomerExtras":
        if not data:
            return cls()
        return cls(
            has_referrals=bool(data.get("has_referrals", False)),
            has_stamps=bool(data.get("has_stamps", False)),
        )


@dataclass(frozen=True)
class ComputedFields:
    """顾客派生字段（每次读取时重新计算）"""
    days_since_first_visit: int
    days_since_last_visit: int
    is_new: bool
    is_active: bool
    is_at_risk: bool
    is_churned: bool
    is_vip: bool
    is_subscriber: bool
    has_email: bool
    has_phone: bool
    has_line: bool
    contact_richness: int
    engagement_score: int


def days_between(earlier: datetime, later: datetime) -> int:
    """两个时间点相差的整天数（向下取整，later 早于 earlier 时为负数）。"""
    return (later - earlier) // _ONE_DAY


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def engagement_score(days_since_last_visit: int, total_bookings: int,
                     has_email: bool, has_line: bool, has_phone: bool,
                     has_stamps: bool) -> int:
    """计算活跃度评分，结果总在 [0, 100] 内。

    last_seen_at 晚于当前时间（时钟偏差）时天数为负，按 0 天计算
    最近来访得分，因此该项不会超过 40。
    """
    days = max(0, days_since_last_visit)
    recency = max(0.0, RECENCY_WEIGHT - (days / RECENCY_WINDOW_DAYS) * RECENCY_WEIGHT)
    frequency = min(max(total_bookings, 0), FREQUENCY_BOOKING_CAP) * FREQUENCY_PER_BOOKING
    depth = (
        (10 if has_email else 0)
        + (10 if has_line else 0)
        + (5 if has_phone else 0)
        + (5 if has_stamps else 0)
    )
    score = round_half_up(min(100.0, recency + frequency + depth))
    return max(0, min(100, score))


def compute_fields(customer: Any, extras: Optional[CustomerExtras] = None,
                   now: Optional[datetime] = None) -> ComputedFields:
    """计算顾客派生字段。

    Args:
        customer: 顾客对象（ORM Customer 或具有相同属性的对象）。
        extras: 附加指标，缺省时全部视为 False。
        now: 当前时间，默认当前UTC时间。

    Returns:
        ComputedFields。
    """
    now = now or datetime.utcnow()
    extras = extras or CustomerExtras()

    days_first = days_between(customer.first_seen_at, now)
    days_last = days_between(customer.last_seen_at, now)
    bookings = customer.total_bookings or 0

    has_email = bool(customer.email)
    has_phone = bool(customer.phone)
    has_line = bool(customer.line_user_id)

    return ComputedFields(
        days_since_first_visit=days_first,
        days_since_last_visit=days_last,
        is_new=days_first <= NEW_CUSTOMER_DAYS,
        is_active=days_last <= ACTIVE_DAYS,
        is_at_risk=(
            bookings >= 2
            and AT_RISK_MIN_DAYS <= days_last <= AT_RISK_MAX_DAYS
        ),
        is_churned=bookings >= 1 and days_last > CHURN_DAYS,
        is_vip=bookings >= 10 or (bookings >= 5 and extras.has_referrals),
        is_subscriber="subscriber" in (customer.source or ""),
        has_email=has_email,
        has_phone=has_phone,
        has_line=has_line,
        contact_richness=int(has_email) + int(has_phone) + int(has_line),
        engagement_score=engagement_score(
            days_last, bookings, has_email, has_line, has_phone,
            extras.has_stamps
        ),
    )
