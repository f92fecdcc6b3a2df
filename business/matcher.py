"""分群匹配：把顾客原始字段、派生字段与附加指标合并后逐条求值。"""
from typing import Any, Callable, Dict, Optional

from .metrics import ComputedFields, CustomerExtras
from .rules import (
    SegmentCriteria, SegmentField, Value, MISSING,
    evaluate, to_value
)

_Accessor = Callable[[Any, ComputedFields, CustomerExtras], Any]

# 字段 → 取值函数 (customer, computed, extras)
_ACCESSORS: Dict[SegmentField, _Accessor] = {
    SegmentField.TOTAL_BOOKINGS: lambda c, f, e: c.total_bookings,
    SegmentField.TOTAL_MESSAGES: lambda c, f, e: c.total_messages,
    SegmentField.SOURCE: lambda c, f, e: c.source,
    SegmentField.EMAIL: lambda c, f, e: c.email,
    SegmentField.PHONE: lambda c, f, e: c.phone,
    SegmentField.NAME: lambda c, f, e: c.name,
    SegmentField.TAGS: lambda c, f, e: c.tags,
    SegmentField.LINE_USER_ID: lambda c, f, e: c.line_user_id,
    SegmentField.DAYS_SINCE_FIRST_VISIT: lambda c, f, e: f.days_since_first_visit,
    SegmentField.DAYS_SINCE_LAST_VISIT: lambda c, f, e: f.days_since_last_visit,
    SegmentField.IS_NEW: lambda c, f, e: f.is_new,
    SegmentField.IS_ACTIVE: lambda c, f, e: f.is_active,
    SegmentField.IS_AT_RISK: lambda c, f, e: f.is_at_risk,
    SegmentField.IS_CHURNED: lambda c, f, e: f.is_churned,
    SegmentField.IS_VIP: lambda c, f, e: f.is_vip,
    SegmentField.IS_SUBSCRIBER: lambda c, f, e: f.is_subscriber,
    SegmentField.HAS_EMAIL: lambda c, f, e: f.has_email,
    SegmentField.HAS_PHONE: lambda c, f, e: f.has_phone,
    SegmentField.HAS_LINE: lambda c, f, e: f.has_line,
    SegmentField.CONTACT_RICHNESS: lambda c, f, e: f.contact_richness,
    SegmentField.ENGAGEMENT_SCORE: lambda c, f, e: f.engagement_score,
    SegmentField.HAS_REFERRALS: lambda c, f, e: e.has_referrals,
    SegmentField.HAS_STAMPS: lambda c, f, e: e.has_stamps,
}

if set(_ACCESSORS) != set(SegmentField):
    raise RuntimeError(
        "Segment field accessors out of sync: "
        f"{sorted(f.value for f in set(SegmentField) ^ set(_ACCESSORS))}"
    )


def field_value(field: Any, customer: Any, computed: ComputedFields,
                extras: Optional[CustomerExtras] = None) -> Value:
    """读取字段值，未知字段或空值返回 MISSING。"""
    parsed = SegmentField.parse(field)
    if parsed is None:
        return MISSING
    raw = _ACCESSORS[parsed](customer, computed, extras or CustomerExtras())
    return to_value(raw)


def matches(customer: Any, computed: ComputedFields, criteria: Any,
            extras: Optional[CustomerExtras] = None) -> bool:
    """判断顾客是否满足分群条件。

    Args:
        customer: 顾客对象。
        computed: 该顾客的派生字段。
        criteria: SegmentCriteria 或其字典形式。
        extras: 附加指标（可选）。

    Returns:
        规则为空时为 False；match 为 all 时全部满足，any 时任一满足。
    """
    if not isinstance(criteria, SegmentCriteria):
        criteria = SegmentCriteria.from_dict(criteria)
    if not criteria.rules:
        return False

    extras = extras or CustomerExtras()
    results = (
        evaluate(field_value(rule.field, customer, computed, extras), rule)
        for rule in criteria.rules
    )
    if criteria.match == "all":
        return all(results)
    return any(results)
