"""自动化相关的封闭枚举。

触发类型与动作类型在数据库中以字符串保存，业务代码一律通过这里的
枚举解析，非法取值在创建规则时即被拒绝。
"""
from enum import Enum


class TriggerType(str, Enum):
    """顾客生命周期触发类型"""
    AFTER_BOOKING = "after_booking"
    AFTER_CONTACT = "after_contact"
    AFTER_SUBSCRIBE = "after_subscribe"
    AFTER_STAMP_COMPLETE = "after_stamp_complete"
    NO_VISIT_30D = "no_visit_30d"
    NO_VISIT_60D = "no_visit_60d"
    NO_VISIT_90D = "no_visit_90d"
    BIRTHDAY = "birthday"


# 未来访触发类型 → 未来访天数
INACTIVITY_TRIGGERS = {
    TriggerType.NO_VISIT_30D: 30,
    TriggerType.NO_VISIT_60D: 60,
    TriggerType.NO_VISIT_90D: 90,
}


class ActionType(str, Enum):
    """自动化动作类型，每个取值对应一个执行器"""
    SEND_EMAIL = "send_email"
    SEND_REVIEW_REQUEST = "send_review_request"
    SEND_COUPON = "send_coupon"


class SegmentType(str, Enum):
    SYSTEM = "system"
    CUSTOM = "custom"


class AutomationRuleError(ValueError):
    """自动化规则参数非法"""
