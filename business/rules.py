"""分群规则：字段、取值类型与单条规则求值。

一条规则是 ``{field, operator, value}``，对一个顾客字段做一次比较。
字段通过封闭的 SegmentField 枚举解析，字段值统一包装为以下几种
取值类型之一，求值时按取值类型分派：

- NumberValue / StringValue / BoolValue / StringListValue
- MISSING：字段不存在或为空

任何运算符与任何取值组合都不会抛出异常：类型不匹配一律为 False，
唯一的例外是 not_contains，对非字符串/非列表（包括缺失）恒为 True。
"""
from dataclasses import dataclass
from enum import Enum
from numbers import Real
from typing import Any, Dict, List, Optional, Tuple, Union


class CriteriaValidationError(ValueError):
    """分群条件格式非法"""


# ============================================================
# 字段
# ============================================================

class SegmentField(str, Enum):
    """可在分群条件中使用的字段（取值即条件 JSON 中的键名）"""
    # 顾客原始字段
    TOTAL_BOOKINGS = "total_bookings"
    TOTAL_MESSAGES = "total_messages"
    SOURCE = "source"
    EMAIL = "email"
    PHONE = "phone"
    NAME = "name"
    TAGS = "tags"
    LINE_USER_ID = "line_user_id"
    # 派生字段
    DAYS_SINCE_FIRST_VISIT = "daysSinceFirstVisit"
    DAYS_SINCE_LAST_VISIT = "daysSinceLastVisit"
    IS_NEW = "isNew"
    IS_ACTIVE = "isActive"
    IS_AT_RISK = "isAtRisk"
    IS_CHURNED = "isChurned"
    IS_VIP = "isVIP"
    IS_SUBSCRIBER = "isSubscriber"
    HAS_EMAIL = "hasEmail"
    HAS_PHONE = "hasPhone"
    HAS_LINE = "hasLine"
    CONTACT_RICHNESS = "contactRichness"
    ENGAGEMENT_SCORE = "engagementScore"
    # 附加指标
    HAS_REFERRALS = "hasReferrals"
    HAS_STAMPS = "hasStamps"

    @classmethod
    def parse(cls, name: Any) -> Optional["SegmentField"]:
        """解析字段名，同时接受 snake_case 写法；未知字段返回 None。"""
        if not isinstance(name, str):
            return None
        try:
            return cls(name)
        except ValueError:
            return _SNAKE_ALIASES.get(name)


def _to_snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)


_SNAKE_ALIASES: Dict[str, SegmentField] = {
    _to_snake(f.value): f for f in SegmentField
}
_SNAKE_ALIASES["is_vip"] = SegmentField.IS_VIP


# ============================================================
# 取值类型
# ============================================================

@dataclass(frozen=True)
class NumberValue:
    value: float


@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class BoolValue:
    value: bool


@dataclass(frozen=True)
class StringListValue:
    # 列表中可能混有非字符串元素，比较时只看字符串元素
    values: Tuple[Any, ...]


class _Missing:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

Value = Union[NumberValue, StringValue, BoolValue, StringListValue, _Missing]


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool)


def to_value(raw: Any) -> Value:
    """把原始 Python 值包装为取值类型。"""
    if isinstance(raw, (NumberValue, StringValue, BoolValue,
                        StringListValue, _Missing)):
        return raw
    if raw is None:
        return MISSING
    if isinstance(raw, bool):
        return BoolValue(raw)
    if _is_number(raw):
        return NumberValue(raw)
    if isinstance(raw, str):
        return StringValue(raw)
    if isinstance(raw, (list, tuple)):
        return StringListValue(tuple(raw))
    return MISSING


# ============================================================
# 运算符与规则
# ============================================================

class Operator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    BETWEEN = "between"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"

    @classmethod
    def parse(cls, name: Any) -> Optional["Operator"]:
        try:
            return cls(name)
        except ValueError:
            return None


NUMERIC_OPERATORS = (Operator.GT, Operator.LT, Operator.GTE, Operator.LTE)
MATCH_MODES = ("all", "any")


@dataclass(frozen=True)
class SegmentRule:
    field: str
    operator: str
    value: Any = None

    @classmethod
    def from_dict(cls, data: Any) -> "SegmentRule":
        if not isinstance(data, dict):
            return cls(field="", operator="", value=None)
        return cls(
            field=data.get("field", ""),
            operator=data.get("operator", ""),
            value=data.get("value"),
        )

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "operator": self.operator, "value": value}


@dataclass(frozen=True)
class SegmentCriteria:
    match: str
    rules: Tuple[SegmentRule, ...]

    @classmethod
    def from_dict(cls, data: Any) -> "SegmentCriteria":
        """宽松解析已保存的条件，格式不对的部分会变成永不匹配的规则。"""
        if not isinstance(data, dict):
            return cls(match="all", rules=())
        rules = data.get("rules")
        if not isinstance(rules, (list, tuple)):
            rules = []
        return cls(
            match=data.get("match", "all"),
            rules=tuple(SegmentRule.from_dict(r) for r in rules),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"match": self.match, "rules": [r.to_dict() for r in self.rules]}


def _strict_equal(field_value: Value, expected: Any) -> bool:
    """类型严格的相等比较（布尔值与数字互不相等）。"""
    if isinstance(field_value, BoolValue):
        return isinstance(expected, bool) and field_value.value == expected
    if isinstance(field_value, NumberValue):
        return _is_number(expected) and field_value.value == expected
    if isinstance(field_value, StringValue):
        return isinstance(expected, str) and field_value.value == expected
    # 列表按引用比较，与任何规则值都不相等
    return False


def _contains(field_value: Value, needle: str) -> bool:
    needle = needle.lower()
    if isinstance(field_value, StringValue):
        return needle in field_value.value.lower()
    return any(
        isinstance(item, str) and needle in item.lower()
        for item in field_value.values
    )


def evaluate(field_value: Any, rule: SegmentRule) -> bool:
    """对单个字段值求值一条规则，永不抛出异常。

    Args:
        field_value: 取值类型或原始 Python 值（会被包装）。
        rule: 分群规则。

    Returns:
        是否满足规则。
    """
    value = to_value(field_value)
    operator = Operator.parse(rule.operator)
    expected = rule.value

    if operator is None:
        return False

    if operator is Operator.NOT_CONTAINS:
        if (isinstance(value, (StringValue, StringListValue))
                and isinstance(expected, str)):
            return not _contains(value, expected)
        return True

    if value is MISSING:
        return False

    if operator is Operator.EQ:
        return _strict_equal(value, expected)
    if operator is Operator.NEQ:
        return not _strict_equal(value, expected)

    if operator in NUMERIC_OPERATORS:
        if not isinstance(value, NumberValue) or not _is_number(expected):
            return False
        if operator is Operator.GT:
            return value.value > expected
        if operator is Operator.LT:
            return value.value < expected
        if operator is Operator.GTE:
            return value.value >= expected
        return value.value <= expected

    if operator is Operator.BETWEEN:
        if not isinstance(value, NumberValue):
            return False
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        low, high = expected
        if not _is_number(low) or not _is_number(high):
            return False
        return low <= value.value <= high

    if operator is Operator.CONTAINS:
        if (isinstance(value, (StringValue, StringListValue))
                and isinstance(expected, str)):
            return _contains(value, expected)
        return False

    return False


# ============================================================
# 创建时校验
# ============================================================

def validate_criteria(data: Any) -> SegmentCriteria:
    """严格校验分群条件，用于创建或修改分群时。

    Raises:
        CriteriaValidationError: match 非 all/any、规则为空、字段未知、
            运算符未知或规则值与运算符不匹配。
    """
    if not isinstance(data, dict):
        raise CriteriaValidationError("Criteria must be an object")
    match = data.get("match")
    if match not in MATCH_MODES:
        raise CriteriaValidationError(f"Invalid match mode: {match!r}")
    rules = data.get("rules")
    if not isinstance(rules, list):
        raise CriteriaValidationError("Criteria rules must be a list")
    if not rules:
        raise CriteriaValidationError("At least one rule is required")

    parsed: List[SegmentRule] = []
    for index, raw in enumerate(rules):
        if not isinstance(raw, dict):
            raise CriteriaValidationError(f"Rule #{index + 1} must be an object")
        rule = SegmentRule.from_dict(raw)
        if SegmentField.parse(rule.field) is None:
            raise CriteriaValidationError(
                f"Rule #{index + 1}: unknown field {rule.field!r}"
            )
        operator = Operator.parse(rule.operator)
        if operator is None:
            raise CriteriaValidationError(
                f"Rule #{index + 1}: unknown operator {rule.operator!r}"
            )
        if operator is Operator.BETWEEN:
            value = rule.value
            if (not isinstance(value, (list, tuple)) or len(value) != 2
                    or not all(_is_number(v) for v in value)):
                raise CriteriaValidationError(
                    f"Rule #{index + 1}: between needs [min, max]"
                )
        elif operator in NUMERIC_OPERATORS:
            if not _is_number(rule.value):
                raise CriteriaValidationError(
                    f"Rule #{index + 1}: {operator.value} needs a number"
                )
        elif operator in (Operator.CONTAINS, Operator.NOT_CONTAINS):
            if not isinstance(rule.value, str):
                raise CriteriaValidationError(
                    f"Rule #{index + 1}: {operator.value} needs a string"
                )
        parsed.append(rule)

    return SegmentCriteria(match=match, rules=tuple(parsed))


# ============================================================
# 展示
# ============================================================

FIELD_LABELS: Dict[SegmentField, str] = {
    SegmentField.TOTAL_BOOKINGS: "予約回数",
    SegmentField.TOTAL_MESSAGES: "メッセージ数",
    SegmentField.SOURCE: "ソース",
    SegmentField.EMAIL: "メールアドレス",
    SegmentField.PHONE: "電話番号",
    SegmentField.NAME: "名前",
    SegmentField.TAGS: "タグ",
    SegmentField.DAYS_SINCE_FIRST_VISIT: "初回来店からの日数",
    SegmentField.DAYS_SINCE_LAST_VISIT: "最終来店からの日数",
    SegmentField.IS_NEW: "新規顧客",
    SegmentField.IS_ACTIVE: "アクティブ",
    SegmentField.IS_AT_RISK: "離脱リスク",
    SegmentField.IS_CHURNED: "離脱済み",
    SegmentField.IS_VIP: "VIP",
    SegmentField.IS_SUBSCRIBER: "メール購読",
    SegmentField.HAS_EMAIL: "メールあり",
    SegmentField.HAS_PHONE: "電話番号あり",
    SegmentField.HAS_LINE: "LINE連携",
    SegmentField.HAS_REFERRALS: "紹介実績あり",
    SegmentField.CONTACT_RICHNESS: "連絡先充実度",
    SegmentField.ENGAGEMENT_SCORE: "エンゲージメントスコア",
}

OPERATOR_LABELS: Dict[Operator, str] = {
    Operator.EQ: "＝",
    Operator.NEQ: "≠",
    Operator.GT: "＞",
    Operator.LT: "＜",
    Operator.GTE: "≧",
    Operator.LTE: "≦",
    Operator.BETWEEN: "範囲内",
    Operator.CONTAINS: "含む",
    Operator.NOT_CONTAINS: "含まない",
}


def get_field_label(field: str) -> str:
    parsed = SegmentField.parse(field)
    if parsed is None:
        return str(field)
    return FIELD_LABELS.get(parsed, field)


def get_operator_label(operator: str) -> str:
    parsed = Operator.parse(operator)
    if parsed is None:
        return str(operator)
    return OPERATOR_LABELS[parsed]


def format_rule_display(rule: SegmentRule) -> str:
    """把规则格式化为界面上展示的一行文字。"""
    field_label = get_field_label(rule.field)

    if isinstance(rule.value, bool):
        return f"{field_label}：{'はい' if rule.value else 'いいえ'}"

    if (rule.operator == Operator.BETWEEN.value
            and isinstance(rule.value, (list, tuple)) and len(rule.value) == 2):
        return f"{field_label} {rule.value[0]}〜{rule.value[1]}"

    return f"{field_label} {get_operator_label(rule.operator)} {rule.value}"
