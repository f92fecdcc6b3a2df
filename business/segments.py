"""顾客分群注册表。

负责系统预置分群的初始化、自定义分群的增删改、分群人数计算与
分群成员物化。条件求值委托给 matcher，持久化委托给 DatabaseManager。

人数计算每次最多读取店铺最近来访的 ``settings.segment_customer_limit``
位顾客，复杂度为 O(分群数 × 顾客数 × 规则数)。
"""
from typing import Optional, List, Dict, Any, Iterable, Tuple
from datetime import datetime
from loguru import logger

from config.settings import settings
from database.models import CustomerSegment
from .matcher import matches
from .metrics import CustomerExtras, compute_fields
from .rules import CriteriaValidationError, SegmentCriteria, validate_criteria
from database.types import SegmentType

SEGMENT_NAME_MAX_LENGTH = 100
DEFAULT_SEGMENT_COLOR = "#6B7280"
DEFAULT_SEGMENT_ICON = "users"

AUTO_ACTION_TYPES = ("send_email", "send_coupon", "add_tag")

# 系统分群只允许修改的字段
SYSTEM_UPDATABLE_FIELDS = ("is_active", "auto_actions")
CUSTOM_UPDATABLE_FIELDS = (
    "name", "description", "criteria", "color", "icon",
    "auto_actions", "is_active",
)


class SystemSegmentError(ValueError):
    """试图修改或删除系统分群中不允许变更的部分"""


class SegmentNotFoundError(ValueError):
    """分群不存在或不属于该店铺"""


def _rule(field: str, operator: str, value: Any) -> Dict[str, Any]:
    return {"field": field, "operator": operator, "value": value}


def get_system_segments(profile_id: int) -> List[Dict[str, Any]]:
    """系统预置的八个分群定义。

    Args:
        profile_id: 店铺ID。

    Returns:
        可直接用于创建 CustomerSegment 的字段字典列表。
    """
    catalog = [
        ("新規顧客", "過去30日以内に初めて来た顧客",
         [_rule("isNew", "eq", True)], "#3B82F6", "user-plus"),
        ("常連顧客", "3回以上予約し、60日以内にアクティブな顧客",
         [_rule("total_bookings", "gte", 3), _rule("isActive", "eq", True)],
         "#22C55E", "heart"),
        ("VIP顧客", "10回以上予約、または5回以上予約で紹介実績のある顧客",
         [_rule("isVIP", "eq", True)], "#F59E0B", "crown"),
        ("離脱リスク", "2回以上予約したが、45〜90日間来店がない顧客",
         [_rule("isAtRisk", "eq", True)], "#F97316", "alert-triangle"),
        ("離脱顧客", "1回以上予約したが、90日以上来店がない顧客",
         [_rule("isChurned", "eq", True)], "#EF4444", "user-x"),
        ("紹介者", "他の顧客を紹介してくれた顧客",
         [_rule("hasReferrals", "eq", True)], "#8B5CF6", "gift"),
        ("メール購読のみ", "メール購読はあるが予約のない顧客",
         [_rule("isSubscriber", "eq", True), _rule("total_bookings", "eq", 0)],
         "#6B7280", "mail"),
        ("LINE連携済み", "LINEアカウントが連携されている顧客",
         [_rule("hasLine", "eq", True)], "#06C755", "message-circle"),
    ]
    return [
        {
            "profile_id": profile_id,
            "name": name,
            "description": description,
            "type": SegmentType.SYSTEM.value,
            "criteria": {"match": "all", "rules": rules},
            "color": color,
            "icon": icon,
            "auto_actions": [],
            "customer_count": 0,
            "is_active": True,
        }
        for name, description, rules, color, icon in catalog
    ]


def segment_to_dict(segment: CustomerSegment) -> Dict[str, Any]:
    return {
        "id": segment.id,
        "profile_id": segment.profile_id,
        "name": segment.name,
        "description": segment.description,
        "type": segment.type,
        "criteria": segment.criteria,
        "color": segment.color,
        "icon": segment.icon,
        "auto_actions": segment.auto_actions or [],
        "customer_count": segment.customer_count or 0,
        "is_active": segment.is_active,
        "created_at": segment.created_at,
        "updated_at": segment.updated_at,
    }


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise CriteriaValidationError("Segment name is required")
    if len(name) > SEGMENT_NAME_MAX_LENGTH:
        raise CriteriaValidationError(
            f"Segment name must be at most {SEGMENT_NAME_MAX_LENGTH} characters"
        )
    return name


def _validate_auto_actions(auto_actions: Any) -> List[Dict[str, Any]]:
    if auto_actions is None:
        return []
    if not isinstance(auto_actions, list):
        raise CriteriaValidationError("auto_actions must be a list")
    for action in auto_actions:
        if not isinstance(action, dict) or action.get("type") not in AUTO_ACTION_TYPES:
            raise CriteriaValidationError(f"Invalid auto action: {action!r}")
    return auto_actions


class SegmentRegistry:
    """顾客分群注册表。

    Attributes:
        db: 数据库管理器。
        customer_limit: 计算人数时每个店铺最多读取的顾客数。
    """

    def __init__(self, db, customer_limit: Optional[int] = None) -> None:
        self.db = db
        self.customer_limit = customer_limit or settings.segment_customer_limit

    # ================================================================
    # 人数计算
    # ================================================================

    def _load_population(self, profile_id: int, now: Optional[datetime] = None):
        """读取店铺顾客并预先计算派生字段。"""
        customers = self.db.customers.get_recent_by_profile(
            profile_id, self.customer_limit
        )
        extras_map = self.db.customers.fetch_extras(
            profile_id, [c.id for c in customers]
        )
        now = now or datetime.utcnow()
        population = []
        for customer in customers:
            extras = CustomerExtras.from_dict(extras_map.get(customer.id))
            population.append(
                (customer, compute_fields(customer, extras, now), extras)
            )
        return population

    @staticmethod
    def _match_ids(population, criteria: Any) -> List[int]:
        parsed = SegmentCriteria.from_dict(criteria)
        return [
            customer.id
            for customer, computed, extras in population
            if matches(customer, computed, parsed, extras)
        ]

    def compute_segment_counts(self, profile_id: int,
                               segments: Iterable[Tuple[int, Any]],
                               now: Optional[datetime] = None
                               ) -> List[Dict[str, Any]]:
        """计算若干分群的当前人数。

        Args:
            profile_id: 店铺ID。
            segments: ``(segment_id, criteria)`` 序列。
            now: 当前时间（可选）。

        Returns:
            ``[{"id", "customer_count", "customer_ids"}]``，与输入顺序一致。
        """
        segments = list(segments)
        population = self._load_population(profile_id, now) if segments else []
        results = []
        for segment_id, criteria in segments:
            ids = self._match_ids(population, criteria) if population else []
            results.append({
                "id": segment_id,
                "customer_count": len(ids),
                "customer_ids": ids,
            })
        return results

    # ================================================================
    # 分群管理
    # ================================================================

    def initialize_system_segments(self, profile_id: int) -> Dict[str, Any]:
        """为店铺初始化系统分群（只执行一次）。

        Returns:
            ``{"initialized": bool, "segments": [...]}``。已经初始化过时
            initialized 为 False，segments 为已存在的系统分群。
        """
        if self.db.segments.has_type(profile_id, SegmentType.SYSTEM.value):
            existing = [
                segment_to_dict(s)
                for s in self.db.segments.get_by_profile(profile_id)
                if s.type == SegmentType.SYSTEM.value
            ]
            logger.info(
                f"System segments already exist for profile {profile_id}"
            )
            return {"initialized": False, "segments": existing}

        created = self.db.segments.bulk_create(get_system_segments(profile_id))
        logger.info(
            f"Initialized {len(created)} system segments for profile {profile_id}"
        )
        return {
            "initialized": True,
            "segments": [segment_to_dict(s) for s in created],
        }

    def list_segments(self, profile_id: int,
                      now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """列出店铺全部分群，附带实时人数与成员ID，并刷新人数缓存。"""
        segments = self.db.segments.get_by_profile(profile_id)
        if not segments:
            return []

        counts = self.compute_segment_counts(
            profile_id, [(s.id, s.criteria) for s in segments], now
        )
        enriched = []
        for segment, count in zip(segments, counts):
            if segment.customer_count != count["customer_count"]:
                self.db.segments.update_count(segment.id, count["customer_count"])
            data = segment_to_dict(segment)
            data["customer_count"] = count["customer_count"]
            data["customer_ids"] = count["customer_ids"]
            enriched.append(data)
        return enriched

    def create_custom_segment(self, profile_id: int, name: str,
                              criteria: Dict[str, Any],
                              description: Optional[str] = None,
                              color: Optional[str] = None,
                              icon: Optional[str] = None,
                              auto_actions: Optional[List[Dict[str, Any]]] = None,
                              now: Optional[datetime] = None
                              ) -> Dict[str, Any]:
        """创建自定义分群并计算初始人数。

        Raises:
            CriteriaValidationError: 名称或条件非法。
        """
        name = _validate_name(name)
        validated = validate_criteria(criteria)
        actions = _validate_auto_actions(auto_actions)

        segment = self.db.segments.create(
            CustomerSegment,
            profile_id=profile_id,
            name=name,
            description=description or None,
            type=SegmentType.CUSTOM.value,
            criteria=validated.to_dict(),
            color=color or DEFAULT_SEGMENT_COLOR,
            icon=icon or DEFAULT_SEGMENT_ICON,
            auto_actions=actions,
            customer_count=0,
            is_active=True,
        )

        count = self.compute_segment_counts(
            profile_id, [(segment.id, segment.criteria)], now
        )[0]
        self.db.segments.update_count(segment.id, count["customer_count"])
        logger.info(
            f"Custom segment {segment.id} '{name}' created for profile "
            f"{profile_id} with {count['customer_count']} customers"
        )

        data = segment_to_dict(segment)
        data["customer_count"] = count["customer_count"]
        data["customer_ids"] = count["customer_ids"]
        return data

    def update_segment(self, segment_id: int, profile_id: int,
                       now: Optional[datetime] = None,
                       **fields) -> Dict[str, Any]:
        """修改分群。

        系统分群只能修改 is_active 与 auto_actions；自定义分群可修改
        名称、描述、条件、颜色、图标、自动动作与启用状态。修改条件时
        会重新校验并重算人数。

        Raises:
            SegmentNotFoundError: 分群不存在或不属于该店铺。
            SystemSegmentError: 对系统分群修改了不允许的字段。
            CriteriaValidationError: 字段取值非法。
        """
        segment = self.db.segments.get_for_profile(segment_id, profile_id)
        if segment is None:
            raise SegmentNotFoundError(f"Segment {segment_id} not found")

        if segment.type == SegmentType.SYSTEM.value:
            forbidden = set(fields) - set(SYSTEM_UPDATABLE_FIELDS)
            if forbidden:
                raise SystemSegmentError(
                    "System segments only allow is_active and auto_actions: "
                    f"{', '.join(sorted(forbidden))}"
                )
        else:
            unknown = set(fields) - set(CUSTOM_UPDATABLE_FIELDS)
            if unknown:
                raise CriteriaValidationError(
                    f"Unsupported segment fields: {', '.join(sorted(unknown))}"
                )

        values = dict(fields)
        if "name" in values:
            values["name"] = _validate_name(values["name"])
        if "criteria" in values:
            values["criteria"] = validate_criteria(values["criteria"]).to_dict()
        if "auto_actions" in values:
            values["auto_actions"] = _validate_auto_actions(values["auto_actions"])
        values["updated_at"] = datetime.utcnow()

        updated = self.db.segments.update_by_id(
            CustomerSegment, segment_id, **values
        )
        data = segment_to_dict(updated)
        data["customer_ids"] = []

        if "criteria" in fields:
            count = self.compute_segment_counts(
                profile_id, [(segment_id, updated.criteria)], now
            )[0]
            self.db.segments.update_count(segment_id, count["customer_count"])
            data["customer_count"] = count["customer_count"]
            data["customer_ids"] = count["customer_ids"]
        return data

    def delete_custom_segment(self, segment_id: int, profile_id: int) -> bool:
        """删除自定义分群。

        Raises:
            SegmentNotFoundError: 分群不存在或不属于该店铺。
            SystemSegmentError: 分群是系统分群。
        """
        segment = self.db.segments.get_for_profile(segment_id, profile_id)
        if segment is None:
            raise SegmentNotFoundError(f"Segment {segment_id} not found")
        if segment.type == SegmentType.SYSTEM.value:
            raise SystemSegmentError("System segments cannot be deleted")

        deleted = self.db.segments.delete_with_members(segment_id)
        if deleted:
            logger.info(f"Custom segment {segment_id} deleted")
        return deleted

    def refresh_memberships(self, profile_id: int,
                            now: Optional[datetime] = None) -> Dict[str, int]:
        """重新计算全部启用分群的成员并写入成员表。

        Returns:
            ``{"segments_updated", "total_memberships", "customers_evaluated"}``。
        """
        segments = self.db.segments.get_by_profile(profile_id, active_only=True)
        population = self._load_population(profile_id, now) if segments else []

        total = 0
        for segment in segments:
            ids = self._match_ids(population, segment.criteria)
            total += self.db.segments.replace_members(segment.id, ids)

        logger.info(
            f"Refreshed {len(segments)} segments for profile {profile_id}: "
            f"{total} memberships over {len(population)} customers"
        )
        return {
            "segments_updated": len(segments),
            "total_memberships": total,
            "customers_evaluated": len(population),
        }
