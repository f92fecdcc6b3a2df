"""数据库管理器 —— 统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.customers``、``db.segments`` 等属性直接访问子仓库，
   返回 ORM 对象，适合分群计算、日志处理等需要精细控制的场景。

2. **便捷方法**（粗粒度）：
   提供扁平化的方法（如 ``save_customer()``、``list_automation_rules()``），
   返回字典/基本类型，适合上层业务代码和 CLI 调用。
"""
from typing import Optional, List, Dict, Any
from sqlalchemy.orm import Session

from .connection import DatabaseConnection
from .entity_repos import (
    ProfileRepository, CustomerRepository, ReferralRepository,
    StampRepository, CouponRepository
)
from .business_repos import SegmentRepository, AutomationRuleRepository
from .system_repos import AutomationLogRepository, AutomationEventRepository
from .models import Customer, Profile


class DatabaseManager:
    """数据库管理器 —— 统一门面。

    Attributes:
        conn: 数据库连接管理器。
        profiles: 店铺仓库。
        customers: 顾客仓库。
        referrals: 推荐码仓库。
        stamps: 集章卡仓库。
        coupons: 优惠券仓库。
        segments: 顾客分群仓库。
        automation_rules: 自动化规则仓库。
        automation_logs: 自动化执行日志仓库。
        automation_events: 触发事件发件箱仓库。

    Example::

        db = DatabaseManager("sqlite:///data/folio.db")
        db.create_tables()

        # 通过子仓库访问（返回 ORM 对象）
        profile = db.profiles.get_or_create("salon-a", "Salon A")

        # 通过便捷方法访问（返回字典）
        rules = db.list_automation_rules(profile.id)
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
        """
        # 基础设施层
        self.conn = DatabaseConnection(database_url)

        # 实体仓库
        self.profiles = ProfileRepository(self.conn)
        self.customers = CustomerRepository(self.conn)
        self.referrals = ReferralRepository(self.conn)
        self.stamps = StampRepository(self.conn)
        self.coupons = CouponRepository(self.conn)

        # 业务配置仓库
        self.segments = SegmentRepository(self.conn)
        self.automation_rules = AutomationRuleRepository(self.conn)

        # 系统数据仓库
        self.automation_logs = AutomationLogRepository(self.conn)
        self.automation_events = AutomationEventRepository(self.conn)

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def get_session(self) -> Session:
        """获取数据库会话。"""
        return self.conn.get_session()

    @property
    def database_url(self) -> str:
        """数据库连接URL。"""
        return self.conn.database_url

    @property
    def engine(self):
        """SQLAlchemy 引擎对象。"""
        return self.conn.engine

    def close(self) -> None:
        """关闭数据库连接，释放所有资源。"""
        self.conn.close()

    # ================================================================
    # 便捷写入方法
    # ================================================================

    def save_customer(self, profile_id: int,
                      customer_data: Dict[str, Any]) -> int:
        """保存顾客（按邮箱或 LINE 用户ID去重）。

        Args:
            profile_id: 店铺ID。
            customer_data: 顾客数据字典，支持 name、email、phone、
                line_user_id、source、seen_at。

        Returns:
            顾客ID。
        """
        customer = self.customers.get_or_create(
            profile_id=profile_id,
            name=customer_data.get("name", ""),
            email=customer_data.get("email"),
            phone=customer_data.get("phone"),
            line_user_id=customer_data.get("line_user_id"),
            source=customer_data.get("source", "manual"),
            seen_at=customer_data.get("seen_at"),
        )
        return customer.id

    def create_automation_rule(self, profile_id: int,
                               rule_data: Dict[str, Any]) -> int:
        """创建自动化规则。

        Args:
            profile_id: 店铺ID。
            rule_data: 规则数据字典，详见 AutomationRuleRepository.save。

        Returns:
            新建规则ID。

        Raises:
            AutomationRuleError: 参数非法。
        """
        rule = self.automation_rules.save(
            profile_id=profile_id,
            name=rule_data.get("name"),
            trigger_type=rule_data.get("trigger_type"),
            action_type=rule_data.get("action_type"),
            delay_hours=rule_data.get("delay_hours"),
            template_id=rule_data.get("template_id"),
            coupon_id=rule_data.get("coupon_id"),
            subject=rule_data.get("subject"),
            body=rule_data.get("body"),
        )
        return rule.id

    # ================================================================
    # 便捷查询方法
    # ================================================================

    def get_customer_info(self, customer_id: int) -> Optional[Dict[str, Any]]:
        """获取顾客信息。

        Returns:
            顾客字典，不存在返回 None。
        """
        customer = self.customers.get_by_id(Customer, customer_id)
        if customer is None:
            return None
        return {
            "id": customer.id,
            "profile_id": customer.profile_id,
            "name": customer.name,
            "email": customer.email,
            "phone": customer.phone,
            "line_user_id": customer.line_user_id,
            "source": customer.source,
            "total_bookings": customer.total_bookings,
            "total_messages": customer.total_messages,
            "first_seen_at": customer.first_seen_at,
            "last_seen_at": customer.last_seen_at,
            "tags": customer.tags or [],
        }

    def list_automation_rules(self, profile_id: int) -> List[Dict[str, Any]]:
        """获取店铺的自动化规则及发送统计。"""
        return self.automation_rules.list_with_stats(profile_id)

    def get_automation_logs(self, profile_id: int,
                            status: Optional[str] = None,
                            limit: int = 100) -> List[Dict[str, Any]]:
        """获取店铺的自动化执行日志。

        Args:
            profile_id: 店铺ID。
            status: 只返回该状态的日志（可选）。
            limit: 最多返回条数。

        Returns:
            日志字典列表（按计划时间倒序）。
        """
        logs = self.automation_logs.get_by_profile(profile_id, status, limit)
        return [
            {
                "id": log.id,
                "rule_id": log.rule_id,
                "customer_id": log.customer_id,
                "status": log.status,
                "scheduled_at": log.scheduled_at,
                "sent_at": log.sent_at,
                "error": log.error,
            }
            for log in logs
        ]

    def get_event_stats(self) -> Dict[str, int]:
        """按状态统计发件箱事件数。"""
        return self.automation_events.count_by_status()

    def get_profile_ids(self) -> List[int]:
        """获取全部店铺ID。"""
        return [p.id for p in self.profiles.get_all(Profile)]

