"""数据库管理器：统一门面（Facade）。

DatabaseManager 是 database 模块的统一入口，组合了所有子仓库，
提供两套 API：

1. **子仓库访问**（细粒度）：
   通过 ``db.members``、``db.shifts`` 等属性直接访问子仓库，
   返回 ORM 对象，适合需要精细控制的场景（测试、脚本）。

2. **便捷方法**（粗粒度）：
   提供扁平化的方法（如 ``register_member()``、``end_shift()``），
   返回 JSON 友好的字典（金额为 float，时间为 ISO 字符串），
   供 Web 接口和定时任务直接使用。
"""
from typing import Optional, List, Dict, Any, Union
from datetime import date, datetime, timedelta
from sqlalchemy.orm import Session
from loguru import logger

from business.csv_io import export_to_csv, parse_member_csv
from business.display import (
    capitalize_status, format_last_valid_day, get_status_color,
    get_stock_status,
)
from business.membership import format_nric, get_age_from_nric
from business.pagination import Page, normalize_page
from business.reports import jsonable, shift_base_date
from business.timeutils import local_day_bounds, local_today, parse_date
from config.settings import settings

from .connection import DatabaseConnection
from .entity_repos import (
    UserRepository, SettingRepository, MembershipPlanRepository,
    MemberRepository, ProductRepository,
)
from .business_repos import (
    PaymentRepository, ShiftRepository, MembershipRepository,
    CheckInRepository, CouponRepository, SaleRepository,
)
from .system_repos import DeviceRepository, ReportRepository, SummaryRepository
from .models import (
    User, MembershipPlan, Member, Payment, Shift, Coupon, Product,
)


# ================================================================
# 字典转换
# ================================================================

def _user_dict(u: User) -> Dict[str, Any]:
    return {
        "id": u.id,
        "email": u.email,
        "name": u.name,
        "role": u.role,
        "active": u.active,
        "created_at": u.created_at,
    }


def _plan_dict(p: MembershipPlan) -> Dict[str, Any]:
    return {
        "id": p.id,
        "type": p.type,
        "months": p.months,
        "price": p.price,
        "registration_fee": p.registration_fee,
        "free_months": p.free_months or 0,
        "active": p.active,
    }


def _member_dict(m: Member) -> Dict[str, Any]:
    return {
        "id": m.id,
        "member_id": m.member_id,
        "name": m.name,
        "email": m.email,
        "phone": m.phone,
        "nric": format_nric(m.nric) if m.nric else None,
        "age": get_age_from_nric(m.nric) if m.nric else None,
        "type": m.type,
        "status": m.status,
        "status_label": capitalize_status(m.status),
        "status_color": get_status_color(m.status),
        "photo_url": m.photo_url,
        "expiry_date": m.expiry_date,
        "last_valid_day": format_last_valid_day(m.expiry_date),
        "created_at": m.created_at,
    }


def _payment_dict(p: Union[Payment, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(p, dict):
        return p
    return {
        "id": p.id,
        "amount": p.amount,
        "type": p.type,
        "payment_method": p.payment_method,
        "items": p.items,
        "details": p.details,
        "member_id": p.member_id,
        "shift_id": p.shift_id,
        "coupon_id": p.coupon_id,
        "check_in_id": p.check_in_id,
        "user_id": p.user_id,
        "created_at": p.created_at,
    }


def _coupon_dict(c: Coupon) -> Dict[str, Any]:
    return {
        "id": c.id,
        "code": c.code,
        "type": c.type,
        "price": c.price,
        "owner_name": c.owner_name,
        "valid_until": c.valid_until,
        "max_uses": c.max_uses,
        "uses": c.uses,
        "remaining_uses": max(c.max_uses - c.uses, 0),
        "active": c.active,
        "created_at": c.created_at,
    }


def _product_dict(p: Product) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "price": p.price,
        "photo_url": p.photo_url,
        "stock": p.stock,
        "stock_status": get_stock_status(p.stock),
        "active": p.active,
    }


def _shift_dict(s: Shift) -> Dict[str, Any]:
    return {
        "id": s.id,
        "user_id": s.user_id,
        "next_user_id": s.next_user_id,
        "ip_address": s.ip_address,
        "cash_collection": s.cash_collection,
        "qr_collection": s.qr_collection,
        "bank_transfer_collection": s.bank_transfer_collection,
        "system_cash": s.system_cash,
        "system_qr": s.system_qr,
        "system_bank_transfer": s.system_bank_transfer,
        "cash_variance": s.cash_variance,
        "qr_variance": s.qr_variance,
        "bank_transfer_variance": s.bank_transfer_variance,
        "total_sales": s.total_sales,
        "created_at": s.created_at,
        "ended_at": s.ended_at,
    }


class DatabaseManager:
    """数据库管理器：统一门面。

    Attributes:
        conn: 数据库连接管理器。
        users: 员工账号仓库。
        settings: 业务设置仓库。
        plans: 会员方案仓库。
        members: 会员仓库。
        products: 商品仓库。
        payments: 收款流水仓库。
        shifts: 班次仓库。
        memberships: 会员注册与续费仓库。
        check_ins: 签到与散客仓库。
        coupons: 优惠券仓库。
        sales: POS 销售仓库。
        devices: 设备授权仓库。
        reports: 报表仓库。
        summaries: 每日汇总快照仓库。

    Example::

        db = DatabaseManager("sqlite:///data/gym.db")
        db.initialize()

        # 通过子仓库访问（返回 ORM 对象）
        member = db.members.get_by_member_id("000001")

        # 通过便捷方法访问（返回字典）
        page = db.list_members(page=1, status="active")
    """

    def __init__(self, database_url: Optional[str] = None) -> None:
        """初始化数据库管理器。

        Args:
            database_url: 数据库连接URL。如果为None则使用settings配置。
                        支持 ``sqlite:///`` 和 ``postgresql://`` 格式。
        """
        # 基础设施层
        self.conn = DatabaseConnection(database_url)

        # 实体仓库
        self.users = UserRepository(self.conn)
        self.settings = SettingRepository(self.conn)
        self.plans = MembershipPlanRepository(self.conn)
        self.members = MemberRepository(self.conn, self.settings)
        self.products = ProductRepository(self.conn)

        # 业务记录仓库
        self.payments = PaymentRepository(self.conn)
        self.shifts = ShiftRepository(self.conn, self.payments)
        self.memberships = MembershipRepository(
            self.conn, self.settings, self.members, self.plans,
            self.shifts, self.payments
        )
        self.check_ins = CheckInRepository(
            self.conn, self.settings, self.members, self.shifts, self.payments
        )
        self.coupons = CouponRepository(
            self.conn, self.settings, self.shifts, self.payments
        )
        self.sales = SaleRepository(
            self.conn, self.products, self.shifts, self.payments
        )

        # 系统数据仓库
        self.devices = DeviceRepository(self.conn, self.settings)
        self.reports = ReportRepository(
            self.conn, self.settings, self.members, self.payments
        )
        self.summaries = SummaryRepository(self.conn)

    # ================================================================
    # 基础设施方法
    # ================================================================

    def create_tables(self) -> None:
        """创建所有数据库表（幂等操作）。"""
        self.conn.create_tables()

    def initialize(self, admin_email: Optional[str] = None,
                   admin_password: Optional[str] = None) -> Dict[str, Any]:
        """建表、写入默认设置，并在没有任何账号时创建超级管理员。

        Returns:
            {"settings_created": 新写入的设置数, "admin_created": 是否创建了管理员}
        """
        self.create_tables()
        created = self.settings.seed_defaults()
        admin_created = False
        if self.users.count(User) == 0:
            email = admin_email or settings.bootstrap_admin_email
            self.users.create_user(
                email, admin_password or settings.bootstrap_admin_password,
                role="superadmin", name="Administrator"
            )
            admin_created = True
            logger.info(f"已创建初始超级管理员: {email}")
        return {"settings_created": created, "admin_created": admin_created}

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

    def execute_raw_sql(self, sql: str,
                        params: Optional[dict] = None) -> Any:
        """执行原始 SQL 语句（应优先使用 ORM 方法）。"""
        return self.conn.execute_raw_sql(sql, params)

    def close(self) -> None:
        """关闭数据库连接，释放所有资源。"""
        self.conn.close()

    # ================================================================
    # 账号与设备
    # ================================================================

    def login(self, email: str, password: str,
              fingerprint: Optional[str] = None,
              device_description: Optional[str] = None) -> Dict[str, Any]:
        """登录：校验密码与设备。

        Returns:
            {"user": 用户字典, "device": 设备校验结果}

        Raises:
            ValueError: 邮箱或密码错误、账号停用、缺少设备指纹。
        """
        user = self.users.authenticate(email, password)
        if user is None:
            raise ValueError("Invalid email or password")
        device = self.devices.validate_device(
            user.id, fingerprint, device_description
        )
        return {"user": jsonable(_user_dict(user)), "device": device}

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        user = self.users.get_by_id(User, user_id)
        return jsonable(_user_dict(user)) if user else None

    def list_users(self, actor_role: str) -> List[Dict[str, Any]]:
        return jsonable([
            _user_dict(u) for u in self.users.get_accessible_users(actor_role)
        ])

    def get_handover_users(self, current_user_id: int) -> List[Dict[str, Any]]:
        """交班时可选择的交接人（启用的其他账号）。"""
        return jsonable([
            _user_dict(u)
            for u in self.users.get_active_users(exclude_user_id=current_user_id)
        ])

    def create_user(self, data: Dict[str, Any],
                    actor_role: str) -> Dict[str, Any]:
        user = self.users.create_user(
            data.get("email"), data.get("password"),
            role=data.get("role") or "cashier", name=data.get("name"),
            actor_role=actor_role
        )
        return jsonable(_user_dict(user))

    def update_user(self, user_id: int, data: Dict[str, Any],
                    actor_role: str, actor_id: Optional[int] = None
                    ) -> Optional[Dict[str, Any]]:
        user = self.users.update_details(
            user_id, actor_role, name=data.get("name"),
            role=data.get("role"), password=data.get("password")
        )
        if user is not None and "active" in data:
            user = self.users.set_active(user_id, bool(data["active"]),
                                         actor_role, actor_id=actor_id)
        return jsonable(_user_dict(user)) if user else None

    def list_device_requests(self, pending: bool = True) -> List[Dict[str, Any]]:
        return jsonable(self.devices.list_requests(pending))

    def approve_device_request(self, request_id: int, admin: Dict[str, Any],
                               notes: Optional[str] = None) -> Dict[str, Any]:
        request = self.devices.approve_request(
            request_id, admin["id"], admin["role"], notes
        )
        return {"id": request.id, "status": request.status,
                "admin_notes": request.admin_notes}

    def deny_device_request(self, request_id: int, admin: Dict[str, Any],
                            notes: Optional[str] = None) -> Dict[str, Any]:
        request = self.devices.deny_request(
            request_id, admin["id"], admin["role"], notes
        )
        return {"id": request.id, "status": request.status,
                "admin_notes": request.admin_notes}

    def list_authorized_devices(self, user_id: Optional[int] = None
                                ) -> List[Dict[str, Any]]:
        return jsonable([
            {
                "id": d.id,
                "user_id": d.user_id,
                "fingerprint": d.fingerprint,
                "description": d.description,
                "authorized_by": d.authorized_by,
                "authorized_at": d.authorized_at,
                "last_used_at": d.last_used_at,
            }
            for d in self.devices.list_devices(user_id)
        ])

    # ================================================================
    # 设置与会员方案
    # ================================================================

    def get_settings(self, keys: Optional[List[str]] = None) -> Dict[str, Any]:
        return self.settings.get_settings(keys)

    def update_setting(self, key: str, value: Any,
                       user: Dict[str, Any]) -> Any:
        return self.settings.update_settings(key, value, user["role"],
                                             user["id"])

    def list_plans(self, active_only: bool = True,
                   member_type: Optional[str] = None) -> List[Dict[str, Any]]:
        return jsonable([
            _plan_dict(p) for p in self.plans.list_plans(active_only, member_type)
        ])

    def create_plan(self, data: Dict[str, Any]) -> Dict[str, Any]:
        plan = self.plans.create_plan(
            data.get("type"), data.get("months") or 0, data.get("price"),
            data.get("registration_fee") or 0, data.get("free_months") or 0
        )
        return jsonable(_plan_dict(plan))

    def update_plan(self, plan_id: int,
                    data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        fields = {k: v for k, v in data.items()
                  if k in ("type", "months", "price", "registration_fee",
                           "free_months", "active")}
        plan = self.plans.update_plan(plan_id, **fields)
        return jsonable(_plan_dict(plan)) if plan else None

    # ================================================================
    # 会员
    # ================================================================

    def search_members(self, keyword: str) -> List[Dict[str, Any]]:
        return jsonable([_member_dict(m) for m in self.members.search(keyword)])

    def list_members(self, page: Any = 1, page_size: Any = None,
                     status: Optional[str] = None,
                     member_type: Optional[str] = None,
                     keyword: Optional[str] = None) -> Dict[str, Any]:
        page, size, offset = normalize_page(page, page_size)
        members, total = self.members.list_members(
            offset, size, status, member_type, keyword
        )
        return jsonable(Page([_member_dict(m) for m in members], total,
                             page, size).to_dict())

    def get_member_details(self, member_pk: int) -> Optional[Dict[str, Any]]:
        """会员详情：资料、签到、收款、宽限期入场与变更历史。"""
        member = self.members.get_member(member_pk)
        if member is None:
            return None
        payments, _ = self.payments.list_payments(0, 50, member_id=member_pk)
        return jsonable({
            "member": _member_dict(member),
            "check_ins": self.check_ins.search_check_ins(
                member_pk=member_pk, limit=50
            ),
            "check_in_count": self.check_ins.count_check_ins(member_pk=member_pk),
            "payments": payments,
            "grace_accesses": self.check_ins.get_grace_accesses(member_pk),
            "history": [
                {
                    "id": h.id,
                    "type": h.type,
                    "previous_expiry_date": h.previous_expiry_date,
                    "new_expiry_date": h.new_expiry_date,
                    "plan_details": h.plan_details,
                    "payment_id": h.payment_id,
                    "created_at": h.created_at,
                }
                for h in self.memberships.get_history(member_pk)
            ],
        })

    def register_member(self, data: Dict[str, Any], plan_id: int,
                        payment_method: str, user_id: int) -> Dict[str, Any]:
        result = self.memberships.register_member(
            data, plan_id, payment_method, user_id
        )
        return jsonable({
            "member": _member_dict(result["member"]),
            "payment": _payment_dict(result["payment"]),
        })

    def update_member(self, member_pk: int,
                      data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        member = self.members.update_member(member_pk, **data)
        return jsonable(_member_dict(member)) if member else None

    def set_member_suspended(self, member_pk: int,
                             suspended: bool) -> Optional[Dict[str, Any]]:
        member = self.members.set_suspended(member_pk, suspended)
        return jsonable(_member_dict(member)) if member else None

    def get_renewal_quote(self, member_pk: int, plan_id: int) -> Dict[str, Any]:
        quote = self.memberships.get_renewal_quote(member_pk, plan_id)
        return jsonable({
            "member": _member_dict(quote["member"]),
            "plan": _plan_dict(quote["plan"]),
            "previous_expiry_date": quote["previous_expiry_date"],
            "new_expiry_date": quote["new_expiry_date"],
            "total_months": quote["total_months"],
            "plan_price": quote["plan_price"],
            "grace_charges": quote["grace_charges"],
            "grace_access_count": len(quote["grace_accesses"]),
            "total": quote["total"],
        })

    def renew_member(self, member_pk: int, plan_id: int, payment_method: str,
                     user_id: int,
                     accept_grace_charges: bool = False) -> Dict[str, Any]:
        result = self.memberships.renew_membership(
            member_pk, plan_id, payment_method, user_id, accept_grace_charges
        )
        return jsonable({
            "member": _member_dict(result["member"]),
            "payment": _payment_dict(result["payment"]),
            "grace_charges": result["grace_charges"],
            "warnings": result["warnings"],
        })

    def get_member_stats(self) -> Dict[str, int]:
        return self.members.get_stats()

    def import_members_csv(self, text: str) -> Dict[str, Any]:
        """导入会员 CSV，解析错误与写入错误合并返回。"""
        records, errors = parse_member_csv(text)
        result = self.members.import_members(records)
        result["errors"] = errors + result["errors"]
        return result

    def export_members_csv(self, status: Optional[str] = None) -> str:
        members, _ = self.members.list_members(0, 1_000_000, status=status)
        return export_to_csv([
            {
                "member_id": m.member_id,
                "name": m.name,
                "email": m.email,
                "phone": m.phone,
                "nric": m.nric,
                "type": m.type,
                "status": m.status,
                "expiry_date": m.expiry_date,
                "created_at": m.created_at,
            }
            for m in members
        ])

    # ================================================================
    # 签到与散客
    # ================================================================

    def check_in_member(self, member_pk: int, user_id: int) -> Dict[str, Any]:
        result = self.check_ins.check_in_member(member_pk, user_id)
        return jsonable({
            "check_in_id": result["check_in"].id,
            "member": _member_dict(result["member"]),
            "status": result["status"],
            "already_checked_in_today": result["already_checked_in_today"],
            "grace_access": result["grace_access"] is not None,
            "warnings": result["warnings"],
        })

    def record_walk_in(self, data: Dict[str, Any],
                       user_id: int) -> Dict[str, Any]:
        result = self.check_ins.record_walk_in(
            data.get("name"), data.get("type") or "adult",
            data.get("payment_method"), user_id, phone=data.get("phone")
        )
        return jsonable({
            "check_in_id": result["check_in"].id,
            "payment": _payment_dict(result["payment"]),
        })

    def list_check_ins(self, page: Any = 1, page_size: Any = None,
                       check_in_type: Optional[str] = None,
                       keyword: Optional[str] = None,
                       start_date: Optional[str] = None,
                       end_date: Optional[str] = None) -> Dict[str, Any]:
        """分页签到记录，日期为本地日期（含两端）。"""
        start = end = None
        if start_date:
            start = local_day_bounds(parse_date(start_date, "Start date"))[0]
        if end_date:
            end = local_day_bounds(parse_date(end_date, "End date"))[1]
        page, size, offset = normalize_page(page, page_size)
        total = self.check_ins.count_check_ins(check_in_type, start, end,
                                               keyword)
        rows = self.check_ins.search_check_ins(
            check_in_type, start, end, keyword, offset=offset, limit=size
        )
        return jsonable(Page(rows, total, page, size).to_dict())

    # ================================================================
    # 班次
    # ================================================================

    def start_shift(self, user: Dict[str, Any],
                    ip_address: Optional[str] = None) -> Dict[str, Any]:
        return jsonable(self.shifts.start_shift(user["id"], user["role"],
                                                ip_address))

    def get_active_shift(self, user_id: int) -> Optional[Dict[str, Any]]:
        shift = self.shifts.get_active_shift(user_id)
        return jsonable(_shift_dict(shift)) if shift else None

    def get_shift_summary(self, user_id: int) -> Optional[Dict[str, Any]]:
        data = self.shifts.get_shift_summary(user_id)
        if data is None:
            return None
        data["summary"] = data["summary"].to_dict()
        return jsonable(data)

    def end_shift(self, user_id: int, manual_counts: Dict[str, Any],
                  next_user_id: Optional[int],
                  stock_counts: Optional[List[Dict[str, Any]]] = None
                  ) -> Dict[str, Any]:
        result = self.shifts.end_shift(user_id, manual_counts, next_user_id,
                                       stock_counts)
        result["summary"] = result["summary"].to_dict()
        return jsonable(result)

    def list_active_shifts(self) -> List[Dict[str, Any]]:
        rows = self.shifts.list_active_shifts()
        for row in rows:
            row["summary"] = row["summary"].to_dict()
        return jsonable(rows)

    def admin_end_shift(self, shift_id: int,
                        admin: Dict[str, Any]) -> Dict[str, Any]:
        result = self.shifts.admin_end_shift(shift_id, admin["role"])
        result["summary"] = result["summary"].to_dict()
        return jsonable(result)

    # ================================================================
    # 优惠券
    # ================================================================

    def create_coupon(self, data: Dict[str, Any],
                      user_id: int) -> Dict[str, Any]:
        valid_until = data.get("valid_until")
        if isinstance(valid_until, str):
            valid_until = local_day_bounds(
                parse_date(valid_until, "Valid until")
            )[1] - timedelta(seconds=1)
        result = self.coupons.create_coupon(
            data.get("code"), data.get("type") or "adult", valid_until,
            data.get("payment_method"), user_id,
            owner_name=data.get("owner_name")
        )
        return jsonable({
            "coupon": _coupon_dict(result["coupon"]),
            "payment": _payment_dict(result["payment"]),
        })

    def validate_coupon(self, code: str) -> Dict[str, Any]:
        result = self.coupons.validate_coupon(code)
        coupon = result["coupon"]
        return jsonable({
            "valid": result["valid"],
            "reason": result["reason"],
            "coupon": _coupon_dict(coupon) if coupon else None,
        })

    def redeem_coupon(self, code: str, user_id: int) -> Dict[str, Any]:
        result = self.coupons.redeem_coupon(code, user_id)
        return jsonable({
            "coupon": _coupon_dict(result["coupon"]),
            "coupon_use_id": result["coupon_use"].id,
            "remaining_uses": result["remaining_uses"],
        })

    def cancel_coupon_use(self, use_id: int) -> Dict[str, Any]:
        return {"uses": self.coupons.cancel_coupon_use(use_id)}

    def list_coupons(self, page: Any = 1, page_size: Any = None,
                     keyword: Optional[str] = None,
                     active_only: bool = False) -> Dict[str, Any]:
        page, size, offset = normalize_page(page, page_size)
        coupons, total = self.coupons.list_coupons(keyword, active_only,
                                                   offset, size)
        return jsonable(Page([_coupon_dict(c) for c in coupons], total,
                             page, size).to_dict())

    def get_coupon_usage(self, page: Any = 1, coupon_id: Optional[int] = None,
                         keyword: Optional[str] = None) -> Dict[str, Any]:
        """核销记录，每页固定 15 条。"""
        page, size, offset = normalize_page(page, 15)
        rows, total = self.coupons.search_coupon_usage(coupon_id, keyword,
                                                       offset, size)
        return jsonable(Page(rows, total, page, size).to_dict())

    def set_coupon_active(self, coupon_id: int, active: bool,
                          actor_role: str) -> Optional[Dict[str, Any]]:
        coupon = self.coupons.set_active(coupon_id, active, actor_role)
        return jsonable(_coupon_dict(coupon)) if coupon else None

    # ================================================================
    # 商品与 POS
    # ================================================================

    def list_products(self, active_only: bool = False) -> List[Dict[str, Any]]:
        return jsonable([
            _product_dict(p) for p in self.products.list_products(active_only)
        ])

    def create_product(self, data: Dict[str, Any],
                       user_id: Optional[int] = None) -> Dict[str, Any]:
        product = self.products.create_product(
            data.get("name"), data.get("price") or 0,
            description=data.get("description"),
            stock=data.get("stock") or 0, photo_url=data.get("photo_url"),
            user_id=user_id
        )
        return jsonable(_product_dict(product))

    def update_product(self, product_id: int,
                       data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        fields = {k: v for k, v in data.items()
                  if k in ("name", "description", "price", "photo_url",
                           "active")}
        product = self.products.update_product(product_id, **fields)
        return jsonable(_product_dict(product)) if product else None

    def update_stock(self, product_id: int, new_stock: int,
                     user_id: Optional[int] = None,
                     notes: Optional[str] = None) -> Optional[Dict[str, Any]]:
        product = self.products.update_stock(product_id, new_stock, user_id,
                                             notes=notes)
        return jsonable(_product_dict(product)) if product else None

    def restock_product(self, product_id: int, quantity: int,
                        user_id: Optional[int] = None
                        ) -> Optional[Dict[str, Any]]:
        product = self.products.restock(product_id, quantity, user_id)
        return jsonable(_product_dict(product)) if product else None

    def get_stock_history(self, product_id: Optional[int] = None
                          ) -> List[Dict[str, Any]]:
        return jsonable(self.products.get_stock_history(product_id))

    def checkout(self, items: List[Dict[str, Any]], payment_method: str,
                 user_id: int) -> Dict[str, Any]:
        result = self.sales.checkout(items, payment_method, user_id)
        return jsonable({
            "payment": _payment_dict(result["payment"]),
            "total": result["total"],
            "warnings": result["warnings"],
        })

    def list_sales(self, page: Any = 1,
                   page_size: Any = None) -> Dict[str, Any]:
        page, size, offset = normalize_page(page, page_size)
        rows, total = self.payments.list_payments(offset, size,
                                                  payment_type="pos")
        return jsonable(Page(rows, total, page, size).to_dict())

    # ================================================================
    # 报表与每日汇总
    # ================================================================

    def get_report(self, kind: str, range_type: str = "daily",
                   base_date: Optional[Union[str, date]] = None,
                   start_date: Optional[Union[str, date]] = None,
                   end_date: Optional[Union[str, date]] = None,
                   offset: int = 0) -> Dict[str, Any]:
        """获取报表。

        Args:
            kind: financial / membership / attendance / sales。
            range_type: daily / weekly / monthly / custom。
            base_date: 基准日期（默认今天，本地日期）。
            offset: 以基准日期为起点前后翻页的周期数（custom 不适用）。

        Raises:
            ValueError: 报表类型、周期或日期无效。
        """
        handlers = {
            "financial": self.reports.financial_report,
            "membership": self.reports.membership_report,
            "attendance": self.reports.attendance_report,
            "sales": self.reports.sales_report,
        }
        if kind not in handlers:
            raise ValueError(f"Unknown report: {kind}")
        base = self._to_date(base_date, "Date") or local_today()
        if offset and range_type != "custom":
            base = shift_base_date(range_type, base, offset)
        start = self._to_date(start_date, "Start date")
        end = self._to_date(end_date, "End date")
        return jsonable(handlers[kind](range_type, base, start, end))

    def get_daily_summary(self, target_date: Optional[Union[str, date]] = None
                          ) -> Dict[str, Any]:
        day = self._to_date(target_date, "Date") or local_today()
        return jsonable(self.reports.daily_summary(day))

    def save_daily_summary(self, target_date: Optional[date] = None) -> int:
        """生成并保存每日汇总快照（默认前一天，幂等）。

        Returns:
            汇总记录ID。
        """
        day = target_date or (local_today() - timedelta(days=1))
        summary = self.reports.daily_summary(day)
        summary_id = self.summaries.save(day, summary)
        logger.info(f"已保存 {day} 的每日汇总快照")
        return summary_id

    def get_saved_summary(self, target_date: Union[str, date]
                          ) -> Optional[Dict[str, Any]]:
        day = self._to_date(target_date, "Date")
        row = self.summaries.get_by_date(day)
        if row is None:
            return None
        data = {field: getattr(row, field)
                for field in self.summaries.SUMMARY_FIELDS}
        data.update({"date": row.summary_date, "extra_data": row.extra_data})
        return jsonable(data)

    def export_report_csv(self, kind: str, range_type: str = "daily",
                          base_date: Optional[str] = None,
                          start_date: Optional[str] = None,
                          end_date: Optional[str] = None) -> str:
        """按日期行导出报表为 CSV（嵌套字段不导出）。"""
        report = self.get_report(kind, range_type, base_date,
                                 start_date, end_date)
        rows = [
            {k: v for k, v in day.items() if not isinstance(v, (dict, list))}
            for day in report.get("days", [])
        ]
        return export_to_csv(rows)

    @staticmethod
    def _to_date(value: Optional[Union[str, date]],
                 field_name: str) -> Optional[date]:
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        return parse_date(value, field_name)
