"""SQLAlchemy ORM 模型定义。

本模块定义了所有数据库表的ORM模型，包括：
- 用户、设置、会员方案等基础实体
- 会员、会员变更历史、签到、宽限期入场
- 收款、班次、班次库存清点
- 优惠券、商品与库存流水
- 设备授权申请与已授权设备
- 每日汇总快照

所有时间字段均为 naive UTC，金额字段为 DECIMAL(10,2)。
"""
from typing import Dict, Any, List, Optional
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Date, DateTime,
    DECIMAL, ForeignKey, JSON, UniqueConstraint
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import relationship
from datetime import datetime, date

# SQLAlchemy declarative base，所有模型都继承自此类
Base = declarative_base()

# 允许使用旧式类型注解（兼容 SQLAlchemy 2.0）
Base.__allow_unmapped__ = True


class User(Base):
    """系统用户（员工账号）表模型。

    Attributes:
        id: 主键，自增整数。
        email: 登录邮箱，唯一。
        name: 显示名称，可选。
        role: 角色，可选值：cashier（收银员）/ admin（管理员）/ superadmin（超级管理员）。
        active: 是否启用，停用账号无法登录。
        password_hash: PBKDF2 密码哈希（salt$hash）。
        created_at: 创建时间。
    """
    __tablename__ = "users"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    email: str = Column(String(120), nullable=False, unique=True)
    name: Optional[str] = Column(String(100))
    role: str = Column(String(20), nullable=False, default="cashier")
    active: bool = Column(Boolean, default=True)
    password_hash: Optional[str] = Column(String(255))
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    shifts: List["Shift"] = relationship(
        "Shift", foreign_keys="Shift.user_id", back_populates="user"
    )


class Setting(Base):
    """业务设置表模型（键值对，值为 JSON）。

    Attributes:
        key: 设置键（branding / membership / coupon_prices /
            device_fingerprinting_enabled / fingerprint_roles）。
        value: JSON 值。
        updated_at: 最近更新时间。
        updated_by: 最近更新人。
    """
    __tablename__ = "settings"

    key: str = Column(String(100), primary_key=True)
    value: Any = Column(JSON)
    updated_at: datetime = Column(DateTime, default=datetime.utcnow)
    updated_by: Optional[int] = Column(Integer, ForeignKey("users.id"))


class MembershipPlan(Base):
    """会员方案表模型。

    Attributes:
        id: 主键。
        type: 适用会员类型（adult / youth）。
        months: 时长（月）。
        price: 价格。
        registration_fee: 新会员注册费。
        free_months: 赠送月数。
        active: 是否可用。
    """
    __tablename__ = "membership_plans"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    type: str = Column(String(20), nullable=False, default="adult")
    months: int = Column(Integer, nullable=False)
    price: float = Column(DECIMAL(10, 2), nullable=False)
    registration_fee: float = Column(DECIMAL(10, 2), default=0)
    free_months: int = Column(Integer, default=0)
    active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)


class Member(Base):
    """会员表模型。

    状态由 expiry_date 与宽限期推导，在搜索、签到、查看详情时重新计算，
    仅在变化时写回。suspended 为手动设置，不会被自动覆盖。

    Attributes:
        id: 主键。
        member_id: 会员编号，唯一（自动生成时为 6 位补零序号）。
        name: 姓名。
        email / phone / nric: 联系方式与身份证号。
        type: 会员类型（adult / youth）。
        status: active / grace / expired / suspended。
        photo_url: 照片地址。
        expiry_date: 到期时间。
        created_at: 注册时间。

    Relationships:
        check_ins: 签到记录。
        payments: 收款记录。
        history: 会员变更历史。
    """
    __tablename__ = "members"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    member_id: str = Column(String(20), nullable=False, unique=True)
    name: str = Column(String(100), nullable=False)
    email: Optional[str] = Column(String(120))
    phone: Optional[str] = Column(String(30))
    nric: Optional[str] = Column(String(20))
    type: str = Column(String(20), nullable=False, default="adult")
    status: str = Column(String(20), nullable=False, default="active")
    photo_url: Optional[str] = Column(String(255))
    expiry_date: Optional[datetime] = Column(DateTime)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    check_ins: List["CheckIn"] = relationship("CheckIn", back_populates="member")
    payments: List["Payment"] = relationship("Payment", back_populates="member")
    history: List["MembershipHistory"] = relationship(
        "MembershipHistory", back_populates="member"
    )


class MembershipHistory(Base):
    """会员变更历史表模型（注册、续费）。

    Attributes:
        member_id: 会员主键。
        payment_id: 对应收款。
        previous_expiry_date: 变更前到期时间（注册时为空）。
        new_expiry_date: 变更后到期时间。
        type: registration / renewal。
        plan_details: 方案明细 JSON（months / price / free_months）。
    """
    __tablename__ = "membership_history"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    member_id: int = Column(Integer, ForeignKey("members.id"), nullable=False)
    payment_id: Optional[int] = Column(Integer, ForeignKey("payments.id"))
    previous_expiry_date: Optional[datetime] = Column(DateTime)
    new_expiry_date: datetime = Column(DateTime, nullable=False)
    type: str = Column(String(20), nullable=False)
    plan_details: Dict[str, Any] = Column(JSON, default={})
    created_by: Optional[int] = Column(Integer, ForeignKey("users.id"))
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    member: "Member" = relationship("Member", back_populates="history")


class Shift(Base):
    """收银班次表模型。

    created_at 为班次开始时间；ended_at 为空表示班次进行中。
    交班时一次性写入系统金额、清点金额、差异与交接人。

    Attributes:
        user_id: 收银员。
        next_user_id: 交接人。
        ip_address: 开班时的客户端 IP。
        cash_collection / qr_collection / bank_transfer_collection: 人工清点金额。
        system_cash / system_qr / system_bank_transfer: 系统统计金额。
        cash_variance / qr_variance / bank_transfer_variance: 差异（系统 - 清点）。
        member_payments / walk_in_payments / pos_sales / coupon_sales /
        grace_period_settlement_fees: 按类别统计的收入。
        total_sales: 收款总额。
        ended_at: 交班时间。
    """
    __tablename__ = "shifts"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False)
    next_user_id: Optional[int] = Column(Integer, ForeignKey("users.id"))
    ip_address: Optional[str] = Column(String(64))

    cash_collection: float = Column(DECIMAL(10, 2), default=0)
    qr_collection: float = Column(DECIMAL(10, 2), default=0)
    bank_transfer_collection: float = Column(DECIMAL(10, 2), default=0)
    system_cash: float = Column(DECIMAL(10, 2), default=0)
    system_qr: float = Column(DECIMAL(10, 2), default=0)
    system_bank_transfer: float = Column(DECIMAL(10, 2), default=0)
    cash_variance: float = Column(DECIMAL(10, 2), default=0)
    qr_variance: float = Column(DECIMAL(10, 2), default=0)
    bank_transfer_variance: float = Column(DECIMAL(10, 2), default=0)

    member_payments: float = Column(DECIMAL(10, 2), default=0)
    walk_in_payments: float = Column(DECIMAL(10, 2), default=0)
    pos_sales: float = Column(DECIMAL(10, 2), default=0)
    coupon_sales: float = Column(DECIMAL(10, 2), default=0)
    grace_period_settlement_fees: float = Column(DECIMAL(10, 2), default=0)
    total_sales: float = Column(DECIMAL(10, 2), default=0)

    created_at: datetime = Column(DateTime, default=datetime.utcnow)
    ended_at: Optional[datetime] = Column(DateTime)

    user: "User" = relationship(
        "User", foreign_keys=[user_id], back_populates="shifts"
    )
    next_user: Optional["User"] = relationship("User", foreign_keys=[next_user_id])
    stock_counts: List["ShiftStockCount"] = relationship(
        "ShiftStockCount", back_populates="shift"
    )


class ShiftStockCount(Base):
    """交班库存清点表模型。

    Attributes:
        shift_id: 班次。
        product_id: 商品。
        counted_stock: 人工清点数量。
        system_stock: 系统库存。
        variance: 差异（清点 - 系统）。
    """
    __tablename__ = "shift_stock_counts"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    shift_id: int = Column(Integer, ForeignKey("shifts.id"), nullable=False)
    product_id: int = Column(Integer, ForeignKey("products.id"), nullable=False)
    counted_stock: int = Column(Integer, nullable=False)
    system_stock: int = Column(Integer, nullable=False)
    variance: int = Column(Integer, nullable=False)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    shift: "Shift" = relationship("Shift", back_populates="stock_counts")


class Payment(Base):
    """收款流水表模型（只追加）。

    Attributes:
        amount: 金额。
        type: registration / renewal / walk-in / pos / coupon。
        payment_method: cash / qr / bank_transfer。
        items: POS 商品明细（product_id / product_name / quantity / price）。
        details: 续费拆分明细（renewal_plan.price / grace_period_settlement.amount）。
        member_id / shift_id / coupon_id / check_in_id / user_id: 关联记录。
        created_at: 收款时间。
    """
    __tablename__ = "payments"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    amount: float = Column(DECIMAL(10, 2), nullable=False)
    type: str = Column(String(20), nullable=False)
    payment_method: str = Column(String(20), nullable=False)
    items: Optional[List[Dict[str, Any]]] = Column(JSON)
    details: Optional[Dict[str, Any]] = Column(JSON)
    member_id: Optional[int] = Column(Integer, ForeignKey("members.id"))
    shift_id: Optional[int] = Column(Integer, ForeignKey("shifts.id"))
    coupon_id: Optional[int] = Column(Integer, ForeignKey("coupons.id"))
    check_in_id: Optional[int] = Column(Integer, ForeignKey("check_ins.id"))
    user_id: Optional[int] = Column(Integer, ForeignKey("users.id"))
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    member: Optional["Member"] = relationship("Member", back_populates="payments")
    user: Optional["User"] = relationship("User")


class CheckIn(Base):
    """签到记录表模型。

    Attributes:
        member_id: 会员（散客为空）。
        type: member / walk-in。
        name / phone: 散客姓名与电话。
        check_in_time: 签到时间。
        user_id: 操作员。
    """
    __tablename__ = "check_ins"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    member_id: Optional[int] = Column(Integer, ForeignKey("members.id"))
    type: str = Column(String(20), nullable=False)
    name: Optional[str] = Column(String(100))
    phone: Optional[str] = Column(String(30))
    check_in_time: datetime = Column(DateTime, default=datetime.utcnow)
    user_id: Optional[int] = Column(Integer, ForeignKey("users.id"))

    member: Optional["Member"] = relationship("Member", back_populates="check_ins")


class GracePeriodAccess(Base):
    """宽限期入场记录表模型。

    会员在宽限期内签到时记录，续费时按入场当时的散客价格结清。

    Attributes:
        member_id: 会员。
        check_in_id: 对应签到。
        check_in_time: 入场时间。
        expiry_date: 入场时的会员到期时间。
        grace_period_days: 入场时的宽限期天数。
        walkin_price_at_time_of_access: 入场时的散客价格。
        paid_at: 结清时间（未结清为空）。
        payment_id: 结清所在的续费收款。
    """
    __tablename__ = "grace_period_access"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    member_id: int = Column(Integer, ForeignKey("members.id"), nullable=False)
    check_in_id: Optional[int] = Column(Integer, ForeignKey("check_ins.id"))
    check_in_time: datetime = Column(DateTime, default=datetime.utcnow)
    expiry_date: Optional[datetime] = Column(DateTime)
    grace_period_days: int = Column(Integer, default=7)
    walkin_price_at_time_of_access: Optional[float] = Column(DECIMAL(10, 2))
    user_id: Optional[int] = Column(Integer, ForeignKey("users.id"))
    paid_at: Optional[datetime] = Column(DateTime)
    payment_id: Optional[int] = Column(Integer, ForeignKey("payments.id"))

    member: "Member" = relationship("Member")


class Coupon(Base):
    """优惠券表模型。

    Attributes:
        code: 券码（大写，唯一）。
        type: 适用类型（adult / youth）。
        price: 售价，核销时记为优惠金额。
        owner_name: 持有人。
        valid_until: 有效期至。
        max_uses: 最大使用次数。
        uses: 已使用次数。
        active: 是否有效。
    """
    __tablename__ = "coupons"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    code: str = Column(String(50), nullable=False, unique=True)
    type: str = Column(String(20), nullable=False, default="adult")
    price: float = Column(DECIMAL(10, 2), nullable=False)
    owner_name: Optional[str] = Column(String(100))
    valid_until: datetime = Column(DateTime, nullable=False)
    max_uses: int = Column(Integer, nullable=False, default=1)
    uses: int = Column(Integer, nullable=False, default=0)
    active: bool = Column(Boolean, default=True)
    created_by: Optional[int] = Column(Integer, ForeignKey("users.id"))
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    usages: List["CouponUse"] = relationship("CouponUse", back_populates="coupon")


class CouponUse(Base):
    """优惠券核销记录表模型。"""
    __tablename__ = "coupon_uses"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id: int = Column(Integer, ForeignKey("coupons.id"), nullable=False)
    user_id: Optional[int] = Column(Integer, ForeignKey("users.id"))
    payment_id: Optional[int] = Column(Integer, ForeignKey("payments.id"))
    amount_saved: float = Column(DECIMAL(10, 2), default=0)
    used_at: datetime = Column(DateTime, default=datetime.utcnow)

    coupon: "Coupon" = relationship("Coupon", back_populates="usages")
    user: Optional["User"] = relationship("User")


class Product(Base):
    """POS 商品表模型。

    Attributes:
        name: 商品名称。
        description: 描述。
        price: 单价（>= 0）。
        photo_url: 图片地址。
        stock: 当前库存。
        active: 是否上架。
    """
    __tablename__ = "products"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    name: str = Column(String(100), nullable=False)
    description: Optional[str] = Column(Text)
    price: float = Column(DECIMAL(10, 2), nullable=False, default=0)
    photo_url: Optional[str] = Column(String(255))
    stock: int = Column(Integer, nullable=False, default=0)
    active: bool = Column(Boolean, default=True)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    stock_history: List["StockHistory"] = relationship(
        "StockHistory", back_populates="product"
    )


class StockHistory(Base):
    """库存流水表模型（只追加）。

    Attributes:
        product_id: 商品。
        previous_stock / new_stock: 变动前后库存。
        change: 变动数量（new - previous）。
        type: sale / adjustment / restock。
        user_id: 操作员。
    """
    __tablename__ = "stock_history"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    product_id: int = Column(Integer, ForeignKey("products.id"), nullable=False)
    previous_stock: int = Column(Integer, nullable=False)
    new_stock: int = Column(Integer, nullable=False)
    change: int = Column(Integer, nullable=False)
    type: str = Column(String(20), nullable=False)
    user_id: Optional[int] = Column(Integer, ForeignKey("users.id"))
    notes: Optional[str] = Column(Text)
    created_at: datetime = Column(DateTime, default=datetime.utcnow)

    product: "Product" = relationship("Product", back_populates="stock_history")


class DeviceAuthorizationRequest(Base):
    """设备授权申请表模型。

    Attributes:
        user_id: 申请人。
        fingerprint: 设备指纹。
        user_description: 设备描述。
        status: pending / approved / denied。
        requested_at: 申请时间。
        reviewed_by / reviewed_at / admin_notes: 审核信息。
    """
    __tablename__ = "device_authorization_requests"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False)
    fingerprint: str = Column(String(255), nullable=False)
    user_description: Optional[str] = Column(Text)
    status: str = Column(String(20), nullable=False, default="pending")
    requested_at: datetime = Column(DateTime, default=datetime.utcnow)
    reviewed_by: Optional[int] = Column(Integer, ForeignKey("users.id"))
    reviewed_at: Optional[datetime] = Column(DateTime)
    admin_notes: Optional[str] = Column(Text)

    user: "User" = relationship("User", foreign_keys=[user_id])


class AuthorizedDevice(Base):
    """已授权设备表模型。"""
    __tablename__ = "authorized_devices"
    __table_args__ = (
        UniqueConstraint("user_id", "fingerprint", name="uq_user_fingerprint"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    user_id: int = Column(Integer, ForeignKey("users.id"), nullable=False)
    fingerprint: str = Column(String(255), nullable=False)
    description: Optional[str] = Column(Text)
    authorized_by: Optional[int] = Column(Integer, ForeignKey("users.id"))
    authorized_at: datetime = Column(DateTime, default=datetime.utcnow)
    last_used_at: Optional[datetime] = Column(DateTime)


class DailySummary(Base):
    """每日汇总快照表模型。

    由定时任务在次日写入，便于快速查询历史经营数据（幂等更新）。

    Attributes:
        summary_date: 本地日期，唯一。
        total_sales / membership_revenue / walk_in_revenue / pos_revenue /
        coupon_revenue / grace_period_settlement_fees: 收入。
        cash_collections / qr_collections / bank_transfer_collections: 按方式收款。
        total_check_ins / member_check_ins / walk_in_check_ins: 签到人数。
        new_members / renewals: 新会员与续费数。
        extra_data: 班次明细等扩展数据。
    """
    __tablename__ = "daily_summaries"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    summary_date: date = Column(Date, nullable=False, unique=True)
    total_sales: float = Column(DECIMAL(10, 2), default=0)
    membership_revenue: float = Column(DECIMAL(10, 2), default=0)
    walk_in_revenue: float = Column(DECIMAL(10, 2), default=0)
    pos_revenue: float = Column(DECIMAL(10, 2), default=0)
    coupon_revenue: float = Column(DECIMAL(10, 2), default=0)
    grace_period_settlement_fees: float = Column(DECIMAL(10, 2), default=0)
    cash_collections: float = Column(DECIMAL(10, 2), default=0)
    qr_collections: float = Column(DECIMAL(10, 2), default=0)
    bank_transfer_collections: float = Column(DECIMAL(10, 2), default=0)
    total_check_ins: int = Column(Integer, default=0)
    member_check_ins: int = Column(Integer, default=0)
    walk_in_check_ins: int = Column(Integer, default=0)
    new_members: int = Column(Integer, default=0)
    renewals: int = Column(Integer, default=0)
    extra_data: Dict[str, Any] = Column(JSON, default={})
    created_at: datetime = Column(DateTime, default=datetime.utcnow)
