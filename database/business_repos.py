"""业务记录仓库：核心业务数据的数据访问层。

管理日常经营产生的交易数据：收银班次、收款流水、会员注册与续费、
签到与散客、优惠券、POS 销售。

收款类操作（注册、续费、散客、POS）要求操作员有进行中的班次；
主记录与收款在同一事务中写入，随后的附属写入（宽限期结清标记、
库存流水、交班库存清点）失败时只记录警告，不回滚主记录。
"""
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from business.membership import (
    MEMBER_TYPES, STATUS_ACTIVE, STATUS_EXPIRED, STATUS_GRACE,
    STATUS_SUSPENDED, calculate_grace_charges, calculate_renewal,
    grace_charges_apply, registration_expiry, walkin_price_for,
)
from business.money import (
    PAYMENT_TYPES, format_currency, to_decimal, validate_payment_method,
)
from business.permissions import ROLE_CASHIER, require_admin
from business.shifts import calculate_variances, reconcile, summarize_payments
from business.timeutils import local_day_bounds, local_today, utcnow

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .entity_repos import (
    SettingRepository, MemberRepository, MembershipPlanRepository,
    ProductRepository,
)
from .models import (
    User, Member, MembershipPlan, MembershipHistory, Payment, Shift,
    ShiftStockCount, CheckIn, GracePeriodAccess, Coupon, CouponUse,
    Product, StockHistory,
)

_EPSILON = timedelta(microseconds=1)


def payment_to_dict(p: Payment, user_name: Optional[str] = None
                    ) -> Dict[str, Any]:
    """收款记录转换为字典（金额保留 Decimal，供汇总计算）。"""
    return {
        "id": p.id,
        "amount": to_decimal(p.amount),
        "type": p.type,
        "payment_method": p.payment_method,
        "items": p.items,
        "details": p.details,
        "member_id": p.member_id,
        "shift_id": p.shift_id,
        "coupon_id": p.coupon_id,
        "check_in_id": p.check_in_id,
        "user_id": p.user_id,
        "user_name": user_name,
        "created_at": p.created_at,
    }


def _not_enough_stock(product: Product) -> ValueError:
    return ValueError(
        f"Not enough stock for {product.name}. "
        f"Only {product.stock} available."
    )


class CheckInRefused(ValueError):
    """会员签到被拒绝。

    Attributes:
        reason: suspended（已暂停）/ expired（已过期，应按散客处理）。
    """

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class PaymentRepository(BaseCRUD):
    """收款流水 仓库（只追加）。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def record(self, session: Session, amount: Any, payment_type: str,
               payment_method: str, user_id: Optional[int],
               shift_id: Optional[int], **links: Any) -> Payment:
        """在给定会话中写入一笔收款（不提交）。

        Args:
            session: 外部会话。
            amount: 金额（>= 0）。
            payment_type: registration / renewal / walk-in / pos / coupon。
            payment_method: cash / qr / bank_transfer。
            **links: member_id / coupon_id / check_in_id / items / details。

        Raises:
            ValueError: 类型、方式或金额无效。
        """
        if payment_type not in PAYMENT_TYPES:
            raise ValueError(f"Invalid payment type: {payment_type}")
        validate_payment_method(payment_method)
        amount = to_decimal(amount)
        if amount < 0:
            raise ValueError("Payment amount cannot be negative")

        payment = Payment(
            amount=amount, type=payment_type, payment_method=payment_method,
            user_id=user_id, shift_id=shift_id, **links
        )
        session.add(payment)
        session.flush()
        return payment

    def get_between(self, start: datetime, end: datetime,
                    user_id: Optional[int] = None,
                    payment_type: Optional[str] = None,
                    session: Optional[Session] = None) -> List[Dict[str, Any]]:
        """获取 [start, end) 时间段内的收款（按时间升序），附带操作员名称。"""
        def _query(sess):
            query = sess.query(Payment, User).outerjoin(
                User, User.id == Payment.user_id
            ).filter(Payment.created_at >= start, Payment.created_at < end)
            if user_id is not None:
                query = query.filter(Payment.user_id == user_id)
            if payment_type:
                query = query.filter(Payment.type == payment_type)
            rows = query.order_by(Payment.created_at, Payment.id).all()
            return [
                payment_to_dict(p, (u.name or u.email) if u else None)
                for p, u in rows
            ]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def list_payments(self, offset: int = 0, limit: int = 15,
                      member_id: Optional[int] = None,
                      payment_type: Optional[str] = None,
                      start: Optional[datetime] = None,
                      end: Optional[datetime] = None
                      ) -> Tuple[List[Dict[str, Any]], int]:
        """分页获取收款（最新在前）。"""
        with self._get_session() as sess:
            query = sess.query(Payment)
            if member_id is not None:
                query = query.filter(Payment.member_id == member_id)
            if payment_type:
                query = query.filter(Payment.type == payment_type)
            if start is not None:
                query = query.filter(Payment.created_at >= start)
            if end is not None:
                query = query.filter(Payment.created_at < end)
            total = query.count()
            rows = query.order_by(
                Payment.created_at.desc(), Payment.id.desc()
            ).offset(offset).limit(limit).all()
            return [payment_to_dict(p) for p in rows], total


class ShiftRepository(BaseCRUD):
    """收银班次 仓库。

    每个收银员同一时间最多一个进行中的班次；交班通过一次带条件
    （ended_at 为空）的更新完成，保证班次只会被结束一次。
    """

    def __init__(self, conn: DatabaseConnection,
                 payment_repo: PaymentRepository) -> None:
        super().__init__(conn)
        self._payments = payment_repo

    def get_active_shift(self, user_id: int,
                         session: Optional[Session] = None) -> Optional[Shift]:
        """获取用户进行中的班次。"""
        def _query(sess):
            return sess.query(Shift).filter(
                Shift.user_id == user_id, Shift.ended_at.is_(None)
            ).order_by(Shift.created_at.desc()).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_or_create_active_shift(self, user_id: int,
                                   session: Optional[Session] = None) -> Shift:
        """获取进行中的班次，没有则新建（所有金额为 0）。"""
        def _do(sess):
            shift = self.get_active_shift(user_id, session=sess)
            if shift is None:
                shift = Shift(user_id=user_id)
                sess.add(shift)
                sess.flush()
                logger.info(f"用户 {user_id} 开始新班次 #{shift.id}")
            return shift

        if session:
            return _do(session)

        with self._get_session() as sess:
            shift = _do(sess)
            sess.commit()
            return shift

    def require_active_shift(self, user_id: int,
                             session: Optional[Session] = None) -> Shift:
        """获取进行中的班次，没有则报错。

        Raises:
            ValueError: 没有进行中的班次。
        """
        shift = self.get_active_shift(user_id, session=session)
        if shift is None:
            raise ValueError("No active shift. Please start a shift first.")
        return shift

    def start_shift(self, user_id: int, role: str,
                    ip_address: Optional[str] = None) -> Dict[str, Any]:
        """开始或恢复班次。

        - 已有进行中的班次：恢复（existing_shift_resumed）
        - 收银员开班时若有其他收银员的班次未结束：拒绝（another_cashier_active）
        - 否则新建班次（new_shift_started）

        Returns:
            含 status 的结果字典。
        """
        with self._get_session() as sess:
            shift = self.get_active_shift(user_id, session=sess)
            if shift is not None:
                return {
                    "status": "existing_shift_resumed",
                    "shift_id": shift.id,
                    "created_at": shift.created_at,
                    "ip_address": shift.ip_address,
                }

            if role == ROLE_CASHIER:
                conflict = sess.query(Shift, User).join(
                    User, User.id == Shift.user_id
                ).filter(
                    Shift.ended_at.is_(None),
                    Shift.user_id != user_id,
                    User.role == ROLE_CASHIER,
                ).order_by(Shift.created_at).first()
                if conflict is not None:
                    other_shift, other_user = conflict
                    logger.warning(
                        f"开班被拒绝: 收银员 {other_user.email} 的班次尚未结束"
                    )
                    return {
                        "status": "another_cashier_active",
                        "active_cashier_name": other_user.name or other_user.email,
                        "active_shift_created_at": other_shift.created_at,
                        "active_cashier_ip": other_shift.ip_address,
                    }

            shift = Shift(user_id=user_id, ip_address=ip_address)
            sess.add(shift)
            sess.commit()
            logger.info(f"用户 {user_id} 开始新班次 #{shift.id}")
            return {
                "status": "new_shift_started",
                "shift_id": shift.id,
                "created_at": shift.created_at,
                "ip_address": shift.ip_address,
            }

    def get_shift_payments(self, shift: Shift,
                           until: Optional[datetime] = None,
                           session: Optional[Session] = None
                           ) -> List[Dict[str, Any]]:
        """班次内的收款：该收银员自班次开始以来的收款。"""
        end = until or shift.ended_at or utcnow()
        # 区间右端为开区间，包含 end 这一刻的收款
        return self._payments.get_between(
            shift.created_at, end + _EPSILON, user_id=shift.user_id,
            session=session
        )

    def get_shift_summary(self, user_id: int) -> Optional[Dict[str, Any]]:
        """进行中班次的收款汇总（交班预览）。"""
        with self._get_session() as sess:
            shift = self.get_active_shift(user_id, session=sess)
            if shift is None:
                return None
            payments = self.get_shift_payments(shift, session=sess)
            summary = summarize_payments(payments)
            return {
                "shift_id": shift.id,
                "started_at": shift.created_at,
                "summary": summary,
                "payments": payments,
            }

    def end_shift(self, user_id: int, manual_counts: Dict[str, Any],
                  next_user_id: Optional[int],
                  stock_counts: Optional[List[Dict[str, Any]]] = None,
                  now: Optional[datetime] = None) -> Dict[str, Any]:
        """交班：对账、结束班次、记录库存清点。

        Args:
            user_id: 当前收银员。
            manual_counts: 人工清点金额 {cash, qr, bank_transfer}。
            next_user_id: 交接人（必填）。
            stock_counts: 库存清点 [{product_id, counted_stock}]（可选）。

        Returns:
            {"shift_id", "summary", "variances", "warnings"}

        Raises:
            ValueError: 未选择交接人、金额为负或没有进行中的班次。
        """
        if not next_user_id:
            raise ValueError("Please select the next user for handover")
        for method, value in (manual_counts or {}).items():
            if to_decimal(value) < 0:
                raise ValueError(f"Manual {method} count cannot be negative")
        now = now or utcnow()

        with self._get_session() as sess:
            next_user = sess.get(User, next_user_id)
            if next_user is None or not next_user.active:
                raise ValueError("Handover user not found or inactive")

            shift = self.get_active_shift(user_id, session=sess)
            if shift is None:
                raise ValueError("No active shift found to end")

            payments = self.get_shift_payments(shift, until=now, session=sess)
            reconciled = reconcile(payments, manual_counts)
            summary, variances = reconciled["summary"], reconciled["variances"]

            updated = sess.query(Shift).filter(
                Shift.id == shift.id, Shift.ended_at.is_(None)
            ).update({
                Shift.cash_collection: to_decimal(manual_counts.get("cash")),
                Shift.qr_collection: to_decimal(manual_counts.get("qr")),
                Shift.bank_transfer_collection: to_decimal(
                    manual_counts.get("bank_transfer")
                ),
                Shift.system_cash: summary.total_cash,
                Shift.system_qr: summary.total_qr,
                Shift.system_bank_transfer: summary.total_bank_transfer,
                Shift.cash_variance: variances["cash_variance"],
                Shift.qr_variance: variances["qr_variance"],
                Shift.bank_transfer_variance: variances["bank_transfer_variance"],
                Shift.member_payments: summary.member_payments,
                Shift.walk_in_payments: summary.walk_in_payments,
                Shift.pos_sales: summary.pos_sales,
                Shift.coupon_sales: summary.coupon_sales,
                Shift.grace_period_settlement_fees: (
                    summary.grace_period_settlement_fees
                ),
                Shift.total_sales: summary.total_sales,
                Shift.next_user_id: next_user_id,
                Shift.ended_at: now,
            }, synchronize_session=False)
            if updated == 0:
                sess.rollback()
                raise ValueError("Shift has already been ended")
            sess.commit()
            shift_id = shift.id

        logger.info(
            f"班次 #{shift_id} 已结束: 总收款 {summary.total_sales}, "
            f"总差异 {variances['total_variance']}"
        )
        warnings = self._record_stock_counts(shift_id, stock_counts or [])
        return {
            "shift_id": shift_id,
            "summary": summary,
            "variances": variances,
            "warnings": warnings,
        }

    def _record_stock_counts(self, shift_id: int,
                             stock_counts: List[Dict[str, Any]]) -> List[str]:
        """逐条写入库存清点，单条失败只记录警告。"""
        warnings = []
        for count in stock_counts:
            product_id = count.get("product_id")
            try:
                with self._get_session() as sess:
                    product = sess.get(Product, product_id)
                    if product is None:
                        raise ValueError(f"Product {product_id} not found")
                    counted = int(count.get("counted_stock"))
                    sess.add(ShiftStockCount(
                        shift_id=shift_id, product_id=product.id,
                        counted_stock=counted, system_stock=product.stock,
                        variance=counted - product.stock
                    ))
                    sess.commit()
            except Exception as e:
                logger.warning(f"记录库存清点失败 (商品 {product_id}): {e}")
                warnings.append(
                    f"Stock count for product {product_id} was not recorded"
                )
        return warnings

    def get_stock_counts(self, shift_id: int) -> List[ShiftStockCount]:
        return self.get_all(ShiftStockCount, filters={"shift_id": shift_id},
                            order_by=ShiftStockCount.id)

    def list_active_shifts(self) -> List[Dict[str, Any]]:
        """所有进行中的班次及其待交班金额（管理员页面）。"""
        with self._get_session() as sess:
            rows = sess.query(Shift, User).join(
                User, User.id == Shift.user_id
            ).filter(Shift.ended_at.is_(None)).order_by(Shift.created_at).all()
            results = []
            for shift, user in rows:
                summary = summarize_payments(
                    self.get_shift_payments(shift, session=sess)
                )
                results.append({
                    "shift_id": shift.id,
                    "user_id": user.id,
                    "user_name": user.name or user.email,
                    "user_role": user.role,
                    "ip_address": shift.ip_address,
                    "created_at": shift.created_at,
                    "summary": summary,
                })
            return results

    def admin_end_shift(self, shift_id: int, admin_role: str,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """管理员强制结束他人班次。

        只记录系统金额；没有人工清点，清点金额记为 0，差异等于系统金额。

        Raises:
            PermissionError: 非管理员。
            ValueError: 班次不存在或已结束。
        """
        require_admin(admin_role, "end other users' shifts")
        now = now or utcnow()
        with self._get_session() as sess:
            shift = sess.get(Shift, shift_id)
            if shift is None:
                raise ValueError("Shift not found")
            if shift.ended_at is not None:
                raise ValueError("Shift has already been ended")
            summary = summarize_payments(
                self.get_shift_payments(shift, until=now, session=sess)
            )
            variances = calculate_variances(summary.by_method, {})
            updated = sess.query(Shift).filter(
                Shift.id == shift_id, Shift.ended_at.is_(None)
            ).update({
                Shift.system_cash: summary.total_cash,
                Shift.system_qr: summary.total_qr,
                Shift.system_bank_transfer: summary.total_bank_transfer,
                Shift.cash_variance: variances["cash_variance"],
                Shift.qr_variance: variances["qr_variance"],
                Shift.bank_transfer_variance: variances["bank_transfer_variance"],
                Shift.member_payments: summary.member_payments,
                Shift.walk_in_payments: summary.walk_in_payments,
                Shift.pos_sales: summary.pos_sales,
                Shift.coupon_sales: summary.coupon_sales,
                Shift.grace_period_settlement_fees: (
                    summary.grace_period_settlement_fees
                ),
                Shift.total_sales: summary.total_sales,
                Shift.ended_at: now,
            }, synchronize_session=False)
            if updated == 0:
                raise ValueError("Shift has already been ended")
            sess.commit()
        logger.warning(f"班次 #{shift_id} 已被管理员强制结束")
        return {"shift_id": shift_id, "summary": summary, "variances": variances}


class MembershipRepository(BaseCRUD):
    """会员注册与续费 仓库。"""

    def __init__(self, conn: DatabaseConnection,
                 setting_repo: SettingRepository,
                 member_repo: MemberRepository,
                 plan_repo: MembershipPlanRepository,
                 shift_repo: ShiftRepository,
                 payment_repo: PaymentRepository) -> None:
        super().__init__(conn)
        self._settings = setting_repo
        self._members = member_repo
        self._plans = plan_repo
        self._shifts = shift_repo
        self._payments = payment_repo

    @staticmethod
    def _get_plan(sess: Session, plan_id: int) -> MembershipPlan:
        plan = sess.get(MembershipPlan, plan_id)
        if plan is None or not plan.active:
            raise ValueError("Membership plan not found or inactive")
        return plan

    def register_member(self, member_data: Dict[str, Any], plan_id: int,
                        payment_method: str, user_id: int,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """注册新会员并收取方案费用与注册费。

        Args:
            member_data: 会员资料，支持 name（必填）、type、nric、phone、
                email、photo_url、member_id（可选，手动指定时必须唯一）。
            plan_id: 会员方案。
            payment_method: 支付方式。
            user_id: 操作员。

        Returns:
            {"member": Member, "payment": Payment, "history": MembershipHistory}

        Raises:
            ValueError: 资料无效、方案与会员类型不符、编号重复或没有进行中的班次。
        """
        now = now or utcnow()
        data = {k: v for k, v in member_data.items()
                if k in ("member_id", "name", "type", "nric", "phone",
                         "email", "photo_url") and v not in (None, "")}
        data.setdefault("type", "adult")
        if not data.get("name"):
            raise ValueError("Name is required")
        self._members.validate_fields(data)
        validate_payment_method(payment_method)

        with self._get_session() as sess:
            plan = self._get_plan(sess, plan_id)
            if plan.type != data["type"]:
                raise ValueError("Membership plan does not match member type")
            shift = self._shifts.require_active_shift(user_id, session=sess)

            manual_id = (data.get("member_id") or "").strip()
            if manual_id:
                if self._members.member_id_exists(manual_id, session=sess):
                    raise ValueError("This member ID is already in use")
                data["member_id"] = manual_id
            else:
                data["member_id"] = self._members.next_member_id(session=sess)

            expiry = registration_expiry(plan.months, plan.free_months, now)
            member = Member(status=STATUS_ACTIVE, expiry_date=expiry,
                            created_at=now, **data)
            sess.add(member)
            sess.flush()

            plan_details = {
                "plan_id": plan.id,
                "months": plan.months,
                "free_months": plan.free_months or 0,
                "price": float(plan.price),
            }
            amount = to_decimal(plan.price) + to_decimal(plan.registration_fee)
            payment = self._payments.record(
                sess, amount, "registration", payment_method, user_id,
                shift.id, member_id=member.id,
                details={
                    "plan": plan_details,
                    "registration_fee": float(plan.registration_fee or 0),
                }
            )
            history = MembershipHistory(
                member_id=member.id, payment_id=payment.id,
                previous_expiry_date=None, new_expiry_date=expiry,
                type="registration", plan_details=plan_details,
                created_by=user_id
            )
            sess.add(history)
            try:
                sess.commit()
            except IntegrityError:
                sess.rollback()
                raise ValueError("This member ID is already in use")

        logger.info(
            f"新会员注册: {member.member_id} {member.name}, 收款 {amount}"
        )
        return {"member": member, "payment": payment, "history": history}

    def get_unpaid_grace_accesses(self, member_pk: int,
                                  after: Optional[datetime],
                                  session: Optional[Session] = None
                                  ) -> List[GracePeriodAccess]:
        """到期后未结清的宽限期入场记录。"""
        def _query(sess):
            query = sess.query(GracePeriodAccess).filter(
                GracePeriodAccess.member_id == member_pk,
                GracePeriodAccess.paid_at.is_(None),
            )
            if after is not None:
                query = query.filter(GracePeriodAccess.check_in_time > after)
            return query.order_by(GracePeriodAccess.check_in_time).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_renewal_quote(self, member_pk: int, plan_id: int,
                          now: Optional[datetime] = None,
                          session: Optional[Session] = None) -> Dict[str, Any]:
        """续费报价：新到期时间、方案价格与宽限期欠费。

        Raises:
            ValueError: 会员或方案不存在、会员已暂停、提前续费无效。
        """
        now = now or utcnow()

        def _do(sess):
            member = sess.get(Member, member_pk)
            if member is None:
                raise ValueError("Member not found")
            grace_days = self._settings.get_grace_period_days(session=sess)
            status = self._members.refresh_status(member, grace_days, sess, now)
            if status == STATUS_SUSPENDED:
                raise ValueError("Suspended members cannot be renewed")
            plan = self._get_plan(sess, plan_id)

            terms = calculate_renewal(
                status, member.expiry_date, plan.months, plan.free_months, now
            )
            accesses = []
            charges = Decimal("0")
            if grace_charges_apply(member.expiry_date, grace_days, now):
                accesses = self.get_unpaid_grace_accesses(
                    member.id, member.expiry_date, session=sess
                )
                fallback = walkin_price_for(
                    member.type, self._settings.get_membership_settings(session=sess)
                )
                charges = calculate_grace_charges(
                    [{"walkin_price_at_time_of_access":
                      a.walkin_price_at_time_of_access} for a in accesses],
                    fallback
                )
            price = to_decimal(plan.price)
            return {
                "member": member,
                "plan": plan,
                "status": status,
                "previous_expiry_date": member.expiry_date,
                "new_expiry_date": terms.new_expiry_date,
                "total_months": terms.total_months,
                "plan_price": price,
                "grace_charges": charges,
                "grace_accesses": accesses,
                "total": price + charges,
            }

        if session:
            return _do(session)

        with self._get_session() as sess:
            quote = _do(sess)
            sess.commit()
            return quote

    def renew_membership(self, member_pk: int, plan_id: int,
                         payment_method: str, user_id: int,
                         accept_grace_charges: bool = False,
                         now: Optional[datetime] = None) -> Dict[str, Any]:
        """会员续费。

        先在一个事务中写入变更历史、更新会员与收款；之后标记宽限期入场
        记录已结清，该步骤失败只返回警告。

        Args:
            accept_grace_charges: 存在宽限期欠费时必须为 True。

        Returns:
            {"member", "payment", "history", "grace_charges", "warnings"}

        Raises:
            ValueError: 报价失败、欠费未确认或没有进行中的班次。
        """
        now = now or utcnow()
        validate_payment_method(payment_method)

        with self._get_session() as sess:
            quote = self.get_renewal_quote(member_pk, plan_id, now, session=sess)
            charges = quote["grace_charges"]
            if charges > 0 and not accept_grace_charges:
                raise ValueError(
                    f"Outstanding grace period charges of {format_currency(charges)} "
                    f"must be accepted before renewal"
                )
            shift = self._shifts.require_active_shift(user_id, session=sess)
            member, plan = quote["member"], quote["plan"]

            plan_details = {
                "plan_id": plan.id,
                "months": plan.months,
                "free_months": plan.free_months or 0,
                "price": float(plan.price),
            }
            payment = self._payments.record(
                sess, quote["total"], "renewal", payment_method, user_id,
                shift.id, member_id=member.id,
                details={
                    "renewal_plan": {"price": float(quote["plan_price"])},
                    "grace_period_settlement": {"amount": float(charges)},
                }
            )
            history = MembershipHistory(
                member_id=member.id, payment_id=payment.id,
                previous_expiry_date=quote["previous_expiry_date"],
                new_expiry_date=quote["new_expiry_date"],
                type="renewal", plan_details=plan_details, created_by=user_id
            )
            sess.add(history)
            member.status = STATUS_ACTIVE
            member.expiry_date = quote["new_expiry_date"]
            access_ids = [a.id for a in quote["grace_accesses"]]
            sess.commit()

        logger.info(
            f"会员续费: {member.member_id} 到期 {member.expiry_date}, "
            f"收款 {quote['total']}"
        )
        warnings = []
        if access_ids:
            try:
                marked = self.mark_grace_accesses_paid(access_ids, payment.id, now)
                if marked != len(access_ids):
                    warnings.append(
                        f"Only {marked} of {len(access_ids)} grace period "
                        f"accesses were marked as paid"
                    )
            except Exception as e:
                logger.warning(f"标记宽限期入场已结清失败: {e}")
                warnings.append("Grace period accesses were not marked as paid")

        return {
            "member": member,
            "payment": payment,
            "history": history,
            "grace_charges": charges,
            "warnings": warnings,
        }

    def mark_grace_accesses_paid(self, access_ids: List[int], payment_id: int,
                                 paid_at: Optional[datetime] = None) -> int:
        """标记宽限期入场记录已结清。

        Returns:
            实际更新的记录数（已结清的记录不会被重复标记）。
        """
        if not access_ids:
            return 0
        with self._get_session() as sess:
            updated = sess.query(GracePeriodAccess).filter(
                GracePeriodAccess.id.in_(access_ids),
                GracePeriodAccess.paid_at.is_(None),
            ).update({
                GracePeriodAccess.paid_at: paid_at or utcnow(),
                GracePeriodAccess.payment_id: payment_id,
            }, synchronize_session=False)
            sess.commit()
            return updated

    def get_history(self, member_pk: int) -> List[MembershipHistory]:
        return self.get_all(
            MembershipHistory, filters={"member_id": member_pk},
            order_by=MembershipHistory.created_at.desc()
        )


class CheckInRepository(BaseCRUD):
    """签到与散客 仓库。"""

    def __init__(self, conn: DatabaseConnection,
                 setting_repo: SettingRepository,
                 member_repo: MemberRepository,
                 shift_repo: ShiftRepository,
                 payment_repo: PaymentRepository) -> None:
        super().__init__(conn)
        self._settings = setting_repo
        self._members = member_repo
        self._shifts = shift_repo
        self._payments = payment_repo

    def has_checked_in_today(self, member_pk: int,
                             now: Optional[datetime] = None,
                             session: Optional[Session] = None) -> bool:
        """会员今天（本地日期）是否已签到。"""
        start, end = local_day_bounds(local_today(now))

        def _query(sess):
            return sess.query(CheckIn.id).filter(
                CheckIn.member_id == member_pk,
                CheckIn.type == "member",
                CheckIn.check_in_time >= start,
                CheckIn.check_in_time < end,
            ).first() is not None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def check_in_member(self, member_pk: int, user_id: Optional[int],
                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """会员签到。

        暂停的会员被拒绝；过期会员被拒绝并提示按散客处理；宽限期内的
        会员额外记录一条宽限期入场（按当前散客价格计费，续费时结清）。

        Returns:
            {"check_in", "member", "status", "already_checked_in_today",
             "grace_access", "warnings"}

        Raises:
            ValueError: 会员不存在。
            CheckInRefused: 会员已暂停或已过期。
        """
        now = now or utcnow()
        warnings = []
        with self._get_session() as sess:
            member = sess.get(Member, member_pk)
            if member is None:
                raise ValueError("Member not found")
            grace_days = self._settings.get_grace_period_days(session=sess)
            status = self._members.refresh_status(member, grace_days, sess, now)
            if status == STATUS_SUSPENDED:
                sess.commit()
                raise CheckInRefused("Member is suspended", "suspended")
            if status == STATUS_EXPIRED:
                sess.commit()
                raise CheckInRefused(
                    "Membership has expired. Please check in as a walk-in.",
                    "expired"
                )

            already = self.has_checked_in_today(member.id, now, session=sess)
            check_in = CheckIn(member_id=member.id, type="member",
                               name=member.name, check_in_time=now,
                               user_id=user_id)
            sess.add(check_in)
            sess.flush()

            grace_access = None
            if status == STATUS_GRACE:
                price = walkin_price_for(
                    member.type,
                    self._settings.get_membership_settings(session=sess)
                )
                if price == 0:
                    warnings.append(
                        "Walk-in price is not configured; grace access "
                        "recorded with zero charge"
                    )
                    logger.warning(f"会员 {member.member_id} 宽限期入场价格为 0")
                grace_access = GracePeriodAccess(
                    member_id=member.id, check_in_id=check_in.id,
                    check_in_time=now, expiry_date=member.expiry_date,
                    grace_period_days=grace_days,
                    walkin_price_at_time_of_access=price, user_id=user_id
                )
                sess.add(grace_access)
            sess.commit()

        return {
            "check_in": check_in,
            "member": member,
            "status": status,
            "already_checked_in_today": already,
            "grace_access": grace_access,
            "warnings": warnings,
        }

    def record_walk_in(self, name: str, walk_in_type: str,
                       payment_method: str, user_id: int,
                       phone: Optional[str] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
        """散客入场：记录签到并收取单次费用。

        Raises:
            ValueError: 姓名为空、类型无效、价格未配置或没有进行中的班次。
        """
        now = now or utcnow()
        name = (name or "").strip()
        if not name:
            raise ValueError("Walk-in name is required")
        if walk_in_type not in MEMBER_TYPES:
            raise ValueError(f"Invalid walk-in type: {walk_in_type}")
        validate_payment_method(payment_method)

        with self._get_session() as sess:
            price = walkin_price_for(
                walk_in_type, self._settings.get_membership_settings(session=sess)
            )
            if price <= 0:
                raise ValueError("Walk-in price is not configured")
            shift = self._shifts.require_active_shift(user_id, session=sess)

            check_in = CheckIn(type="walk-in", name=name, phone=phone,
                               check_in_time=now, user_id=user_id)
            sess.add(check_in)
            sess.flush()
            payment = self._payments.record(
                sess, price, "walk-in", payment_method, user_id, shift.id,
                check_in_id=check_in.id,
                details={"walk_in_type": walk_in_type}
            )
            sess.commit()

        logger.info(f"散客入场: {name} ({walk_in_type}), 收款 {price}")
        return {"check_in": check_in, "payment": payment}

    def _filtered_query(self, sess: Session, check_in_type: Optional[str],
                        start: Optional[datetime], end: Optional[datetime],
                        keyword: Optional[str], member_pk: Optional[int]):
        query = sess.query(CheckIn, Member).outerjoin(
            Member, Member.id == CheckIn.member_id
        )
        if check_in_type:
            query = query.filter(CheckIn.type == check_in_type)
        if start is not None:
            query = query.filter(CheckIn.check_in_time >= start)
        if end is not None:
            query = query.filter(CheckIn.check_in_time < end)
        if member_pk is not None:
            query = query.filter(CheckIn.member_id == member_pk)
        if keyword:
            pattern = f"%{keyword.strip()}%"
            query = query.filter(or_(
                CheckIn.name.ilike(pattern),
                Member.name.ilike(pattern),
                Member.member_id.ilike(pattern),
            ))
        return query

    def count_check_ins(self, check_in_type: Optional[str] = None,
                        start: Optional[datetime] = None,
                        end: Optional[datetime] = None,
                        keyword: Optional[str] = None,
                        member_pk: Optional[int] = None) -> int:
        """统计签到数量。"""
        with self._get_session() as sess:
            return self._filtered_query(
                sess, check_in_type, start, end, keyword, member_pk
            ).count()

    def search_check_ins(self, check_in_type: Optional[str] = None,
                         start: Optional[datetime] = None,
                         end: Optional[datetime] = None,
                         keyword: Optional[str] = None,
                         member_pk: Optional[int] = None,
                         offset: int = 0, limit: int = 15
                         ) -> List[Dict[str, Any]]:
        """分页搜索签到记录（最新在前）。"""
        with self._get_session() as sess:
            rows = self._filtered_query(
                sess, check_in_type, start, end, keyword, member_pk
            ).order_by(
                CheckIn.check_in_time.desc(), CheckIn.id.desc()
            ).offset(offset).limit(limit).all()
            return [
                {
                    "id": c.id,
                    "type": c.type,
                    "name": m.name if m else c.name,
                    "phone": c.phone,
                    "member_pk": c.member_id,
                    "member_id": m.member_id if m else None,
                    "check_in_time": c.check_in_time,
                    "user_id": c.user_id,
                }
                for c, m in rows
            ]

    def get_grace_accesses(self, member_pk: Optional[int] = None,
                           start: Optional[datetime] = None,
                           end: Optional[datetime] = None
                           ) -> List[Dict[str, Any]]:
        """宽限期入场记录，附带会员姓名。"""
        with self._get_session() as sess:
            query = sess.query(GracePeriodAccess, Member).join(
                Member, Member.id == GracePeriodAccess.member_id
            )
            if member_pk is not None:
                query = query.filter(GracePeriodAccess.member_id == member_pk)
            if start is not None:
                query = query.filter(GracePeriodAccess.check_in_time >= start)
            if end is not None:
                query = query.filter(GracePeriodAccess.check_in_time < end)
            rows = query.order_by(GracePeriodAccess.check_in_time.desc()).all()
            return [
                {
                    "id": g.id,
                    "member_pk": g.member_id,
                    "member_id": m.member_id,
                    "member_name": m.name,
                    "check_in_time": g.check_in_time,
                    "expiry_date": g.expiry_date,
                    "grace_period_days": g.grace_period_days,
                    "walkin_price_at_time_of_access": (
                        to_decimal(g.walkin_price_at_time_of_access)
                        if g.walkin_price_at_time_of_access is not None
                        else None
                    ),
                    "paid_at": g.paid_at,
                    "payment_id": g.payment_id,
                }
                for g, m in rows
            ]


class CouponRepository(BaseCRUD):
    """优惠券 仓库。

    使用次数通过带条件的单条 UPDATE 增减，避免并发核销超出上限。
    """

    def __init__(self, conn: DatabaseConnection,
                 setting_repo: SettingRepository,
                 shift_repo: ShiftRepository,
                 payment_repo: PaymentRepository) -> None:
        super().__init__(conn)
        self._settings = setting_repo
        self._shifts = shift_repo
        self._payments = payment_repo

    @staticmethod
    def normalize_code(code: str) -> str:
        return (code or "").strip().upper()

    def get_by_code(self, code: str,
                    session: Optional[Session] = None) -> Optional[Coupon]:
        def _query(sess):
            return sess.query(Coupon).filter(
                Coupon.code == self.normalize_code(code)
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def create_coupon(self, code: str, coupon_type: str,
                      valid_until: datetime, payment_method: str,
                      user_id: int, owner_name: Optional[str] = None,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """售出优惠券：创建券并在当前班次记录一笔 coupon 收款。

        售价与可用次数取自 coupon_prices 设置。

        Returns:
            {"coupon": Coupon, "payment": Payment}

        Raises:
            ValueError: 券码为空或已存在、类型无效、有效期已过。
        """
        now = now or utcnow()
        code = self.normalize_code(code)
        if not code:
            raise ValueError("Coupon code is required")
        if coupon_type not in MEMBER_TYPES:
            raise ValueError(f"Invalid coupon type: {coupon_type}")
        if valid_until is None or valid_until <= now:
            raise ValueError("Coupon expiry must be in the future")
        validate_payment_method(payment_method)

        with self._get_session() as sess:
            if self.get_by_code(code, session=sess):
                raise ValueError("This coupon code is already in use")
            prices = self._settings.get("coupon_prices", session=sess)
            price = to_decimal(prices.get(coupon_type))
            max_uses = int(prices.get("max_uses") or 1)

            shift = self._shifts.get_or_create_active_shift(user_id, session=sess)
            coupon = Coupon(
                code=code, type=coupon_type, price=price,
                owner_name=owner_name, valid_until=valid_until,
                max_uses=max_uses, uses=0, active=True,
                created_by=user_id, created_at=now
            )
            sess.add(coupon)
            sess.flush()
            payment = self._payments.record(
                sess, price, "coupon", payment_method, user_id, shift.id,
                coupon_id=coupon.id
            )
            try:
                sess.commit()
            except IntegrityError:
                sess.rollback()
                raise ValueError("This coupon code is already in use")

        logger.info(f"售出优惠券 {code} ({coupon_type}), 收款 {price}")
        return {"coupon": coupon, "payment": payment}

    @staticmethod
    def check_usable(coupon: Optional[Coupon],
                     now: Optional[datetime] = None) -> Optional[str]:
        """检查优惠券是否可用，返回不可用原因（可用返回 None）。"""
        now = now or utcnow()
        if coupon is None:
            return "Coupon not found"
        if not coupon.active:
            return "Coupon is not active"
        if coupon.valid_until <= now:
            return "Coupon has expired"
        if coupon.uses >= coupon.max_uses:
            return "Coupon has reached its maximum number of uses"
        return None

    def validate_coupon(self, code: str,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """校验券码：有效、未过期且未用完。"""
        coupon = self.get_by_code(code)
        reason = self.check_usable(coupon, now)
        return {"valid": reason is None, "reason": reason, "coupon": coupon}

    def update_coupon_usage(self, coupon_id: int, increment: bool = True,
                            now: Optional[datetime] = None,
                            session: Optional[Session] = None) -> int:
        """增减优惠券使用次数。

        Returns:
            更新后的使用次数。

        Raises:
            ValueError: 券不存在、无效、已过期、已达上限（增加时）
                或使用次数已为 0（减少时）。
        """
        def _do(sess):
            coupon = sess.get(Coupon, coupon_id)
            if coupon is None:
                raise ValueError("Coupon not found")
            if increment:
                reason = self.check_usable(coupon, now)
                if reason:
                    raise ValueError(reason)
                updated = sess.query(Coupon).filter(
                    Coupon.id == coupon_id, Coupon.uses < Coupon.max_uses
                ).update({Coupon.uses: Coupon.uses + 1},
                         synchronize_session=False)
                if updated == 0:
                    raise ValueError(
                        "Coupon has reached its maximum number of uses"
                    )
            else:
                if coupon.uses <= 0:
                    raise ValueError("Coupon usage count is already zero")
                updated = sess.query(Coupon).filter(
                    Coupon.id == coupon_id, Coupon.uses > 0
                ).update({Coupon.uses: Coupon.uses - 1},
                         synchronize_session=False)
                if updated == 0:
                    raise ValueError("Coupon usage count is already zero")
            sess.refresh(coupon)
            return coupon.uses

        if session:
            return _do(session)

        with self._get_session() as sess:
            uses = _do(sess)
            sess.commit()
            return uses

    def redeem_coupon(self, code: str, user_id: Optional[int],
                      payment_id: Optional[int] = None,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """核销优惠券：记录使用并增加使用次数（同一事务）。

        Returns:
            {"coupon", "coupon_use", "remaining_uses"}
        """
        now = now or utcnow()
        with self._get_session() as sess:
            coupon = self.get_by_code(code, session=sess)
            if coupon is None:
                raise ValueError("Coupon not found")
            usage = CouponUse(
                coupon_id=coupon.id, user_id=user_id, payment_id=payment_id,
                amount_saved=coupon.price, used_at=now
            )
            sess.add(usage)
            sess.flush()
            uses = self.update_coupon_usage(coupon.id, True, now, session=sess)
            sess.commit()

        logger.info(f"优惠券核销: {coupon.code} ({uses}/{coupon.max_uses})")
        return {
            "coupon": coupon,
            "coupon_use": usage,
            "remaining_uses": coupon.max_uses - uses,
        }

    def cancel_coupon_use(self, use_id: int) -> int:
        """撤销一次核销：删除使用记录并减少使用次数。

        Returns:
            更新后的使用次数。
        """
        with self._get_session() as sess:
            usage = sess.get(CouponUse, use_id)
            if usage is None:
                raise ValueError("Coupon use not found")
            uses = self.update_coupon_usage(usage.coupon_id, False, session=sess)
            sess.delete(usage)
            sess.commit()
            return uses

    def search_coupon_usage(self, coupon_id: Optional[int] = None,
                            keyword: Optional[str] = None,
                            offset: int = 0, limit: int = 15
                            ) -> Tuple[List[Dict[str, Any]], int]:
        """核销记录（最新在前）分页查询。"""
        with self._get_session() as sess:
            query = sess.query(CouponUse, Coupon, User).join(
                Coupon, Coupon.id == CouponUse.coupon_id
            ).outerjoin(User, User.id == CouponUse.user_id)
            if coupon_id is not None:
                query = query.filter(CouponUse.coupon_id == coupon_id)
            if keyword:
                pattern = f"%{keyword.strip()}%"
                query = query.filter(or_(
                    Coupon.code.ilike(pattern),
                    Coupon.owner_name.ilike(pattern),
                ))
            total = query.count()
            rows = query.order_by(
                CouponUse.used_at.desc(), CouponUse.id.desc()
            ).offset(offset).limit(limit).all()
            return [
                {
                    "id": u.id,
                    "coupon_id": c.id,
                    "code": c.code,
                    "owner_name": c.owner_name,
                    "amount_saved": to_decimal(u.amount_saved),
                    "used_at": u.used_at,
                    "user_id": u.user_id,
                    "user_email": user.email if user else None,
                    "payment_id": u.payment_id,
                }
                for u, c, user in rows
            ], total

    def list_coupons(self, keyword: Optional[str] = None,
                     active_only: bool = False,
                     offset: int = 0, limit: int = 15
                     ) -> Tuple[List[Coupon], int]:
        """优惠券列表（最新在前）。"""
        with self._get_session() as sess:
            query = sess.query(Coupon)
            if active_only:
                query = query.filter(Coupon.active.is_(True))
            if keyword:
                pattern = f"%{keyword.strip()}%"
                query = query.filter(or_(
                    Coupon.code.ilike(pattern),
                    Coupon.owner_name.ilike(pattern),
                ))
            total = query.count()
            coupons = query.order_by(
                Coupon.created_at.desc(), Coupon.id.desc()
            ).offset(offset).limit(limit).all()
            return coupons, total

    def set_active(self, coupon_id: int, active: bool,
                   actor_role: str) -> Optional[Coupon]:
        require_admin(actor_role, "change coupon status")
        return self.update_by_id(Coupon, coupon_id, active=active)


class SaleRepository(BaseCRUD):
    """POS 销售 仓库。"""

    def __init__(self, conn: DatabaseConnection,
                 product_repo: ProductRepository,
                 shift_repo: ShiftRepository,
                 payment_repo: PaymentRepository) -> None:
        super().__init__(conn)
        self._products = product_repo
        self._shifts = shift_repo
        self._payments = payment_repo

    def checkout(self, items: List[Dict[str, Any]], payment_method: str,
                 user_id: int) -> Dict[str, Any]:
        """POS 结账。

        库存扣减与 pos 收款在同一事务内完成，每个商品用带条件的
        UPDATE（stock >= 数量）扣减，任一商品不足则整体回滚。
        提交后再逐个写 sale 流水，流水写入失败只记录警告。

        Args:
            items: [{product_id, quantity}]，同一商品出现多次会合并。
            payment_method: 支付方式。
            user_id: 操作员。

        Returns:
            {"payment": Payment, "total": Decimal, "warnings": [...]}

        Raises:
            ValueError: 购物车为空、数量无效、商品不存在或库存不足。
        """
        validate_payment_method(payment_method)
        quantities: Dict[int, int] = {}
        for item in items or []:
            quantity = int(item.get("quantity") or 0)
            if quantity <= 0:
                raise ValueError("Quantity must be at least 1")
            product_id = int(item["product_id"])
            quantities[product_id] = quantities.get(product_id, 0) + quantity
        if not quantities:
            raise ValueError("Cart is empty")

        with self._get_session() as sess:
            shift = self._shifts.require_active_shift(user_id, session=sess)
            lines = []
            movements = []
            total = Decimal("0")
            for product_id, quantity in quantities.items():
                product = sess.get(Product, product_id)
                if product is None or not product.active:
                    raise ValueError(f"Product {product_id} not found")
                if product.stock < quantity:
                    raise _not_enough_stock(product)
                new_stock = self._take_stock(sess, product, quantity)
                price = to_decimal(product.price)
                total += price * quantity
                lines.append({
                    "product_id": product.id,
                    "product_name": product.name,
                    "quantity": quantity,
                    "price": float(price),
                })
                movements.append((product.id, product.name,
                                  new_stock + quantity, new_stock))
            payment = self._payments.record(
                sess, total, "pos", payment_method, user_id, shift.id,
                items=lines
            )
            sess.commit()

        logger.info(f"POS 结账: {len(lines)} 种商品, 收款 {total}")
        warnings = []
        for movement in movements:
            warning = self._record_sale_history(movement, user_id)
            if warning:
                warnings.append(warning)
        return {"payment": payment, "total": total, "warnings": warnings}

    def _take_stock(self, sess: Session, product: Product,
                    quantity: int) -> int:
        """在当前事务中扣减库存，返回扣减后的库存。

        Raises:
            ValueError: 库存已被其他收银台售出，不足本次数量。
        """
        updated = sess.query(Product).filter(
            Product.id == product.id, Product.stock >= quantity
        ).update({Product.stock: Product.stock - quantity},
                 synchronize_session=False)
        sess.refresh(product)
        if updated == 0:
            raise _not_enough_stock(product)
        return product.stock

    def _record_sale_history(self, movement: Tuple[int, str, int, int],
                             user_id: Optional[int]) -> Optional[str]:
        """写入一条 sale 库存流水，返回警告信息（成功返回 None）。"""
        product_id, name, previous, new_stock = movement
        try:
            with self._get_session() as sess:
                sess.add(StockHistory(
                    product_id=product_id, previous_stock=previous,
                    new_stock=new_stock, change=new_stock - previous,
                    type="sale", user_id=user_id
                ))
                sess.commit()
        except Exception as e:
            logger.warning(f"记录库存流水失败 ({name}): {e}")
            return f"Stock history for {name} was not recorded"
        return None
