"""系统数据仓库：系统级数据的数据访问层。

管理设备授权（登录设备指纹审核）、经营报表查询与每日汇总快照。
报表的分桶与汇总规则在 business.reports / business.shifts 中，
本模块只负责查询数据并转换为字典。
"""
from typing import Optional, List, Dict, Any
from datetime import date, datetime, timedelta
from sqlalchemy.orm import Session
from loguru import logger

from business.membership import calculate_member_status
from business.permissions import require_admin
from business.reports import (
    aggregate_attendance, aggregate_financial, aggregate_membership,
    aggregate_sales, calculate_shift_subtotals, financial_totals, jsonable,
    resolve_date_range, summarize_day,
)
from business.shifts import (
    attribute_payments, build_shift_intervals, pending_shift_totals,
)
from business.timeutils import local_day_bounds, local_range_bounds, utcnow
from business.money import to_decimal

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .entity_repos import SettingRepository, MemberRepository
from .business_repos import PaymentRepository
from .models import (
    User, Member, MembershipHistory, Shift, CheckIn, GracePeriodAccess,
    Product, DeviceAuthorizationRequest, AuthorizedDevice, DailySummary,
)

DEFAULT_DEVICE_DESCRIPTION = "Device details not captured"
PENDING_REQUEST_REUSE = timedelta(minutes=10)


class DeviceRepository(BaseCRUD):
    """设备授权 仓库。

    开启设备指纹功能后，fingerprint_roles 中角色的用户只能在已授权的
    设备上登录；未授权设备会生成一条待审核申请，由管理员批准或拒绝。
    """

    def __init__(self, conn: DatabaseConnection,
                 setting_repo: SettingRepository) -> None:
        super().__init__(conn)
        self._settings = setting_repo

    def validate_device(self, user_id: int, fingerprint: Optional[str],
                        description: Optional[str] = None,
                        now: Optional[datetime] = None) -> Dict[str, Any]:
        """校验登录设备。

        Args:
            user_id: 登录用户。
            fingerprint: 设备指纹。
            description: 设备描述（可选）。

        Returns:
            {"authorized": bool, "needs_admin_approval": bool,
             "request_id": 待审核申请ID（仅在需要审核时）}

        Raises:
            ValueError: 用户不存在，或需要校验时缺少设备指纹。
        """
        now = now or utcnow()
        with self._get_session() as sess:
            user = sess.get(User, user_id)
            if user is None:
                raise ValueError("User not found")

            enabled = self._settings.get(
                "device_fingerprinting_enabled", session=sess
            ) is True
            roles = self._settings.get("fingerprint_roles", session=sess)
            if not isinstance(roles, list):
                logger.warning(f"fingerprint_roles 设置无效: {roles!r}")
                roles = []
            if not enabled or user.role not in roles:
                return {"authorized": True, "needs_admin_approval": False}

            if not fingerprint:
                raise ValueError("Fingerprint missing")

            device = sess.query(AuthorizedDevice).filter(
                AuthorizedDevice.user_id == user_id,
                AuthorizedDevice.fingerprint == fingerprint,
            ).first()
            if device is not None:
                device.last_used_at = now
                sess.commit()
                return {"authorized": True, "needs_admin_approval": False}

            request = self._get_or_create_request(
                sess, user_id, fingerprint, description, now
            )
            sess.commit()
            logger.info(f"用户 {user.email} 的设备等待管理员审核 (申请 #{request.id})")
            return {
                "authorized": False,
                "needs_admin_approval": True,
                "request_id": request.id,
            }

    @staticmethod
    def _get_or_create_request(sess: Session, user_id: int, fingerprint: str,
                               description: Optional[str],
                               now: datetime) -> DeviceAuthorizationRequest:
        """10 分钟内的待审核申请直接复用（必要时刷新描述），否则新建。"""
        text = description or DEFAULT_DEVICE_DESCRIPTION
        existing = sess.query(DeviceAuthorizationRequest).filter(
            DeviceAuthorizationRequest.user_id == user_id,
            DeviceAuthorizationRequest.fingerprint == fingerprint,
            DeviceAuthorizationRequest.status == "pending",
        ).order_by(DeviceAuthorizationRequest.requested_at.desc()).first()

        if existing is not None and \
                existing.requested_at > now - PENDING_REQUEST_REUSE:
            if text != existing.user_description and (
                existing.user_description in (None, DEFAULT_DEVICE_DESCRIPTION)
                or text != DEFAULT_DEVICE_DESCRIPTION
            ):
                existing.user_description = text
                existing.requested_at = now
            return existing

        request = DeviceAuthorizationRequest(
            user_id=user_id, fingerprint=fingerprint, status="pending",
            user_description=text, requested_at=now
        )
        sess.add(request)
        sess.flush()
        return request

    def approve_request(self, request_id: int, admin_id: int, admin_role: str,
                        notes: Optional[str] = None,
                        now: Optional[datetime] = None
                        ) -> DeviceAuthorizationRequest:
        """批准设备申请，并在同一事务中登记授权设备。

        Raises:
            PermissionError: 非管理员。
            ValueError: 申请不存在或不是待审核状态。
        """
        require_admin(admin_role, "approve device requests")
        now = now or utcnow()
        with self._get_session() as sess:
            request = self._get_pending(sess, request_id)
            request.status = "approved"
            request.reviewed_by = admin_id
            request.reviewed_at = now
            request.admin_notes = notes or "Approved via admin function."

            device = sess.query(AuthorizedDevice).filter(
                AuthorizedDevice.user_id == request.user_id,
                AuthorizedDevice.fingerprint == request.fingerprint,
            ).first()
            if device is None:
                device = AuthorizedDevice(
                    user_id=request.user_id, fingerprint=request.fingerprint
                )
                sess.add(device)
            device.description = request.user_description
            device.authorized_by = admin_id
            device.authorized_at = now
            sess.commit()

        logger.info(f"设备申请 #{request_id} 已批准")
        return request

    def deny_request(self, request_id: int, admin_id: int, admin_role: str,
                     notes: Optional[str] = None,
                     now: Optional[datetime] = None
                     ) -> DeviceAuthorizationRequest:
        """拒绝设备申请。"""
        require_admin(admin_role, "deny device requests")
        with self._get_session() as sess:
            request = self._get_pending(sess, request_id)
            request.status = "denied"
            request.reviewed_by = admin_id
            request.reviewed_at = now or utcnow()
            request.admin_notes = notes or "Denied by admin function."
            sess.commit()

        logger.info(f"设备申请 #{request_id} 已拒绝")
        return request

    @staticmethod
    def _get_pending(sess: Session,
                     request_id: int) -> DeviceAuthorizationRequest:
        request = sess.get(DeviceAuthorizationRequest, request_id)
        if request is None:
            raise ValueError("Device request not found")
        if request.status != "pending":
            raise ValueError(
                f"Request is not pending, current status: {request.status}"
            )
        return request

    def get_request_status(self, request_id: int,
                           user_id: Optional[int] = None) -> Optional[str]:
        """查询申请状态（等待审核页面轮询）。"""
        request = self.get_by_id(DeviceAuthorizationRequest, request_id)
        if request is None or (user_id is not None and request.user_id != user_id):
            return None
        return request.status

    def list_requests(self, pending: bool = True) -> List[Dict[str, Any]]:
        """待审核申请（最早在前）或历史申请（最近审核在前），附带用户信息。"""
        with self._get_session() as sess:
            query = sess.query(DeviceAuthorizationRequest, User).outerjoin(
                User, User.id == DeviceAuthorizationRequest.user_id
            )
            if pending:
                query = query.filter(
                    DeviceAuthorizationRequest.status == "pending"
                ).order_by(DeviceAuthorizationRequest.requested_at)
            else:
                query = query.filter(
                    DeviceAuthorizationRequest.status.in_(("approved", "denied"))
                ).order_by(
                    DeviceAuthorizationRequest.reviewed_at.desc(),
                    DeviceAuthorizationRequest.requested_at.desc(),
                )
            return [
                {
                    "id": r.id,
                    "user_id": r.user_id,
                    "user_name": u.name if u else None,
                    "user_email": u.email if u else None,
                    "fingerprint": r.fingerprint,
                    "user_description": r.user_description,
                    "status": r.status,
                    "requested_at": r.requested_at,
                    "reviewed_by": r.reviewed_by,
                    "reviewed_at": r.reviewed_at,
                    "admin_notes": r.admin_notes,
                }
                for r, u in query.all()
            ]

    def list_devices(self, user_id: Optional[int] = None
                     ) -> List[AuthorizedDevice]:
        filters = {"user_id": user_id} if user_id is not None else None
        return self.get_all(AuthorizedDevice, filters=filters,
                            order_by=AuthorizedDevice.authorized_at.desc())

    def revoke_device(self, device_id: int, admin_role: str) -> bool:
        """撤销已授权设备。"""
        require_admin(admin_role, "revoke devices")
        deleted = self.delete_by_id(AuthorizedDevice, device_id)
        if deleted:
            logger.info(f"已撤销授权设备 #{device_id}")
        return deleted


class ReportRepository(BaseCRUD):
    """经营报表 仓库。

    按本地日期范围查询收款、班次、会员、签到与 POS 数据，
    交给 business.reports 中的纯函数汇总。
    """

    def __init__(self, conn: DatabaseConnection,
                 setting_repo: SettingRepository,
                 member_repo: MemberRepository,
                 payment_repo: PaymentRepository) -> None:
        super().__init__(conn)
        self._settings = setting_repo
        self._members = member_repo
        self._payments = payment_repo

    # ========== 查询辅助 ==========

    @staticmethod
    def _shift_to_dict(shift: Shift, user: Optional[User]) -> Dict[str, Any]:
        return {
            "id": shift.id,
            "user_id": shift.user_id,
            "user_name": (user.name or user.email) if user else None,
            "created_at": shift.created_at,
            "ended_at": shift.ended_at,
            "cash_collection": to_decimal(shift.cash_collection),
            "qr_collection": to_decimal(shift.qr_collection),
            "bank_transfer_collection": to_decimal(shift.bank_transfer_collection),
            "system_cash": to_decimal(shift.system_cash),
            "system_qr": to_decimal(shift.system_qr),
            "system_bank_transfer": to_decimal(shift.system_bank_transfer),
            "cash_variance": to_decimal(shift.cash_variance),
            "qr_variance": to_decimal(shift.qr_variance),
            "bank_transfer_variance": to_decimal(shift.bank_transfer_variance),
            "total_sales": to_decimal(shift.total_sales),
        }

    def get_ended_shifts(self, start: datetime, end: datetime,
                         session: Optional[Session] = None
                         ) -> List[Dict[str, Any]]:
        """[start, end) 内结束的班次，按结束时间升序。"""
        def _query(sess):
            rows = sess.query(Shift, User).outerjoin(
                User, User.id == Shift.user_id
            ).filter(
                Shift.ended_at.isnot(None),
                Shift.ended_at >= start,
                Shift.ended_at < end,
            ).order_by(Shift.ended_at).all()
            return [self._shift_to_dict(s, u) for s, u in rows]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def _check_ins_between(self, sess: Session, start: datetime,
                           end: datetime) -> List[Dict[str, Any]]:
        rows = sess.query(CheckIn).filter(
            CheckIn.check_in_time >= start, CheckIn.check_in_time < end
        ).all()
        return [
            {"type": c.type, "check_in_time": c.check_in_time} for c in rows
        ]

    @staticmethod
    def _resolve(range_type: str, base_date: date,
                 start_date: Optional[date], end_date: Optional[date]):
        start, end = resolve_date_range(range_type, base_date,
                                        start_date, end_date)
        start_utc, end_utc = local_range_bounds(start, end)
        return start, end, start_utc, end_utc

    # ========== 报表 ==========

    def financial_report(self, range_type: str, base_date: date,
                         start_date: Optional[date] = None,
                         end_date: Optional[date] = None) -> Dict[str, Any]:
        """财务报表：按日期的分类收入、支付方式合计与当天结束的班次。"""
        start, end, start_utc, end_utc = self._resolve(
            range_type, base_date, start_date, end_date
        )
        with self._get_session() as sess:
            payments = self._payments.get_between(start_utc, end_utc,
                                                  session=sess)
            shifts = self.get_ended_shifts(start_utc, end_utc, session=sess)

        days = aggregate_financial(payments, shifts, start, end)
        return {
            "start_date": start,
            "end_date": end,
            "days": days,
            "totals": financial_totals(days),
            "shift_subtotals": calculate_shift_subtotals(shifts),
        }

    def membership_report(self, range_type: str, base_date: date,
                          start_date: Optional[date] = None,
                          end_date: Optional[date] = None,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
        """会员报表：每日新会员（按类型）、续费次数与当前会员统计。"""
        start, end, start_utc, end_utc = self._resolve(
            range_type, base_date, start_date, end_date
        )
        with self._get_session() as sess:
            members = [
                {"type": m.type, "created_at": m.created_at}
                for m in sess.query(Member).filter(
                    Member.created_at >= start_utc, Member.created_at < end_utc
                ).all()
            ]
            renewals = [
                {"created_at": h.created_at}
                for h in sess.query(MembershipHistory).filter(
                    MembershipHistory.type == "renewal",
                    MembershipHistory.created_at >= start_utc,
                    MembershipHistory.created_at < end_utc,
                ).all()
            ]

        return {
            "start_date": start,
            "end_date": end,
            "days": aggregate_membership(members, renewals, start, end),
            "stats": self._members.get_stats(now),
        }

    def attendance_report(self, range_type: str, base_date: date,
                          start_date: Optional[date] = None,
                          end_date: Optional[date] = None) -> Dict[str, Any]:
        """签到报表：每日会员签到与散客人数。"""
        start, end, start_utc, end_utc = self._resolve(
            range_type, base_date, start_date, end_date
        )
        with self._get_session() as sess:
            check_ins = self._check_ins_between(sess, start_utc, end_utc)

        days = aggregate_attendance(check_ins, start, end)
        return {
            "start_date": start,
            "end_date": end,
            "days": days,
            "totals": {
                "members": sum(d["members"] for d in days),
                "walk_ins": sum(d["walk_ins"] for d in days),
                "total": sum(d["total"] for d in days),
            },
        }

    def sales_report(self, range_type: str, base_date: date,
                     start_date: Optional[date] = None,
                     end_date: Optional[date] = None) -> Dict[str, Any]:
        """POS 销售报表：每日销售额、件数与商品明细。"""
        start, end, start_utc, end_utc = self._resolve(
            range_type, base_date, start_date, end_date
        )
        with self._get_session() as sess:
            sales = self._payments.get_between(
                start_utc, end_utc, payment_type="pos", session=sess
            )
            products = [
                {"id": p.id, "name": p.name, "stock": p.stock}
                for p in sess.query(Product).order_by(Product.name).all()
            ]

        report = aggregate_sales(sales, products, start, end)
        report.update({"start_date": start, "end_date": end})
        return report

    def daily_summary(self, target_date: date,
                      now: Optional[datetime] = None) -> Dict[str, Any]:
        """单日经营汇总。

        包括分类收入与支付方式合计、签到人数、新会员、宽限期入场，
        以及按班次结束时间切分的收款归属和未结束班次的待交班金额。

        Args:
            target_date: 本地日期。
            now: 当前时间（UTC）。
        """
        now = now or utcnow()
        day_start, day_end = local_day_bounds(target_date)

        with self._get_session() as sess:
            payments = self._payments.get_between(day_start, day_end,
                                                  session=sess)
            check_ins = self._check_ins_between(sess, day_start, day_end)
            new_members = sess.query(Member).filter(
                Member.created_at >= day_start, Member.created_at < day_end
            ).count()
            grace_accesses = [
                {
                    "member_id": m.member_id,
                    "member_name": m.name,
                    "check_in_time": g.check_in_time,
                    "walkin_price_at_time_of_access": to_decimal(
                        g.walkin_price_at_time_of_access
                    ),
                    "paid": g.paid_at is not None,
                }
                for g, m in sess.query(GracePeriodAccess, Member).join(
                    Member, Member.id == GracePeriodAccess.member_id
                ).filter(
                    GracePeriodAccess.check_in_time >= day_start,
                    GracePeriodAccess.check_in_time < day_end,
                ).order_by(GracePeriodAccess.check_in_time).all()
            ]

            ended_shifts = self.get_ended_shifts(day_start, day_end,
                                                 session=sess)
            previous = sess.query(Shift.ended_at).filter(
                Shift.ended_at.isnot(None), Shift.ended_at < day_start
            ).order_by(Shift.ended_at.desc()).first()
            previous_end = previous[0] if previous else None

            intervals = build_shift_intervals(
                ended_shifts, day_start, day_end, previous_end, now
            )
            interval_payments = payments
            if previous_end is not None:
                # 归属区间从上一班次结束开始，包含前一天交班后的收款
                interval_payments = self._payments.get_between(
                    previous_end, day_end, session=sess
                )
            attribute_payments(intervals, interval_payments)

            active = sess.query(Shift, User).outerjoin(
                User, User.id == Shift.user_id
            ).filter(Shift.ended_at.is_(None)).all()
            active_shifts = [
                {
                    "id": s.id,
                    "user_id": s.user_id,
                    "created_at": s.created_at,
                    "user_name": (u.name or u.email) if u else None,
                }
                for s, u in active
            ]
            pending = []
            if active_shifts:
                earliest = min(s["created_at"] for s in active_shifts)
                pending = pending_shift_totals(
                    active_shifts,
                    self._payments.get_between(
                        earliest, now + timedelta(microseconds=1), session=sess
                    )
                )

        summary = summarize_day(payments)
        summary.update({
            "date": target_date,
            "total_check_ins": len(check_ins),
            "member_check_ins": sum(
                1 for c in check_ins if c["type"] == "member"
            ),
            "walk_in_check_ins": sum(
                1 for c in check_ins if c["type"] != "member"
            ),
            "new_members": new_members,
            "grace_accesses": grace_accesses,
            "shift_intervals": [i.to_dict() for i in intervals],
            "pending_shifts": pending,
        })
        return summary

    def get_expiring_members(self, days: int = 30,
                             now: Optional[datetime] = None
                             ) -> List[Dict[str, Any]]:
        """即将到期的会员（未暂停），按到期时间升序。"""
        now = now or utcnow()
        grace_days = self._settings.get_grace_period_days()
        with self._get_session() as sess:
            rows = sess.query(Member).filter(
                Member.expiry_date.isnot(None),
                Member.expiry_date > now,
                Member.expiry_date <= now + timedelta(days=days),
                Member.status != "suspended",
            ).order_by(Member.expiry_date).all()
            return [
                {
                    "id": m.id,
                    "member_id": m.member_id,
                    "name": m.name,
                    "phone": m.phone,
                    "expiry_date": m.expiry_date,
                    "status": calculate_member_status(
                        m.expiry_date, m.status, grace_days, now
                    ),
                }
                for m in rows
            ]


class SummaryRepository(BaseCRUD):
    """每日汇总快照 仓库。"""

    SUMMARY_FIELDS = (
        "total_sales", "membership_revenue", "walk_in_revenue", "pos_revenue",
        "coupon_revenue", "grace_period_settlement_fees", "cash_collections",
        "qr_collections", "bank_transfer_collections", "total_check_ins",
        "member_check_ins", "walk_in_check_ins", "new_members", "renewals",
    )

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def save(self, summary_date: date, summary_data: Dict[str, Any]) -> int:
        """保存或更新每日汇总（幂等）。

        Args:
            summary_date: 本地日期。
            summary_data: 汇总字典，SUMMARY_FIELDS 之外的键写入 extra_data。

        Returns:
            汇总记录ID。
        """
        columns = {k: v for k, v in summary_data.items()
                   if k in self.SUMMARY_FIELDS}
        extra = jsonable({k: v for k, v in summary_data.items()
                          if k not in self.SUMMARY_FIELDS and k != "date"})

        with self._get_session() as session:
            existing = session.query(DailySummary).filter(
                DailySummary.summary_date == summary_date
            ).first()

            if existing:
                for key, value in columns.items():
                    setattr(existing, key, value)
                existing.extra_data = extra
                session.commit()
                return existing.id

            summary = DailySummary(summary_date=summary_date,
                                   extra_data=extra, **columns)
            session.add(summary)
            session.commit()
            return summary.id

    def get_by_date(self, summary_date: date,
                    session: Optional[Session] = None
                    ) -> Optional[DailySummary]:
        """获取指定日期的汇总快照。"""
        def _query(sess):
            return sess.query(DailySummary).filter(
                DailySummary.summary_date == summary_date
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)
