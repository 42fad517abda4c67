"""实体仓库：基础实体的数据访问层。

管理系统中的基础实体（员工账号、业务设置、会员方案、会员、商品）。
每个仓库继承 BaseCRUD 获得通用能力，并添加领域特定的查询方法。
"""
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any, Tuple
from sqlalchemy import or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from loguru import logger

from business.membership import (
    MEMBER_STATUSES, MEMBER_TYPES, STATUS_ACTIVE, STATUS_SUSPENDED,
    calculate_member_status, format_member_id, validate_nric,
)
from business.money import to_decimal
from business.permissions import (
    ROLE_CASHIER, ROLE_SUPERADMIN, can_manage_user, require_admin,
    validate_role,
)
from business.timeutils import utcnow
from config.defaults import DEFAULT_SETTINGS, get_default
from config.settings import settings as app_settings

from .base_crud import BaseCRUD
from .connection import DatabaseConnection
from .models import (
    User, Setting, MembershipPlan, Member, Product, StockHistory
)

_PBKDF2_ITERATIONS = 120_000
_REQUIRED_MEMBER_COLUMNS = ("member_id", "name", "type", "status", "created_at")


class UserRepository(BaseCRUD):
    """员工账号 仓库。

    管理登录账号、角色与密码。角色分为 cashier / admin / superadmin，
    管理员只能管理非超级管理员账号。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    # ========== 密码 ==========

    @staticmethod
    def hash_password(password: str) -> str:
        """生成 PBKDF2-SHA256 密码哈希，格式 salt$hash。"""
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt.encode("utf-8"),
            _PBKDF2_ITERATIONS
        )
        return f"{salt}${digest.hex()}"

    @staticmethod
    def verify_password(password: str, password_hash: Optional[str]) -> bool:
        """校验密码。"""
        if not password_hash or "$" not in password_hash:
            return False
        salt, expected = password_hash.split("$", 1)
        digest = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), salt.encode("utf-8"),
            _PBKDF2_ITERATIONS
        )
        return hmac.compare_digest(digest.hex(), expected)

    # ========== 查询 ==========

    def get_by_email(self, email: str,
                     session: Optional[Session] = None) -> Optional[User]:
        """按邮箱获取账号（不区分大小写）。"""
        def _query(sess):
            return sess.query(User).filter(
                func.lower(User.email) == (email or "").strip().lower()
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_active_users(self, exclude_user_id: Optional[int] = None,
                         session: Optional[Session] = None) -> List[User]:
        """获取所有启用的账号（交班时选择交接人）。

        Args:
            exclude_user_id: 需要排除的账号（通常是当前用户）。
        """
        def _query(sess):
            query = sess.query(User).filter(User.active.is_(True))
            if exclude_user_id is not None:
                query = query.filter(User.id != exclude_user_id)
            return query.order_by(User.email).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def get_accessible_users(self, actor_role: str,
                             session: Optional[Session] = None) -> List[User]:
        """获取当前角色可管理的账号列表。

        超级管理员可见全部账号；管理员可见非超级管理员账号；收银员无权查看。
        """
        require_admin(actor_role, "view users")

        def _query(sess):
            users = sess.query(User).order_by(User.created_at).all()
            return [u for u in users if can_manage_user(actor_role, u.role)]

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    # ========== 写入 ==========

    def create_user(self, email: str, password: str,
                    role: str = ROLE_CASHIER, name: Optional[str] = None,
                    actor_role: Optional[str] = None,
                    session: Optional[Session] = None) -> User:
        """创建账号。

        Args:
            email: 登录邮箱。
            password: 明文密码（至少 6 位）。
            role: 角色。
            name: 显示名称。
            actor_role: 操作人角色；为 None 时视为系统初始化，不做权限校验。

        Raises:
            ValueError: 邮箱为空、密码过短、角色无效或邮箱已存在。
            PermissionError: 操作人无权创建该角色。
        """
        validate_role(role)
        email = (email or "").strip().lower()
        if not email:
            raise ValueError("Email is required")
        if not password or len(password) < 6:
            raise ValueError("Password must be at least 6 characters")
        if actor_role is not None:
            require_admin(actor_role, "create users")
            if not can_manage_user(actor_role, role):
                raise PermissionError(f"You cannot create a {role} account")

        def _do(sess):
            if self.get_by_email(email, session=sess):
                raise ValueError("A user with this email already exists")
            user = User(
                email=email, name=name, role=role, active=True,
                password_hash=self.hash_password(password)
            )
            sess.add(user)
            sess.flush()
            return user

        if session:
            return _do(session)

        with self._get_session() as sess:
            user = _do(sess)
            sess.commit()
            logger.info(f"创建账号: {email} ({role})")
            return user

    def update_details(self, user_id: int, actor_role: str,
                       name: Optional[str] = None,
                       role: Optional[str] = None,
                       password: Optional[str] = None,
                       session: Optional[Session] = None) -> Optional[User]:
        """更新账号信息（名称、角色、密码）。

        Raises:
            PermissionError: 操作人无权管理该账号或授予该角色。
        """
        require_admin(actor_role, "update users")

        def _do(sess):
            user = sess.get(User, user_id)
            if user is None:
                return None
            if not can_manage_user(actor_role, user.role):
                raise PermissionError("You cannot modify this user")
            if role is not None:
                validate_role(role)
                if not can_manage_user(actor_role, role):
                    raise PermissionError(f"You cannot assign the {role} role")
                user.role = role
            if name is not None:
                user.name = name
            if password:
                if len(password) < 6:
                    raise ValueError("Password must be at least 6 characters")
                user.password_hash = self.hash_password(password)
            sess.flush()
            return user

        if session:
            return _do(session)

        with self._get_session() as sess:
            user = _do(sess)
            sess.commit()
            return user

    def set_active(self, user_id: int, active: bool, actor_role: str,
                   actor_id: Optional[int] = None,
                   session: Optional[Session] = None) -> Optional[User]:
        """启用/停用账号。

        除超级管理员外，不能停用自己的账号。

        Raises:
            PermissionError: 非管理员，或无权管理目标账号。
            ValueError: 管理员停用自己的账号。
        """
        require_admin(actor_role, "change user status")
        if (not active and actor_id == user_id
                and actor_role != ROLE_SUPERADMIN):
            raise ValueError("You cannot deactivate your own account")
        target = self.get_by_id(User, user_id, session=session)
        if target is None:
            return None
        if not can_manage_user(actor_role, target.role):
            raise PermissionError("You cannot modify this user")
        return self.update_by_id(User, user_id, session=session, active=active)

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """校验登录凭证。

        Returns:
            验证通过的账号；邮箱或密码错误返回 None。

        Raises:
            ValueError: 账号已停用。
        """
        user = self.get_by_email(email)
        if user is None or not self.verify_password(password, user.password_hash):
            return None
        if not user.active:
            raise ValueError("This account has been deactivated")
        return user


class SettingRepository(BaseCRUD):
    """业务设置 仓库。

    键值对存储，值为 JSON。读取时若键不存在则返回 config.defaults 中的默认值。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def get(self, key: str, session: Optional[Session] = None) -> Any:
        """获取设置值（字典类设置会与默认值合并，补齐缺失字段）。"""
        row = self.get_by_id(Setting, key, session=session)
        default = get_default(key)
        if row is None or row.value is None:
            return default
        if isinstance(default, dict) and isinstance(row.value, dict):
            merged = dict(default)
            merged.update(row.value)
            return merged
        return row.value

    def get_settings(self, keys: Optional[List[str]] = None,
                     session: Optional[Session] = None) -> Dict[str, Any]:
        """批量获取设置。

        Args:
            keys: 设置键列表，None 表示全部已知键。
        """
        keys = keys or list(DEFAULT_SETTINGS.keys())
        return {key: self.get(key, session=session) for key in keys}

    def update_settings(self, key: str, value: Any, user_role: str,
                        user_id: Optional[int] = None,
                        session: Optional[Session] = None) -> Any:
        """更新设置（不存在则插入），仅管理员可操作。

        Raises:
            PermissionError: 非管理员。
        """
        require_admin(user_role, "update settings")

        def _do(sess):
            row = sess.get(Setting, key)
            if row is None:
                row = Setting(key=key)
                sess.add(row)
            row.value = value
            row.updated_at = utcnow()
            row.updated_by = user_id
            sess.flush()
            return row.value

        if session:
            return _do(session)

        with self._get_session() as sess:
            result = _do(sess)
            sess.commit()
            logger.info(f"设置已更新: {key}")
            return result

    def seed_defaults(self) -> int:
        """写入缺失的默认设置（幂等）。

        Returns:
            新写入的键数量。
        """
        created = 0
        with self._get_session() as sess:
            for key in DEFAULT_SETTINGS:
                if sess.get(Setting, key) is None:
                    sess.add(Setting(key=key, value=get_default(key)))
                    created += 1
            sess.commit()
        return created

    def get_membership_settings(self, session: Optional[Session] = None
                                ) -> Dict[str, Any]:
        return self.get("membership", session=session)

    def get_grace_period_days(self, session: Optional[Session] = None) -> int:
        """宽限期天数，未配置时使用默认值。"""
        value = self.get_membership_settings(session=session).get(
            "grace_period_days"
        )
        if value is None or value == "":
            return app_settings.default_grace_period_days
        return int(value)


class MembershipPlanRepository(BaseCRUD):
    """会员方案 仓库。"""

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def list_plans(self, active_only: bool = True,
                   member_type: Optional[str] = None,
                   session: Optional[Session] = None) -> List[MembershipPlan]:
        """获取会员方案，按类型与月数排序。"""
        def _query(sess):
            query = sess.query(MembershipPlan)
            if active_only:
                query = query.filter(MembershipPlan.active.is_(True))
            if member_type:
                query = query.filter(MembershipPlan.type == member_type)
            return query.order_by(
                MembershipPlan.type, MembershipPlan.months
            ).all()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def create_plan(self, member_type: str, months: int, price: Any,
                    registration_fee: Any = 0, free_months: int = 0,
                    session: Optional[Session] = None) -> MembershipPlan:
        """创建会员方案。

        Raises:
            ValueError: 类型无效、月数不为正或金额为负。
        """
        self._validate(member_type, months, price, registration_fee, free_months)
        return self.create(
            MembershipPlan, session=session,
            type=member_type, months=int(months), price=to_decimal(price),
            registration_fee=to_decimal(registration_fee),
            free_months=int(free_months or 0), active=True
        )

    def update_plan(self, plan_id: int, session: Optional[Session] = None,
                    **fields: Any) -> Optional[MembershipPlan]:
        """更新会员方案字段。"""
        plan = self.get_by_id(MembershipPlan, plan_id, session=session)
        if plan is None:
            return None
        self._validate(
            fields.get("type", plan.type),
            fields.get("months", plan.months),
            fields.get("price", plan.price),
            fields.get("registration_fee", plan.registration_fee),
            fields.get("free_months", plan.free_months),
        )
        return self.update_by_id(MembershipPlan, plan_id, session=session,
                                 **fields)

    @staticmethod
    def _validate(member_type, months, price, registration_fee,
                  free_months) -> None:
        if member_type not in MEMBER_TYPES:
            raise ValueError(f"Invalid member type: {member_type}")
        if int(months) <= 0:
            raise ValueError("Plan duration must be at least one month")
        if int(free_months or 0) < 0:
            raise ValueError("Free months cannot be negative")
        if to_decimal(price) < 0 or to_decimal(registration_fee) < 0:
            raise ValueError("Prices cannot be negative")


class MemberRepository(BaseCRUD):
    """会员 仓库。

    会员状态在读取时按到期时间重新推导，仅在变化时写回数据库。
    """

    SEARCH_LIMIT = 5

    def __init__(self, conn: DatabaseConnection,
                 setting_repo: SettingRepository) -> None:
        super().__init__(conn)
        self._settings = setting_repo

    # ========== 状态 ==========

    def refresh_status(self, member: Member, grace_period_days: int,
                       session: Session,
                       now: Optional[datetime] = None) -> str:
        """重新计算会员状态，变化时写回。

        Args:
            member: 会员对象（需属于 session）。
            grace_period_days: 宽限期天数。
            session: 数据库会话，由调用方提交。

        Returns:
            最新状态。
        """
        status = calculate_member_status(
            member.expiry_date, member.status, grace_period_days, now
        )
        if status != member.status:
            logger.debug(
                f"会员状态变更: {member.member_id} {member.status} -> {status}"
            )
            member.status = status
            session.flush()
        return status

    def get_member(self, member_pk: int, refresh: bool = True
                   ) -> Optional[Member]:
        """获取会员（默认重新计算状态）。"""
        with self._get_session() as sess:
            member = sess.get(Member, member_pk)
            if member is not None and refresh:
                self.refresh_status(
                    member, self._settings.get_grace_period_days(session=sess),
                    sess
                )
                sess.commit()
            return member

    def get_by_member_id(self, member_id: str,
                         session: Optional[Session] = None) -> Optional[Member]:
        """按会员编号获取会员。"""
        def _query(sess):
            return sess.query(Member).filter(
                Member.member_id == member_id
            ).first()

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def search(self, keyword: str, limit: Optional[int] = None,
               now: Optional[datetime] = None) -> List[Member]:
        """按会员编号、姓名、身份证号或电话模糊搜索（不区分大小写）。

        返回前重新计算每个会员的状态。
        """
        keyword = (keyword or "").strip()
        if not keyword:
            return []
        pattern = f"%{keyword}%"
        with self._get_session() as sess:
            members = sess.query(Member).filter(
                or_(
                    Member.member_id.ilike(pattern),
                    Member.name.ilike(pattern),
                    Member.nric.ilike(pattern),
                    Member.phone.ilike(pattern),
                )
            ).order_by(Member.name).limit(limit or self.SEARCH_LIMIT).all()

            grace_days = self._settings.get_grace_period_days(session=sess)
            for member in members:
                self.refresh_status(member, grace_days, sess, now)
            sess.commit()
            return members

    def list_members(self, offset: int = 0, limit: int = 15,
                     status: Optional[str] = None,
                     member_type: Optional[str] = None,
                     keyword: Optional[str] = None
                     ) -> Tuple[List[Member], int]:
        """分页获取会员列表（按注册时间倒序）。

        Returns:
            (当前页会员列表, 总数)
        """
        with self._get_session() as sess:
            grace_days = self._settings.get_grace_period_days(session=sess)
            # 先刷新所有非暂停会员的状态，保证按状态过滤的结果准确
            for member in sess.query(Member).filter(
                Member.status != STATUS_SUSPENDED
            ).all():
                self.refresh_status(member, grace_days, sess)
            sess.commit()

            query = sess.query(Member)
            if status:
                query = query.filter(Member.status == status)
            if member_type:
                query = query.filter(Member.type == member_type)
            if keyword:
                pattern = f"%{keyword.strip()}%"
                query = query.filter(or_(
                    Member.member_id.ilike(pattern),
                    Member.name.ilike(pattern),
                    Member.nric.ilike(pattern),
                    Member.phone.ilike(pattern),
                ))
            total = query.count()
            members = query.order_by(
                Member.created_at.desc(), Member.id.desc()
            ).offset(offset).limit(limit).all()
            return members, total

    # ========== 会员编号 ==========

    def next_member_id(self, session: Optional[Session] = None) -> str:
        """生成下一个会员编号：现有纯数字编号最大值 + 1，补零到 6 位。"""
        def _query(sess):
            codes = [row[0] for row in sess.query(Member.member_id).all()]
            numbers = [int(code) for code in codes if code and code.isdigit()]
            return format_member_id(max(numbers, default=0) + 1)

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    def member_id_exists(self, member_id: str,
                         exclude_pk: Optional[int] = None,
                         session: Optional[Session] = None) -> bool:
        def _query(sess):
            query = sess.query(Member.id).filter(Member.member_id == member_id)
            if exclude_pk is not None:
                query = query.filter(Member.id != exclude_pk)
            return query.first() is not None

        if session:
            return _query(session)

        with self._get_session() as sess:
            return _query(sess)

    # ========== 写入 ==========

    @staticmethod
    def validate_fields(fields: Dict[str, Any]) -> None:
        """校验会员字段。

        Raises:
            ValueError: 姓名为空、身份证号格式错误、类型或状态无效。
        """
        if "name" in fields and not (fields["name"] or "").strip():
            raise ValueError("Name is required")
        if fields.get("nric") and not validate_nric(fields["nric"]):
            raise ValueError("Invalid NRIC format")
        if "type" in fields and fields["type"] not in MEMBER_TYPES:
            raise ValueError(f"Invalid member type: {fields['type']}")
        if "status" in fields and fields["status"] not in MEMBER_STATUSES:
            raise ValueError(f"Invalid member status: {fields['status']}")

    def update_member(self, member_pk: int,
                      **fields: Any) -> Optional[Member]:
        """更新会员资料。

        Raises:
            ValueError: 字段无效或会员编号重复。
        """
        allowed = {"member_id", "name", "email", "phone", "nric", "type",
                   "photo_url", "expiry_date", "status"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown member fields: {', '.join(sorted(unknown))}")
        self.validate_fields(fields)

        with self._get_session() as sess:
            member = sess.get(Member, member_pk)
            if member is None:
                return None
            new_code = fields.get("member_id")
            if new_code and new_code != member.member_id and \
                    self.member_id_exists(new_code, member_pk, session=sess):
                raise ValueError("This member ID is already in use")
            for key, value in fields.items():
                setattr(member, key, value)
            if "expiry_date" in fields and "status" not in fields:
                self.refresh_status(
                    member, self._settings.get_grace_period_days(session=sess),
                    sess
                )
            sess.commit()
            return member

    def set_suspended(self, member_pk: int,
                      suspended: bool) -> Optional[Member]:
        """暂停/恢复会员。恢复时按到期时间重新推导状态。"""
        with self._get_session() as sess:
            member = sess.get(Member, member_pk)
            if member is None:
                return None
            if suspended:
                member.status = STATUS_SUSPENDED
            else:
                member.status = STATUS_ACTIVE
                self.refresh_status(
                    member, self._settings.get_grace_period_days(session=sess),
                    sess
                )
            sess.commit()
            logger.info(
                f"会员 {member.member_id} 已{'暂停' if suspended else '恢复'}"
            )
            return member

    def import_members(self, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        """批量导入会员（按会员编号覆盖已有记录）。

        记录中出现的字段全部写入，值为 None 时清空已有会员的该字段；
        type / status / created_at 不可为空，None 时保留原值（新会员用默认值）。

        Args:
            records: 已解析的会员记录（见 business.csv_io.parse_member_csv）。

        Returns:
            {"imported": 新增数量, "updated": 覆盖数量,
             "existing_ids": 被覆盖的会员编号, "errors": 错误信息}
        """
        imported, existing_ids, errors = 0, [], []
        with self._get_session() as sess:
            grace_days = self._settings.get_grace_period_days(session=sess)
            for record in records:
                fields = {k: v for k, v in record.items()
                          if v is not None or k not in _REQUIRED_MEMBER_COLUMNS}
                try:
                    self.validate_fields(fields)
                except ValueError as e:
                    errors.append(f"{record.get('member_id')}: {e}")
                    continue

                member = self.get_by_member_id(fields["member_id"], session=sess)
                if member is None:
                    fields.setdefault("type", "adult")
                    member = Member(**fields)
                    sess.add(member)
                    imported += 1
                else:
                    existing_ids.append(member.member_id)
                    for key, value in fields.items():
                        setattr(member, key, value)
                if "status" not in fields:
                    member.status = calculate_member_status(
                        member.expiry_date, None, grace_days
                    )
                sess.flush()
            try:
                sess.commit()
            except IntegrityError as e:
                sess.rollback()
                raise ValueError(f"Import failed: {e.orig}")

        logger.info(
            f"会员导入完成: 新增 {imported} 条, 覆盖 {len(existing_ids)} 条"
        )
        return {
            "imported": imported,
            "updated": len(existing_ids),
            "existing_ids": existing_ids,
            "errors": errors,
        }

    # ========== 统计 ==========

    def get_stats(self, now: Optional[datetime] = None,
                  expiring_days: int = 30) -> Dict[str, int]:
        """会员总数、各状态人数与即将到期人数。"""
        now = now or utcnow()
        with self._get_session() as sess:
            grace_days = self._settings.get_grace_period_days(session=sess)
            members = sess.query(Member).all()
            stats = {status: 0 for status in MEMBER_STATUSES}
            expiring = 0
            for member in members:
                status = self.refresh_status(member, grace_days, sess, now)
                stats[status] += 1
                if status == STATUS_ACTIVE and member.expiry_date and \
                        member.expiry_date <= now + timedelta(days=expiring_days):
                    expiring += 1
            sess.commit()
        stats["total"] = len(members)
        stats["expiring_soon"] = expiring
        return stats


class ProductRepository(BaseCRUD):
    """POS 商品 仓库。

    库存的每次变化都追加一条库存流水。
    """

    def __init__(self, conn: DatabaseConnection) -> None:
        super().__init__(conn)

    def list_products(self, active_only: bool = False,
                      session: Optional[Session] = None) -> List[Product]:
        return self.get_all(
            Product, filters={"active": True} if active_only else None,
            order_by=Product.name, session=session
        )

    def create_product(self, name: str, price: Any,
                       description: Optional[str] = None, stock: int = 0,
                       photo_url: Optional[str] = None,
                       user_id: Optional[int] = None) -> Product:
        """创建商品，初始库存记为一条 restock 流水。

        Raises:
            ValueError: 名称为空或价格为负。
        """
        if not (name or "").strip():
            raise ValueError("Product name is required")
        if to_decimal(price) < 0:
            raise ValueError("Price cannot be negative")

        with self._get_session() as sess:
            product = Product(
                name=name.strip(), description=description,
                price=to_decimal(price), stock=int(stock or 0),
                photo_url=photo_url, active=True
            )
            sess.add(product)
            sess.flush()
            if product.stock:
                sess.add(StockHistory(
                    product_id=product.id, previous_stock=0,
                    new_stock=product.stock, change=product.stock,
                    type="restock", user_id=user_id
                ))
            sess.commit()
            return product

    def update_product(self, product_id: int,
                       **fields: Any) -> Optional[Product]:
        """更新商品资料（库存请使用 update_stock）。"""
        fields.pop("stock", None)
        if "price" in fields:
            if to_decimal(fields["price"]) < 0:
                raise ValueError("Price cannot be negative")
            fields["price"] = to_decimal(fields["price"])
        if "name" in fields and not (fields["name"] or "").strip():
            raise ValueError("Product name is required")
        return self.update_by_id(Product, product_id, **fields)

    def update_stock(self, product_id: int, new_stock: int,
                     user_id: Optional[int] = None,
                     change_type: str = "adjustment",
                     notes: Optional[str] = None) -> Optional[Product]:
        """设置库存并记录流水。

        Args:
            new_stock: 新库存数量。
            change_type: adjustment（盘点调整）/ restock（入库）。
        """
        with self._get_session() as sess:
            product = sess.get(Product, product_id)
            if product is None:
                return None
            previous = product.stock
            product.stock = int(new_stock)
            sess.add(StockHistory(
                product_id=product.id, previous_stock=previous,
                new_stock=product.stock, change=product.stock - previous,
                type=change_type, user_id=user_id, notes=notes
            ))
            sess.commit()
            logger.info(
                f"库存更新: {product.name} {previous} -> {product.stock}"
            )
            return product

    def restock(self, product_id: int, quantity: int,
                user_id: Optional[int] = None) -> Optional[Product]:
        """入库：库存增加指定数量。"""
        if int(quantity) <= 0:
            raise ValueError("Restock quantity must be positive")
        product = self.get_by_id(Product, product_id)
        if product is None:
            return None
        return self.update_stock(
            product_id, product.stock + int(quantity), user_id, "restock"
        )

    def get_stock_history(self, product_id: Optional[int] = None,
                          limit: int = 100) -> List[Dict[str, Any]]:
        """库存流水（最新在前），附带商品名称。"""
        with self._get_session() as sess:
            query = sess.query(StockHistory, Product.name).join(
                Product, Product.id == StockHistory.product_id
            )
            if product_id is not None:
                query = query.filter(StockHistory.product_id == product_id)
            rows = query.order_by(
                StockHistory.created_at.desc(), StockHistory.id.desc()
            ).limit(limit).all()
            return [
                {
                    "id": h.id,
                    "product_id": h.product_id,
                    "product_name": name,
                    "previous_stock": h.previous_stock,
                    "new_stock": h.new_stock,
                    "change": h.change,
                    "type": h.type,
                    "user_id": h.user_id,
                    "notes": h.notes,
                    "created_at": h.created_at,
                }
                for h, name in rows
            ]
