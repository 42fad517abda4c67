"""Entity repository tests.

Tests for:
- UserRepository: create_user, authenticate, role rules
- SettingRepository: defaults, update_settings, grace period
- MembershipPlanRepository: create_plan, list_plans, validation
- MemberRepository: search, update, suspend, import, stats
- ProductRepository: create, stock updates, history
"""
from datetime import datetime, timedelta

import pytest

from database.models import Member
from tests.conftest import ROOT_EMAIL, ROOT_PASSWORD, set_expiry


# ============================================================
# UserRepository Tests
# ============================================================
class TestUserRepository:
    """Tests for UserRepository."""

    def test_bootstrap_superadmin(self, temp_db, superadmin):
        assert superadmin is not None
        assert superadmin.role == "superadmin"
        assert superadmin.name == "Administrator"

    def test_authenticate(self, temp_db):
        user = temp_db.users.authenticate(ROOT_EMAIL.upper(), ROOT_PASSWORD)
        assert user is not None
        assert temp_db.users.authenticate(ROOT_EMAIL, "wrong") is None
        assert temp_db.users.authenticate("nobody@gym.test", "x") is None

    def test_password_is_hashed(self, temp_db, cashier):
        assert cashier.password_hash != "cashpass"
        assert temp_db.users.verify_password("cashpass", cashier.password_hash)

    def test_duplicate_email(self, temp_db, cashier):
        with pytest.raises(ValueError, match="already exists"):
            temp_db.users.create_user("CASHIER@gym.test", "another")

    def test_short_password(self, temp_db):
        with pytest.raises(ValueError, match="at least 6"):
            temp_db.users.create_user("x@gym.test", "123")

    def test_admin_cannot_create_superadmin(self, temp_db):
        with pytest.raises(PermissionError):
            temp_db.users.create_user("boss@gym.test", "secret1",
                                      role="superadmin", actor_role="admin")

    def test_cashier_cannot_create_users(self, temp_db):
        with pytest.raises(PermissionError):
            temp_db.users.create_user("x@gym.test", "secret1",
                                      actor_role="cashier")

    def test_deactivated_user_cannot_log_in(self, temp_db, cashier):
        temp_db.users.set_active(cashier.id, False, "admin")
        with pytest.raises(ValueError, match="deactivated"):
            temp_db.users.authenticate("cashier@gym.test", "cashpass")

    def test_admin_cannot_deactivate_self(self, temp_db, admin):
        with pytest.raises(ValueError, match="your own account"):
            temp_db.users.set_active(admin.id, False, "admin", actor_id=admin.id)
        assert temp_db.users.get_by_id(type(admin), admin.id).active is True

        # reactivating yourself is harmless
        temp_db.users.set_active(admin.id, True, "admin", actor_id=admin.id)

    def test_superadmin_may_deactivate_self(self, temp_db, superadmin):
        user = temp_db.users.set_active(superadmin.id, False, "superadmin",
                                        actor_id=superadmin.id)
        assert user.active is False

    def test_accessible_users(self, temp_db, superadmin, admin, cashier):
        admin_view = temp_db.users.get_accessible_users("admin")
        assert {u.role for u in admin_view} == {"admin", "cashier"}
        assert len(temp_db.users.get_accessible_users("superadmin")) == 3

    def test_update_details(self, temp_db, cashier):
        user = temp_db.users.update_details(cashier.id, "admin", name="Benny",
                                            role="admin")
        assert user.name == "Benny"
        assert user.role == "admin"

    def test_active_users_excludes_current(self, temp_db, cashier, cashier2):
        users = temp_db.users.get_active_users(exclude_user_id=cashier.id)
        assert cashier.id not in [u.id for u in users]
        assert cashier2.id in [u.id for u in users]


# ============================================================
# SettingRepository Tests
# ============================================================
class TestSettingRepository:
    """Tests for SettingRepository."""

    def test_defaults_seeded(self, temp_db):
        membership = temp_db.settings.get("membership")
        assert membership["grace_period_days"] == 7
        assert temp_db.settings.get("device_fingerprinting_enabled") is False

    def test_seed_is_idempotent(self, temp_db):
        assert temp_db.settings.seed_defaults() == 0

    def test_update_requires_admin(self, temp_db, cashier):
        with pytest.raises(PermissionError):
            temp_db.settings.update_settings("membership", {}, "cashier")

    def test_partial_dict_merges_with_defaults(self, temp_db, admin):
        temp_db.settings.update_settings(
            "membership", {"grace_period_days": 3}, "admin", admin.id
        )
        membership = temp_db.settings.get("membership")
        assert membership["grace_period_days"] == 3
        assert membership["adult_walkin_price"] == 15
        assert temp_db.settings.get_grace_period_days() == 3

    def test_unknown_key_returns_none(self, temp_db):
        assert temp_db.settings.get("no_such_key") is None

    def test_get_settings(self, temp_db):
        data = temp_db.settings.get_settings(["branding", "coupon_prices"])
        assert set(data) == {"branding", "coupon_prices"}
        assert data["coupon_prices"]["max_uses"] == 1


# ============================================================
# MembershipPlanRepository Tests
# ============================================================
class TestMembershipPlanRepository:

    def test_create_and_list(self, temp_db, adult_plan, youth_plan):
        plans = temp_db.plans.list_plans()
        assert [p.type for p in plans] == ["adult", "youth"]
        youth = temp_db.plans.list_plans(member_type="youth")
        assert len(youth) == 1
        assert youth[0].free_months == 1

    def test_inactive_hidden(self, temp_db, adult_plan):
        temp_db.plans.update_plan(adult_plan.id, active=False)
        assert temp_db.plans.list_plans() == []
        assert len(temp_db.plans.list_plans(active_only=False)) == 1

    @pytest.mark.parametrize("args", [
        ("senior", 1, 100),
        ("adult", 0, 100),
        ("adult", 1, -5),
    ])
    def test_validation(self, temp_db, args):
        with pytest.raises(ValueError):
            temp_db.plans.create_plan(*args)

    def test_update_missing(self, temp_db):
        assert temp_db.plans.update_plan(999, price=10) is None


# ============================================================
# MemberRepository Tests
# ============================================================
class TestMemberRepository:
    """Tests for MemberRepository."""

    def test_search(self, temp_db, member):
        assert [m.id for m in temp_db.members.search("ali")] == [member.id]
        assert temp_db.members.search("0123") != []
        assert temp_db.members.search("000001")[0].id == member.id
        assert temp_db.members.search("") == []

    def test_search_limit(self, temp_db):
        with temp_db.get_session() as sess:
            for i in range(8):
                sess.add(Member(member_id=f"9{i:05d}", name=f"Tan {i}",
                                type="adult", status="active",
                                expiry_date=datetime.utcnow() + timedelta(days=30)))
            sess.commit()
        assert len(temp_db.members.search("Tan")) == 5

    def test_status_refreshed_on_read(self, temp_db, member):
        with temp_db.get_session() as sess:
            m = sess.get(Member, member.id)
            m.expiry_date = datetime.utcnow() - timedelta(days=2)
            sess.commit()
        assert temp_db.members.get_member(member.id).status == "grace"

    def test_update_member_recalculates_status(self, temp_db, member):
        updated = set_expiry(temp_db, member.id, -30)
        assert updated.status == "expired"

    def test_update_rejects_duplicate_member_id(self, temp_db, member):
        with temp_db.get_session() as sess:
            sess.add(Member(member_id="555555", name="Other", type="adult",
                            status="active"))
            sess.commit()
        with pytest.raises(ValueError, match="already in use"):
            temp_db.members.update_member(member.id, member_id="555555")

    def test_update_rejects_bad_nric(self, temp_db, member):
        with pytest.raises(ValueError, match="NRIC"):
            temp_db.members.update_member(member.id, nric="12-34")

    def test_update_rejects_unknown_field(self, temp_db, member):
        with pytest.raises(ValueError, match="Unknown member fields"):
            temp_db.members.update_member(member.id, password="x")

    def test_suspend_and_restore(self, temp_db, member):
        suspended = temp_db.members.set_suspended(member.id, True)
        assert suspended.status == "suspended"
        # suspended members stay suspended on read
        assert temp_db.members.get_member(member.id).status == "suspended"
        restored = temp_db.members.set_suspended(member.id, False)
        assert restored.status == "active"

    def test_next_member_id_ignores_non_numeric(self, temp_db, member):
        with temp_db.get_session() as sess:
            sess.add(Member(member_id="VIP-1", name="Vip", type="adult",
                            status="active"))
            sess.add(Member(member_id="000041", name="Old", type="adult",
                            status="active"))
            sess.commit()
        assert temp_db.members.next_member_id() == "000042"

    def test_import_overwrites_existing(self, temp_db, member):
        result = temp_db.members.import_members([
            {"member_id": member.member_id, "name": "Ali Updated",
             "expiry_date": datetime.utcnow() - timedelta(days=60)},
            {"member_id": "000200", "name": "New Person", "type": "youth",
             "expiry_date": datetime.utcnow() + timedelta(days=60)},
            {"member_id": "000201", "name": "Bad", "type": "senior"},
        ])
        assert result["imported"] == 1
        assert result["updated"] == 1
        assert result["existing_ids"] == [member.member_id]
        assert len(result["errors"]) == 1

        assert temp_db.members.get_member(member.id).name == "Ali Updated"
        assert temp_db.members.get_by_member_id("000200").status == "active"

    def test_stats(self, temp_db, member):
        stats = temp_db.members.get_stats(expiring_days=40)
        assert stats["total"] == 1
        assert stats["active"] == 1
        # one month plan expires within 40 days
        assert stats["expiring_soon"] == 1


# ============================================================
# ProductRepository Tests
# ============================================================
class TestProductRepository:
    """Tests for ProductRepository."""

    def test_create_records_initial_stock(self, temp_db, admin):
        product = temp_db.products.create_product("Water", 2.5, stock=24,
                                                  user_id=admin.id)
        history = temp_db.products.get_stock_history(product.id)
        assert len(history) == 1
        assert history[0]["type"] == "restock"
        assert history[0]["change"] == 24
        assert history[0]["product_name"] == "Water"

    def test_create_without_stock_has_no_history(self, temp_db):
        product = temp_db.products.create_product("Towel", 10)
        assert temp_db.products.get_stock_history(product.id) == []

    def test_validation(self, temp_db):
        with pytest.raises(ValueError):
            temp_db.products.create_product("", 1)
        with pytest.raises(ValueError):
            temp_db.products.create_product("Gloves", -1)

    def test_update_stock_adjustment(self, temp_db, admin):
        product = temp_db.products.create_product("Bar", 8, stock=10)
        updated = temp_db.products.update_stock(product.id, 7, admin.id,
                                                notes="damaged")
        assert updated.stock == 7
        latest = temp_db.products.get_stock_history(product.id)[0]
        assert latest["previous_stock"] == 10
        assert latest["change"] == -3
        assert latest["type"] == "adjustment"
        assert latest["notes"] == "damaged"

    def test_restock(self, temp_db):
        product = temp_db.products.create_product("Shaker", 20, stock=2)
        assert temp_db.products.restock(product.id, 5).stock == 7
        with pytest.raises(ValueError):
            temp_db.products.restock(product.id, 0)

    def test_update_product_ignores_stock(self, temp_db):
        product = temp_db.products.create_product("Cap", 30, stock=4)
        updated = temp_db.products.update_product(product.id, price=35, stock=99)
        assert float(updated.price) == 35.0
        assert updated.stock == 4

    def test_list_active_only(self, temp_db):
        a = temp_db.products.create_product("A", 1)
        temp_db.products.create_product("B", 1)
        temp_db.products.update_product(a.id, active=False)
        assert [p.name for p in temp_db.products.list_products(True)] == ["B"]
