"""Web API tests.

Drive the FastAPI app built by WebServer._create_app() through
fastapi.testclient.TestClient against a temp SQLite database.
"""
import pytest
from fastapi.testclient import TestClient

from interface.web.server import WebServer
from tests.conftest import ROOT_EMAIL, ROOT_PASSWORD, set_expiry


@pytest.fixture
def server(temp_db, tmp_path):
    return WebServer(db_manager=temp_db, media_dir=str(tmp_path / "media"))


@pytest.fixture
def client(server):
    return TestClient(server._create_app())


def _login(client, email, password):
    response = client.post("/api/login",
                           json={"email": email, "password": password})
    assert response.status_code == 200
    token = response.json()["token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    return _login(client, ROOT_EMAIL, ROOT_PASSWORD)


@pytest.fixture
def cashier_headers(client, cashier):
    return _login(client, "cashier@gym.test", "cashpass")


class TestAuth:
    """Tests for login, tokens and role checks."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["db_connected"] is True

    def test_login_and_me(self, client, admin_headers):
        response = client.get("/api/me", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["data"]["email"] == ROOT_EMAIL

    def test_bad_credentials(self, client):
        response = client.post("/api/login",
                               json={"email": ROOT_EMAIL, "password": "bad"})
        assert response.status_code == 401
        assert response.json()["success"] is False

    def test_requires_token(self, client):
        assert client.get("/api/members").status_code == 401
        bad = {"Authorization": "Bearer not-a-token"}
        assert client.get("/api/members", headers=bad).status_code == 401

    def test_logout_revokes_token(self, client, admin_headers):
        assert client.post("/api/logout", headers=admin_headers).status_code == 200
        assert client.get("/api/me", headers=admin_headers).status_code == 401

    def test_cashier_blocked_from_admin_routes(self, client, cashier_headers):
        assert client.get("/api/admin/users",
                          headers=cashier_headers).status_code == 403
        assert client.get("/api/members/export",
                          headers=cashier_headers).status_code == 403

    def test_deactivated_user_token_rejected(self, client, temp_db, cashier,
                                             cashier_headers):
        temp_db.users.set_active(cashier.id, False, "admin")
        assert client.get("/api/me", headers=cashier_headers).status_code == 401

    def test_unapproved_device(self, client, temp_db, superadmin, cashier):
        temp_db.settings.update_settings(
            "device_fingerprinting_enabled", True, "admin", superadmin.id
        )
        response = client.post("/api/login", json={
            "email": "cashier@gym.test", "password": "cashpass",
            "fingerprint": "fp-1",
        })
        body = response.json()
        assert body["success"] is False
        assert body["needs_admin_approval"] is True

        status = client.get(f"/api/device-requests/{body['request_id']}/status")
        assert status.json() == {"status": "pending"}
        assert client.get("/api/device-requests/999/status").status_code == 404


class TestCashierFlow:
    """Start a shift, take payments, then hand over."""

    def test_shift_walk_in_and_handover(self, client, cashier_headers,
                                        cashier2):
        started = client.post("/api/shifts/start", headers=cashier_headers)
        assert started.json()["status"] == "new_shift_started"

        walk_in = client.post("/api/walk-ins", headers=cashier_headers, json={
            "name": "Visitor", "type": "adult", "payment_method": "cash",
        })
        assert walk_in.status_code == 200
        assert walk_in.json()["data"]["payment"]["amount"] == 15.0

        current = client.get("/api/shifts/current", headers=cashier_headers)
        assert current.json()["data"]["summary"]["total_cash"] == 15.0

        users = client.get("/api/shifts/handover-users",
                           headers=cashier_headers).json()["data"]
        assert cashier2.id in [u["id"] for u in users]

        ended = client.post("/api/shifts/end", headers=cashier_headers, json={
            "manual_counts": {"cash": 10}, "next_user_id": cashier2.id,
        })
        assert ended.status_code == 200
        assert ended.json()["data"]["variances"]["cash_variance"] == 5.0

    def test_second_cashier_conflict(self, client, cashier_headers, cashier2):
        client.post("/api/shifts/start", headers=cashier_headers)
        other = _login(client, "cashier2@gym.test", "cashpass")
        response = client.post("/api/shifts/start", headers=other)
        assert response.status_code == 409
        assert response.json()["active_cashier_name"] == "Ben"

    def test_walk_in_without_shift(self, client, cashier_headers):
        response = client.post("/api/walk-ins", headers=cashier_headers, json={
            "name": "Visitor", "type": "adult", "payment_method": "cash",
        })
        assert response.status_code == 400
        assert "No active shift" in response.json()["error"]

    def test_register_and_check_in(self, client, cashier_headers, adult_plan):
        client.post("/api/shifts/start", headers=cashier_headers)
        registered = client.post("/api/members", headers=cashier_headers, json={
            "member": {"name": "Siti"}, "plan_id": adult_plan.id,
            "payment_method": "qr",
        })
        assert registered.status_code == 200
        member = registered.json()["data"]["member"]
        assert member["member_id"] == "000001"

        check_in = client.post(f"/api/members/{member['id']}/check-in",
                               headers=cashier_headers)
        assert check_in.json()["data"]["status"] == "active"

        listing = client.get("/api/members", headers=cashier_headers,
                             params={"q": "siti"})
        assert listing.json()["total"] == 1

    def test_expired_member_check_in_refused(self, client, temp_db, member,
                                             cashier_headers):
        set_expiry(temp_db, member.id, -30)
        response = client.post(f"/api/members/{member.id}/check-in",
                               headers=cashier_headers)
        assert response.status_code == 400
        assert response.json()["reason"] == "expired"

    def test_unknown_member(self, client, cashier_headers):
        assert client.get("/api/members/999",
                          headers=cashier_headers).status_code == 404

    def test_checkout(self, client, temp_db, cashier_headers):
        water = temp_db.products.create_product("Water", 2.5, stock=5)
        client.post("/api/shifts/start", headers=cashier_headers)
        response = client.post("/api/pos/checkout", headers=cashier_headers,
                               json={"items": [{"product_id": water.id,
                                                "quantity": 2}],
                                     "payment_method": "cash"})
        assert response.status_code == 200
        assert response.json()["data"]["total"] == 5.0
        products = client.get("/api/products", headers=cashier_headers)
        assert products.json()["data"][0]["stock"] == 3


class TestAdmin:
    """Admin-only routes."""

    def test_admin_cannot_deactivate_self(self, client, superadmin, admin):
        headers = _login(client, "admin@gym.test", "adminpass")
        response = client.put(f"/api/admin/users/{admin.id}", headers=headers,
                              json={"active": False})
        assert response.status_code == 400
        assert "own account" in response.json()["error"]

    def test_report_paging(self, client, admin_headers):
        response = client.get("/api/reports/attendance", headers=admin_headers,
                              params={"range": "monthly", "date": "2025-03-10",
                                      "offset": -1})
        assert response.json()["data"]["start_date"] == "2025-02-01"

    def test_settings_update(self, client, admin_headers):
        response = client.put("/api/admin/settings/membership",
                              headers=admin_headers,
                              json={"value": {"grace_period_days": 3}})
        assert response.status_code == 200
        settings = client.get("/api/settings", headers=admin_headers).json()
        assert settings["data"]["membership"]["grace_period_days"] == 3

    def test_create_user_permission(self, client, admin_headers):
        response = client.post("/api/admin/users", headers=admin_headers, json={
            "email": "new@gym.test", "password": "newpass", "role": "cashier",
        })
        assert response.status_code == 200
        duplicate = client.post("/api/admin/users", headers=admin_headers, json={
            "email": "new@gym.test", "password": "newpass",
        })
        assert duplicate.status_code == 400

    def test_report_and_export(self, client, admin_headers, member):
        report = client.get("/api/reports/financial", headers=admin_headers)
        assert report.json()["data"]["totals"]["total"] == 200.0

        unknown = client.get("/api/reports/nothing", headers=admin_headers)
        assert unknown.status_code == 400

        export = client.get("/api/reports/attendance/export",
                            headers=admin_headers)
        assert export.status_code == 200
        assert export.text.startswith("date,members,walk_ins,total")

    def test_members_csv_import(self, client, admin_headers):
        response = client.post(
            "/api/admin/members/import", headers=admin_headers,
            files={"file": ("members.csv",
                            b"member_id,name\n000077,From File\n",
                            "text/csv")}
        )
        assert response.status_code == 200
        assert response.json()["data"]["imported"] == 1

    def test_media_upload(self, client, server, admin_headers):
        response = client.post(
            "/api/media/products", headers=admin_headers,
            files={"file": ("bar.png", b"\x89PNG fake", "image/png")}
        )
        assert response.status_code == 200
        url = response.json()["url"]
        assert url.startswith("/media/products/") and url.endswith(".png")
        assert client.get(url).content == b"\x89PNG fake"

    def test_media_upload_rejects_bad_type(self, client, admin_headers):
        response = client.post(
            "/api/media/products", headers=admin_headers,
            files={"file": ("notes.txt", b"hello", "text/plain")}
        )
        assert response.status_code == 400
        response = client.post(
            "/api/media/secrets", headers=admin_headers,
            files={"file": ("a.png", b"x", "image/png")}
        )
        assert response.status_code == 400
