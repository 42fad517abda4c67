"""Web 接口 - 健身房前台与管理后台的 JSON API

基于 FastAPI 提供：
1. 登录认证（Bearer token，含设备授权校验）
2. 收银班次：开班、交班对账、管理员查看/强制结束班次
3. 会员：注册、续费、签到、编辑、暂停、导入导出
4. 散客、优惠券、POS 收银与商品库存
5. 报表、每日汇总、业务设置、账号与设备授权管理
6. 媒体文件上传（会员照片、商品图片、品牌 Logo）

使用方式：
    ```python
    server = WebServer(db_manager=db, port=8080)
    await server.startup()
    # 访问 http://localhost:8080/docs 查看接口文档
    ```
"""
import asyncio
import os
import secrets
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from loguru import logger

from config.settings import settings

MEDIA_CATEGORIES = ("members", "products", "branding")
ALLOWED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")


def _error_response(e: Exception, action: str):
    """把异常转换为 JSON 错误响应。

    PermissionError → 403，ValueError → 400，其他 → 500。
    """
    from fastapi.responses import JSONResponse

    logger.error(f"{action}出错: {e}")
    if isinstance(e, PermissionError):
        status = 403
    elif isinstance(e, ValueError):
        status = 400
    else:
        status = 500
    content: Dict[str, Any] = {"error": str(e)}
    reason = getattr(e, "reason", None)
    if reason:
        content["reason"] = reason
    return JSONResponse(status_code=status, content=content)


def _not_found(what: str):
    from fastapi.responses import JSONResponse
    return JSONResponse(status_code=404, content={"error": f"{what} not found"})


class WebServer:
    """Web 接口服务

    路由前缀：
    - /api/login, /api/logout, /api/me        → 认证
    - /api/shifts/...                          → 收银班次
    - /api/members/..., /api/plans             → 会员与方案
    - /api/walk-ins, /api/check-ins            → 散客与签到记录
    - /api/coupons/..., /api/coupon-uses/...   → 优惠券
    - /api/products/..., /api/pos/...          → 商品与 POS
    - /api/reports/...                         → 报表
    - /api/admin/...                           → 管理员功能
    - /api/media/{category}                    → 媒体上传
    - /health                                  → 健康检查
    """

    def __init__(
        self,
        db_manager=None,
        host: str = "0.0.0.0",
        port: int = 8080,
        token_ttl_hours: Optional[int] = None,
        media_dir: Optional[str] = None,
    ):
        self.db_manager = db_manager
        self.host = host
        self.port = port
        self.token_ttl = timedelta(hours=token_ttl_hours or settings.token_ttl_hours)
        self.media_dir = media_dir or settings.media_dir
        self.running = False
        self.app = None
        self._server_thread: Optional[threading.Thread] = None
        self._server = None  # uvicorn.Server 实例
        self._server_loop = None
        # token -> (用户ID, 过期时间)
        self._tokens: Dict[str, Tuple[int, datetime]] = {}
        self._tokens_lock = threading.Lock()

    # ==================== Token ====================

    def _generate_token(self, user_id: int) -> str:
        token = secrets.token_hex(32)
        with self._tokens_lock:
            self._tokens[token] = (user_id, datetime.utcnow() + self.token_ttl)
        return token

    def _resolve_token(self, token: str) -> Optional[int]:
        """返回 token 对应的用户ID，无效或过期返回 None。"""
        with self._tokens_lock:
            entry = self._tokens.get(token)
            if entry is None:
                return None
            user_id, expires_at = entry
            if datetime.utcnow() > expires_at:
                del self._tokens[token]
                return None
            return user_id

    def _revoke_token(self, token: str) -> None:
        with self._tokens_lock:
            self._tokens.pop(token, None)

    # ==================== 应用 ====================

    def _create_app(self):
        """创建 FastAPI 应用"""
        from fastapi import FastAPI, Request, Depends, HTTPException, UploadFile, File
        from fastapi.responses import JSONResponse, PlainTextResponse
        from fastapi.staticfiles import StaticFiles

        app = FastAPI(
            title="Gym Desk",
            description="健身房会员、收银与对账接口",
            version="1.0.0",
        )

        os.makedirs(self.media_dir, exist_ok=True)
        app.mount(settings.media_url_prefix,
                  StaticFiles(directory=self.media_dir), name="media")

        db = self.db_manager

        def get_current_user(request: Request) -> Dict[str, Any]:
            """从请求头中验证 token，返回当前用户"""
            auth = request.headers.get("Authorization", "")
            if auth.startswith("Bearer "):
                user_id = self._resolve_token(auth[7:])
                if user_id is not None:
                    user = db.get_user(user_id)
                    if user and user["active"]:
                        return user
            raise HTTPException(status_code=401, detail="未授权，请先登录")

        def require_admin(user: Dict[str, Any] = Depends(get_current_user)):
            """要求管理员角色"""
            if user["role"] not in ("admin", "superadmin"):
                raise HTTPException(status_code=403, detail="需要管理员权限")
            return user

        # ==================== 认证 API ====================

        @app.post("/api/login")
        async def login(data: dict):
            """登录认证（含设备授权校验）"""
            try:
                result = db.login(
                    data.get("email", ""), data.get("password", ""),
                    fingerprint=data.get("fingerprint"),
                    device_description=data.get("device_description"),
                )
            except ValueError as e:
                logger.warning(f"登录失败: {e}")
                return JSONResponse(
                    status_code=401,
                    content={"success": False, "error": str(e)},
                )
            except Exception as e:
                return _error_response(e, "登录")

            device = result["device"]
            if not device["authorized"]:
                return {
                    "success": False,
                    "needs_admin_approval": True,
                    "request_id": device.get("request_id"),
                }
            token = self._generate_token(result["user"]["id"])
            logger.info(f"用户登录: {result['user']['email']}")
            return {"success": True, "token": token, "user": result["user"]}

        @app.post("/api/logout")
        async def logout(request: Request, _=Depends(get_current_user)):
            self._revoke_token(request.headers.get("Authorization", "")[7:])
            return {"success": True}

        @app.get("/api/me")
        async def me(user=Depends(get_current_user)):
            return {"data": user}

        @app.get("/api/device-requests/{request_id}/status")
        async def device_request_status(request_id: int):
            """设备申请状态（等待审核页面轮询）"""
            try:
                status = db.devices.get_request_status(request_id)
                if status is None:
                    return _not_found("Device request")
                return {"status": status}
            except Exception as e:
                return _error_response(e, "查询设备申请状态")

        # ==================== 班次 API ====================

        @app.post("/api/shifts/start")
        async def start_shift(request: Request, user=Depends(get_current_user)):
            """开班或恢复班次"""
            try:
                ip = request.client.host if request.client else None
                result = db.start_shift(user, ip)
                if result["status"] == "another_cashier_active":
                    return JSONResponse(status_code=409, content=result)
                return result
            except Exception as e:
                return _error_response(e, "开班")

        @app.get("/api/shifts/current")
        async def current_shift(user=Depends(get_current_user)):
            """当前班次及收款汇总（交班预览）"""
            try:
                return {"data": db.get_shift_summary(user["id"])}
            except Exception as e:
                return _error_response(e, "获取当前班次")

        @app.get("/api/shifts/handover-users")
        async def handover_users(user=Depends(get_current_user)):
            try:
                return {"data": db.get_handover_users(user["id"])}
            except Exception as e:
                return _error_response(e, "获取交接人列表")

        @app.post("/api/shifts/end")
        async def end_shift(data: dict, user=Depends(get_current_user)):
            """交班对账"""
            try:
                result = db.end_shift(
                    user["id"], data.get("manual_counts") or {},
                    data.get("next_user_id"), data.get("stock_counts")
                )
                return {"data": result}
            except Exception as e:
                return _error_response(e, "交班")

        @app.get("/api/admin/shifts/active")
        async def active_shifts(_=Depends(require_admin)):
            try:
                return {"data": db.list_active_shifts()}
            except Exception as e:
                return _error_response(e, "获取进行中班次")

        @app.post("/api/admin/shifts/{shift_id}/end")
        async def admin_end_shift(shift_id: int, admin=Depends(require_admin)):
            try:
                return {"data": db.admin_end_shift(shift_id, admin)}
            except Exception as e:
                return _error_response(e, "强制结束班次")

        # ==================== 会员 API ====================

        @app.get("/api/members")
        async def members_list(
            page: int = 1,
            page_size: Optional[int] = None,
            status: Optional[str] = None,
            type: Optional[str] = None,
            q: Optional[str] = None,
            _=Depends(get_current_user),
        ):
            """会员列表（分页）"""
            try:
                return db.list_members(page, page_size, status, type, q)
            except Exception as e:
                return _error_response(e, "获取会员列表")

        @app.get("/api/members/search")
        async def members_search(q: str = "", _=Depends(get_current_user)):
            try:
                return {"data": db.search_members(q)}
            except Exception as e:
                return _error_response(e, "搜索会员")

        @app.get("/api/members/stats")
        async def members_stats(_=Depends(get_current_user)):
            try:
                return {"data": db.get_member_stats()}
            except Exception as e:
                return _error_response(e, "获取会员统计")

        @app.get("/api/members/export")
        async def members_export(status: Optional[str] = None,
                                 _=Depends(require_admin)):
            try:
                return PlainTextResponse(
                    db.export_members_csv(status), media_type="text/csv",
                    headers={"Content-Disposition":
                             "attachment; filename=members.csv"},
                )
            except Exception as e:
                return _error_response(e, "导出会员")

        @app.get("/api/members/{member_pk}")
        async def member_detail(member_pk: int, _=Depends(get_current_user)):
            try:
                data = db.get_member_details(member_pk)
                if data is None:
                    return _not_found("Member")
                return {"data": data}
            except Exception as e:
                return _error_response(e, "获取会员详情")

        @app.post("/api/members")
        async def member_register(data: dict, user=Depends(get_current_user)):
            """注册新会员"""
            try:
                result = db.register_member(
                    data.get("member") or {}, data.get("plan_id"),
                    data.get("payment_method"), user["id"]
                )
                return {"data": result}
            except Exception as e:
                return _error_response(e, "注册会员")

        @app.put("/api/members/{member_pk}")
        async def member_update(member_pk: int, data: dict,
                                _=Depends(get_current_user)):
            try:
                member = db.update_member(member_pk, data)
                if member is None:
                    return _not_found("Member")
                return {"data": member}
            except Exception as e:
                return _error_response(e, "更新会员")

        @app.post("/api/members/{member_pk}/suspend")
        async def member_suspend(member_pk: int, data: dict,
                                 _=Depends(require_admin)):
            try:
                member = db.set_member_suspended(
                    member_pk, bool(data.get("suspended", True))
                )
                if member is None:
                    return _not_found("Member")
                return {"data": member}
            except Exception as e:
                return _error_response(e, "暂停会员")

        @app.get("/api/members/{member_pk}/renewal-quote")
        async def renewal_quote(member_pk: int, plan_id: int,
                                _=Depends(get_current_user)):
            try:
                return {"data": db.get_renewal_quote(member_pk, plan_id)}
            except Exception as e:
                return _error_response(e, "计算续费报价")

        @app.post("/api/members/{member_pk}/renew")
        async def member_renew(member_pk: int, data: dict,
                               user=Depends(get_current_user)):
            """会员续费"""
            try:
                result = db.renew_member(
                    member_pk, data.get("plan_id"), data.get("payment_method"),
                    user["id"], bool(data.get("accept_grace_charges", False))
                )
                return {"data": result}
            except Exception as e:
                return _error_response(e, "会员续费")

        @app.post("/api/members/{member_pk}/check-in")
        async def member_check_in(member_pk: int,
                                  user=Depends(get_current_user)):
            """会员签到"""
            try:
                return {"data": db.check_in_member(member_pk, user["id"])}
            except Exception as e:
                return _error_response(e, "会员签到")

        @app.post("/api/admin/members/import")
        async def members_import(file: UploadFile = File(...),
                                 _=Depends(require_admin)):
            """导入会员 CSV"""
            try:
                content = (await file.read()).decode("utf-8-sig")
                return {"data": db.import_members_csv(content)}
            except Exception as e:
                return _error_response(e, "导入会员")

        # ==================== 会员方案 API ====================

        @app.get("/api/plans")
        async def plans_list(type: Optional[str] = None,
                             active_only: bool = True,
                             _=Depends(get_current_user)):
            try:
                return {"data": db.list_plans(active_only, type)}
            except Exception as e:
                return _error_response(e, "获取会员方案")

        @app.post("/api/admin/plans")
        async def plan_create(data: dict, _=Depends(require_admin)):
            try:
                return {"data": db.create_plan(data)}
            except Exception as e:
                return _error_response(e, "创建会员方案")

        @app.put("/api/admin/plans/{plan_id}")
        async def plan_update(plan_id: int, data: dict,
                              _=Depends(require_admin)):
            try:
                plan = db.update_plan(plan_id, data)
                if plan is None:
                    return _not_found("Membership plan")
                return {"data": plan}
            except Exception as e:
                return _error_response(e, "更新会员方案")

        # ==================== 散客与签到 API ====================

        @app.post("/api/walk-ins")
        async def walk_in_create(data: dict, user=Depends(get_current_user)):
            try:
                return {"data": db.record_walk_in(data, user["id"])}
            except Exception as e:
                return _error_response(e, "散客入场")

        @app.get("/api/check-ins")
        async def check_ins_list(
            page: int = 1,
            page_size: Optional[int] = None,
            type: Optional[str] = None,
            q: Optional[str] = None,
            start_date: Optional[str] = None,
            end_date: Optional[str] = None,
            _=Depends(get_current_user),
        ):
            try:
                return db.list_check_ins(page, page_size, type, q,
                                         start_date, end_date)
            except Exception as e:
                return _error_response(e, "获取签到记录")

        # ==================== 优惠券 API ====================

        @app.get("/api/coupons")
        async def coupons_list(page: int = 1, q: Optional[str] = None,
                               active_only: bool = False,
                               _=Depends(get_current_user)):
            try:
                return db.list_coupons(page, None, q, active_only)
            except Exception as e:
                return _error_response(e, "获取优惠券列表")

        @app.post("/api/coupons")
        async def coupon_create(data: dict, user=Depends(get_current_user)):
            """售出优惠券"""
            try:
                return {"data": db.create_coupon(data, user["id"])}
            except Exception as e:
                return _error_response(e, "创建优惠券")

        @app.get("/api/coupons/validate")
        async def coupon_validate(code: str, _=Depends(get_current_user)):
            try:
                return {"data": db.validate_coupon(code)}
            except Exception as e:
                return _error_response(e, "校验优惠券")

        @app.post("/api/coupons/redeem")
        async def coupon_redeem(data: dict, user=Depends(get_current_user)):
            try:
                return {"data": db.redeem_coupon(data.get("code", ""), user["id"])}
            except Exception as e:
                return _error_response(e, "核销优惠券")

        @app.get("/api/coupons/usage")
        async def coupon_usage(page: int = 1, coupon_id: Optional[int] = None,
                               q: Optional[str] = None,
                               _=Depends(get_current_user)):
            try:
                return db.get_coupon_usage(page, coupon_id, q)
            except Exception as e:
                return _error_response(e, "获取核销记录")

        @app.delete("/api/coupon-uses/{use_id}")
        async def coupon_use_cancel(use_id: int, _=Depends(require_admin)):
            try:
                return {"data": db.cancel_coupon_use(use_id)}
            except Exception as e:
                return _error_response(e, "撤销核销")

        @app.post("/api/admin/coupons/{coupon_id}/active")
        async def coupon_set_active(coupon_id: int, data: dict,
                                    admin=Depends(require_admin)):
            try:
                coupon = db.set_coupon_active(
                    coupon_id, bool(data.get("active")), admin["role"]
                )
                if coupon is None:
                    return _not_found("Coupon")
                return {"data": coupon}
            except Exception as e:
                return _error_response(e, "更新优惠券状态")

        # ==================== 商品与 POS API ====================

        @app.get("/api/products")
        async def products_list(active_only: bool = False,
                                _=Depends(get_current_user)):
            try:
                return {"data": db.list_products(active_only)}
            except Exception as e:
                return _error_response(e, "获取商品列表")

        @app.get("/api/products/stock-history")
        async def stock_history(product_id: Optional[int] = None,
                                _=Depends(get_current_user)):
            try:
                return {"data": db.get_stock_history(product_id)}
            except Exception as e:
                return _error_response(e, "获取库存流水")

        @app.post("/api/admin/products")
        async def product_create(data: dict, admin=Depends(require_admin)):
            try:
                return {"data": db.create_product(data, admin["id"])}
            except Exception as e:
                return _error_response(e, "创建商品")

        @app.put("/api/admin/products/{product_id}")
        async def product_update(product_id: int, data: dict,
                                 _=Depends(require_admin)):
            try:
                product = db.update_product(product_id, data)
                if product is None:
                    return _not_found("Product")
                return {"data": product}
            except Exception as e:
                return _error_response(e, "更新商品")

        @app.post("/api/admin/products/{product_id}/stock")
        async def product_stock(product_id: int, data: dict,
                                admin=Depends(require_admin)):
            """盘点调整库存"""
            try:
                product = db.update_stock(
                    product_id, int(data.get("stock")), admin["id"],
                    notes=data.get("notes")
                )
                if product is None:
                    return _not_found("Product")
                return {"data": product}
            except Exception as e:
                return _error_response(e, "调整库存")

        @app.post("/api/admin/products/{product_id}/restock")
        async def product_restock(product_id: int, data: dict,
                                  admin=Depends(require_admin)):
            try:
                product = db.restock_product(
                    product_id, int(data.get("quantity") or 0), admin["id"]
                )
                if product is None:
                    return _not_found("Product")
                return {"data": product}
            except Exception as e:
                return _error_response(e, "商品入库")

        @app.post("/api/pos/checkout")
        async def pos_checkout(data: dict, user=Depends(get_current_user)):
            """POS 结账"""
            try:
                return {"data": db.checkout(
                    data.get("items") or [], data.get("payment_method"),
                    user["id"]
                )}
            except Exception as e:
                return _error_response(e, "POS 结账")

        @app.get("/api/pos/sales")
        async def pos_sales(page: int = 1, _=Depends(get_current_user)):
            try:
                return db.list_sales(page)
            except Exception as e:
                return _error_response(e, "获取销售记录")

        # ==================== 报表 API ====================

        @app.get("/api/reports/{kind}")
        async def report(
            kind: str,
            range: str = "daily",
            date: Optional[str] = None,
            start_date: Optional[str] = None,
            end_date: Optional[str] = None,
            offset: int = 0,
            _=Depends(get_current_user),
        ):
            """financial / membership / attendance / sales 报表，offset 用于前后翻页"""
            try:
                return {"data": db.get_report(kind, range, date,
                                              start_date, end_date, offset)}
            except Exception as e:
                return _error_response(e, "获取报表")

        @app.get("/api/reports/{kind}/export")
        async def report_export(
            kind: str,
            range: str = "daily",
            date: Optional[str] = None,
            start_date: Optional[str] = None,
            end_date: Optional[str] = None,
            _=Depends(require_admin),
        ):
            try:
                return PlainTextResponse(
                    db.export_report_csv(kind, range, date, start_date,
                                         end_date),
                    media_type="text/csv",
                    headers={"Content-Disposition":
                             f"attachment; filename={kind}-report.csv"},
                )
            except Exception as e:
                return _error_response(e, "导出报表")

        @app.get("/api/admin/daily-summary")
        async def daily_summary(date: Optional[str] = None,
                                _=Depends(require_admin)):
            try:
                return {"data": db.get_daily_summary(date)}
            except Exception as e:
                return _error_response(e, "获取每日汇总")

        @app.get("/api/admin/daily-summary/saved")
        async def saved_daily_summary(date: str, _=Depends(require_admin)):
            try:
                data = db.get_saved_summary(date)
                if data is None:
                    return _not_found("Daily summary")
                return {"data": data}
            except Exception as e:
                return _error_response(e, "获取每日汇总快照")

        # ==================== 设置 API ====================

        @app.get("/api/settings")
        async def settings_get(_=Depends(get_current_user)):
            try:
                return {"data": db.get_settings()}
            except Exception as e:
                return _error_response(e, "获取设置")

        @app.put("/api/admin/settings/{key}")
        async def settings_update(key: str, data: dict,
                                  admin=Depends(require_admin)):
            try:
                return {"data": db.update_setting(key, data.get("value"), admin)}
            except Exception as e:
                return _error_response(e, "更新设置")

        # ==================== 账号与设备 API ====================

        @app.get("/api/admin/users")
        async def users_list(admin=Depends(require_admin)):
            try:
                return {"data": db.list_users(admin["role"])}
            except Exception as e:
                return _error_response(e, "获取账号列表")

        @app.post("/api/admin/users")
        async def user_create(data: dict, admin=Depends(require_admin)):
            try:
                return {"data": db.create_user(data, admin["role"])}
            except Exception as e:
                return _error_response(e, "创建账号")

        @app.put("/api/admin/users/{user_id}")
        async def user_update(user_id: int, data: dict,
                              admin=Depends(require_admin)):
            try:
                user = db.update_user(user_id, data, admin["role"], admin["id"])
                if user is None:
                    return _not_found("User")
                return {"data": user}
            except Exception as e:
                return _error_response(e, "更新账号")

        @app.get("/api/admin/device-requests")
        async def device_requests(pending: bool = True,
                                  _=Depends(require_admin)):
            try:
                return {"data": db.list_device_requests(pending)}
            except Exception as e:
                return _error_response(e, "获取设备申请")

        @app.post("/api/admin/device-requests/{request_id}/approve")
        async def device_approve(request_id: int, data: Optional[dict] = None,
                                 admin=Depends(require_admin)):
            try:
                notes = (data or {}).get("notes")
                return {"data": db.approve_device_request(request_id, admin, notes)}
            except Exception as e:
                return _error_response(e, "批准设备申请")

        @app.post("/api/admin/device-requests/{request_id}/deny")
        async def device_deny(request_id: int, data: Optional[dict] = None,
                              admin=Depends(require_admin)):
            try:
                notes = (data or {}).get("notes")
                return {"data": db.deny_device_request(request_id, admin, notes)}
            except Exception as e:
                return _error_response(e, "拒绝设备申请")

        @app.get("/api/admin/devices")
        async def devices_list(user_id: Optional[int] = None,
                               _=Depends(require_admin)):
            try:
                return {"data": db.list_authorized_devices(user_id)}
            except Exception as e:
                return _error_response(e, "获取授权设备")

        @app.delete("/api/admin/devices/{device_id}")
        async def device_revoke(device_id: int, admin=Depends(require_admin)):
            try:
                if not db.devices.revoke_device(device_id, admin["role"]):
                    return _not_found("Device")
                return {"success": True}
            except Exception as e:
                return _error_response(e, "撤销设备")

        # ==================== 媒体上传 ====================

        @app.post("/api/media/{category}")
        async def media_upload(category: str, file: UploadFile = File(...),
                               _=Depends(get_current_user)):
            """上传图片，返回可访问的 URL"""
            try:
                url = self._save_upload(category, file.filename,
                                        await file.read())
                return {"url": url}
            except Exception as e:
                return _error_response(e, "上传文件")

        # ==================== 健康检查 ====================

        @app.get("/health")
        async def health_check():
            """健康检查，顺带用 SELECT 1 探测数据库。"""
            db_connected = False
            if self.db_manager is not None:
                try:
                    self.db_manager.execute_raw_sql("SELECT 1")
                    db_connected = True
                except Exception as e:
                    logger.warning(f"数据库探测失败: {e}")
            return {
                "status": "ok",
                "running": self.running,
                "db_connected": db_connected,
            }

        return app

    def _save_upload(self, category: str, filename: Optional[str],
                     content: bytes) -> str:
        """保存上传文件到 media_dir/category 下，返回 URL。

        Raises:
            ValueError: 分类或文件类型不支持、文件为空。
        """
        if category not in MEDIA_CATEGORIES:
            raise ValueError(f"Unknown media category: {category}")
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in ALLOWED_IMAGE_EXTENSIONS:
            raise ValueError(f"Unsupported file type: {ext or 'none'}")
        if not content:
            raise ValueError("Uploaded file is empty")

        directory = os.path.join(self.media_dir, category)
        os.makedirs(directory, exist_ok=True)
        name = f"{uuid.uuid4().hex}{ext}"
        with open(os.path.join(directory, name), "wb") as f:
            f.write(content)
        logger.info(f"已保存上传文件: {category}/{name}")
        return f"{settings.media_url_prefix}/{category}/{name}"

    # ==================== 服务器生命周期 ====================

    async def startup(self):
        """在独立线程中启动 uvicorn 服务器"""
        import uvicorn

        self.app = self._create_app()
        self.running = True

        def run_server():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self._server_loop = loop

            config = uvicorn.Config(
                self.app,
                host=self.host,
                port=self.port,
                log_level="warning",
                loop="asyncio",
            )
            self._server = uvicorn.Server(config)
            # 信号由 app.py 统一处理
            self._server.install_signal_handlers = lambda: None

            try:
                loop.run_until_complete(self._server.serve())
            except Exception as e:
                logger.error(f"服务器运行出错: {e}")
            finally:
                pending = asyncio.all_tasks(loop)
                for task in pending:
                    task.cancel()
                if pending:
                    loop.run_until_complete(
                        asyncio.gather(*pending, return_exceptions=True)
                    )
                loop.run_until_complete(loop.shutdown_asyncgens())
                loop.close()

        self._server_thread = threading.Thread(target=run_server, daemon=True)
        self._server_thread.start()

        # 等待服务器启动
        waited = 0.0
        while self._server is None and waited < 5:
            await asyncio.sleep(0.1)
            waited += 0.1

        logger.info(f"Web 接口已启动: http://{self.host}:{self.port}")

    async def shutdown(self):
        """停止 Web 服务器"""
        self.running = False

        if self._server is not None:
            try:
                logger.info("正在停止 Web 服务器...")
                self._server.should_exit = True

                if self._server_thread and self._server_thread.is_alive():
                    self._server_thread.join(timeout=3.0)

                if self._server_thread and self._server_thread.is_alive():
                    logger.warning("服务器未在 3 秒内优雅停止，强制退出...")
                    self._server.force_exit = True
                    if self._server_loop and self._server_loop.is_running():
                        self._server_loop.call_soon_threadsafe(
                            self._server_loop.stop
                        )
                    self._server_thread.join(timeout=2.0)
            except Exception as e:
                logger.error(f"停止服务器时出错: {e}")
            finally:
                self._server = None
                self._server_loop = None
                self._server_thread = None

        logger.info("Web 接口已停止")
