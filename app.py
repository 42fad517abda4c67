#!/usr/bin/env python3
"""健身房前台系统入口

启动 JSON API 服务（会员、签到、收银班次、优惠券、POS、报表），
并按配置在每天凌晨保存前一天的汇总快照。

    python app.py
    python app.py --port 9000 --db sqlite:///data/gym.db
    python app.py --no-scheduler

配置项见 config/settings.py，可写在 .env 中，例如 DATABASE_URL、
WEB_HOST、WEB_PORT、TOKEN_TTL_HOURS、MEDIA_DIR、
BOOTSTRAP_ADMIN_EMAIL、BOOTSTRAP_ADMIN_PASSWORD。
"""
import argparse
import asyncio
import signal

from loguru import logger

from config.settings import settings


def _parse_args():
    parser = argparse.ArgumentParser(description="健身房前台系统")
    parser.add_argument("--host", default=settings.web_host,
                        help=f"监听地址 (默认: {settings.web_host})")
    parser.add_argument("--port", type=int, default=settings.web_port,
                        help=f"监听端口 (默认: {settings.web_port})")
    parser.add_argument("--db", default=None,
                        help="数据库 URL，缺省时读取 DATABASE_URL")
    parser.add_argument("--no-scheduler", action="store_true",
                        help="不注册每日汇总任务")
    return parser.parse_args()


async def _shutdown(scheduler, web, db):
    """按 调度器 -> Web 服务 -> 数据库 的顺序释放资源，单步失败不影响后续步骤。"""
    logger.info("开始关闭服务")

    steps = []
    if scheduler is not None:
        steps.append(("调度器", scheduler.stop))
    if web is not None:
        steps.append(("Web 服务", web.shutdown))
    if db is not None:
        steps.append(("数据库连接", db.close))

    for name, stop in steps:
        try:
            result = stop()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning(f"关闭{name}失败: {e}")

    logger.info("服务已关闭")


def _install_signal_handlers(stop_event: asyncio.Event):
    """第一次 SIGINT/SIGTERM 触发正常关闭，第二次直接取消所有任务。"""
    loop = asyncio.get_running_loop()

    def on_signal(signum):
        if stop_event.is_set():
            logger.warning("重复收到退出信号，取消全部任务")
            for task in asyncio.all_tasks(loop):
                task.cancel()
            return
        logger.info(f"收到信号 {signum}，准备退出")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, on_signal, sig)


def _print_banner(port: int, db, scheduler_enabled: bool):
    lines = [
        "健身房前台系统已启动",
        f"API:      http://localhost:{port}/api",
        f"文档:     http://localhost:{port}/docs",
        f"数据库:   {db.database_url}",
        f"每日汇总: {'开启' if scheduler_enabled else '关闭'}",
    ]
    print()
    print("-" * 60)
    for line in lines:
        print(f"  {line}")
    print("-" * 60)
    print("  Ctrl+C 退出")
    print()


async def main():
    args = _parse_args()
    web = scheduler = db = None

    try:
        from database import DatabaseManager
        db = DatabaseManager(args.db)
        seeded = db.initialize()
        logger.info(f"数据库就绪: {db.database_url}")
        if seeded["admin_created"]:
            logger.warning(
                f"已生成超级管理员账号 {settings.bootstrap_admin_email}，登录后请修改密码"
            )

        from interface.web.server import WebServer
        web = WebServer(db_manager=db, host=args.host, port=args.port)
        await web.startup()

        if not args.no_scheduler:
            from business.scheduler import setup_scheduler
            scheduler = setup_scheduler(db, asyncio.get_running_loop())
            scheduler.start()

        _print_banner(args.port, db, scheduler is not None)

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await stop_event.wait()

    except asyncio.CancelledError:
        logger.info("主任务已取消")
    finally:
        await _shutdown(scheduler, web, db)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
