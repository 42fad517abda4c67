"""每日汇总定时任务

每天本地时间凌晨（默认 00:05，GMT+8）把前一天的汇总写入 daily_summaries。
Scheduler 只管按时触发，要执行的协程由 create_summary_task 生成。
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from datetime import timedelta, timezone
from typing import Awaitable, Callable, List, Optional
from loguru import logger
from config.settings import settings
import asyncio


def _local_timezone() -> timezone:
    return timezone(timedelta(hours=settings.timezone_offset_hours))


class Scheduler:
    """APScheduler AsyncIOScheduler 的薄封装，任务跑在传入的事件循环上。"""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = asyncio.new_event_loop()
                asyncio.set_event_loop(loop)
        self.scheduler = AsyncIOScheduler(event_loop=loop,
                                          timezone=_local_timezone())

    def add_daily_task(self, task_func: Callable[[], Awaitable],
                       hour: int = 0, minute: int = 5,
                       task_id: str = 'daily_task',
                       task_name: Optional[str] = None):
        """注册每天固定时刻执行的协程，同 ID 的旧任务会被替换。

        Args:
            task_func: 无参 async 函数
            hour: 本地时间小时 (0-23)
            minute: 分钟 (0-59)
            task_id: 任务 ID
            task_name: 日志里显示的名称，默认与 task_id 相同
        """
        name = task_name or task_id
        self.scheduler.add_job(
            task_func,
            trigger=CronTrigger(hour=hour, minute=minute,
                                timezone=_local_timezone()),
            id=task_id,
            name=name,
            replace_existing=True,
        )
        logger.info(f"定时任务 '{name}' 已注册，每天 {hour:02d}:{minute:02d} 执行")

    def get_job_ids(self) -> List[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        self.scheduler.start()
        logger.info(f"调度器启动，共 {len(self.get_job_ids())} 个任务")

    def stop(self):
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("调度器已关闭")

    def remove_job(self, job_id: str):
        try:
            self.scheduler.remove_job(job_id)
        except Exception as e:
            logger.warning(f"任务 {job_id} 移除失败: {e}")
            return
        logger.info(f"任务 {job_id} 已移除")


def create_summary_task(db) -> Callable[[], Awaitable]:
    """返回保存前一天汇总快照的协程函数。

    save_daily_summary 是同步数据库调用，放进默认线程池执行。
    任务失败只记日志，不影响调度器继续运行。

    Args:
        db: DatabaseManager 实例。
    """
    async def save_previous_day_summary():
        loop = asyncio.get_running_loop()
        try:
            summary_id = await loop.run_in_executor(None, db.save_daily_summary)
        except Exception as e:
            logger.error(f"保存每日汇总失败: {e}")
            return
        logger.info(f"每日汇总已保存 (daily_summaries #{summary_id})")

    return save_previous_day_summary


def setup_scheduler(db, loop: Optional[asyncio.AbstractEventLoop] = None
                    ) -> Scheduler:
    """创建调度器并注册 'daily_summary' 任务，调用方负责 start()。"""
    scheduler = Scheduler(loop)
    scheduler.add_daily_task(
        create_summary_task(db),
        hour=settings.summary_job_hour,
        minute=settings.summary_job_minute,
        task_id='daily_summary',
        task_name='每日汇总快照',
    )
    return scheduler
