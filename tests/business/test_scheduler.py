"""Daily summary scheduler tests."""
import asyncio
from datetime import timedelta

import pytest

from business.scheduler import Scheduler, create_summary_task, setup_scheduler
from business.timeutils import local_today


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


class TestScheduler:

    def test_setup_registers_daily_summary(self, temp_db, loop):
        scheduler = setup_scheduler(temp_db, loop)
        assert scheduler.get_job_ids() == ["daily_summary"]

    def test_replace_and_remove(self, loop):
        async def noop():
            return None

        scheduler = Scheduler(loop)
        scheduler.add_daily_task(noop, task_id="job")
        scheduler.add_daily_task(noop, hour=3, task_id="job")
        assert scheduler.get_job_ids() == ["job"]

        scheduler.remove_job("job")
        assert scheduler.get_job_ids() == []
        # removing twice only logs a warning
        scheduler.remove_job("job")

    def test_stop_when_not_running(self, loop):
        Scheduler(loop).stop()

    def test_summary_task_saves_previous_day(self, temp_db, loop):
        task = create_summary_task(temp_db)
        loop.run_until_complete(task())
        yesterday = local_today() - timedelta(days=1)
        assert temp_db.summaries.get_by_date(yesterday) is not None
