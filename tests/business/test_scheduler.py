"""测试定时任务调度器"""
import pytest

from business.scheduler import Scheduler


async def noop():
    pass


class TestScheduler:

    @pytest.mark.asyncio
    async def test_register_tasks(self):
        scheduler = Scheduler()
        scheduler.add_interval_task(noop, minutes=5, task_id="process")
        scheduler.add_daily_task(noop, hour=9, task_id="scan")
        assert sorted(scheduler.get_job_ids()) == ["process", "scan"]

    @pytest.mark.asyncio
    async def test_same_id_replaces_job(self):
        scheduler = Scheduler()
        scheduler.start()
        scheduler.add_interval_task(noop, minutes=5, task_id="process")
        scheduler.add_interval_task(noop, minutes=1, task_id="process")
        assert scheduler.get_job_ids() == ["process"]
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = Scheduler()
        scheduler.add_interval_task(noop, minutes=5, task_id="process")
        scheduler.start()
        assert scheduler.scheduler.running is True

        job = scheduler.scheduler.get_job("process")
        assert job.max_instances == 1
        assert job.coalesce is True

        scheduler.remove_job("process")
        assert scheduler.get_job_ids() == []
        scheduler.stop()

    @pytest.mark.asyncio
    async def test_remove_missing_job_does_not_raise(self):
        scheduler = Scheduler()
        scheduler.remove_job("nope")
