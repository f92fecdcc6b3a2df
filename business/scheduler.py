"""定时任务调度器 - 通用的任务调度框架

具体的任务（处理自动化日志、消费触发事件、未来访扫描）在 app.py 中注册
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from typing import Callable
from loguru import logger
import asyncio


class Scheduler:
    """定时任务调度器

    通用的任务调度框架，不包含具体的业务逻辑
    业务逻辑通过回调函数注入
    """

    def __init__(self):
        """初始化调度器"""
        # 使用默认事件循环或创建新的事件循环
        try:
            loop = asyncio.get_event_loop()
            if loop.is_closed():
                loop = asyncio.new_event_loop()
                asyncio.set_event_loop(loop)
        except RuntimeError:
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
        self.scheduler = AsyncIOScheduler(event_loop=loop)

    def add_interval_task(
        self,
        task_func: Callable,
        minutes: int = 5,
        task_id: str = 'interval_task',
        task_name: str = '周期任务'
    ):
        """添加固定间隔任务

        同一任务上一次尚未结束时不会并发执行下一次

        Args:
            task_func: 任务函数（协程在事件循环中执行，普通函数在线程池中执行）
            minutes: 间隔分钟数
            task_id: 任务ID
            task_name: 任务名称
        """
        self.scheduler.add_job(
            task_func,
            trigger=IntervalTrigger(minutes=minutes),
            id=task_id,
            name=task_name,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        logger.info(f"Added interval task '{task_name}' every {minutes} min")

    def add_daily_task(
        self,
        task_func: Callable,
        hour: int = 9,
        minute: int = 0,
        task_id: str = 'daily_task',
        task_name: str = '每日任务'
    ):
        """添加每日定时任务

        Args:
            task_func: 任务函数（协程在事件循环中执行，普通函数在线程池中执行）
            hour: 小时 (0-23)
            minute: 分钟 (0-59)
            task_id: 任务ID
            task_name: 任务名称
        """
        self.scheduler.add_job(
            task_func,
            trigger=CronTrigger(hour=hour, minute=minute),
            id=task_id,
            name=task_name,
            replace_existing=True
        )
        logger.info(f"Added daily task '{task_name}' at {hour:02d}:{minute:02d}")

    def get_job_ids(self) -> list:
        """已注册的任务ID列表"""
        return [job.id for job in self.scheduler.get_jobs()]

    def start(self):
        """启动调度器"""
        self.scheduler.start()
        logger.info("Scheduler started")

    def stop(self):
        """停止调度器"""
        self.scheduler.shutdown()
        logger.info("Scheduler stopped")

    def remove_job(self, job_id: str):
        """移除任务

        Args:
            job_id: 任务ID
        """
        try:
            self.scheduler.remove_job(job_id)
            logger.info(f"Job {job_id} removed")
        except Exception as e:
            logger.warning(f"Failed to remove job {job_id}: {e}")
