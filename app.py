#!/usr/bin/env python3
"""顾客分群与自动化引擎 - 命令行入口

使用方式：
    # 建表
    python app.py init-db

    # 处理一批到期的自动化日志（供 cron 调用）
    python app.py process --limit 50

    # 消费触发事件发件箱
    python app.py drain

    # 扫描长期未来访顾客，分发 no_visit_30d/60d/90d
    python app.py scan-inactive

    # 刷新某个店铺的分群成员
    python app.py refresh-segments --profile-id 1

    # 常驻运行：按间隔处理日志与事件，每天定时执行未来访扫描
    python app.py run

环境变量（在 .env 文件中配置）：
    DATABASE_URL              数据库连接地址
    AUTOMATION_BATCH_SIZE     每批处理的日志数（默认 50）
    PROCESS_INTERVAL_MINUTES  常驻模式下的处理间隔（默认 5 分钟）
    INACTIVITY_SCAN_HOUR      每日未来访扫描的小时（默认 9 点）
    CRON_SECRET               外部定时任务调用时携带的密钥
    APP_URL                   公开页面地址，用于拼接评价链接
"""
import argparse
import asyncio
import json
import os
import signal
import sys

from loguru import logger


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, default=str))


def _authorize(args) -> bool:
    """外部定时任务调用时校验密钥（未传 --secret 视为本机调用）"""
    from business.automations import verify_cron_secret

    if args.secret is None:
        return True
    if verify_cron_secret(args.secret):
        return True
    logger.error("Cron secret mismatch, refusing to run")
    return False


def cmd_init_db(db, args) -> int:
    db.create_tables()
    logger.info(f"数据库已初始化: {db.database_url}")
    return 0


def cmd_process(db, args) -> int:
    from business.processor import AutomationLogProcessor
    from business.sender import LoggingSender

    if not _authorize(args):
        return 2
    processor = AutomationLogProcessor(db, LoggingSender())
    expired = processor.expire_stale_claims()
    result = processor.process_batch(limit=args.limit)
    result["expired"] = expired
    _print_json(result)
    return 0


def cmd_drain(db, args) -> int:
    from business.automations import TriggerDispatcher

    _print_json(TriggerDispatcher(db).drain_events(limit=args.limit))
    return 0


def cmd_scan_inactive(db, args) -> int:
    from business.automations import TriggerDispatcher

    if not _authorize(args):
        return 2
    _print_json(
        TriggerDispatcher(db).dispatch_inactivity_triggers(
            profile_id=args.profile_id
        )
    )
    return 0


def cmd_refresh_segments(db, args) -> int:
    from business.segments import SegmentRegistry

    registry = SegmentRegistry(db)
    profile_ids = [args.profile_id] if args.profile_id else db.get_profile_ids()
    results = {pid: registry.refresh_memberships(pid) for pid in profile_ids}
    _print_json(results)
    return 0


def register_jobs(scheduler, db, sender=None) -> None:
    """向调度器注册常驻模式的两个任务

    任务是普通函数：AsyncIOScheduler 会把它们放到线程池执行，
    数据库读写与发送不会阻塞事件循环
    """
    from config.settings import settings
    from business.automations import TriggerDispatcher
    from business.processor import AutomationLogProcessor
    from business.sender import LoggingSender

    dispatcher = TriggerDispatcher(db)
    processor = AutomationLogProcessor(db, sender or LoggingSender())

    def process_job():
        try:
            dispatcher.drain_events()
            processor.expire_stale_claims()
            processor.process_batch()
        except Exception as e:
            logger.error(f"自动化处理任务出错: {e}")

    def inactivity_job():
        try:
            dispatcher.dispatch_inactivity_triggers()
        except Exception as e:
            logger.error(f"未来访扫描任务出错: {e}")

    scheduler.add_interval_task(
        process_job,
        minutes=settings.process_interval_minutes,
        task_id="process_automations",
        task_name="处理自动化日志"
    )
    scheduler.add_daily_task(
        inactivity_job,
        hour=settings.inactivity_scan_hour,
        task_id="scan_inactive",
        task_name="未来访扫描"
    )


async def run_forever(db) -> None:
    """常驻模式：调度器周期性驱动处理器与分发器"""
    from business.scheduler import Scheduler

    scheduler = Scheduler()
    register_jobs(scheduler, db)
    scheduler.start()

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler(signum):
        """处理退出信号"""
        logger.info(f"收到信号 {signum}，正在关闭服务...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await shutdown_event.wait()
    finally:
        scheduler.stop()


def cmd_run(db, args) -> int:
    asyncio.run(run_forever(db))
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "process": cmd_process,
    "drain": cmd_drain,
    "scan-inactive": cmd_scan_inactive,
    "refresh-segments": cmd_refresh_segments,
    "run": cmd_run,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="顾客分群与自动化引擎")
    parser.add_argument("--db", default=os.getenv("DATABASE_URL", None),
                        help="数据库连接 URL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="创建数据库表")

    process = sub.add_parser("process", help="处理一批到期的自动化日志")
    process.add_argument("--limit", type=int, default=None,
                         help="本批最多处理的日志数")
    process.add_argument("--secret", default=None,
                         help="外部定时任务携带的密钥")

    drain = sub.add_parser("drain", help="消费触发事件发件箱")
    drain.add_argument("--limit", type=int, default=None)

    scan = sub.add_parser("scan-inactive", help="分发长期未来访触发")
    scan.add_argument("--profile-id", type=int, default=None)
    scan.add_argument("--secret", default=None)

    refresh = sub.add_parser("refresh-segments", help="刷新分群成员")
    refresh.add_argument("--profile-id", type=int, default=None)

    sub.add_parser("run", help="常驻运行调度器")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    from database import DatabaseManager
    db = DatabaseManager(args.db)
    try:
        if args.command != "init-db":
            db.create_tables()
        return COMMANDS[args.command](db, args)
    finally:
        db.close()


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        pass
