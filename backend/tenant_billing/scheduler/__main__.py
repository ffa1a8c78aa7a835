"""Scheduler エントリポイント: python -m tenant_billing.scheduler で起動"""
import signal
import sys
from datetime import datetime, timezone

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from tenant_billing.core.config import settings
from tenant_billing.core.logging import setup_logging, get_logger
from tenant_billing.scheduler.subscription_sweeper import run_subscription_sweep

setup_logging(settings.DEBUG, service="tenant_billing.scheduler")
logger = get_logger("scheduler")

scheduler = BlockingScheduler(timezone="UTC")


def signal_handler(sig, frame):
    logger.info("Scheduler停止シグナル受信")
    scheduler.shutdown(wait=False)
    sys.exit(0)


signal.signal(signal.SIGTERM, signal_handler)
signal.signal(signal.SIGINT, signal_handler)


def main():
    logger.info(f"Scheduler起動: スイープ間隔={settings.SWEEP_INTERVAL_HOURS}時間")

    # 起動直後に1回、以降は一定間隔で購読スイープ
    scheduler.add_job(
        run_subscription_sweep,
        IntervalTrigger(hours=settings.SWEEP_INTERVAL_HOURS, timezone="UTC"),
        id="subscription_sweeper",
        next_run_time=datetime.now(timezone.utc),
        max_instances=1,
        coalesce=True,
    )

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler終了")


if __name__ == "__main__":
    main()
