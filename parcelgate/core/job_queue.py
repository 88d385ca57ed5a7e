"""
Tracking maintenance worker

    arq parcelgate.core.job_queue.WorkerSettings

Hosts that want the notification retry to send mail subclass
WorkerSettings with an on_startup that sets ctx["track_lookup"] and then
awaits worker_startup(ctx).
"""
from arq import cron
from arq.connections import RedisSettings

from parcelgate.core.config import settings
from parcelgate.core.database import dispose_engine
from parcelgate.jobs.tracking_jobs import (
    process_pending_notifications,
    shutdown,
    startup,
    sweep_expiring_subscriptions,
)


def parse_redis_url(url: str) -> RedisSettings:
    """redis:// or rediss:// DSN to arq settings; empty means localhost:6379."""
    return RedisSettings.from_dsn(url) if url else RedisSettings()


async def worker_startup(ctx: dict) -> None:
    await startup(ctx)


async def worker_shutdown(ctx: dict) -> None:
    await shutdown(ctx)
    await dispose_engine()


class WorkerSettings:
    """Notification retry every 15 minutes, subscription sweep daily at 03:00 UTC."""

    functions = [process_pending_notifications, sweep_expiring_subscriptions]

    cron_jobs = [
        cron(process_pending_notifications, minute={0, 15, 30, 45}),
        cron(sweep_expiring_subscriptions, hour=3, minute=0),
    ]

    on_startup = worker_startup
    on_shutdown = worker_shutdown

    redis_settings = parse_redis_url(settings.REDIS_URL)

    max_jobs = 10
    job_timeout = 300
    keep_result = 3600
    max_tries = 3
    retry_delay = 60
