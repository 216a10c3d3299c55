"""ARQ worker running the matchmaking and expiry loops as cron jobs.

Use this instead of the in-process loops (``RUN_BACKGROUND_LOOPS=false`` on the
API instances) when a separate worker process is preferred.  Several workers
may run at once; every transition is atomic in Redis.
"""
from __future__ import annotations

from arq import cron
from arq.connections import RedisSettings

from peermatch.config import settings


async def startup(ctx):
    from peermatch.dependencies import build_services
    from peermatch.monitoring.logging_config import setup_logging
    from peermatch.redis_client import CoordinationStore

    setup_logging()
    store = CoordinationStore()
    await store.initialize()
    ctx["services"] = build_services(store)


async def shutdown(ctx):
    await ctx["services"].store.close()


# ── Cron wrappers ──────────────────────────────────────────────────────────────

async def run_matchmaking(ctx):
    return await ctx["services"].matchmaker.tick()


async def expire_pending_matches(ctx):
    return await ctx["services"].sweeper.tick()


# ── Worker settings ────────────────────────────────────────────────────────────

class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 10
    job_timeout = 30

    cron_jobs = [
        cron(run_matchmaking,        second=set(range(0, 60, 2)), unique=True, run_at_startup=True),
        cron(expire_pending_matches, second=set(range(60)),       unique=True),
    ]
