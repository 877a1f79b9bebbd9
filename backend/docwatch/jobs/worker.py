from arq import cron
from arq.connections import RedisSettings

from docwatch.config import settings
from docwatch.db.session import async_session_factory, engine
from docwatch.feishu.client import FeishuClient
from docwatch.jobs.tasks import analyze_change, prune_snapshots
from docwatch.log_config import configure_logging
from docwatch.tracking.metrics import MetricsRecorder
from docwatch.tracking.service import build_dispatcher, build_pipeline


async def startup(ctx: dict) -> None:
    configure_logging()
    client = FeishuClient.from_settings()
    dispatcher = build_dispatcher(client, MetricsRecorder())
    ctx["pipeline"] = build_pipeline(client, async_session_factory, dispatcher)


async def shutdown(ctx: dict) -> None:
    await engine.dispose()


class WorkerSettings:
    functions = [analyze_change]
    cron_jobs = [
        cron(prune_snapshots, hour=None, minute=0),  # every hour
    ]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = 10
    job_timeout = 120
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
