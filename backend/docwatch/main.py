from contextlib import asynccontextmanager

import structlog
from arq.connections import RedisSettings, create_pool
from fastapi import FastAPI, Request
from sqlalchemy import text

from docwatch.api import router as api_router
from docwatch.config import settings
from docwatch.db.session import async_session_factory, engine
from docwatch.feishu import router as feishu_router
from docwatch.feishu.client import FeishuClient
from docwatch.log_config import configure_logging
from docwatch.tracking.service import DocTracker

configure_logging()

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("starting up", environment=settings.environment)
    app.state.arq_pool = None
    if settings.analysis_backend == "arq":
        app.state.arq_pool = await create_pool(
            RedisSettings.from_dsn(settings.redis_url)
        )
    app.state.tracker = DocTracker.build(
        FeishuClient.from_settings(), async_session_factory, arq_pool=app.state.arq_pool
    )
    await app.state.tracker.start()
    yield
    await app.state.tracker.stop()
    if app.state.arq_pool is not None:
        await app.state.arq_pool.close()
    await engine.dispose()
    log.info("shut down")


app = FastAPI(title="Doc Watch", version="0.1.0", lifespan=lifespan)

app.include_router(feishu_router)
app.include_router(api_router)


@app.get("/health")
async def health(request: Request):
    async with async_session_factory() as session:
        await session.execute(text("SELECT 1"))
    metrics = request.app.state.tracker.status()
    return {
        "status": "degraded" if metrics.persistence_degraded else "ok",
        "documents_tracked": metrics.documents_tracked,
    }
