from dotenv import load_dotenv
load_dotenv()  # before settings are first read

# trailscope/main.py
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI
from starlette.responses import JSONResponse

from trailscope.api.routes_debug import router as debug_router
from trailscope.api.routes_metrics import router as metrics_router
from trailscope.central_index.manager import CentralIndexManager
from trailscope.core.logging import setup_logging
from trailscope.core.settings import get_settings
from trailscope.db.session import get_engine, get_replica_engine
from trailscope.metrics import get_metrics
from trailscope.services.retention import RetentionJob, purge_central_index

settings = get_settings()
setup_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
logger = logging.getLogger(__name__)

app = FastAPI(title="trailscope")
app.state.settings = settings
app.state.trailscope_metrics = get_metrics()


@app.get("/health")
def health():
    return JSONResponse({"status": "ok"})


app.include_router(metrics_router)
app.include_router(debug_router)


async def _retention_job():
    # errors propagate to APScheduler, which logs them; the next run retries
    settings = app.state.settings
    engine = get_engine()
    await RetentionJob(engine, settings).run_once(settings.LOCAL_DOMAIN)
    manager = CentralIndexManager(engine, settings, replica=get_replica_engine())
    await purge_central_index(manager, settings.LOCAL_DOMAIN)


@app.on_event("startup")
async def _startup():
    app.state.scheduler = AsyncIOScheduler()
    app.state.scheduler.add_job(
        _retention_job,
        CronTrigger(hour=settings.RETENTION_CRON_HOUR, minute=settings.RETENTION_CRON_MINUTE),
        id="retention",
        max_instances=1,
        coalesce=True,
    )
    app.state.scheduler.start()
    logger.info(
        "retention scheduled daily at %02d:%02d",
        settings.RETENTION_CRON_HOUR,
        settings.RETENTION_CRON_MINUTE,
    )


@app.on_event("shutdown")
async def _shutdown():
    sch = getattr(app.state, "scheduler", None)
    if sch:
        sch.shutdown(wait=False)
