import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from salesbot.config import settings
from salesbot.database import SessionLocal, init_db
from salesbot.logging_config import get_logger, setup_logging
from salesbot.routers import admin, webhook
from salesbot.runtime import Runtime, build_runtime
from salesbot.services.lead_service import LeadAnalysisError

setup_logging(settings.log_level)

app = FastAPI(
    title="Sales Bot API",
    description="WhatsApp sales assistant backend",
    version="0.1.0",
)

cors_origins = [origin.strip() for origin in settings.cors_allow_origins.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(admin.router)

logger = get_logger("main")
retry_logger = get_logger("retry_worker")
lead_logger = get_logger("lead_worker")

_worker_tasks: list[asyncio.Task] = []


def _workers_allowed() -> bool:
    return not os.environ.get("PYTEST_CURRENT_TEST")


async def _retry_worker_loop(runtime: Runtime) -> None:
    interval_seconds = max(settings.retry_sweep_interval_seconds, 1.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            await runtime.sweeper.sweep()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            retry_logger.error("Retry worker loop failed", extra={"context": {"error": str(exc)}})


async def _lead_worker_loop(runtime: Runtime) -> None:
    interval_seconds = max(settings.lead_analysis_interval_seconds, 60.0)
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            result = await runtime.lead_analyzer.analyze()
            lead_logger.info(
                "Scheduled lead analysis finished",
                extra={"context": {"analyzed": result.analyzed_sessions, "skipped": result.skipped}},
            )
        except asyncio.CancelledError:
            break
        except LeadAnalysisError as exc:
            lead_logger.warning("Scheduled lead analysis did not complete", extra={"context": {"error": str(exc)}})
        except Exception as exc:
            lead_logger.error("Lead worker loop failed", extra={"context": {"error": str(exc)}})


@app.on_event("startup")
async def start_runtime() -> None:
    if getattr(app.state, "runtime", None) is None:
        init_db()
        runtime = build_runtime(settings, SessionLocal)
        runtime.load()
        app.state.runtime = runtime
    runtime = app.state.runtime

    if not _workers_allowed():
        return
    if settings.retry_worker_enabled:
        _worker_tasks.append(asyncio.create_task(_retry_worker_loop(runtime)))
        retry_logger.info("Retry worker started")
    if settings.lead_worker_enabled:
        _worker_tasks.append(asyncio.create_task(_lead_worker_loop(runtime)))
        lead_logger.info("Lead worker started")


@app.on_event("shutdown")
async def stop_workers() -> None:
    for task in _worker_tasks:
        task.cancel()
    for task in _worker_tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _worker_tasks.clear()
    runtime = getattr(app.state, "runtime", None)
    if runtime is not None:
        still_dirty = runtime.store.flush_pending()
        if still_dirty:
            logger.warning(f"Shutting down with {still_dirty} unsaved sessions")


@app.get("/health")
async def health():
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return {"status": "starting"}
    return {
        "status": "ok",
        "sessions": len(runtime.store.list_sessions()),
        "inferenceConfigured": runtime.gateway.configured,
        "transportConfigured": runtime.transport.configured,
        "pendingRetries": len(runtime.retry_queue.pending()),
    }
