import asyncio
import os

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import init_db
from app.logging_config import get_logger, setup_logging
from app.routers import chat, knowledge, webhook
from app.services.workflow_service import process_due_workflows

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="LINE Dify Bridge",
    description="LINE webhook bridge to a Dify chat app with message history and knowledge admin",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
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
app.include_router(chat.router)
app.include_router(knowledge.router)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error: {exc}",
        exc_info=exc,
        extra={"context": {"path": request.url.path, "method": request.method}},
    )
    return JSONResponse(
        status_code=500,
        content={"success": False, "errors": [{"code": 7000, "message": "Internal Server Error"}]},
    )


workflow_logger = get_logger("workflow_worker")
_workflow_worker_task: asyncio.Task | None = None


def _is_running_under_pytest() -> bool:
    return bool(os.environ.get("PYTEST_CURRENT_TEST"))


async def _workflow_worker_loop() -> None:
    while True:
        try:
            await asyncio.sleep(max(settings.workflow_worker_interval_seconds, 0.1))
            results = await process_due_workflows(
                limit=settings.workflow_process_limit,
                max_attempts=settings.workflow_max_attempts,
                retry_backoff_seconds=settings.workflow_retry_backoff_seconds,
                stale_seconds=settings.workflow_stale_seconds,
            )
            if results["claimed"] or results["released"]:
                workflow_logger.info("Workflow worker processed", extra={"context": results})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            workflow_logger.error(
                "Workflow worker loop failed",
                extra={"context": {"error": str(exc)}},
            )


@app.on_event("startup")
async def start_workflow_worker() -> None:
    global _workflow_worker_task
    if _is_running_under_pytest():
        return
    init_db()
    if not settings.workflow_worker_enabled:
        return
    if _workflow_worker_task is None or _workflow_worker_task.done():
        _workflow_worker_task = asyncio.create_task(_workflow_worker_loop())
        workflow_logger.info("Workflow worker started")


@app.on_event("shutdown")
async def stop_workflow_worker() -> None:
    global _workflow_worker_task
    if _workflow_worker_task is None:
        return
    _workflow_worker_task.cancel()
    try:
        await _workflow_worker_task
    except asyncio.CancelledError:
        pass
    _workflow_worker_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/test")
async def test_endpoint():
    return {"status": "ok", "message": "test endpoint"}
