"""Durable per-event workflow for inbound LINE messages.

Every accepted message event becomes a ``workflow_instances`` row. The
instance runs as an ordered list of named steps; each finished step is written
to ``workflow_steps`` so that a retried instance skips the steps it already
completed and resumes at the first unfinished one. Failed instances go back to
PENDING with exponential backoff and are picked up again by the worker loop.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.config import Settings, settings
from app.database import SessionLocal
from app.logging_config import bind_logger, get_logger
from app.models import WorkflowInstance, WorkflowStep
from app.schemas.line import LineEvent, LineMessageWorkflowParams
from app.services.conversation_service import normalize_conversation_id, resolve_conversation_id
from app.services.dify_service import DifyClient, create_dify_client, dify_config_from_settings
from app.services.line_service import LineService
from app.services.message_service import insert_message_record

logger = get_logger("workflow_service")

LINE_MESSAGE_WORKFLOW = "line-message"

STEP_GET_CONVERSATION_ID = "get-conversation-id"
STEP_PROCESS_DIFY = "process-dify"
STEP_SAVE_AND_SEND = "save-and-send-parallel"
STEP_SAVE_TO_DATABASE = "save-to-database"

STATUS_PENDING = "PENDING"
STATUS_PROCESSING = "PROCESSING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"

SessionFactory = Callable[[], Session]

# strong references to detached workflow tasks until they finish
_background_tasks: set[asyncio.Task] = set()


class WorkflowConfigError(Exception):
    """Unrecoverable input problem; the instance is failed without retry."""


class DualWriteError(Exception):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === STEP LOG ===


_MISSING = object()


def _load_step_result(session_factory: SessionFactory, instance_id: str, step_name: str) -> Any:
    db = session_factory()
    try:
        step = (
            db.query(WorkflowStep)
            .filter(WorkflowStep.instance_id == instance_id, WorkflowStep.step_name == step_name)
            .first()
        )
        return _MISSING if step is None else step.result_json
    finally:
        db.close()


def _save_step_result(session_factory: SessionFactory, instance_id: str, step_name: str, result: Any) -> None:
    db = session_factory()
    try:
        db.add(
            WorkflowStep(
                instance_id=instance_id,
                step_name=step_name,
                result_json=result,
                completed_at=_utcnow(),
            )
        )
        db.commit()
    finally:
        db.close()


async def run_step(
    session_factory: SessionFactory,
    instance_id: str,
    step_name: str,
    fn: Callable[[], Awaitable[Any]],
) -> Any:
    """Run ``fn`` once per instance; later calls return the checkpointed result.

    The result must be JSON serializable. If ``fn`` raises, nothing is recorded
    and the exception propagates to the instance runner.
    """
    cached = await asyncio.to_thread(_load_step_result, session_factory, instance_id, step_name)
    if cached is not _MISSING:
        logger.info(
            "Workflow step already completed, skipping",
            extra={"context": {"workflow_instance_id": instance_id, "step": step_name}},
        )
        return cached

    result = await fn()
    await asyncio.to_thread(_save_step_result, session_factory, instance_id, step_name, result)
    return result


# === LINE MESSAGE WORKFLOW ===


def params_from_event(event: LineEvent) -> Optional[LineMessageWorkflowParams]:
    """Workflow input for a message event, or None for events we do not handle."""
    if event.type != "message" or event.message is None:
        return None
    if event.source is None or not event.source.userId:
        return None

    message = event.message
    image_url = None
    if message.type == "image" and message.contentProvider is not None:
        image_url = message.contentProvider.originalContentUrl

    return LineMessageWorkflowParams(
        user_id=event.source.userId,
        message_type=message.type,
        message_content=message.text or None,
        image_url=image_url,
    )


def _resolve_in_session(session_factory: SessionFactory, user_id: str) -> str:
    db = session_factory()
    try:
        return resolve_conversation_id(db, user_id)
    finally:
        db.close()


def _insert_in_session(session_factory: SessionFactory, fields: dict) -> dict:
    db = session_factory()
    try:
        return insert_message_record(db, **fields).to_dict()
    finally:
        db.close()


async def save_and_notify(
    save: Callable[[], Awaitable[Any]],
    notify: Callable[[], Awaitable[Any]],
    log=logger,
) -> dict:
    """Run persistence and push concurrently and tolerate one failing side."""
    save_result, notify_result = await asyncio.gather(save(), notify(), return_exceptions=True)
    db_success = not isinstance(save_result, BaseException)
    line_success = not isinstance(notify_result, BaseException)

    if not db_success and not line_success:
        log.error(
            "Both database save and LINE push failed",
            extra={"context": {"db_error": str(save_result), "line_error": str(notify_result)}},
        )
        raise DualWriteError("Both database save and LINE push failed") from save_result

    if not db_success:
        log.error("Database save failed, LINE push succeeded", extra={"context": {"error": str(save_result)}})
    if not line_success:
        log.error("LINE push failed, database save succeeded", extra={"context": {"error": str(notify_result)}})

    return {
        "message_record": save_result if db_success else None,
        "db_success": db_success,
        "line_success": line_success,
    }


async def run_line_message_workflow(
    instance_id: str,
    params: LineMessageWorkflowParams,
    *,
    session_factory: Optional[SessionFactory] = None,
    dify_client: Optional[DifyClient] = None,
    line_service: Optional[LineService] = None,
    app_settings: Optional[Settings] = None,
) -> dict:
    session_factory = session_factory or SessionLocal
    app_settings = app_settings or settings
    log = bind_logger("workflow", workflow_instance_id=instance_id, user_id=params.user_id)

    if not params.user_id:
        log.error("Workflow started without user id", context={"params": params.model_dump()})
        raise WorkflowConfigError("userId is required")
    user_id = params.user_id

    async def get_conversation_id() -> str:
        return await asyncio.to_thread(_resolve_in_session, session_factory, user_id)

    conversation_id = await run_step(session_factory, instance_id, STEP_GET_CONVERSATION_ID, get_conversation_id)
    log.info("Conversation resolved", context={"conversation_id": conversation_id})

    async def process_dify() -> dict:
        if not params.message_content:
            return {"answer": "", "conversation_id": conversation_id}
        client = dify_client or create_dify_client(dify_config_from_settings("chat", app_settings))
        result = await client.send(params.message_content, conversation_id, user_id, params.image_url)
        return {"answer": result.answer, "conversation_id": result.conversation_id}

    ai_result = await run_step(session_factory, instance_id, STEP_PROCESS_DIFY, process_dify)
    answer = ai_result.get("answer") or ""

    record_fields = {
        "conversation_id": normalize_conversation_id(ai_result.get("conversation_id") or conversation_id),
        "user_id": user_id,
        "message_type": params.message_type,
        "message_content": params.message_content,
        "image_url": params.image_url,
        "dify_response": answer,
    }

    async def save() -> dict:
        return await asyncio.to_thread(_insert_in_session, session_factory, record_fields)

    if answer:
        notifier = line_service or LineService(
            app_settings.line_channel_access_token,
            push_url=app_settings.line_push_url,
            timeout_seconds=app_settings.line_push_timeout_seconds,
        )

        async def notify() -> None:
            await notifier.push_text(user_id, answer)

        async def save_and_send() -> dict:
            return await save_and_notify(save, notify, log=log)

        result = await run_step(session_factory, instance_id, STEP_SAVE_AND_SEND, save_and_send)
    else:

        async def save_only() -> dict:
            return {"message_record": await save(), "db_success": True, "line_success": False}

        result = await run_step(session_factory, instance_id, STEP_SAVE_TO_DATABASE, save_only)

    log.info("Workflow completed", context={"db_success": result["db_success"], "line_success": result["line_success"]})
    return result


# === INSTANCE STORE ===


def enqueue_workflow_instance(
    db: Session,
    params: LineMessageWorkflowParams,
    workflow_name: str = LINE_MESSAGE_WORKFLOW,
) -> str:
    now = _utcnow()
    instance_id = str(uuid.uuid4())
    db.add(
        WorkflowInstance(
            id=instance_id,
            workflow_name=workflow_name,
            params_json=params.model_dump(),
            status=STATUS_PENDING,
            attempts=0,
            created_at=now,
            updated_at=now,
        )
    )
    db.commit()
    return instance_id


def _claim_pending(db: Session, instance_id: str, now: datetime) -> Optional[dict]:
    """Move one PENDING instance to PROCESSING; None if another runner got it first."""
    result = db.execute(
        update(WorkflowInstance)
        .where(WorkflowInstance.id == instance_id, WorkflowInstance.status == STATUS_PENDING)
        .values(
            status=STATUS_PROCESSING,
            attempts=func.coalesce(WorkflowInstance.attempts, 0) + 1,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    row = db.execute(
        select(WorkflowInstance.id, WorkflowInstance.params_json, WorkflowInstance.attempts).where(
            WorkflowInstance.id == instance_id
        )
    ).one()
    return {"id": row.id, "params_json": row.params_json, "attempts": row.attempts}


def claim_workflow_instance(db: Session, instance_id: str) -> Optional[dict]:
    row = _claim_pending(db, instance_id, _utcnow())
    db.commit()
    return row


def _due_instance_ids(db: Session, now: datetime, limit: int) -> list[str]:
    rows = (
        db.query(WorkflowInstance.id)
        .filter(
            WorkflowInstance.status == STATUS_PENDING,
            (WorkflowInstance.next_attempt_at.is_(None)) | (WorkflowInstance.next_attempt_at <= now),
        )
        .order_by(WorkflowInstance.created_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
        .all()
    )
    return [row.id for row in rows]


def claim_due_workflow_instances(db: Session, *, limit: int = 10) -> list[dict]:
    now = _utcnow()
    rows = []
    for instance_id in _due_instance_ids(db, now, limit):
        # the candidate read is not a lock on SQLite; the conditional update decides
        row = _claim_pending(db, instance_id, now)
        if row is not None:
            rows.append(row)
    db.commit()
    return rows


def release_stale_processing(db: Session, *, stale_seconds: int) -> int:
    """Put instances stuck in PROCESSING (crashed runner) back to PENDING."""
    cutoff = _utcnow() - timedelta(seconds=stale_seconds)
    count = (
        db.query(WorkflowInstance)
        .filter(WorkflowInstance.status == STATUS_PROCESSING, WorkflowInstance.updated_at < cutoff)
        .update(
            {"status": STATUS_PENDING, "next_attempt_at": None, "updated_at": _utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    return count


def mark_workflow_status(
    db: Session,
    *,
    instance_id: str,
    status: str,
    last_error: Optional[str] = None,
    next_attempt_at: Optional[datetime] = None,
) -> None:
    db.query(WorkflowInstance).filter(WorkflowInstance.id == instance_id).update(
        {
            "status": status,
            "last_error": last_error,
            "next_attempt_at": next_attempt_at,
            "updated_at": _utcnow(),
        },
        synchronize_session=False,
    )
    db.commit()


def _in_session(session_factory: SessionFactory, fn: Callable[..., Any], **kwargs) -> Any:
    db = session_factory()
    try:
        return fn(db, **kwargs)
    finally:
        db.close()


def retry_delay_seconds(attempts: int, retry_backoff_seconds: float) -> float:
    return retry_backoff_seconds * (2 ** max(attempts - 1, 0))


# === EXECUTION ===


async def execute_claimed_instance(
    row: dict,
    *,
    max_attempts: int,
    retry_backoff_seconds: float,
    session_factory: Optional[SessionFactory] = None,
    **workflow_kwargs,
) -> str:
    """Run a claimed instance and record its outcome. Returns the new status."""
    session_factory = session_factory or SessionLocal
    instance_id = row["id"]
    attempts = int(row.get("attempts") or 1)

    try:
        params = LineMessageWorkflowParams.model_validate(row["params_json"] or {})
        await run_line_message_workflow(instance_id, params, session_factory=session_factory, **workflow_kwargs)
    except WorkflowConfigError as exc:
        await asyncio.to_thread(
            _in_session,
            session_factory,
            mark_workflow_status,
            instance_id=instance_id,
            status=STATUS_FAILED,
            last_error=str(exc),
        )
        return STATUS_FAILED
    except Exception as exc:
        if attempts >= max_attempts:
            status, next_attempt_at = STATUS_FAILED, None
        else:
            status = STATUS_PENDING
            next_attempt_at = _utcnow() + timedelta(seconds=retry_delay_seconds(attempts, retry_backoff_seconds))
        logger.error(
            f"Workflow instance failed: {exc}",
            exc_info=True,
            extra={
                "context": {
                    "workflow_instance_id": instance_id,
                    "attempts": attempts,
                    "status": status,
                    "next_attempt_at": next_attempt_at,
                }
            },
        )
        await asyncio.to_thread(
            _in_session,
            session_factory,
            mark_workflow_status,
            instance_id=instance_id,
            status=status,
            last_error=str(exc)[:2000],
            next_attempt_at=next_attempt_at,
        )
        return status

    await asyncio.to_thread(
        _in_session, session_factory, mark_workflow_status, instance_id=instance_id, status=STATUS_COMPLETED
    )
    return STATUS_COMPLETED


async def run_workflow_instance(
    instance_id: str,
    *,
    session_factory: Optional[SessionFactory] = None,
    app_settings: Optional[Settings] = None,
) -> Optional[str]:
    session_factory = session_factory or SessionLocal
    app_settings = app_settings or settings
    row = await asyncio.to_thread(_in_session, session_factory, claim_workflow_instance, instance_id=instance_id)
    if row is None:
        return None
    return await execute_claimed_instance(
        row,
        max_attempts=app_settings.workflow_max_attempts,
        retry_backoff_seconds=app_settings.workflow_retry_backoff_seconds,
        session_factory=session_factory,
        app_settings=app_settings,
    )


def _spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def dispatch_line_events(
    events: Iterable[LineEvent],
    *,
    session_factory: Optional[SessionFactory] = None,
) -> list[str]:
    """Create one durable instance per message event and start each one detached.

    Runs after the webhook response has been sent, so errors are only logged.
    """
    session_factory = session_factory or SessionLocal
    instance_ids: list[str] = []
    try:
        for event in events:
            params = params_from_event(event)
            if params is None:
                continue
            instance_id = await asyncio.to_thread(
                _in_session, session_factory, enqueue_workflow_instance, params=params
            )
            instance_ids.append(instance_id)
            logger.info(
                "Workflow instance dispatched",
                extra={"context": {"workflow_instance_id": instance_id, "user_id": params.user_id}},
            )
            _spawn(run_workflow_instance(instance_id, session_factory=session_factory))
    except Exception as exc:
        logger.error(
            f"Critical error in workflow startup: {exc}",
            exc_info=True,
            extra={"context": {"dispatched": instance_ids}},
        )
    return instance_ids


async def process_due_workflows(
    *,
    limit: int,
    max_attempts: int,
    retry_backoff_seconds: float,
    stale_seconds: int,
    session_factory: Optional[SessionFactory] = None,
) -> dict:
    """One worker tick: release stale rows, claim due instances and run them."""
    session_factory = session_factory or SessionLocal
    released = await asyncio.to_thread(
        _in_session, session_factory, release_stale_processing, stale_seconds=stale_seconds
    )
    rows = await asyncio.to_thread(_in_session, session_factory, claim_due_workflow_instances, limit=limit)
    statuses = await asyncio.gather(
        *(
            execute_claimed_instance(
                row,
                max_attempts=max_attempts,
                retry_backoff_seconds=retry_backoff_seconds,
                session_factory=session_factory,
            )
            for row in rows
        )
    )
    return {
        "released": released,
        "claimed": len(rows),
        "completed": statuses.count(STATUS_COMPLETED),
        "retrying": statuses.count(STATUS_PENDING),
        "failed": statuses.count(STATUS_FAILED),
    }
