import asyncio
import logging
from datetime import datetime, timezone

from clawbridge.db import (
    DbConnection,
    format_timestamp,
    get_due_tasks,
    log_task_run,
    update_task_after_run,
)
from clawbridge.models import MessageProcessor, ResponseSender, ScheduledTask
from clawbridge.scheduling import next_run_after_run

log = logging.getLogger(__name__)

RESULT_SUMMARY_LENGTH = 200


async def run_task(
    task: ScheduledTask,
    db: DbConnection,
    process_message: MessageProcessor,
    send_response: ResponseSender | None = None,
) -> None:
    start_time = datetime.now(timezone.utc)
    log.info("Running task %s for %s", task.id, task.chat_jid)

    result_text = None
    error_msg = None

    try:
        result_text = await process_message(
            task.chat_jid, task.prompt, format_timestamp(start_time)
        )
        result_summary = (
            result_text[:RESULT_SUMMARY_LENGTH] if result_text else "Completed"
        )
    except Exception as e:
        log.exception("Task %s failed", task.id)
        error_msg = str(e)
        result_summary = f"Error: {error_msg}"

    # Recurring tasks keep their schedule even when this run failed.
    try:
        next_run = next_run_after_run(task)
    except ValueError:
        log.exception("Task %s has an invalid schedule, it will not run again", task.id)
        next_run = None

    duration_ms = int((datetime.now(timezone.utc) - start_time).total_seconds() * 1000)

    update_task_after_run(
        db, task_id=task.id, next_run=next_run, last_result=result_summary
    )
    log_task_run(
        db,
        task_id=task.id,
        run_at=format_timestamp(start_time),
        duration_ms=duration_ms,
        status="error" if error_msg else "success",
        result=result_text,
        error=error_msg,
    )

    if result_text and not error_msg and send_response is not None:
        try:
            await send_response(task.chat_jid, result_text)
        except Exception:
            log.exception("Failed to deliver result of task %s to %s", task.id, task.chat_jid)


async def run_due_tasks(
    db: DbConnection,
    process_message: MessageProcessor,
    send_response: ResponseSender | None = None,
) -> int:
    """Run every due task, earliest ``next_run`` first.  Returns how many ran."""
    due_tasks = get_due_tasks(db)
    for task in due_tasks:
        await run_task(task, db, process_message, send_response)
    return len(due_tasks)


async def run_scheduler(
    db: DbConnection,
    process_message: MessageProcessor,
    send_response: ResponseSender | None = None,
    poll_interval: float = 60,
) -> None:
    db.execute("PRAGMA journal_mode=WAL")
    log.info("Scheduler started, polling every %ss", poll_interval)

    while True:
        await run_due_tasks(db, process_message, send_response)
        await asyncio.sleep(poll_interval)
