import asyncio
import sqlite3
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from clawbridge.db import create_task, get_task, get_task_run_logs, init_db
from clawbridge.scheduler import run_due_tasks, run_task


@pytest.fixture
def db(tmp_path: Path) -> sqlite3.Connection:
    return init_db(tmp_path / "test.db")


def _create(db, task_id: str, schedule_type: str, schedule_value: str, **kw) -> None:
    create_task(
        db,
        task_id=task_id,
        group_folder="main",
        chat_jid="telegram:42",
        prompt="test prompt",
        schedule_type=schedule_type,
        schedule_value=schedule_value,
        next_run=kw.pop("next_run", "2025-01-01T00:00:00.000Z"),
        **kw,
    )


def test_cron_task_survives_error(db: sqlite3.Connection) -> None:
    """Verify recurring tasks get next_run even when the processor fails."""
    _create(db, "cron-task", "cron", "0 * * * *")
    task = get_task(db, task_id="cron-task")
    assert task is not None

    process = AsyncMock(side_effect=RuntimeError("Agent failed"))
    asyncio.run(run_task(task, db, process))

    updated_task = get_task(db, task_id="cron-task")
    assert updated_task is not None
    assert updated_task.next_run is not None
    assert updated_task.next_run > "2025-01-01T00:00:00.000Z"
    assert updated_task.status == "active"
    assert "Error: Agent failed" in updated_task.last_result

    [entry] = get_task_run_logs(db, "cron-task")
    assert entry.status == "error"
    assert entry.error == "Agent failed"
    assert entry.result is None


def test_interval_task_survives_error(db: sqlite3.Connection) -> None:
    _create(db, "interval-task", "interval", "3600000")
    task = get_task(db, task_id="interval-task")
    assert task is not None

    asyncio.run(run_task(task, db, AsyncMock(side_effect=RuntimeError("Agent failed"))))

    updated_task = get_task(db, task_id="interval-task")
    assert updated_task is not None
    assert updated_task.next_run is not None
    assert updated_task.status == "active"


def test_once_task_completes(db: sqlite3.Connection) -> None:
    _create(db, "once-task", "once", "2025-01-01T00:00:00.000Z")
    task = get_task(db, task_id="once-task")
    assert task is not None

    process = AsyncMock(return_value="Hello from agent")
    asyncio.run(run_task(task, db, process))

    process.assert_awaited_once()
    assert process.await_args.args[:2] == ("telegram:42", "test prompt")
    updated_task = get_task(db, task_id="once-task")
    assert updated_task is not None
    assert updated_task.next_run is None
    assert updated_task.status == "completed"
    assert updated_task.last_result == "Hello from agent"

    [entry] = get_task_run_logs(db, "once-task")
    assert entry.status == "success"
    assert entry.result == "Hello from agent"


def test_invalid_schedule_stops_task(db: sqlite3.Connection) -> None:
    _create(db, "bad-cron", "cron", "not a cron")
    task = get_task(db, task_id="bad-cron")
    assert task is not None

    asyncio.run(run_task(task, db, AsyncMock(return_value="ok")))

    updated_task = get_task(db, task_id="bad-cron")
    assert updated_task is not None
    assert updated_task.status == "completed"


def test_result_summary_is_truncated(db: sqlite3.Connection) -> None:
    _create(db, "long", "once", "2025-01-01T00:00:00.000Z")
    task = get_task(db, task_id="long")
    assert task is not None

    asyncio.run(run_task(task, db, AsyncMock(return_value="x" * 500)))

    updated_task = get_task(db, task_id="long")
    assert updated_task is not None
    assert len(updated_task.last_result) == 200
    assert len(get_task_run_logs(db, "long")[0].result) == 500


def test_result_is_sent(db: sqlite3.Connection) -> None:
    _create(db, "t-send", "once", "2025-01-01T00:00:00.000Z")
    task = get_task(db, task_id="t-send")
    assert task is not None
    send = AsyncMock()

    asyncio.run(run_task(task, db, AsyncMock(return_value="Reminder!"), send))

    send.assert_awaited_once_with("telegram:42", "Reminder!")


@pytest.mark.parametrize(
    "process",
    [
        AsyncMock(side_effect=RuntimeError("Agent failed")),
        AsyncMock(return_value=None),
        AsyncMock(return_value=""),
    ],
)
def test_nothing_sent_without_result(db: sqlite3.Connection, process) -> None:
    _create(db, "t-quiet", "once", "2025-01-01T00:00:00.000Z")
    task = get_task(db, task_id="t-quiet")
    assert task is not None
    send = AsyncMock()

    asyncio.run(run_task(task, db, process, send))

    send.assert_not_awaited()


def test_send_failure_is_logged(db: sqlite3.Connection) -> None:
    _create(db, "t-fail", "once", "2025-01-01T00:00:00.000Z")
    task = get_task(db, task_id="t-fail")
    assert task is not None
    send = AsyncMock(side_effect=ValueError("Invalid Telegram JID"))

    asyncio.run(run_task(task, db, AsyncMock(return_value="hi"), send))

    updated_task = get_task(db, task_id="t-fail")
    assert updated_task is not None
    assert updated_task.status == "completed"


def test_run_due_tasks_in_next_run_order(db: sqlite3.Connection) -> None:
    _create(db, "second", "once", "x", next_run="2024-02-01T00:00:00.000Z")
    _create(db, "first", "once", "x", next_run="2024-01-01T00:00:00.000Z")
    _create(db, "future", "once", "x", next_run="2099-01-01T00:00:00.000Z")
    _create(db, "paused", "once", "x", next_run="2024-01-01T00:00:00.000Z", status="paused")

    seen: list[str] = []

    async def process(chat_jid: str, content: str, timestamp: str, *args) -> str:
        seen.append(content)
        return "done"

    _create(db, "third", "cron", "0 9 * * *", next_run="2024-03-01T00:00:00.000Z")
    db.execute("UPDATE scheduled_tasks SET prompt = id")

    ran = asyncio.run(run_due_tasks(db, process))

    assert ran == 3
    assert seen == ["first", "second", "third"]
    third = get_task(db, "third")
    assert third is not None
    assert third.status == "active"
    assert third.next_run is not None and third.next_run > "2024-03-01"
