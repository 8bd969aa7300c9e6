import asyncio
import logging
import signal
from contextlib import suppress

import click

from clawbridge.config import settings
from clawbridge.db import (
    DbConnection,
    get_all_chats,
    get_all_tasks,
    get_messages_since,
    get_task_run_logs,
    init_db,
)
from clawbridge.models import MessageProcessor, SessionClearer
from clawbridge.plugins import (
    find_processor,
    find_session_clearer,
    load_plugins,
    run_db_migrations,
)
from clawbridge.scheduler import run_scheduler

log = logging.getLogger(__name__)


def _get_db() -> DbConnection:
    return init_db(settings.db_path)


class _PluginGroup(click.Group):
    _plugins_loaded = False

    def _ensure_plugins(self) -> None:
        if self._plugins_loaded:
            return
        self._plugins_loaded = True
        for plugin in load_plugins():
            plugin.register_commands(self)

    def list_commands(self, ctx: click.Context) -> list[str]:
        self._ensure_plugins()
        return super().list_commands(ctx)

    def get_command(self, ctx: click.Context, cmd_name: str) -> click.Command | None:
        self._ensure_plugins()
        return super().get_command(ctx, cmd_name)


def _load_collaborators(
    db: DbConnection,
) -> tuple[MessageProcessor, SessionClearer | None]:
    plugins = load_plugins()
    run_db_migrations(db, plugins)
    processor = find_processor(plugins)
    if processor is None:
        raise click.ClickException(
            "No installed plugin provides a message processor "
            "(entry point group 'clawbridge.plugins')."
        )
    return processor, find_session_clearer(plugins)


async def _wait_for_shutdown() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await stop.wait()


def _log_scheduler_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error(
            "Scheduler stopped on an error, due tasks will not run", exc_info=exc
        )


@click.group(cls=_PluginGroup, invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context) -> None:
    """clawbridge: chat platform bridge, message store and task scheduler"""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # Every long-poll request is logged by httpx at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    if not ctx.invoked_subcommand:
        click.echo(ctx.get_help())


@main.command("init-db")
def init_db_command() -> None:
    """Create or migrate the database schema."""
    db = _get_db()
    run_db_migrations(db, load_plugins())
    click.echo(f"Database ready at {settings.db_path}")


@main.command()
def chats() -> None:
    """List known chats, most recently active first."""
    db = _get_db()
    for chat in get_all_chats(db):
        click.echo(f"{chat.jid} | {chat.name} | {chat.last_message_time}")


@main.command()
@click.argument("chat_jid")
@click.option("--since", default="", help="Only messages after this ISO 8601 time.")
def messages(chat_jid: str, since: str) -> None:
    """Show stored messages of a chat, excluding the assistant's own."""
    db = _get_db()
    for msg in get_messages_since(db, chat_jid, since, settings.assistant_name):
        click.echo(f"{msg.timestamp} {msg.sender_name}: {msg.content}")


@main.command()
def tasks() -> None:
    """List all scheduled tasks and their status."""
    db = _get_db()
    all_tasks = get_all_tasks(db)
    if not all_tasks:
        click.echo("No scheduled tasks.")
        return
    click.echo(
        f"{'ID':<10} {'Group':<20} {'Prompt':<50} {'Status':<10} {'Next Run'}"
    )
    click.echo("-" * 110)
    for task in all_tasks:
        click.echo(
            f"{task.id:<10} {task.group_folder:<20} {task.prompt[:50]:<50}"
            f" {task.status:<10} {task.next_run}"
        )


@main.command()
@click.argument("task_id")
@click.option("--limit", default=10, show_default=True, help="Number of runs to show.")
def runs(task_id: str, limit: int) -> None:
    """Show the most recent runs of a task."""
    db = _get_db()
    logs = get_task_run_logs(db, task_id, limit=limit)
    if not logs:
        click.echo(f"No runs recorded for task {task_id}.")
        return
    for entry in logs:
        outcome = entry.error if entry.error else (entry.result or "")[:60]
        click.echo(
            f"{entry.run_at} {entry.status:<8} {entry.duration_ms:>7}ms {outcome}"
        )


@main.command()
def scheduler() -> None:
    """Run the task scheduler daemon."""
    db = _get_db()
    processor, _ = _load_collaborators(db)
    asyncio.run(
        run_scheduler(db, processor, poll_interval=settings.scheduler_poll_interval)
    )


@main.command()
@click.option(
    "--with-scheduler/--without-scheduler",
    default=True,
    show_default=True,
    help="Also run due tasks and deliver their results over Telegram.",
)
def telegram(with_scheduler: bool) -> None:
    """Run the Telegram bridge until interrupted."""
    from clawbridge.telegram_bridge import TelegramBridge

    db = _get_db()
    processor, clear_session = _load_collaborators(db)
    try:
        bridge = TelegramBridge.from_settings(
            db, processor, settings, clear_session=clear_session
        )
    except ValueError as e:
        raise click.ClickException(str(e)) from e

    async def _serve() -> None:
        await bridge.start()
        scheduler_task = None
        if with_scheduler:
            scheduler_task = asyncio.create_task(
                run_scheduler(
                    db,
                    processor,
                    bridge.send,
                    poll_interval=settings.scheduler_poll_interval,
                )
            )
            scheduler_task.add_done_callback(_log_scheduler_exit)
        try:
            await _wait_for_shutdown()
        finally:
            log.info("Shutting down Telegram bridge")
            try:
                if scheduler_task is not None:
                    scheduler_task.cancel()
                    # a scheduler failure was already logged when it happened
                    with suppress(asyncio.CancelledError, Exception):
                        await scheduler_task
            finally:
                await bridge.stop()

    asyncio.run(_serve())


if __name__ == "__main__":
    main()
