"""Telegram ingestion bridge.

Telegram messages are answered as they arrive and are never written to the
message ledger, so the ledger polling loop can't process them a second time.
Only chat metadata is recorded, for discovery.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from textwrap import dedent
from typing import Any

from telegram import Message, ReplyParameters, Update
from telegram.constants import ChatAction, ParseMode
from telegram.error import InvalidToken, TelegramError
from telegram.ext import Application, ContextTypes, ExtBot, MessageHandler, filters
from telegram.request import HTTPXRequest

from clawbridge.config import Settings
from clawbridge.db import (
    TELEGRAM_JID_PREFIX,
    DbConnection,
    format_timestamp,
    store_chat_metadata,
)
from clawbridge.models import ImageAttachment, MessageProcessor, SessionClearer
from clawbridge.resilience import ResilientPoller

log = logging.getLogger(__name__)

MAIN_GROUP_FOLDER = "main"
ERROR_REPLY = (
    "Sorry, I encountered an error processing your message. Please try again later."
)

MediaDownloader = Callable[[Message], Awaitable[ImageAttachment | None]]


@dataclass
class TelegramMessage:
    """An inbound Telegram message reduced to what the bridge needs."""

    chat_id: int
    user_id: int
    text: str
    message_id: int
    timestamp: datetime
    username: str | None = None
    chat_title: str | None = None
    media_type: str | None = None
    image: ImageAttachment | None = None

    @property
    def chat_jid(self) -> str:
        return f"{TELEGRAM_JID_PREFIX}{self.chat_id}"

    @property
    def iso_timestamp(self) -> str:
        return format_timestamp(self.timestamp)


def normalize_message(message: Message) -> TelegramMessage | None:
    """Build a :class:`TelegramMessage`, or ``None`` if there is nothing to handle."""
    text = message.text or message.caption or ""
    media_type = None
    if message.photo:
        media_type = "image"
    elif message.video:
        media_type = "video"

    if not text and media_type is None:
        return None

    sender = message.from_user
    return TelegramMessage(
        chat_id=message.chat.id,
        user_id=sender.id if sender else 0,
        username=sender.username if sender else None,
        chat_title=message.chat.title,
        text=text,
        message_id=message.message_id,
        timestamp=message.date,
        media_type=media_type,
    )


def should_process_message(
    text: str, is_private_chat: bool, trigger: re.Pattern[str]
) -> bool:
    # The main (private) chat answers everything, groups need the trigger.
    if is_private_chat:
        return True
    return bool(trigger.search(text))


def strip_trigger(text: str, trigger: re.Pattern[str]) -> str:
    return trigger.sub("", text).strip()


def parse_chat_jid(chat_jid: str) -> int:
    """Return the numeric Telegram chat id from a ``telegram:<id>`` jid.

    Raises:
        ValueError: if *chat_jid* is not a Telegram jid.
    """
    if not chat_jid.startswith(TELEGRAM_JID_PREFIX):
        raise ValueError(f"Invalid Telegram JID: {chat_jid}")
    try:
        return int(chat_jid[len(TELEGRAM_JID_PREFIX) :])
    except ValueError:
        raise ValueError(f"Invalid chat ID in JID: {chat_jid}") from None


class PollingReportingBot(ExtBot):
    """``ExtBot`` that reports every failed ``getUpdates`` call before raising it.

    The updater's retry loop handles timeouts and token rejection on its own
    and never passes them to its ``error_callback``, so polling failures are
    observed at the bot instead.
    """

    __slots__ = ("_polling_error_callback",)

    def __init__(self, token: str, **kwargs: Any) -> None:
        super().__init__(token, **kwargs)
        self._polling_error_callback: Callable[[TelegramError], None] | None = None

    def report_polling_errors_to(
        self, callback: Callable[[TelegramError], None] | None
    ) -> None:
        self._polling_error_callback = callback

    async def get_updates(self, *args: Any, **kwargs: Any) -> tuple[Update, ...]:
        try:
            return await super().get_updates(*args, **kwargs)
        except TelegramError as exc:
            if self._polling_error_callback is not None:
                self._polling_error_callback(exc)
            raise


def _already_reported(exc: TelegramError) -> None:
    log.debug("Polling error passed to the updater: %s", exc)


class TelegramPollingTransport:
    """Starts and stops long polling on a python-telegram-bot application."""

    def __init__(
        self,
        application: Application,
        error_callback: Callable[[TelegramError], None] | None = None,
    ) -> None:
        self._app = application
        self.error_callback = error_callback

    def _report(self, exc: TelegramError) -> None:
        if self.error_callback is not None:
            self.error_callback(exc)

    async def start(self) -> None:
        bot = self._app.bot
        if isinstance(bot, PollingReportingBot):
            bot.report_polling_errors_to(self._report)
            await self._app.updater.start_polling(error_callback=_already_reported)
        else:
            await self._app.updater.start_polling(error_callback=self.error_callback)

    async def stop(self) -> None:
        if not self._app.updater.running:
            return
        try:
            await self._app.updater.stop()
        except InvalidToken:
            # The polling task already died on the token and that was reported.
            log.debug("Polling had already ended on a rejected token")


class TelegramBridge:
    def __init__(
        self,
        db: DbConnection,
        application: Application,
        process_message: MessageProcessor,
        *,
        authorized_user_id: int | None = None,
        main_chat_id: int | None = None,
        clear_session: SessionClearer | None = None,
        download_media: MediaDownloader | None = None,
        assistant_name: str = "Andy",
        trigger: re.Pattern[str] | None = None,
        poller: ResilientPoller | None = None,
    ) -> None:
        self._db = db
        self._app = application
        self._process_message = process_message
        self._authorized_user_id = authorized_user_id
        self._main_chat_id = main_chat_id
        self._clear_session = clear_session
        self._download_media = download_media
        self._assistant_name = assistant_name
        self._trigger = trigger or re.compile(
            rf"^@{re.escape(assistant_name)}\b", re.IGNORECASE
        )

        self.transport = TelegramPollingTransport(application)
        self.poller = poller or ResilientPoller(self.transport)
        self.transport.error_callback = self.poller.on_polling_error

        application.add_handler(MessageHandler(filters.ALL, self._on_update))

    @classmethod
    def from_settings(
        cls,
        db: DbConnection,
        process_message: MessageProcessor,
        settings: Settings,
        *,
        clear_session: SessionClearer | None = None,
    ) -> TelegramBridge:
        if not settings.telegram_token:
            raise ValueError("CLAWBRIDGE_TELEGRAM_TOKEN is not set")
        bot = PollingReportingBot(
            settings.telegram_token, request=HTTPXRequest(connection_pool_size=256)
        )
        application = Application.builder().bot(bot).build()
        return cls(
            db,
            application,
            process_message,
            authorized_user_id=settings.telegram_authorized_user_id,
            main_chat_id=settings.telegram_main_chat_id,
            clear_session=clear_session,
            assistant_name=settings.assistant_name,
            trigger=settings.trigger_pattern,
        )

    async def start(self) -> None:
        await self._app.initialize()
        await self._app.start()
        await self.poller.start()
        me = await self._app.bot.get_me()
        log.info("Telegram bot @%s is polling", me.username)

    async def stop(self) -> None:
        await self.poller.stop()
        await self._app.stop()
        await self._app.shutdown()

    def is_main_chat(self, chat_id: int) -> bool:
        if self._main_chat_id is not None:
            return chat_id == self._main_chat_id
        return chat_id > 0

    async def _on_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.message
        if message is None:
            return

        sender = message.from_user
        if sender is not None and sender.is_bot:
            log.debug("Skipping bot message from %s", sender.id)
            return
        if self._authorized_user_id is not None and (
            sender is None or sender.id != self._authorized_user_id
        ):
            log.warning(
                "Unauthorized Telegram user %s", sender.id if sender else None
            )
            return

        msg = normalize_message(message)
        if msg is None:
            return

        if msg.media_type == "image" and self._download_media is not None:
            try:
                msg.image = await self._download_media(message)
            except Exception:
                log.exception("Failed to download Telegram photo in chat %s", msg.chat_id)

        log.info(
            "Telegram message received: chat=%s user=%s media=%s",
            msg.chat_id,
            msg.user_id,
            msg.media_type,
        )
        await self.handle_message(msg)

    async def handle_message(self, msg: TelegramMessage) -> None:
        try:
            chat_name = msg.chat_title or (
                f"@{msg.username}" if msg.username else msg.chat_jid
            )
            await asyncio.to_thread(
                store_chat_metadata, self._db, msg.chat_jid, msg.iso_timestamp, chat_name
            )

            is_main_chat = self.is_main_chat(msg.chat_id)

            if msg.text.startswith("/"):
                await self._handle_command(msg.chat_id, msg.text, is_main_chat)
                return

            if not should_process_message(msg.text, is_main_chat, self._trigger):
                log.debug("Message in chat %s does not match trigger", msg.chat_id)
                return

            content = msg.text if is_main_chat else strip_trigger(msg.text, self._trigger)
            images = [msg.image] if msg.image else None

            log.info(
                "Processing Telegram message: chat=%s main=%s image=%s",
                msg.chat_id,
                is_main_chat,
                images is not None,
            )
            await self.send_typing_action(msg.chat_id)

            response = await self._process_message(
                msg.chat_jid, content, msg.iso_timestamp, images, None
            )
            if response:
                await self.send_message(msg.chat_id, response)
        except Exception:
            log.exception("Error processing Telegram message in chat %s", msg.chat_id)
            try:
                await self.send_message(msg.chat_id, ERROR_REPLY)
            except TelegramError:
                log.exception("Failed to send error message to chat %s", msg.chat_id)

    async def _handle_command(self, chat_id: int, text: str, is_main_chat: bool) -> None:
        # "/help@SomeBot" in groups addresses a specific bot
        command = text.lower().split()[0].split("@", 1)[0]

        if command in ("/clear", "/new", "/reset"):
            try:
                if self._clear_session is None:
                    raise RuntimeError("No session clearer configured")
                await self._clear_session(MAIN_GROUP_FOLDER)
            except Exception:
                log.exception("Failed to clear session for chat %s", chat_id)
                await self.send_message(
                    chat_id, "✗ Failed to clear session. Please try again."
                )
                return
            log.info("Session %s cleared from chat %s", MAIN_GROUP_FOLDER, chat_id)
            await self.send_message(
                chat_id, "✓ Session cleared. Starting fresh conversation!"
            )
        elif command == "/help":
            await self.send_message(chat_id, self.help_text(is_main_chat))
        else:
            log.debug("Unknown command %s in chat %s", command, chat_id)

    def help_text(self, is_main_chat: bool) -> str:
        how = (
            "Just send any message!"
            if is_main_chat
            else f"Mention @{self._assistant_name} in your message"
        )
        return dedent(f"""\
            *Available Commands:*

            /clear - Clear conversation history and start a new session
            /new - Same as /clear
            /reset - Same as /clear
            /help - Show this help message

            *How to talk to {self._assistant_name}:*
            {how}""")

    async def send_message(
        self,
        chat_id: int,
        text: str,
        *,
        parse_mode: str = ParseMode.MARKDOWN,
        reply_to_message_id: int | None = None,
    ) -> None:
        kwargs: dict[str, Any] = {"parse_mode": parse_mode}
        if reply_to_message_id is not None:
            kwargs["reply_parameters"] = ReplyParameters(message_id=reply_to_message_id)
        try:
            await self._app.bot.send_message(chat_id, text, **kwargs)
        except TelegramError:
            log.exception("Failed to send Telegram message to chat %s", chat_id)
            raise
        log.info("Telegram message sent: chat=%s length=%d", chat_id, len(text))

    async def send_typing_action(self, chat_id: int) -> None:
        try:
            await self._app.bot.send_chat_action(chat_id, ChatAction.TYPING)
        except TelegramError as exc:
            log.debug("Failed to send typing action to chat %s: %s", chat_id, exc)

    async def send(self, chat_jid: str, text: str) -> None:
        """Send *text* to a ``telegram:<id>`` chat, e.g. a scheduled task result."""
        await self.send_message(parse_chat_jid(chat_jid), text)
