from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal, Protocol

from pydantic import BaseModel


class Chat(BaseModel):
    jid: str
    name: str | None = None
    last_message_time: str | None = None


class NewMessage(BaseModel):
    id: str
    chat_jid: str
    sender: str | None = None
    sender_name: str | None = None
    content: str
    timestamp: str
    media_type: str | None = None
    media_data: str | None = None
    media_filename: str | None = None


class ScheduledTask(BaseModel):
    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: str
    schedule_value: str
    context_mode: str = "isolated"
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: str = "active"
    created_at: str


class TaskRunLog(BaseModel):
    id: int | None = None
    task_id: str
    run_at: str
    duration_ms: int
    status: str
    result: str | None = None
    error: str | None = None


@dataclass
class ImageAttachment:
    """A base64-encoded image handed to the message processor."""

    data: str
    media_type: Literal["image/jpeg", "image/png"] = "image/jpeg"


@dataclass
class DocumentAttachment:
    data: str
    filename: str


class MessageProcessor(Protocol):
    """Generates the reply to a normalized message; ``None`` means no reply."""

    async def __call__(
        self,
        chat_jid: str,
        content: str,
        timestamp: str,
        images: list[ImageAttachment] | None = None,
        documents: list[DocumentAttachment] | None = None,
    ) -> str | None: ...


ResponseSender = Callable[[str, str], Awaitable[None]]
SessionClearer = Callable[[str], Awaitable[None]]
