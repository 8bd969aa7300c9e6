"""WhatsApp ingestion: chat discovery, content retention and group name sync.

The multi-device protocol client lives outside this package.  It hands raw
web-message mappings (``key``, ``messageTimestamp``, ``message``) and group
subjects to the functions here.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Container, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

from clawbridge.config import settings
from clawbridge.db import (
    DbConnection,
    get_last_group_sync,
    message_timestamp,
    set_last_group_sync,
    store_chat_metadata,
    store_message,
    update_chat_name,
)

log = logging.getLogger(__name__)

STATUS_BROADCAST_JID = "status@broadcast"

GroupFetcher = Callable[[], Awaitable[Mapping[str, str]]]


def ingest_message(
    db: DbConnection,
    msg: Mapping[str, Any],
    *,
    retained_chats: Container[str],
    push_name: str | None = None,
    media_type: str | None = None,
    media_data: str | None = None,
    media_filename: str | None = None,
) -> bool:
    """Record an inbound WhatsApp message.

    Every chat gets its metadata updated so it can be discovered.  Content is
    stored only for chats in *retained_chats*.  Returns ``True`` when the
    message content was stored.
    """
    key = msg.get("key") or {}
    chat_jid = key.get("remoteJid")
    if not chat_jid or chat_jid == STATUS_BROADCAST_JID:
        return False

    store_chat_metadata(db, chat_jid, message_timestamp(msg))

    if chat_jid not in retained_chats:
        return False

    store_message(
        db,
        msg,
        chat_jid,
        bool(key.get("fromMe")),
        push_name=push_name,
        media_type=media_type,
        media_data=media_data,
        media_filename=media_filename,
    )
    return True


def group_sync_due(
    last_sync: str | None, interval: timedelta, now: datetime | None = None
) -> bool:
    if last_sync is None:
        return True
    if now is None:
        now = datetime.now(timezone.utc)
    return now - datetime.fromisoformat(last_sync) >= interval


async def sync_group_names(
    db: DbConnection,
    fetch_groups: GroupFetcher,
    *,
    force: bool = False,
    interval: timedelta | None = None,
) -> bool:
    """Refresh group display names, at most once per *interval* unless *force*.

    *fetch_groups* returns a ``{jid: subject}`` mapping of every group the
    account participates in.  *interval* defaults to the
    ``group_sync_interval`` setting.  Returns ``True`` if a sync ran.
    """
    if interval is None:
        interval = timedelta(seconds=settings.group_sync_interval)
    if not force and not group_sync_due(get_last_group_sync(db), interval):
        log.debug("Skipping group sync, last one is recent")
        return False

    try:
        groups = await fetch_groups()
    except Exception:
        log.exception("Failed to fetch group metadata")
        return False

    count = 0
    for jid, subject in groups.items():
        if subject:
            update_chat_name(db, jid, subject)
            count += 1

    set_last_group_sync(db)
    log.info("Group metadata synced: %d groups", count)
    return True
