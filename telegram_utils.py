from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from telegram import InputMediaPhoto
from telegram.constants import ChatAction
from telegram.error import TelegramError

from config import MAX_TELEGRAM_CHUNK, MAX_TELEGRAM_MEDIA_GROUP, TYPING_INTERVAL_S
from store import ChatMessage

LOGGER = logging.getLogger(__name__)


def _sent_date(sent: Any) -> datetime:
    date = getattr(sent, "date", None)
    if isinstance(date, datetime):
        return date
    return datetime.now(timezone.utc)


def clip_message(text: str) -> str:
    if len(text) > MAX_TELEGRAM_CHUNK:
        return text[: MAX_TELEGRAM_CHUNK - 1] + "…"
    return text


async def stream_message(
    bot: Any,
    *,
    chat_id: int,
    anchor: ChatMessage | None,
    delta: str,
) -> ChatMessage | None:
    """Render ``delta`` into the chat by sending or extending ``anchor``.

    Whitespace-only deltas are not rendered and leave the anchor unchanged.
    The returned anchor keeps the full concatenated text locally since Telegram
    trims whitespace from the text it echoes back. Only the rendered copy is
    clipped to the Telegram message limit; once clipping hides further deltas
    no edit is sent.
    """
    if not delta.strip():
        return anchor

    if anchor is None:
        sent = await bot.send_message(chat_id=chat_id, text=clip_message(delta))
        return ChatMessage(
            message_id=sent.message_id,
            chat_id=chat_id,
            user_id=None,
            date=_sent_date(sent),
            text=delta,
            from_bot=True,
        )

    text = anchor.text + delta
    rendered = clip_message(text)
    if rendered != clip_message(anchor.text):
        await bot.edit_message_text(chat_id=chat_id, message_id=anchor.message_id, text=rendered)
    return anchor.with_text(text)


async def _chat_action_loop(bot: Any, chat_id: int, action: str, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        try:
            await bot.send_chat_action(chat_id=chat_id, action=action)
        except TelegramError as exc:
            LOGGER.warning("failed to send chat action %s to chat %s: %s", action, chat_id, exc)
            return


@asynccontextmanager
async def chat_action(
    bot: Any,
    chat_id: int,
    action: str = ChatAction.TYPING,
    *,
    interval_s: float | None = None,
) -> AsyncIterator[Callable[[], Any]]:
    """Keep a chat action visible until the block exits or the handle is called.

    The first action is sent before entering the block and its failure
    propagates. Later refreshes run in a background task that stops quietly on
    the first failed send.
    """
    if interval_s is None:
        interval_s = TYPING_INTERVAL_S

    await bot.send_chat_action(chat_id=chat_id, action=action)
    task = asyncio.create_task(_chat_action_loop(bot, chat_id, action, interval_s))
    try:
        yield task.cancel
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def send_images(bot: Any, *, chat_id: int, urls: Sequence[str]) -> None:
    if not urls:
        return
    if len(urls) == 1:
        await bot.send_photo(chat_id=chat_id, photo=urls[0])
        return

    # Telegram caps a media group at ten items.
    for start in range(0, len(urls), MAX_TELEGRAM_MEDIA_GROUP):
        batch = urls[start : start + MAX_TELEGRAM_MEDIA_GROUP]
        if len(batch) == 1:
            await bot.send_photo(chat_id=chat_id, photo=batch[0])
            continue
        await bot.send_media_group(
            chat_id=chat_id,
            media=[InputMediaPhoto(media=url) for url in batch],
        )
