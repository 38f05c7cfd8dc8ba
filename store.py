from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from config import DEFAULT_THREAD_TTL

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class VoiceAttachment:
    file_id: str
    file_size: int | None = None
    duration: int | None = None
    mime_type: str | None = None


@dataclass(frozen=True, slots=True)
class ChatMessage:
    message_id: int
    chat_id: int
    user_id: int | None
    date: datetime
    text: str = ""
    from_bot: bool = False
    voice: VoiceAttachment | None = None

    @classmethod
    def from_telegram(cls, message: Any) -> ChatMessage:
        user = message.from_user
        from_bot = message.via_bot is not None or bool(user is not None and user.is_bot)

        voice = None
        if message.voice is not None:
            voice = VoiceAttachment(
                file_id=message.voice.file_id,
                file_size=message.voice.file_size,
                duration=message.voice.duration,
                mime_type=message.voice.mime_type,
            )

        return cls(
            message_id=message.message_id,
            chat_id=message.chat_id,
            user_id=user.id if user is not None else None,
            date=message.date,
            text=message.text or "",
            from_bot=from_bot,
            voice=voice,
        )

    def with_text(self, text: str) -> ChatMessage:
        return replace(self, text=text)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ThreadStore:
    """In-memory chat history keyed by chat id.

    Messages older than ``ttl`` are dropped whenever a thread is read, and the
    pruned thread is written back. Nothing survives a restart.
    """

    def __init__(
        self,
        ttl: timedelta = DEFAULT_THREAD_TTL,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._threads: dict[int, list[ChatMessage]] = {}

    def put(self, message: ChatMessage) -> None:
        self._threads.setdefault(message.chat_id, []).append(message)

    def thread(self, chat_id: int) -> list[ChatMessage]:
        found = self._threads.get(chat_id)
        if found is None:
            return []

        now = self._clock()
        kept = [message for message in found if now - message.date < self.ttl]
        if len(kept) != len(found):
            LOGGER.debug("pruned %s expired messages from chat %s", len(found) - len(kept), chat_id)
        self._threads[chat_id] = kept
        return list(kept)

    def clear(self, chat_id: int) -> None:
        self._threads.pop(chat_id, None)

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._threads
