from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx
import httpx2
import openai
from openai import AsyncOpenAI

from config import (
    DEFAULT_IMAGE_COUNT,
    DEFAULT_IMAGE_MODEL,
    DEFAULT_IMAGE_SIZE,
    DEFAULT_OPENAI_MODEL,
    DEFAULT_TRANSCRIPTION_MODEL,
)
from errors import TransportError, UpstreamError
from store import ChatMessage

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are Robotron, a personal robot assistant.\n"
    "Today is {now}.\n"
    "Use the {measure_units} system for measurements.\n"
)

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


def format_prompt_time(now: datetime) -> str:
    """Render ``now`` as ``Monday, January 2, 2006 3:04 PM``."""
    hour = now.hour % 12 or 12
    return f"{now:%A, %B} {now.day}, {now.year} {hour}:{now:%M %p}"


def render_system_prompt(now: datetime, measure_units: str) -> str:
    return SYSTEM_PROMPT.format(now=format_prompt_time(now), measure_units=measure_units)


def build_conversation(
    thread: Sequence[ChatMessage],
    *,
    now: datetime,
    measure_units: str,
) -> list[dict[str, str]]:
    messages = [{"role": ROLE_SYSTEM, "content": render_system_prompt(now, measure_units)}]
    for message in thread:
        role = ROLE_ASSISTANT if message.from_bot else ROLE_USER
        messages.append({"role": role, "content": message.text})
    return messages


def _translate_error(exc: Exception) -> Exception:
    if isinstance(exc, openai.APIStatusError):
        return UpstreamError(f"provider returned {exc.status_code}: {exc.message}", exc.status_code)
    if isinstance(exc, openai.APIConnectionError):
        return TransportError(f"failed to reach provider: {exc}")
    if isinstance(exc, openai.APIError):
        return UpstreamError(f"provider reported an error: {exc.message}")
    if isinstance(exc, (httpx.TransportError, httpx2.TransportError)):
        return TransportError(f"connection to provider lost: {exc}")
    return exc


class ReplyStream:
    """Single-consumer iterator of completion deltas.

    Owns the SDK stream and closes it on exhaustion, on failure, or on
    ``aclose()``, whether or not iteration ever started.
    """

    def __init__(self, stream: Any) -> None:
        self._stream = stream
        self._chunks: Any = None
        self.closed = False

    def __aiter__(self) -> ReplyStream:
        return self

    async def __anext__(self) -> str:
        if self.closed:
            raise StopAsyncIteration
        if self._chunks is None:
            self._chunks = self._stream.__aiter__()

        while True:
            try:
                chunk = await self._chunks.__anext__()
            except StopAsyncIteration:
                await self.aclose()
                raise
            except (openai.OpenAIError, httpx.TransportError, httpx2.TransportError) as exc:
                await self.aclose()
                raise _translate_error(exc) from exc

            if not chunk.choices:
                continue
            return chunk.choices[0].delta.content or ""

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._stream.close()


class AIGateway:
    """Thin async wrapper over the OpenAI completion, audio and image APIs."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        client: Any = None,
        model: str = DEFAULT_OPENAI_MODEL,
        transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL,
        image_model: str = DEFAULT_IMAGE_MODEL,
        image_size: str = DEFAULT_IMAGE_SIZE,
        image_count: int = DEFAULT_IMAGE_COUNT,
        measure_units: str = "metric",
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        # No retries: provider failures surface straight to the caller.
        self._client = client if client is not None else AsyncOpenAI(api_key=api_key, max_retries=0)
        self.model = model
        self.transcription_model = transcription_model
        self.image_model = image_model
        self.image_size = image_size
        self.image_count = image_count
        self.measure_units = measure_units
        self._clock = clock

    async def close(self) -> None:
        await self._client.close()

    async def transcribe(self, path: str | Path) -> str:
        audio = Path(path)
        payload = io.BytesIO(await asyncio.to_thread(audio.read_bytes))
        payload.name = audio.name
        try:
            response = await self._client.audio.transcriptions.create(
                model=self.transcription_model,
                file=payload,
                response_format="json",
            )
        except openai.OpenAIError as exc:
            raise _translate_error(exc) from exc
        return (response.text or "").strip()

    async def streaming_reply(self, thread: Sequence[ChatMessage]) -> ReplyStream:
        """Open a streaming completion for ``thread`` and return its deltas.

        Opening errors are raised here. Once open, the returned iterator yields
        one delta per provider chunk (possibly empty), ends normally at end of
        stream and raises ``UpstreamError``/``TransportError`` on failure.
        """
        messages = build_conversation(
            thread,
            now=self._clock(),
            measure_units=self.measure_units,
        )
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
            )
        except openai.OpenAIError as exc:
            raise _translate_error(exc) from exc
        return ReplyStream(stream)

    async def imagine(self, prompt: str) -> list[str]:
        try:
            response = await self._client.images.generate(
                model=self.image_model,
                prompt=prompt,
                n=self.image_count,
                size=self.image_size,
                response_format="url",
            )
        except openai.OpenAIError as exc:
            raise _translate_error(exc) from exc

        urls = [image.url for image in response.data if image.url]
        if not urls:
            raise UpstreamError("image generation returned no images")
        return urls
