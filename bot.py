from __future__ import annotations

import asyncio
import logging
import tempfile
from collections.abc import AsyncIterator, Sequence
from contextlib import aclosing, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from telegram import BotCommand, BotCommandScopeAllPrivateChats, Update
from telegram.constants import ChatAction
from telegram.error import TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    ApplicationHandlerStop,
    BaseHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    TypeHandler,
    filters,
)

from ai import AIGateway
from config import (
    HANDLING_TIMEOUT_S,
    POLL_TIMEOUT_S,
    STREAMING_CHUNK_SIZE,
    Config,
    load_config,
)
from errors import ConfigError, HandlingCancelled, RobotronError
from store import ChatMessage, ThreadStore
from telegram_utils import chat_action, send_images, stream_message
from transcoder import transcode

# Logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
LOGGER = logging.getLogger(__name__)
# Avoid leaking bot token in HTTP URL logs from lower-level clients.
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("httpx2").setLevel(logging.WARNING)


IMAGINE_USAGE = "Please provide a prompt."

BOT_COMMANDS = [
    BotCommand("clear", "Forget the current conversation"),
    BotCommand("imagine", "Generate images from a prompt"),
]


@dataclass
class BotState:
    config: Config
    store: ThreadStore
    ai: AIGateway
    failed: bool = False


def get_state(context: ContextTypes.DEFAULT_TYPE) -> BotState:
    return context.application.bot_data["state"]


# Reply engine

async def handle_text(bot: Any, state: BotState, message: ChatMessage) -> ChatMessage | None:
    state.store.put(message)

    thread = state.store.thread(message.chat_id)
    LOGGER.debug(
        "handling text from user %s in chat %s (thread size %s)",
        message.user_id,
        message.chat_id,
        len(thread),
    )

    stream = await state.ai.streaming_reply(thread)

    anchor: ChatMessage | None = None
    buffer: list[str] = []
    async with aclosing(stream), chat_action(bot, message.chat_id) as stop_typing:
        first = True
        async for delta in stream:
            if first:
                # A reply is about to become visible.
                stop_typing()
                first = False

            buffer.append(delta)
            if len(buffer) < STREAMING_CHUNK_SIZE:
                continue

            anchor = await stream_message(
                bot,
                chat_id=message.chat_id,
                anchor=anchor,
                delta="".join(buffer),
            )
            buffer = []

    anchor = await stream_message(
        bot,
        chat_id=message.chat_id,
        anchor=anchor,
        delta="".join(buffer),
    )

    if anchor is not None:
        state.store.put(anchor)
    return anchor


async def download_voice(bot: Any, file_id: str, target: Path) -> None:
    file = await bot.get_file(file_id)
    await file.download_to_drive(custom_path=target)


async def handle_voice(bot: Any, state: BotState, message: ChatMessage) -> ChatMessage | None:
    voice = message.voice
    if voice is None:
        return None

    with tempfile.TemporaryDirectory(prefix="robotron-voice-") as tmp_dir:
        source = Path(tmp_dir) / "voice.ogg"
        target = Path(tmp_dir) / "voice.mp3"
        await download_voice(bot, voice.file_id, source)
        await transcode(source, target, ffmpeg_cmd=state.config.ffmpeg_cmd)
        text = await state.ai.transcribe(target)

    LOGGER.debug(
        "transcribed voice from user %s (size=%s duration=%s mime=%s): %s",
        message.user_id,
        voice.file_size,
        voice.duration,
        voice.mime_type,
        text,
    )
    return await handle_text(bot, state, message.with_text(text))


# Dispatch helpers

@asynccontextmanager
async def handling_deadline(message: ChatMessage) -> AsyncIterator[None]:
    deadline = asyncio.timeout(HANDLING_TIMEOUT_S)
    try:
        async with deadline:
            yield
    except TimeoutError as exc:
        if not deadline.expired():
            raise
        raise HandlingCancelled(
            f"handling of message {message.message_id} timed out after {HANDLING_TIMEOUT_S:.0f}s"
        ) from exc


def join_command_args(args: Sequence[object] | None) -> str:
    if not args:
        return ""
    return " ".join(str(part) for part in args).strip()


async def check_allowed(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Gate every update before the handlers in the default group see it."""
    message = update.message
    if message is None:
        LOGGER.info("skipping unsupported update %s", update.update_id)
        raise ApplicationHandlerStop

    state = get_state(context)
    user_id = message.from_user.id if message.from_user is not None else None
    if not state.config.is_allowed(user_id):
        LOGGER.info("user %s is not allowed", user_id)
        raise ApplicationHandlerStop


# Command handlers

async def clear_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = ChatMessage.from_telegram(update.message)
    get_state(context).store.clear(message.chat_id)
    LOGGER.info("cleared thread for chat %s (user %s)", message.chat_id, message.user_id)


async def imagine_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = ChatMessage.from_telegram(update.message)
    state = get_state(context)
    prompt = join_command_args(context.args)

    async with handling_deadline(message):
        if not prompt:
            await context.bot.send_message(chat_id=message.chat_id, text=IMAGINE_USAGE)
            return

        async with chat_action(context.bot, message.chat_id, ChatAction.UPLOAD_PHOTO):
            urls = await state.ai.imagine(prompt)
            await send_images(context.bot, chat_id=message.chat_id, urls=urls)
    LOGGER.info("sent %s generated images to chat %s", len(urls), message.chat_id)


async def unknown_cmd(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.message
    command = message.text.split(maxsplit=1)[0]
    LOGGER.info("skipping unsupported command %s from user %s", command, message.from_user.id)


# Message handlers

async def on_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = ChatMessage.from_telegram(update.message)
    state = get_state(context)

    async with handling_deadline(message):
        if message.text:
            await handle_text(context.bot, state, message)
        else:
            await handle_voice(context.bot, state, message)
    LOGGER.info("handled message %s from user %s", message.message_id, message.user_id)


async def unsupported_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    message = update.message
    LOGGER.info("skipping unsupported message %s from user %s", message.message_id, message.from_user.id)


def build_handlers() -> list[BaseHandler]:
    return [
        CommandHandler("clear", clear_cmd),
        CommandHandler("imagine", imagine_cmd),
        MessageHandler(filters.COMMAND, unknown_cmd),
        MessageHandler((filters.TEXT | filters.VOICE) & ~filters.COMMAND, on_message),
        MessageHandler(filters.ALL, unsupported_message),
    ]


def error_kind(exc: BaseException | None) -> str:
    if isinstance(exc, RobotronError):
        return exc.kind
    if isinstance(exc, TelegramError):
        return "transport"
    return "internal"


async def on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    exc = context.error
    LOGGER.error("handling failed (%s): %s", error_kind(exc), exc, exc_info=exc)

    state = context.application.bot_data.get("state")
    if isinstance(state, BotState) and state.config.fail_fast:
        state.failed = True
        context.application.stop_running()


# Lifecycle

async def register_commands(application: Application) -> None:
    await application.bot.set_my_commands(BOT_COMMANDS, scope=BotCommandScopeAllPrivateChats())


async def shutdown(application: Application) -> None:
    state = application.bot_data.get("state")
    if isinstance(state, BotState):
        await state.ai.close()


def build_state(config: Config) -> BotState:
    return BotState(
        config=config,
        store=ThreadStore(config.thread_ttl),
        ai=AIGateway(
            api_key=config.openai_api_key,
            model=config.openai_model,
            transcription_model=config.transcription_model,
            image_model=config.image_model,
            image_size=config.image_size,
            image_count=config.image_count,
            measure_units=config.measure_units,
        ),
    )


def build_application(state: BotState) -> Application:
    application = (
        ApplicationBuilder()
        .token(state.config.telegram_token)
        .concurrent_updates(False)
        .post_init(register_commands)
        .post_shutdown(shutdown)
        .build()
    )
    application.bot_data["state"] = state
    application.add_handler(TypeHandler(Update, check_allowed), group=-1)
    application.add_handlers(build_handlers())
    application.add_error_handler(on_error)
    return application


# Entrypoint

def main() -> None:
    try:
        config = load_config()
    except ConfigError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc

    logging.getLogger().setLevel(config.log_level)
    LOGGER.info("starting robotron for %s allowed users", len(config.allowed_users))

    state = build_state(config)
    application = build_application(state)
    application.run_polling(timeout=POLL_TIMEOUT_S)

    if state.failed:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
