from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from errors import TranscodeError

LOGGER = logging.getLogger(__name__)


def build_transcode_argv(ffmpeg_cmd: str, source: str | Path, target: str | Path) -> list[str]:
    return [
        ffmpeg_cmd,
        "-hide_banner",
        "-loglevel",
        "panic",
        "-y",
        "-i",
        str(source),
        str(target),
    ]


async def transcode(source: str | Path, target: str | Path, *, ffmpeg_cmd: str = "ffmpeg") -> None:
    """Rewrite ``source`` into the container implied by ``target``'s suffix."""
    argv = build_transcode_argv(ffmpeg_cmd, source, target)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except FileNotFoundError as exc:
        raise TranscodeError(f"media tool not found: {ffmpeg_cmd}") from exc

    try:
        returncode = await proc.wait()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    if returncode != 0:
        raise TranscodeError(f"{ffmpeg_cmd} exited with status {returncode}", returncode)
    LOGGER.debug("transcoded %s -> %s", source, target)
