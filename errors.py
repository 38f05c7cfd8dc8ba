from __future__ import annotations


class RobotronError(RuntimeError):
    """Base error for Robotron failures."""

    kind = "internal"


class ConfigError(RobotronError):
    """Missing or invalid startup configuration."""

    kind = "config"


class TransportError(RobotronError):
    """Network failure talking to OpenAI.

    Telegram transport failures keep their own ``telegram.error.TelegramError``
    types and are classified as ``transport`` by the dispatcher.
    """

    kind = "transport"


class UpstreamError(RobotronError):
    """Provider answered with a non-success status."""

    kind = "upstream"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TranscodeError(RobotronError):
    """The media tool exited with a non-zero status."""

    kind = "transcode"

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class HandlingCancelled(RobotronError):
    """The per-handling deadline fired or the handling was cancelled."""

    kind = "cancelled"
