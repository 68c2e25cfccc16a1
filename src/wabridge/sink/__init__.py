"""Telegram (forum supergroup) side of the bridge."""

from __future__ import annotations

from .api import (
    MediaInput,
    TelegramBotApi,
    TelegramBotApiError,
    TopicNotFoundError,
    is_topic_missing_description,
)
from .messages import SinkContentKind, classify_sink_message, has_spoiler

__all__ = [
    "MediaInput",
    "SinkContentKind",
    "TelegramBotApi",
    "TelegramBotApiError",
    "TopicNotFoundError",
    "classify_sink_message",
    "has_spoiler",
    "is_topic_missing_description",
]
