# src/testrelay/telemetry/logger/processors.py

"""
Custom structlog processors shared by every testrelay logger.
"""

from structlog.typing import EventDict, WrappedLogger

LEVEL_EMOJIS: dict[str, str] = {
    "debug": "🐛",
    "info": "ℹ️",
    "warning": "⚠️",
    "error": "❌",
    "critical": "💥",
}


def add_emoji_processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Prefix the event with an emoji for its level, or the one explicitly passed as ``emoji=``."""
    emoji = event_dict.pop("emoji", None) or LEVEL_EMOJIS.get(
        str(event_dict.get("level", method_name)).lower(), "➡️"
    )
    event = event_dict.get("event")
    if isinstance(event, str) and not event.startswith(emoji):
        event_dict["event"] = f"{emoji} {event}"
    return event_dict


def remove_extra_keys_processor(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop context keys whose value is None so optional fields don't clutter the output."""
    return {key: value for key, value in event_dict.items() if value is not None or key == "event"}
