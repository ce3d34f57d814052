#
# src/testrelay/protocol/__init__.py
#
"""
Wire format shared by the in-process reporter and the streaming engine.
"""

from .codec import decode_event, encode_event, encode_message, encode_payload, read_message
from .events import EventKind, TestEvent

__all__ = [
    "EventKind",
    "TestEvent",
    "decode_event",
    "encode_event",
    "encode_message",
    "encode_payload",
    "read_message",
]
