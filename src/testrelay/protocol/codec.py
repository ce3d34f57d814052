#
# src/testrelay/protocol/codec.py
#
"""
Content-Length framed JSON messages, as used by language servers.

A frame is ``Content-Length: <n>\\r\\n\\r\\n`` followed by ``n`` bytes of UTF-8
encoded JSON. The same framing carries reporter notifications to the engine
and JSON-RPC traffic to the analysis language server.
"""

import asyncio
import json
from typing import Any

import structlog

from testrelay.exceptions import ProtocolError
from testrelay.protocol.events import REQUIRED_PARAMS, EventKind, TestEvent
from testrelay.telemetry import StructLogger

log: StructLogger = structlog.get_logger("protocol.codec")

HEADER_TERMINATOR = b"\r\n\r\n"
CONTENT_LENGTH = b"content-length"
MAX_HEADER_BYTES = 4096


def encode_payload(payload: dict[str, Any]) -> bytes:
    body = json.dumps(payload).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def encode_message(method: str, params: dict[str, Any] | None = None) -> bytes:
    """Frame a notification."""
    return encode_payload({"method": method, "params": params or {}})


def encode_event(event: TestEvent) -> bytes:
    return encode_message(event.kind.value, event.to_params())


def _content_length(header: bytes) -> int:
    for line in header.split(b"\r\n"):
        name, sep, value = line.partition(b":")
        if sep and name.strip().lower() == CONTENT_LENGTH:
            try:
                length = int(value.strip())
            except ValueError as e:
                raise ProtocolError(f"Invalid Content-Length value: {value!r}") from e
            if length < 0:
                raise ProtocolError(f"Negative Content-Length: {length}")
            return length
    raise ProtocolError(f"Missing Content-Length header: {header!r}")


async def read_message(reader: asyncio.StreamReader) -> dict[str, Any] | None:
    """
    Reads one frame from the stream.

    Returns None on a clean EOF between frames. Raises ProtocolError when the
    header is malformed or the body is not a JSON object; in the latter case
    the whole frame has been consumed, so the caller may keep reading.
    """
    try:
        header = await reader.readuntil(HEADER_TERMINATOR)
    except asyncio.IncompleteReadError as e:
        if not e.partial.strip():
            return None
        raise ProtocolError("Stream closed in the middle of a frame header", recoverable=False) from e
    except asyncio.LimitOverrunError as e:
        raise ProtocolError("Frame header exceeds the stream buffer limit", recoverable=False) from e

    if len(header) > MAX_HEADER_BYTES:
        raise ProtocolError(f"Frame header too large ({len(header)} bytes)", recoverable=False)

    length = _content_length(header[: -len(HEADER_TERMINATOR)])
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(
            f"Stream closed after {len(e.partial)} of {length} body bytes", recoverable=False
        ) from e

    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Frame body is not valid JSON: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError(f"Frame body must be a JSON object, got {type(message).__name__}")
    return message


def decode_event(message: dict[str, Any]) -> TestEvent:
    """Turns a notification into a TestEvent, validating its payload shape."""
    method = message.get("method")
    try:
        kind = EventKind(method)
    except ValueError as e:
        raise ProtocolError(f"Unknown notification method: {method!r}") from e

    params = message.get("params") or {}
    if not isinstance(params, dict):
        raise ProtocolError(f"Params for '{method}' must be an object")

    missing = [key for key in REQUIRED_PARAMS[kind] if key not in params]
    if missing:
        raise ProtocolError(f"Notification '{method}' is missing params: {', '.join(missing)}")

    for key in ("id", "uri"):
        if key in REQUIRED_PARAMS[kind] and not isinstance(params[key], str):
            raise ProtocolError(f"Param '{key}' of '{method}' must be a string")

    line = params.get("line")
    if line is not None and (not isinstance(line, int) or isinstance(line, bool) or line < 0):
        log.debug("Ignoring invalid line param", method=method, line=line)
        line = None

    message_text = params.get("message")
    if message_text is not None and not isinstance(message_text, str):
        message_text = str(message_text)

    return TestEvent(
        kind=kind,
        id=params.get("id"),
        uri=params.get("uri"),
        message=message_text,
        line=line,
    )
