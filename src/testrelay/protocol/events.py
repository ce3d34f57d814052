#
# src/testrelay/protocol/events.py
#
"""
Notification types carried on the reporter -> engine event channel.
"""

from enum import Enum
from typing import Any

from attrs import define, field


class EventKind(Enum):
    """Every notification the reporter may emit. The value is the wire method name."""

    START = "start"
    PASS = "pass"
    SKIP = "skip"
    FAIL = "fail"
    ERROR = "error"
    FINISH = "finish"
    APPEND_OUTPUT = "append_output"

    @property
    def is_terminal(self) -> bool:
        return self in (EventKind.PASS, EventKind.SKIP, EventKind.FAIL, EventKind.ERROR)

    @property
    def targets_test(self) -> bool:
        return self not in (EventKind.FINISH, EventKind.APPEND_OUTPUT)


# Required params per method, beyond which extra keys are ignored.
REQUIRED_PARAMS: dict[EventKind, tuple[str, ...]] = {
    EventKind.START: ("id", "uri"),
    EventKind.PASS: ("id", "uri"),
    EventKind.SKIP: ("id", "uri"),
    EventKind.FAIL: ("id", "uri", "message"),
    EventKind.ERROR: ("id", "uri", "message"),
    EventKind.FINISH: (),
    EventKind.APPEND_OUTPUT: ("message",),
}


@define(frozen=True, slots=True)
class TestEvent:
    """A decoded notification."""
    __test__ = False

    kind: EventKind
    id: str | None = field(default=None)
    uri: str | None = field(default=None)
    message: str | None = field(default=None)
    line: int | None = field(default=None)

    def to_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {}
        for key in REQUIRED_PARAMS[self.kind]:
            params[key] = getattr(self, key)
        if self.kind is EventKind.START and self.line is not None:
            params["line"] = self.line
        return params
