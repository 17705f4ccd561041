"""Events a session publishes to its consumer while a turn is running."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple, Union

from .core import RequestId


class TurnEndReason(str, enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    MAX_TOKENS = "max_tokens"
    MAX_TURN_REQUESTS = "max_turn_requests"
    REFUSED = "refused"

    @classmethod
    def from_stop_reason(cls, stop_reason: str) -> "TurnEndReason":
        return _STOP_REASONS.get(stop_reason, cls.COMPLETED)


_STOP_REASONS = {
    "end_turn": TurnEndReason.COMPLETED,
    "cancelled": TurnEndReason.CANCELLED,
    "max_tokens": TurnEndReason.MAX_TOKENS,
    "max_turn_requests": TurnEndReason.MAX_TURN_REQUESTS,
    "refusal": TurnEndReason.REFUSED,
}


@dataclass(frozen=True, slots=True)
class PermissionChoice:
    id: str
    label: str
    kind: str

    @property
    def allows(self) -> bool:
        return self.kind.startswith("allow")


@dataclass(slots=True)
class PermissionRequest:
    request_id: RequestId
    tool_call_id: str
    options: Tuple[PermissionChoice, ...]
    title: str = ""
    resolved: bool = False

    def option(self, option_id: str) -> Optional[PermissionChoice]:
        for choice in self.options:
            if choice.id == option_id:
                return choice
        return None


@dataclass(frozen=True, slots=True)
class TextDelta:
    content: str


@dataclass(frozen=True, slots=True)
class ThoughtDelta:
    content: str


@dataclass(frozen=True, slots=True)
class ToolCallStarted:
    tool_call_id: str
    label: str
    kind: Optional[str] = None
    status: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ToolCallUpdated:
    tool_call_id: str
    status: Optional[str]
    title: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ToolCallEnded:
    tool_call_id: str
    status: str
    result: Any = None


@dataclass(frozen=True, slots=True)
class PlanUpdated:
    entries: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True)
class PermissionRequested:
    request: PermissionRequest


@dataclass(frozen=True, slots=True)
class PermissionAutoApproved:
    """Informational: the auto-allow policy answered a permission request."""

    request: PermissionRequest
    option_id: str


@dataclass(frozen=True, slots=True)
class TurnEnded:
    reason: TurnEndReason


@dataclass(frozen=True, slots=True)
class ErrorOccurred:
    detail: str


StreamEvent = Union[
    TextDelta,
    ThoughtDelta,
    ToolCallStarted,
    ToolCallUpdated,
    ToolCallEnded,
    PlanUpdated,
    PermissionRequested,
    PermissionAutoApproved,
    TurnEnded,
    ErrorOccurred,
]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (TurnEnded, ErrorOccurred))
