"""Out-of-band approval of agent tool calls.

The agent asks through a ``session/request_permission`` request and blocks
until the client answers it. Requests are answered in arrival order; only the
oldest unanswered one is offered to the user at any time.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from .core import RequestId, StalePermissionError
from .events import PermissionChoice, PermissionRequest
from .schema import AllowedOutcome, DeniedOutcome, RequestPermissionRequest, RequestPermissionResponse

logger = logging.getLogger(__name__)

Outcome = Dict[str, Any]


def selected_outcome(option_id: str) -> Outcome:
    return RequestPermissionResponse(outcome=AllowedOutcome(optionId=option_id)).model_dump()


def cancelled_outcome() -> Outcome:
    return RequestPermissionResponse(outcome=DeniedOutcome()).model_dump()


def select_auto_option(options: Sequence[PermissionChoice]) -> Optional[str]:
    """First ``allow_*`` option, else the first option offered."""
    for choice in options:
        if choice.allows:
            return choice.id
    return options[0].id if options else None


class PermissionGate:
    def __init__(self, auto_allow: bool = False) -> None:
        self.auto_allow = auto_allow
        self._queue: Deque[PermissionRequest] = deque()

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def pending(self) -> Optional[PermissionRequest]:
        return self._queue[0] if self._queue else None

    def open(self, request_id: RequestId, params: Any) -> Tuple[PermissionRequest, Optional[str]]:
        """Register an agent request.

        Returns the request and, when the auto-allow policy answered it, the
        chosen option id. Raises ``pydantic.ValidationError`` on malformed params.
        """
        wire = RequestPermissionRequest.model_validate(params)
        request = PermissionRequest(
            request_id=request_id,
            tool_call_id=wire.toolCall.toolCallId,
            options=tuple(PermissionChoice(o.optionId, o.name, o.kind) for o in wire.options),
            title=wire.toolCall.title or "",
        )
        if self.auto_allow:
            option_id = select_auto_option(request.options)
            if option_id is not None:
                request.resolved = True
                logger.info(
                    "auto-approved permission request=%r tool_call=%s option=%s title=%r",
                    request_id,
                    request.tool_call_id,
                    option_id,
                    request.title,
                )
                return request, option_id
            logger.warning("permission request %r offers no options, asking the user", request_id)
        self._queue.append(request)
        logger.debug("queued permission request %r (%d waiting)", request_id, len(self._queue))
        return request, None

    def settle(self, request_id: RequestId, option_id: str) -> Outcome:
        head = self.pending
        if head is None or head.request_id != request_id:
            raise StalePermissionError(request_id)
        if head.option(option_id) is None:
            raise ValueError(f"unknown option {option_id!r} for permission request {request_id!r}")
        self._pop(head, option_id)
        return selected_outcome(option_id)

    def choose_allow(self) -> Optional[Tuple[PermissionRequest, Outcome]]:
        head = self.pending
        if head is None:
            return None
        option_id = select_auto_option(head.options)
        self._pop(head, option_id)
        return head, selected_outcome(option_id) if option_id is not None else cancelled_outcome()

    def choose_reject(self) -> Optional[Tuple[PermissionRequest, Outcome]]:
        head = self.pending
        if head is None:
            return None
        option_id = next((c.id for c in head.options if c.kind.startswith("reject")), None)
        self._pop(head, option_id)
        return head, selected_outcome(option_id) if option_id is not None else cancelled_outcome()

    def cancel_all(self) -> List[Tuple[PermissionRequest, Outcome]]:
        """Resolve every waiting request as cancelled and return them oldest first."""
        cancelled = []
        while self._queue:
            request = self._queue[0]
            self._pop(request, None)
            cancelled.append((request, cancelled_outcome()))
        return cancelled

    def clear(self) -> None:
        """Forget waiting requests without answering them (the agent is gone)."""
        for request in self._queue:
            request.resolved = True
        self._queue.clear()

    def _pop(self, request: PermissionRequest, option_id: Optional[str]) -> None:
        self._queue.popleft()
        request.resolved = True
        logger.info(
            "permission request=%r tool_call=%s resolved option=%s",
            request.request_id,
            request.tool_call_id,
            option_id if option_id is not None else "<cancelled>",
        )
