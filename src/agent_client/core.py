from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

RequestId = Union[int, str]


# --- Error taxonomy --------------------------------------------------------------

class AgentClientError(Exception):
    """Base class for every error raised by the session engine."""


class SpawnError(AgentClientError):
    """The agent executable could not be launched."""


class WriteError(AgentClientError):
    """Writing to the agent failed: the process exited or its stdin is closed."""


class ProtocolError(AgentClientError):
    """An inbound frame was not valid JSON-RPC."""

    def __init__(self, message: str, frame: Optional[bytes] = None) -> None:
        super().__init__(message)
        self.frame = frame


class UnknownRequestId(AgentClientError):
    def __init__(self, request_id: Any) -> None:
        super().__init__(f"no pending request with id {request_id!r}")
        self.request_id = request_id


class StalePermissionError(AgentClientError):
    def __init__(self, request_id: Any) -> None:
        super().__init__(f"permission request {request_id!r} is not pending")
        self.request_id = request_id


class HandshakeError(AgentClientError):
    """The agent rejected or never completed initialize / session setup."""


class SessionBusyError(AgentClientError):
    """A turn is already in flight on this session."""


class SessionStateError(AgentClientError):
    """The operation is not valid in the session's current state."""


class ConnectionClosedError(AgentClientError):
    """The agent process went away while requests were outstanding."""


# --- JSON-RPC 2.0 error helpers -------------------------------------------------

class RequestError(AgentClientError):
    def __init__(self, code: int, message: str, data: Optional[Any] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @staticmethod
    def parse_error(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32700, "Parse error", data)

    @staticmethod
    def invalid_request(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32600, "Invalid request", data)

    @staticmethod
    def method_not_found(method: str) -> "RequestError":
        return RequestError(-32601, "Method not found", {"method": method})

    @staticmethod
    def invalid_params(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32602, "Invalid params", data)

    @staticmethod
    def internal_error(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32603, "Internal error", data)

    @staticmethod
    def auth_required(data: Optional[dict] = None) -> "RequestError":
        return RequestError(-32000, "Authentication required", data)

    @classmethod
    def from_error_obj(cls, error: Any) -> "RequestError":
        if not isinstance(error, dict):
            return cls(-32603, str(error))
        code = error.get("code", -32603)
        return cls(
            code if isinstance(code, int) else -32603,
            str(error.get("message") or "Error"),
            error.get("data"),
        )

    def to_error_obj(self) -> dict:
        obj: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            obj["data"] = self.data
        return obj

    def __str__(self) -> str:
        if self.data is None:
            return f"{self.message} ({self.code})"
        return f"{self.message} ({self.code}): {self.data}"


# --- Request correlation ---------------------------------------------------------

@dataclass(slots=True)
class PendingRequest:
    id: int
    method: str
    future: asyncio.Future[Any]
    created_at: float = field(default_factory=time.monotonic)


class Correlator:
    """
    Bookkeeping for outbound requests awaiting a response.

    - Ids come from a counter starting at 1 and are never reused
    - ``resolve`` completes the matching future, ``fail_all`` completes the rest
    - No timeouts here; callers wrap the futures in ``asyncio.wait_for`` if needed
    """

    def __init__(self) -> None:
        self._next_request_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._closed_reason: Optional[BaseException] = None

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed_reason is not None

    def pending_ids(self) -> List[int]:
        return list(self._pending)

    def issue(self, method: str, params: Optional[Any] = None) -> Tuple[int, asyncio.Future[Any]]:
        if self._closed_reason is not None:
            raise ConnectionClosedError(str(self._closed_reason)) from self._closed_reason
        req_id = self._next_request_id
        self._next_request_id += 1
        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = PendingRequest(req_id, method, fut)
        return req_id, fut

    def resolve(self, request_id: Any, result: Any = None, error: Optional[Any] = None) -> PendingRequest:
        pending = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if pending is None:
            raise UnknownRequestId(request_id)
        if pending.future.done():
            # the caller gave up on it (cancelled wait_for)
            return pending
        if error is not None:
            pending.future.set_exception(RequestError.from_error_obj(error))
        else:
            pending.future.set_result(result)
        return pending

    def forget(self, request_id: int) -> Optional[PendingRequest]:
        return self._pending.pop(request_id, None)

    def fail_all(self, reason: BaseException) -> int:
        if self._closed_reason is not None:
            return 0
        self._closed_reason = reason
        pending, self._pending = self._pending, {}
        failed = 0
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(reason)
                failed += 1
        if failed:
            logger.debug("failed %d outstanding request(s): %s", failed, reason)
        return failed
