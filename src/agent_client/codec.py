"""Newline-delimited JSON-RPC 2.0 framing."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Union

from .core import ProtocolError, RequestError, RequestId


@dataclass(frozen=True, slots=True)
class Request:
    id: RequestId
    method: str
    params: Any = None


@dataclass(frozen=True, slots=True)
class Notification:
    method: str
    params: Any = None


@dataclass(frozen=True, slots=True)
class Response:
    id: RequestId
    result: Any = None
    error: Optional[dict] = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @classmethod
    def failure(cls, request_id: RequestId, err: RequestError) -> "Response":
        return cls(request_id, error=err.to_error_obj())


Message = Union[Request, Notification, Response]


def encode(message: Message) -> bytes:
    obj: dict[str, Any] = {"jsonrpc": "2.0"}
    if isinstance(message, Request):
        obj.update(id=message.id, method=message.method, params=message.params)
    elif isinstance(message, Notification):
        obj.update(method=message.method, params=message.params)
    elif isinstance(message, Response):
        obj["id"] = message.id
        if message.error is not None:
            obj["error"] = message.error
        else:
            obj["result"] = message.result
    else:
        raise TypeError(f"cannot encode {type(message).__name__}")
    return (json.dumps(obj, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


def _valid_id(value: Any) -> bool:
    # bool is an int subclass but never a valid id
    return isinstance(value, str) or (isinstance(value, int) and not isinstance(value, bool))


def parse_message(obj: Any) -> Message:
    """Classify a decoded JSON value as a request, notification or response."""
    if not isinstance(obj, dict):
        raise ProtocolError(f"frame is not a JSON object: {type(obj).__name__}")

    method = obj.get("method")
    has_id = "id" in obj and obj["id"] is not None
    if has_id and not _valid_id(obj["id"]):
        raise ProtocolError(f"invalid id: {obj['id']!r}")

    if method is not None:
        if not isinstance(method, str) or not method:
            raise ProtocolError(f"invalid method: {method!r}")
        if has_id:
            return Request(obj["id"], method, obj.get("params"))
        return Notification(method, obj.get("params"))

    if not has_id:
        raise ProtocolError("frame has neither method nor id")
    has_result = "result" in obj
    has_error = "error" in obj and obj["error"] is not None
    if has_result == has_error:
        raise ProtocolError("response must carry exactly one of result/error")
    if has_error:
        error = obj["error"]
        if not isinstance(error, dict) or "code" not in error or "message" not in error:
            raise ProtocolError(f"malformed error object: {error!r}")
        return Response(obj["id"], error=error)
    return Response(obj["id"], result=obj["result"])


def decode_line(line: bytes) -> Message:
    try:
        obj = json.loads(line)
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise ProtocolError(f"malformed JSON: {err}", frame=line) from err
    try:
        return parse_message(obj)
    except ProtocolError as err:
        err.frame = line
        raise


class FrameDecoder:
    """
    Incremental decoder for a byte stream of newline-terminated frames.

    ``feed`` buffers eagerly and returns a lazy iterator over the complete
    frames available; a trailing fragment waits for the next ``feed``. A frame
    that fails to decode raises ``ProtocolError`` and is dropped, the frames
    after it stay buffered.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> Iterator[Message]:
        self._buffer.extend(data)
        return self._drain()

    def _drain(self) -> Iterator[Message]:
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                return
            line = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            line = line.strip()
            if not line:
                continue
            yield decode_line(line)
