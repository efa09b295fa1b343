"""
Envelope codec shared by the server hub and the client connection manager.

One envelope per text frame:

    {"type": "startGeneration", "requestId": 7, "data": {...}}   call
    {"type": "startGeneration:response", "requestId": 7, "data": {...}}
    {"type": "error", "requestId": 7, "data": {"message": "...", "code": "NotFound"}}
    {"type": "jobUpdate", "data": {...}}                          broadcast
"""

from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from shared.errors import ProtocolError, QueueError

ERROR_TYPE = "error"
RESPONSE_SUFFIX = ":response"

# Broadcast types
JOB_UPDATE = "jobUpdate"
JOB_REMOVED = "jobRemoved"
QUEUE_UPDATE = "queueUpdate"
SERVER_STATUS = "serverStatus"
CONFIG_UPDATE = "configUpdate"

BROADCAST_TYPES = frozenset({JOB_UPDATE, JOB_REMOVED, QUEUE_UPDATE, SERVER_STATUS, CONFIG_UPDATE})


class Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(min_length=1)
    request_id: Optional[int] = Field(default=None, alias="requestId")
    data: Any = None

    @property
    def is_error(self) -> bool:
        return self.type == ERROR_TYPE


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json", by_alias=True)
    if isinstance(data, (list, tuple)):
        return [_jsonable(item) for item in data]
    return data


def encode(type_: str, data: Any = None, request_id: Optional[int] = None) -> str:
    """Serialize one envelope to a text frame."""
    frame = {"type": type_}
    if request_id is not None:
        frame["requestId"] = request_id
    frame["data"] = _jsonable(data)
    return json.dumps(frame)


def decode(frame: Any) -> Envelope:
    """Parse a text frame; raises ProtocolError for anything that is not an envelope."""
    if isinstance(frame, (bytes, bytearray)):
        try:
            frame = frame.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"Frame is not UTF-8: {exc}") from exc
    if not isinstance(frame, str):
        raise ProtocolError(f"Unsupported frame type: {type(frame).__name__}")
    try:
        raw = json.loads(frame)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Malformed frame: {exc.msg}") from exc
    if not isinstance(raw, dict):
        raise ProtocolError("Frame is not a JSON object")
    try:
        return Envelope.model_validate(raw)
    except ValidationError as exc:
        raise ProtocolError(f"Invalid envelope: {exc.errors()[0].get('msg', 'invalid')}") from exc


def response_type(call_type: str) -> str:
    return f"{call_type}{RESPONSE_SUFFIX}"


def encode_response(call_type: str, request_id: Optional[int], data: Any) -> str:
    return encode(response_type(call_type), data, request_id)


def encode_error(error: QueueError, request_id: Optional[int] = None) -> str:
    return encode(ERROR_TYPE, error.to_payload(), request_id)


def is_broadcast(envelope: Envelope) -> bool:
    return envelope.request_id is None or envelope.type in BROADCAST_TYPES
