"""Messages exchanged over a terminal channel.

Client -> Server:
	{"type": "create", "image": "alpine:latest"}
	{"type": "attach", "sandboxId": "0123456789ab", "cols": 100, "rows": 30}
	{"type": "resize", "cols": 120, "rows": 40}
	anything that is not a JSON object with a string "type" is raw terminal input

Server -> Client:
	{"type": "connected", "message": "WebSocket connected"}
	{"type": "log", "data": "..."}
	{"type": "error", "message": "..."}
	{"type": "created", "sandboxId": "...", "sandboxName": "..."}
	{"type": "ready"}
	raw text frames carrying terminal output
	{"type": "exit", "code": 0}
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, ValidationError


# Client -> Server


class CreateMessage(BaseModel):
	type: Literal["create"] = "create"
	image: Optional[str] = None


class AttachMessage(BaseModel):
	type: Literal["attach"] = "attach"
	# "containerId" is what clients of the first terminal server send
	sandbox_id: Optional[str] = Field(
		default=None,
		validation_alias=AliasChoices("sandboxId", "containerId", "sandbox_id"),
	)
	cols: Optional[int] = Field(default=None, ge=0, le=65535)
	rows: Optional[int] = Field(default=None, ge=0, le=65535)


class ResizeMessage(BaseModel):
	type: Literal["resize"] = "resize"
	cols: Optional[int] = Field(default=None, ge=0, le=65535)
	rows: Optional[int] = Field(default=None, ge=0, le=65535)


ControlMessage = Union[CreateMessage, AttachMessage, ResizeMessage]

_CONTROL_MODELS: dict[str, type[BaseModel]] = {
	"create": CreateMessage,
	"attach": AttachMessage,
	"resize": ResizeMessage,
}


@dataclass(frozen=True)
class RawInput:
	data: bytes


@dataclass(frozen=True)
class IgnoredMessage:
	type: str
	reason: str


Inbound = Union[CreateMessage, AttachMessage, ResizeMessage, IgnoredMessage, RawInput]


def classify(unit: str | bytes) -> Inbound:
	"""Sort one inbound unit into a control message or raw terminal input.

	Only a JSON object carrying a string ``type`` counts as control; a typed
	``1`` or ``"q"`` stays keyboard input. Unknown types and control messages
	with invalid fields come back as ``IgnoredMessage``.
	"""
	raw = unit if isinstance(unit, bytes) else unit.encode("utf-8")
	try:
		data = json.loads(unit)
	except ValueError:
		return RawInput(raw)
	if not isinstance(data, dict) or not isinstance(data.get("type"), str):
		return RawInput(raw)

	msg_type = data["type"]
	model = _CONTROL_MODELS.get(msg_type)
	if model is None:
		return IgnoredMessage(msg_type, "unknown message type")
	try:
		return model.model_validate(data)
	except ValidationError as e:
		return IgnoredMessage(msg_type, f"invalid fields: {e.error_count()} error(s)")


# Server -> Client


class ConnectedEvent(BaseModel):
	type: Literal["connected"] = "connected"
	message: str = "WebSocket connected"


class LogEvent(BaseModel):
	type: Literal["log"] = "log"
	data: str


class ErrorEvent(BaseModel):
	type: Literal["error"] = "error"
	message: str


class CreatedEvent(BaseModel):
	type: Literal["created"] = "created"
	sandbox_id: str = Field(serialization_alias="sandboxId")
	sandbox_name: str = Field(serialization_alias="sandboxName")


class ReadyEvent(BaseModel):
	type: Literal["ready"] = "ready"


class ExitEvent(BaseModel):
	type: Literal["exit"] = "exit"
	code: int


Event = Union[ConnectedEvent, LogEvent, ErrorEvent, CreatedEvent, ReadyEvent, ExitEvent]


def encode_event(event: Event) -> str:
	return event.model_dump_json(by_alias=True)
