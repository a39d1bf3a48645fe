from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SessionState(Enum):
	IDLE = "idle"
	PROVISIONING = "provisioning"
	PROVISIONED = "provisioned"
	ATTACHING = "attaching"
	ATTACHED = "attached"
	CLOSED = "closed"


@dataclass
class Dimensions:
	cols: int = 80
	rows: int = 24


@dataclass
class ProvisionResult:
	sandbox_id: str
	sandbox_name: str


@dataclass
class CommandResult:
	output: str
	exit_code: int


@dataclass
class SandboxInfo:
	id: str
	image: str
	status: str
	name: str


