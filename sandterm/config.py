from __future__ import annotations

import os
from typing import List, Optional

from pydantic import BaseModel, Field


DEFAULT_RUNTIME = "docker"  # or "podman"
DEFAULT_IMAGE = "ubuntu:latest"
DEFAULT_SHELL = "/bin/bash"
DEFAULT_NAME_PREFIX = "svelte-terminal"
DEFAULT_TERM = "xterm-color"
DEFAULT_PORT = 3001


class Config(BaseModel):
	runtime: str = Field(default=os.getenv("ST_RUNTIME", DEFAULT_RUNTIME), description="Container runtime binary")
	image: str = Field(default=os.getenv("ST_IMAGE", DEFAULT_IMAGE))
	shell: str = Field(default=os.getenv("ST_SHELL", DEFAULT_SHELL))
	name_prefix: str = Field(default=os.getenv("ST_NAME_PREFIX", DEFAULT_NAME_PREFIX))
	term: str = Field(default=os.getenv("ST_TERM", DEFAULT_TERM))
	cols: int = Field(default=80)
	rows: int = Field(default=24)
	host: str = Field(default=os.getenv("ST_HOST", "0.0.0.0"))
	port: int = Field(default=int(os.getenv("ST_PORT", DEFAULT_PORT)))
	docker_host: Optional[str] = Field(default=os.getenv("DOCKER_HOST", "unix://var/run/docker.sock"))
	log_level: str = Field(default=os.getenv("ST_LOG_LEVEL", "INFO"))
	cors_origins: List[str] = Field(default_factory=lambda: _parse_list_env(os.getenv("ST_CORS_ORIGINS")))


def _parse_list_env(value: Optional[str]) -> List[str]:
	if not value:
		return ["*"]
	return [item.strip() for item in value.split(",") if item.strip()]


