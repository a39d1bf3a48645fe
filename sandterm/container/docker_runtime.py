"""Docker SDK implementation of the container runtime."""

from __future__ import annotations

import os
from typing import List, Optional

import docker
from docker import DockerClient
from docker.errors import APIError, DockerException, NotFound

from sandterm.container.base import ContainerRuntime
from sandterm.errors import STRuntimeError, STSandboxNotFound
from sandterm.logger import get_logger
from sandterm.types import CommandResult, SandboxInfo


logger = get_logger(__name__)


def _to_info(data: dict) -> SandboxInfo:
    names = data.get("Names") or []
    return SandboxInfo(
        id=data["Id"][:12],
        image=data.get("Image", ""),
        status=data.get("Status", ""),
        name=",".join(n.lstrip("/") for n in names),
    )


class DockerRuntime(ContainerRuntime):
    """Docker runtime implementation using Docker SDK."""

    def __init__(self, base_url: Optional[str] = None):
        # Use environment variable or default Docker socket
        base_url = base_url or os.environ.get("DOCKER_HOST", "unix://var/run/docker.sock")
        try:
            self.client: DockerClient = docker.DockerClient(base_url=base_url)
            self.client.ping()
        except DockerException as e:
            raise STRuntimeError(f"Failed to connect to Docker daemon: {e}")

    def _find(self, identifier: str) -> Optional[dict]:
        # Try by name first, then by ID
        for key in ("name", "id"):
            matches = self.client.api.containers(all=True, filters={key: identifier})
            if matches:
                return matches[0]
        return None

    def get_container(self, identifier: str) -> SandboxInfo:
        try:
            data = self._find(identifier)
        except APIError as e:
            raise STRuntimeError(f"Failed to get container: {e}")
        if data is None:
            raise STSandboxNotFound("Container not found")
        return _to_info(data)

    def remove_container(self, identifier: str, timeout: int = 10) -> None:
        try:
            self.client.api.stop(identifier, timeout=timeout)
        except NotFound:
            pass
        except APIError as e:
            # Continue even if stop fails, container might already be stopped
            logger.info("Stop of %s failed, removing anyway: %s", identifier, e)

        try:
            self.client.api.remove_container(identifier, force=True)
        except NotFound:
            # Container already removed
            pass
        except APIError as e:
            raise STRuntimeError(f"Failed to delete container: {e}")

    def exec_in_container(self, identifier: str, command: str) -> CommandResult:
        try:
            exec_id = self.client.api.exec_create(
                identifier,
                cmd=["bash", "-c", command],
                stdout=True,
                stderr=True,
            )["Id"]
            stdout, stderr = self.client.api.exec_start(exec_id, demux=True)
            exit_code = self.client.api.exec_inspect(exec_id).get("ExitCode")
        except NotFound:
            raise STSandboxNotFound(f"Container {identifier} not found")
        except APIError as e:
            raise STRuntimeError(f"Failed to execute command: {e}")

        output = (stdout or b"").decode("utf-8", "replace")
        error = (stderr or b"").decode("utf-8", "replace")
        return CommandResult(
            output=output or error,
            exit_code=exit_code if exit_code is not None else -1,
        )

    def list_containers(self, name_prefix: Optional[str] = None) -> List[SandboxInfo]:
        filters = {"name": name_prefix} if name_prefix else None
        try:
            containers = self.client.api.containers(all=True, filters=filters)
        except APIError as e:
            raise STRuntimeError(f"Failed to list containers: {e}")
        infos = [_to_info(c) for c in containers]
        if name_prefix:
            # The daemon's name filter matches substrings
            infos = [i for i in infos if i.name.startswith(name_prefix)]
        return infos
