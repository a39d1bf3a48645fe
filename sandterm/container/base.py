"""Base class for one-shot container runtime operations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional

from sandterm.types import CommandResult, SandboxInfo


class ContainerRuntime(ABC):
    """Stateless operations on existing containers.

    Implementations are synchronous; async callers run them in a worker thread.
    """

    @abstractmethod
    def get_container(self, identifier: str) -> SandboxInfo:
        """Look a container up by name, then by id.

        Raises STSandboxNotFound when neither matches.
        """
        pass

    @abstractmethod
    def remove_container(self, identifier: str, timeout: int = 10) -> None:
        """Stop then force-remove a container.

        Succeeds when the container is already stopped or gone.
        """
        pass

    @abstractmethod
    def exec_in_container(self, identifier: str, command: str) -> CommandResult:
        """Run ``command`` through ``bash -c`` and wait for it."""
        pass

    @abstractmethod
    def list_containers(self, name_prefix: Optional[str] = None) -> List[SandboxInfo]:
        """List containers, including stopped ones."""
        pass
