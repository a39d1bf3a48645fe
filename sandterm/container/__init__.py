"""Container runtime used by the one-shot HTTP endpoints."""

from sandterm.container.base import ContainerRuntime
from sandterm.container.docker_runtime import DockerRuntime

__all__ = [
    "ContainerRuntime",
    "DockerRuntime",
]
