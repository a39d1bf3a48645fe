from __future__ import annotations

import os
import shutil
import stat
import subprocess
from pathlib import Path
from typing import Optional

import pytest

from sandterm.config import Config


FAKE_FULL_ID = "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"
FAKE_INSPECT_ID = "fedcba9876543210fedcba9876543210fedcba9876543210fedcba9876543210"

# Stands in for the docker CLI. Behaviour is steered through FAKE_* variables,
# which every spawned process inherits from the test's environment.
FAKE_DOCKER = f"""#!/bin/sh
[ -n "$FAKE_DOCKER_LOG" ] && echo "$*" >> "$FAKE_DOCKER_LOG"
case "$1" in
  pull)
    case "${{FAKE_PULL:-ok}}" in
      fail) echo "Error response from daemon: pull access denied for $2" >&2; exit 1 ;;
      hang) exec sleep 30 ;;
    esac
    echo "latest: Pulling from library/$2"
    echo "Status: Image is up to date for $2"
    ;;
  run)
    case "${{FAKE_RUN:-ok}}" in
      ok) echo "{FAKE_FULL_ID}" ;;
      noid) ;;
      fail) echo "docker: Error response from daemon: Conflict. The container name is already in use." >&2; exit 125 ;;
      hang) exec sleep 30 ;;
    esac
    ;;
  inspect)
    if [ "${{FAKE_INSPECT:-ok}}" = fail ]; then echo "Error: No such object: $4" >&2; exit 1; fi
    echo "{FAKE_INSPECT_ID}"
    ;;
  exec)
    if [ "$3" = missing ]; then echo "Error response from daemon: No such container: $3"; exit 1; fi
    PS1='$ ' exec /bin/sh -i
    ;;
  *)
    echo "unknown command: $1" >&2
    exit 2
    ;;
esac
"""


def _runtime_is_usable(candidate: str) -> bool:
    try:
        subprocess.run([candidate, "ps"], stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=True, timeout=5)
        return True
    except Exception:
        return False


def get_available_runtime() -> Optional[str]:
    for name in ("docker", "podman"):
        if shutil.which(name) and _runtime_is_usable(name):
            return name
    return None


def require_container_runtime() -> str:
    runtime = get_available_runtime()
    if not runtime:
        pytest.skip("Container runtime (docker/podman) not available or not running")
    return runtime


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def fake_docker(tmp_path: Path, monkeypatch) -> Path:
    script = tmp_path / "docker"
    script.write_text(FAKE_DOCKER)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    for var in ("FAKE_PULL", "FAKE_RUN", "FAKE_INSPECT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("FAKE_DOCKER_LOG", str(tmp_path / "docker.log"))
    monkeypatch.setenv("HOME", str(tmp_path))
    return script


@pytest.fixture()
def docker_log(fake_docker: Path) -> Path:
    return fake_docker.parent / "docker.log"


@pytest.fixture()
def cfg(fake_docker: Path) -> Config:
    return Config(runtime=str(fake_docker), image="alpine:latest", shell="/bin/sh", name_prefix="svelte-terminal")


@pytest.fixture()
def missing_runtime_cfg(tmp_path: Path) -> Config:
    return Config(runtime=str(tmp_path / "no-such-docker"), image="alpine:latest", shell="/bin/sh")
