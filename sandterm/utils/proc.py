from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional


OutputCallback = Callable[[bytes], Awaitable[None]]
SpawnCallback = Callable[[asyncio.subprocess.Process], None]


@dataclass
class RunOutput:
	stdout: bytes
	stderr: bytes
	exit_code: int
	duration_s: float

	@property
	def text(self) -> str:
		return (self.stdout + self.stderr).decode("utf-8", "replace")


async def run_capture(
	cmd: List[str],
	on_output: Optional[OutputCallback] = None,
	on_spawn: Optional[SpawnCallback] = None,
) -> RunOutput:
	"""Run ``cmd`` to completion and capture both output streams.

	``on_output`` is awaited with every chunk as it arrives, from either
	stream. ``on_spawn`` gets the process handle right after it starts so the
	caller can kill it. Spawn failures propagate as ``OSError``.
	"""
	start = time.monotonic()
	proc = await asyncio.create_subprocess_exec(
		*cmd,
		stdin=asyncio.subprocess.DEVNULL,
		stdout=asyncio.subprocess.PIPE,
		stderr=asyncio.subprocess.PIPE,
	)
	if on_spawn is not None:
		on_spawn(proc)
	stdout, stderr = await asyncio.gather(
		_drain(proc.stdout, on_output),
		_drain(proc.stderr, on_output),
	)
	exit_code = await proc.wait()
	dur = time.monotonic() - start
	return RunOutput(stdout=stdout, stderr=stderr, exit_code=exit_code, duration_s=dur)


async def _drain(stream: asyncio.StreamReader, on_output: Optional[OutputCallback]) -> bytes:
	buf = bytearray()
	while True:
		chunk = await stream.read(4096)
		if not chunk:
			break
		buf.extend(chunk)
		if on_output is not None:
			await on_output(chunk)
	return bytes(buf)


def kill_process(proc: Optional[asyncio.subprocess.Process]) -> None:
	"""SIGKILL ``proc`` if it is still running. Safe to call repeatedly."""
	if proc is None or proc.returncode is not None:
		return
	try:
		proc.kill()
	except ProcessLookupError:
		pass
