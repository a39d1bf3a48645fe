"""Image pull and sandbox creation through the container runtime CLI.

Each stage is a subprocess awaited in turn: pull, run, then inspect when the
run output carries no usable id. Pull failures are reported and skipped;
create failures end the attempt.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, List, Optional

from sandterm.config import Config
from sandterm.errors import STCreateFailed, STProvisionCancelled, STSpawnFailed
from sandterm.logger import get_logger
from sandterm.types import ProvisionResult
from sandterm.utils.proc import RunOutput, kill_process, run_capture


logger = get_logger(__name__)

SHORT_ID_LENGTH = 12

LogCallback = Callable[[str], Awaitable[None]]


def generate_sandbox_name(prefix: str) -> str:
	return f"{prefix}-{int(time.time() * 1000)}"


def short_id_from_output(output: str) -> Optional[str]:
	"""Return the 12-char id printed by ``run -d``, or None if there is none."""
	lines = [line.strip() for line in output.splitlines() if line.strip()]
	if not lines:
		return None
	candidate = lines[-1]
	if len(candidate) < SHORT_ID_LENGTH:
		return None
	return candidate[:SHORT_ID_LENGTH]


class Provisioner:
	def __init__(self, cfg: Optional[Config] = None, on_log: Optional[LogCallback] = None):
		self.cfg = cfg or Config()
		self._on_log = on_log
		self._process: Optional[asyncio.subprocess.Process] = None
		self._killed = False

	@property
	def process(self) -> Optional[asyncio.subprocess.Process]:
		return self._process

	@property
	def killed(self) -> bool:
		return self._killed

	async def provision(self, image: Optional[str] = None) -> ProvisionResult:
		image = image or self.cfg.image
		name = generate_sandbox_name(self.cfg.name_prefix)
		logger.info("Creating container %s with image %s", name, image)

		await self._log("Starting container creation...\n")
		await self._log(f"Pulling image: {image}...\n")
		await self._fetch_image(image)

		await self._log(f"Creating container: {name}...\n")
		created = await self._create(image, name)
		sandbox_id = await self._resolve_id(created, name)
		logger.info("Container %s ready as %s", name, sandbox_id)
		return ProvisionResult(sandbox_id=sandbox_id, sandbox_name=name)

	def kill(self) -> None:
		"""Kill the running stage and stop the chain. Idempotent."""
		self._killed = True
		kill_process(self._process)

	async def _fetch_image(self, image: str) -> None:
		# The image may already be present locally, so a failed pull is not fatal
		try:
			res = await self._run([self.cfg.runtime, "pull", image], "pull image", stream=True)
		except STSpawnFailed as e:
			logger.warning("%s", e)
			await self._log(f"{e}\n")
			return
		logger.info("Pull of %s exited with %s", image, res.exit_code)
		if res.exit_code != 0:
			await self._log("Image pull completed with warnings, continuing...\n")

	async def _create(self, image: str, name: str) -> RunOutput:
		cmd = [self.cfg.runtime, "run", "-dit", "--name", name, image, self.cfg.shell]
		res = await self._run(cmd, "create container", stream=True)
		if res.exit_code != 0:
			output = res.text.strip()
			message = f"Failed to create container. Exit code: {res.exit_code}"
			if output:
				message = f"{message}\n{output}"
			logger.warning("Create of %s exited with %s: %s", name, res.exit_code, output)
			raise STCreateFailed(message, exit_code=res.exit_code, output=output)
		return res

	async def _resolve_id(self, created: RunOutput, name: str) -> str:
		sandbox_id = short_id_from_output(created.stdout.decode("utf-8", "replace"))
		if sandbox_id:
			return sandbox_id

		logger.info("No container id in create output, inspecting %s", name)
		try:
			res = await self._run([self.cfg.runtime, "inspect", "--format", "{{.Id}}", name], "inspect container")
		except STSpawnFailed as e:
			logger.warning("%s", e)
			return name
		full_id = res.stdout.decode("utf-8", "replace").strip()
		if res.exit_code == 0 and full_id:
			return full_id[:SHORT_ID_LENGTH]
		logger.warning("Inspect of %s failed, using the name as id", name)
		return name

	async def _run(self, cmd: List[str], what: str, stream: bool = False) -> RunOutput:
		if self._killed:
			raise STProvisionCancelled("Provisioning was cancelled")
		try:
			res = await run_capture(
				cmd,
				on_output=self._log_chunk if stream else None,
				on_spawn=self._track,
			)
		except OSError as e:
			raise STSpawnFailed(f"Failed to {what}: {e}") from e
		finally:
			self._process = None
		if self._killed:
			raise STProvisionCancelled("Provisioning was cancelled")
		return res

	def _track(self, proc: asyncio.subprocess.Process) -> None:
		self._process = proc
		# kill() may have landed while the process was being spawned
		if self._killed:
			kill_process(proc)

	async def _log_chunk(self, chunk: bytes) -> None:
		await self._log(chunk.decode("utf-8", "replace"))

	async def _log(self, text: str) -> None:
		if self._on_log is not None and not self._killed:
			await self._on_log(text)
