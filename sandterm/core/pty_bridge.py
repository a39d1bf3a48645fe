"""Interactive ``exec`` processes bound to a pseudo-terminal.

The child runs ``<runtime> exec -it <target> <shell>`` with the PTY slave as
its stdin, stdout, stderr and controlling terminal, so window size changes
made on the master reach the runtime CLI as SIGWINCH.
"""

from __future__ import annotations

import asyncio
import fcntl
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import AsyncIterator, Optional

from sandterm.config import Config
from sandterm.errors import STAttachError
from sandterm.logger import get_logger
from sandterm.types import Dimensions
from sandterm.utils.proc import kill_process


logger = get_logger(__name__)

READ_SIZE = 4096


def set_winsize(fd: int, cols: int, rows: int) -> None:
	fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def get_winsize(fd: int) -> Dimensions:
	rows, cols, _, _ = struct.unpack("HHHH", fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8))
	return Dimensions(cols=cols, rows=rows)


def _become_tty_session_leader() -> None:
	# Runs in the child after the slave has been dup'ed onto fd 0
	os.setsid()
	fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyBridge:
	def __init__(self, cfg: Optional[Config] = None):
		self.cfg = cfg or Config()
		self.target: Optional[str] = None
		self.process: Optional[asyncio.subprocess.Process] = None
		self._loop: Optional[asyncio.AbstractEventLoop] = None
		self._master: Optional[int] = None
		self._exited: Optional[asyncio.Future] = None
		self._pending = bytearray()
		self._writing = False
		self._streamed = False
		self._killed = False
		self._closed = False

	@property
	def running(self) -> bool:
		return self.process is not None and self.process.returncode is None

	@property
	def fd(self) -> Optional[int]:
		return self._master

	async def start(self, target: str, dims: Dimensions) -> None:
		"""Spawn the attach process. Raises STAttachError if it cannot start."""
		if self._closed:
			raise STAttachError("PTY bridge is closed")
		if self.process is not None:
			raise STAttachError("PTY bridge cannot be started twice")
		self._loop = asyncio.get_running_loop()
		env = dict(os.environ)
		env["TERM"] = self.cfg.term
		try:
			master, slave = pty.openpty()
		except OSError as e:
			raise STAttachError(f"Failed to attach to {target}: cannot allocate a PTY: {e}") from e
		try:
			set_winsize(slave, dims.cols, dims.rows)
			self.process = await asyncio.create_subprocess_exec(
				self.cfg.runtime, "exec", "-it", target, self.cfg.shell,
				stdin=slave,
				stdout=slave,
				stderr=slave,
				cwd=os.environ.get("HOME") or None,
				env=env,
				preexec_fn=_become_tty_session_leader,
			)
		except (OSError, subprocess.SubprocessError) as e:
			os.close(master)
			raise STAttachError(f"Failed to attach to {target}: {e}") from e
		finally:
			os.close(slave)

		os.set_blocking(master, False)
		self._master = master
		self.target = target
		self._exited = asyncio.ensure_future(self.process.wait())
		logger.info("Attached to %s (pid %s, %sx%s)", target, self.process.pid, dims.cols, dims.rows)

		if self._closed:
			# close() ran while the process was spawning
			self.close()
			raise STAttachError(f"Attach to {target} was cancelled")

	async def stream(self) -> AsyncIterator[bytes]:
		"""Yield output chunks until the process exits and the PTY is drained."""
		if self._streamed:
			raise RuntimeError("PTY output can only be streamed once")
		self._streamed = True
		while True:
			chunk = await self._read()
			if not chunk:
				return
			yield chunk

	def write(self, data: bytes) -> None:
		if self._master is None or not data:
			return
		self._pending.extend(data)
		self._flush()

	def resize(self, cols: int, rows: int) -> None:
		if self._master is None:
			return
		try:
			set_winsize(self._master, cols, rows)
		except OSError as e:
			logger.debug("Resize of %s failed: %s", self.target, e)

	def kill(self) -> None:
		proc = self.process
		if self._killed or proc is None or proc.returncode is not None:
			return
		self._killed = True
		try:
			os.killpg(proc.pid, signal.SIGKILL)
		except (ProcessLookupError, PermissionError):
			kill_process(proc)

	async def wait(self) -> int:
		if self._exited is None:
			raise STAttachError("PTY bridge was never started")
		return await asyncio.shield(self._exited)

	def close(self) -> None:
		"""Kill the process and release the PTY. Safe to call repeatedly."""
		self._closed = True
		self.kill()
		fd, self._master = self._master, None
		if fd is None:
			return
		if self._writing:
			self._loop.remove_writer(fd)
			self._writing = False
		self._loop.remove_reader(fd)
		self._pending.clear()
		os.close(fd)

	async def _read(self) -> bytes:
		while self._master is not None:
			try:
				return os.read(self._master, READ_SIZE)
			except BlockingIOError:
				if self._exited.done():
					return b""
				await self._wait_readable()
			except OSError:
				# EIO once no process holds the slave side open
				return b""
		return b""

	async def _wait_readable(self) -> None:
		fd = self._master
		readable = self._loop.create_future()

		def _ready() -> None:
			if not readable.done():
				readable.set_result(None)

		self._loop.add_reader(fd, _ready)
		try:
			await asyncio.wait({readable, self._exited}, return_when=asyncio.FIRST_COMPLETED)
		finally:
			if self._master == fd:
				self._loop.remove_reader(fd)

	def _flush(self) -> None:
		fd = self._master
		if fd is None:
			return
		while self._pending:
			try:
				n = os.write(fd, self._pending)
			except BlockingIOError:
				break
			except OSError as e:
				logger.debug("Dropping %d bytes of input for %s: %s", len(self._pending), self.target, e)
				self._pending.clear()
				break
			del self._pending[:n]
		if self._pending and not self._writing:
			self._loop.add_writer(fd, self._flush)
			self._writing = True
		elif not self._pending and self._writing:
			self._loop.remove_writer(fd)
			self._writing = False
