"""Logging helpers.

Modules call ``get_logger(__name__)``; the CLI calls ``setup_logging`` once
before serving so records go through rich's handler.
"""

from __future__ import annotations

import logging

from rich.logging import RichHandler

# Suppress Docker SDK debug logs
logging.getLogger("docker.utils.config").setLevel(logging.WARNING)

_CONFIGURED = False


def get_logger(name: str) -> logging.Logger:
	return logging.getLogger(name)


def setup_logging(level: str | int = "INFO") -> None:
	global _CONFIGURED
	if isinstance(level, str):
		level = logging.getLevelName(level.upper())
		if not isinstance(level, int):
			level = logging.INFO
	root = logging.getLogger()
	root.setLevel(level)
	if _CONFIGURED:
		return
	handler = RichHandler(rich_tracebacks=True, show_path=False)
	handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
	root.addHandler(handler)
	_CONFIGURED = True
