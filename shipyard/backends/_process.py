"""Subprocess helper shared by the docker and kubectl backends."""

from __future__ import annotations

import logging
import subprocess

logger = logging.getLogger(__name__)


class CommandTimeout(Exception):
    """Raised when a backend command exceeds its timeout."""


def run_command(
    *args: str,
    input_text: str | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command and return the completed process without raising on exit code.

    Raises ``CommandTimeout`` if *timeout* elapses and ``FileNotFoundError``
    if the executable is missing.
    """
    logger.debug("exec: %s", " ".join(args))
    try:
        return subprocess.run(
            list(args),
            input=input_text,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeout(f"{args[0]} timed out after {timeout}s") from exc
