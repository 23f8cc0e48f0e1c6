"""Password injection through an ask-password helper executable.

The secret never appears on a command line: it is handed to the helper in
the ``GPU_SSH_STATS_PASSWORD`` environment variable and read back from the
helper's stdout. Any executable honouring that contract can replace the
default script (for example a wrapper around a keyring).
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from .errors import NodeConnectionError

_LOGGER = logging.getLogger(__name__)

ASKPASS_ENV = "GPU_SSH_STATS_PASSWORD"
ASKPASS_NAME = "askpass_gpu_ssh_stats.sh"
ASKPASS_SCRIPT = f'#!/bin/sh\nprintf \'%s\\n\' "${ASKPASS_ENV}"\n'
DEFAULT_TIMEOUT = 5.0


class AskPass:
    """Run the ask-password helper to obtain a node's secret."""

    def __init__(
        self,
        directory: Optional[str] = None,
        helper: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self._directory = Path(directory or "~/.ssh").expanduser()
        self._helper = Path(helper).expanduser() if helper else None
        self._timeout = timeout
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._helper or self._directory / ASKPASS_NAME

    def ensure_helper(self) -> Path:
        """Create the default helper script if it does not exist yet.

        The script is written to a temporary file and renamed into place, so
        a concurrent caller never executes a half-written helper.
        """
        path = self.path
        if self._helper is not None or path.exists():
            return path
        self._directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{ASKPASS_NAME}.", dir=self._directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(ASKPASS_SCRIPT)
            os.chmod(tmp_name, 0o755)
            os.replace(tmp_name, path)
        except OSError:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise
        _LOGGER.debug("Created ask-password helper at %s", path)
        return path

    async def async_get_secret(self, password: str) -> str:
        """Return the secret the helper emits for *password*."""
        async with self._lock:
            path = await asyncio.to_thread(self.ensure_helper)
        env = dict(os.environ)
        env[ASKPASS_ENV] = password
        try:
            proc = await asyncio.create_subprocess_exec(
                str(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as err:
            raise NodeConnectionError(f"Cannot run ask-password helper {path}: {err}") from err
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self._timeout)
        except asyncio.TimeoutError as err:
            proc.kill()
            await proc.wait()
            raise NodeConnectionError("Ask-password helper timed out") from err
        if proc.returncode != 0:
            raise NodeConnectionError(
                f"Ask-password helper failed: {stderr.decode('utf-8', 'ignore').strip()}"
            )
        return stdout.decode("utf-8", "ignore").rstrip("\r\n")
