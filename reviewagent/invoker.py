"""Supervised execution of the external review agent.

One agent process per job:
  1. Copy the MCP side-channel config into the working copy (if present)
  2. Write the rendered prompt to a per-job temp file and hand it to the
     process as stdin (never as an argument, never through a shell)
  3. Stream stdout/stderr into bounded buffers and the log
  4. Terminate the whole process group when the timeout expires

The temp prompt file is removed and the process group is reaped on every
exit path, including cancellation during shutdown.
"""

import asyncio
import codecs
import logging
import os
import shutil
import signal
import tempfile
import time
from pathlib import Path
from typing import Mapping, Optional, Sequence

from common.errors import ProcessError, ReviewTimeoutError
from common.job_models import AgentRunResult

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024
_EXIT_POLL_SECONDS = 0.1


class _BoundedBuffer:
    """Keeps the most recent ``limit`` characters of a stream."""

    def __init__(self, name: str, limit: int):
        self.name = name
        self.limit = limit
        self.truncated = False
        self._parts: list[str] = []
        self._size = 0

    def append(self, text: str) -> None:
        self._parts.append(text)
        self._size += len(text)
        if self._size > self.limit:
            joined = "".join(self._parts)[-self.limit:]
            self._parts = [joined]
            self._size = len(joined)
            if not self.truncated:
                self.truncated = True
                logger.warning(f"Agent {self.name} exceeded {self.limit} bytes; keeping the tail only")

    def getvalue(self) -> str:
        return "".join(self._parts)


class ReviewInvoker:
    def __init__(
        self,
        command: str = "claude",
        *,
        shell: str = "/bin/bash",
        path: str = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        home: Optional[str] = None,
        passthrough_env: Sequence[str] = (),
        mcp_config_path: Optional[str] = None,
        max_buffer_bytes: int = 10 * 1024 * 1024,
        terminate_grace_seconds: float = 5.0,
    ):
        self.command = command
        self.shell = shell
        self.path = path
        self.home = home or str(Path.home())
        self.passthrough_env = list(passthrough_env)
        self.mcp_config_path = Path(mcp_config_path) if mcp_config_path else None
        self.max_buffer_bytes = max_buffer_bytes
        self.terminate_grace_seconds = terminate_grace_seconds

    def build_command(self, model: str) -> list[str]:
        return [
            self.command,
            "--dangerously-skip-permissions",
            "--model",
            model,
            "--output-format",
            "text",
        ]

    def build_env(self, source: Optional[Mapping[str, str]] = None) -> dict[str, str]:
        """Curated environment: explicit SHELL/PATH/HOME plus vetted passthrough names."""
        source = os.environ if source is None else source
        env = {"SHELL": self.shell, "PATH": self.path, "HOME": self.home}
        for name in self.passthrough_env:
            if name in source:
                env[name] = source[name]
        return env

    def install_mcp_config(self, working_copy: Path) -> None:
        if self.mcp_config_path is None:
            return
        if not self.mcp_config_path.is_file():
            logger.warning(
                f"{self.mcp_config_path} not found - the agent will run without MCP servers"
            )
            return
        destination = working_copy / ".mcp.json"
        shutil.copyfile(self.mcp_config_path, destination)
        logger.info(f"Copied MCP config to {destination}")

    async def invoke(
        self,
        prompt: str,
        working_copy: Path,
        model: str,
        timeout_seconds: float,
    ) -> AgentRunResult:
        """
        Run the agent against ``working_copy`` and return its captured output.

        Raises:
            ReviewTimeoutError: the process did not exit within ``timeout_seconds``
            ProcessError: the process could not start or exited non-zero
        """
        self.install_mcp_config(working_copy)

        fd, prompt_path = tempfile.mkstemp(prefix="pr-review-", suffix=".txt")
        process: Optional[asyncio.subprocess.Process] = None
        stdout_buf = _BoundedBuffer("stdout", self.max_buffer_bytes)
        stderr_buf = _BoundedBuffer("stderr", self.max_buffer_bytes)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(prompt)

            logger.info(f"Starting review agent with {model} model (timeout: {timeout_seconds:g}s)")
            started = time.monotonic()

            with open(prompt_path, "rb") as prompt_stdin:
                try:
                    process = await asyncio.create_subprocess_exec(
                        *self.build_command(model),
                        cwd=str(working_copy),
                        env=self.build_env(),
                        stdin=prompt_stdin,
                        stdout=asyncio.subprocess.PIPE,
                        stderr=asyncio.subprocess.PIPE,
                        start_new_session=True,
                    )
                except OSError as exc:
                    raise ProcessError(f"Could not start review agent {self.command!r}: {exc}") from exc

            try:
                exit_status = await asyncio.wait_for(
                    self._communicate(process, stdout_buf, stderr_buf),
                    timeout=timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.error(f"Review agent timed out after {timeout_seconds:g}s, terminating")
                await self._terminate(process)
                raise ReviewTimeoutError(timeout_seconds) from None

            duration = time.monotonic() - started
            stdout, stderr = stdout_buf.getvalue(), stderr_buf.getvalue()

            if exit_status != 0:
                logger.error(f"Review agent failed with code: {exit_status}")
                raise ProcessError(
                    f"Review agent exited with code {exit_status}: {stderr or stdout or 'No error output'}",
                    exit_status=exit_status,
                    stdout=stdout,
                    stderr=stderr,
                )

            logger.info(f"Review agent completed in {duration:.2f}s")
            if stderr:
                logger.warning(f"Review agent warnings: {stderr}")

            return AgentRunResult(
                stdout=stdout,
                stderr=stderr,
                exit_status=exit_status,
                duration_seconds=duration,
                stdout_truncated=stdout_buf.truncated,
            )
        finally:
            if process is not None and process.returncode is None:
                await self._terminate(process)
            try:
                os.unlink(prompt_path)
            except FileNotFoundError:
                pass

    async def _communicate(
        self,
        process: asyncio.subprocess.Process,
        stdout_buf: _BoundedBuffer,
        stderr_buf: _BoundedBuffer,
    ) -> int:
        pumps = asyncio.gather(
            self._pump(process.stdout, stdout_buf, logging.INFO),
            self._pump(process.stderr, stderr_buf, logging.WARNING),
        )
        try:
            # A background child can keep the pipes open after the agent
            # exits, and process.wait() only returns once they close, so exit
            # is detected from the return code instead.
            while not pumps.done() and process.returncode is None:
                await asyncio.wait({pumps}, timeout=_EXIT_POLL_SECONDS)
            if pumps.done():
                await pumps
                return await process.wait()

            try:
                await asyncio.wait_for(pumps, timeout=self.terminate_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Review agent exited but its output pipes are still held open; killing leftover processes")
                self._signal_group(process, signal.SIGKILL)
            return process.returncode
        finally:
            if not pumps.done():
                pumps.cancel()

    async def _pump(self, stream: asyncio.StreamReader, buffer: _BoundedBuffer, level: int) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                buffer.append(text)
                pending += text
                *lines, pending = pending.split("\n")
                for line in lines:
                    logger.log(level, f"[agent] {line}")
            if not chunk:
                break
        if pending:
            logger.log(level, f"[agent] {pending}")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL after the grace period."""
        self._signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace_seconds)
            return
        except asyncio.TimeoutError:
            logger.warning(f"Review agent ignored SIGTERM for {self.terminate_grace_seconds:g}s, killing")

        self._signal_group(process, signal.SIGKILL)
        await process.wait()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            # Group already gone.
            pass
