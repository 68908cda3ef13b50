"""Run one shell command with bounded output and a wall-clock timeout.

stdout and stderr are drained concurrently on a private asyncio loop, so a
chatty process can never block on a full pipe. Each stream keeps at most
MAX_STREAM_BYTES; anything beyond that is read and dropped.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from .errors import SpawnError

logger = logging.getLogger(__name__)

MAX_STREAM_BYTES = 10 * 1024 * 1024  # 10 MiB per stream
DEFAULT_TIMEOUT = 60  # seconds
READ_CHUNK = 64 * 1024
_DRAIN_GRACE = 2  # seconds to finish draining pipes after a kill
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals

_GIT_BASH_PATHS = (
    r"C:\Program Files\Git\bin\bash.exe",
    r"C:\Program Files (x86)\Git\bin\bash.exe",
)


@dataclass
class CommandReport:
    command: str
    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int | None = None
    timed_out: bool = False
    timeout: float = DEFAULT_TIMEOUT
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    def render(self) -> str:
        """Format the report as the text handed back to the model."""
        out = ""
        if self.timed_out:
            out += f"[Command timed out after {self.timeout:g}s]\n\n"

        stdout = self.stdout.decode("utf-8", errors="replace")
        stderr = self.stderr.decode("utf-8", errors="replace")
        body = stdout
        if stderr:
            if body and not body.endswith("\n"):
                body += "\n"
            body += stderr
        out += body if body else "(no output)"

        for name, truncated in (
            ("stdout", self.stdout_truncated),
            ("stderr", self.stderr_truncated),
        ):
            if truncated:
                out += f"\n\n[{name} truncated at {MAX_STREAM_BYTES // (1024 * 1024)} MiB]"

        if not self.timed_out and self.exit_code:
            out += f"\n\n[Exit code: {self.exit_code}]"
        return out


def shell_argv(command: str) -> list[str]:
    """Build the argv that runs *command* through the host's shell."""
    if sys.platform == "win32":
        for candidate in _GIT_BASH_PATHS:
            if Path(candidate).exists():
                return [candidate, "-c", command]
        bash = shutil.which("bash")
        if bash:
            return [bash, "-c", command]
        return ["cmd.exe", "/c", command]
    shell = os.environ.get("SHELL") or "/bin/sh"
    return [shell, "-c", command]


def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill a process and its descendants.

    On Unix the child leads its own process group (start_new_session=True),
    so the whole group is signalled. On Windows taskkill /T walks the tree.
    """
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except ProcessLookupError:
        pass  # already dead


async def _drain(stream: asyncio.StreamReader, cap: int) -> tuple[bytes, bool]:
    """Read *stream* to EOF, keeping at most *cap* bytes."""
    kept = bytearray()
    truncated = False
    while True:
        chunk = await stream.read(READ_CHUNK)
        if not chunk:
            break
        room = cap - len(kept)
        if room > 0:
            kept += chunk[:room]
        if len(chunk) > room:
            truncated = True
    return bytes(kept), truncated


async def _execute(command: str, timeout: float, workdir: str | None) -> CommandReport:
    report = CommandReport(command, timeout=timeout)
    try:
        proc = await asyncio.create_subprocess_exec(
            *shell_argv(command),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            start_new_session=sys.platform != "win32",
        )
    except OSError as exc:
        raise SpawnError(f"failed to start command: {exc}") from exc

    readers = asyncio.gather(
        _drain(proc.stdout, MAX_STREAM_BYTES),
        _drain(proc.stderr, MAX_STREAM_BYTES),
    )
    try:
        try:
            await asyncio.wait_for(proc.wait(), timeout)
        except TimeoutError:
            report.timed_out = True
            logger.debug("command timed out after %ss: %s", timeout, command)
            _kill_process_tree(proc)
            try:
                await asyncio.wait_for(proc.wait(), _KILL_WAIT_TIMEOUT)
            except TimeoutError:
                logger.warning("process %d did not exit after SIGKILL", proc.pid)
        try:
            (out, out_cut), (err, err_cut) = await asyncio.wait_for(
                asyncio.shield(readers), _DRAIN_GRACE
            )
        except TimeoutError:
            # A descendant that escaped the process group still holds the pipes.
            readers.cancel()
            out, out_cut, err, err_cut = b"", False, b"", False
    finally:
        if proc.returncode is None:
            _kill_process_tree(proc)
        if not readers.done():
            readers.cancel()

    report.stdout, report.stdout_truncated = out, out_cut
    report.stderr, report.stderr_truncated = err, err_cut
    report.exit_code = proc.returncode
    return report


def run(
    command: str, timeout: float = DEFAULT_TIMEOUT, workdir: str | None = None
) -> CommandReport:
    """Run *command* and return its report.

    The process is killed if it outlives *timeout* seconds and on any other
    way out of this call, including KeyboardInterrupt.

    Raises:
        SpawnError: the shell could not be started (bad workdir, no shell).
    """
    if workdir is not None and not Path(workdir).is_dir():
        raise SpawnError(f"working directory does not exist: {workdir}")
    return asyncio.run(_execute(command, timeout, workdir))
