from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
from typing import Awaitable, Callable, Optional

import asyncio.subprocess as aio_subprocess

from .core import SpawnError, WriteError
from .settings import AgentConfig

logger = logging.getLogger(__name__)

LineHandler = Callable[[bytes], Awaitable[None]]
ExitHandler = Callable[[Optional[int]], Awaitable[None]]

# ACP frames carry whole file contents; asyncio's 64 KiB default is too small
STREAM_LIMIT = 10 * 1024 * 1024


def resolve_executable(command: str, env: dict) -> str:
    """Resolve ``command`` the way the child's own PATH would."""
    if os.path.dirname(command):
        if os.path.isfile(command) and os.access(command, os.X_OK):
            return command
        raise SpawnError(f"agent executable is missing or not executable: {command}")
    resolved = shutil.which(command, path=env.get("PATH"))
    if resolved is None:
        raise SpawnError(f"agent command not found on PATH: {command}")
    return resolved


class ProcessTransport:
    """
    Owns one agent subprocess and its stdio pipes.

    - Inbound lines go to ``on_line`` one at a time, in order, from a single read loop
    - ``on_exit`` runs exactly once, after the last line
    - ``stop`` terminates, then kills after ``grace_period``; concurrent callers all wait for the process to die
    """

    def __init__(self, grace_period: float = 2.0) -> None:
        self._grace_period = grace_period
        self._proc: Optional[aio_subprocess.Process] = None
        self._on_line: Optional[LineHandler] = None
        self._on_exit: Optional[ExitHandler] = None
        self._read_task: Optional[asyncio.Task[None]] = None
        self._stderr_task: Optional[asyncio.Task[None]] = None
        self._write_lock = asyncio.Lock()
        self._exit_reported = False
        self._stopping: Optional[asyncio.Future[None]] = None
        self._stopped = False

    async def __aenter__(self) -> "ProcessTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # --- Introspection -----------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode if self._proc is not None else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None and not self._stopped

    # --- Lifecycle ---------------------------------------------------------------

    def subscribe(self, on_line: LineHandler, on_exit: ExitHandler) -> None:
        if self._proc is not None:
            raise RuntimeError("subscribe() must be called before start()")
        self._on_line = on_line
        self._on_exit = on_exit

    async def start(self, config: AgentConfig) -> None:
        if self._proc is not None or self._stopped:
            raise RuntimeError("transport already started")
        env = config.process_env()
        executable = resolve_executable(config.command, env)
        logger.info(
            "spawning agent %s: %s %s (cwd=%s)",
            config.id,
            executable,
            " ".join(config.args),
            config.working_directory,
        )
        try:
            self._proc = await asyncio.create_subprocess_exec(
                executable,
                *config.args,
                stdin=aio_subprocess.PIPE,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                cwd=config.working_directory,
                env=env,
                limit=STREAM_LIMIT,
            )
        except (FileNotFoundError, PermissionError, NotADirectoryError) as err:
            raise SpawnError(f"failed to launch {config.command}: {err}") from err
        except OSError as err:
            raise SpawnError(f"failed to launch {config.command}: {err}") from err

        if self._proc.stdin is None or self._proc.stdout is None:
            raise SpawnError("agent process does not expose stdio pipes")
        logger.debug("agent started pid=%s", self._proc.pid)
        self._read_task = asyncio.create_task(self._receive_loop())
        if self._proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(self._proc.stderr))

    async def send(self, data: bytes) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None:
            raise WriteError("agent process is not running")
        if self._stopping is not None or proc.returncode is not None or proc.stdin.is_closing():
            raise WriteError("agent process has exited")
        async with self._write_lock:
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (ConnectionError, RuntimeError) as err:
                raise WriteError(f"write to agent failed: {err}") from err

    async def stop(self) -> None:
        if self._stopped:
            return
        if self._stopping is not None:
            # the caller already stopping awaits the read loop; waiting back would deadlock
            if asyncio.current_task() is not self._read_task:
                await asyncio.shield(self._stopping)
            return
        self._stopping = asyncio.get_running_loop().create_future()
        proc = self._proc
        try:
            if proc is None:
                return
            if proc.stdin is not None and not proc.stdin.is_closing():
                with contextlib.suppress(Exception):
                    proc.stdin.close()
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.terminate()
                try:
                    await asyncio.wait_for(proc.wait(), self._grace_period)
                except asyncio.TimeoutError:
                    logger.warning("agent pid=%s ignored SIGTERM, killing", proc.pid)
                    with contextlib.suppress(ProcessLookupError):
                        proc.kill()
                    await proc.wait()
            for task in (self._read_task, self._stderr_task):
                if task is None or task is asyncio.current_task():
                    continue
                try:
                    await asyncio.wait_for(asyncio.shield(task), self._grace_period)
                except asyncio.TimeoutError:
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            logger.debug("agent pid=%s stopped rc=%s", proc.pid, proc.returncode)
        finally:
            self._stopped = True
            self._stopping.set_result(None)

    # --- IO loops ----------------------------------------------------------------

    async def _receive_loop(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        reader = self._proc.stdout
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as err:
                    # line longer than STREAM_LIMIT; the framing is lost
                    logger.error("agent output exceeded %d bytes per line: %s", STREAM_LIMIT, err)
                    break
                if not line:
                    break
                if self._on_line is not None:
                    await self._on_line(line)
        except asyncio.CancelledError:
            pass
        finally:
            await self._report_exit()

    async def _report_exit(self) -> None:
        if self._exit_reported:
            return
        self._exit_reported = True
        code: Optional[int] = None
        if self._proc is not None:
            try:
                code = await asyncio.wait_for(asyncio.shield(self._proc.wait()), self._grace_period)
            except asyncio.TimeoutError:
                # stdout closed but the process lingers; the owner decides whether to stop it
                code = None
        logger.info("agent output closed rc=%s", code)
        if self._on_exit is not None:
            await self._on_exit(code)

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        try:
            while True:
                try:
                    line = await stream.readline()
                except ValueError as err:
                    # readline discarded the oversized line; the pipe must keep draining
                    logger.debug("agent stderr line dropped: %s", err)
                    continue
                if not line:
                    break
                logger.debug("agent stderr: %s", line.decode("utf-8", errors="replace").rstrip())
        except asyncio.CancelledError:
            pass
