from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import IO, TextIO

from spec_orchestrator.backends.base import (
    ChildProcess,
    CommandFailedError,
    CommandOutput,
    CommandTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE_MS = 5_000
PARTIAL_OUTPUT_CHARS = 500
READ_CHUNK_BYTES = 4096

ProcessFactory = Callable[..., ChildProcess]


class AsyncioChildProcess(ChildProcess):
    """asyncio subprocess.

    In capture mode the child gets pipes and its own session, so terminate/kill reach
    every process it spawned. Otherwise stdio stays attached to the terminal.
    """

    def __init__(
        self,
        argv: list[str],
        cwd: Path | None = None,
        *,
        capture: bool = True,
        env: dict[str, str] | None = None,
    ) -> None:
        self.argv = list(argv)
        self.cwd = cwd
        self.capture = capture
        self.env = env
        self._new_session = capture and os.name == "posix"
        self._process: asyncio.subprocess.Process | None = None

    async def start(self) -> None:
        pipe = asyncio.subprocess.PIPE if self.capture else None
        self._process = await asyncio.create_subprocess_exec(
            *self.argv,
            cwd=str(self.cwd) if self.cwd else None,
            env=self.env,
            stdin=asyncio.subprocess.DEVNULL if self.capture else None,
            stdout=pipe,
            stderr=pipe,
            start_new_session=self._new_session,
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout if self._process else None

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._process.stderr if self._process else None

    def _signal_group(self, signum: int) -> bool:
        if not self._new_session or self._process is None:
            return False
        try:
            os.killpg(self._process.pid, signum)
        except ProcessLookupError:
            pass
        return True

    def terminate(self) -> None:
        if self._process is None or self._process.returncode is not None:
            return
        if self._signal_group(signal.SIGTERM):
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        if self._process is None:
            return
        if os.name == "posix" and self._signal_group(signal.SIGKILL):
            return
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        if self._process is None:
            raise RuntimeError("Process has not been started.")
        return await self._process.wait()


async def supervise(
    process: ChildProcess,
    timeout_s: float | None,
    grace_s: float,
) -> tuple[int, bool]:
    """Wait for ``process``; past ``timeout_s`` terminate it, and kill it after ``grace_s``.

    Returns the exit code and whether the timeout fired.
    """
    if timeout_s is None:
        return await process.wait(), False
    try:
        return await asyncio.wait_for(process.wait(), timeout=timeout_s), False
    except TimeoutError:
        pass

    logger.debug("PID %s exceeded %.1fs, sending terminate", process.pid, timeout_s)
    process.terminate()
    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_s), True
    except TimeoutError:
        pass

    logger.debug("PID %s ignored terminate for %.1fs, sending kill", process.pid, grace_s)
    process.kill()
    return await process.wait(), True


def _render(argv: list[str], limit: int | None = None) -> str:
    rendered = " ".join(argv)
    if limit is not None and len(rendered) > limit:
        return rendered[:limit] + "..."
    return rendered


class ProcessRunner:
    def __init__(
        self,
        *,
        grace_ms: int = DEFAULT_GRACE_MS,
        process_factory: ProcessFactory = AsyncioChildProcess,
    ) -> None:
        self.grace_ms = grace_ms
        self.process_factory = process_factory

    @property
    def grace_s(self) -> float:
        return self.grace_ms / 1000

    async def _start(self, argv: list[str], cwd: Path, *, capture: bool) -> ChildProcess:
        process = self.process_factory(argv, cwd, capture=capture)
        try:
            await process.start()
        except OSError as exc:
            raise CommandFailedError(
                f"Failed to start {_render(argv, 100)}: {exc}",
                command=argv,
                stderr=str(exc),
            ) from exc
        logger.debug("Started PID %s: %s", process.pid, _render(argv, 200))
        return process

    @staticmethod
    async def _pump(
        stream: asyncio.StreamReader,
        chunks: list[str],
        log_handle: IO[str] | None,
        mirror: TextIO | None,
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(READ_CHUNK_BYTES)
            text = decoder.decode(data, final=not data)
            if text:
                chunks.append(text)
                if log_handle is not None:
                    log_handle.write(text)
                    log_handle.flush()
                if mirror is not None:
                    mirror.write(text)
                    mirror.flush()
            if not data:
                return

    async def _finish_pumps(self, pumps: list[asyncio.Task[None]]) -> None:
        if not pumps:
            return
        _, pending = await asyncio.wait(pumps, timeout=self.grace_s)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(
        self,
        cwd: Path,
        cmd: str,
        args: list[str],
        *,
        log_file: Path | None = None,
        stream_output: bool = False,
        timeout_ms: int | None = None,
    ) -> CommandOutput:
        argv = [cmd, *args]
        log_handle: IO[str] | None = None
        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_handle = log_file.open("a", encoding="utf-8")

        try:
            process = await self._start(argv, cwd, capture=True)
            stdout_chunks: list[str] = []
            stderr_chunks: list[str] = []
            pumps: list[asyncio.Task[None]] = []
            if process.stdout is not None:
                pumps.append(
                    asyncio.create_task(
                        self._pump(
                            process.stdout,
                            stdout_chunks,
                            log_handle,
                            sys.stdout if stream_output else None,
                        )
                    )
                )
            if process.stderr is not None:
                pumps.append(
                    asyncio.create_task(
                        self._pump(
                            process.stderr,
                            stderr_chunks,
                            log_handle,
                            sys.stderr if stream_output else None,
                        )
                    )
                )

            timeout_s = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
            try:
                returncode, timed_out = await supervise(process, timeout_s, self.grace_s)
            finally:
                if process.returncode is None:
                    process.kill()
                await self._finish_pumps(pumps)
        finally:
            if log_handle is not None:
                log_handle.close()

        stdout = "".join(stdout_chunks)
        stderr = "".join(stderr_chunks)
        if timed_out:
            raise CommandTimeoutError(
                f"Command timed out after {timeout_ms}ms: {_render(argv, 100)}\n"
                f"Partial stdout: {stdout[-PARTIAL_OUTPUT_CHARS:]}",
                command=argv,
                timeout_ms=int(timeout_ms or 0),
                partial_stdout=stdout[-PARTIAL_OUTPUT_CHARS:],
            )
        if returncode != 0:
            raise CommandFailedError(
                f"Command failed: {_render(argv)} (exit {returncode})\nstderr: {stderr}",
                command=argv,
                exit_code=returncode,
                stderr=stderr,
            )
        return CommandOutput(stdout=stdout, stderr=stderr)

    async def run_attached(
        self,
        cwd: Path,
        cmd: str,
        args: list[str],
        *,
        timeout_ms: int | None = None,
    ) -> tuple[int, bool]:
        """Run with stdio attached to the terminal; returns exit code and whether it timed out."""
        argv = [cmd, *args]
        process = await self._start(argv, cwd, capture=False)
        timeout_s = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
        try:
            return await supervise(process, timeout_s, self.grace_s)
        finally:
            if process.returncode is None:
                process.kill()
