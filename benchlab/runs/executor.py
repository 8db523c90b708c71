"""Process executor — spawns one child process and streams its output.

The child's stdout and stderr are read by two independent reader tasks that
feed a single internal queue, so each stream keeps its own order while the
consumer sees one merged sequence. The sequence always ends with exactly one
``ProcessExit`` event, and nothing is emitted after it.

Timeouts escalate: SIGTERM first, SIGKILL once the grace period expires.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Union

from benchlab.runs.models import RESERVED_EXIT_CODE

logger = logging.getLogger(__name__)

_READ_SIZE = 4096


@dataclass(frozen=True)
class OutputChunk:
    stream: Literal["stdout", "stderr"]
    text: str


@dataclass(frozen=True)
class ProcessExit:
    exit_code: int
    timed_out: bool = False
    spawn_error: str | None = None

    @property
    def spawn_failed(self) -> bool:
        return self.spawn_error is not None


ExecutionEvent = Union[OutputChunk, ProcessExit]

_EOF = object()


class ExecutionHandle:
    """Single-pass async iterator over one process invocation."""

    def __init__(
        self,
        command: str,
        args: Sequence[str],
        env: Mapping[str, str] | None,
        timeout_ms: int,
        kill_grace_ms: int,
        cwd: Path | str | None = None,
    ) -> None:
        self.command = command
        self.args = list(args)
        self.env = dict(env) if env is not None else None
        self.timeout_ms = timeout_ms
        self.kill_grace_ms = kill_grace_ms
        self.cwd = str(cwd) if cwd is not None else None
        self.pid: int | None = None
        self._started = False

    def __aiter__(self) -> AsyncIterator[ExecutionEvent]:
        if self._started:
            raise RuntimeError("ExecutionHandle can only be iterated once")
        self._started = True
        return self._events()

    async def _events(self) -> AsyncIterator[ExecutionEvent]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
                cwd=self.cwd,
            )
        except OSError as e:
            text = f"Failed to start {self.command}: {e}"
            logger.warning("Spawn failed: %s", text)
            yield OutputChunk("stderr", text + "\n")
            yield ProcessExit(exit_code=RESERVED_EXIT_CODE, spawn_error=text)
            return

        self.pid = proc.pid
        logger.debug("Spawned pid=%s: %s %s", proc.pid, self.command, " ".join(self.args))

        queue: asyncio.Queue[object] = asyncio.Queue()
        readers = [
            asyncio.create_task(_pump(proc.stdout, "stdout", queue), name=f"pump-stdout-{proc.pid}"),
            asyncio.create_task(_pump(proc.stderr, "stderr", queue), name=f"pump-stderr-{proc.pid}"),
        ]
        waiter = asyncio.create_task(self._wait(proc), name=f"wait-{proc.pid}")

        finished = False
        getter: asyncio.Future[object] | None = None
        try:
            open_streams = len(readers)
            while open_streams:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
                if getter not in done:
                    # Process exited (or was killed) while the pipes are still open.
                    getter.cancel()
                    break
                item = getter.result()
                if item is _EOF:
                    open_streams -= 1
                    continue
                yield item  # type: ignore[misc]

            timed_out = await waiter
            if timed_out:
                # Keep what was captured before the kill, read nothing more.
                for task in readers:
                    task.cancel()
                await asyncio.gather(*readers, return_exceptions=True)
                while not queue.empty():
                    item = queue.get_nowait()
                    if item is not _EOF:
                        yield item  # type: ignore[misc]
            elif open_streams:
                # Natural exit: drain whatever the readers still have, bounded
                # in case a grandchild keeps the pipes open.
                async for chunk in _drain(queue, open_streams, self.kill_grace_ms / 1000):
                    yield chunk

            for task in readers:
                task.cancel()
            await asyncio.gather(*readers, return_exceptions=True)

            finished = True
            yield ProcessExit(exit_code=proc.returncode, timed_out=timed_out)  # type: ignore[arg-type]
        finally:
            if getter is not None and not getter.done():
                getter.cancel()
            if not finished:
                # Consumer went away or we were cancelled mid-run.
                await _kill(proc)
                waiter.cancel()
                for task in readers:
                    task.cancel()
                await asyncio.gather(waiter, *readers, return_exceptions=True)

    async def _wait(self, proc: asyncio.subprocess.Process) -> bool:
        """Wait for exit, enforcing the wall-clock ceiling. Returns True on timeout."""
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.timeout_ms / 1000)
            return False
        except asyncio.TimeoutError:
            logger.warning(
                "pid=%s exceeded %dms, terminating", proc.pid, self.timeout_ms,
            )
            await _terminate(proc, self.kill_grace_ms / 1000)
            return True


async def _pump(stream: asyncio.StreamReader | None, name: str, queue: asyncio.Queue[object]) -> None:
    """Read one pipe to EOF, pushing decoded chunks onto the shared queue."""
    if stream is None:
        queue.put_nowait(_EOF)
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            data = await stream.read(_READ_SIZE)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    queue.put_nowait(OutputChunk(name, tail))  # type: ignore[arg-type]
                break
            text = decoder.decode(data)
            if text:
                queue.put_nowait(OutputChunk(name, text))  # type: ignore[arg-type]
    finally:
        queue.put_nowait(_EOF)


async def _drain(
    queue: asyncio.Queue[object], open_streams: int, timeout: float,
) -> AsyncIterator[OutputChunk]:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while open_streams:
        remaining = deadline - loop.time()
        if remaining <= 0:
            logger.debug("Output pipes still open after exit, giving up on drain")
            return
        try:
            item = await asyncio.wait_for(queue.get(), timeout=remaining)
        except asyncio.TimeoutError:
            return
        if item is _EOF:
            open_streams -= 1
            continue
        yield item  # type: ignore[misc]


async def _terminate(proc: asyncio.subprocess.Process, grace: float) -> None:
    """SIGTERM, then SIGKILL after ``grace`` seconds."""
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
        return
    except asyncio.TimeoutError:
        logger.warning("pid=%s ignored SIGTERM for %.1fs, killing", proc.pid, grace)
    await _kill(proc)


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()


class ProcessExecutor:
    """Spawns external processes with a hard wall-clock timeout."""

    def __init__(self, kill_grace_ms: int = 5_000) -> None:
        self.kill_grace_ms = kill_grace_ms

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        timeout_ms: int = 600_000,
        cwd: Path | str | None = None,
    ) -> ExecutionHandle:
        """Prepare an invocation; the process starts when the handle is iterated."""
        return ExecutionHandle(command, args, env, timeout_ms, self.kill_grace_ms, cwd=cwd)

    async def probe_version(self, command: str, timeout_ms: int = 5_000) -> str | None:
        """Return the first line ``<command> --version`` prints, or None."""
        lines: list[str] = []
        async for event in self.run(command, ["--version"], timeout_ms=timeout_ms):
            if isinstance(event, OutputChunk):
                lines.append(event.text)
            elif event.exit_code != 0:
                return None
        text = "".join(lines).strip()
        return text.splitlines()[0] if text else None
