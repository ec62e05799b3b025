"""
Command Execution for the workbench.

WHAT THIS FILE DOES:
-------------------
Runs commands against the current project inside an execution engine.
The engine is a single shared resource, so this module owns it and
serializes access to it.

HOW IT WORKS:
------------
1. ExecutionEngine: Narrow capability interface an engine implements
2. SubprocessEngine: Local engine - sandbox dir + shell subprocesses
3. CancellationToken: One per command, shared by stop() and the timeout
4. OutputBuffer: Bounded capture of a command's output
5. ExecutionController: Owns the engine, the state machine and file sync

CONTROLLER STATES:
-----------------
    COLD ──boot()──► BOOTING ──ok──► READY ──run()──► RUNNING
      ▲                 │              ▲                 │
      └────failure──────┘              └────finished─────┘

    - boot() is shared: concurrent callers wait on ONE attempt
    - run() while another run is in flight raises BusyExecution (no queue)
    - stop() and the timeout both cancel the same token; either way the
      command finishes with exit code 130 and nothing is raised

FILE SYNC:
---------
Before every run the whole project is written into the engine, then every
path written by the previous sync that is no longer in the project is
removed. Deleted files cannot leak from one run into the next.
"""

import asyncio
import codecs
import logging
import os
import shutil
import signal
import tempfile
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional, Union

from config import RuntimeConfig
from errors import (
    BootTimeout,
    BusyExecution,
    CancelledByTimeout,
    CancelledByUser,
    CommandCancelled,
)
from schemas import CANCELLED_EXIT_CODE, CommandResult, FileRecord, ProjectState

logger = logging.getLogger("workbench.execution")

OutputSink = Callable[[str], None]


# =============================================================================
# SECTION 1: CANCELLATION AND OUTPUT
# =============================================================================

class CancellationToken:
    """
    Cooperative cancellation signal for one command.

    The first cancel() wins and fixes the reason; later calls are ignored.
    Engines either await wait() or check `cancelled`, and may raise
    `reason` to unwind.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[CommandCancelled] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: CommandCancelled) -> bool:
        """Signal cancellation. Returns False if already cancelled."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> CommandCancelled:
        await self._event.wait()
        return self.reason

    def raise_if_cancelled(self) -> None:
        if self.reason is not None:
            raise self.reason


class OutputBuffer:
    """Keeps the last `max_chars` characters written to it."""

    def __init__(self, max_chars: int = 120_000):
        self.max_chars = max_chars
        self._chunks: list[str] = []
        self._size = 0

    def write(self, text: str) -> None:
        if not text:
            return
        self._chunks.append(text)
        self._size += len(text)
        if self._size > self.max_chars * 2:
            self._compact()

    def _compact(self) -> None:
        text = "".join(self._chunks)[-self.max_chars:]
        self._chunks = [text]
        self._size = len(text)

    def getvalue(self) -> str:
        return "".join(self._chunks)[-self.max_chars:]

    def clear(self) -> None:
        self._chunks = []
        self._size = 0


# =============================================================================
# SECTION 2: ENGINE INTERFACE
# =============================================================================

class ExecutionEngine(ABC):
    """
    What the controller needs from an execution engine.

    Booting is done by an async factory (for SubprocessEngine: its boot()
    classmethod) so the controller can put a deadline on it.
    """

    @abstractmethod
    async def materialize_file(self, path: str, content: str) -> None:
        pass

    @abstractmethod
    async def remove_file(self, path: str) -> None:
        pass

    @abstractmethod
    async def run(
        self,
        command: str,
        on_stdout: OutputSink,
        on_stderr: OutputSink,
        token: CancellationToken,
    ) -> CommandResult:
        """
        Run a command to completion.

        Must stream output through the sinks as it is produced and should
        stop promptly once `token` is cancelled.
        """
        pass

    @abstractmethod
    async def send_input(self, text: str) -> None:
        pass

    @abstractmethod
    async def destroy(self) -> None:
        pass


EngineFactory = Callable[[], Awaitable[ExecutionEngine]]


# =============================================================================
# SECTION 3: LOCAL SUBPROCESS ENGINE
# =============================================================================

class SubprocessEngine(ExecutionEngine):
    """
    Runs shell commands in a private sandbox directory.

    All file operations are restricted to the sandbox: a project path is
    always resolved inside it, and anything resolving outside is refused.
    """

    def __init__(self, root: Path, owns_root: bool = True):
        """
        Args:
            root: Sandbox directory; project "/" maps here
            owns_root: Delete the directory on destroy()
        """
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._owns_root = owns_root
        self._process: Optional[asyncio.subprocess.Process] = None

    @classmethod
    async def boot(cls, root: Optional[Path] = None) -> "SubprocessEngine":
        """Create an engine in `root`, or in a fresh temp dir."""
        if root is None:
            return cls(Path(tempfile.mkdtemp(prefix="workbench_")), owns_root=True)
        return cls(root, owns_root=False)

    def _resolve_path(self, path: str) -> Path:
        """
        Resolve a project path within the sandbox.

        Raises:
            ValueError: If path attempts to escape the sandbox
        """
        full_path = (self.root / path.lstrip("/")).resolve()
        try:
            full_path.relative_to(self.root)
        except ValueError:
            raise ValueError(f"Path '{path}' attempts to escape the sandbox")
        return full_path

    async def materialize_file(self, path: str, content: str) -> None:
        full_path = self._resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")

    async def remove_file(self, path: str) -> None:
        full_path = self._resolve_path(path)
        full_path.unlink(missing_ok=True)

        # Prune directories the removal left empty
        parent = full_path.parent
        while parent != self.root:
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, sink: OutputSink) -> str:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        collected = []
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                collected.append(text)
                sink(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            collected.append(tail)
            sink(tail)
        return "".join(collected)

    @staticmethod
    def _signal(process: asyncio.subprocess.Process, sig: int) -> None:
        """Signal the command's whole process group (POSIX) or the process."""
        try:
            if hasattr(os, "killpg"):
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        self._signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=2.0)
        except asyncio.TimeoutError:
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            await process.wait()

    async def run(
        self,
        command: str,
        on_stdout: OutputSink,
        on_stderr: OutputSink,
        token: CancellationToken,
    ) -> CommandResult:
        token.raise_if_cancelled()

        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.root),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, "PWD": str(self.root)},
            start_new_session=True,
        )
        self._process = process

        pumps = asyncio.gather(
            self._pump(process.stdout, on_stdout),
            self._pump(process.stderr, on_stderr),
        )
        waiter = asyncio.ensure_future(process.wait())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({waiter, cancelled}, return_when=asyncio.FIRST_COMPLETED)
            if token.cancelled:
                await self._terminate(process)
            stdout, stderr = await pumps
            await waiter
        finally:
            cancelled.cancel()
            if process.returncode is None:
                await self._terminate(process)
            self._process = None

        token.raise_if_cancelled()
        return CommandResult(
            command=command,
            stdout=stdout,
            stderr=stderr,
            exit_code=process.returncode,
        )

    async def send_input(self, text: str) -> None:
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            return
        process.stdin.write(text.encode("utf-8"))
        try:
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Input dropped; process closed stdin")

    async def destroy(self) -> None:
        if self._process is not None:
            await self._terminate(self._process)
        if self._owns_root:
            shutil.rmtree(self.root, ignore_errors=True)


# =============================================================================
# SECTION 4: EXECUTION CONTROLLER
# =============================================================================

class ControllerState(str, Enum):
    COLD = "cold"
    BOOTING = "booting"
    READY = "ready"
    RUNNING = "running"


def _retrieve_exception(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class ExecutionController:
    """
    Owns the execution engine and runs one command at a time.

    Usage:
        controller = ExecutionController(SubprocessEngine.boot, config.runtime)
        result = await controller.run("python main.py", state,
                                      on_stdout=print)
        await controller.shutdown()
    """

    def __init__(self, engine_factory: EngineFactory, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig()
        self._engine_factory = engine_factory
        self._engine: Optional[ExecutionEngine] = None
        self._state = ControllerState.COLD
        self._boot_task: Optional[asyncio.Task] = None
        self._busy = False
        self._token: Optional[CancellationToken] = None
        self._settled: Optional[asyncio.Event] = None
        self._synced_paths: set[str] = set()

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def synced_paths(self) -> frozenset[str]:
        """Paths written into the engine by the last sync."""
        return frozenset(self._synced_paths)

    # -------------------------------------------------------------------------
    # Boot / shutdown
    # -------------------------------------------------------------------------

    async def boot(self) -> ExecutionEngine:
        """
        Start the engine if needed and return it.

        Concurrent callers share one attempt and see the same outcome.

        Raises:
            BootTimeout: If the engine does not start within boot_timeout
        """
        if self._engine is not None:
            return self._engine

        if self._boot_task is None:
            self._state = ControllerState.BOOTING
            self._boot_task = asyncio.ensure_future(self._boot_once())
            # Callers may all be cancelled before the boot fails
            self._boot_task.add_done_callback(_retrieve_exception)

        return await asyncio.shield(self._boot_task)

    async def _boot_once(self) -> ExecutionEngine:
        logger.info("Booting execution engine")
        try:
            engine = await asyncio.wait_for(self._engine_factory(), timeout=self.config.boot_timeout)
        except asyncio.TimeoutError:
            self._reset()
            logger.warning("Engine boot timed out after %ss", self.config.boot_timeout)
            raise BootTimeout(
                f"Execution engine did not start within {self.config.boot_timeout:g}s. Try again."
            ) from None
        except BaseException:
            self._reset()
            logger.warning("Engine boot failed", exc_info=True)
            raise

        self._engine = engine
        self._boot_task = None
        self._state = ControllerState.READY
        return engine

    def _reset(self) -> None:
        self._engine = None
        self._boot_task = None
        self._synced_paths = set()
        self._state = ControllerState.COLD

    async def shutdown(self) -> None:
        """Stop any running command, destroy the engine, go back to COLD."""
        await self.stop()
        engine = self._engine
        self._reset()
        if engine is not None:
            await engine.destroy()

    # -------------------------------------------------------------------------
    # File sync
    # -------------------------------------------------------------------------

    async def sync_files(self, files: Union[ProjectState, Iterable[FileRecord]]) -> None:
        """
        Reconcile the engine's files with `files`.

        Writes every file, then removes paths from the previous sync that
        are not in `files`.
        """
        engine = await self.boot()
        records = files.file_records() if isinstance(files, ProjectState) else [
            r for r in files if r.is_file
        ]

        current = set()
        for record in records:
            await engine.materialize_file(record.path, record.content or "")
            current.add(record.path)

        stale = self._synced_paths - current
        for path in sorted(stale):
            await engine.remove_file(path)

        self._synced_paths = current
        logger.debug("Synced %d files, removed %d stale", len(current), len(stale))

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def run(
        self,
        command: str,
        files: Union[ProjectState, Iterable[FileRecord]],
        on_stdout: Optional[OutputSink] = None,
        on_stderr: Optional[OutputSink] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Sync `files` and run `command` in the engine.

        Args:
            command: Shell command line
            files: Current project files
            on_stdout/on_stderr: Called with output chunks as they arrive
            timeout: Seconds before the command is cancelled
                     (default: config.command_timeout)

        Returns:
            CommandResult; exit_code 130 if stopped or timed out

        Raises:
            BusyExecution: If a command is already running
            BootTimeout: If the engine could not be started
        """
        if self._busy:
            raise BusyExecution()
        self._busy = True
        self._settled = asyncio.Event()
        token = CancellationToken()
        self._token = token
        started = time.monotonic()

        try:
            engine = await self.boot()
            if token.cancelled:
                return self._cancelled_result(command, token, started)
            await self.sync_files(files)
            if token.cancelled:
                return self._cancelled_result(command, token, started)

            self._state = ControllerState.RUNNING
            return await self._run_with_deadline(
                engine,
                command,
                token,
                on_stdout,
                on_stderr,
                self.config.command_timeout if timeout is None else timeout,
            )
        finally:
            self._token = None
            self._busy = False
            if self._state is ControllerState.RUNNING:
                self._state = ControllerState.READY
            self._settled.set()

    async def _run_with_deadline(
        self,
        engine: ExecutionEngine,
        command: str,
        token: CancellationToken,
        on_stdout: Optional[OutputSink],
        on_stderr: Optional[OutputSink],
        timeout: float,
    ) -> CommandResult:
        stdout = OutputBuffer(self.config.max_output_chars)
        stderr = OutputBuffer(self.config.max_output_chars)

        def out(chunk: str) -> None:
            stdout.write(chunk)
            if on_stdout:
                on_stdout(chunk)

        def err(chunk: str) -> None:
            stderr.write(chunk)
            if on_stderr:
                on_stderr(chunk)

        loop = asyncio.get_running_loop()
        started = time.monotonic()
        timer = loop.call_later(
            timeout,
            token.cancel,
            CancelledByTimeout(f"Command timed out after {timeout:g}s."),
        )
        run_task = asyncio.ensure_future(engine.run(command, out, err, token))
        cancel_task = asyncio.ensure_future(token.wait())

        result: Optional[CommandResult] = None
        try:
            await asyncio.wait({run_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)

            if not run_task.done():
                # Cancelled: give the engine a grace period to unwind
                logger.info("Cancelling '%s' (%s)", command, token.reason.source)
                await asyncio.wait({run_task}, timeout=self.config.stop_grace)
                if not run_task.done():
                    logger.warning("Engine did not settle within %ss; abandoning command", self.config.stop_grace)
                    run_task.cancel()
                    await asyncio.wait({run_task}, timeout=self.config.stop_grace)

            if run_task.done() and not run_task.cancelled():
                try:
                    result = run_task.result()
                except CommandCancelled as e:
                    token.cancel(e)
                except Exception:
                    if not token.cancelled:
                        raise
                    logger.debug("Engine error after cancellation ignored", exc_info=True)
        finally:
            timer.cancel()
            cancel_task.cancel()
            if not run_task.done():
                run_task.cancel()

        if token.cancelled:
            return self._cancelled_result(
                command,
                token,
                started,
                stdout=result.stdout if result and result.stdout else stdout.getvalue(),
                stderr=result.stderr if result and result.stderr else stderr.getvalue(),
            )

        return CommandResult(
            command=command,
            stdout=result.stdout or stdout.getvalue(),
            stderr=result.stderr or stderr.getvalue(),
            exit_code=result.exit_code,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _cancelled_result(
        command: str,
        token: CancellationToken,
        started: float,
        stdout: str = "",
        stderr: str = "",
    ) -> CommandResult:
        return CommandResult(
            command=command,
            stdout=stdout,
            stderr=stderr,
            exit_code=CANCELLED_EXIT_CODE,
            cancelled_by=token.reason.source if token.reason.source in ("user", "timeout") else "user",
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    async def send_input(self, text: str) -> None:
        """Forward input to the running command. No-op unless RUNNING."""
        if self._state is not ControllerState.RUNNING or self._engine is None:
            return
        await self._engine.send_input(text)

    async def stop(self) -> None:
        """
        Stop the running command, if any.

        Returns once the run has settled or the grace period is over,
        whichever comes first.
        """
        token = self._token
        if token is None:
            return

        token.cancel(CancelledByUser())
        settled = self._settled
        if settled is None:
            return
        try:
            await asyncio.wait_for(settled.wait(), timeout=self.config.stop_grace * 2)
        except asyncio.TimeoutError:
            logger.warning("Command did not settle after stop; reporting stopped anyway")


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

def create_controller(config: Optional[RuntimeConfig] = None) -> ExecutionController:
    """
    Controller backed by a SubprocessEngine.

    Uses config.workdir as the sandbox when set, otherwise a temp dir.
    """
    config = config or RuntimeConfig()
    workdir = config.workdir_path

    async def factory() -> ExecutionEngine:
        return await SubprocessEngine.boot(workdir)

    return ExecutionController(factory, config)
