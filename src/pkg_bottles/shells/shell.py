"""Persistent shell process with activity-based command timeouts."""

import asyncio
import codecs
import contextlib
import os
import re
import shlex
import signal
import time
from itertools import count
from typing import Any

import psutil
from fuuid import b58_fuuid

from pkg_bottles.environ import EnvSnapshot, is_truthy, resolve_environ
from pkg_bottles.errors import ShellError
from pkg_bottles.shells.command_timeout import CommandDeadline, TimeoutConfig, resolve_timeout_config
from pkg_bottles.logging import get_logger
from pkg_bottles.shells.environment import create_shell_environment
from pkg_bottles.shells.platform import detect_platform, get_default_shell
from pkg_bottles.types import CommandResult, ShellOptions, ShellSignal, SignalResult, TimeoutReason

logger = get_logger(__name__)

INIT_TIMEOUT = 5.0
CI_INIT_TIMEOUT = 3.0
EXIT_GRACE = 0.5
STDERR_DRAIN = 0.5
READ_CHUNK = 4096

SIGNALS = {
    ShellSignal.SIGINT: signal.SIGINT,
    ShellSignal.SIGTERM: signal.SIGTERM,
    ShellSignal.SIGKILL: signal.SIGKILL,
}


def strip_line_end(text: str) -> str:
    """Drop one final line terminator; earlier blank lines are output."""
    return text.removesuffix("\n")


class Shell:
    """One long-lived shell process driven over stdin/stdout/stderr pipes.

    Commands run one at a time. Each is wrapped in unique start/end markers
    and executed in a subshell so that an interrupt reaches the whole
    command tree while the parent shell survives for the next command.
    """

    def __init__(self, options: ShellOptions | None = None, environ: EnvSnapshot | None = None):
        self.options = options or ShellOptions()
        self.id = self.options.id or b58_fuuid()
        self.platform = detect_platform()
        self.shell_path = self.options.shell or get_default_shell()
        self._environ = resolve_environ(environ)

        self._process: asyncio.subprocess.Process | None = None
        self._readers: list[asyncio.Task] = []
        self._stdout = ""
        self._stderr = ""
        self._stdout_eof = False
        self._stderr_eof = False
        self._stdout_changed = asyncio.Event()
        self._stderr_changed = asyncio.Event()
        self._output_changed = asyncio.Event()

        self._initialized = False
        self._alive = False
        self._busy = False
        self._sequence = count(1)
        self._completed = 0
        self._failed = 0
        self._timed_out = 0

    @property
    def init_timeout(self) -> float:
        return CI_INIT_TIMEOUT if is_truthy(self._environ.get("CI")) else INIT_TIMEOUT

    @property
    def is_alive(self) -> bool:
        return (
            self._alive
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def is_busy(self) -> bool:
        return self._busy

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def __aenter__(self) -> "Shell":
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.cleanup()

    async def initialize(self) -> None:
        """Spawn the shell and wait until it answers a ready marker."""
        if self._process is not None:
            return

        if self.platform == "win32":
            raise ShellError(
                "Persistent shells require a POSIX platform",
                code="UNSUPPORTED_PLATFORM",
                suggestion="Run bottles on Linux or macOS",
            )

        env = create_shell_environment(self.options, self._environ)
        args = [self.shell_path]
        if os.path.basename(self.shell_path) == "bash":
            args += ["--noprofile", "--norc"]

        try:
            self._process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.options.cwd) if self.options.cwd else None,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise ShellError(
                f"Failed to spawn shell {self.shell_path}: {e}",
                code="SHELL_SPAWN_FAILED",
                suggestion="Check that the shell exists and the working directory is accessible",
                details={"shell": self.shell_path, "cwd": str(self.options.cwd)},
            ) from e

        self._alive = True
        self._readers = [
            asyncio.create_task(self._pump(self._process.stdout, is_stdout=True)),
            asyncio.create_task(self._pump(self._process.stderr, is_stdout=False)),
        ]

        ready = f"__BOTTLE_READY_{self.id}__"
        try:
            await self._write(f'export PS1=""\nunset PROMPT_COMMAND\necho "{ready}"\n')
            await asyncio.wait_for(self._wait_for_stdout(ready + "\n"), self.init_timeout)
        except (asyncio.TimeoutError, ShellError) as e:
            await self.cleanup()
            if isinstance(e, ShellError):
                raise
            raise ShellError(
                f"Shell did not become ready within {self.init_timeout}s",
                code="SHELL_INIT_TIMEOUT",
                suggestion="Check the shell startup files and system load",
                details={"shell": self.shell_path},
            ) from e

        marker_end = self._stdout.index(ready + "\n") + len(ready) + 1
        self._stdout = self._stdout[marker_end:]
        self._stderr = ""
        self._initialized = True

        logger.debug(
            {
                "event": "shell_spawned",
                "shell_id": self.id,
                "shell": self.shell_path,
                "pid": self._process.pid,
                "clean_env": self.options.clean_env,
            }
        )

    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        timeout_config: TimeoutConfig | None = None,
    ) -> CommandResult:
        """Run ``command`` and return its captured output.

        ``timeout`` counts seconds without stdout activity, not wall time.
        The command still stops at an absolute ceiling and soon after its
        output matches a known error pattern. ``timeout_config`` replaces
        the behaviour derived from ``timeout`` and the command text.
        A timed out command is interrupted but the shell stays usable.
        """
        if self._busy:
            raise ShellError(
                "Shell is already running a command",
                code="SHELL_BUSY",
                suggestion="Wait for the running command or acquire another shell from the pool",
                details={"shell_id": self.id},
            )

        self._busy = True
        try:
            if self._process is None:
                await self.initialize()
            if not self.is_alive:
                raise ShellError(
                    "Shell process is not alive",
                    code="SHELL_NOT_ALIVE",
                    suggestion="Acquire a fresh shell from the pool",
                    details={"shell_id": self.id},
                )
            if timeout_config is None:
                timeout = self.options.default_timeout if timeout is None else timeout
                timeout_config = resolve_timeout_config(command, timeout)
            return await self._run(command, timeout_config)
        finally:
            self._busy = False

    async def _run(self, command: str, config: TimeoutConfig) -> CommandResult:
        seq = next(self._sequence)
        start = f"__BOTTLE_START_{self.id}_{seq}__"
        end = f"__BOTTLE_END_{self.id}_{seq}__"
        end_pattern = re.compile(re.escape(end) + r":(\d+)\n")

        script = (
            f'echo "{start}"; echo "{start}" >&2\n'
            f"( eval {shlex.quote(command)} ) < /dev/null\n"
            f'__bottle_rc=$?; echo; echo "{end}:$__bottle_rc"; echo "{end}" >&2\n'
        )

        logger.debug({"event": "shell_cmd_exec", "shell_id": self.id, "cmd": command})

        started = time.monotonic()
        try:
            await self._write(script)
        except ShellError:
            self._failed += 1
            raise

        deadline = CommandDeadline(config)
        seen_stdout = len(self._stdout)
        seen_stderr = len(self._stderr)

        while True:
            self._output_changed.clear()

            if match := end_pattern.search(self._stdout):
                break

            if self._stdout_eof:
                return await self._process_died(command, start, started)

            if len(self._stdout) != seen_stdout:
                deadline.observe(self._since_line(self._stdout, seen_stdout))
                seen_stdout = len(self._stdout)
            if len(self._stderr) != seen_stderr:
                deadline.observe(self._since_line(self._stderr, seen_stderr), activity=False)
                seen_stderr = len(self._stderr)

            if reason := deadline.check():
                return await self._timed_out_result(command, start, started, deadline, reason)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._output_changed.wait(), deadline.remaining())

        stdout = self._between(self._stdout, start, match.start())
        self._stdout = self._stdout[match.end():]
        exit_code = int(match.group(1))

        stderr = await self._collect_stderr(start, end)
        duration = time.monotonic() - started

        if exit_code == 0:
            self._completed += 1
        else:
            self._failed += 1

        logger.debug(
            {
                "event": "shell_cmd_complete",
                "shell_id": self.id,
                "cmd": command,
                "returncode": exit_code,
                "duration": round(duration, 3),
            }
        )

        return CommandResult(
            command=command,
            # the wrapper's bare echo always adds one newline before the end marker
            stdout=strip_line_end(stdout.removesuffix("\n")),
            stderr=strip_line_end(stderr),
            exit_code=exit_code,
            duration=duration,
            timed_out=False,
        )

    async def _collect_stderr(self, start: str, end: str) -> str:
        marker = end + "\n"
        deadline = time.monotonic() + STDERR_DRAIN
        while marker not in self._stderr and not self._stderr_eof:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self._stderr_changed.clear()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stderr_changed.wait(), remaining)

        end_index = self._stderr.find(marker)
        if end_index == -1:
            stderr = self._between(self._stderr, start, len(self._stderr))
            self._stderr = ""
            return stderr

        stderr = self._between(self._stderr, start, end_index)
        self._stderr = self._stderr[end_index + len(marker):]
        return stderr

    async def _timed_out_result(
        self,
        command: str,
        start: str,
        started: float,
        deadline: CommandDeadline,
        reason: TimeoutReason,
    ) -> CommandResult:
        self._timed_out += 1
        logger.warning(
            {
                "event": "shell_cmd_timeout",
                "shell_id": self.id,
                "cmd": command,
                "reason": reason.value,
                "inactivity_timeout": deadline.config.base_timeout,
                "absolute_maximum": deadline.config.absolute_maximum,
                "error_match": deadline.error_match,
            }
        )
        stdout = self._between(self._stdout, start, len(self._stdout))
        stderr = self._between(self._stderr, start, len(self._stderr))
        self.interrupt()

        return CommandResult(
            command=command,
            stdout=strip_line_end(stdout),
            stderr=strip_line_end(stderr),
            exit_code=-1,
            duration=time.monotonic() - started,
            timed_out=True,
            timeout_reason=reason,
        )

    async def _process_died(self, command: str, start: str, started: float) -> CommandResult:
        self._failed += 1
        self._alive = False
        returncode = None
        if self._process is not None:
            with contextlib.suppress(asyncio.TimeoutError):
                returncode = await asyncio.wait_for(self._process.wait(), EXIT_GRACE)

        exit_code = returncode if returncode else -1
        logger.warning(
            {
                "event": "shell_process_exited",
                "shell_id": self.id,
                "cmd": command,
                "returncode": returncode,
            }
        )
        return CommandResult(
            command=command,
            stdout=strip_line_end(self._between(self._stdout, start, len(self._stdout))),
            stderr=strip_line_end(self._between(self._stderr, start, len(self._stderr))),
            exit_code=exit_code,
            duration=time.monotonic() - started,
            timed_out=False,
        )

    @staticmethod
    def _since_line(buffer: str, seen: int) -> str:
        """New output, starting from the line it continues."""
        return buffer[buffer.rfind("\n", 0, seen) + 1:]

    @staticmethod
    def _between(buffer: str, start: str, end_index: int) -> str:
        """Text after the ``start`` marker line and before ``end_index``."""
        marker = start + "\n"
        start_index = buffer.find(marker)
        if start_index == -1 or start_index > end_index:
            return ""
        return buffer[start_index + len(marker):end_index]

    async def _write(self, data: str) -> None:
        if self._process is None or self._process.stdin is None:
            raise ShellError("Shell process is not alive", code="SHELL_NOT_ALIVE")
        try:
            self._process.stdin.write(data.encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._alive = False
            raise ShellError(
                "Shell process is not alive",
                code="SHELL_NOT_ALIVE",
                suggestion="Acquire a fresh shell from the pool",
                details={"shell_id": self.id},
            ) from e

    async def _wait_for_stdout(self, text: str) -> None:
        while True:
            self._stdout_changed.clear()
            if text in self._stdout:
                return
            if self._stdout_eof:
                raise ShellError(
                    f"Shell {self.shell_path} exited during startup",
                    code="SHELL_SPAWN_FAILED",
                    suggestion="Check that the shell runs non-interactively",
                    details={"stderr": self._stderr[-500:]},
                )
            await self._stdout_changed.wait()

    async def _pump(self, stream: asyncio.StreamReader | None, is_stdout: bool) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        changed = self._stdout_changed if is_stdout else self._stderr_changed
        try:
            while stream is not None:
                chunk = await stream.read(READ_CHUNK)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if is_stdout:
                    self._stdout += text
                else:
                    self._stderr += text
                changed.set()
                self._output_changed.set()
        finally:
            if is_stdout:
                self._stdout_eof = True
            else:
                self._stderr_eof = True
            changed.set()
            self._output_changed.set()

    def _descendants(self) -> list[psutil.Process]:
        if self._process is None:
            return []
        try:
            return psutil.Process(self._process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return []

    def _signal_tree(self, sig: signal.Signals, include_shell: bool) -> None:
        for child in self._descendants():
            with contextlib.suppress(psutil.NoSuchProcess):
                child.send_signal(sig)
        if include_shell and self._process is not None and self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.send_signal(sig)

    def send_signal(self, sig: ShellSignal) -> SignalResult:
        """Deliver ``sig`` to the running command (SIGINT) or the whole shell."""
        if not self.is_alive:
            return SignalResult(success=False, signal=sig, error="Shell process is not alive")

        try:
            match sig:
                case ShellSignal.SIGINT:
                    self._signal_tree(SIGNALS[sig], include_shell=False)
                case ShellSignal.SIGTERM | ShellSignal.SIGKILL:
                    self._signal_tree(SIGNALS[sig], include_shell=True)
                    self._alive = False
        except (psutil.Error, OSError) as e:
            return SignalResult(success=False, signal=sig, error=str(e))

        logger.debug({"event": "shell_signal", "shell_id": self.id, "signal": sig.value})
        return SignalResult(success=True, signal=sig)

    def interrupt(self) -> SignalResult:
        return self.send_signal(ShellSignal.SIGINT)

    def terminate(self) -> SignalResult:
        return self.send_signal(ShellSignal.SIGTERM)

    def force_kill(self) -> SignalResult:
        return self.send_signal(ShellSignal.SIGKILL)

    def get_status(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "alive": self.is_alive,
            "initialized": self._initialized,
            "platform": self.platform,
            "shell": self.shell_path,
            "pid": self.pid,
            "busy": self._busy,
            "commands": {
                "completed": self._completed,
                "failed": self._failed,
                "timed_out": self._timed_out,
            },
        }

    async def cleanup(self) -> None:
        """Exit the shell, escalating to SIGTERM then SIGKILL."""
        process = self._process
        if process is None:
            self._alive = False
            return

        logger.debug({"event": "shell_cleanup", "shell_id": self.id, "pid": process.pid})

        if process.returncode is None and self._alive:
            with contextlib.suppress(ShellError):
                await self._write("exit\n")

        for sig in (None, signal.SIGTERM, signal.SIGKILL):
            if process.returncode is not None:
                break
            if sig is not None:
                with contextlib.suppress(psutil.Error, OSError):
                    self._signal_tree(sig, include_shell=True)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(process.wait(), EXIT_GRACE)

        self._alive = False

        for task in self._readers:
            task.cancel()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._readers = []

        if process.stdin is not None:
            process.stdin.close()
