"""Persistent PowerShell session.

Starting powershell.exe and importing WebAdministration costs seconds, so
one interpreter is kept running and every command for a given executable and
argument list goes through it.

FRAMING:
At start-up a helper function is defined in the interpreter. Each command is
sent as a single stdin line holding the base64-encoded script. The helper runs
the script in its own scope and prints one JSON document between two marker
lines:

    <<iis-operator-...>>
    {"stdout": ..., "stderr": [...], "exitcode": 0, "errormessage": null}
    <<iis-operator-...>>

Anything printed outside a frame (banners, prompts, stray host output) is
logged at debug level and dropped.

CONCURRENCY:
One command at a time per session. Callers block on the session lock.

LIMITATIONS:
Without a timeout a hung command blocks its caller indefinitely, and with it
every other caller waiting on the same session.
"""

from __future__ import annotations

import base64
import json
import logging
import queue
import subprocess
import threading
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import IO, Any, NoReturn

from .config import DEFAULT_POWERSHELL_ARGS

logger = logging.getLogger(__name__)

# Seconds to wait for the interpreter to exit on close
CLOSE_TIMEOUT_SECONDS = 5

HELPER_FUNCTION_NAME = "Invoke-FramedCommand"

# Each statement must fit on one line: the interpreter reads stdin line by line
SESSION_PRELUDE: tuple[str, ...] = (
    "$ProgressPreference = 'SilentlyContinue'",
    "[Console]::OutputEncoding = New-Object System.Text.UTF8Encoding $false",
    "function " + HELPER_FUNCTION_NAME + "([string]$Encoded, [string]$Marker) { "
    "$result = @{ stdout = $null; stderr = @(); exitcode = 0; errormessage = $null }; "
    "$global:LASTEXITCODE = 0; "
    "try { "
    "$text = [System.Text.Encoding]::UTF8.GetString([System.Convert]::FromBase64String($Encoded)); "
    "$output = @(& ([ScriptBlock]::Create($text)) 2>&1); "
    "$result.stderr = @($output | Where-Object { $_ -is [System.Management.Automation.ErrorRecord] } "
    "| ForEach-Object { $_.ToString() }); "
    "$out = ($output | Where-Object { $_ -isnot [System.Management.Automation.ErrorRecord] } "
    "| Out-String -Width 8192); "
    "if ($out -and $out.Trim().Length -gt 0) { $result.stdout = $out.TrimEnd() }; "
    "if ($global:LASTEXITCODE) { $result.exitcode = $global:LASTEXITCODE } "
    "} catch { $result.exitcode = 1; $result.errormessage = $_.Exception.Message }; "
    "[Console]::Out.WriteLine($Marker); "
    "[Console]::Out.WriteLine((ConvertTo-Json -InputObject $result -Compress -Depth 3)); "
    "[Console]::Out.WriteLine($Marker); "
    "[Console]::Out.Flush() }",
)


class ChannelError(Exception):
    """Raised when the PowerShell process cannot be used.

    The process failed to start, exited, stopped answering, or produced an
    unreadable response. Distinct from a command that ran and failed, which
    is reported through ExecutionResult.
    """

    pass


@dataclass
class ExecutionResult:
    """Outcome of one command.

    Attributes:
        stdout: Text output, None when the command printed nothing
        stderr: Error records written by the command, in order
        exitcode: Last native exit code, 1 on a terminating error
        errormessage: Message of a terminating error, if any
    """

    stdout: str | None = None
    stderr: list[str] = field(default_factory=list)
    exitcode: int = 0
    errormessage: str | None = None

    @property
    def success(self) -> bool:
        """True only when the exit code is zero and no error was raised."""
        return self.exitcode == 0 and self.errormessage is None

    @classmethod
    def from_frame(cls, data: dict[str, Any]) -> ExecutionResult:
        """Build a result from a decoded response frame."""
        stdout = data.get("stdout")
        if stdout is not None:
            stdout = str(stdout)
            if not stdout.strip():
                stdout = None

        stderr = data.get("stderr")
        if stderr is None:
            stderr = []
        elif isinstance(stderr, str):
            # ConvertTo-Json collapses one-element arrays on older hosts
            stderr = [stderr]
        else:
            stderr = [str(line) for line in stderr]

        try:
            exitcode = int(data.get("exitcode") or 0)
        except (TypeError, ValueError):
            exitcode = 1

        errormessage = data.get("errormessage")
        return cls(
            stdout=stdout,
            stderr=stderr,
            exitcode=exitcode,
            errormessage=str(errormessage) if errormessage is not None else None,
        )


def encode_command(command: str, marker: str) -> str:
    """Build the stdin line that runs one command through the helper."""
    encoded = base64.b64encode(command.encode("utf-8")).decode("ascii")
    return f"{HELPER_FUNCTION_NAME} -Encoded '{encoded}' -Marker '{marker}'"


def log_result(result: ExecutionResult) -> None:
    """Log command output at debug level."""
    for line in result.stderr:
        if line.strip():
            logger.debug("STDERR: %s", line.rstrip())
    if result.stdout is not None:
        logger.debug("STDOUT: %s", result.stdout)
    if result.errormessage is not None:
        logger.debug("ERROR: %s", result.errormessage)


def _pump(stream: IO[str], lines: queue.Queue[str | None]) -> None:
    """Copy interpreter output into a queue; None marks end of stream."""
    try:
        for line in iter(stream.readline, ""):
            lines.put(line)
    except (OSError, ValueError) as e:
        logger.debug("PowerShell output stream closed", extra={"error": str(e)})
    finally:
        lines.put(None)


class PowerShellSession:
    """A long-lived PowerShell interpreter that runs one command at a time.

    The process is started on first use. Once a channel failure occurs the
    session is dead and every call raises ChannelError until restart().
    """

    def __init__(
        self,
        executable: str,
        args: Sequence[str] = DEFAULT_POWERSHELL_ARGS,
        timeout: float | None = None,
    ) -> None:
        """Initialize the session without starting the process.

        Args:
            executable: Path to powershell.exe or pwsh.
            args: Interpreter arguments; must make it read commands from stdin.
            timeout: Seconds to wait for one command, None to wait forever.
        """
        self._executable = executable
        self._args = tuple(args)
        self._timeout = timeout
        self._lock = threading.Lock()
        self._process: subprocess.Popen[str] | None = None
        self._reader: threading.Thread | None = None
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._marker = ""
        self._dead = False
        self._commands_run = 0

    @property
    def key(self) -> tuple[str, tuple[str, ...]]:
        """The executable and arguments identifying this session."""
        return self._executable, self._args

    @property
    def dead(self) -> bool:
        """True after a channel failure."""
        return self._dead

    @property
    def started(self) -> bool:
        """True while an interpreter process is attached."""
        return self._process is not None

    @property
    def commands_run(self) -> int:
        """Number of commands answered by this session."""
        return self._commands_run

    def __enter__(self) -> PowerShellSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def execute(self, command: str) -> ExecutionResult:
        """Run a command and wait for its result.

        Args:
            command: PowerShell script text.

        Returns:
            ExecutionResult for the command.

        Raises:
            ChannelError: If the interpreter is unusable.
        """
        with self._lock:
            if self._dead:
                raise ChannelError("PowerShell session is dead; restart it before reuse")

            if self._process is None:
                self._start()

            logger.debug("Executing command", extra={"command": command})
            self._send(encode_command(command, self._marker))
            result = self._read_frame()
            self._commands_run += 1
            return result

    def restart(self) -> None:
        """Discard the current interpreter; the next command starts a new one."""
        self.close()
        with self._lock:
            self._dead = False

    def close(self) -> None:
        """Terminate the interpreter if it is running.

        Waits for a command in flight on another thread to finish first.
        """
        with self._lock:
            process = self._process
            self._process = None
        if process is None:
            return

        try:
            if process.stdin is not None:
                process.stdin.write("exit\n")
                process.stdin.flush()
                process.stdin.close()
        except (OSError, ValueError) as e:
            logger.debug("PowerShell stdin already closed", extra={"error": str(e)})

        try:
            process.wait(timeout=CLOSE_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(
                "PowerShell did not exit, killing it",
                extra={"executable": self._executable, "pid": process.pid},
            )
            process.kill()
            process.wait(timeout=CLOSE_TIMEOUT_SECONDS)

        logger.info(
            "PowerShell session closed",
            extra={"executable": self._executable, "commands_run": self._commands_run},
        )

    def _start(self) -> None:
        """Launch the interpreter and install the framing helper."""
        self._marker = f"<<iis-operator-{uuid.uuid4().hex}>>"
        self._lines = queue.Queue()

        try:
            self._process = subprocess.Popen(
                [self._executable, *self._args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
            )
        except OSError as e:
            self._dead = True
            raise ChannelError(f"Cannot start PowerShell '{self._executable}': {e}") from e

        self._reader = threading.Thread(
            target=_pump,
            args=(self._process.stdout, self._lines),
            name="powershell-reader",
            daemon=True,
        )
        self._reader.start()

        for line in SESSION_PRELUDE:
            self._send(line)

        logger.info(
            "PowerShell session started",
            extra={"executable": self._executable, "pid": self._process.pid},
        )

    def _send(self, line: str) -> None:
        """Write one line to the interpreter."""
        process = self._process
        if process is None or process.stdin is None:
            self._fail("PowerShell process is not running")
        try:
            process.stdin.write(line + "\n")
            process.stdin.flush()
        except (OSError, ValueError) as e:
            self._fail(f"Cannot write to PowerShell: {e}", e)

    def _read_frame(self) -> ExecutionResult:
        """Wait for the next response frame."""
        deadline = None if self._timeout is None else time.monotonic() + self._timeout
        in_frame = False
        payload: list[str] = []

        while True:
            remaining = None
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0)
            try:
                line = self._lines.get(timeout=remaining)
            except queue.Empty:
                self._fail(f"No response from PowerShell within {self._timeout} seconds")

            if line is None:
                self._fail("PowerShell process exited unexpectedly")

            line = line.rstrip("\r\n")
            if line == self._marker:
                if in_frame:
                    break
                in_frame = True
            elif in_frame:
                payload.append(line)
            elif line.strip():
                logger.debug("Unframed PowerShell output", extra={"line": line})

        try:
            data = json.loads("".join(payload))
        except json.JSONDecodeError as e:
            self._fail(f"Malformed response from PowerShell: {e}", e)

        if not isinstance(data, dict):
            self._fail("Malformed response from PowerShell: expected a JSON object")

        return ExecutionResult.from_frame(data)

    def _fail(self, message: str, cause: BaseException | None = None) -> NoReturn:
        """Mark the session dead, stop the process and raise ChannelError."""
        self._dead = True
        process = self._process
        self._process = None
        if process is not None:
            try:
                process.kill()
            except OSError as e:
                logger.debug("PowerShell process already gone", extra={"error": str(e)})

        logger.error(
            "PowerShell channel failure",
            extra={"executable": self._executable, "error": message},
        )
        raise ChannelError(message) from cause


class SessionPool:
    """Owns one PowerShellSession per executable and argument list.

    Sessions are created on first request and closed by close_all() or on
    leaving the pool's context. A dead session is replaced on the next get().
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout
        self._lock = threading.Lock()
        self._sessions: dict[tuple[str, tuple[str, ...]], PowerShellSession] = {}

    def __enter__(self) -> SessionPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close_all()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(
        self,
        executable: str,
        args: Sequence[str] = DEFAULT_POWERSHELL_ARGS,
    ) -> PowerShellSession:
        """Return the live session for an executable and argument list."""
        key = (executable, tuple(args))
        with self._lock:
            session = self._sessions.get(key)
            if session is not None and session.dead:
                logger.info("Replacing dead PowerShell session", extra={"executable": executable})
                session.close()
                session = None
            if session is None:
                session = PowerShellSession(executable, args, timeout=self._timeout)
                self._sessions[key] = session
            return session

    def close_all(self) -> None:
        """Close every session in the pool."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
