"""Agent process supervision.

Each agent invocation runs in its own pseudo-terminal:

    bash -l -c 'claude --output-format stream-json ... -p "<prompt>"'

Output is read from the pty master without blocking the event loop and
handed to on_data as decoded text in whatever chunks the kernel delivers.
on_exit fires once per process with its exit code. The supervisor knows
nothing about JSON.
"""

import asyncio
import codecs
import fcntl
import os
import pty
import shlex
import signal
import struct
import subprocess
import termios
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from parley.core.config import PERMISSION_MODES, get_agent_path_override
from parley.core.errors import ProcessNotFoundError
from parley.logging import get_logger

logger = get_logger("supervisor")

AGENT_COMMAND = "claude"

# Keys that answer a prompt the agent renders in the terminal itself
ACCEPT_KEY = "\r"
CANCEL_KEY = "\x1b"

DEFAULT_COLS = 120
DEFAULT_ROWS = 30
READ_SIZE = 65536

# Exit code reported when the process could not be started at all
SPAWN_FAILED_EXIT_CODE = 127

# Seconds to wait for trailing output after the process exits
EOF_DRAIN_TIMEOUT = 1.0

# Seconds between SIGTERM and SIGKILL on kill()
KILL_GRACE = 3.0


DataCallback = Callable[[str, str, str], None]
ExitCallback = Callable[[str, str, int], None]
SpawnCallback = Callable[[str, str, int], None]


def _common_agent_paths() -> list[Path]:
    """Fixed install locations checked before asking the shell."""
    home = Path.home()
    return [
        home / ".local" / "bin" / AGENT_COMMAND,
        home / ".claude" / "local" / AGENT_COMMAND,
        Path("/usr/local/bin") / AGENT_COMMAND,
        Path("/opt/homebrew/bin") / AGENT_COMMAND,
        home / ".npm-global" / "bin" / AGENT_COMMAND,
    ]


# Resolved once per run; resolution is idempotent so a racing second
# resolution writes the same value.
_cached_agent_path: str | None = None


def find_agent_executable() -> str:
    """Locate the agent CLI.

    Tries, in order: the configured override, well-known install locations,
    `which` in a login shell, and finally the bare command name. The first
    hit is cached for the rest of the process.

    Returns:
        Path (or bare name) of the agent executable.
    """
    global _cached_agent_path
    if _cached_agent_path:
        return _cached_agent_path

    override = get_agent_path_override()
    if override:
        _cached_agent_path = override
        return override

    for path in _common_agent_paths():
        if os.access(path, os.X_OK):
            logger.debug("Found agent at %s", path)
            _cached_agent_path = str(path)
            return _cached_agent_path

    try:
        result = subprocess.run(
            ["bash", "-l", "-c", f"which {AGENT_COMMAND}"],
            capture_output=True,
            text=True,
            timeout=10,
        )
        lines = result.stdout.strip().splitlines()
        if result.returncode == 0 and lines:
            logger.debug("Found agent via which: %s", lines[-1])
            _cached_agent_path = lines[-1].strip()
            return _cached_agent_path
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("which %s failed: %s", AGENT_COMMAND, e)

    logger.warning("Could not find %s, using bare command", AGENT_COMMAND)
    _cached_agent_path = AGENT_COMMAND
    return _cached_agent_path


def reset_agent_path_cache() -> None:
    """Forget the resolved executable (for tests and config changes)."""
    global _cached_agent_path
    _cached_agent_path = None


def build_agent_args(
    continuation_id: str,
    is_first_turn: bool,
    permission_mode: str = "default",
    model: str | None = None,
    prompt: str | None = None,
) -> list[str]:
    """Build the agent's argument list (without the executable).

    The first turn of a conversation establishes continuation_id with
    --session-id; every later turn resumes it with --resume.

    Raises:
        ValueError: If permission_mode is not one of PERMISSION_MODES.
    """
    if permission_mode not in PERMISSION_MODES:
        raise ValueError(
            f"Invalid permission mode: {permission_mode}. "
            f"Must be one of {', '.join(PERMISSION_MODES)}"
        )

    args = [
        "--output-format",
        "stream-json",
        "--verbose",
        "--include-partial-messages",
    ]
    if is_first_turn:
        args += ["--session-id", continuation_id]
    else:
        args += ["--resume", continuation_id]
    args += ["--permission-mode", permission_mode]
    if model:
        args += ["--model", model]
    if prompt:
        args += ["-p", prompt]
    return args


def _agent_env() -> dict[str, str]:
    env = dict(os.environ)
    env["TERM"] = "xterm-256color"
    env["PYTHONUNBUFFERED"] = "1"
    return env


def terminate_process_group(pid: int) -> None:
    """SIGTERM an agent process group this process did not start.

    Agents run as session leaders, so their pid is also their group ID.
    """
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.warning("Not permitted to stop agent process group %s", pid)


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _configure_pty(slave_fd: int, rows: int, cols: int) -> None:
    """Turn off input echo and LF -> CRLF translation on the terminal."""
    attrs = termios.tcgetattr(slave_fd)
    attrs[1] &= ~termios.ONLCR  # oflag
    attrs[3] &= ~termios.ECHO  # lflag
    termios.tcsetattr(slave_fd, termios.TCSANOW, attrs)
    _set_winsize(slave_fd, rows, cols)


@dataclass
class AgentProcess:
    """A supervised agent process.

    Attributes:
        id: Process handle ID (not the OS pid)
        session_id: Session the process belongs to
        cwd: Working directory the agent runs in
        args: Agent arguments (without the executable)
        process: The OS process, once booted
        master_fd: pty master, while the process is alive
        killed: Set once kill() was requested
        pending_input: Writes made before the process finished booting
    """

    id: str
    session_id: str
    cwd: str
    args: list[str]
    cols: int = DEFAULT_COLS
    rows: int = DEFAULT_ROWS
    process: asyncio.subprocess.Process | None = None
    master_fd: int | None = None
    killed: bool = False
    pending_input: list[bytes] = field(default_factory=list)
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None


def _ignore(*args) -> None:
    pass


class Supervisor:
    """Spawns agent processes and relays their output and exit.

    Args:
        on_data: Called as on_data(process_id, session_id, text) per output chunk.
        on_exit: Called as on_exit(process_id, session_id, exit_code) once per process.
        on_spawn: Called as on_spawn(process_id, session_id, pid) once the process boots.
    """

    def __init__(
        self,
        on_data: DataCallback | None = None,
        on_exit: ExitCallback | None = None,
        on_spawn: SpawnCallback | None = None,
    ) -> None:
        self.on_data: DataCallback = on_data or _ignore
        self.on_exit: ExitCallback = on_exit or _ignore
        self.on_spawn: SpawnCallback = on_spawn or _ignore
        self._processes: dict[str, AgentProcess] = {}
        self._tasks: set[asyncio.Task] = set()

    def start(
        self,
        session_id: str,
        cwd: str,
        continuation_id: str,
        is_first_turn: bool,
        permission_mode: str = "default",
        model: str | None = None,
        prompt: str | None = None,
    ) -> str:
        """Launch one agent process and return its handle ID immediately.

        The process boots in the background. If it cannot be started, an exit
        event with SPAWN_FAILED_EXIT_CODE follows instead of any output.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        args = build_agent_args(
            continuation_id, is_first_turn, permission_mode, model, prompt
        )
        proc = AgentProcess(id=str(uuid4()), session_id=session_id, cwd=cwd, args=args)
        self._processes[proc.id] = proc

        task = loop.create_task(self._run(proc))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return proc.id

    async def _run(self, proc: AgentProcess) -> None:
        loop = asyncio.get_running_loop()
        try:
            executable = await loop.run_in_executor(None, find_agent_executable)
            command = shlex.join([executable, *proc.args])
            logger.debug("Starting agent in %s: %s", proc.cwd, command)

            master_fd, slave_fd = pty.openpty()
            try:
                _configure_pty(slave_fd, proc.rows, proc.cols)
                proc.process = await asyncio.create_subprocess_exec(
                    "/bin/bash",
                    "-l",
                    "-c",
                    command,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    cwd=proc.cwd,
                    env=_agent_env(),
                    start_new_session=True,
                )
            except (OSError, termios.error):
                os.close(master_fd)
                raise
            finally:
                os.close(slave_fd)
        except (OSError, termios.error) as e:
            logger.error("Failed to start agent for session %s: %s", proc.session_id, e)
            self._finish(proc, SPAWN_FAILED_EXIT_CODE)
            return

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        proc.master_fd = master_fd
        self._emit_spawn(proc)

        if proc.killed:
            self._terminate(proc)
        else:
            for data in proc.pending_input:
                self._write(proc, data)
        proc.pending_input.clear()

        eof = loop.create_future()
        loop.add_reader(master_fd, self._on_readable, proc, eof)
        try:
            exit_code = await proc.process.wait()
            try:
                await asyncio.wait_for(asyncio.shield(eof), EOF_DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                pass  # A background child still holds the terminal
        finally:
            loop.remove_reader(master_fd)
            os.close(master_fd)
            proc.master_fd = None

        tail = proc.decoder.decode(b"", final=True)
        if tail:
            self._emit_data(proc, tail)
        self._finish(proc, exit_code)

    def _on_readable(self, proc: AgentProcess, eof: asyncio.Future) -> None:
        if proc.master_fd is None:
            return
        try:
            data = os.read(proc.master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave descriptor is closed
            data = b""

        if not data:
            asyncio.get_running_loop().remove_reader(proc.master_fd)
            if not eof.done():
                eof.set_result(None)
            return

        text = proc.decoder.decode(data)
        if text:
            self._emit_data(proc, text)

    def _emit_data(self, proc: AgentProcess, text: str) -> None:
        try:
            self.on_data(proc.id, proc.session_id, text)
        except Exception:
            logger.exception("Data handler failed for process %s", proc.id)

    def _emit_spawn(self, proc: AgentProcess) -> None:
        try:
            self.on_spawn(proc.id, proc.session_id, proc.process.pid)
        except Exception:
            logger.exception("Spawn handler failed for process %s", proc.id)

    def _finish(self, proc: AgentProcess, exit_code: int) -> None:
        self._processes.pop(proc.id, None)
        logger.info("Process %s exited with code %s", proc.id, exit_code)
        try:
            self.on_exit(proc.id, proc.session_id, exit_code)
        except Exception:
            logger.exception("Exit handler failed for process %s", proc.id)

    def _lookup(self, process_id: str) -> AgentProcess:
        proc = self._processes.get(process_id)
        if proc is None:
            raise ProcessNotFoundError(process_id)
        return proc

    def _write(self, proc: AgentProcess, data: bytes) -> None:
        if proc.master_fd is None:
            proc.pending_input.append(data)
            return
        os.write(proc.master_fd, data)

    def send_input(self, process_id: str, text: str) -> None:
        """Write a line of text to the process.

        Raises:
            ProcessNotFoundError: If the process has exited or never existed.
            OSError: If the write fails.
        """
        self._write(self._lookup(process_id), (text + "\n").encode())

    def send_control_key(self, process_id: str, allow: bool) -> None:
        """Answer a terminal-rendered prompt: Enter to allow, Escape to deny.

        Raises:
            ProcessNotFoundError: If the process has exited or never existed.
            OSError: If the write fails.
        """
        key = ACCEPT_KEY if allow else CANCEL_KEY
        logger.debug(
            "Sending %s to process %s", "ALLOW" if allow else "DENY", process_id
        )
        self._write(self._lookup(process_id), key.encode())

    def resize(self, process_id: str, cols: int, rows: int) -> None:
        """Resize the process's terminal. Unknown IDs are ignored."""
        proc = self._processes.get(process_id)
        if proc is None:
            return
        proc.cols, proc.rows = cols, rows
        if proc.master_fd is not None:
            _set_winsize(proc.master_fd, rows, cols)

    def kill(self, process_id: str) -> None:
        """Terminate a process. Unknown IDs are ignored.

        The ID is invalid immediately; the exit event still follows once the
        process is gone.
        """
        proc = self._processes.pop(process_id, None)
        if proc is None:
            return
        proc.killed = True
        self._terminate(proc)

    def kill_all(self) -> None:
        """Terminate every supervised process."""
        for process_id in list(self._processes):
            self.kill(process_id)

    def _terminate(self, proc: AgentProcess) -> None:
        if proc.process is None or proc.process.returncode is not None:
            return  # Not booted yet (_run checks killed) or already gone
        self._signal(proc, signal.SIGTERM)
        asyncio.get_running_loop().call_later(
            KILL_GRACE, self._signal, proc, signal.SIGKILL
        )

    @staticmethod
    def _signal(proc: AgentProcess, sig: int) -> None:
        if proc.process is None or proc.process.returncode is not None:
            return
        try:
            os.killpg(proc.process.pid, sig)
        except ProcessLookupError:
            pass

    def get(self, process_id: str) -> AgentProcess | None:
        return self._processes.get(process_id)

    def processes(self) -> list[AgentProcess]:
        return list(self._processes.values())

    async def wait_closed(self) -> None:
        """Wait until every started process has exited and been reported."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
