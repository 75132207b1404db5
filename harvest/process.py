import asyncio
import logging
import os
import signal
import sys
from collections.abc import Awaitable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import NoReturn, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

MASK = "***"
KILL_GRACE_SEC = 10.0


class CommandFailed(RuntimeError):
    def __init__(self, *, command: str, returncode: int | None, detail: str = ""):
        self.command = command
        self.returncode = returncode
        self.detail = detail
        message = f"command failed with exit code {returncode}: {command}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


def fatal(message: str) -> NoReturn:
    logger.critical("[FATAL] %s", message)
    sys.exit(1)


async def success_or_fatal(awaitable: Awaitable[T], message: str) -> T:
    try:
        return await awaitable
    except Exception as exc:  # noqa: BLE001
        logger.error("%s", exc)
        fatal(message)


def format_command(
    command: str, args: Sequence[str], secrets: Sequence[str] = ()
) -> str:
    line = " ".join([command, *args])
    for secret in secrets:
        if secret:
            line = line.replace(secret, MASK)
    return line


def _build_env(env: Mapping[str, str] | None) -> dict[str, str] | None:
    if env is None:
        return None
    merged = dict(os.environ)
    merged.update({k: v for k, v in env.items() if v is not None})
    return merged


async def _pump_lines(
    stream: asyncio.StreamReader | None, prefix: str, level: int
) -> None:
    if stream is None:
        return
    while True:
        raw = await stream.readline()
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            logger.log(level, "[%s] %s", prefix, line)


async def _spawn(
    command: str,
    args: Sequence[str],
    *,
    command_line: str,
    stdin: str | None,
    env: Mapping[str, str] | None,
    cwd: str | None,
) -> asyncio.subprocess.Process:
    logger.debug("spawning: %s", command_line)
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=asyncio.subprocess.PIPE
            if stdin is not None
            else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_build_env(env),
            cwd=cwd,
        )
    except OSError as exc:
        raise CommandFailed(command=command_line, returncode=None, detail=str(exc)) from exc

    if stdin is not None and proc.stdin is not None:
        proc.stdin.write(stdin.encode("utf-8"))
        try:
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stdin closed early: %s", command_line)
        proc.stdin.close()
    return proc


async def run_to_completion(
    command: str,
    args: Sequence[str] = (),
    *,
    stdin: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    log_prefix: str | None = None,
    secrets: Sequence[str] = (),
) -> str:
    """Run a command to completion and return its accumulated stdout.

    stderr is logged line by line. Any non-zero exit raises ``CommandFailed``
    carrying the (masked) command line but never the captured output.
    """
    command_line = format_command(command, args, secrets)
    prefix = log_prefix or command
    proc = await _spawn(
        command, args, command_line=command_line, stdin=stdin, env=env, cwd=cwd
    )

    async def collect() -> bytes:
        assert proc.stdout is not None
        return await proc.stdout.read()

    output, _ = await asyncio.gather(
        collect(), _pump_lines(proc.stderr, prefix, logging.ERROR)
    )
    returncode = await proc.wait()
    logger.debug("exited: %s | %s", returncode, command_line)
    if returncode != 0:
        raise CommandFailed(command=command_line, returncode=returncode)
    return output.decode("utf-8", errors="replace")


@dataclass
class BackgroundProcess:
    """Handle on a long-lived child process.

    ``exited`` resolves when the process exits with status 0 or after
    ``kill()`` was requested, and raises ``CommandFailed`` otherwise.
    """

    process: asyncio.subprocess.Process
    command_line: str
    log_prefix: str
    failure_is_fatal: bool = False
    expected_exit: bool = False
    exited: asyncio.Task = field(init=False, repr=False)
    _pumps: list[asyncio.Task] = field(init=False, repr=False, default_factory=list)

    def __post_init__(self) -> None:
        self._pumps = [
            asyncio.ensure_future(
                _pump_lines(self.process.stdout, self.log_prefix, logging.INFO)
            ),
            asyncio.ensure_future(
                _pump_lines(self.process.stderr, self.log_prefix, logging.ERROR)
            ),
        ]
        self.exited = asyncio.ensure_future(self._watch())

    async def _watch(self) -> None:
        returncode = await self.process.wait()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        logger.debug("exited: %s | %s", returncode, self.command_line)
        if returncode == 0 or self.expected_exit:
            return
        if self.failure_is_fatal:
            fatal(f"Failure in critical process: {self.command_line}")
        raise CommandFailed(command=self.command_line, returncode=returncode)

    def _send(self, signum: int) -> None:
        try:
            self.process.send_signal(signum)
        except ProcessLookupError:
            pass

    async def kill(self, grace_sec: float = KILL_GRACE_SEC) -> None:
        logger.debug("killing: %s", self.command_line)
        self.expected_exit = True
        if self.process.returncode is None:
            self._send(signal.SIGINT)
            try:
                await asyncio.wait_for(asyncio.shield(self.exited), grace_sec)
            except asyncio.TimeoutError:
                logger.warning(
                    "no exit %ss after interrupt, sending SIGKILL: %s",
                    grace_sec,
                    self.command_line,
                )
                self._send(signal.SIGKILL)
            except CommandFailed:
                pass
        try:
            await self.exited
        except CommandFailed:
            pass


async def run_in_background(
    command: str,
    args: Sequence[str] = (),
    *,
    stdin: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    log_prefix: str | None = None,
    secrets: Sequence[str] = (),
    failure_is_fatal: bool = False,
) -> BackgroundProcess:
    command_line = format_command(command, args, secrets)
    prefix = log_prefix or command
    proc = await _spawn(
        command, args, command_line=command_line, stdin=stdin, env=env, cwd=cwd
    )
    return BackgroundProcess(
        process=proc,
        command_line=command_line,
        log_prefix=prefix,
        failure_is_fatal=failure_is_fatal,
    )
