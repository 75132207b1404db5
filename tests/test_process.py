import asyncio
import logging
import sys

import pytest

from harvest import process
from harvest.process import (
    CommandFailed,
    format_command,
    run_in_background,
    run_to_completion,
)


PY = sys.executable
SLEEPER = (
    "import signal, time\n"
    "signal.signal(signal.SIGINT, signal.default_int_handler)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)"
)


def test_run_to_completion_returns_stdout() -> None:
    out = asyncio.run(run_to_completion(PY, ["-c", "print('hello')"]))
    assert out.strip() == "hello"


def test_run_to_completion_logs_stderr_lines(caplog) -> None:
    caplog.set_level(logging.ERROR, logger="harvest.process")
    asyncio.run(
        run_to_completion(
            PY,
            ["-c", "import sys; sys.stderr.write('first\\nsecond\\n')"],
            log_prefix="probe",
        )
    )
    assert "[probe] first" in caplog.text
    assert "[probe] second" in caplog.text


def test_run_to_completion_nonzero_exit_raises_without_output() -> None:
    with pytest.raises(CommandFailed) as excinfo:
        asyncio.run(
            run_to_completion(PY, ["-c", "print('private' + '-output'); raise SystemExit(3)"])
        )
    assert excinfo.value.returncode == 3
    assert "private-output" not in str(excinfo.value)


def test_run_to_completion_spawn_failure_raises_command_failed() -> None:
    with pytest.raises(CommandFailed) as excinfo:
        asyncio.run(run_to_completion("harvest-missing-binary-xyz", ["--version"]))
    assert excinfo.value.returncode is None
    assert "harvest-missing-binary-xyz --version" in excinfo.value.command


def test_run_to_completion_writes_stdin() -> None:
    out = asyncio.run(
        run_to_completion(
            PY,
            ["-c", "import sys; print(sys.stdin.readline().strip().upper())"],
            stdin="yes\n",
        )
    )
    assert out.strip() == "YES"


def test_run_to_completion_env_override_keeps_parent_env() -> None:
    out = asyncio.run(
        run_to_completion(
            PY,
            ["-c", "import os; print(os.environ['HARVEST_PROBE'], 'PATH' in os.environ)"],
            env={"HARVEST_PROBE": "42"},
        )
    )
    assert out.split() == ["42", "True"]


def test_command_failed_masks_secrets() -> None:
    with pytest.raises(CommandFailed) as excinfo:
        asyncio.run(
            run_to_completion(
                PY, ["-c", "raise SystemExit(1)", "tok-123"], secrets=("tok-123",)
            )
        )
    assert "tok-123" not in str(excinfo.value)
    assert "***" in str(excinfo.value)


def test_format_command_masks_embedded_secret() -> None:
    line = format_command(
        "orchard", ["ssh", "vm", "vm-1", "config.sh --token abc && run.sh"], ("abc",)
    )
    assert line == "orchard ssh vm vm-1 config.sh --token *** && run.sh"


def test_format_command_ignores_empty_secret() -> None:
    assert format_command("orchard", ["list", "vms"], ("",)) == "orchard list vms"


def test_background_process_logs_stdout_and_resolves(caplog) -> None:
    caplog.set_level(logging.INFO, logger="harvest.process")

    async def scenario() -> None:
        proc = await run_in_background(PY, ["-c", "print('up')"], log_prefix="bg")
        await proc.exited

    asyncio.run(scenario())
    assert "[bg] up" in caplog.text


def test_background_process_rejects_on_unexpected_failure() -> None:
    async def scenario() -> None:
        proc = await run_in_background(PY, ["-c", "raise SystemExit(2)"])
        await proc.exited

    with pytest.raises(CommandFailed) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.returncode == 2


def test_kill_resolves_exit_signal_even_with_nonzero_exit() -> None:
    async def scenario() -> int | None:
        proc = await run_in_background(PY, ["-c", SLEEPER])
        await asyncio.sleep(0.5)
        await asyncio.wait_for(proc.kill(), timeout=30)
        assert proc.exited.done()
        assert proc.exited.exception() is None
        return proc.process.returncode

    returncode = asyncio.run(scenario())
    assert returncode != 0


def test_kill_after_exit_is_noop() -> None:
    async def scenario() -> None:
        proc = await run_in_background(PY, ["-c", "raise SystemExit(4)"])
        with pytest.raises(CommandFailed):
            await proc.exited
        await asyncio.wait_for(proc.kill(), timeout=5)
        await asyncio.wait_for(proc.kill(), timeout=5)

    asyncio.run(scenario())


def test_kill_escalates_when_interrupt_is_ignored() -> None:
    stubborn = (
        "import signal, time\n"
        "signal.signal(signal.SIGINT, signal.SIG_IGN)\n"
        "time.sleep(30)"
    )

    async def scenario() -> int | None:
        proc = await run_in_background(PY, ["-c", stubborn])
        await asyncio.sleep(0.5)
        await asyncio.wait_for(proc.kill(grace_sec=0.2), timeout=10)
        return proc.process.returncode

    assert asyncio.run(scenario()) == -9


def test_failure_is_fatal_triggers_fatal_exactly_once(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(process, "fatal", calls.append)

    async def scenario() -> None:
        proc = await run_in_background(
            PY, ["-c", "raise SystemExit(1)"], failure_is_fatal=True
        )
        with pytest.raises(CommandFailed):
            await proc.exited
        await proc.kill()

    asyncio.run(scenario())
    assert len(calls) == 1
    assert calls[0].startswith("Failure in critical process")


def test_killed_fatal_process_does_not_trigger_fatal(monkeypatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(process, "fatal", calls.append)

    async def scenario() -> None:
        proc = await run_in_background(PY, ["-c", SLEEPER], failure_is_fatal=True)
        await asyncio.sleep(0.5)
        await proc.kill()

    asyncio.run(scenario())
    assert calls == []


def test_success_or_fatal_exits_with_marked_message(caplog) -> None:
    async def boom() -> None:
        raise RuntimeError("boom")

    with pytest.raises(SystemExit) as excinfo:
        asyncio.run(process.success_or_fatal(boom(), "could not boom"))
    assert excinfo.value.code == 1
    assert "[FATAL] could not boom" in caplog.text


def test_success_or_fatal_returns_value() -> None:
    async def ok() -> str:
        return "fine"

    assert asyncio.run(process.success_or_fatal(ok(), "unused")) == "fine"
