"""
ProcessSupervisor tests against real child processes.

The children are short Python scripts run with the current interpreter.
"""
import asyncio
import signal
import sys

import pytest

from botwatch.process import (
    TRUNCATED_LINE_BYTES, LaunchError, ProcessSupervisor, StartupTimeout, describe_exit,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")


async def collect(sup):
    return [entry async for entry in sup.lines()]


def test_describe_exit():
    assert describe_exit(0) == ("0", 0)
    assert describe_exit(3) == ("3", 3)
    assert describe_exit(-signal.SIGTERM) == ("SIGTERM", 128 + signal.SIGTERM)
    assert describe_exit(-signal.SIGKILL) == ("SIGKILL", 137)


def test_launch_failure_raises():
    sup = ProcessSupervisor()

    async def go():
        await sup.launch("/nonexistent/definitely-not-a-bot")

    with pytest.raises(LaunchError):
        asyncio.run(go())
    assert sup.process is None


def test_captures_both_streams_in_order(bot_script):
    cmd = bot_script("""
        import sys, time
        print("first")
        time.sleep(0.1)
        print("second", file=sys.stderr, flush=True)
        time.sleep(0.1)
        print("")
        print("third")
    """)
    sup = ProcessSupervisor(ready_marker="never", startup_timeout=10)

    async def go():
        await sup.launch(cmd[0], cmd[1:])
        entries = await collect(sup)
        await sup.process.wait()
        sup.cancel_startup_watchdog()
        return entries

    entries = asyncio.run(go())
    assert [(e.stream, e.text) for e in entries] == [
        ("stdout", "first"),
        ("stderr", "second"),
        ("stdout", "third"),
    ]
    assert all(e.timestamp.endswith("Z") for e in entries)


def test_child_environment(bot_script):
    cmd = bot_script("""
        import os
        print(os.environ["SESSION_ID"], os.environ["GUI_PORT"], os.environ.get("PATH") is not None)
    """)
    sup = ProcessSupervisor()

    async def go():
        await sup.launch(cmd[0], cmd[1:], env={"SESSION_ID": "bot-session-x", "GUI_PORT": "3001"})
        entries = await collect(sup)
        sup.cancel_startup_watchdog()
        await sup.process.wait()
        return entries

    entries = asyncio.run(go())
    assert entries[0].text == "bot-session-x 3001 True"


def test_ready_marker_on_stderr(bot_script):
    cmd = bot_script("""
        import sys, time
        print("Bot is ready as Bot Sportello", file=sys.stderr, flush=True)
        time.sleep(0.2)
    """)
    sup = ProcessSupervisor(ready_marker="Bot is ready", startup_timeout=10)

    async def go():
        await sup.launch(cmd[0], cmd[1:])
        ready = await sup.wait_ready()
        armed = sup.timers_armed
        await collect(sup)
        await sup.process.wait()
        return ready, armed

    ready, armed = asyncio.run(go())
    assert ready is True
    assert armed == []


def test_startup_watchdog_fires(bot_script):
    cmd = bot_script("""
        import time
        print("booting")
        time.sleep(30)
    """)
    sup = ProcessSupervisor(ready_marker="Bot is ready", startup_timeout=0.3, grace_period=2)

    async def go():
        await sup.launch(cmd[0], cmd[1:])
        try:
            with pytest.raises(StartupTimeout):
                await sup.wait_ready()
            assert sup.timers_armed == []
        finally:
            await sup.terminate()

    asyncio.run(go())


def test_cancelled_watchdog_resolves_false(bot_script):
    cmd = bot_script("print('hello')")
    sup = ProcessSupervisor(startup_timeout=10)

    async def go():
        await sup.launch(cmd[0], cmd[1:])
        sup.cancel_startup_watchdog()
        ready = await sup.wait_ready()
        await collect(sup)
        await sup.process.wait()
        return ready

    assert asyncio.run(go()) is False


class TestEscalation:
    def test_no_sigkill_when_child_exits_within_grace(self, bot_script):
        cmd = bot_script("""
            import signal, sys, time
            def bye(*_):
                time.sleep(0.2)
                sys.exit(0)
            signal.signal(signal.SIGTERM, bye)
            print("Bot is ready", flush=True)
            time.sleep(30)
        """)
        sup = ProcessSupervisor(grace_period=5)

        async def go():
            await sup.launch(cmd[0], cmd[1:])
            await sup.wait_ready()
            forced = await sup.terminate()
            await asyncio.sleep(0.1)
            return forced

        forced = asyncio.run(go())
        assert forced is False
        assert sup.signals_sent == ["SIGTERM"]
        assert sup.process.returncode == 0
        assert sup.timers_armed == []

    def test_exactly_one_sigkill_when_sigterm_ignored(self, bot_script):
        cmd = bot_script("""
            import signal, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("Bot is ready", flush=True)
            time.sleep(30)
        """)
        sup = ProcessSupervisor(grace_period=0.5)

        async def go():
            await sup.launch(cmd[0], cmd[1:])
            await sup.wait_ready()
            return await sup.terminate()

        forced = asyncio.run(go())
        assert forced is True
        assert sup.signals_sent == ["SIGTERM", "SIGKILL"]
        assert sup.process.returncode == -signal.SIGKILL
        assert sup.timers_armed == []

    def test_terminate_after_exit_sends_nothing(self, bot_script):
        cmd = bot_script("print('done')")
        sup = ProcessSupervisor()

        async def go():
            await sup.launch(cmd[0], cmd[1:])
            sup.cancel_startup_watchdog()
            await collect(sup)
            await sup.process.wait()
            return await sup.terminate()

        assert asyncio.run(go()) is False
        assert sup.signals_sent == []


class TestAuxiliary:
    def test_missing_auxiliary_is_not_fatal(self, capsys):
        sup = ProcessSupervisor()
        proc = asyncio.run(sup.launch_auxiliary(["/nonexistent/dashboard"], settle_delay=0))
        assert proc is None
        assert sup.auxiliary is None
        assert "GUI dashboard not available" in capsys.readouterr().out

    def test_auxiliary_terminated(self):
        sup = ProcessSupervisor(grace_period=2)

        async def go():
            await sup.launch_auxiliary([sys.executable, "-c", "import time; time.sleep(30)"], settle_delay=0.1)
            await sup.terminate_auxiliary()
            return sup.auxiliary.returncode

        assert asyncio.run(go()) is not None


def test_stdin_forwarded_verbatim(bot_script):
    import os

    cmd = bot_script("""
        import sys
        for line in sys.stdin:
            print("echo:" + line.rstrip("\\n"), flush=True)
    """)
    sup = ProcessSupervisor()
    read_fd, write_fd = os.pipe()

    async def go():
        await sup.launch(cmd[0], cmd[1:])
        sup.cancel_startup_watchdog()
        sup.start_forwarding(os.fdopen(read_fd, "rb", buffering=0))
        os.write(write_fd, b"status\nping  \n")
        os.close(write_fd)
        entries = await asyncio.wait_for(collect(sup), 10)
        await sup.process.wait()
        await sup.stop_forwarding()
        return entries

    entries = asyncio.run(go())
    assert [e.text for e in entries] == ["echo:status", "echo:ping  "]


def test_oversized_line_kept_truncated(bot_script):
    cmd = bot_script("""
        import sys
        sys.stdout.write("x" * (3 * 1024 * 1024) + "\\n")
        print("after")
    """)
    sup = ProcessSupervisor()

    async def go():
        await sup.launch(cmd[0], cmd[1:])
        sup.cancel_startup_watchdog()
        entries = await asyncio.wait_for(collect(sup), 30)
        await sup.process.wait()
        return entries

    entries = asyncio.run(go())
    assert [e.text for e in entries][1:] == ["after"]
    first = entries[0].text
    assert first.startswith("x" * TRUNCATED_LINE_BYTES)
    assert first.endswith("more bytes]")
    assert "[truncated, " in first
    assert len(first) < TRUNCATED_LINE_BYTES + 100
