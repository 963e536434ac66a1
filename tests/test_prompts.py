"""Tests for the console operator's loop-driven prompts."""

import asyncio
import io
import os
import subprocess
import sys
import textwrap

import pytest
from rich.console import Console

from agentbox.prompts import ConsoleOperator, LineReader


@pytest.fixture
def pipe():
    read_fd, write_fd = os.pipe()
    yield read_fd, write_fd
    for fd in (read_fd, write_fd):
        try:
            os.close(fd)
        except OSError:
            pass


def _operator(read_fd) -> tuple[ConsoleOperator, io.StringIO]:
    out = io.StringIO()
    return ConsoleOperator(Console(file=out, force_terminal=False), stdin_fd=read_fd), out


CHOICES = [("continue", "Nothing"), ("push", "Push"), ("exit", "Exit")]


class TestConsoleOperator:
    def test_choose_by_number(self, pipe):
        read_fd, write_fd = pipe
        operator, _ = _operator(read_fd)
        os.write(write_fd, b"2\n")
        assert asyncio.run(operator.choose("Pick", CHOICES)) == "push"

    def test_empty_answer_picks_default(self, pipe):
        read_fd, write_fd = pipe
        operator, _ = _operator(read_fd)
        os.write(write_fd, b"\n")
        assert asyncio.run(operator.choose("Pick", CHOICES, default="exit")) == "exit"

    def test_invalid_answer_asks_again(self, pipe):
        read_fd, write_fd = pipe
        operator, out = _operator(read_fd)
        os.write(write_fd, b"9\n1\n")
        assert asyncio.run(operator.choose("Pick", CHOICES)) == "continue"
        assert out.getvalue().count("Pick") == 2

    def test_confirm(self, pipe):
        read_fd, write_fd = pipe
        operator, _ = _operator(read_fd)
        os.write(write_fd, b"y\n\n")

        async def go():
            return (await operator.confirm("Sure?"),
                    await operator.confirm("Again?", default=False))

        assert asyncio.run(go()) == (True, False)

    def test_ask(self, pipe):
        read_fd, write_fd = pipe
        operator, _ = _operator(read_fd)
        os.write(write_fd, b"/tmp/out\n")
        assert asyncio.run(operator.ask("Where?")) == "/tmp/out"

    def test_closed_input_raises_eof(self, pipe):
        read_fd, write_fd = pipe
        operator, _ = _operator(read_fd)
        os.close(write_fd)
        with pytest.raises(EOFError):
            asyncio.run(operator.choose("Pick", CHOICES))

    def test_cancelled_prompt_releases_stdin(self, pipe):
        read_fd, _ = pipe
        operator, _ = _operator(read_fd)

        async def go():
            task = asyncio.create_task(operator.choose("Pick", CHOICES))
            await asyncio.sleep(0.01)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            loop = asyncio.get_running_loop()
            # Nothing is registered for the descriptor any more
            return loop.remove_reader(read_fd), task.cancelled()

        assert asyncio.run(go()) == (False, True)


class TestLineReader:
    def test_lines_split_across_reads(self, pipe):
        read_fd, write_fd = pipe
        reader = LineReader(read_fd)
        os.write(write_fd, b"first\nsec")

        async def go():
            first = await reader.readline()
            os.write(write_fd, b"ond\r\n")
            return first, await reader.readline()

        assert asyncio.run(go()) == ("first", "second")

    def test_regular_file(self, tmp_path):
        path = tmp_path / "answers"
        path.write_bytes(b"1\n2\n")
        with open(path, "rb") as f:
            reader = LineReader(f.fileno())

            async def go():
                return [await reader.readline(), await reader.readline()]

            assert asyncio.run(go()) == ["1", "2"]
            with pytest.raises(EOFError):
                asyncio.run(reader.readline())


SCRIPT = textwrap.dedent("""
    import asyncio

    from agentbox.prompts import ConsoleOperator

    async def main():
        operator = ConsoleOperator()
        task = asyncio.create_task(operator.choose("Pick", [("a", "A"), ("b", "B")]))
        await asyncio.sleep(0.2)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        print("cleanup done", flush=True)

    asyncio.run(main())
    print("process exiting", flush=True)
""")


def test_process_exits_with_prompt_open():
    src = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "src")
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [src, env.get("PYTHONPATH")]))
    proc = subprocess.Popen(
        [sys.executable, "-c", SCRIPT], env=env,
        stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    try:
        proc.wait(timeout=20)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()
        pytest.fail("process still running after the prompt was cancelled")
    finally:
        proc.stdin.close()
    stdout = proc.stdout.read().decode()
    assert proc.returncode == 0, proc.stderr.read().decode()
    assert "process exiting" in stdout
