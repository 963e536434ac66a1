"""Operator prompts.

Everything that asks the human a question goes through an Operator so
the recovery flow and commit loop can be driven by a scripted operator
in tests.

ConsoleOperator renders and validates with rich's prompt classes but
reads the answer on the event loop, so a prompt that is still open when
the session ends is cancelled like any other task.
"""

import asyncio
import os
import stat
import sys
from abc import ABC, abstractmethod
from typing import Any, Sequence

from rich.console import Console
from rich.prompt import Confirm, InvalidResponse, Prompt, PromptBase
from rich.table import Table

console = Console()

Choice = tuple[str, str]  # (value, label)


class Operator(ABC):
    """The human at the terminal."""

    @abstractmethod
    async def choose(self, message: str, choices: Sequence[Choice],
                     default: str | None = None) -> str:
        """Pick one of `choices`; returns its value."""
        ...

    @abstractmethod
    async def confirm(self, message: str, default: bool = False) -> bool:
        ...

    @abstractmethod
    async def ask(self, message: str, default: str | None = None) -> str:
        ...


class LineReader:
    """Reads newline-terminated input from a file descriptor without a thread.

    Raises EOFError when the descriptor is closed before a full line.
    """

    def __init__(self, fd: int | None = None):
        self.fd = sys.stdin.fileno() if fd is None else fd
        self._buffer = bytearray()
        self._eof = False

    def _take_line(self) -> str | None:
        idx = self._buffer.find(b"\n")
        if idx < 0:
            return None
        line = bytes(self._buffer[:idx])
        del self._buffer[:idx + 1]
        return line.decode("utf-8", errors="replace").rstrip("\r")

    def _fill(self) -> bool:
        """One read into the buffer; False at end of input."""
        try:
            chunk = os.read(self.fd, 1024)
        except BlockingIOError:
            return True
        if not chunk:
            self._eof = True
            return False
        self._buffer.extend(chunk)
        return True

    async def readline(self) -> str:
        line = self._take_line()
        if line is not None:
            return line
        if self._eof:
            raise EOFError("input closed")

        if stat.S_ISREG(os.fstat(self.fd).st_mode):
            # Regular files never block and cannot be polled
            while self._fill():
                line = self._take_line()
                if line is not None:
                    return line
            raise EOFError("input closed")

        loop = asyncio.get_running_loop()
        ready: asyncio.Future[str] = loop.create_future()

        def _readable() -> None:
            if ready.done():
                return
            try:
                more = self._fill()
            except OSError as e:
                ready.set_exception(e)
                return
            line = self._take_line()
            if line is not None:
                ready.set_result(line)
            elif not more:
                ready.set_exception(EOFError("input closed"))

        loop.add_reader(self.fd, _readable)
        try:
            return await ready
        finally:
            loop.remove_reader(self.fd)


class ConsoleOperator(Operator):
    """Interactive operator backed by rich prompts."""

    def __init__(self, out: Console | None = None, stdin_fd: int | None = None):
        self.console = out or console
        self._stdin_fd = stdin_fd
        self._reader: LineReader | None = None

    @property
    def reader(self) -> LineReader:
        if self._reader is None:
            self._reader = LineReader(self._stdin_fd)
        return self._reader

    async def _prompt(self, prompt: PromptBase, default: Any = ...) -> Any:
        """Ask until the answer validates; empty input picks the default."""
        while True:
            self.console.print(prompt.make_prompt(default), end="")
            value = await self.reader.readline()
            if value == "" and default is not ...:
                return default
            try:
                return prompt.process_response(value)
            except InvalidResponse as error:
                prompt.on_validate_error(value, error)

    async def choose(self, message: str, choices: Sequence[Choice],
                     default: str | None = None) -> str:
        table = Table(show_header=False, box=None)
        table.add_column("#", style="dim")
        table.add_column("Option")
        for i, (_, label) in enumerate(choices, 1):
            table.add_row(str(i), label)
        self.console.print(table)

        default_idx = "1"
        for i, (value, _) in enumerate(choices, 1):
            if value == default:
                default_idx = str(i)

        prompt = Prompt(
            message,
            console=self.console,
            choices=[str(i) for i in range(1, len(choices) + 1)],
        )
        choice = await self._prompt(prompt, default_idx)
        return choices[int(choice) - 1][0]

    async def confirm(self, message: str, default: bool = False) -> bool:
        return await self._prompt(Confirm(message, console=self.console), default)

    async def ask(self, message: str, default: str | None = None) -> str:
        prompt = Prompt(message, console=self.console)
        return await self._prompt(prompt, ... if default is None else default)
