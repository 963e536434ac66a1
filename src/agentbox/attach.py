"""Interactive terminal attachment.

Pipes the local terminal into an exec session running inside the
container and back out, forwarding resizes as they happen. The remote
stream ending and an interrupt both lead to the same teardown, which
runs exactly once:

    unsubscribe resize/interrupt/input -> restore terminal mode
    -> close stream -> session cleanup -> exit status
"""

import asyncio
import logging
import os
import shutil
import signal
import sys
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

Teardown = Callable[[], Awaitable[None]]


class RemoteStream(Protocol):
    """The container side: a duplex byte stream with a resizable TTY."""

    async def resize(self, rows: int, cols: int) -> None: ...

    async def read(self, size: int = 4096) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    def close(self) -> None: ...


class LocalTerminal(ABC):
    """The operator's terminal."""

    @abstractmethod
    def size(self) -> tuple[int, int]:
        """(rows, cols)"""
        ...

    @abstractmethod
    def enter_raw(self) -> None:
        ...

    @abstractmethod
    def restore(self) -> None:
        ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    def subscribe(self, on_input: Callable[[bytes], None], on_resize: Callable[[], None],
                  on_interrupt: Callable[[], None]) -> None:
        ...

    @abstractmethod
    def unsubscribe(self) -> None:
        ...

    @abstractmethod
    def pause_input(self) -> None:
        """Stop delivering input to the subscriber until resume_input()."""
        ...

    @abstractmethod
    def resume_input(self) -> None:
        ...


class PosixTerminal(LocalTerminal):
    """stdin/stdout of the current process, driven from the event loop."""

    def __init__(self, stdin_fd: int | None = None, stdout_fd: int | None = None):
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout_fd = sys.stdout.fileno() if stdout_fd is None else stdout_fd
        self._saved_mode: list | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._readable: Callable[[], None] | None = None

    def size(self) -> tuple[int, int]:
        cols, rows = shutil.get_terminal_size((80, 24))
        return rows, cols

    def enter_raw(self) -> None:
        if not os.isatty(self.stdin_fd):
            return
        import termios
        import tty

        self._saved_mode = termios.tcgetattr(self.stdin_fd)
        tty.setraw(self.stdin_fd)

    def restore(self) -> None:
        if self._saved_mode is None:
            return
        import termios

        termios.tcsetattr(self.stdin_fd, termios.TCSADRAIN, self._saved_mode)
        self._saved_mode = None

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = os.write(self.stdout_fd, view)
            view = view[written:]

    def subscribe(self, on_input: Callable[[bytes], None], on_resize: Callable[[], None],
                  on_interrupt: Callable[[], None]) -> None:
        self._loop = asyncio.get_running_loop()

        def _readable() -> None:
            try:
                data = os.read(self.stdin_fd, 4096)
            except OSError:
                data = b""
            if not data:
                # EOF on stdin: stop watching, keep the session alive
                self._loop.remove_reader(self.stdin_fd)
                return
            on_input(data)

        self._readable = _readable
        self._loop.add_reader(self.stdin_fd, _readable)
        self._loop.add_signal_handler(signal.SIGWINCH, on_resize)
        self._loop.add_signal_handler(signal.SIGINT, on_interrupt)
        self._loop.add_signal_handler(signal.SIGTERM, on_interrupt)

    def unsubscribe(self) -> None:
        if self._loop is None:
            return
        self._loop.remove_reader(self.stdin_fd)
        for sig in (signal.SIGWINCH, signal.SIGINT, signal.SIGTERM):
            self._loop.remove_signal_handler(sig)
        self._loop = None
        self._readable = None

    def pause_input(self) -> None:
        if self._loop is not None:
            self._loop.remove_reader(self.stdin_fd)

    def resume_input(self) -> None:
        if self._loop is not None and self._readable is not None:
            self._loop.add_reader(self.stdin_fd, self._readable)


class AttachmentChannel:
    """Bidirectional terminal <-> container link with guaranteed teardown.

    Usage:
        stream = await runtime.open_exec(container_id)
        channel = AttachmentChannel(stream, PosixTerminal(), on_teardown=session.cleanup)
        exit_code = await channel.run()
    """

    def __init__(self, stream: RemoteStream, terminal: LocalTerminal,
                 on_teardown: Teardown | None = None):
        self.stream = stream
        self.terminal = terminal
        self.on_teardown = on_teardown
        self.exit_code = 0
        self.reason: str | None = None  # "stream-end" | "interrupt" | "error"
        self._done = asyncio.Event()
        self._input: asyncio.Queue[bytes] = asyncio.Queue()
        self._pending: set[asyncio.Task] = set()
        self._torn_down = False
        self._attached = False
        self._paused = False

    def _finish(self, reason: str, exit_code: int = 0) -> None:
        if self.reason is not None:
            return
        self.reason = reason
        self.exit_code = exit_code
        self._done.set()

    def interrupt(self) -> None:
        """Operator-initiated end of the session."""
        self._finish("interrupt")

    def pause(self) -> None:
        """Hand the keyboard back to the host: cooked mode, no forwarding.

        Container output keeps flowing and interrupts still end the
        session. A pause requested before run() holds until resume().
        """
        if self._paused or self._torn_down:
            return
        self._paused = True
        if self._attached:
            self.terminal.pause_input()
            self.terminal.restore()

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._torn_down or not self._attached:
            return
        self.terminal.enter_raw()
        self.terminal.resume_input()

    @property
    def paused(self) -> bool:
        return self._paused

    def _on_input(self, data: bytes) -> None:
        self._input.put_nowait(data)

    def _on_resize(self) -> None:
        task = asyncio.create_task(self._push_size())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _push_size(self) -> None:
        rows, cols = self.terminal.size()
        try:
            await self.stream.resize(rows, cols)
        except Exception as e:
            # The exec may already have exited
            logger.debug("Resize ignored: %s", e)

    async def _pump_output(self) -> None:
        try:
            while True:
                chunk = await self.stream.read()
                if not chunk:
                    self._finish("stream-end")
                    return
                self.terminal.write(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Terminal stream failed: %s", e)
            self._finish("error", exit_code=1)

    async def _pump_input(self) -> None:
        while True:
            data = await self._input.get()
            try:
                await self.stream.write(data)
            except OSError as e:
                logger.debug("Write to container failed: %s", e)
                return

    async def run(self) -> int:
        await self._push_size()
        self.terminal.subscribe(self._on_input, self._on_resize, self.interrupt)
        self._attached = True
        if self._paused:
            self.terminal.pause_input()
        else:
            self.terminal.enter_raw()

        pumps = [
            asyncio.create_task(self._pump_output()),
            asyncio.create_task(self._pump_input()),
        ]
        try:
            await self._done.wait()
        except asyncio.CancelledError:
            self._finish("interrupt")
        finally:
            for task in pumps:
                task.cancel()
            await asyncio.gather(*pumps, *self._pending, return_exceptions=True)
            await self.teardown()
        return self.exit_code

    async def teardown(self) -> None:
        """Runs once no matter how many triggers fire."""
        if self._torn_down:
            return
        self._torn_down = True
        try:
            self.terminal.unsubscribe()
        finally:
            self.terminal.restore()
        try:
            self.stream.close()
        except OSError as e:
            logger.debug("Closing exec stream: %s", e)
        if self.on_teardown is not None:
            await self.on_teardown()
