"""In-process web UI server (uvicorn) for the browser handoff."""

import asyncio
import logging
import socket
import webbrowser

import uvicorn

from agentbox.errors import ExternalToolError
from agentbox.runtime import RuntimeClient
from agentbox.web.routes import RepoInfo, create_app

logger = logging.getLogger(__name__)


class WebUIServer:
    """Serves the terminal page and websocket bridge on localhost.

    Usage:
        server = WebUIServer(runtime)
        server.set_repo_info(repo_path, branch)
        url = await server.start()
        await server.open_in_browser(f"{url}?container={container_id}")
        ...
        await server.stop()
    """

    def __init__(self, runtime: RuntimeClient, host: str = "127.0.0.1", port: int = 3456):
        self.host = host
        self.port = port
        self.app = create_app(runtime)
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def set_repo_info(self, path: str, branch: str) -> None:
        self.app.state.repo = RepoInfo(path=path, branch=branch)

    async def start(self, timeout: float = 10.0) -> str:
        if self._task is not None:
            return self.url
        config = uvicorn.Config(self.app, host=self.host, port=self.port, log_level="warning")
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise ExternalToolError(
                f"Web UI cannot listen on {self.host}:{self.port}: {e}") from e
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        deadline = asyncio.get_running_loop().time() + timeout
        while not self._server.started:
            if self._task.done():
                self._task = None
                raise ExternalToolError(
                    f"Web UI failed to start on {self.host}:{self.port}")
            if asyncio.get_running_loop().time() > deadline:
                await self.stop()
                raise ExternalToolError("Web UI did not start in time")
            await asyncio.sleep(0.05)

        logger.info("Web UI listening on %s", self.url)
        return self.url

    async def open_in_browser(self, url: str) -> None:
        opened = await asyncio.to_thread(webbrowser.open, url)
        if not opened:
            logger.info("No browser available; open %s manually", url)

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except (asyncio.TimeoutError, SystemExit) as e:
            logger.warning("Web UI did not shut down cleanly: %r", e)
        finally:
            self._server = None
            self._task = None
