"""HTTP and websocket routes for the browser handoff."""

import asyncio
import json
import logging

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from fastapi.websockets import WebSocketState
from pydantic import BaseModel

from agentbox import __version__
from agentbox.errors import ContainerStateError
from agentbox.runtime import ContainerState, RuntimeClient

logger = logging.getLogger(__name__)

router = APIRouter()


class RepoInfo(BaseModel):
    """Host repository the session was started from."""
    path: str | None = None
    branch: str | None = None


class ContainerInfo(BaseModel):
    id: str
    short_id: str
    name: str
    state: str
    branch: str = ""


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = __version__


TERMINAL_PAGE = """<!doctype html>
<html>
<head>
  <meta charset="utf-8">
  <title>agentbox</title>
  <link rel="stylesheet" href="https://cdn.jsdelivr.net/npm/@xterm/xterm@5.5.0/css/xterm.min.css">
  <style>html,body,#term{height:100%;margin:0;background:#1e1e1e}</style>
</head>
<body>
<div id="term"></div>
<script src="https://cdn.jsdelivr.net/npm/@xterm/xterm@5.5.0/lib/xterm.min.js"></script>
<script src="https://cdn.jsdelivr.net/npm/@xterm/addon-fit@0.10.0/lib/addon-fit.min.js"></script>
<script>
  const id = new URLSearchParams(location.search).get("container");
  const term = new Terminal({cursorBlink: true});
  const fit = new FitAddon.FitAddon();
  term.loadAddon(fit);
  term.open(document.getElementById("term"));
  fit.fit();
  const ws = new WebSocket(`ws://${location.host}/ws/${id}`);
  ws.binaryType = "arraybuffer";
  const resize = () => ws.send(JSON.stringify({type: "resize", rows: term.rows, cols: term.cols}));
  ws.onopen = () => { resize(); };
  ws.onmessage = (e) => term.write(new Uint8Array(e.data));
  ws.onclose = () => term.write("\\r\\n[session ended]\\r\\n");
  term.onData((d) => ws.send(JSON.stringify({type: "input", data: d})));
  window.addEventListener("resize", () => { fit.fit(); resize(); });
</script>
</body>
</html>
"""


@router.get("/", response_class=HTMLResponse)
async def index() -> str:
    return TERMINAL_PAGE


@router.get("/api/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse()


@router.get("/api/repo", response_model=RepoInfo)
async def repo_info(request: Request) -> RepoInfo:
    return request.app.state.repo


@router.get("/api/containers", response_model=list[ContainerInfo])
async def list_containers(request: Request) -> list[ContainerInfo]:
    runtime: RuntimeClient = request.app.state.runtime
    containers = await runtime.list_sandbox_containers(all=True)
    return [
        ContainerInfo(id=c.id, short_id=c.short_id, name=c.name,
                      state=c.state, branch=c.branch)
        for c in containers
    ]


@router.get("/api/containers/{container_id}")
async def container_state(container_id: str, request: Request) -> dict:
    runtime: RuntimeClient = request.app.state.runtime
    state = await runtime.state(container_id)
    if state == ContainerState.GONE:
        raise HTTPException(status_code=404, detail="Container not found")
    return {"id": container_id, "state": state.value}


@router.websocket("/ws/{container_id}")
async def terminal(websocket: WebSocket, container_id: str) -> None:
    """Bridge a browser terminal to an interactive exec in the container."""
    runtime: RuntimeClient = websocket.app.state.runtime
    await websocket.accept()
    try:
        stream = await runtime.open_exec(container_id)
    except ContainerStateError as e:
        await websocket.close(code=4404, reason=str(e))
        return

    async def pump_output() -> None:
        while True:
            chunk = await stream.read()
            if not chunk:
                break
            await websocket.send_bytes(chunk)

    output_task = asyncio.create_task(pump_output())
    try:
        while not output_task.done():
            receive = asyncio.create_task(websocket.receive_text())
            done, _ = await asyncio.wait(
                {receive, output_task}, return_when=asyncio.FIRST_COMPLETED)
            if receive not in done:
                receive.cancel()
                break
            message = json.loads(receive.result())
            if message.get("type") == "resize":
                try:
                    await stream.resize(int(message["rows"]), int(message["cols"]))
                except Exception as e:
                    logger.debug("Resize ignored: %s", e)
            elif message.get("type") == "input":
                await stream.write(message.get("data", "").encode("utf-8"))
    except WebSocketDisconnect:
        pass
    finally:
        output_task.cancel()
        stream.close()
        await asyncio.gather(output_task, return_exceptions=True)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()


def create_app(runtime: RuntimeClient) -> FastAPI:
    app = FastAPI(title="agentbox", version=__version__)
    app.state.runtime = runtime
    app.state.repo = RepoInfo()
    app.include_router(router)
    return app
