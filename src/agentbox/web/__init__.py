"""Browser handoff: FastAPI app plus an in-process uvicorn server."""

from agentbox.web.routes import create_app
from agentbox.web.server import WebUIServer

__all__ = ["WebUIServer", "create_app"]
