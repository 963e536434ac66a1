"""Tests for the web UI routes."""

from fastapi.testclient import TestClient

from agentbox import __version__
from agentbox.web import create_app
from agentbox.web.routes import RepoInfo
from conftest import FakeRuntime


def _client(runtime=None):
    runtime = runtime or FakeRuntime()
    app = create_app(runtime)
    return TestClient(app), app, runtime


class TestRoutes:
    def test_index_serves_terminal_page(self):
        client, _, _ = _client()
        response = client.get("/")
        assert response.status_code == 200
        assert "xterm" in response.text

    def test_health(self):
        client, _, _ = _client()
        assert client.get("/api/health").json() == {"status": "ok", "version": __version__}

    def test_repo_info(self):
        client, app, _ = _client()
        assert client.get("/api/repo").json() == {"path": None, "branch": None}
        app.state.repo = RepoInfo(path="/home/dev/project", branch="agentbox/x")
        assert client.get("/api/repo").json() == {
            "path": "/home/dev/project", "branch": "agentbox/x"}

    def test_containers(self):
        runtime = FakeRuntime()
        runtime.add("a" * 64, "running", name="agentbox-a", branch="work")
        runtime.add("b" * 64, "exited", name="agentbox-b")
        client, _, _ = _client(runtime)

        data = client.get("/api/containers").json()
        assert [(c["short_id"], c["state"]) for c in data] == [
            ("a" * 12, "running"), ("b" * 12, "exited")]
        assert data[0]["branch"] == "work"

    def test_container_state(self):
        runtime = FakeRuntime()
        runtime.add("a" * 64, "exited")
        client, _, _ = _client(runtime)

        assert client.get(f"/api/containers/{'a' * 64}").json()["state"] == "stopped"
        assert client.get("/api/containers/missing").status_code == 404


class TestTerminalSocket:
    def test_output_forwarded_to_browser(self):
        runtime = FakeRuntime()
        runtime.add("a" * 64)
        client, _, _ = _client(runtime)

        with client.websocket_connect(f"/ws/{'a' * 64}") as ws:
            assert ws.receive_bytes() == b"welcome\r\n"

    def test_unknown_container_closes_socket(self):
        client, _, _ = _client()
        with client.websocket_connect("/ws/missing") as ws:
            message = ws.receive()
        assert message["type"] == "websocket.close"
        assert message["code"] == 4404
