"""Tests for the docker-backed runtime client, using a stub SDK client."""

import asyncio
from pathlib import Path
from types import SimpleNamespace

import pytest
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from agentbox.errors import ContainerStateError, RuntimeConnectivityError
from agentbox.runtime import (
    SANDBOX_LABEL,
    ContainerState,
    LaunchSpec,
    RuntimeClient,
    git_setup_script,
)


class StubContainer:
    def __init__(self, id, running=True, status="running"):
        self.id = id
        self.name = f"agentbox-{id[:6]}"
        self.status = status
        self.attrs = {
            "State": {"Running": running, "Status": status,
                      "StartedAt": "2024-05-01T00:00:00Z"},
            "Config": {"Labels": {SANDBOX_LABEL: "1", "agentbox.branch": "work"}},
        }
        self.actions = []

    def start(self):
        self.actions.append("start")

    def stop(self, timeout=10):
        self.actions.append(("stop", timeout))

    def remove(self, force=False):
        self.actions.append(("remove", force))

    def exec_run(self, cmd, **kwargs):
        return SimpleNamespace(exit_code=0, output=(b"out", None))


class StubContainers:
    def __init__(self, containers):
        self.by_id = {c.id: c for c in containers}
        self.list_calls = []

    def get(self, container_id):
        if container_id not in self.by_id:
            raise NotFound("No such container")
        return self.by_id[container_id]

    def list(self, all=False, filters=None):
        self.list_calls.append((all, filters))
        return list(self.by_id.values())


def _client(*containers):
    return RuntimeClient(SimpleNamespace(containers=StubContainers(containers)))


class TestState:
    def test_tri_state(self):
        runtime = _client(StubContainer("run"), StubContainer("off", running=False,
                                                              status="exited"))
        assert asyncio.run(runtime.state("run")) == ContainerState.RUNNING
        assert asyncio.run(runtime.state("off")) == ContainerState.STOPPED
        assert asyncio.run(runtime.state("nope")) == ContainerState.GONE

    def test_lifecycle_on_missing_container(self):
        with pytest.raises(ContainerStateError):
            asyncio.run(_client().stop_container("nope"))


class TestLifecycle:
    def test_stop_and_remove(self):
        container = StubContainer("abc")
        runtime = _client(container)
        asyncio.run(runtime.stop_container("abc", timeout=3))
        asyncio.run(runtime.remove_container("abc", force=True))
        assert container.actions == [("stop", 3), ("remove", True)]

    def test_list_filters_by_label(self):
        runtime = _client(StubContainer("abcdef1234567890"))
        [summary] = asyncio.run(runtime.list_sandbox_containers())
        assert summary.short_id == "abcdef123456"
        assert summary.branch == "work"
        assert summary.is_running
        assert runtime.client.containers.list_calls == [(True, {"label": SANDBOX_LABEL})]

    def test_exec_run_decodes_output(self):
        runtime = _client(StubContainer("abc"))
        result = asyncio.run(runtime.exec_run("abc", ["echo"]))
        assert result.success
        assert result.stdout == "out"
        assert result.stderr == ""


class FailingContainer(StubContainer):
    def __init__(self, id, error):
        super().__init__(id)
        self.error = error

    def stop(self, timeout=10):
        raise self.error


class TestErrorTranslation:
    def _spec(self):
        return LaunchSpec(branch_name="work", work_dir=Path("/repo"),
                          repo_name="repo", image="missing:latest")

    def test_missing_image_on_launch(self):
        containers = StubContainers([])

        def create(image, **kwargs):
            raise ImageNotFound("No such image: missing:latest")

        containers.create = create
        runtime = RuntimeClient(SimpleNamespace(containers=containers))
        with pytest.raises(ContainerStateError, match="Image not found"):
            asyncio.run(runtime.launch(self._spec()))

    def test_api_error_on_stop(self):
        runtime = _client(FailingContainer("abc", APIError("conflict")))
        with pytest.raises(ContainerStateError, match="Container runtime error"):
            asyncio.run(runtime.stop_container("abc"))

    def test_transport_failure_is_connectivity_error(self):
        runtime = _client(FailingContainer("abc", DockerException("socket closed")))
        with pytest.raises(RuntimeConnectivityError):
            asyncio.run(runtime.stop_container("abc"))

    def test_exec_create_failure(self):
        def exec_create(container_id, cmd, **kwargs):
            raise APIError("container is not running")

        runtime = RuntimeClient(SimpleNamespace(
            containers=StubContainers([]), api=SimpleNamespace(exec_create=exec_create)))
        with pytest.raises(ContainerStateError):
            asyncio.run(runtime.open_exec("abc"))

    def test_logs_on_missing_container(self):
        with pytest.raises(ContainerStateError):
            list(_client().logs("nope"))


class TestSetupScript:
    def _spec(self, **kw):
        fields = dict(branch_name="agentbox/new", work_dir=Path("/repo"),
                      repo_name="repo", image="img")
        fields.update(kw)
        return LaunchSpec(**fields)

    def test_new_branch(self):
        script = git_setup_script(self._spec())
        assert "git checkout -B agentbox/new" in script
        assert "fetch" not in script

    def test_pr_branch(self):
        script = git_setup_script(self._spec(pr_fetch_ref="pull/42/head:agentbox/new"))
        assert "git fetch origin pull/42/head:agentbox/new" in script
        assert "git checkout agentbox/new" in script

    def test_remote_branch(self):
        script = git_setup_script(self._spec(remote_fetch_ref="origin/agentbox/new"))
        assert "git fetch origin agentbox/new" in script
        assert "git checkout -B agentbox/new origin/agentbox/new" in script

    def test_setup_commands_appended(self):
        script = git_setup_script(self._spec(setup_commands=["npm ci"]))
        assert script.splitlines()[-1] == "npm ci"

    def test_branch_is_quoted(self):
        script = git_setup_script(self._spec(branch_name="weird name"))
        assert "git checkout -B 'weird name'" in script
