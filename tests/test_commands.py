"""Tests for command runners and git helpers."""

import asyncio

from agentbox.commands import CommandResult, ContainerCommandRunner, LocalCommandRunner
from agentbox.git import GitRepo
from conftest import FakeRunner


class TestCommandResult:
    def test_message_prefers_stderr(self):
        assert CommandResult(False, stdout="out", stderr="err\n").message == "err"

    def test_message_falls_back_to_status(self):
        assert CommandResult(False, exit_code=128).message == "exited with status 128"
        assert CommandResult(True).message == "ok"


class TestLocalCommandRunner:
    def test_success(self, tmp_path):
        result = asyncio.run(LocalCommandRunner(cwd=tmp_path).run(["pwd"]))
        assert result.success
        assert result.stdout.strip() == str(tmp_path)

    def test_failure_exit_code(self):
        result = asyncio.run(LocalCommandRunner().run(["sh", "-c", "echo oops >&2; exit 3"]))
        assert not result.success
        assert result.exit_code == 3
        assert result.message == "oops"

    def test_missing_binary(self):
        result = asyncio.run(LocalCommandRunner().run(["agentbox-no-such-tool"]))
        assert not result.success
        assert result.exit_code is None

    def test_timeout(self):
        result = asyncio.run(LocalCommandRunner(timeout=0.1).run(["sleep", "5"]))
        assert not result.success
        assert "timed out" in result.stderr


class TestContainerCommandRunner:
    def test_defaults_to_workspace(self):
        calls = []

        class Runtime:
            async def exec_run(self, container_id, cmd, workdir=None, user=None):
                calls.append((container_id, cmd, workdir, user))
                return CommandResult(True, stdout="ok")

        runner = ContainerCommandRunner(Runtime(), "abc")
        asyncio.run(runner.run(["git", "status"]))
        asyncio.run(runner.run(["ls"], cwd="/tmp"))
        assert calls == [
            ("abc", ["git", "status"], "/workspace", None),
            ("abc", ["ls"], "/tmp", None),
        ]


class TestGitRepo:
    def test_is_repo(self):
        runner = FakeRunner().on("git", "rev-parse", "--is-inside-work-tree", stdout="true\n")
        assert asyncio.run(GitRepo(runner).is_repo())
        assert not asyncio.run(GitRepo(FakeRunner()).is_repo())

    def test_has_remote(self):
        runner = FakeRunner().on("git", "remote", stdout="upstream\norigin\n")
        assert asyncio.run(GitRepo(runner).has_remote("origin"))
        assert not asyncio.run(GitRepo(runner).has_remote("fork"))

    def test_list_files_with_untracked(self):
        runner = (FakeRunner()
                  .on("git", "ls-files", "-z", stdout="a.py\x00b.py\x00")
                  .on("git", "ls-files", "-z", "--others", stdout="new.txt\x00"))
        assert asyncio.run(GitRepo(runner).list_files()) == ["a.py", "b.py"]
        assert asyncio.run(GitRepo(runner).list_files(include_untracked=True)) == [
            "a.py", "b.py", "new.txt"]

    def test_commit_info(self):
        runner = FakeRunner().on("git", "log", stdout="Fix bug\x00Dev\n")
        assert asyncio.run(GitRepo(runner).commit_info("abc")) == ("Fix bug", "Dev")
