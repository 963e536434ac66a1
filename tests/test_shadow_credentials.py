"""Tests for shadow repos and credential discovery."""

import asyncio

import pytest

from agentbox.credentials import CONTAINER_HOME, CredentialProvider
from conftest import FakeRunner


class TestShadowRepo:
    def test_sync_replaces_previous_copy(self, runtime, shadows):
        runtime.add("a" * 64)
        runtime.workspace = {"one.txt": b"1"}
        path = asyncio.run(shadows.sync_from_container(runtime, "a" * 64, "aaaa"))
        assert (path / "one.txt").read_bytes() == b"1"

        runtime.workspace = {"two.txt": b"2"}
        asyncio.run(shadows.sync_from_container(runtime, "a" * 64, "aaaa"))
        assert not (path / "one.txt").exists()
        assert (path / "two.txt").read_bytes() == b"2"
        assert asyncio.run(shadows.list_entries()) == ["aaaa"]

    def test_copy_and_remove(self, shadows, tmp_path):
        src = shadows.path_for("s1")
        src.mkdir(parents=True)
        (src / "f").write_text("x")

        dest = asyncio.run(shadows.copy(src, tmp_path / "out"))
        assert (dest / "f").read_text() == "x"

        asyncio.run(shadows.remove(src))
        assert not asyncio.run(shadows.exists(src))

    def test_remove_all(self, shadows):
        shadows.path_for("s1").mkdir(parents=True)
        asyncio.run(shadows.remove_all())
        assert not shadows.base_path.exists()
        assert asyncio.run(shadows.list_entries()) == []


class TestCredentialProvider:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in (*CredentialProvider.API_KEY_VARS, *CredentialProvider.GITHUB_VARS):
            monkeypatch.delenv(var, raising=False)

    def test_nothing_found(self, tmp_path):
        provider = CredentialProvider(tmp_path / "missing.json",
                                      runner=FakeRunner().on("gh", "auth", "token", success=False))
        assert asyncio.run(provider.discover()) is None

    def test_env_and_config_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("GH_TOKEN", "ghp_env")
        config = tmp_path / "agent.json"
        config.write_text('{"token": 1}')

        creds = asyncio.run(CredentialProvider(config, runner=FakeRunner()).discover())
        assert creds.env == {"ANTHROPIC_API_KEY": "sk-test", "GITHUB_TOKEN": "ghp_env"}
        assert creds.files == {f"{CONTAINER_HOME}/.claude.json": b'{"token": 1}'}

    def test_gh_cli_token(self, tmp_path):
        runner = FakeRunner().on("gh", "auth", "token", stdout="ghp_cli\n")
        creds = asyncio.run(CredentialProvider(tmp_path / "missing.json", runner=runner).discover())
        assert creds.env == {"GITHUB_TOKEN": "ghp_cli"}
