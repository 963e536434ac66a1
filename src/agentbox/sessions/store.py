"""JSON-backed session store.

One file (~/.cache/agentbox/sessions.json) holds every session record:

    {"sessions": [SessionRecord, ...]}

Design decisions:
1. Whole-file rewrites. Every mutation re-reads the file, applies the
   change and writes the full list back through a temp file that is
   fsync'd and renamed over the real path. Readers see either the old or
   the new content, never a torn write.

2. Fail-open reads. A missing, unreadable or corrupt file loads as an
   empty list. Individual entries that do not parse are skipped.

3. Fail-closed writes. An OSError while writing surfaces as
   PersistenceError.

4. No cross-process lock. Concurrent writers cannot corrupt the file but
   can lose each other's updates.
"""

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from agentbox.errors import PersistenceError

logger = logging.getLogger(__name__)

SESSION_ID_LENGTH = 12


class SessionStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    EXITED = "exited"


class ExitType(str, Enum):
    INTENTIONAL = "intentional"
    CRASH = "crash"
    UNKNOWN = "unknown"


def utc_now() -> str:
    """ISO-8601 timestamp used for start/activity times."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SessionConfigSnapshot:
    """How the session was launched, independent of the live config file."""
    docker_image: str | None = None
    default_shell: str | None = None
    auto_commit: bool | None = None
    auto_commit_interval_minutes: int | None = None
    restart_policy: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        if self.docker_image is not None:
            d["dockerImage"] = self.docker_image
        if self.default_shell is not None:
            d["defaultShell"] = self.default_shell
        if self.auto_commit is not None:
            d["autoCommit"] = self.auto_commit
        if self.auto_commit_interval_minutes is not None:
            d["autoCommitIntervalMinutes"] = self.auto_commit_interval_minutes
        if self.restart_policy is not None:
            d["restartPolicy"] = self.restart_policy
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SessionConfigSnapshot":
        return cls(
            docker_image=d.get("dockerImage"),
            default_shell=d.get("defaultShell"),
            auto_commit=d.get("autoCommit"),
            auto_commit_interval_minutes=d.get("autoCommitIntervalMinutes"),
            restart_policy=d.get("restartPolicy"),
        )


@dataclass
class SessionRecord:
    """Durable metadata for one container's session."""
    container_id: str
    repo_path: str
    branch_name: str
    original_branch: str
    shadow_repo_path: str
    container_name: str = ""
    session_id: str = ""
    start_time: str = field(default_factory=utc_now)
    last_activity_time: str = field(default_factory=utc_now)
    status: SessionStatus = SessionStatus.ACTIVE
    exit_type: ExitType | None = None
    web_ui_port: int | None = None
    config: SessionConfigSnapshot = field(default_factory=SessionConfigSnapshot)

    def __post_init__(self):
        if not self.session_id:
            self.session_id = self.container_id[:SESSION_ID_LENGTH]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "containerId": self.container_id,
            "containerName": self.container_name,
            "sessionId": self.session_id,
            "repoPath": self.repo_path,
            "branchName": self.branch_name,
            "originalBranch": self.original_branch,
            "shadowRepoPath": self.shadow_repo_path,
            "startTime": self.start_time,
            "lastActivityTime": self.last_activity_time,
            "status": self.status.value,
            "config": self.config.to_dict(),
        }
        if self.exit_type is not None:
            d["exitType"] = self.exit_type.value
        if self.web_ui_port is not None:
            d["webUIPort"] = self.web_ui_port
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "SessionRecord":
        exit_type = d.get("exitType")
        return cls(
            container_id=d["containerId"],
            container_name=d.get("containerName", ""),
            session_id=d.get("sessionId", ""),
            repo_path=d["repoPath"],
            branch_name=d["branchName"],
            original_branch=d.get("originalBranch", ""),
            shadow_repo_path=d["shadowRepoPath"],
            start_time=d.get("startTime") or utc_now(),
            last_activity_time=d.get("lastActivityTime") or utc_now(),
            status=SessionStatus(d.get("status", "active")),
            exit_type=ExitType(exit_type) if exit_type else None,
            web_ui_port=d.get("webUIPort"),
            config=SessionConfigSnapshot.from_dict(d.get("config") or {}),
        )


_CAMEL_FIELDS = {
    "containerName": "container_name",
    "sessionId": "session_id",
    "repoPath": "repo_path",
    "branchName": "branch_name",
    "originalBranch": "original_branch",
    "shadowRepoPath": "shadow_repo_path",
    "startTime": "start_time",
    "lastActivityTime": "last_activity_time",
    "exitType": "exit_type",
    "webUIPort": "web_ui_port",
}


class SessionStore:
    """Durable mapping from container id to SessionRecord.

    Usage:
        store = SessionStore(get_session_store_path())
        await store.add_session(record)
        await store.update_session(record.container_id, status=SessionStatus.STOPPED)
        sessions = await store.load()
    """

    def __init__(self, store_path: Path):
        self.store_path = Path(store_path)

    # ── Reads ──────────────────────────────────────────────

    def _read(self) -> list[SessionRecord]:
        try:
            with open(self.store_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("Session store %s unreadable, treating as empty: %s",
                           self.store_path, e)
            return []

        if not isinstance(data, dict) or not isinstance(data.get("sessions"), list):
            return []

        records = []
        for entry in data["sessions"]:
            try:
                records.append(SessionRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping malformed session entry: %s", e)
        return records

    async def load(self) -> list[SessionRecord]:
        """All records in stored order. Never raises."""
        return await asyncio.to_thread(self._read)

    async def get(self, container_id: str) -> SessionRecord | None:
        for record in await self.load():
            if record.container_id == container_id:
                return record
        return None

    # ── Writes ─────────────────────────────────────────────

    def _write(self, records: list[SessionRecord]) -> None:
        payload = json.dumps(
            {"sessions": [r.to_dict() for r in records]}, indent=2) + "\n"
        temp_path: Path | None = None
        try:
            self.store_path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=str(self.store_path.parent),
                prefix=self.store_path.name + ".",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                temp_path = Path(tmp.name)
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(temp_path, self.store_path)
            temp_path = None
        except OSError as e:
            raise PersistenceError(
                f"Failed to write session store {self.store_path}: {e}") from e
        finally:
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

    async def _save(self, records: list[SessionRecord]) -> None:
        await asyncio.to_thread(self._write, records)

    async def add_session(self, record: SessionRecord) -> None:
        """Insert or replace the record with the same container id."""
        records = [r for r in await self.load()
                   if r.container_id != record.container_id]
        records.append(record)
        await self._save(records)

    async def update_session(self, container_id: str, **updates: Any) -> SessionRecord | None:
        """Merge fields into a record. No-op when the id is unknown.

        Accepts snake_case field names (or the camelCase JSON keys).
        """
        records = await self.load()
        for idx, record in enumerate(records):
            if record.container_id != container_id:
                continue
            changes = {_CAMEL_FIELDS.get(k, k): v for k, v in updates.items()}
            if "status" in changes:
                changes["status"] = SessionStatus(changes["status"])
            if changes.get("exit_type") is not None:
                changes["exit_type"] = ExitType(changes["exit_type"])
            if isinstance(changes.get("config"), dict):
                changes["config"] = SessionConfigSnapshot.from_dict(changes["config"])
            records[idx] = replace(record, **changes)
            await self._save(records)
            return records[idx]
        return None

    async def remove_session(self, container_id: str) -> bool:
        """Delete a record. Returns True if something was removed."""
        records = await self.load()
        remaining = [r for r in records if r.container_id != container_id]
        if len(remaining) == len(records):
            return False
        await self._save(remaining)
        return True

    async def clear_all(self) -> None:
        await self._save([])
