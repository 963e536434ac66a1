"""Git activity monitor.

Polls the session branch inside the container and publishes one
CommitEvent per new commit, oldest first, on a bounded queue. Consumers
iterate `events()`; once `stop()` returns no further event is delivered.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator

from agentbox.git import GitRepo

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitEvent:
    """A new commit on the monitored branch."""
    sha: str
    parent: str | None
    branch: str
    subject: str = ""
    author: str = ""

    @property
    def short_sha(self) -> str:
        return self.sha[:7]


class GitMonitor:
    """Watches a branch and emits CommitEvents.

    Usage:
        monitor = GitMonitor(GitRepo(ContainerCommandRunner(runtime, cid)))
        await monitor.start("agentbox/2024-01-01-1700000000")
        async for event in monitor.events():
            ...
        await monitor.stop()
    """

    def __init__(self, repo: GitRepo, interval: float = 2.0, maxsize: int = 16):
        self.repo = repo
        self.interval = interval
        self.branch: str | None = None
        self._queue: asyncio.Queue[CommitEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._last_sha: str | None = None
        self._task: asyncio.Task | None = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._stopped

    async def start(self, branch: str) -> None:
        if self._task is not None:
            return
        self.branch = branch
        self._last_sha = await self.repo.head(f"refs/heads/{branch}")
        self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while not self._stopped:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning("Commit poll failed: %s", e)
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> list[CommitEvent]:
        """Check the branch head once and enqueue any new commits."""
        if self.branch is None:
            return []
        head = await self.repo.head(f"refs/heads/{self.branch}")
        if head is None or head == self._last_sha:
            return []

        if self._last_sha:
            result = await self.repo.git("rev-list", "--reverse", f"{self._last_sha}..{head}")
            shas = result.stdout.split() if result.success else []
            if not shas:  # history rewritten: report only the new head
                shas = [head]
        else:
            shas = [head]

        events = []
        for sha in shas:
            subject, author = await self.repo.commit_info(sha)
            event = CommitEvent(
                sha=sha,
                parent=await self.repo.parent_of(sha),
                branch=self.branch,
                subject=subject,
                author=author,
            )
            await self._queue.put(event)
            events.append(event)
        self._last_sha = head
        return events

    async def events(self) -> AsyncIterator[CommitEvent]:
        """Commit events in order, one at a time, until stopped."""
        while not self._stopped:
            event = await self._queue.get()
            if event is None or self._stopped:
                return
            yield event

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        # Drop anything undelivered and wake a waiting consumer
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)
