"""Shadow repos: on-disk copies of a container's /workspace.

Each session gets ~/.cache/agentbox/shadows/<session_id>. The copy is
refreshed from the container at start and after every commit, so work
survives the container being removed.
"""

import asyncio
import logging
import shutil
import tarfile
import tempfile
from pathlib import Path

from agentbox.commands import CONTAINER_WORKDIR
from agentbox.runtime import RuntimeClient

logger = logging.getLogger(__name__)


class ShadowRepo:
    """Manages the shadow repo directory tree."""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    def path_for(self, session_id: str) -> Path:
        return self.base_path / session_id

    async def exists(self, path: str | Path) -> bool:
        return await asyncio.to_thread(Path(path).is_dir)

    async def sync_from_container(self, runtime: RuntimeClient, container_id: str,
                                  session_id: str) -> Path:
        """Replace the shadow copy with the container's current workspace."""
        target = self.path_for(session_id)
        await asyncio.to_thread(self.base_path.mkdir, parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(dir=self.base_path, prefix=".sync-") as tmp:
            archive = Path(tmp) / "workspace.tar"
            await runtime.export_path(container_id, CONTAINER_WORKDIR, archive)
            staging = Path(tmp) / "staging"
            await asyncio.to_thread(self._extract, archive, staging)

            # get_archive nests everything under the basename of the source
            extracted = staging / Path(CONTAINER_WORKDIR).name
            await asyncio.to_thread(self._swap, extracted, target)

        logger.debug("Synced shadow repo %s", target)
        return target

    @staticmethod
    def _extract(archive: Path, dest: Path) -> None:
        dest.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive) as tar:
            tar.extractall(dest, filter="data")

    @staticmethod
    def _swap(src: Path, target: Path) -> None:
        if target.exists():
            old = target.with_name(target.name + ".old")
            shutil.rmtree(old, ignore_errors=True)
            target.rename(old)
            src.rename(target)
            shutil.rmtree(old, ignore_errors=True)
        else:
            src.rename(target)

    async def copy(self, src: str | Path, dest: str | Path) -> Path:
        """Copy a shadow repo tree to `dest` (must not exist yet)."""
        dest_path = Path(dest).expanduser().resolve()
        await asyncio.to_thread(shutil.copytree, Path(src), dest_path, symlinks=True)
        return dest_path

    async def remove(self, path: str | Path) -> None:
        await asyncio.to_thread(shutil.rmtree, Path(path))

    async def list_entries(self) -> list[str]:
        """Session ids that currently have a shadow directory."""
        def _list() -> list[str]:
            if not self.base_path.is_dir():
                return []
            return sorted(p.name for p in self.base_path.iterdir()
                          if p.is_dir() and not p.name.startswith("."))
        return await asyncio.to_thread(_list)

    async def remove_all(self) -> None:
        if await asyncio.to_thread(self.base_path.exists):
            await asyncio.to_thread(shutil.rmtree, self.base_path)
