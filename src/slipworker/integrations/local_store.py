"""Object store backed by a local directory."""

import asyncio
import shutil
from pathlib import Path


class LocalImageStore:
    """Image store that maps object keys to files under a root directory.

    Keys never resolve outside the root.
    """

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def _path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Object key escapes the store root: {key}")
        return path

    async def get(self, key: str) -> bytes | None:
        path = self._path_for(key)
        if not path.is_file():
            return None
        return await asyncio.to_thread(path.read_bytes)

    def put_file(self, key: str, source: Path) -> Path:
        """Copy a local file into the store under ``key``."""
        dest = self._path_for(key)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, dest)
        return dest
