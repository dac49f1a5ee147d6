"""
Temporary filesystem utilities.

This module provides owned temporary directories with a caller-chosen name
and owned symbolic links. Each owner removes its filesystem entry when it is
closed explicitly, or on a best-effort basis when it is discarded.
"""

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


class FileSystemError(Exception):
    """A filesystem operation on a temporary resource failed."""


class DirectoryCreateError(FileSystemError):
    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(f"Could not create: {self.path}")


class DirectoryRemoveError(FileSystemError):
    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(f"Could not remove: {self.path}")


class SymlinkCreateError(FileSystemError):
    def __init__(self, src_path: Path, dst_path: Path):
        self.src_path = Path(src_path)
        self.dst_path = Path(dst_path)
        super().__init__(f'Could not create symlink "{self.dst_path}" to "{self.src_path}".')


class SymlinkRemoveError(FileSystemError):
    def __init__(self, src_path: Path, dst_path: Path):
        self.src_path = Path(src_path)
        self.dst_path = Path(dst_path)
        super().__init__(f'Could not remove symlink "{self.dst_path}" to "{self.src_path}".')


class ScopedDirectory:
    """
    Temporary directory with a caller-assigned name.

    The directory and all of its contents are removed by ``close_all()`` or
    ``discard()``. Use ``create()`` or ``create_unique()`` to construct one.
    """

    def __init__(self, path: Path):
        self._path = Path(path)
        self._closed = False

    @classmethod
    async def create(cls, path: PathLike) -> "ScopedDirectory":
        """
        Create a new directory at ``path``.

        Args:
            path: Directory to create. Must not exist yet.

        Returns:
            Owner of the new directory

        Raises:
            DirectoryCreateError: If the directory could not be created
        """
        path = Path(path)
        try:
            await asyncio.to_thread(os.mkdir, path)
        except OSError as exc:
            raise DirectoryCreateError(path) from exc
        logger.debug(f"Created directory: {path}")
        return cls(path)

    @classmethod
    async def create_unique(cls, parent: PathLike, prefix: str = "tmp") -> "ScopedDirectory":
        """Create a randomly named directory inside ``parent``."""
        parent = Path(parent)
        try:
            path = await asyncio.to_thread(tempfile.mkdtemp, prefix=prefix, dir=parent)
        except OSError as exc:
            raise DirectoryCreateError(parent) from exc
        logger.debug(f"Created directory: {path}")
        return cls(Path(path))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self):
        """Remove the directory, but only if it is empty."""
        if self._closed:
            return
        try:
            await asyncio.to_thread(os.rmdir, self._path)
        except OSError as exc:
            raise DirectoryRemoveError(self._path) from exc
        self._closed = True

    async def close_all(self):
        """Remove the directory and all of its contents."""
        if self._closed:
            return
        try:
            await asyncio.to_thread(shutil.rmtree, self._path)
        except OSError as exc:
            raise DirectoryRemoveError(self._path) from exc
        self._closed = True

    def discard(self):
        """Best-effort recursive removal. Errors are logged, never raised."""
        if self._closed:
            return
        self._closed = True
        try:
            shutil.rmtree(self._path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(f"Could not remove temporary directory {self._path}: {exc}")

    async def __aenter__(self) -> "ScopedDirectory":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.discard()

    def __repr__(self):
        return f"ScopedDirectory({str(self._path)!r}, closed={self._closed})"


class ScopedSymlink:
    """Temporary symbolic link at ``dst_path`` pointing to ``src_path``."""

    def __init__(self, src_path: Path, dst_path: Path):
        self._src_path = Path(src_path)
        self._dst_path = Path(dst_path)
        self._closed = False

    @classmethod
    async def create(cls, src_path: PathLike, dst_path: PathLike) -> "ScopedSymlink":
        """
        Create a symlink at ``dst_path`` pointing to ``src_path``.

        Raises:
            SymlinkCreateError: If the link could not be created
        """
        src_path = Path(src_path)
        dst_path = Path(dst_path)
        try:
            await asyncio.to_thread(os.symlink, src_path, dst_path)
        except OSError as exc:
            raise SymlinkCreateError(src_path, dst_path) from exc
        logger.debug(f"Created symlink: {dst_path} -> {src_path}")
        return cls(src_path, dst_path)

    @property
    def src_path(self) -> Path:
        return self._src_path

    @property
    def dst_path(self) -> Path:
        return self._dst_path

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self):
        """Remove the symlink. The link target is left untouched."""
        if self._closed:
            return
        try:
            await asyncio.to_thread(os.unlink, self._dst_path)
        except OSError as exc:
            raise SymlinkRemoveError(self._src_path, self._dst_path) from exc
        self._closed = True

    def discard(self):
        """Best-effort removal of the symlink. Errors are logged, never raised."""
        if self._closed:
            return
        self._closed = True
        try:
            os.unlink(self._dst_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning(f"Could not remove symlink {self._dst_path}: {exc}")

    async def __aenter__(self) -> "ScopedSymlink":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.discard()

    def __repr__(self):
        return f"ScopedSymlink({str(self._src_path)!r} <- {str(self._dst_path)!r}, closed={self._closed})"
