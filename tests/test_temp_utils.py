import asyncio
import os

import pytest

from mriqc1.temp_utils import (DirectoryCreateError, DirectoryRemoveError, ScopedDirectory, ScopedSymlink,
                               SymlinkCreateError, SymlinkRemoveError)


def test_directory_create_and_close(tmp_path):
    path = tmp_path / "scoped"

    async def scenario():
        directory = await ScopedDirectory.create(path)
        assert path.is_dir()
        await directory.close()
        assert directory.closed
        # Closing twice is a no-op
        await directory.close()

    asyncio.run(scenario())
    assert not path.exists()


def test_directory_create_existing_fails(tmp_path):
    path = tmp_path / "scoped"
    path.mkdir()

    with pytest.raises(DirectoryCreateError) as excinfo:
        asyncio.run(ScopedDirectory.create(path))
    assert excinfo.value.path == path
    assert isinstance(excinfo.value.__cause__, FileExistsError)


def test_directory_close_requires_empty(tmp_path):
    path = tmp_path / "scoped"

    async def scenario():
        directory = await ScopedDirectory.create(path)
        (path / "file.txt").write_text("data")
        with pytest.raises(DirectoryRemoveError):
            await directory.close()
        assert not directory.closed
        await directory.close_all()
        assert directory.closed

    asyncio.run(scenario())
    assert not path.exists()


def test_directory_discard_is_best_effort(tmp_path):
    path = tmp_path / "scoped"

    async def scenario():
        async with await ScopedDirectory.create(path) as directory:
            (path / "nested").mkdir()
            (path / "nested" / "file.txt").write_text("data")
        assert directory.closed

        gone = await ScopedDirectory.create(tmp_path / "gone")
        os.rmdir(gone.path)
        gone.discard()
        assert gone.closed

    asyncio.run(scenario())
    assert not path.exists()


def test_create_unique_gives_distinct_directories(tmp_path):
    async def scenario():
        first = await ScopedDirectory.create_unique(tmp_path, prefix="job_")
        second = await ScopedDirectory.create_unique(tmp_path, prefix="job_")
        return first, second

    first, second = asyncio.run(scenario())
    assert first.path != second.path
    assert first.path.parent == tmp_path
    assert first.path.name.startswith("job_")
    first.discard()
    second.discard()
    assert os.listdir(tmp_path) == []


def test_create_unique_in_missing_parent_fails(tmp_path):
    with pytest.raises(DirectoryCreateError):
        asyncio.run(ScopedDirectory.create_unique(tmp_path / "missing"))


def test_symlink_create_and_close(tmp_path):
    target = tmp_path / "target"
    target.mkdir()
    (target / "file.txt").write_text("data")
    link_path = tmp_path / "link"

    async def scenario():
        link = await ScopedSymlink.create(target, link_path)
        assert link_path.is_symlink()
        assert (link_path / "file.txt").read_text() == "data"
        assert link.src_path == target
        assert link.dst_path == link_path
        await link.close()

    asyncio.run(scenario())
    assert not os.path.lexists(link_path)
    # The target is never touched
    assert (target / "file.txt").exists()


def test_symlink_create_over_existing_fails(tmp_path):
    target = tmp_path / "target"
    target.touch()
    existing = tmp_path / "existing"
    existing.touch()

    with pytest.raises(SymlinkCreateError) as excinfo:
        asyncio.run(ScopedSymlink.create(target, existing))
    assert excinfo.value.src_path == target
    assert excinfo.value.dst_path == existing


def test_symlink_close_after_external_removal(tmp_path):
    target = tmp_path / "target"
    target.touch()

    async def scenario():
        link = await ScopedSymlink.create(target, tmp_path / "link")
        os.unlink(link.dst_path)
        with pytest.raises(SymlinkRemoveError):
            await link.close()
        link.discard()
        assert link.closed

    asyncio.run(scenario())
