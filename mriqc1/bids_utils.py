"""
BIDS utilities for shadowing a dataset and discovering participants.

A ``ScopedDatasetView`` "shadows" a real BIDS tree using symlinks. It owns
symlinks to participant non-specific files such as dataset_description.json.
A ``ParticipantView`` adds a symlink to one participant's data inside a view
and keeps the view alive until it is closed itself.

See https://bids.neuroimaging.io/
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional

from bids import BIDSLayout

from .temp_utils import PathLike, ScopedDirectory, ScopedSymlink

logger = logging.getLogger(__name__)

# Dataset-level entries shared by every participant.
DATASET_DESCRIPTION = 'dataset_description.json'
SOURCEDATA = 'sourcedata'
PARTICIPANTS_TSV = 'participants.tsv'
DATASET_LEVEL_ENTRIES = (DATASET_DESCRIPTION, SOURCEDATA, PARTICIPANTS_TSV)


class BIDSError(Exception):
    """Error while setting up a shadow BIDS tree."""


class DestinationHasParentError(BIDSError):
    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(f'Destination path "{self.path}" already has a parent.')


class MissingParticipantError(BIDSError):
    def __init__(self, bids_src: Path, participant: str):
        self.bids_src = Path(bids_src)
        self.participant = participant
        super().__init__(f'BIDS tree "{self.bids_src}" is missing participant "{participant}"')


class PathCanonicalizeError(BIDSError):
    def __init__(self, bids_src: Path):
        self.bids_src = Path(bids_src)
        super().__init__(f"Couldn't canonicalize path to BIDS tree: {self.bids_src}")


def participant_dirname(participant: str) -> str:
    """Return the BIDS directory name for ``participant``, e.g. ``sub-01``."""
    return f"sub-{participant}"


def strip_participant_prefix(label: str) -> str:
    """Accept ``sub-01`` or ``01`` and return ``01``."""
    label = str(label).strip()
    return label[len('sub-'):] if label.startswith('sub-') else label


async def _exists(path: Path) -> bool:
    return await asyncio.to_thread(os.path.exists, path)


class ScopedDatasetView:
    """Shadow BIDS tree holding only dataset-level symlinks."""

    def __init__(self, src: Path, directory: ScopedDirectory, links: List[ScopedSymlink],
                 parent: Optional[ScopedDirectory] = None):
        self._src = Path(src)
        self._directory = directory
        self._links = links
        self._parent = parent
        self._refs = 0
        self._close_pending = False

    @classmethod
    async def create(cls, src: PathLike, dst: PathLike,
                     parent: Optional[ScopedDirectory] = None) -> "ScopedDatasetView":
        """
        Create a shadow of the BIDS tree at ``src``.

        Args:
            src: Root of the real BIDS tree
            dst: Root of the shadow tree. If ``parent`` is given, ``dst`` must be
                a bare directory name and is placed inside the parent.
            parent: Optional enclosing temporary directory

        Returns:
            The new view

        Raises:
            DestinationHasParentError: If ``dst`` is not a bare name but a parent was given
            FileSystemError: If the directory or one of its links could not be created
        """
        # Symlink targets must not depend on where the link lives.
        src = Path(os.path.abspath(src))
        dst = Path(dst)

        if parent is not None:
            if dst.is_absolute() or len(dst.parts) != 1 or dst.name in ('', '.', '..'):
                raise DestinationHasParentError(dst)
            dst = parent.path / dst

        directory = await ScopedDirectory.create(dst)
        links: List[ScopedSymlink] = []
        try:
            for entry in DATASET_LEVEL_ENTRIES:
                src_entry = src / entry
                if await _exists(src_entry):
                    links.append(await ScopedSymlink.create(src_entry, dst / entry))
                else:
                    logger.debug(f"Dataset has no {entry}, not linking it")
        except BaseException:
            for link in reversed(links):
                link.discard()
            directory.discard()
            raise

        return cls(src, directory, links, parent)

    @classmethod
    async def create_in(cls, src: PathLike, parent: ScopedDirectory) -> "ScopedDatasetView":
        """Create a shadow tree at ``parent/<basename of src>``."""
        src = Path(src)
        try:
            name = (await asyncio.to_thread(src.resolve, True)).name
        except (OSError, RuntimeError) as exc:
            raise PathCanonicalizeError(src) from exc
        if not name:
            raise PathCanonicalizeError(src)
        return await cls.create(src, name, parent)

    @property
    def path(self) -> Path:
        """Root of the shadow tree."""
        return self._directory.path

    @property
    def src(self) -> Path:
        """Root of the real BIDS tree."""
        return self._src

    @property
    def parent(self) -> Optional[ScopedDirectory]:
        return self._parent

    @property
    def links(self) -> List[ScopedSymlink]:
        return list(self._links)

    @property
    def closed(self) -> bool:
        return self._directory.closed

    @property
    def refcount(self) -> int:
        return self._refs

    def _acquire(self):
        if self.closed or self._close_pending:
            raise BIDSError(f"Shadow BIDS tree {self.path} is already closed")
        self._refs += 1

    async def _release(self):
        self._refs -= 1
        if self._refs == 0 and self._close_pending:
            await self.close()

    def _release_nowait(self):
        self._refs -= 1
        if self._refs == 0 and self._close_pending:
            self.discard()

    async def close(self):
        """
        Remove the shadow tree.

        Removal is deferred until the last ``ParticipantView`` attached to
        this view has been closed.
        """
        if self.closed:
            return
        if self._refs > 0:
            logger.debug(f"Deferring removal of {self.path}, {self._refs} participant(s) attached")
            self._close_pending = True
            return
        for link in reversed(self._links):
            await link.close()
        await self._directory.close_all()

    def discard(self):
        """Best-effort removal, deferred while participants are attached."""
        if self.closed:
            return
        if self._refs > 0:
            self._close_pending = True
            return
        for link in reversed(self._links):
            link.discard()
        self._directory.discard()

    async def __aenter__(self) -> "ScopedDatasetView":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.discard()


class ParticipantView:
    """Symlink to one participant's data inside a ``ScopedDatasetView``."""

    def __init__(self, participant: str, link: ScopedSymlink, parent: ScopedDatasetView):
        self._participant = participant
        self._link = link
        self._parent = parent
        self._released = False

    @classmethod
    async def create(cls, participant: str, parent: ScopedDatasetView) -> "ParticipantView":
        """
        Link ``sub-<participant>`` from the source tree into ``parent``.

        Raises:
            MissingParticipantError: If the participant does not exist in the source tree
            SymlinkCreateError: If the link could not be created
        """
        name = participant_dirname(participant)
        src = parent.src / name
        if not await _exists(src):
            raise MissingParticipantError(parent.src, participant)

        parent._acquire()
        try:
            link = await ScopedSymlink.create(src, parent.path / name)
        except BaseException:
            parent._release_nowait()
            raise
        return cls(participant, link, parent)

    @property
    def participant(self) -> str:
        return self._participant

    @property
    def path(self) -> Path:
        """Participant directory inside the shadow tree."""
        return self._link.dst_path

    @property
    def src(self) -> Path:
        """Participant directory inside the source tree."""
        return self._link.src_path

    @property
    def parent(self) -> ScopedDatasetView:
        return self._parent

    async def close(self):
        if self._released:
            return
        await self._link.close()
        self._released = True
        await self._parent._release()

    def discard(self):
        if self._released:
            return
        self._link.discard()
        self._released = True
        self._parent._release_nowait()

    async def __aenter__(self) -> "ParticipantView":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.discard()


def check_basic_structure(bids_dir: Path) -> bool:
    """Check that ``bids_dir`` looks like a BIDS dataset."""
    bids_dir = Path(bids_dir)
    if not (bids_dir / DATASET_DESCRIPTION).exists():
        logger.warning(f"Missing {DATASET_DESCRIPTION} in {bids_dir}")
        return False

    subject_dirs = [p for p in bids_dir.glob('sub-*') if p.is_dir()]
    if not subject_dirs:
        logger.warning(f"No subject directories found in {bids_dir}")
        return False

    logger.info(f"Found {len(subject_dirs)} subject directories")
    return True


def discover_participants(bids_dir: Path) -> List[str]:
    """
    List the participants of a BIDS dataset.

    Args:
        bids_dir: Root of the BIDS dataset

    Returns:
        Sorted participant labels, without the ``sub-`` prefix
    """
    layout = BIDSLayout(str(bids_dir), validate=False)
    subjects = sorted(layout.get_subjects())
    logger.info(f"Discovered {len(subjects)} participants in {bids_dir}")
    return subjects


def unique_labels(labels) -> List[str]:
    """Normalize participant labels and drop duplicates, keeping order."""
    seen = set()
    result = []
    for label in labels:
        label = strip_participant_prefix(label)
        if not label:
            continue
        if label in seen:
            logger.warning(f"Duplicate participant label '{label}' skipped")
            continue
        seen.add(label)
        result.append(label)
    return result
