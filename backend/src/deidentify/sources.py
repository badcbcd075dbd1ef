"""Record sources: directory trees, ZIP archives and single files."""

from __future__ import annotations

import logging
import os
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Tuple

from .acceptance import HEADER_LENGTH, is_dicom_candidate


logger = logging.getLogger(__name__)


class RecordSource:
    """Lists entries and reads their bytes on demand."""

    def scan(self) -> List[str]:  # pragma: no cover - base method
        raise NotImplementedError

    def read(self, rel_path: str) -> bytes:  # pragma: no cover - base method
        raise NotImplementedError

    def read_header(self, rel_path: str) -> bytes:  # pragma: no cover - base method
        raise NotImplementedError

    @property
    def label(self) -> str:  # pragma: no cover - base method
        raise NotImplementedError


@dataclass(frozen=True)
class FileDescriptor:
    """A record's relative path plus the source able to load it."""

    rel_path: str
    source: RecordSource

    def read(self) -> bytes:
        return self.source.read(self.rel_path)


# ---------------------------------------------------------------------------
# Directory trees
# ---------------------------------------------------------------------------


class DirectorySource(RecordSource):
    def __init__(self, root: Path, max_workers: int = 16) -> None:
        self._root = root.resolve()
        self._max_workers = max_workers

    @property
    def label(self) -> str:
        return str(self._root)

    def scan(self) -> List[str]:
        def walk(directory: Path) -> Tuple[List[Path], List[Path]]:
            files: List[Path] = []
            dirs: List[Path] = []
            with os.scandir(directory) as it:
                for entry in it:
                    try:
                        if entry.is_file():
                            files.append(Path(entry.path))
                        elif entry.is_dir():
                            dirs.append(Path(entry.path))
                    except FileNotFoundError:
                        continue
            return files, dirs

        found: List[str] = []
        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = [executor.submit(walk, self._root)]
            while futures:
                future = futures.pop()
                files, dirs = future.result()
                found.extend(path.relative_to(self._root).as_posix() for path in files)
                for dir_path in dirs:
                    futures.append(executor.submit(walk, dir_path))
        return found

    def _path(self, rel_path: str) -> Path:
        return self._root.joinpath(*PurePosixPath(rel_path).parts)

    def read(self, rel_path: str) -> bytes:
        return self._path(rel_path).read_bytes()

    def read_header(self, rel_path: str) -> bytes:
        with self._path(rel_path).open("rb") as fh:
            return fh.read(HEADER_LENGTH)


# ---------------------------------------------------------------------------
# ZIP archives
# ---------------------------------------------------------------------------


class ZipSource(RecordSource):
    """Reads archive members lazily; each read opens its own handle."""

    def __init__(self, archive: Path) -> None:
        self._archive = archive.resolve()

    @property
    def label(self) -> str:
        return str(self._archive)

    def scan(self) -> List[str]:
        with zipfile.ZipFile(self._archive) as zf:
            return [info.filename for info in zf.infolist() if not info.is_dir()]

    def read(self, rel_path: str) -> bytes:
        with zipfile.ZipFile(self._archive) as zf:
            return zf.read(rel_path)

    def read_header(self, rel_path: str) -> bytes:
        with zipfile.ZipFile(self._archive) as zf, zf.open(rel_path) as fh:
            return fh.read(HEADER_LENGTH)


# ---------------------------------------------------------------------------
# Single files
# ---------------------------------------------------------------------------


class SingleFileSource(RecordSource):
    def __init__(self, path: Path) -> None:
        self._path = path.resolve()

    @property
    def label(self) -> str:
        return str(self._path)

    def scan(self) -> List[str]:
        return [self._path.name]

    def read(self, rel_path: str) -> bytes:
        return self._path.read_bytes()

    def read_header(self, rel_path: str) -> bytes:
        with self._path.open("rb") as fh:
            return fh.read(HEADER_LENGTH)


def open_source(path: Path, max_workers: int = 16) -> RecordSource:
    if path.is_dir():
        return DirectorySource(path, max_workers=max_workers)
    if path.suffix.lower() == ".zip" or zipfile.is_zipfile(path):
        return ZipSource(path)
    return SingleFileSource(path)


def enumerate_descriptors(source: RecordSource, max_workers: int = 16) -> List[FileDescriptor]:
    """List entries whose 132-byte header carries the DICM marker.

    Only headers are read here; payload bytes are loaded per batch.
    """

    entries = sorted(source.scan())

    def probe(rel_path: str) -> bool:
        try:
            return is_dicom_candidate(source.read_header(rel_path))
        except (OSError, zipfile.BadZipFile) as exc:
            logger.warning("Could not read header of %s: %s", rel_path, exc)
            return False

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        flags = list(executor.map(probe, entries))

    descriptors = [FileDescriptor(rel_path, source) for rel_path, keep in zip(entries, flags) if keep]
    ignored = len(entries) - len(descriptors)
    if ignored:
        logger.info(f"Ignored {ignored} entries without DICM marker in {source.label}")
    logger.info(f"Found {len(descriptors)} DICOM candidates in {source.label}")
    return descriptors


__all__ = [
    "DirectorySource",
    "FileDescriptor",
    "RecordSource",
    "SingleFileSource",
    "ZipSource",
    "enumerate_descriptors",
    "open_source",
]
