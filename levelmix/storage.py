"""Blob storage for uploaded and processed audio."""

import logging
import os
import shutil
from pathlib import Path
from typing import BinaryIO, Optional, Protocol, runtime_checkable

from . import settings

logger = logging.getLogger(__name__)


def upload_key(file_id: str, fmt: str) -> str:
    return f"uploads/{file_id}.{fmt}"


def processed_key(file_id: str, fmt: str) -> str:
    return f"processed/{file_id}.{fmt}"


class AudioStore(Protocol):
    def download(self, key: str) -> BinaryIO:
        """Open ``key`` for reading; the caller closes the stream."""
        ...

    def upload(self, key: str, stream: BinaryIO, format: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


@runtime_checkable
class BulkDownloader(Protocol):
    """Optional capability: fetch a blob straight into a local file."""

    def download_to_file(self, key: str, dest: str) -> None:
        ...


class LocalAudioStore:
    """Stores blobs as plain files under ``root``."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or os.path.join(settings.DATA_DIR, "blobs"))
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        p = (self.root / key).resolve()
        if self.root.resolve() not in p.parents:
            raise ValueError(f"invalid storage key: {key!r}")
        return p

    def download(self, key: str) -> BinaryIO:
        return open(self.path_for(key), "rb")

    def download_to_file(self, key: str, dest: str) -> None:
        shutil.copyfile(self.path_for(key), dest)

    def upload(self, key: str, stream: BinaryIO, format: str) -> None:
        p = self.path_for(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        part = p.with_name(p.name + ".part")
        with open(part, "wb") as f:
            shutil.copyfileobj(stream, f)
        os.replace(part, p)
        logger.debug("stored %s (%s, %d bytes)", key, format, p.stat().st_size)

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink()
        except FileNotFoundError:
            pass

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()


_storage: Optional[LocalAudioStore] = None


def get_storage() -> LocalAudioStore:
    global _storage
    if _storage is None:
        _storage = LocalAudioStore()
    return _storage
