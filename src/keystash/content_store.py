"""Filesystem content store for keystash.

Each key is one regular file directly under the storage root. Names that
start with the reserved prefix belong to the store itself (marker, database,
in-flight temp files) and are never addressable as keys.
"""

import contextlib
import logging
import os
import uuid
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import BinaryIO

from keystash.config import RESERVED_PREFIX
from keystash.errors import InvalidKeyError, NotFoundError, StorageIOError
from keystash.keys import is_valid_key

log = logging.getLogger("keystash.content")

CHUNK_SIZE = 64 * 1024


def iter_chunks(source: BinaryIO | Iterable[bytes], chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield byte chunks from a readable file object or an iterable of bytes."""
    read = getattr(source, "read", None)
    if read is None:
        for chunk in source:
            if chunk:
                yield bytes(chunk)
        return
    while True:
        chunk = read(chunk_size)
        if not chunk:
            break
        yield chunk


class ContentStore:
    """Manages the per-key content files on disk."""

    def __init__(self, root: Path, reserved_prefix: str = RESERVED_PREFIX) -> None:
        self.root = root
        self.reserved_prefix = reserved_prefix
        self.root.mkdir(parents=True, exist_ok=True)

    def content_path(self, key: str) -> Path:
        if not is_valid_key(key, self.reserved_prefix):
            raise InvalidKeyError(f"invalid key: {key!r}")
        return self.root / key

    def exists(self, key: str) -> bool:
        return self.content_path(key).is_file()

    def write(self, key: str, source: BinaryIO | Iterable[bytes]) -> int:
        """Stream source into the file for key. Returns the number of bytes written.

        Bytes go to a temp file that replaces the target only once fully
        written and fsynced, so a failed write never clobbers existing content.
        """
        path = self.content_path(key)
        tmp_path = self.root / f"{self.reserved_prefix}tmp-{uuid.uuid4().hex}"
        written = 0
        try:
            with open(tmp_path, "wb") as f:
                for chunk in iter_chunks(source):
                    f.write(chunk)
                    written += len(chunk)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except BaseException as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink(missing_ok=True)
            if isinstance(e, OSError):
                raise StorageIOError(f"write failed for {key}: {e}") from e
            raise
        log.debug("write: key=%s, size=%d", key, written)
        return written

    def read(self, key: str) -> BinaryIO:
        """Open the content for key. The caller owns the returned handle."""
        path = self.content_path(key)
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise NotFoundError(f"no content for {key}") from e
        except OSError as e:
            raise StorageIOError(f"read failed for {key}: {e}") from e

    def remove(self, key: str) -> None:
        path = self.content_path(key)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise NotFoundError(f"no content for {key}") from e
        except OSError as e:
            raise StorageIOError(f"remove failed for {key}: {e}") from e
        log.debug("remove: key=%s", key)

    def size(self, key: str) -> int:
        path = self.content_path(key)
        try:
            return path.stat().st_size
        except FileNotFoundError as e:
            raise NotFoundError(f"no content for {key}") from e
        except OSError as e:
            raise StorageIOError(f"stat failed for {key}: {e}") from e

    def keys(self) -> list[str]:
        """Every addressable content file under the root."""
        return sorted(
            p.name
            for p in self.root.iterdir()
            if p.is_file() and is_valid_key(p.name, self.reserved_prefix)
        )
