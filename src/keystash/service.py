"""FileEntryService: keeps the content store and the metadata index in step.

There is no transaction spanning the two stores, so every operation runs
them in a fixed order with a fixed policy for partial failure:

* put writes content first, then metadata. A metadata failure leaves the
  content file behind (logged, not rolled back); a content failure leaves
  no metadata.
* get trusts metadata for existence; a record whose file is missing is an
  InconsistencyError, never a plain NotFoundError.
* delete removes metadata first, then content. A content failure is raised
  but the metadata deletion stands.
"""

import logging
import os
from collections.abc import Callable, Iterable, Iterator
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import BinaryIO

from keystash.accounting import AccessAccountant
from keystash.config import DEFAULT_LIST_LIMIT, StoreConfig
from keystash.content_store import ContentStore, iter_chunks
from keystash.errors import (
    AlreadyExistsError,
    DuplicateKeyError,
    InconsistencyError,
    InvalidQueryError,
    MetadataStoreError,
    NotFoundError,
    StorageIOError,
)
from keystash.keys import KeyGenerator
from keystash.metadata import FileEntry, MetadataDB

log = logging.getLogger("keystash.service")

MAX_KEY_ATTEMPTS = 32


class Download:
    """An open content stream for one entry.

    Access is recorded once the stream has been read to the end; an
    abandoned or failed stream records nothing. Iterating closes the handle.
    """

    def __init__(self, entry: FileEntry, fp: BinaryIO, on_complete: Callable[[str], None]) -> None:
        self.entry = entry
        self._fp = fp
        self._on_complete = on_complete
        self._completed = False
        # Size of the bytes actually about to be served, which can differ
        # from entry.size if the file was changed out of band.
        self.size = os.fstat(fp.fileno()).st_size

    @property
    def key(self) -> str:
        return self.entry.key

    def __iter__(self) -> Iterator[bytes]:
        try:
            yield from iter_chunks(self._fp)
        finally:
            self.close()
        self._complete()

    def read(self) -> bytes:
        return b"".join(self)

    def close(self) -> None:
        self._fp.close()

    def __enter__(self) -> "Download":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _complete(self) -> None:
        if self._completed:
            return
        self._completed = True
        self._on_complete(self.entry.key)


@dataclass
class ConsistencyReport:
    missing_content: list[str] = field(default_factory=list)
    orphaned_content: list[str] = field(default_factory=list)
    # (key, recorded size, actual size)
    size_mismatch: list[tuple[str, int, int]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.missing_content or self.orphaned_content or self.size_mismatch)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["size_mismatch"] = [
            {"key": k, "recorded": recorded, "actual": actual}
            for k, recorded, actual in self.size_mismatch
        ]
        data["ok"] = self.ok
        return data


def parse_paging(
    offset: str | None, n: str | None, default_limit: int = DEFAULT_LIST_LIMIT
) -> tuple[int, int]:
    """Turn raw offset/n query values into non-negative ints."""
    values = []
    for name, raw, default in (("offset", offset, 0), ("n", n, default_limit)):
        if raw is None or raw == "":
            values.append(default)
            continue
        try:
            value = int(raw)
        except ValueError:
            raise InvalidQueryError(f"{name} must be an integer, got {raw!r}") from None
        if value < 0:
            raise InvalidQueryError(f"{name} must be non-negative, got {value}")
        values.append(value)
    return values[0], values[1]


class FileEntryService:
    def __init__(
        self,
        metadata: MetadataDB,
        content: ContentStore,
        accountant: AccessAccountant,
        keygen: KeyGenerator | None = None,
        *,
        force_overwrite: bool = True,
        unique_keys: bool = False,
        default_limit: int = DEFAULT_LIST_LIMIT,
    ) -> None:
        self.metadata = metadata
        self.content = content
        self.accountant = accountant
        self.keygen = keygen or KeyGenerator()
        self.force_overwrite = force_overwrite
        self.unique_keys = unique_keys
        self.default_limit = default_limit

    def close(self) -> None:
        self.accountant.close()
        self.metadata.close()

    # ──────────────────────────── Put ────────────────────────────────────────

    def put(self, provided_key: str | None, source: BinaryIO | Iterable[bytes]) -> str:
        key = self._resolve_key(provided_key)

        if not self.force_overwrite and self.metadata.exists(key):
            raise AlreadyExistsError(f"file already exists: {key}")

        size = self.content.write(key, source)

        entry = FileEntry.new(key, size)
        try:
            try:
                self.metadata.create(entry)
            except DuplicateKeyError:
                if not self.force_overwrite:
                    raise
                log.debug("put: key=%s exists, overwriting metadata", key)
                self.metadata.upsert(entry)
        except MetadataStoreError:
            log.error("put: content for key=%s written but metadata was not committed", key)
            raise

        log.info("put: key=%s, size=%d", key, size)
        return key

    def _resolve_key(self, provided_key: str | None) -> str:
        key = self.keygen.generate(provided_key)
        if not self.unique_keys or key == provided_key:
            return key
        for _ in range(MAX_KEY_ATTEMPTS):
            if not self.metadata.exists(key):
                return key
            key = self.keygen.generate()
        raise AlreadyExistsError(f"no free key after {MAX_KEY_ATTEMPTS} attempts")

    # ──────────────────────────── Get ────────────────────────────────────────

    def get(self, key: str) -> Download:
        entry = self.metadata.get(key)
        try:
            fp = self.content.read(key)
        except NotFoundError:
            if not self.metadata.exists(key):
                # Deleted between the two lookups.
                raise NotFoundError(f"no such file: {key}") from None
            log.error("get: metadata for key=%s has no content file", key)
            raise InconsistencyError(f"content missing for {key}") from None
        return Download(entry, fp, self.accountant.record_access)

    # ──────────────────────────── Delete ─────────────────────────────────────

    def delete(self, key: str) -> None:
        if not self.metadata.exists(key):
            raise NotFoundError(f"no such file: {key}")

        self.metadata.delete(key)
        try:
            self.content.remove(key)
        except NotFoundError:
            log.error("delete: key=%s had metadata but no content file", key)
            raise InconsistencyError(f"content missing for {key}") from None
        except StorageIOError:
            log.error("delete: metadata for key=%s removed, content file left behind", key)
            raise
        log.info("delete: key=%s", key)

    # ──────────────────────────── List ───────────────────────────────────────

    def list_entries(
        self, offset: int = 0, limit: int | None = None, query: str | None = None
    ) -> list[FileEntry]:
        if limit is None:
            limit = self.default_limit
        return self.metadata.list_entries(offset, limit, query)

    # ──────────────────────────── Index maintenance ──────────────────────────

    def rebuild_index(self, key: str, file_path: Path | str | None = None) -> FileEntry:
        """Derive the metadata for key from content on disk.

        With a file_path outside the store, the file is copied in under key
        first. Any existing record for key is replaced.
        """
        target = self.content.content_path(key)
        if file_path is not None and Path(file_path).resolve() != target.resolve():
            try:
                fp = open(file_path, "rb")
            except FileNotFoundError:
                raise InconsistencyError(f"no file at {file_path} to index as {key}") from None
            except OSError as e:
                raise StorageIOError(f"cannot read {file_path}: {e}") from e
            with fp:
                self.content.write(key, fp)

        try:
            size = self.content.size(key)
        except NotFoundError:
            raise InconsistencyError(f"no content to index for {key}") from None

        entry = FileEntry.new(key, size)
        self.metadata.upsert(entry, action="REBUILD")
        log.info("rebuild: key=%s, size=%d", key, size)
        return entry

    def rebuild_all(self) -> list[str]:
        """Index every content file that has no metadata record."""
        rebuilt = []
        for key in self.content.keys():
            if self.metadata.exists(key):
                continue
            self.rebuild_index(key)
            rebuilt.append(key)
        return rebuilt

    def check(self) -> ConsistencyReport:
        """Report divergence between the index and the files. Repairs nothing."""
        indexed = set(self.metadata.keys())
        stored = set(self.content.keys())
        report = ConsistencyReport(
            missing_content=sorted(indexed - stored),
            orphaned_content=sorted(stored - indexed),
        )
        for key in sorted(indexed & stored):
            try:
                recorded = self.metadata.get(key).size
                actual = self.content.size(key)
            except NotFoundError:
                continue
            if recorded != actual:
                report.size_mismatch.append((key, recorded, actual))
        return report


def open_service(config: StoreConfig) -> FileEntryService:
    """Open the stores under config.root and wire up a service."""
    content = ContentStore(config.root, config.reserved_prefix)
    metadata = MetadataDB(config.db_path)
    metadata.connect()
    metadata.initialize()
    return FileEntryService(
        metadata,
        content,
        AccessAccountant(metadata),
        KeyGenerator(config.key_length, config.reserved_prefix),
        force_overwrite=config.force_overwrite,
        unique_keys=config.unique_keys,
        default_limit=config.default_limit,
    )
