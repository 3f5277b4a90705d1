"""Error kinds raised by keystash.

The transport layers map each kind to its own status code or exit code.
"""


class KeystashError(Exception):
    """Base class for every keystash error."""

    code = "KEYSTASH_ERROR"


class InvalidKeyError(KeystashError):
    """Key is empty, starts with the reserved prefix or is not one path segment."""

    code = "INVALID_KEY"


class InvalidQueryError(KeystashError):
    """Caller passed a malformed or negative offset/limit."""

    code = "INVALID_QUERY"


class AlreadyExistsError(KeystashError):
    """Put on an existing key while overwrite is forbidden."""

    code = "ALREADY_EXISTS"


class NotFoundError(KeystashError):
    code = "NOT_FOUND"


class StorageIOError(KeystashError):
    """Filesystem failure in the content store."""

    code = "STORAGE_IO_ERROR"


class MetadataStoreError(KeystashError):
    """Metadata backend failure."""

    code = "METADATA_STORE_ERROR"


class DuplicateKeyError(MetadataStoreError):
    code = "DUPLICATE_KEY"


class InconsistencyError(KeystashError):
    """Metadata and content disagree about a key."""

    code = "INCONSISTENCY"
