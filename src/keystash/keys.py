"""Key generation and validation.

A key is both the metadata primary key and the file name of the content, so
it has to be a single path segment that cannot collide with the store's own
files (which all start with the reserved prefix).
"""

import secrets
import string

from keystash.config import DEFAULT_KEY_LENGTH, RESERVED_PREFIX

KEY_ALPHABET = string.ascii_lowercase + string.digits

_FORBIDDEN_CHARS = ("/", "\\", "\x00")


def is_valid_key(key: str, reserved_prefix: str = RESERVED_PREFIX) -> bool:
    if not key or key.startswith(reserved_prefix):
        return False
    return not any(c in key for c in _FORBIDDEN_CHARS)


def random_key(length: int = DEFAULT_KEY_LENGTH) -> str:
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(length))


def generate(
    provided_key: str | None,
    length: int = DEFAULT_KEY_LENGTH,
    reserved_prefix: str = RESERVED_PREFIX,
) -> str:
    """Return provided_key if it is usable, otherwise a fresh random key.

    Random keys are not checked against existing ones.
    """
    if provided_key and is_valid_key(provided_key, reserved_prefix):
        return provided_key
    return random_key(length)


class KeyGenerator:
    def __init__(self, length: int = DEFAULT_KEY_LENGTH, reserved_prefix: str = RESERVED_PREFIX) -> None:
        if length < 1:
            raise ValueError("key length must be positive")
        self.length = length
        self.reserved_prefix = reserved_prefix

    def generate(self, provided_key: str | None = None) -> str:
        return generate(provided_key, self.length, self.reserved_prefix)

    def is_valid_key(self, key: str) -> bool:
        return is_valid_key(key, self.reserved_prefix)
