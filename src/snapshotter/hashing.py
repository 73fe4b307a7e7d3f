"""Content hashing for evidence artifacts."""

import hashlib

HASH_PREFIX = "0x"


def sha256_hex(data: bytes | str) -> str:
    """Return the SHA-256 digest of data as ``0x``-prefixed lowercase hex.

    Strings are encoded as UTF-8 before hashing.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()
