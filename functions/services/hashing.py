"""Content hashing for certified artifacts."""

import hashlib


def compute_sha256(content: bytes) -> str:
    """Return the lowercase hex SHA-256 digest of the exact bytes given."""
    return hashlib.sha256(content).hexdigest()
