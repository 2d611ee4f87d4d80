"""Content fingerprints for change detection"""

import hashlib


def fingerprint(content: str) -> str:
    """SHA256 hex digest of the UTF-8 encoded content"""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def has_changed(content: str, stored_hash: str | None) -> bool:
    """True if content differs from the snapshot that produced stored_hash"""
    if stored_hash is None:
        return True
    return fingerprint(content) != stored_hash
