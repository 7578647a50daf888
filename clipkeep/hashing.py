"""
Content fingerprints for deduplication.
"""

import hashlib


def normalize(text: str) -> str:
    """Normalization applied before hashing: strip surrounding whitespace."""
    return text.strip()


def fingerprint(text: str) -> str:
    """
    SHA-256 hex digest of the normalized text.

    Pure and deterministic: equal text after trimming always yields
    the same 64-character digest.
    """
    data = normalize(text).encode("utf-8", errors="surrogatepass")
    return hashlib.sha256(data).hexdigest()
