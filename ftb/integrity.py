"""
Integrity helpers — BLAKE3 digests of streamed transfers.

The data plane carries no checksum; both ends log the digest of the bytes
they streamed so a truncated or corrupted copy can be spotted by eye.

    digest = StreamDigest()
    digest.update(block)
    digest.hexdigest()   → 64 hex chars
"""

from __future__ import annotations

from pathlib import Path

import blake3 as _b3


class StreamDigest:
    """Incremental BLAKE3 digest plus a byte count."""

    def __init__(self) -> None:
        self._hasher = _b3.blake3()
        self.nbytes = 0

    def update(self, data: bytes) -> None:
        self._hasher.update(data)
        self.nbytes += len(data)

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


def hash_file(path: Path | str, block_size: int = 64 * 1024) -> str:
    """Return the BLAKE3 hex digest of the file at *path*."""
    digest = StreamDigest()
    with open(path, "rb") as fh:
        while block := fh.read(block_size):
            digest.update(block)
    return digest.hexdigest()
