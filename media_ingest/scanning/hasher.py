import hashlib
from pathlib import Path
from typing import BinaryIO

from .. import config
from ..exceptions import FileHashError
from ..models import ContentHash


class ContentHasher:
    """
    Computes the content identity of a file.

    Strategy:
      SHA3-256 over the full byte stream, fed in fixed-size chunks so memory
      stays bounded regardless of file size. Identical bytes always produce
      the same hash; any single-byte change produces a different one.
    """

    def __init__(self, chunk_size: int = config.HASH_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def hash_file(self, path: Path) -> ContentHash:
        try:
            with open(path, 'rb') as f:
                return self.hash_stream(f)
        except OSError as e:
            raise FileHashError(f"Failed to hash {path}: {e}") from e

    def hash_stream(self, stream: BinaryIO) -> ContentHash:
        h = hashlib.sha3_256()
        try:
            while chunk := stream.read(self.chunk_size):
                h.update(chunk)
        except OSError as e:
            raise FileHashError(f"Read failed while hashing: {e}") from e
        return ContentHash(h.digest())
