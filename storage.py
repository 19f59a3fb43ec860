import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional


class BlobStore(ABC):
    @abstractmethod
    def read(self) -> Optional[bytes]:
        """Return the stored blob, or None if nothing has been written yet."""
        pass

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Replace the stored blob. Raises OSError on failure."""
        pass


class InMemoryBlobStore(BlobStore):
    def __init__(self, data: Optional[bytes] = None):
        self.data = data

    def read(self) -> Optional[bytes]:
        return self.data

    def write(self, data: bytes) -> None:
        self.data = bytes(data)


class FileBlobStore(BlobStore):
    """Blob kept in a single file, replaced atomically on every write."""

    def __init__(self, path: str):
        self.path = Path(path)

    def read(self) -> Optional[bytes]:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return None

    def write(self, data: bytes) -> None:
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
