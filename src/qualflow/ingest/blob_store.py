"""Local blob store for documents whose content is uploaded by path."""

from __future__ import annotations

from pathlib import Path


class LocalBlobStore:
    """Blob directory on the local filesystem.

    Paths are resolved relative to *root* and may not escape it.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def download(self, path: str) -> bytes:
        """Return the bytes stored at *path*.

        Raises:
            FileNotFoundError: If no blob exists at *path*.
            ValueError: If *path* resolves outside the blob root.
        """
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"Blob path escapes storage root: {path}")
        return target.read_bytes()

    def upload(self, path: str, data: bytes) -> str:
        """Store *data* at *path* and return the path."""
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise ValueError(f"Blob path escapes storage root: {path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path
