"""Unified storage abstraction using fsspec for local and GCS access."""

from pathlib import Path

import fsspec


class StorageBackend:
    """Filesystem abstraction with an identical API for local and GCS paths.

    Used to read evaluation images and ground-truth files and to write run
    exports. Filesystem instances are lazily created and cached per
    protocol (``file`` for local, ``gcs`` for Cloud Storage).
    """

    def __init__(self) -> None:
        self._filesystems: dict[str, fsspec.AbstractFileSystem] = {}

    def _get_fs(self, path: str) -> tuple[fsspec.AbstractFileSystem, str]:
        """Resolve the fsspec filesystem and normalised path for *path*."""
        if path.startswith("gs://"):
            protocol = "gcs"
            norm_path = path
        else:
            protocol = "file"
            norm_path = str(Path(path).resolve())

        if protocol not in self._filesystems:
            self._filesystems[protocol] = fsspec.filesystem(protocol)

        return self._filesystems[protocol], norm_path

    def exists(self, path: str) -> bool:
        """Return ``True`` if *path* exists on the resolved filesystem."""
        fs, norm_path = self._get_fs(path)
        return fs.exists(norm_path)

    def read_bytes(self, path: str) -> bytes:
        """Read the entire contents of *path* as bytes."""
        fs, norm_path = self._get_fs(path)
        return fs.cat(norm_path)

    def write_bytes(self, path: str, data: bytes) -> str:
        """Write *data* to *path*, creating parent directories. Returns the path."""
        fs, norm_path = self._get_fs(path)
        parent = norm_path.rsplit("/", 1)[0]
        if parent:
            fs.makedirs(parent, exist_ok=True)
        with fs.open(norm_path, "wb") as f:
            f.write(data)
        return norm_path

    def list_images(self, directory: str) -> list[str]:
        """Return image files directly under *directory*, sorted by name."""
        fs, norm_path = self._get_fs(directory)
        entries = fs.ls(norm_path, detail=False)
        images = sorted(
            e for e in entries if Path(e).suffix.lower() in IMAGE_EXTENSIONS
        )
        if directory.startswith("gs://"):
            return [e if e.startswith("gs://") else f"gs://{e}" for e in images]
        return images


IMAGE_EXTENSIONS: frozenset[str] = frozenset(
    {".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff"}
)
