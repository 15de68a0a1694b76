"""Artifact storage over a local directory.

Implements the two operations the pipeline needs from object storage:
``fetch(artifact_ref)`` and ``store(key, data) -> locator``. Keys are
relative paths below the storage root; anything that would escape the root
is rejected.
"""

import logging
from pathlib import Path
from typing import Union

from trustlens.utils.exceptions import StorageError

logger = logging.getLogger(__name__)


class LocalArtifactStorage:
    """Directory-backed object storage."""

    SCHEME = "file://"

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, key: str) -> Path:
        if key.startswith(self.SCHEME):
            key = key[len(self.SCHEME):]
        path = Path(key)
        if not path.is_absolute():
            path = self.root / path
        path = path.resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(key, "key resolves outside the storage root")
        return path

    def fetch(self, artifact_ref: str) -> bytes:
        """Read the bytes stored under ``artifact_ref``."""
        path = self._resolve(artifact_ref)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(artifact_ref, "object not found", e) from e
        except OSError as e:
            raise StorageError(artifact_ref, "cannot read object", e) from e

    def store(self, key: str, data: bytes) -> str:
        """Write ``data`` under ``key`` and return its locator."""
        path = self._resolve(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(key, "cannot write object", e) from e

        logger.debug(f"Stored {len(data)} bytes at {path}")
        return f"{self.SCHEME}{path.relative_to(self.root).as_posix()}"

    def exists(self, artifact_ref: str) -> bool:
        try:
            return self._resolve(artifact_ref).is_file()
        except StorageError:
            return False
