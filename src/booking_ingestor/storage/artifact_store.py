"""Artifact staging: raw bytes saved to disk, addressed by discriminator."""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Store artifact bytes under ``<root>/<hh>/<sha256(discriminator)><ext>``.

    The path depends only on the discriminator, so staging the same
    artifact twice overwrites the same file instead of leaking a copy.
    """

    def __init__(self, root: Path) -> None:
        self._root = root
        self._root.mkdir(parents=True, exist_ok=True)

    def path_for(self, discriminator: str, name: str = "") -> Path:
        digest = hashlib.sha256(discriminator.encode("utf-8")).hexdigest()
        suffix = PurePosixPath(name.lower()).suffix if name else ""
        return self._root / digest[:2] / f"{digest}{suffix}"

    def stage(self, discriminator: str, data: bytes, name: str = "") -> str:
        """Write the bytes atomically and return the location as a string."""
        path = self.path_for(discriminator, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
        logger.debug("Staged %s (%d bytes) at %s", discriminator, len(data), path)
        return str(path)

    def read(self, location: str) -> bytes:
        return Path(location).read_bytes()
