"""
Local filesystem storage for job output artifacts.

Keys are relative POSIX paths under the storage root, built per job as
``{prefix}/{yyyy-mm}/{owner}/{job_id}/{filename}``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

from werkzeug.utils import secure_filename

logger = logging.getLogger(__name__)


class ArtifactStorageError(RuntimeError):
    """Raised when an artifact key escapes the storage root."""


def build_artifact_key(
    prefix: str | None,
    job_id: int,
    filename: str,
    *,
    owner: str | None = None,
    now: datetime | None = None,
) -> str:
    now = now or datetime.now(timezone.utc)
    safe_name = secure_filename(filename) or f"job-{job_id}"
    safe_owner = secure_filename(str(owner)) if owner else "system"
    parts = [prefix or "artifacts", now.strftime("%Y-%m"), safe_owner or "system", str(job_id), safe_name]
    return "/".join(parts)


class LocalArtifactStorage:
    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        root = self.root.resolve()
        if candidate != root and root not in candidate.parents:
            raise ArtifactStorageError(f"Artifact key '{key}' resolves outside the storage root.")
        return candidate

    def save(self, key: str, content: bytes) -> int:
        """Write ``content`` under ``key`` and return its size in bytes."""
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return len(content)

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def read(self, key: str) -> bytes:
        return self.path_for(key).read_bytes()

    def delete(self, key: str) -> bool:
        """Remove the artifact; a missing file counts as already deleted."""
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Deleted artifact", extra={"sync_artifact_key": key})
        return True
