"""
Artifact storage for generated report documents.

Objects live on the local filesystem under ARTIFACT_STORAGE_ROOT, keyed by
a relative storage path:

    monthly-reports/<org>/<project>/<subject>/<YYYY-MM>/relatorio_oficial_v<suffix>.pdf[.enc]

The suffix comes from the generation job id, so every job writes its own
object and an earlier document is never overwritten.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from flask import current_app

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "monthly-reports"
ARTIFACT_BASENAME = "relatorio_oficial"


class StorageError(RuntimeError):
    """Raised when artifact storage read/write fails."""


def build_storage_path(report, job_id: str, *, encrypted: bool) -> str:
    suffix = job_id.replace("-", "")[:12]
    extension = ".pdf.enc" if encrypted else ".pdf"
    return "/".join([
        STORAGE_PREFIX,
        str(report.organization_id or "no-org"),
        str(report.project_id),
        str(report.beneficiary_user_id),
        report.period_key,
        f"{ARTIFACT_BASENAME}_v{suffix}{extension}",
    ])


class LocalArtifactStore:
    """Filesystem-backed object store rooted at one directory."""

    def __init__(self, root: str | os.PathLike) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, storage_path: str) -> Path:
        target = (self.root / storage_path).resolve()
        if self.root != target and self.root not in target.parents:
            raise StorageError(f"Storage path escapes the artifact root: {storage_path!r}")
        return target

    def write(self, storage_path: str, content: bytes) -> None:
        """Write *content* to a new object; refuses to overwrite."""
        target = self._resolve(storage_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as fh:
                fh.write(content)
        except FileExistsError as exc:
            raise StorageError(f"Artifact already exists: {storage_path}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to write artifact {storage_path}: {exc}") from exc
        logger.debug("Stored artifact %s (%d bytes)", storage_path, len(content))

    def read(self, storage_path: str) -> bytes:
        target = self._resolve(storage_path)
        try:
            return target.read_bytes()
        except FileNotFoundError as exc:
            raise StorageError(f"Artifact not found: {storage_path}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read artifact {storage_path}: {exc}") from exc

    def delete(self, storage_path: str) -> bool:
        """Remove an object; returns False when it was already gone."""
        target = self._resolve(storage_path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        logger.info("Deleted artifact %s", storage_path)
        return True

    def exists(self, storage_path: str) -> bool:
        return self._resolve(storage_path).is_file()


def get_artifact_store() -> LocalArtifactStore:
    """The store configured for the current app."""
    store = current_app.extensions.get("artifact_store")
    if store is None:
        store = LocalArtifactStore(current_app.config["ARTIFACT_STORAGE_ROOT"])
        current_app.extensions["artifact_store"] = store
    return store
