"""
Media storage for generated artifacts.

Files live under ``<storage_path>/<job_id>/<filename>``; the database only
stores the path relative to storage_path.
"""
from __future__ import annotations

import asyncio
import io
import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from backends.base import Artifact
from dashboard.errors import NotFoundError, ValidationError
from dashboard.logging_utils import get_logger


def image_size(data: bytes) -> Optional[Tuple[int, int]]:
    """Return (width, height) for image bytes, None if Pillow cannot identify them."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        return None


class MediaStorage:
    def __init__(self, root: str):
        self.root = Path(root).resolve()
        self.log = get_logger()

    def resolve(self, relative: str) -> Path:
        """Absolute path for a stored relative path; refuses paths escaping the root."""
        path = (self.root / relative).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValidationError(f"Invalid storage path: {relative}")
        return path

    async def save(self, job_id: str, artifact: Artifact) -> Dict[str, Any]:
        filename = Path(artifact.filename).name
        if not filename:
            raise ValidationError("Artifact has no filename")
        relative = f"{job_id}/{filename}"
        target = self.resolve(relative)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(artifact.data)

        await asyncio.to_thread(_write)
        size = image_size(artifact.data)
        self.log.info("artifact_saved", job_id=job_id, path=relative, bytes=len(artifact.data))
        return {
            "filename": filename,
            "path": relative,
            "content_type": artifact.content_type,
            "bytes": len(artifact.data),
            "width": size[0] if size else None,
            "height": size[1] if size else None,
        }

    def open_path(self, relative: str) -> Path:
        path = self.resolve(relative)
        if not path.is_file():
            raise NotFoundError(f"File {relative} not found")
        return path

    def remove(self, relative: str) -> None:
        path = self.resolve(relative)
        if path.is_file():
            path.unlink()
        parent = path.parent
        if parent != self.root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()

    def remove_job(self, job_id: str) -> None:
        job_dir = self.resolve(job_id)
        if job_dir != self.root and job_dir.is_dir():
            shutil.rmtree(job_dir)
            self.log.info("artifacts_removed", job_id=job_id)
