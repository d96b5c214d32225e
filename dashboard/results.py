from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from dashboard.db import session_scope
from dashboard.errors import NotFoundError, ValidationError
from dashboard.logging_utils import get_logger
from dashboard.models import RESULT_TYPES, Job, Result
from dashboard.storage import MediaStorage


@dataclass
class Download:
    filename: str
    media_type: str
    text: Optional[str] = None
    path: Optional[Path] = None


def result_files(result: Result) -> list:
    """Relative storage paths owned by a result (empty for inline text)."""
    if result.type == "text":
        return []
    files = [f["path"] for f in (result.meta or {}).get("files", []) if f.get("path")]
    return files or [result.content]


class ResultStore:
    def __init__(self, session_factory: sessionmaker, storage: MediaStorage):
        self._sessions = session_factory
        self._storage = storage
        self.log = get_logger()

    def list(
        self,
        result_type: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        if result_type is not None and result_type not in RESULT_TYPES:
            raise ValidationError(f"type must be one of: {', '.join(RESULT_TYPES)}")
        page, limit = max(page, 1), min(max(limit, 1), 100)
        with session_scope(self._sessions) as s:
            q = s.query(Result, Job).join(Job, Result.job_id == Job.id)
            if result_type:
                q = q.filter(Result.type == result_type)
            total = q.count()
            rows = q.order_by(Result.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
            items = []
            for result, job in rows:
                data = result.to_dict()
                data.update(task_name=job.name, provider=job.provider, model=job.model, prompt=job.prompt)
                items.append(data)
        return {"items": items, "total": total, "page": page, "limit": limit}

    def get(self, result_id: str) -> Dict[str, Any]:
        with session_scope(self._sessions) as s:
            result = s.get(Result, result_id)
            if result is None:
                raise NotFoundError(f"Result {result_id} not found")
            return result.to_dict()

    def download(self, result_id: str) -> Download:
        data = self.get(result_id)
        if data["type"] == "text":
            return Download(filename=f"result-{result_id}.txt", media_type="text/plain", text=data["content"])
        path = self._storage.open_path(data["content"])
        files = data["metadata"].get("files") or []
        media_type = files[0].get("content_type") if files else None
        return Download(filename=path.name, media_type=media_type or "application/octet-stream", path=path)

    def delete(self, result_id: str) -> None:
        """Delete a result row and its backing files."""
        with session_scope(self._sessions) as s:
            result = s.get(Result, result_id)
            if result is None:
                raise NotFoundError(f"Result {result_id} not found")
            files = result_files(result)
            s.delete(result)
        for relative in files:
            self._storage.remove(relative)
        self.log.info("result_deleted", result_id=result_id, files=len(files))
